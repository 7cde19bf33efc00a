# /srv_module/dns_utils.py
from __future__ import annotations

import re
from typing import List, Optional, Tuple

import idna


# --------------------------------------------------------------------
# Basic utilities and normalization
# --------------------------------------------------------------------
def to_ascii_hostname(name: Optional[str]) -> str:
    """
    Lowercase + IDNA (punycode) each label + strip trailing dot.
    Underscore labels (_service, _proto) are kept as-is.
    Returns "" if input is falsy.
    """
    if not name:
        return ""
    name = str(name).strip().strip(".")
    if not name:
        return ""
    labels: List[str] = []
    for lbl in name.split("."):
        if not lbl:
            continue
        if lbl.startswith("_") or lbl.isascii():
            labels.append(lbl)
            continue
        try:
            # UTS46 processing is forgiving and handles most real-world inputs.
            labels.append(idna.encode(lbl, uts46=True, std3_rules=False).decode("ascii"))
        except idna.IDNAError:
            # As a last resort, strip invalid characters and keep only LDH labels.
            safe = re.sub(r"[^A-Za-z0-9\-]", "", lbl).strip("-")[:63].strip("-")
            if safe:
                labels.append(safe)
    return ".".join(labels).lower()


def normalize_name(value: Optional[str]) -> str:
    """Alias: normalize DNS names/hosts → ascii, lowercase, no trailing dot."""
    return to_ascii_hostname(value)


_QUERY_LABEL_RE = re.compile(r"^[A-Za-z0-9_\-]{1,63}$")


def to_query_name(name: Optional[str]) -> str:
    """
    Normalize a name that is about to be queried: lowercase, IDNA, no trailing dot.

    Unlike to_ascii_hostname() nothing is dropped or repaired; an empty or
    unencodable label raises ValueError so a different name is never queried.
    """
    text = str(name or "").strip()
    if text.endswith("."):
        text = text[:-1]
    if not text:
        raise ValueError("name is empty")
    labels: List[str] = []
    for lbl in text.split("."):
        if not lbl.strip():
            raise ValueError(f"empty label in {name!r}")
        if not lbl.isascii():
            try:
                lbl = idna.encode(lbl, uts46=True, std3_rules=True).decode("ascii")
            except idna.IDNAError as e:
                raise ValueError(f"label {lbl!r} cannot be IDNA-encoded: {e}") from e
        if not _QUERY_LABEL_RE.match(lbl):
            raise ValueError(f"invalid label {lbl!r} in {name!r}")
        labels.append(lbl)
    return ".".join(labels).lower()


def split_service_name(service_fqdn: str) -> Tuple[Optional[str], Optional[str], str]:
    """
    Split "_service._proto.domain" into ("_service", "_proto", "domain").

    Names that do not start with two underscore labels come back as
    (None, None, name).
    """
    parts = normalize_name(service_fqdn).split(".")
    if len(parts) >= 3 and parts[0].startswith("_") and parts[1].startswith("_"):
        return parts[0], parts[1], ".".join(parts[2:])
    return None, None, ".".join(parts)


def build_service_name(service: str, proto: str, domain: str) -> str:
    """Inverse of split_service_name; adds the leading underscores when missing."""
    service = service if service.startswith("_") else f"_{service}"
    proto = proto if proto.startswith("_") else f"_{proto}"
    return f"{service}.{proto}.{normalize_name(domain)}"
