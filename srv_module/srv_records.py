# /srv_module/srv_records.py
from dataclasses import dataclass, asdict
from typing import Any, Dict

UINT16_MAX = 0xFFFF


def _uint16(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise TypeError(f"{field_name} must be an integer, got bool")
    number = int(value)
    if not 0 <= number <= UINT16_MAX:
        raise ValueError(f"{field_name} out of range: {number}")
    return number


def _target_text(target: Any) -> str:
    # dns.name.Name or str; the root name "." means "service not available here"
    if hasattr(target, "to_text"):
        text = target.to_text()
    elif isinstance(target, str):
        text = target
    else:
        raise TypeError(f"target must be a name or string, got {type(target).__name__}")
    if text == ".":
        return text
    return text.rstrip(".")


@dataclass(frozen=True)
class SRVRecord:
    """
    One SRV answer: where a service lives and how to choose between targets.

    Attributes:
        priority: Lower values are tried first (0-65535).
        weight: Relative weight among records with the same priority (0-65535).
        target: Hostname of the target, without trailing dot.
        port: TCP/UDP port of the service on the target (0-65535).
    """
    priority: int
    weight: int
    target: str
    port: int

    @classmethod
    def from_rdata(cls, rdata: Any) -> "SRVRecord":
        """
        Build a record from a raw answer (dnspython SRV rdata or any object
        exposing priority/weight/target/port).

        Raises AttributeError, TypeError or ValueError for malformed input.
        """
        return cls(
            priority=_uint16(rdata.priority, "priority"),
            weight=_uint16(rdata.weight, "weight"),
            target=_target_text(rdata.target),
            port=_uint16(rdata.port, "port"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
