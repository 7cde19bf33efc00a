"""
Terminal errors surfaced by operations.

Every operation finishes with either no error or exactly one instance of an
SRVResolverError subclass. `code` and `domain` are stable strings callers can
branch on; `domain` says which layer produced the code.
"""
from __future__ import annotations

from typing import Optional

OPERATION_DOMAIN = "operation"
SRV_RESOLVER_DOMAIN = "srv_resolver"
DNS_DOMAIN = "dns"

BAD_PARAM = "BADPARAM"


class SRVResolverError(Exception):
    code: str = "UNKNOWN"
    domain: str = SRV_RESOLVER_DOMAIN

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, domain: Optional[str] = None):
        if code is not None:
            self.code = code
        if domain is not None:
            self.domain = domain
        super().__init__(message or self.code)

    def __eq__(self, other):
        if not isinstance(other, SRVResolverError):
            return NotImplemented
        return type(self) is type(other) and (self.code, self.domain) == (other.code, other.domain)

    def __hash__(self):
        return hash((type(self), self.code, self.domain))

    def as_dict(self) -> dict:
        return {"code": self.code, "domain": self.domain, "message": str(self)}


class OperationCancelled(SRVResolverError):
    """The caller cancelled the operation before it completed."""

    code = "CANCELLED"
    domain = OPERATION_DOMAIN


class OperationTimeout(SRVResolverError):
    """The configured timeout elapsed before the query completed."""

    code = "TIMEOUT"


class QueryFailed(SRVResolverError):
    """The DNS query service reported a failure; `code` is passed through verbatim."""

    domain = DNS_DOMAIN

    def __init__(self, code: str, domain: str = DNS_DOMAIN, message: Optional[str] = None):
        super().__init__(message or f"SRV query failed: {code}", code=code, domain=domain)


class UnknownOperationError(SRVResolverError):
    code = "UNKNOWN"


def invalid_argument(message: str) -> QueryFailed:
    return QueryFailed(BAD_PARAM, domain=SRV_RESOLVER_DOMAIN, message=message)


__all__ = [
    "SRVResolverError",
    "OperationCancelled",
    "OperationTimeout",
    "QueryFailed",
    "UnknownOperationError",
    "invalid_argument",
    "BAD_PARAM",
]
