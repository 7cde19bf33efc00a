"""
DNS query service used by SRVResolveOperation, built on dnspython's asyncio resolver.

This module provides:
- DNSQueryService / QueryHandle: the contract an operation talks to
- ResolverQueryService: dnspython implementation, one asyncio task per query
- Setter API for the application to inject a resolver (get/set_default_resolver)

Contract:
- start_query() is called on the operation thread and returns a QueryHandle.
- on_record(raw) is called zero or more times, then on_complete(code) once;
  code is None on success or an rcode string (NXDOMAIN, NODATA, TIMEOUT,
  SERVFAIL, ERROR). Both run on the operation thread.
- QueryHandle.cancel() is best-effort; once it is called no further callbacks
  are made by this implementation, but other implementations may still
  deliver a late completion, which operations ignore.
"""
from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, List, Optional

import dns.asyncresolver
import dns.exception
import dns.rdatatype
import dns.resolver
from dotenv import load_dotenv

from .logger import get_child_logger

load_dotenv()

log = get_child_logger("query_service")

RecordCallback = Callable[[Any], None]
CompletionCallback = Callable[[Optional[str]], None]

# Per-server timeout and total lifetime for dnspython. The operation's own
# timer bounds the lookup as seen by callers.
DEFAULT_RESOLVER_TIMEOUT = float(os.getenv("SRV_RESOLVER_TIMEOUT", "3.0"))
DEFAULT_RESOLVER_LIFETIME = float(os.getenv("SRV_RESOLVER_LIFETIME", "5.0"))

_default_resolver: Optional[dns.asyncresolver.Resolver] = None


def _nameservers_from_env() -> Optional[List[str]]:
    ns_env = os.getenv("SRV_NAMESERVERS", "")
    servers = [s.strip() for s in ns_env.split(",") if s.strip()]
    return servers or None


def set_default_resolver(resolver: Optional[dns.asyncresolver.Resolver]) -> None:
    """
    Set the resolver used by ResolverQueryService instances created without one.
    Pass None to go back to a lazily built resolver.
    """
    global _default_resolver
    _default_resolver = resolver
    if resolver is not None:
        log.info("Default resolver injected by application (nameservers={})", getattr(resolver, "nameservers", None))


def get_default_resolver(nameservers: Optional[List[str]] = None) -> dns.asyncresolver.Resolver:
    """
    Get or create the default resolver for this process.

    Args:
        nameservers: List of nameserver IPs. Defaults to SRV_NAMESERVERS, or
            the system resolver configuration when that is unset.
    """
    global _default_resolver

    if _default_resolver is None:
        nameservers = nameservers or _nameservers_from_env()
        resolver = dns.asyncresolver.Resolver(configure=nameservers is None)
        if nameservers is not None:
            resolver.nameservers = nameservers
        resolver.timeout = DEFAULT_RESOLVER_TIMEOUT
        resolver.lifetime = DEFAULT_RESOLVER_LIFETIME
        _default_resolver = resolver
        log.info("Created default resolver with nameservers: {}", resolver.nameservers)

    return _default_resolver


class QueryHandle:
    """Handle to one in-flight query."""

    def cancel(self) -> None:
        raise NotImplementedError


class DNSQueryService:
    """Asynchronous DNS query service, driven from the operation thread."""

    def start_query(
        self,
        name: str,
        rdtype: str,
        on_record: RecordCallback,
        on_complete: CompletionCallback,
    ) -> QueryHandle:
        raise NotImplementedError


class _TaskQueryHandle(QueryHandle):
    def __init__(self):
        self.task: Optional["asyncio.Task[None]"] = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.task is not None:
            self.task.cancel()


def rcode_for_exception(exc: dns.exception.DNSException) -> str:
    """Map a dnspython resolution failure to the rcode strings used across the code base."""
    if isinstance(exc, dns.resolver.NXDOMAIN):
        return "NXDOMAIN"
    if isinstance(exc, dns.resolver.NoAnswer):
        return "NODATA"
    if isinstance(exc, dns.exception.Timeout):
        return "TIMEOUT"
    if isinstance(exc, dns.resolver.NoNameservers) or "SERVFAIL" in str(exc):
        return "SERVFAIL"
    return "ERROR"


class ResolverQueryService(DNSQueryService):
    def __init__(self, resolver: Optional[dns.asyncresolver.Resolver] = None):
        self._resolver = resolver

    @property
    def resolver(self) -> dns.asyncresolver.Resolver:
        return self._resolver or get_default_resolver()

    def start_query(
        self,
        name: str,
        rdtype: str,
        on_record: RecordCallback,
        on_complete: CompletionCallback,
    ) -> QueryHandle:
        handle = _TaskQueryHandle()
        handle.task = asyncio.get_running_loop().create_task(
            self._run_query(name, rdtype, on_record, on_complete, handle)
        )
        return handle

    async def _run_query(
        self,
        name: str,
        rdtype: str,
        on_record: RecordCallback,
        on_complete: CompletionCallback,
        handle: _TaskQueryHandle,
    ) -> None:
        try:
            answer = await self.resolver.resolve(name, dns.rdatatype.from_text(rdtype))
        except asyncio.CancelledError:
            log.debug("{} query for {} cancelled", rdtype, name)
            raise
        except dns.exception.DNSException as e:
            code = rcode_for_exception(e)
            log.debug("{} query for {} failed: {} ({})", rdtype, name, code, e)
            if not handle.cancelled:
                on_complete(code)
            return

        log.debug("{} query for {} returned {} record(s)", rdtype, name, len(answer))
        for rdata in answer:
            if handle.cancelled:
                return
            on_record(rdata)
        if not handle.cancelled:
            on_complete(None)


__all__ = [
    "DNSQueryService",
    "QueryHandle",
    "ResolverQueryService",
    "rcode_for_exception",
    "get_default_resolver",
    "set_default_resolver",
]
