# tests/test_srv_resolver.py
from __future__ import annotations

import asyncio
import gc
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import dns.exception
import dns.rdata
import dns.rdatatype
import dns.resolver
import pytest

from conftest import RecordingSink, StubQueryService, raw_srv
from srv_module.errors import (
    BAD_PARAM,
    OperationCancelled,
    OperationTimeout,
    QueryFailed,
    UnknownOperationError,
)
from srv_module.operation import OperationState
from srv_module.query_service import ResolverQueryService, rcode_for_exception
from srv_module.srv_records import SRVRecord
from srv_module.srv_resolver import SRVResolveOperation, resolve_srv, resolve_srv_async


def _start(name, timeout, service, sink, operation_thread, executor=None):
    op = SRVResolveOperation(name, timeout, query_service=service, operation_thread=operation_thread)
    op.sink = sink
    if executor is not None:
        op.delivery_executor = executor
    op.start()
    return op


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_resolves_single_record(operation_thread, sink):
    service = StubQueryService(
        records=[raw_srv(0, 0, "jmap.example-with-records.test.", 443)],
    )
    op = _start("_jmap._tcp.example-with-records.test", 10.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert sink.events == [
        ("record", SRVRecord(priority=0, weight=0, target="jmap.example-with-records.test", port=443)),
        ("finished", None),
    ]
    assert service.queries == [("_jmap._tcp.example-with-records.test", "SRV")]
    assert op.state is OperationState.FINISHED
    assert op.error is None


def test_no_such_record(operation_thread, sink):
    service = StubQueryService(code="no such record", delay=0.05)
    _start("nonexistent.test", 1.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert sink.records == []
    assert sink.error == QueryFailed("no such record")
    assert sink.error.domain == "dns"


def test_timeout_when_service_never_answers(operation_thread, sink):
    service = StubQueryService(respond=False)
    t0 = time.monotonic()
    _start("_xmpp._tcp.silent.test", 0.1, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    elapsed = sink.finished_at - t0
    assert 0.09 <= elapsed < 1.0
    assert sink.records == []
    assert isinstance(sink.error, OperationTimeout)
    assert service.cancelled.is_set()


def test_cancel_immediately_after_start(operation_thread, sink):
    service = StubQueryService(records=[raw_srv()], delay=0.5)
    op = _start("_imap._tcp.example.test", 5.0, service, sink, operation_thread)
    op.cancel()

    assert sink.finished.wait(2.0)
    assert sink.records == []
    assert sink.error == OperationCancelled()
    assert service.cancelled.is_set()


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


def test_records_precede_terminal_notification(operation_thread, sink):
    raws = [raw_srv(10, 5, f"srv{i}.example.test.", 5000 + i) for i in range(5)]
    service = StubQueryService(records=raws)
    _start("_sip._udp.example.test", 1.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    kinds = [kind for kind, _ in sink.events]
    assert kinds == ["record"] * 5 + ["finished"]
    # discovery order is kept, no sorting
    assert [r.port for r in sink.records] == [5000, 5001, 5002, 5003, 5004]


def test_late_answer_after_timeout_is_discarded(operation_thread, sink):
    service = StubQueryService(records=[raw_srv()], delay=0.3)
    _start("_ldap._tcp.slow.test", 0.1, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    time.sleep(0.4)
    assert sink.events == [("finished", OperationTimeout())]
    assert service.cancel_count == 1


def test_cancel_from_many_threads_delivers_one_terminal(operation_thread, sink):
    service = StubQueryService(records=[raw_srv()], delay=1.0)
    op = _start("_caldav._tcp.example.test", 5.0, service, sink, operation_thread)

    threads = [threading.Thread(target=op.cancel) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sink.finished.wait(2.0)
    time.sleep(0.1)
    assert sink.finish_count == 1
    assert sink.error == OperationCancelled()


def test_cancel_after_finish_has_no_effect(operation_thread, sink):
    service = StubQueryService(records=[raw_srv()])
    op = _start("_jmap._tcp.example.test", 1.0, service, sink, operation_thread)
    assert sink.finished.wait(2.0)

    op.cancel()
    op.cancel()
    time.sleep(0.1)

    assert sink.finish_count == 1
    assert sink.error is None
    assert op.error is None


def test_second_start_does_not_query_again(operation_thread, sink):
    service = StubQueryService(records=[raw_srv()])
    op = _start("_jmap._tcp.example.test", 1.0, service, sink, operation_thread)
    with pytest.raises(RuntimeError):
        op.start()

    assert sink.finished.wait(2.0)
    time.sleep(0.1)
    assert len(service.queries) == 1
    assert sink.finish_count == 1


def test_delivery_runs_on_configured_executor(operation_thread, sink):
    service = StubQueryService(records=[raw_srv(), raw_srv(port=993)])
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="caller-queue") as executor:
        _start("_imaps._tcp.example.test", 1.0, service, sink, operation_thread, executor=executor)
        assert sink.finished.wait(2.0)

    assert len(sink.records) == 2
    assert all(name.startswith("caller-queue") for name in sink.threads)


def test_sink_exception_does_not_break_terminal_delivery(operation_thread, sink):
    class ExplodingSink(RecordingSink):
        def on_record(self, record):
            super().on_record(record)
            raise RuntimeError("sink failure")

    exploding = ExplodingSink()
    service = StubQueryService(records=[raw_srv()])
    _start("_jmap._tcp.example.test", 1.0, service, exploding, operation_thread)

    assert exploding.finished.wait(2.0)
    assert exploding.error is None
    assert len(exploding.records) == 1


# ---------------------------------------------------------------------------
# Argument validation and malformed answers
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "name,timeout",
    [
        ("", 1.0),
        (".", 1.0),
        ("_sip._tcp..example.com", 1.0),
        ("_sip._tcp.\u00a0.example.com", 1.0),
        ("_sip._tcp.exa mple.com", 1.0),
        ("_jmap._tcp.example.test", 0),
        ("_jmap._tcp.example.test", -1.0),
        ("_jmap._tcp.example.test", float("nan")),
        ("_jmap._tcp.example.test", float("inf")),
        ("_jmap._tcp.example.test", "10"),
    ],
)
def test_invalid_arguments_fail_without_querying(operation_thread, sink, name, timeout):
    service = StubQueryService(records=[raw_srv()])
    _start(name, timeout, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert isinstance(sink.error, QueryFailed)
    assert sink.error.code == BAD_PARAM
    assert sink.error.domain == "srv_resolver"
    assert service.queries == []


def test_malformed_record_finishes_unknown(operation_thread, sink):
    service = StubQueryService(records=[raw_srv(port=25), raw_srv(port=70000), raw_srv(port=587)])
    _start("_submission._tcp.example.test", 1.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    time.sleep(0.05)
    assert [r.port for r in sink.records] == [25]
    assert isinstance(sink.error, UnknownOperationError)
    assert service.cancelled.is_set()


def test_name_is_normalized_before_querying(operation_thread, sink):
    service = StubQueryService()
    _start("_JMAP._TCP.Example.TEST.", 1.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert service.queries == [("_jmap._tcp.example.test", "SRV")]


class SynchronousQueryService(StubQueryService):
    """Reports its answer from inside start_query, before returning the handle."""

    def start_query(self, name, rdtype, on_record, on_complete):
        handle = super().start_query(name, rdtype, on_record, on_complete)
        self._answer(on_record, on_complete)
        return handle


def test_synchronous_completion_cancels_returned_handle(operation_thread, sink):
    service = SynchronousQueryService(records=[raw_srv(port=5222)], respond=False)
    op = _start("_xmpp._tcp.example.test", 1.0, service, sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert op.wait(1.0)
    time.sleep(0.05)
    assert sink.error is None
    assert [r.port for r in sink.records] == [5222]
    assert sink.finish_count == 1
    assert service.cancel_count == 1


def test_sink_is_not_retained():
    op = SRVResolveOperation("_jmap._tcp.example.test", 1.0)
    temp = RecordingSink()
    op.sink = temp
    assert op.sink is temp

    del temp
    gc.collect()
    assert op.sink is None


def test_sink_released_after_finish(operation_thread, sink):
    op = _start("_jmap._tcp.example.test", 1.0, StubQueryService(), sink, operation_thread)
    assert sink.finished.wait(2.0)
    assert op.sink is None


# ---------------------------------------------------------------------------
# dnspython-backed query service
# ---------------------------------------------------------------------------


class FakeResolver:
    def __init__(self, answer=None, exc=None, delay=0.0):
        self.answer = answer or []
        self.exc = exc
        self.delay = delay
        self.calls = []
        self.cancelled = threading.Event()

    async def resolve(self, name, rdtype):
        self.calls.append((name, rdtype))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled.set()
            raise
        if self.exc is not None:
            raise self.exc
        return self.answer


def _srv_rdata(text):
    return dns.rdata.from_text("IN", "SRV", text)


def test_resolver_service_delivers_rdata(operation_thread, sink):
    resolver = FakeResolver(answer=[
        _srv_rdata("10 60 5060 sip1.example.test."),
        _srv_rdata("20 0 5060 sip2.example.test."),
    ])
    _start("_sip._tcp.example.test", 1.0, ResolverQueryService(resolver), sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert sink.records == [
        SRVRecord(10, 60, "sip1.example.test", 5060),
        SRVRecord(20, 0, "sip2.example.test", 5060),
    ]
    assert sink.error is None
    assert resolver.calls == [("_sip._tcp.example.test", dns.rdatatype.SRV)]


@pytest.mark.parametrize(
    "exc,code",
    [
        (dns.resolver.NXDOMAIN(), "NXDOMAIN"),
        (dns.resolver.NoAnswer(), "NODATA"),
        (dns.exception.Timeout(), "TIMEOUT"),
        (dns.resolver.NoNameservers(), "SERVFAIL"),
        (dns.exception.SyntaxError(), "ERROR"),
    ],
)
def test_resolver_service_maps_failures(operation_thread, sink, exc, code):
    resolver = FakeResolver(exc=exc)
    _start("_xmpp-client._tcp.example.test", 1.0, ResolverQueryService(resolver), sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert sink.records == []
    assert sink.error == QueryFailed(code)


def test_resolver_service_query_cancelled_on_timeout(operation_thread, sink):
    resolver = FakeResolver(answer=[_srv_rdata("0 0 443 slow.example.test.")], delay=5.0)
    _start("_jmap._tcp.slow.test", 0.1, ResolverQueryService(resolver), sink, operation_thread)

    assert sink.finished.wait(2.0)
    assert isinstance(sink.error, OperationTimeout)
    assert resolver.cancelled.wait(1.0)
    assert sink.records == []


def test_rcode_for_exception_matches_servfail_text():
    exc = dns.exception.DNSException("upstream answered SERVFAIL")
    assert rcode_for_exception(exc) == "SERVFAIL"


# ---------------------------------------------------------------------------
# Convenience helpers
# ---------------------------------------------------------------------------


def test_resolve_srv_returns_records():
    service = StubQueryService(records=[raw_srv(5, 10, "a.example.test.", 443)])
    assert resolve_srv("_jmap._tcp.example.test", 1.0, query_service=service) == [
        SRVRecord(5, 10, "a.example.test", 443)
    ]


def test_resolve_srv_raises_terminal_error():
    service = StubQueryService(code="NXDOMAIN")
    with pytest.raises(QueryFailed) as excinfo:
        resolve_srv("_jmap._tcp.missing.test", 1.0, query_service=service)
    assert excinfo.value.code == "NXDOMAIN"


def test_resolve_srv_async():
    service = StubQueryService(records=[raw_srv(target="b.example.test.")])
    records = asyncio.run(resolve_srv_async("_jmap._tcp.example.test", 1.0, query_service=service))
    assert [r.target for r in records] == ["b.example.test"]


def test_resolve_srv_async_timeout():
    service = StubQueryService(respond=False)
    with pytest.raises(OperationTimeout):
        asyncio.run(resolve_srv_async("_jmap._tcp.example.test", 0.05, query_service=service))
    assert service.cancelled.is_set()
