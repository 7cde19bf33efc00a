"""
SRV resolution as a cancellable, timeout-bound operation.

This module provides:
- SRVResolveOperation: one SRV query raced against a timer on the operation
  thread; records and the terminal outcome go to a result sink on a delivery
  executor
- ResultSink: the interface sinks implement
- resolve_srv / resolve_srv_async: run one operation and collect its records

Delivery order: every record is submitted to the delivery executor before the
terminal notification. With the default single-worker executor the sink
observes that order; a multi-worker executor only preserves submission order.
"""
from __future__ import annotations

import asyncio
import math
import os
import threading
import weakref
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional

from dotenv import load_dotenv

from .dns_utils import to_query_name
from .errors import OperationTimeout, SRVResolverError, UnknownOperationError, QueryFailed, invalid_argument
from .logger import get_child_logger
from .operation import CancellableTimedOperation
from .query_service import DNSQueryService, QueryHandle, ResolverQueryService
from .run_loop import OperationThread
from .srv_records import SRVRecord

load_dotenv()

log = get_child_logger("srv_resolver")

DEFAULT_TIMEOUT = float(os.getenv("SRV_DEFAULT_TIMEOUT", "5.0"))

_delivery_executor: Optional[ThreadPoolExecutor] = None
_delivery_lock = threading.Lock()
_default_query_service: Optional[DNSQueryService] = None


def default_delivery_executor() -> ThreadPoolExecutor:
    """Shared single-worker executor sinks are called on when none is configured."""
    global _delivery_executor
    with _delivery_lock:
        if _delivery_executor is None:
            _delivery_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="srv-delivery")
            log.info("Created default delivery executor")
        return _delivery_executor


def is_valid_timeout(timeout: Any) -> bool:
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        return False
    return math.isfinite(timeout) and timeout > 0


def default_query_service() -> DNSQueryService:
    global _default_query_service
    if _default_query_service is None:
        _default_query_service = ResolverQueryService()
    return _default_query_service


class ResultSink:
    """Receives zero or more records, then exactly one on_finished call."""

    def on_record(self, record: SRVRecord) -> None:
        pass

    def on_finished(self, error: Optional[SRVResolverError]) -> None:
        pass


def _log_delivery_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log.error("Result sink raised during delivery: {!r}", exc)


class SRVResolveOperation(CancellableTimedOperation):
    def __init__(
        self,
        srv_name: str,
        timeout: float = DEFAULT_TIMEOUT,
        query_service: Optional[DNSQueryService] = None,
        operation_thread: Optional[OperationThread] = None,
    ):
        super().__init__(operation_thread)
        self._srv_name = srv_name
        self._timeout = timeout
        self._query_service = query_service
        self._sink_ref: Optional[Callable[[], Optional[ResultSink]]] = None
        self._delivery_executor: Optional[Executor] = None
        self._query: Optional[QueryHandle] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def __repr__(self) -> str:
        return f"<SRVResolveOperation {self._srv_name!r} state={self.state.value}>"

    @property
    def srv_name(self) -> str:
        return self._srv_name

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def sink(self) -> Optional[ResultSink]:
        """The result sink, held weakly. None once the terminal notification was sent."""
        return self._sink_ref() if self._sink_ref is not None else None

    @sink.setter
    def sink(self, sink: Optional[ResultSink]) -> None:
        self._sink_ref = weakref.ref(sink) if sink is not None else None

    @property
    def delivery_executor(self) -> Executor:
        return self._delivery_executor or default_delivery_executor()

    @delivery_executor.setter
    def delivery_executor(self, executor: Optional[Executor]) -> None:
        # None resets to the shared default
        self._delivery_executor = executor

    @property
    def query_service(self) -> DNSQueryService:
        return self._query_service or default_query_service()

    # --- Operation thread ---

    def on_start(self) -> None:
        try:
            query_name = to_query_name(self._srv_name)
        except ValueError as e:
            self.finish(invalid_argument(f"invalid SRV name: {e}"))
            return
        if not is_valid_timeout(self._timeout):
            self.finish(invalid_argument(f"timeout must be a finite positive number, got {self._timeout!r}"))
            return

        query = self.query_service.start_query(
            query_name,
            "SRV",
            self._query_did_receive_record,
            self._query_did_complete,
        )
        # start_query may report synchronously; on_will_finish already ran without this handle
        if self.is_finished:
            query.cancel()
            return
        self._query = query
        self._timer = self.operation_thread.call_later(self._timeout, self._timer_did_fire)

    def _query_did_receive_record(self, rdata: Any) -> None:
        assert self.is_actual_run_loop_thread
        if self.is_finished:
            return
        try:
            record = SRVRecord.from_rdata(rdata)
        except (AttributeError, TypeError, ValueError) as e:
            log.warning("{} received a malformed SRV record: {}", self, e)
            self.finish(UnknownOperationError(f"malformed SRV record: {e}"))
            return
        sink = self.sink
        if sink is not None:
            self._deliver(sink.on_record, record)

    def _query_did_complete(self, code: Optional[str]) -> None:
        assert self.is_actual_run_loop_thread
        if self.is_finished:
            return
        self.finish(QueryFailed(code) if code is not None else None)

    def _timer_did_fire(self) -> None:
        self._timer = None
        if self.is_finished:
            return
        log.debug("{} timed out after {}s", self, self._timeout)
        self._cancel_query()
        self.finish(OperationTimeout(f"no SRV answer for {self._srv_name!r} within {self._timeout}s"))

    def _cancel_query(self) -> None:
        query, self._query = self._query, None
        if query is not None:
            query.cancel()

    def on_will_finish(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self._cancel_query()

    def on_finished(self, error: Optional[SRVResolverError]) -> None:
        sink = self.sink
        self._sink_ref = None
        if sink is not None:
            self._deliver(sink.on_finished, error)

    def _deliver(self, fn: Callable[[Any], None], arg: Any) -> None:
        future = self.delivery_executor.submit(fn, arg)
        future.add_done_callback(_log_delivery_failure)


class _CollectingSink(ResultSink):
    def __init__(self, on_done: Callable[[List[SRVRecord], Optional[SRVResolverError]], None]):
        self.records: List[SRVRecord] = []
        self._on_done = on_done

    def on_record(self, record: SRVRecord) -> None:
        self.records.append(record)

    def on_finished(self, error: Optional[SRVResolverError]) -> None:
        self._on_done(self.records, error)


def resolve_srv(
    srv_name: str,
    timeout: float = DEFAULT_TIMEOUT,
    query_service: Optional[DNSQueryService] = None,
) -> List[SRVRecord]:
    """
    Resolve `srv_name` and return its records in discovery order.

    Blocks the calling thread until the operation finishes. Raises the
    operation's terminal SRVResolverError on failure.
    """
    done = threading.Event()
    outcome: dict = {}

    def _on_done(records, error):
        outcome["records"], outcome["error"] = records, error
        done.set()

    sink = _CollectingSink(_on_done)
    op = SRVResolveOperation(srv_name, timeout, query_service=query_service)
    op.sink = sink
    op.start()
    done.wait()
    if outcome["error"] is not None:
        raise outcome["error"]
    return outcome["records"]


async def resolve_srv_async(
    srv_name: str,
    timeout: float = DEFAULT_TIMEOUT,
    query_service: Optional[DNSQueryService] = None,
) -> List[SRVRecord]:
    """Awaitable resolve_srv for callers running their own event loop."""
    loop = asyncio.get_running_loop()
    result: asyncio.Future = loop.create_future()

    def _settle(records, error):
        if result.done():
            return
        if error is not None:
            result.set_exception(error)
        else:
            result.set_result(records)

    def _on_done(records, error):
        loop.call_soon_threadsafe(_settle, records, error)

    sink = _CollectingSink(_on_done)
    op = SRVResolveOperation(srv_name, timeout, query_service=query_service)
    op.sink = sink
    op.start()
    try:
        return await result
    except asyncio.CancelledError:
        op.cancel()
        raise


__all__ = [
    "DEFAULT_TIMEOUT",
    "ResultSink",
    "SRVResolveOperation",
    "default_delivery_executor",
    "is_valid_timeout",
    "resolve_srv",
    "resolve_srv_async",
]
