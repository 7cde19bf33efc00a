# tests/conftest.py
from __future__ import annotations

import asyncio
import sys
import threading
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

# Ensure project root importable
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from srv_module.query_service import DNSQueryService, QueryHandle  # noqa: E402
from srv_module.run_loop import OperationThread  # noqa: E402
from srv_module.srv_resolver import ResultSink  # noqa: E402


def raw_srv(priority=0, weight=0, target="host.test.", port=443):
    """A raw answer shaped like dnspython's SRV rdata."""
    return SimpleNamespace(priority=priority, weight=weight, target=target, port=port)


class StubHandle(QueryHandle):
    def __init__(self, service: "StubQueryService"):
        self._service = service

    def cancel(self) -> None:
        # Deliberately keeps any scheduled response alive: operations must
        # tolerate completions arriving after a cancel.
        self._service.cancel_count += 1
        self._service.cancelled.set()


class StubQueryService(DNSQueryService):
    """
    Scripted query service. After `delay` seconds it reports `records` and
    then completes with `code`. With respond=False it never answers.
    """

    def __init__(self, records=(), code=None, delay=0.0, respond=True):
        self.records = list(records)
        self.code = code
        self.delay = delay
        self.respond = respond
        self.queries = []
        self.cancel_count = 0
        self.cancelled = threading.Event()

    def start_query(self, name, rdtype, on_record, on_complete):
        self.queries.append((name, rdtype))
        if self.respond:
            asyncio.get_running_loop().call_later(self.delay, self._answer, on_record, on_complete)
        return StubHandle(self)

    def _answer(self, on_record, on_complete):
        for rec in self.records:
            on_record(rec)
        on_complete(self.code)


class RecordingSink(ResultSink):
    def __init__(self):
        self.events = []
        self.finish_count = 0
        self.finished = threading.Event()
        self.finished_at = None
        self.threads = set()

    def on_record(self, record):
        self.threads.add(threading.current_thread().name)
        self.events.append(("record", record))

    def on_finished(self, error):
        self.threads.add(threading.current_thread().name)
        self.finished_at = time.monotonic()
        self.finish_count += 1
        self.events.append(("finished", error))
        self.finished.set()

    @property
    def records(self):
        return [payload for kind, payload in self.events if kind == "record"]

    @property
    def error(self):
        terminal = [payload for kind, payload in self.events if kind == "finished"]
        return terminal[-1] if terminal else None


@pytest.fixture()
def operation_thread():
    thread = OperationThread(name="srv-operation-test")
    yield thread
    thread.stop(timeout=2.0)


@pytest.fixture()
def sink():
    return RecordingSink()
