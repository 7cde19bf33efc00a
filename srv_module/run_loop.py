"""
srv_module/run_loop.py

The dedicated execution context operations run on: one daemon thread running
an asyncio event loop. All operation state transitions, timers and DNS query
tasks live on that loop; other threads only post callbacks to it.

Public API:
- OperationThread.shared() -> process-wide instance, created on first use
- OperationThread(name) -> a private instance (tests, isolated subsystems)
- post(fn, *args): schedule fn on the loop from any thread
- call_later(delay, fn, *args): arm a timer, loop thread only
- is_current(): True when called from the loop thread
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Optional

from .logger import get_child_logger

log = get_child_logger("run_loop")

_shared: Optional["OperationThread"] = None
_shared_lock = threading.Lock()


class OperationThread:
    def __init__(self, name: str = "srv-operation"):
        self.name = name
        self._loop = asyncio.new_event_loop()
        self._ready = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()
        self._ready.wait()

    @classmethod
    def shared(cls) -> "OperationThread":
        """Return the process-wide operation thread, creating it on first use."""
        global _shared
        with _shared_lock:
            if _shared is None or not _shared.is_alive():
                _shared = cls()
                log.info("Started shared operation thread {}", _shared.name)
            return _shared

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        try:
            self._loop.run_forever()
        finally:
            pending = asyncio.all_tasks(self._loop)
            for task in pending:
                task.cancel()
            if pending:
                self._loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            self._loop.close()
            log.debug("Operation thread {} stopped", self.name)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def thread(self) -> threading.Thread:
        return self._thread

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._loop.is_closed()

    def is_current(self) -> bool:
        return threading.get_ident() == self._thread.ident

    def post(self, fn: Callable[..., Any], *args: Any) -> None:
        """Schedule `fn(*args)` on the loop; safe from any thread, FIFO per caller."""
        self._loop.call_soon_threadsafe(fn, *args)

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        assert self.is_current(), "timers must be armed on the operation thread"
        return self._loop.call_later(delay, fn, *args)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop a private operation thread. The shared one lives for the process."""
        if self is _shared:
            raise RuntimeError("the shared operation thread cannot be stopped")
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout)


__all__ = ["OperationThread"]
