"""
srv_module/operation.py

CancellableTimedOperation: an asynchronous unit of work bound to one
OperationThread, with an Initial/Started/Cancelled/Finished state machine and
a finish-once guarantee.

Subclasses override:
- on_start(): begin work. May call finish().
- on_will_finish(): tear down timers/queries. Runs on every termination path,
  cancellation included; `self.error` tells how the operation ended.
- on_finished(error): dispatch the terminal notification.

All three run on the operation thread only. start() and cancel() may be called
from any thread; they post to the operation thread and return immediately.

Cancel racing a completion is settled by the order events reach the operation
loop: whichever is processed first wins. Cancel does not always win.
"""
from __future__ import annotations

import enum
import threading
from typing import Callable, Optional

from .errors import OperationCancelled, SRVResolverError, UnknownOperationError
from .logger import get_child_logger
from .run_loop import OperationThread

log = get_child_logger("operation")


class OperationState(enum.Enum):
    INITIAL = "initial"
    STARTED = "started"
    CANCELLED = "cancelled"
    FINISHED = "finished"


class CancellableTimedOperation:
    def __init__(self, operation_thread: Optional[OperationThread] = None):
        self._operation_thread = operation_thread
        self._actual_thread: Optional[OperationThread] = None
        self._state = OperationState.INITIAL
        self._error: Optional[SRVResolverError] = None
        self._start_lock = threading.Lock()
        self._start_requested = False
        self._cancel_requested = False
        self._cancelled_before_start = False
        self._done = threading.Event()
        # Called on the operation thread after the terminal notification was dispatched.
        self.completion_callback: Optional[Callable[["CancellableTimedOperation"], None]] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} state={self._state.value}>"

    # --- Configuration (before start) ---

    @property
    def operation_thread(self) -> OperationThread:
        """The configured thread, or the shared one when none was set."""
        if self._actual_thread is not None:
            return self._actual_thread
        return self._operation_thread or OperationThread.shared()

    @operation_thread.setter
    def operation_thread(self, thread: Optional[OperationThread]) -> None:
        if self._start_requested:
            raise RuntimeError("operation_thread cannot change after start()")
        self._operation_thread = thread

    # --- Introspection ---

    @property
    def state(self) -> OperationState:
        return self._state

    @property
    def error(self) -> Optional[SRVResolverError]:
        """Terminal error; only meaningful once the operation is finished."""
        return self._error

    @property
    def is_cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def is_finished(self) -> bool:
        return self._state is OperationState.FINISHED

    @property
    def is_actual_run_loop_thread(self) -> bool:
        return self.operation_thread.is_current()

    # --- Cross-thread entry points ---

    def start(self) -> None:
        with self._start_lock:
            if self._start_requested:
                raise RuntimeError(f"{self!r} already started")
            self._start_requested = True
            # Posted under the lock so any cancel that sees a started operation queues behind it.
            self._actual_thread = self.operation_thread
            self._actual_thread.post(self._start_on_operation_thread)

    def cancel(self) -> None:
        if self._state is OperationState.FINISHED:
            return
        with self._start_lock:
            if not self._start_requested:
                # The start step sees this and finishes as cancelled without on_start().
                self._cancelled_before_start = True
                self._cancel_requested = True
                return
            thread = self._actual_thread
        thread.post(self._cancel_on_operation_thread)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until finished. Returns False if `timeout` elapsed first."""
        if self._actual_thread is not None and self._actual_thread.is_current():
            raise RuntimeError("wait() would deadlock on the operation thread")
        return self._done.wait(timeout)

    # --- Operation thread ---

    def _start_on_operation_thread(self) -> None:
        assert self.is_actual_run_loop_thread
        if self._state is not OperationState.INITIAL:
            return
        if self._cancelled_before_start:
            self._state = OperationState.CANCELLED
            self.finish(OperationCancelled())
            return
        self._state = OperationState.STARTED
        log.debug("{} started", self)
        try:
            self.on_start()
        except Exception as e:
            log.exception("{} failed to start", self)
            self.finish(UnknownOperationError(f"on_start failed: {e!r}"))

    def _cancel_on_operation_thread(self) -> None:
        assert self.is_actual_run_loop_thread
        # Cancels arriving after the operation finished are dropped here.
        if self._state is not OperationState.STARTED:
            return
        self._cancel_requested = True
        self._state = OperationState.CANCELLED
        log.debug("{} cancelled", self)
        self.finish(OperationCancelled())

    def finish(self, error: Optional[SRVResolverError] = None) -> bool:
        """
        Finish the operation with `error` (None for success).

        Only the first call has an effect; it returns True. Later calls return
        False and must not continue any work.
        """
        assert self.is_actual_run_loop_thread, "finish() must be called on the operation thread"
        if self._state is OperationState.FINISHED:
            return False
        self._error = error
        self._state = OperationState.FINISHED
        log.debug("{} finished (error={})", self, error.code if error is not None else None)

        try:
            self.on_will_finish()
        except Exception:
            log.exception("{} on_will_finish raised", self)
        try:
            self.on_finished(error)
        except Exception:
            log.exception("{} on_finished raised", self)

        callback, self.completion_callback = self.completion_callback, None
        if callback is not None:
            try:
                callback(self)
            except Exception:
                log.exception("{} completion callback raised", self)
        self._done.set()
        return True

    # --- Override points ---

    def on_start(self) -> None:
        pass

    def on_will_finish(self) -> None:
        pass

    def on_finished(self, error: Optional[SRVResolverError]) -> None:
        pass


__all__ = ["OperationState", "CancellableTimedOperation"]
