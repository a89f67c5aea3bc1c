"""Cancellation tokens and FIFO admission for concurrent executions."""

import threading
from collections import deque
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, List, Optional

from .logging import get_logger

logger = get_logger(__name__)


class CancellationToken:
    """
    Cooperative cancellation signal shared by an execution and its node handlers.

    Cancelling a token cancels every child derived from it; children can be
    cancelled on their own (for a timed-out node attempt) without touching
    the parent.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._children: List["CancellationToken"] = []
        self._lock = threading.Lock()
        self.reason: Optional[str] = None
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel(self.reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


class AdmissionGate:
    """
    Counting gate that bounds simultaneously running executions.

    Waiters are admitted strictly in arrival order. A waiter whose token is
    cancelled leaves the queue without being admitted.
    """

    def __init__(self, default_limit: int):
        if default_limit < 1:
            raise ValueError("Admission limit must be at least 1")
        self.default_limit = default_limit
        self._condition = threading.Condition()
        self._queue: deque = deque()
        self._running = 0

    def acquire(self, ticket: str, limit: Optional[int] = None,
                token: Optional[CancellationToken] = None) -> bool:
        """Block until ``ticket`` is admitted; returns False if cancelled while queued."""
        cap = limit or self.default_limit
        with self._condition:
            self._queue.append(ticket)
            if self._queue[0] != ticket or self._running >= cap:
                logger.info(f"Execution {ticket} queued (running={self._running}, limit={cap})")
            while True:
                if token is not None and token.is_cancelled:
                    self._queue.remove(ticket)
                    self._condition.notify_all()
                    return False
                if self._queue[0] == ticket and self._running < cap:
                    self._queue.popleft()
                    self._running += 1
                    self._condition.notify_all()
                    return True
                self._condition.wait()

    def release(self) -> None:
        with self._condition:
            self._running = max(0, self._running - 1)
            self._condition.notify_all()

    def wake(self) -> None:
        """Wake waiters so they re-check their cancellation tokens."""
        with self._condition:
            self._condition.notify_all()

    @property
    def running(self) -> int:
        with self._condition:
            return self._running

    @property
    def queued(self) -> int:
        with self._condition:
            return len(self._queue)


class TimedCall:
    """
    Runs one callable on a dedicated daemon thread.

    The timeout passed to :meth:`result` counts from the moment the callable
    starts running. A call that never returns only holds its own thread.
    """

    def __init__(self, fn: Callable[..., Any], *args: Any, name: Optional[str] = None):
        self._fn = fn
        self._args = args
        self._started = threading.Event()
        self._done = threading.Event()
        self._result: Any = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def _run(self) -> None:
        self._started.set()
        try:
            self._result = self._fn(*self._args)
        except Exception as e:
            self._error = e
        finally:
            self._done.set()

    def start(self) -> "TimedCall":
        """Start the thread and return once the callable is running."""
        self._thread.start()
        self._started.wait()
        return self

    def result(self, timeout: Optional[float] = None) -> Any:
        """
        Raises:
            concurrent.futures.TimeoutError: If the call is still running after ``timeout`` seconds
        """
        if not self._done.wait(timeout):
            raise FutureTimeoutError()
        if self._error is not None:
            raise self._error
        return self._result
