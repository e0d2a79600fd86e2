"""
Concurrency primitives for the parallel factorization engine.

This module contains the join and channel building blocks the recursive
engine in factorization.py is assembled from.

COMPONENTS:
1. TaskGroup: structured-concurrency scope. Leaving the block waits for every
   task spawned in it; nested groups opened inside tasks make the join
   transitive over a whole fork tree.
2. FactorStream: thread-safe multi-producer channel with a one-shot,
   idempotent close. Consumers read it as a lazy, non-restartable sequence.

FAILURE POLICY:
- The first task exception cancels the group (and every group nested in it)
  and is re-raised once as ConcurrencyFailure after the join.
- A failed stream hands out the values already written, then raises the
  stored failure on every further read.
"""

import collections
import logging
import queue
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ConcurrencyFailure(RuntimeError):
    """A task inside a TaskGroup raised; carries the first failure as __cause__."""


class StreamClosedError(RuntimeError):
    """Write attempted on a closed FactorStream (a scheduling bug, not user-recoverable)."""


# ============================================================================
# PART 1: STRUCTURED CONCURRENCY GROUP
# ============================================================================

class TaskGroup:
    """
    Scope that completes only after every task spawned in it has completed.

    Tasks run on daemon threads. Spawning is allowed from the body of the
    ``with`` block and from tasks already running in the group, so a group
    may keep growing while it is being joined.

    Groups form a tree through ``parent``: cancelling a group cancels all of
    its descendants. Cancellation is cooperative, tasks that have not started
    yet are skipped and running tasks are expected to poll ``cancelled``.

    Usage:
        with TaskGroup() as group:
            group.spawn(work, 1)
            group.spawn(work, 2)
        # both calls to work() have returned here
    """

    def __init__(self, parent: Optional["TaskGroup"] = None, name: str = "group"):
        self.parent = parent
        self.name = name
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._joined = False

    @property
    def cancelled(self) -> bool:
        # Iterative: fork trees of prime powers nest deeper than the recursion limit
        group = self
        while group is not None:
            if group._cancel_event.is_set():
                return True
            group = group.parent
        return False

    def cancel(self) -> None:
        """Cancel this group and, transitively, every group nested in it."""
        if not self._cancel_event.is_set():
            logger.debug(f"Cancelling task group {self.name}")
        self._cancel_event.set()

    def spawn(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> threading.Thread:
        """
        Start ``fn(*args, **kwargs)`` on a new thread owned by this group.

        Raises:
            RuntimeError: if the group has already been joined
        """
        with self._lock:
            if self._joined:
                raise RuntimeError(f"cannot spawn into task group {self.name} after it was joined")
            thread = threading.Thread(
                target=self._run,
                args=(fn, args, kwargs),
                name=f"{self.name}-{len(self._threads)}",
                daemon=True,
            )
            self._threads.append(thread)
        thread.start()
        return thread

    def _run(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        if self.cancelled:
            return
        try:
            fn(*args, **kwargs)
        except BaseException as exc:
            with self._lock:
                self._errors.append(exc)
            logger.debug(f"Task in group {self.name} failed: {exc!r}")
            self.cancel()

    def join(self) -> None:
        """Wait for all spawned tasks, including those spawned during the wait."""
        index = 0
        while True:
            with self._lock:
                if index >= len(self._threads):
                    # Every joined thread has finished, nothing left can spawn
                    self._joined = True
                    return
                thread = self._threads[index]
            thread.join()
            index += 1

    def __enter__(self) -> "TaskGroup":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.cancel()
        self.join()
        if exc_type is not None:
            return False

        if self._errors:
            first = self._errors[0]
            if isinstance(first, ConcurrencyFailure):
                raise first
            raise ConcurrencyFailure(f"task in group {self.name} failed: {first!r}") from first
        return False


def run_in_group(body: Callable[[TaskGroup], Any], parent: Optional[TaskGroup] = None) -> Any:
    """
    Run ``body(group)`` and return its result once every task it spawned is done.

    Args:
        body: Callable receiving the group; may call ``group.spawn`` any number of times
        parent: Group whose cancellation should propagate into this one

    Returns:
        Whatever ``body`` returned

    Raises:
        ConcurrencyFailure: if any spawned task raised
    """
    with TaskGroup(parent=parent) as group:
        result = body(group)
    return result


# ============================================================================
# PART 2: FACTOR STREAM
# ============================================================================

class FactorStream:
    """
    Concurrency-safe channel delivering factors as a lazy, finite sequence.

    Blocking contract:
    - put() never blocks on an unbounded stream (maxsize <= 0). With
      maxsize > 0 it blocks while the buffer is full and the stream is open.
    - get() blocks while the stream is open and empty, returns the next value
      when one is buffered, and returns None once closed and drained.

    The stream is closed exactly once. close() and fail() after that are
    no-ops; put() after close() raises StreamClosedError. A consumer that
    abandons the stream calls cancel(), which closes it early and triggers
    the callbacks registered with on_cancel(); values written after that are
    dropped.
    """

    def __init__(self, maxsize: int = 0):
        self.maxsize = maxsize
        self._buffer: collections.deque = collections.deque()
        self._cond = threading.Condition()
        self._closed = False
        self._cancelled = False
        self._error: Optional[BaseException] = None
        self._cancel_callbacks: list[Callable[[], None]] = []

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def cancelled(self) -> bool:
        with self._cond:
            return self._cancelled

    @property
    def error(self) -> Optional[BaseException]:
        with self._cond:
            return self._error

    def _full(self) -> bool:
        return 0 < self.maxsize <= len(self._buffer)

    def put(self, value: int) -> None:
        """
        Append a value.

        Raises:
            StreamClosedError: if the stream was closed (not cancelled) before the write
        """
        with self._cond:
            while self._full() and not self._closed:
                self._cond.wait()
            if self._cancelled:
                return
            if self._closed:
                raise StreamClosedError(f"write of {value} to a closed stream")
            self._buffer.append(value)
            self._cond.notify_all()

    def get(self, block: bool = True, timeout: Optional[float] = None) -> Optional[int]:
        """
        Read the next value.

        Args:
            block: Wait for a value while the stream is open and empty
            timeout: Upper bound on the wait in seconds (None waits forever)

        Returns:
            The next value, or None once the stream is closed and drained

        Raises:
            queue.Empty: open and empty stream on a non-blocking read or after the timeout
            ConcurrencyFailure: the producers failed and every buffered value was read
        """
        with self._cond:
            if block:
                ready = self._cond.wait_for(lambda: self._buffer or self._closed, timeout)
                if not ready:
                    raise queue.Empty
            if self._buffer:
                value = self._buffer.popleft()
                self._cond.notify_all()
                return value
            if self._closed:
                if self._error is not None:
                    raise self._error.with_traceback(None)
                return None
            raise queue.Empty

    def __iter__(self) -> "FactorStream":
        return self

    def __next__(self) -> int:
        value = self.get()
        if value is None:
            raise StopIteration
        return value

    def collect(self) -> list[int]:
        """Drain the stream into a list, blocking until it closes."""
        return list(self)

    def close(self) -> None:
        """Mark end-of-sequence. Idempotent."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        logger.debug("Factor stream closed")

    def fail(self, error: BaseException) -> None:
        """Close the stream with a terminal failure. No-op on a closed stream."""
        with self._cond:
            if self._closed:
                return
            self._error = error
            self._closed = True
            self._cond.notify_all()
        logger.debug(f"Factor stream failed: {error!r}")

    def cancel(self) -> None:
        """Abandon the stream: close it early and notify the producers."""
        with self._cond:
            if self._closed:
                return
            self._cancelled = True
            self._closed = True
            callbacks = list(self._cancel_callbacks)
            self._cond.notify_all()
        logger.debug("Factor stream cancelled by consumer")
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback for cancel(); runs immediately if already cancelled."""
        with self._cond:
            if not self._cancelled:
                self._cancel_callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the stream is closed. Returns False if the timeout elapsed first."""
        with self._cond:
            return self._cond.wait_for(lambda: self._closed, timeout)

    def __enter__(self) -> "FactorStream":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cancel()
        return False
