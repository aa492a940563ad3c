"""Background execution helpers: cancellable latest-wins tasks and debouncing."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Generic, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised inside a task when its cancellation token is set."""


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()


TaskFunction = Callable[[CancellationToken, Callable[[int], None]], T]


class LatestTaskRunner(Generic[T]):
    """Run tasks on a worker thread where only the newest submission counts.

    ``submit`` cancels the token of any in-flight task. A task that finishes after
    being superseded has its result discarded: its future raises
    :class:`OperationCancelled` and ``on_result`` is not called.
    """

    def __init__(
        self,
        *,
        on_result: Callable[[T], None] | None = None,
        on_progress: Callable[[int], None] | None = None,
        max_workers: int = 1,
    ) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sheet-task")
        self._lock = threading.Lock()
        self._generation = 0
        self._token: CancellationToken | None = None
        self._on_result = on_result
        self._on_progress = on_progress

    @property
    def generation(self) -> int:
        return self._generation

    def submit(self, func: TaskFunction[T]) -> "Future[T]":
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._generation += 1
            generation = self._generation
            token = CancellationToken()
            self._token = token
        logger.debug("task.submit generation=%s", generation)
        return self._executor.submit(self._run, func, token, generation)

    def cancel(self) -> None:
        with self._lock:
            if self._token is not None:
                self._token.cancel()
            self._generation += 1

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _run(self, func: TaskFunction[T], token: CancellationToken, generation: int) -> T:
        def report(percent: int) -> None:
            if self._on_progress is not None and self._is_current(generation) and not token.cancelled:
                self._on_progress(max(0, min(100, int(percent))))

        result = func(token, report)
        if token.cancelled or not self._is_current(generation):
            logger.debug("task.stale generation=%s discarded", generation)
            raise OperationCancelled()
        if self._on_result is not None:
            self._on_result(result)
        return result

    def shutdown(self, wait: bool = True) -> None:
        self.cancel()
        self._executor.shutdown(wait=wait)


class Debouncer:
    """Coalesce bursts of calls into one call ``delay`` seconds after the last."""

    def __init__(self, callback: Callable[..., Any], delay: float = 0.05) -> None:
        self._callback = callback
        self._delay = max(0.0, float(delay))
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._pending: tuple[tuple[Any, ...], dict[str, Any]] | None = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def trigger(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._pending = (args, kwargs)
            self._timer = threading.Timer(self._delay, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _take_pending(self) -> tuple[tuple[Any, ...], dict[str, Any]] | None:
        with self._lock:
            pending = self._pending
            self._pending = None
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            return pending

    def _fire(self) -> None:
        pending = self._take_pending()
        if pending is None:
            return
        args, kwargs = pending
        self._callback(*args, **kwargs)

    def flush(self) -> bool:
        """Run a pending call immediately. Returns False if nothing was pending."""

        pending = self._take_pending()
        if pending is None:
            return False
        args, kwargs = pending
        self._callback(*args, **kwargs)
        return True

    def cancel(self) -> None:
        self._take_pending()
