from __future__ import annotations

import errno
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Any, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from snaptree.exceptions import CancelledError
from snaptree.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from snaptree.settings import RetrySettings

T = TypeVar("T")
R = TypeVar("R")

RETRYABLE_ERRNOS = frozenset({
    errno.EBUSY,
    errno.EPERM,
    errno.EACCES,
    errno.EMFILE,
    errno.ENFILE,
    errno.EAGAIN,
    errno.EIO,
})


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and an operation."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            listeners = list(self._listeners)
        for listener in listeners:
            listener()

    def add_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def raise_if_cancelled(self) -> None:
        """Raise CancelledError when cancellation was requested.

        Raises:
            CancelledError: If :meth:`cancel` has been called.
        """
        if self._event.is_set():
            raise CancelledError


def is_retryable_os_error(error: BaseException) -> bool:
    """Transient filesystem failures worth another attempt."""
    return isinstance(error, OSError) and error.errno in RETRYABLE_ERRNOS


def call_with_retry(
    fn: Callable[[], R],
    *,
    settings: RetrySettings,
    retryable: Callable[[BaseException], bool] = is_retryable_os_error,
    operation: str = "",
) -> R:
    """Call ``fn`` and retry transient failures with exponential backoff.

    Args:
        fn: Zero-argument callable.
        settings: Attempt count and delay bounds.
        retryable: Predicate selecting the errors worth retrying.
        operation: Label used in log events.

    Returns:
        The value returned by ``fn``.

    Raises:
        Exception: The last error once attempts are exhausted, or any non-retryable error.
    """

    def log_retry(state: Any) -> None:  # noqa: ANN401
        logger.warning(
            "retrying",
            operation=operation,
            attempt=state.attempt_number,
            error=str(state.outcome.exception()) if state.outcome else None,
        )

    retrying = Retrying(
        stop=stop_after_attempt(settings.attempts),
        wait=wait_exponential(multiplier=settings.initial_delay, min=settings.initial_delay, max=settings.max_delay),
        retry=retry_if_exception(retryable),
        before_sleep=log_retry,
        reraise=True,
    )
    return retrying(fn)


class BoundedWorkerQueue:
    """Run units of work on at most ``workers`` threads.

    Results are yielded in submission order. The token, when given, is checked
    before each unit is scheduled and before each result is handed out.
    """

    def __init__(self, workers: int, token: CancellationToken | None = None) -> None:
        if workers < 1:
            msg = f"workers must be at least 1, got {workers}"
            raise ValueError(msg)
        self.workers = workers
        self.token = token

    def _check(self) -> None:
        if self.token is not None:
            self.token.raise_if_cancelled()

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> Iterator[R]:
        """Apply ``fn`` to every item, keeping at most ``workers`` units in flight."""
        pending: list[Future[R]] = []
        source = iter(items)
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            try:
                for item in source:
                    self._check()
                    pending.append(pool.submit(fn, item))
                    if len(pending) >= self.workers:
                        yield pending.pop(0).result()
                while pending:
                    self._check()
                    yield pending.pop(0).result()
            finally:
                for future in pending:
                    future.cancel()

    def drain(
        self,
        fn: Callable[[T], Iterable[T]],
        seeds: Iterable[T],
    ) -> None:
        """Process a work queue that grows as units produce follow-up units.

        ``fn`` handles one unit and returns the new units it discovered; the
        call returns once the queue is empty and no unit is in flight.
        """
        queue: list[T] = list(seeds)
        in_flight: set[Future[Iterable[T]]] = set()
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            try:
                while queue or in_flight:
                    self._check()
                    while queue and len(in_flight) < self.workers:
                        in_flight.add(pool.submit(fn, queue.pop(0)))
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        queue.extend(future.result())
            finally:
                for future in in_flight:
                    future.cancel()
