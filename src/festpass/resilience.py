"""Guards for the external AI enhancement call.

A provider that keeps failing is cut off for a cool-down period, and a
single call that hangs is abandoned after a deadline.  Both guards raise
their own exception types; the pipeline treats either one as a reason to
fall back to local enhancement.
"""

from __future__ import annotations

import functools
import logging
import threading
import time
from typing import Any, Callable, TypeVar

log = logging.getLogger("festpass.resilience")

T = TypeVar("T")


class CircuitOpen(Exception):
    """The provider is cooling down; the call was not attempted."""


class OperationTimeout(Exception):
    """The call did not finish before its deadline."""


class CircuitBreaker:
    """Stop calling a provider after *failure_threshold* consecutive errors.

    While open, calls fail fast with ``CircuitOpen``.  Once
    *recovery_timeout* seconds pass the breaker lets trial calls through
    (half open); *success_threshold* good trials close it again and any
    failed trial re-opens it for another full cool-down.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 1,
        name: str = "ai-enhance",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, failure_threshold)
        self.recovery_timeout = recovery_timeout
        self.success_threshold = max(1, success_threshold)
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = self.CLOSED
        self._failures = 0
        self._trial_successes = 0
        self._open_until = 0.0

    @property
    def state(self) -> str:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        return self._failures

    def _current_state(self) -> str:
        # Caller holds the lock.
        if self._state == self.OPEN and self._clock() >= self._open_until:
            self._state = self.HALF_OPEN
            self._trial_successes = 0
        return self._state

    def _trip(self) -> None:
        self._state = self.OPEN
        self._open_until = self._clock() + self.recovery_timeout

    def record_success(self) -> None:
        with self._lock:
            if self._current_state() != self.HALF_OPEN:
                self._failures = 0
                return
            self._trial_successes += 1
            if self._trial_successes >= self.success_threshold:
                self._state = self.CLOSED
                self._failures = 0
                log.info("Enhancement provider '%s' recovered", self.name)

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            state = self._current_state()
            if state == self.HALF_OPEN:
                self._trip()
                log.warning("Enhancement provider '%s' failed its trial call", self.name)
            elif state == self.CLOSED and self._failures >= self.failure_threshold:
                self._trip()
                log.warning(
                    "Enhancement provider '%s' cut off for %.0fs after %d failures",
                    self.name, self.recovery_timeout, self._failures,
                )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self.state == self.OPEN:
            raise CircuitOpen(f"Circuit breaker '{self.name}' is open")
        try:
            result = func(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def guarded(*args: Any, **kwargs: Any) -> T:
            return self.call(func, *args, **kwargs)

        return guarded

    def reset(self) -> None:
        with self._lock:
            self._state = self.CLOSED
            self._failures = 0
            self._trial_successes = 0
            self._open_until = 0.0


class _Outcome:
    """Result slot filled by the call thread."""

    __slots__ = ("done", "value", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: BaseException | None = None


def with_timeout(seconds: float) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Wrap *func* so the caller gives up after *seconds*.

    The call runs in a daemon thread.  On timeout that thread is left to
    finish on its own and whatever it produces is dropped.
    """

    def decorate(func: Callable[..., T]) -> Callable[..., T]:
        label = getattr(func, "__qualname__", None) or getattr(func, "__name__", "call")

        @functools.wraps(func)
        def bounded(*args: Any, **kwargs: Any) -> T:
            outcome = _Outcome()

            def run() -> None:
                try:
                    outcome.value = func(*args, **kwargs)
                except BaseException as exc:  # re-raised in the caller's thread
                    outcome.error = exc
                finally:
                    outcome.done.set()

            threading.Thread(target=run, name=f"timeout:{label}", daemon=True).start()
            if not outcome.done.wait(seconds):
                raise OperationTimeout(f"{label} exceeded timeout of {seconds}s")
            if outcome.error is not None:
                raise outcome.error
            return outcome.value

        return bounded

    return decorate
