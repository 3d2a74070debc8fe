"""
Circuit Breaker — per-dependency failure isolation

State machine (one instance per dependency name):

  closed ──(max_failures consecutive failures)──▶ open
  open   ──(timeout_seconds elapsed)────────────▶ half_open
  half_open ──(trial succeeds)──▶ closed   (failures reset)
  half_open ──(trial fails)─────▶ open     (cooldown restarts)

While open, calls are rejected with CircuitOpenError without invoking the
operation.  Half-open admits exactly one trial call; concurrent callers are
rejected until the trial settles.

Exceptions listed in `ignore` (the capacity-exceeded routing signal) pass
through without counting as either a failure or a success.

Breakers live in a CircuitBreakerRegistry that is built once per process
and injected into the orchestrator; there is no module-level state.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from docproc.core.exceptions import CircuitOpenError

if TYPE_CHECKING:
    from docproc.core.config import Settings
    from docproc.resilience.retry import Operation, RetryExecutor, RetryPolicy, RetryResult

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED    = "closed"
    OPEN      = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    name:        str
    state:       CircuitState
    failures:    int
    opened_at:   float | None
    retry_after: float = 0.0          # seconds until a trial call is allowed


class CircuitBreaker:
    def __init__(
        self,
        name:            str,
        max_failures:    int   = 3,
        timeout_seconds: float = 60.0,
        ignore:          tuple[type[BaseException], ...] = (),
        clock:           Clock | None = None,
    ) -> None:
        self.name             = name
        self.max_failures     = max_failures
        self.timeout_seconds  = timeout_seconds
        self._ignore          = ignore
        self._clock           = clock or time.monotonic

        self._state:          CircuitState = CircuitState.CLOSED
        self._failures:       int          = 0
        self._opened_at:      float | None = None
        self._trial_in_flight: bool        = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.timeout_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("Circuit half-open | dependency=%s", self.name)
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def snapshot(self) -> BreakerSnapshot:
        state = self.state
        return BreakerSnapshot(
            name=self.name,
            state=state,
            failures=self._failures,
            opened_at=self._opened_at,
            retry_after=self._retry_after() if state is CircuitState.OPEN else 0.0,
        )

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.timeout_seconds - (self._clock() - self._opened_at))

    def _acquire(self) -> None:
        state = self.state
        if state is CircuitState.OPEN:
            raise CircuitOpenError(self.name, self._retry_after())
        if state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            logger.info("Circuit closed | dependency=%s", self.name)
        self._state           = CircuitState.CLOSED
        self._failures        = 0
        self._opened_at       = None
        self._trial_in_flight = False

    def _on_failure(self) -> None:
        self._failures       += 1
        self._trial_in_flight = False
        if self._state is CircuitState.HALF_OPEN or self._failures >= self.max_failures:
            self._state     = CircuitState.OPEN
            self._opened_at = self._clock()
            logger.warning(
                "Circuit opened | dependency=%s failures=%d open_for=%.0fs",
                self.name, self._failures, self.timeout_seconds,
            )

    def _on_ignored(self) -> None:
        self._trial_in_flight = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def call(self, operation: "Operation[Any]") -> Any:
        """Invoke `operation` once under the breaker."""
        self._acquire()
        try:
            value = await operation()
        except self._ignore:
            self._on_ignored()
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return value

    async def run(
        self,
        operation: "Operation[Any]",
        policy:    "RetryPolicy",
        executor:  "RetryExecutor",
    ) -> "RetryResult[Any]":
        """
        Run the whole retry loop under the breaker.

        One exhausted RetryResult counts as one failure, however many
        attempts it took.  Raises CircuitOpenError when rejected.
        """
        self._acquire()
        try:
            result = await executor.execute(operation, policy)
        except BaseException:
            self._on_ignored()
            raise

        if result.success:
            self._on_success()
        elif self._ignore and isinstance(result.error, self._ignore):
            self._on_ignored()
        else:
            self._on_failure()
        return result


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

DEFAULT_BREAKERS: dict[str, tuple[int, float]] = {
    "extraction":   (3, 120.0),
    "embeddings":   (5, 60.0),
    "vector_index": (3, 90.0),
}


class CircuitBreakerRegistry:
    """Process-wide map of dependency name to CircuitBreaker."""

    def __init__(
        self,
        config: dict[str, tuple[int, float]] | None = None,
        ignore: tuple[type[BaseException], ...] = (),
        clock:  Clock | None = None,
    ) -> None:
        self._config   = dict(DEFAULT_BREAKERS if config is None else config)
        self._ignore   = ignore
        self._clock    = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        ignore:   tuple[type[BaseException], ...] = (),
        clock:    Clock | None = None,
    ) -> "CircuitBreakerRegistry":
        return cls(
            config={
                "extraction": (
                    settings.breaker_extraction_max_failures,
                    settings.breaker_extraction_timeout,
                ),
                "embeddings": (
                    settings.breaker_embeddings_max_failures,
                    settings.breaker_embeddings_timeout,
                ),
                "vector_index": (
                    settings.breaker_vector_index_max_failures,
                    settings.breaker_vector_index_timeout,
                ),
            },
            ignore=ignore,
            clock=clock,
        )

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            max_failures, timeout = self._config.get(name, (3, 60.0))
            breaker = CircuitBreaker(
                name,
                max_failures=max_failures,
                timeout_seconds=timeout,
                ignore=self._ignore,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, BreakerSnapshot]:
        return {name: b.snapshot() for name, b in self._breakers.items()}
