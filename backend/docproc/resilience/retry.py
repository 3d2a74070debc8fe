"""
Retry Executor — bounded exponential backoff for external calls

Every call the orchestrator makes to an external dependency (extraction,
embeddings, vector index, blob store) goes through RetryExecutor.execute()
with a named RetryPolicy:

  delay(attempt) = min(base_delay * backoff_factor ** (attempt - 1), max_delay)

Transient errors (throttling, 5xx, timeouts, dropped connections) are
retried until the policy's attempt budget is spent.  Anything else fails
after the first attempt.  The executor never raises for operation errors:
it returns a RetryResult and lets the caller decide.

The sleep function is injectable so tests run without real delays.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from docproc.core.exceptions import (
    CapacityExceededError,
    CircuitOpenError,
    PermanentExtractionError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
SleepFn   = Callable[[float], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_AWS_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "ProvisionedThroughputExceededException",
    "ProvisionedThroughputExceeded",
    "LimitExceededException",
    "SlowDown",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalServerError",
    "InternalFailure",
    "RequestTimeout",
    "RequestTimeoutException",
})

_RETRYABLE_EXCEPTION_TYPES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx / pinecone transport
    "ConnectTimeout",
    "ReadTimeout",
    "RemoteProtocolError",
    "ServiceException",
)

_NEVER_RETRY = (CapacityExceededError, CircuitOpenError, PermanentExtractionError)


def _status_code(exc: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_transient_error(exc: BaseException) -> bool:
    """True if the error is worth another attempt."""
    if isinstance(exc, _NEVER_RETRY):
        return False

    if isinstance(exc, ClientError):
        code   = exc.response.get("Error", {}).get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in _RETRYABLE_AWS_CODES or status == 429 or status >= 500

    if isinstance(exc, (
        EndpointConnectionError,
        ConnectTimeoutError,
        ReadTimeoutError,
        ConnectionClosedError,
    )):
        return True

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    status = _status_code(exc)
    if status is not None and (status == 429 or status >= 500):
        return True

    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


# ---------------------------------------------------------------------------
# Policy and result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    name:           str
    max_attempts:   int   = 3
    base_delay:     float = 1.0      # seconds
    max_delay:      float = 30.0     # seconds
    backoff_factor: float = 2.0
    is_retryable:   Callable[[BaseException], bool] = field(
        default=is_transient_error, compare=False, repr=False,
    )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following `attempt` (1-based)."""
        return min(self.base_delay * self.backoff_factor ** (attempt - 1), self.max_delay)


@dataclass
class RetryResult(Generic[T]):
    success:    bool
    value:      T | None = None
    error:      BaseException | None = None
    attempts:   int = 0              # invocations actually made
    elapsed_ms: int = 0

    def unwrap(self) -> T:
        """Return the value, or raise the last error."""
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError("RetryResult has neither value nor error")
        raise self.error


# Defaults tuned per dependency
EXTRACTION_POLICY   = RetryPolicy("extraction",   max_attempts=5, base_delay=2.0, max_delay=60.0, backoff_factor=2.5)
EMBEDDINGS_POLICY   = RetryPolicy("embeddings",   max_attempts=4, base_delay=3.0, max_delay=45.0, backoff_factor=2.0)
VECTOR_INDEX_POLICY = RetryPolicy("vector_index", max_attempts=3, base_delay=1.5, max_delay=20.0, backoff_factor=2.0)
BLOB_STORE_POLICY   = RetryPolicy("blob_store",   max_attempts=3, base_delay=2.0, max_delay=30.0, backoff_factor=2.0)

POLICIES: dict[str, RetryPolicy] = {
    p.name: p
    for p in (EXTRACTION_POLICY, EMBEDDINGS_POLICY, VECTOR_INDEX_POLICY, BLOB_STORE_POLICY)
}


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

class RetryExecutor:
    """
    Runs a zero-argument coroutine factory under a RetryPolicy.

    Usage::

        executor = RetryExecutor()
        result = await executor.execute(lambda: client.extract_sync(data), EXTRACTION_POLICY)
        if not result.success:
            ...
    """

    def __init__(self, sleep: SleepFn | None = None) -> None:
        self._sleep = sleep or asyncio.sleep

    async def execute(self, operation: Operation[T], policy: RetryPolicy) -> RetryResult[T]:
        t0       = time.perf_counter()
        attempt  = 0
        last_exc: BaseException | None = None

        while attempt < policy.max_attempts:
            attempt += 1
            try:
                value = await operation()
                if attempt > 1:
                    logger.info(
                        "Retry succeeded | policy=%s attempt=%d/%d",
                        policy.name, attempt, policy.max_attempts,
                    )
                return RetryResult(
                    success=True,
                    value=value,
                    attempts=attempt,
                    elapsed_ms=int((time.perf_counter() - t0) * 1000),
                )
            except Exception as exc:
                last_exc = exc
                if not policy.is_retryable(exc):
                    logger.debug(
                        "Non-retryable error | policy=%s attempt=%d error=%s",
                        policy.name, attempt, type(exc).__name__,
                    )
                    break
                if attempt >= policy.max_attempts:
                    break

                delay = policy.delay_for(attempt)
                logger.warning(
                    "Retryable error | policy=%s attempt=%d/%d delay=%.1fs error=%s",
                    policy.name, attempt, policy.max_attempts, delay, exc,
                )
                await self._sleep(delay)

        logger.error(
            "Retry exhausted | policy=%s attempts=%d error=%s",
            policy.name, attempt, last_exc,
        )
        return RetryResult(
            success=False,
            error=last_exc,
            attempts=attempt,
            elapsed_ms=int((time.perf_counter() - t0) * 1000),
        )
