from docproc.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from docproc.resilience.retry import (
    BLOB_STORE_POLICY,
    EMBEDDINGS_POLICY,
    EXTRACTION_POLICY,
    VECTOR_INDEX_POLICY,
    RetryExecutor,
    RetryPolicy,
    RetryResult,
    is_transient_error,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
    "is_transient_error",
    "EXTRACTION_POLICY",
    "EMBEDDINGS_POLICY",
    "VECTOR_INDEX_POLICY",
    "BLOB_STORE_POLICY",
]
