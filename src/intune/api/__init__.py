"""Microsoft Graph API modules.

This package provides the HTTP plumbing shared by the bulk assignment
engine and its adapters.

Classes:
    GraphClient: Async HTTP client with pagination, $batch, retry and circuit breaker
    TokenManager: OAuth2 client-credentials token management with caching

Exceptions:
    IntuneError: Base exception for all errors
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: Authentication failures
    APIError: API request failures
    RateLimitError: Rate limit exceeded
    NetworkError: Network connectivity issues
    PartialFailureError: A bulk run finished with failed items

Resilience:
    CancellationToken: Cooperative cancellation flag
    Clock / SystemClock: Time source with a cancellable sleep
    CircuitBreaker: Prevent cascading failures
"""
from .auth import CachedToken, TokenManager
from .client import MAX_BATCH_REQUESTS, GraphClient, parse_retry_after
from .exceptions import (
    APIError,
    AssignmentError,
    AuthenticationError,
    BatchLimitError,
    CircuitOpenError,
    ConfigurationError,
    ConflictError,
    ConnectionError,
    ForbiddenError,
    IntuneError,
    InvalidCredentialsError,
    NetworkError,
    NotFoundError,
    OperationCancelledError,
    PartialFailureError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    TokenFetchError,
    TransportUnavailableError,
    ValidationError,
)
from .resilience import (
    CancellationToken,
    CircuitBreaker,
    CircuitState,
    Clock,
    SystemClock,
    backoff_delay,
    sleep,
)

__all__ = [
    # Client
    "GraphClient",
    "MAX_BATCH_REQUESTS",
    "parse_retry_after",
    # Auth
    "TokenManager",
    "CachedToken",
    # Exceptions
    "IntuneError",
    "ConfigurationError",
    "AuthenticationError",
    "TokenFetchError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "APIError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitError",
    "ServerError",
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    "CircuitOpenError",
    "BatchLimitError",
    "OperationCancelledError",
    "AssignmentError",
    "PartialFailureError",
    "TransportUnavailableError",
    # Resilience
    "CancellationToken",
    "Clock",
    "SystemClock",
    "sleep",
    "backoff_delay",
    "CircuitBreaker",
    "CircuitState",
]
