#!/usr/bin/env python3
"""Exception Hierarchy for the Intune bulk assignment client.

Errors raised by the Graph client, the token manager and the bulk
assignment engine. Per-item failures inside a batch are never raised;
they are recorded on the work item. Only run-level problems surface here.

Design Principles:
    - All exceptions inherit from IntuneError
    - Exceptions keep their context (original error, timestamp, details)
    - Exceptions are categorized by recoverability

Exception Hierarchy:
    IntuneError (base)
    ├── ConfigurationError (unrecoverable - fix config)
    ├── AuthenticationError (may be recoverable - refresh token)
    │   ├── TokenFetchError
    │   ├── TokenExpiredError
    │   └── InvalidCredentialsError
    ├── APIError (may be recoverable - retry)
    │   ├── ValidationError (400)
    │   ├── ForbiddenError (403)
    │   ├── NotFoundError (404)
    │   ├── ConflictError (409)
    │   ├── RateLimitError (429)
    │   └── ServerError (5xx)
    ├── NetworkError (recoverable - retry)
    │   ├── ConnectionError
    │   └── TimeoutError
    ├── CircuitOpenError
    ├── BatchLimitError
    ├── OperationCancelledError
    └── AssignmentError
        ├── PartialFailureError
        └── TransportUnavailableError
"""
from datetime import datetime, timezone
from typing import Any, Optional

# ============================================
# Base Exception
# ============================================

class IntuneError(Exception):
    """Base exception for all client and engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "RATE_LIMIT_EXCEEDED")
        details: Additional context as a dictionary
        timestamp: When the error occurred
        cause: The original exception that caused this error
        recoverable: Whether this error might be recoverable with retry
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__.upper()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        self.cause = cause
        self.recoverable = recoverable

        if cause:
            self.__cause__ = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.insert(0, f"[{self.code}]")
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            parts.append(f"({detail_str})")
        return " ".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code!r}, "
            f"details={self.details!r}, "
            f"recoverable={self.recoverable})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "recoverable": self.recoverable,
            "cause": str(self.cause) if self.cause else None,
        }


# ============================================
# Configuration Errors (Unrecoverable)
# ============================================

class ConfigurationError(IntuneError):
    """Raised when configuration is missing or invalid."""

    def __init__(
        self,
        message: str,
        missing_keys: Optional[list[str]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if missing_keys:
            details["missing_keys"] = missing_keys
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details=details,
            recoverable=False,
            **kwargs,
        )


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(IntuneError):
    """Base class for authentication-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class TokenFetchError(AuthenticationError):
    """Raised when a token cannot be obtained from the identity platform."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 1,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code:
            details["status_code"] = status_code
        details["attempts"] = attempts
        super().__init__(
            message,
            code="TOKEN_FETCH_ERROR",
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.attempts = attempts


class TokenExpiredError(AuthenticationError):
    """Raised when Graph rejects the bearer token (HTTP 401)."""

    def __init__(self, message: str = "Access token has expired", **kwargs):
        super().__init__(message, code="TOKEN_EXPIRED", **kwargs)


class InvalidCredentialsError(AuthenticationError):
    """Raised when the app registration credentials are rejected."""

    def __init__(
        self,
        message: str = "Invalid client credentials",
        **kwargs,
    ):
        super().__init__(
            message,
            code="INVALID_CREDENTIALS",
            recoverable=False,
            **kwargs,
        )


# ============================================
# API Errors
# ============================================

class APIError(IntuneError):
    """Base class for Graph API response errors.

    Attributes:
        status_code: HTTP status code
        endpoint: API endpoint that was called
        response_body: Raw response body (may be truncated)
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        endpoint: Optional[str] = None,
        response_body: Optional[str] = None,
        method: str = "GET",
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if method:
            details["method"] = method
        if response_body:
            details["response_body"] = response_body[:500]

        kwargs.setdefault("recoverable", status_code in (429, 500, 502, 503, 504))
        kwargs.setdefault("code", f"API_ERROR_{status_code}")

        super().__init__(
            message,
            details=details,
            **kwargs,
        )
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_body = response_body
        self.method = method


class ValidationError(APIError):
    """Raised when Graph rejects a request as malformed (HTTP 400)."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("status_code", 400)
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            recoverable=False,
            **kwargs,
        )


class ForbiddenError(APIError):
    """Raised when the app registration lacks a permission (HTTP 403)."""

    def __init__(self, message: str = "Insufficient permissions", **kwargs):
        kwargs.setdefault("status_code", 403)
        super().__init__(
            message,
            code="FORBIDDEN",
            recoverable=False,
            **kwargs,
        )


class NotFoundError(APIError):
    """Raised when requested resource is not found (HTTP 404)."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        **kwargs,
    ):
        message = f"{resource_type} not found"
        if resource_id:
            message = f"{resource_type} '{resource_id}' not found"

        kwargs.setdefault("status_code", 404)
        details = kwargs.pop("details", {})
        details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        super().__init__(
            message,
            code="NOT_FOUND",
            details=details,
            recoverable=False,
            **kwargs,
        )


class ConflictError(APIError):
    """Raised when the resource already exists (HTTP 409)."""

    def __init__(self, message: str = "Resource already exists", **kwargs):
        kwargs.setdefault("status_code", 409)
        super().__init__(
            message,
            code="CONFLICT",
            recoverable=False,
            **kwargs,
        )


class RateLimitError(APIError):
    """Raised when the API throttles the caller (HTTP 429).

    Attributes:
        retry_after: Seconds to wait before retrying (from Retry-After header)
    """

    DEFAULT_RETRY_AFTER = 10

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("status_code", 429)
        details = kwargs.pop("details", {})
        if retry_after:
            details["retry_after_seconds"] = retry_after
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            details=details,
            **kwargs,
        )
        self.retry_after = retry_after or self.DEFAULT_RETRY_AFTER


class ServerError(APIError):
    """Raised when server returns 5xx error."""

    def __init__(
        self,
        message: str = "Server error",
        **kwargs,
    ):
        kwargs.setdefault("status_code", 500)
        super().__init__(
            message,
            code="SERVER_ERROR",
            recoverable=True,
            **kwargs,
        )


# ============================================
# Network Errors (Usually Recoverable)
# ============================================

class NetworkError(IntuneError):
    """Base class for network-related errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, **kwargs)


class ConnectionError(NetworkError):
    """Raised when connection to the server fails."""

    def __init__(
        self,
        message: str = "Failed to connect to server",
        host: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if host:
            details["host"] = host
        super().__init__(
            message,
            code="CONNECTION_ERROR",
            details=details,
            **kwargs,
        )


class TimeoutError(NetworkError):
    """Raised when a request times out."""

    def __init__(
        self,
        message: str = "Request timed out",
        timeout_seconds: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if timeout_seconds:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message,
            code="TIMEOUT_ERROR",
            details=details,
            **kwargs,
        )


# ============================================
# Resilience Errors
# ============================================

class CircuitOpenError(IntuneError):
    """Raised when circuit breaker is open and requests are being rejected.

    Attributes:
        reset_at: When the circuit breaker will attempt to close
    """

    def __init__(
        self,
        message: str = "Circuit breaker is open, requests rejected",
        reset_at: Optional[datetime] = None,
        failure_count: int = 0,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if reset_at:
            details["reset_at"] = reset_at.isoformat()
        details["failure_count"] = failure_count

        super().__init__(
            message,
            code="CIRCUIT_OPEN",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.reset_at = reset_at
        self.failure_count = failure_count


class BatchLimitError(IntuneError):
    """Raised when a $batch call carries more sub-requests than allowed.

    Attributes:
        request_count: Number of sub-requests provided
        max_requests: Maximum allowed per batch
    """

    def __init__(
        self,
        request_count: int,
        max_requests: int = 20,
        **kwargs,
    ):
        message = f"Batch size ({request_count}) exceeds maximum ({max_requests})"
        details = kwargs.pop("details", {})
        details["request_count"] = request_count
        details["max_requests"] = max_requests

        super().__init__(
            message,
            code="BATCH_LIMIT_EXCEEDED",
            details=details,
            recoverable=False,
            **kwargs,
        )
        self.request_count = request_count
        self.max_requests = max_requests


class OperationCancelledError(IntuneError):
    """Raised when a cancellable wait is interrupted by its token."""

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(
            message,
            code="OPERATION_CANCELLED",
            recoverable=False,
            **kwargs,
        )


# ============================================
# Bulk Assignment Errors
# ============================================

class AssignmentError(IntuneError):
    """Base class for run-level bulk assignment errors."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, **kwargs)


class PartialFailureError(AssignmentError):
    """Raised when a run completes but some items permanently failed.

    The run itself finished; callers decide how to present the partial
    success. The full per-item outcome is available on ``result``.

    Attributes:
        successful: Number of items that ended completed
        failed: Number of items that ended failed
        result: The RunResult of the run
    """

    def __init__(
        self,
        successful: int,
        failed: int,
        result: Any = None,
        **kwargs,
    ):
        message = f"{successful} assignment(s) succeeded, {failed} failed"
        details = kwargs.pop("details", {})
        details["successful"] = successful
        details["failed"] = failed

        super().__init__(
            message,
            code="PARTIAL_FAILURE",
            details=details,
            recoverable=True,
            **kwargs,
        )
        self.successful = successful
        self.failed = failed
        self.result = result


class TransportUnavailableError(AssignmentError):
    """Raised when no batch could be delivered to the API at all."""

    def __init__(
        self,
        message: str = "No batch could be delivered to the API",
        result: Any = None,
        **kwargs,
    ):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, code="TRANSPORT_UNAVAILABLE", **kwargs)
        self.result = result
