"""Classification of per-item batch responses.

A sub-response is mapped onto exactly one Outcome by its HTTP status.
The body is read only to enrich the diagnostic message; it never changes
the classification.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from ...api.client import parse_retry_after
from .entities import ALREADY_EXISTS, FailureCode


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    ALREADY_EXISTS = "already_exists"
    RATE_LIMITED = "rate_limited"
    PERMANENT_FAILURE = "permanent_failure"
    TRANSIENT_FAILURE = "transient_failure"


@dataclass(frozen=True)
class Outcome:
    """Result of one HTTP response for one work item."""

    kind: OutcomeKind
    status_code: int
    message: Optional[str] = None
    code: Optional[FailureCode] = None
    retry_after_seconds: Optional[float] = None

    @property
    def is_success(self) -> bool:
        """AlreadyExists counts as success: the remote state is already right."""
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.ALREADY_EXISTS)

    @property
    def is_rate_limited(self) -> bool:
        return self.kind == OutcomeKind.RATE_LIMITED

    @property
    def is_permanent(self) -> bool:
        return self.kind == OutcomeKind.PERMANENT_FAILURE

    @property
    def is_transient(self) -> bool:
        return self.kind == OutcomeKind.TRANSIENT_FAILURE


def error_detail(body: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Pull ``error.message`` (or ``error.code``) out of a Graph error body."""
    if not isinstance(body, Mapping):
        return None
    error = body.get("error")
    if isinstance(error, Mapping):
        message = error.get("message") or error.get("code")
        return str(message) if message else None
    if isinstance(error, str):
        return error
    return None


def header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def classify_response(
    status: int,
    body: Optional[Mapping[str, Any]] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> Outcome:
    """Map an HTTP status (plus optional body/headers) to an Outcome.

    2xx -> Success, 409 -> AlreadyExists, 429 -> RateLimited,
    400/403/404 -> PermanentFailure, anything else -> TransientFailure.
    """
    detail = error_detail(body)

    if 200 <= status < 300:
        return Outcome(OutcomeKind.SUCCESS, status)

    if status == 409:
        return Outcome(OutcomeKind.ALREADY_EXISTS, status, message=ALREADY_EXISTS)

    if status == 429:
        retry_after = parse_retry_after(header_value(headers, "Retry-After"))
        return Outcome(
            OutcomeKind.RATE_LIMITED,
            status,
            message="Rate limited",
            retry_after_seconds=retry_after,
        )

    if status == 400:
        return Outcome(
            OutcomeKind.PERMANENT_FAILURE,
            status,
            message=f"Invalid request: {detail or 'rejected by the API'}",
            code=FailureCode.INVALID_REQUEST,
        )

    if status == 403:
        return Outcome(
            OutcomeKind.PERMANENT_FAILURE,
            status,
            message=f"Insufficient permissions: {detail or 'access denied'}",
            code=FailureCode.FORBIDDEN,
        )

    if status == 404:
        return Outcome(
            OutcomeKind.PERMANENT_FAILURE,
            status,
            message=f"Artifact or target no longer exists: {detail or 'not found'}",
            code=FailureCode.NOT_FOUND,
        )

    message = f"Request failed with status {status}"
    if detail:
        message = f"{message}: {detail}"
    return Outcome(
        OutcomeKind.TRANSIENT_FAILURE,
        status,
        message=message,
        code=FailureCode.TRANSIENT_SERVER_ERROR,
    )
