"""Bulk assignment run configuration.

Environment Variables:
- INTUNE_BATCH_LIMIT: Sub-requests per $batch call, 1..20 (default: 20)
- INTUNE_RETRY_LIMIT: Transient retries per item (default: 3)
- INTUNE_DEFAULT_RETRY_AFTER: Wait on 429 without Retry-After, seconds (default: 10)
- INTUNE_SETTLE_SECONDS: Delay before the verification refresh (default: 2)
- INTUNE_MAX_CONCURRENT_BATCHES: Batches in flight at once (default: 1)
- INTUNE_BACKOFF_BASE: Transient retry delay is base ** attempt (default: 2)
- INTUNE_RATE_LIMIT_RETRY_LIMIT: Cap on 429 resubmissions per item (default: unbounded)
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from ..api.client import MAX_BATCH_REQUESTS
from ..api.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number, got {raw!r}",
            details={"variable": name},
            cause=e,
        )


@dataclass
class BulkAssignmentConfig:
    """Tunables for a bulk assignment run."""

    batch_limit: int = MAX_BATCH_REQUESTS
    retry_limit: int = 3
    default_retry_after_seconds: float = 10.0
    post_submit_settle_seconds: float = 2.0
    max_concurrent_batches: int = 1
    backoff_base_seconds: float = 2.0
    rate_limit_retry_limit: Optional[int] = None

    def __post_init__(self):
        if not 1 <= self.batch_limit <= MAX_BATCH_REQUESTS:
            raise ConfigurationError(
                f"batch_limit must be between 1 and {MAX_BATCH_REQUESTS}, got {self.batch_limit}"
            )
        if self.retry_limit < 0:
            raise ConfigurationError(f"retry_limit must be >= 0, got {self.retry_limit}")
        if self.default_retry_after_seconds < 0 or self.post_submit_settle_seconds < 0:
            raise ConfigurationError("Wait durations must not be negative")
        if self.max_concurrent_batches < 1:
            raise ConfigurationError(
                f"max_concurrent_batches must be >= 1, got {self.max_concurrent_batches}"
            )
        if self.rate_limit_retry_limit is not None and self.rate_limit_retry_limit < 0:
            raise ConfigurationError("rate_limit_retry_limit must be >= 0")

    @classmethod
    def from_env(cls) -> "BulkAssignmentConfig":
        """Build a config from INTUNE_* environment variables (and .env)."""
        load_dotenv()
        config = cls(
            batch_limit=_env_number("INTUNE_BATCH_LIMIT", MAX_BATCH_REQUESTS, int),
            retry_limit=_env_number("INTUNE_RETRY_LIMIT", 3, int),
            default_retry_after_seconds=_env_number("INTUNE_DEFAULT_RETRY_AFTER", 10.0, float),
            post_submit_settle_seconds=_env_number("INTUNE_SETTLE_SECONDS", 2.0, float),
            max_concurrent_batches=_env_number("INTUNE_MAX_CONCURRENT_BATCHES", 1, int),
            backoff_base_seconds=_env_number("INTUNE_BACKOFF_BASE", 2.0, float),
            rate_limit_retry_limit=_env_number("INTUNE_RATE_LIMIT_RETRY_LIMIT", None, int),
        )
        logger.debug(f"Loaded bulk assignment config: {config}")
        return config
