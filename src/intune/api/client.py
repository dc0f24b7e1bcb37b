#!/usr/bin/env python3
"""Async HTTP Client for Microsoft Graph (Intune endpoints).

Handles the common concerns of talking to Graph:

    - OAuth2 authentication via TokenManager
    - Automatic token refresh on 401 responses
    - Rate limit handling on 429 responses (honours Retry-After)
    - @odata.nextLink pagination
    - The JSON $batch endpoint (up to 20 sub-requests per call)
    - Connection pooling via shared aiohttp session
    - Circuit breaker for resilience against API outages

Design Philosophy:
    This client knows HOW to talk to Graph, but not WHAT to send. It has no
    knowledge of apps, groups or assignments; that belongs to the adapters
    that compose it.

Usage:
    async with GraphClient(token_manager) as client:
        app = await client.get("/deviceAppManagement/mobileApps/{id}")

        async for page in client.paginate("/deviceAppManagement/mobileApps"):
            for item in page:
                process(item)

        responses = await client.batch([
            {"id": "1", "method": "GET", "url": "/deviceAppManagement/mobileApps/{id}/assignments"},
        ])
"""
import asyncio
import logging
import os
from typing import Any, AsyncIterator, Optional

import aiohttp

from .auth import TokenManager
from .exceptions import (
    APIError,
    BatchLimitError,
    ConflictError,
    ConnectionError,
    ForbiddenError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TokenExpiredError,
    ValidationError,
)
from .resilience import CircuitBreaker, Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://graph.microsoft.com/beta"
MAX_BATCH_REQUESTS = 20


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds.

    Returns None when the header is absent or not a number (HTTP-date
    values are not used by Graph).
    """
    if value is None:
        return None
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return seconds


# ============================================
# The Client
# ============================================

class GraphClient:
    """Async HTTP client for the Microsoft Graph API.

    Use it as an async context manager so the session is closed:

        async with GraphClient(token_manager) as client:
            data = await client.get("/deviceManagement/deviceConfigurations")

    Attributes:
        token_manager: TokenManager instance for OAuth2 authentication
        base_url: Graph root including version (env: GRAPH_BASE_URL)
    """

    def __init__(
        self,
        token_manager: TokenManager,
        base_url: Optional[str] = None,
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
        max_retries: int = 3,
        clock: Optional[Clock] = None,
    ):
        self.token_manager = token_manager
        self.base_url = (
            base_url or os.getenv("GRAPH_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.max_retries = max_retries
        self._clock = clock or SystemClock()
        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name="graph_api",
                clock=self._clock,
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "GraphClient":
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=10, limit_per_host=10),
            timeout=aiohttp.ClientTimeout(total=60, connect=10),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _get_auth_headers(self) -> dict[str, str]:
        token = await self.token_manager.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _build_url(self, endpoint: str) -> str:
        # nextLink values are absolute
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}{endpoint}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a single HTTP request (no retry logic).

        Returns:
            Parsed JSON response, or an empty dict for bodiless responses

        Raises:
            APIError: If response status is not 2xx
            RuntimeError: If called outside of async context manager
            ConnectionError: If connection to server fails
            TimeoutError: If request times out
        """
        if not self._session:
            raise RuntimeError(
                "GraphClient must be used as async context manager: "
                "async with GraphClient(...) as client:"
            )

        url = self._build_url(endpoint)

        try:
            headers = await self._get_auth_headers()

            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=parse_retry_after(
                            response.headers.get("Retry-After")
                        ),
                    )

                if response.status == 204 or response.content_length == 0:
                    return {}
                try:
                    return await response.json()
                except ValueError as e:
                    raise NetworkError(
                        f"Malformed JSON in response to {method} {endpoint}",
                        cause=e,
                    )

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=60,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[float] = None,
    ) -> Exception:
        """Create the typed error for an HTTP error status."""
        if status == 401:
            return TokenExpiredError(
                "Access token expired or invalid",
                details={"endpoint": endpoint},
            )

        if status in (400, 422):
            return ValidationError(
                f"Validation failed for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 403:
            return ForbiddenError(
                f"Insufficient permissions for {method} {endpoint}",
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 404:
            return NotFoundError(
                resource_type="Resource",
                resource_id=endpoint,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 409:
            return ConflictError(
                f"Conflict for {method} {endpoint}",
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 429:
            return RateLimitError(
                f"Rate limit exceeded for {endpoint}",
                retry_after=retry_after,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status >= 500:
            return ServerError(
                f"Server error ({status}) for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        return APIError(
            f"{method} {endpoint} failed",
            status_code=status,
            endpoint=endpoint,
            method=method,
            response_body=response_body,
        )

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
        retry_throttling: bool = True,
    ) -> dict[str, Any]:
        """Make an HTTP request with automatic retry and circuit breaker.

            - 401 Unauthorized: Invalidate token, refresh, retry
            - 429 Rate Limited: Wait for Retry-After, retry
            - 5xx / network errors: Exponential backoff retry

        With ``retry_throttling=False`` 429 and 5xx / network errors are
        raised on the first occurrence so the caller can apply its own
        (cancellable, shared) waits.

        Raises:
            CircuitOpenError: If circuit breaker is open
            APIError: If request fails after all retries
            NetworkError: If network error persists after retries
        """
        if self._circuit_breaker:
            await self._circuit_breaker.acquire()

        last_error: Optional[Exception] = None
        backoff_delay = 1.0

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._request(method, endpoint, params, json_body)
                if self._circuit_breaker:
                    await self._circuit_breaker._on_success()
                return result

            except TokenExpiredError as e:
                last_error = e
                logger.warning(f"Token expired, refreshing (attempt {attempt})")
                self.token_manager.invalidate()
                continue

            except RateLimitError as e:
                last_error = e
                if retry_throttling and attempt < self.max_retries:
                    logger.warning(
                        f"Rate limited on {endpoint}, waiting {e.retry_after}s "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                    await self._clock.sleep(e.retry_after)
                    continue
                raise

            except (ServerError, NetworkError) as e:
                last_error = e
                if retry_throttling and attempt < self.max_retries:
                    logger.warning(
                        f"{e.message}. Retrying in {backoff_delay}s "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                    await self._clock.sleep(backoff_delay)
                    backoff_delay = min(backoff_delay * 2, 60.0)
                    continue

                if self._circuit_breaker:
                    await self._circuit_breaker._on_failure(e)
                raise

            except APIError:
                # 400/403/404/409 are answers, not outages
                raise

        if last_error:
            raise last_error

        raise APIError(
            "Request failed after all retries",
            status_code=0,
            endpoint=endpoint,
            method=method,
        )

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # Public Request Methods
    # ----------------------------------------

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict[str, Any]:
        return await self._request_with_retry("GET", endpoint, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        return await self._request_with_retry(
            "POST", endpoint, params=params, json_body=json_body
        )

    async def paginate(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of ``value`` items, following ``@odata.nextLink``.

        The nextLink already encodes the original query, so params are only
        sent with the first request.
        """
        next_endpoint: Optional[str] = endpoint
        page_params = params
        pages = 0

        while next_endpoint:
            data = await self.get(next_endpoint, params=page_params)
            page_params = None
            pages += 1

            items = data.get("value", [])
            logger.debug(f"Fetched page {pages} of {endpoint}: {len(items)} items")
            yield items

            if max_pages is not None and pages >= max_pages:
                logger.warning(f"Stopping pagination of {endpoint} at {pages} pages")
                break
            next_endpoint = data.get("@odata.nextLink")

    async def fetch_all(
        self,
        endpoint: str,
        params: Optional[dict] = None,
    ) -> list[dict[str, Any]]:
        """Fetch every item across all pages."""
        items: list[dict[str, Any]] = []
        async for page in self.paginate(endpoint, params=params):
            items.extend(page)
        return items

    async def batch(self, requests: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Submit sub-requests through ``POST /$batch``.

        Each sub-request is ``{id, method, url, body?, headers?}`` with a URL
        relative to the version root. Graph answers every sub-request
        independently; this method only fails for the envelope itself.

        The envelope is not retried on 429 or 5xx: RateLimitError and
        ServerError / NetworkError reach the caller, which owns the waits.

        Returns:
            The ``responses`` list: ``{id, status, headers?, body?}`` per
            sub-request. Order is not guaranteed; correlate by ``id``.

        Raises:
            BatchLimitError: If more than 20 sub-requests are given
            RateLimitError: If Graph throttled the whole envelope
        """
        if len(requests) > MAX_BATCH_REQUESTS:
            raise BatchLimitError(len(requests), MAX_BATCH_REQUESTS)
        if not requests:
            return []

        logger.debug(f"Submitting $batch with {len(requests)} sub-requests")
        data = await self._request_with_retry(
            "POST",
            "/$batch",
            json_body={"requests": requests},
            retry_throttling=False,
        )
        return data.get("responses", [])
