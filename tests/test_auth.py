#!/usr/bin/env python3
"""Unit tests for OAuth2 Token Management.

Tests cover:
    - Token caching and expiration buffer
    - Configuration from AZURE_* environment variables
    - Error mapping for the identity platform's answers
    - Retry logic on failures
"""
import asyncio
import hashlib
import time
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from src.intune.api.auth import CachedToken, TokenManager
from src.intune.api.exceptions import (
    ConfigurationError,
    InvalidCredentialsError,
    TokenFetchError,
)


def mock_token_session(*responses):
    """aiohttp.ClientSession stand-in whose post() yields ``responses`` in order."""
    for response in responses:
        response.__aenter__ = AsyncMock(return_value=response)
        response.__aexit__ = AsyncMock(return_value=None)

    session = MagicMock()
    session.post = MagicMock(side_effect=list(responses))
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


def token_response(status=200, json_data=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_data or {})
    response.text = AsyncMock(return_value=text)
    return response


@pytest.fixture
def env_vars(monkeypatch):
    monkeypatch.setenv("AZURE_TENANT_ID", "contoso-tenant")
    monkeypatch.setenv("AZURE_CLIENT_ID", "client-id")
    monkeypatch.setenv("AZURE_CLIENT_SECRET", "client-secret")
    monkeypatch.delenv("AZURE_AUTHORITY_HOST", raising=False)


# ============================================
# CachedToken Tests
# ============================================

class TestCachedToken:
    """Test the CachedToken dataclass."""

    def test_not_expired_when_new(self):
        """Fresh token should not be expired."""
        token = CachedToken(access_token="abc", expires_at=time.time() + 3600)
        assert not token.is_expired
        assert token.time_remaining > 3500

    def test_expired_when_past(self):
        token = CachedToken(access_token="abc", expires_at=time.time() - 100)
        assert token.is_expired
        assert token.time_remaining == 0

    def test_expired_within_buffer(self):
        """A one hour token is refreshed five minutes early."""
        token = CachedToken(access_token="abc", expires_at=time.time() + 200, expires_in=3600)
        assert token.is_expired

    def test_short_ttl_uses_minimum_buffer(self):
        token = CachedToken(access_token="abc", expires_at=time.time() + 40, expires_in=60)
        assert not token.is_expired
        assert token._buffer_seconds == 30

    def test_token_id_is_sha256_prefix(self):
        token = CachedToken(access_token="secret-token", expires_at=time.time() + 3600)
        assert token.token_id == hashlib.sha256(b"secret-token").hexdigest()[:8]
        assert "secret" not in token.token_id


# ============================================
# TokenManager Tests
# ============================================

class TestTokenManager:
    """Test TokenManager configuration and fetching."""

    def test_missing_env_vars_raises(self, monkeypatch):
        for name in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(ConfigurationError) as exc_info:
            TokenManager()

        assert exc_info.value.details["missing_keys"] == [
            "AZURE_TENANT_ID",
            "AZURE_CLIENT_ID",
            "AZURE_CLIENT_SECRET",
        ]

    def test_token_url_from_tenant(self, env_vars):
        manager = TokenManager()
        assert manager.token_url == (
            "https://login.microsoftonline.com/contoso-tenant/oauth2/v2.0/token"
        )

    def test_explicit_credentials_and_authority(self, env_vars):
        manager = TokenManager(
            tenant_id="other",
            client_id="id",
            client_secret="secret",
            authority_host="https://login.microsoftonline.us/",
        )
        assert manager.token_url == "https://login.microsoftonline.us/other/oauth2/v2.0/token"

    @pytest.mark.asyncio
    async def test_get_token_fetches_new(self, env_vars):
        session = mock_token_session(
            token_response(json_data={"access_token": "tok-1", "expires_in": 3599})
        )
        manager = TokenManager()

        with patch("aiohttp.ClientSession", return_value=session):
            token = await manager.get_token()

        assert token == "tok-1"
        payload = session.post.call_args.kwargs["data"]
        assert payload["grant_type"] == "client_credentials"
        assert payload["scope"] == "https://graph.microsoft.com/.default"

    @pytest.mark.asyncio
    async def test_get_token_returns_cached(self, env_vars):
        manager = TokenManager()
        manager._cached_token = CachedToken(access_token="cached", expires_at=time.time() + 3600)

        with patch("aiohttp.ClientSession") as session_cls:
            assert await manager.get_token() == "cached"
            session_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_fetch(self, env_vars):
        session = mock_token_session(
            token_response(json_data={"access_token": "tok-1", "expires_in": 3599})
        )
        manager = TokenManager()

        with patch("aiohttp.ClientSession", return_value=session):
            tokens = await asyncio.gather(*(manager.get_token() for _ in range(5)))

        assert tokens == ["tok-1"] * 5
        assert session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_invalid_client_is_not_retried(self, env_vars):
        session = mock_token_session(
            token_response(400, text='{"error": "invalid_client", "error_description": "AADSTS7000215"}')
        )
        manager = TokenManager()

        with patch("aiohttp.ClientSession", return_value=session):
            with pytest.raises(InvalidCredentialsError):
                await manager.get_token()

        assert session.post.call_count == 1

    @pytest.mark.asyncio
    async def test_server_errors_retried(self, env_vars):
        session = mock_token_session(
            token_response(503, text="unavailable"),
            token_response(json_data={"access_token": "tok-2"}),
        )
        manager = TokenManager()

        with patch("aiohttp.ClientSession", return_value=session), \
                patch("src.intune.api.auth.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await manager.get_token() == "tok-2"

        sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_retries(self, env_vars):
        session = MagicMock()
        session.__aenter__ = AsyncMock(return_value=session)
        session.__aexit__ = AsyncMock(return_value=None)
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        manager = TokenManager()

        with patch("aiohttp.ClientSession", return_value=session), \
                patch("src.intune.api.auth.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(TokenFetchError) as exc_info:
                await manager.get_token()

        assert exc_info.value.attempts == 3
        assert session.post.call_count == 3

    def test_invalidate_and_token_info(self, env_vars):
        manager = TokenManager()
        assert manager.token_info is None

        manager._cached_token = CachedToken(access_token="abc", expires_at=time.time() + 3600)
        info = manager.token_info
        assert info["token_id"] == manager._cached_token.token_id
        assert info["is_expired"] is False

        manager.invalidate()
        assert manager.token_info is None
