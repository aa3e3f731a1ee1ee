"""Tests for WebODM token handling and settings."""
import asyncio
import base64
import json
import logging

import httpx
import pytest

from odm_uploader.config import DEFAULT_API_URL, Settings
from odm_uploader.errors import RemoteAPIError, RemoteProtocolError
from odm_uploader.services.credentials import WebODMTokenProvider, decode_jwt_expiry

TOKEN_URL = "http://webodm.test/api/token-auth/"


def make_jwt(claims):
    def segment(data):
        return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()

    return f"{segment({'alg': 'HS256', 'typ': 'JWT'})}.{segment(claims)}.signature"


class TokenServer:
    def __init__(self, tokens):
        self.tokens = list(tokens)
        self.requests = []

    def __call__(self, request):
        self.requests.append(json.loads(request.content))
        return httpx.Response(200, json={"token": self.tokens[len(self.requests) - 1]})


def test_decode_jwt_expiry():
    assert decode_jwt_expiry(make_jwt({"exp": 1700000000})) == 1700000000.0
    assert decode_jwt_expiry(make_jwt({"user_id": 1})) is None
    assert decode_jwt_expiry("not-a-jwt") is None
    assert decode_jwt_expiry("a.%%%.c") is None


class TestWebODMTokenProvider:
    @pytest.mark.asyncio
    async def test_caches_token_until_expiry(self):
        now = [1000.0]
        server = TokenServer([make_jwt({"exp": 2000}), make_jwt({"exp": 4000})])
        provider = WebODMTokenProvider(
            TOKEN_URL, "admin", "secret", transport=httpx.MockTransport(server), clock=lambda: now[0]
        )

        first = await provider.get_token()
        assert await provider.get_token() == first
        assert len(server.requests) == 1
        assert server.requests[0] == {"username": "admin", "password": "secret"}

        # Inside the refresh margin the token is fetched again.
        now[0] = 1950.0
        second = await provider.get_token()
        assert second != first
        assert len(server.requests) == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self):
        server = TokenServer([make_jwt({"exp": 99999999999})])
        provider = WebODMTokenProvider(TOKEN_URL, "admin", "secret", transport=httpx.MockTransport(server))

        tokens = await asyncio.gather(*(provider.get_token() for _ in range(5)))

        assert len(set(tokens)) == 1
        assert len(server.requests) == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self):
        server = TokenServer(["opaque-1", "opaque-2"])
        provider = WebODMTokenProvider(TOKEN_URL, "admin", "secret", transport=httpx.MockTransport(server))

        assert await provider.get_token() == "opaque-1"
        provider.invalidate()
        assert await provider.get_token() == "opaque-2"

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        def handler(request):
            return httpx.Response(400, json={"non_field_errors": ["Unable to log in"], "error": "Bad credentials"})

        provider = WebODMTokenProvider(TOKEN_URL, "admin", "wrong", transport=httpx.MockTransport(handler))
        with pytest.raises(RemoteAPIError, match="Bad credentials"):
            await provider.get_token()

    @pytest.mark.asyncio
    async def test_missing_token_field(self):
        def handler(request):
            return httpx.Response(200, json={"detail": "ok"})

        provider = WebODMTokenProvider(TOKEN_URL, "admin", "secret", transport=httpx.MockTransport(handler))
        with pytest.raises(RemoteProtocolError, match="token"):
            await provider.get_token()


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.api_url == DEFAULT_API_URL
        assert settings.request_timeout == 60.0
        assert settings.credential_provider() is None

    def test_reads_environment(self):
        settings = Settings.from_env(
            {
                "IMAGE_HANDLER_API_URL": "http://handler:7789/",
                "WEBODM_USERNAME": "admin",
                "WEBODM_PASSWORD": "secret",
                "ODM_UP_REQUEST_TIMEOUT": "15",
            }
        )
        assert settings.api_url == "http://handler:7789"
        assert settings.request_timeout == 15.0
        assert isinstance(settings.credential_provider(), WebODMTokenProvider)

    def test_bad_timeout_falls_back(self, caplog):
        with caplog.at_level(logging.WARNING, logger="odm_uploader.config"):
            settings = Settings.from_env({"ODM_UP_REQUEST_TIMEOUT": "soon"})

        assert settings.request_timeout == 60.0
        assert "Invalid ODM_UP_REQUEST_TIMEOUT='soon'" in caplog.text
