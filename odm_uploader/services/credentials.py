"""WebODM credential provider with single-flight token refresh."""
import asyncio
import base64
import binascii
import json
import logging
import time
from typing import Callable, Optional

import httpx

from ..errors import RemoteAPIError, RemoteProtocolError, TransportError, extract_error_message

logger = logging.getLogger(__name__)


def decode_jwt_expiry(token: str) -> Optional[float]:
    """Return the `exp` claim of a JWT as epoch seconds, or None."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeEncodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    return float(exp)


class WebODMTokenProvider:
    """
    Fetches and caches a WebODM JWT.

    Implements ICredentialProvider. The token is reused until it is within
    `refresh_margin_s` of its `exp` claim; concurrent callers wait on the
    same refresh instead of each posting to the token endpoint.
    """

    def __init__(
        self,
        token_url: str,
        username: str,
        password: str,
        refresh_margin_s: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._token_url = token_url
        self._username = username
        self._password = password
        self._refresh_margin = refresh_margin_s
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None
        self._lock = asyncio.Lock()

    def _is_valid(self) -> bool:
        if not self._token:
            return False
        if self._expires_at is None:
            return True
        return self._clock() < self._expires_at - self._refresh_margin

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = None

    async def get_token(self) -> str:
        if self._is_valid():
            return self._token
        async with self._lock:
            if self._is_valid():
                return self._token
            token = await self._fetch_token()
            self._token = token
            self._expires_at = decode_jwt_expiry(token)
            if self._expires_at is None:
                logger.debug("WebODM token has no exp claim; caching until invalidated")
            return token

    async def _fetch_token(self) -> str:
        logger.debug(f"Requesting WebODM token from {self._token_url}")
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    self._token_url,
                    json={"username": self._username, "password": self._password},
                )
            except httpx.RequestError as exc:
                raise TransportError(f"Token request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            raise RemoteAPIError(
                response.status_code,
                extract_error_message(body, f"Token request failed with HTTP {response.status_code}"),
                details=body,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteProtocolError("Token response is not JSON", details=response.text) from exc
        token = body.get("token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise RemoteProtocolError("Token response is missing 'token'", details=body)
        return token
