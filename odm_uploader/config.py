"""Process-level settings read from the environment."""
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_API_URL = "http://localhost:7789"
DEFAULT_TOKEN_URL = "http://localhost:8000/api/token-auth/"
DEFAULT_REQUEST_TIMEOUT = 60.0

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Immutable settings consumed at process start."""
    api_url: str = DEFAULT_API_URL
    webodm_username: Optional[str] = None
    webodm_password: Optional[str] = None
    webodm_token_url: str = DEFAULT_TOKEN_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    log_level: Optional[str] = None

    @property
    def has_credentials(self) -> bool:
        return bool(self.webodm_username)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        raw_timeout = env.get("ODM_UP_REQUEST_TIMEOUT")
        try:
            timeout = float(raw_timeout) if raw_timeout else DEFAULT_REQUEST_TIMEOUT
        except ValueError:
            logger.warning(
                f"Invalid ODM_UP_REQUEST_TIMEOUT={raw_timeout!r}, using {DEFAULT_REQUEST_TIMEOUT:.0f}s"
            )
            timeout = DEFAULT_REQUEST_TIMEOUT
        return cls(
            api_url=(env.get("IMAGE_HANDLER_API_URL") or DEFAULT_API_URL).rstrip("/"),
            webodm_username=env.get("WEBODM_USERNAME") or None,
            webodm_password=env.get("WEBODM_PASSWORD") or None,
            webodm_token_url=env.get("WEBODM_TOKEN_URL") or DEFAULT_TOKEN_URL,
            request_timeout=timeout,
            log_level=env.get("LOG_LEVEL") or None,
        )

    def credential_provider(self):
        """Build a token provider when WebODM credentials are configured."""
        if not self.has_credentials:
            return None
        from .services.credentials import WebODMTokenProvider

        return WebODMTokenProvider(
            self.webodm_token_url,
            self.webodm_username or "",
            self.webodm_password or "",
        )
