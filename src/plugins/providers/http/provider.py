"""
HTTP Secret Provider - Implements SecretProvider over a REST secret service.

Issues ``GET {base_url}/{remote_key}`` and returns the response body. Works
against Vault-style KV endpoints or any service that returns the secret as a
JSON document.
"""

import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from errors import AuthorizationDenied, ProviderUnavailable
from plugins.providers.base import SecretProvider

logger = logging.getLogger(__name__)


class HTTPSecretProvider(SecretProvider):
    """
    Provider plugin that fetches secrets from an HTTP endpoint.

    401 and 403 responses raise AuthorizationDenied; every other non-200
    response and any connection error raise ProviderUnavailable.
    """

    def __init__(self):
        self.base_url: str = ""
        self.token: Optional[str] = None
        self.token_header: str = "Authorization"
        self.request_timeout: float = 10.0

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP provider configuration from environment variables."""
        return {
            "base_url": os.getenv("SECRET_HTTP_URL", ""),
            "token": os.getenv("SECRET_HTTP_TOKEN", ""),
            "token_header": os.getenv("SECRET_HTTP_TOKEN_HEADER", "Authorization"),
            "request_timeout": float(os.getenv("SECRET_HTTP_TIMEOUT", "10")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the provider with configuration."""
        self.base_url = config.get("base_url", self.base_url).rstrip("/")
        self.token = config.get("token") or None
        self.token_header = config.get("token_header", self.token_header)
        self.request_timeout = float(
            config.get("request_timeout", self.request_timeout)
        )

        if not self.base_url:
            logger.warning(
                "HTTP secret provider has no base URL. Set SECRET_HTTP_URL."
            )

        logger.debug(
            f"HTTP secret provider initialized: base_url={self.base_url}, "
            f"request_timeout={self.request_timeout}s"
        )

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            if self.token_header.lower() == "authorization":
                headers[self.token_header] = f"Bearer {self.token}"
            else:
                headers[self.token_header] = self.token
        return headers

    async def fetch(self, remote_key: str) -> bytes:
        url = f"{self.base_url}/{remote_key.lstrip('/')}"
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers=self._get_headers()) as response:
                    if response.status == 200:
                        return await response.read()

                    detail = (await response.text())[:200]
                    if response.status in (401, 403):
                        raise AuthorizationDenied(
                            f"Secret service denied access to {remote_key} "
                            f"(HTTP {response.status})"
                        )
                    raise ProviderUnavailable(
                        f"Secret service returned HTTP {response.status} "
                        f"for {remote_key}: {detail}"
                    )
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(f"Failed to reach secret service at {url}: {e}")
