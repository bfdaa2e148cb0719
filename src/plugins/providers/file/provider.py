"""
File Secret Provider - Implements SecretProvider over a directory tree.

Each remote key is a path relative to the configured root directory; the
file content is the payload.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict

from errors import AuthorizationDenied, InvalidSpecError, ProviderUnavailable
from plugins.providers.base import SecretProvider

logger = logging.getLogger(__name__)


class FileSecretProvider(SecretProvider):
    """Provider plugin that reads secrets from files under a root directory."""

    def __init__(self):
        self.root: Path = Path("/var/run/secrets/sync")

    @property
    def name(self) -> str:
        return "file"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load file provider configuration from environment variables."""
        return {"root": os.getenv("SECRET_FILE_ROOT", "/var/run/secrets/sync")}

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Initialize the provider with configuration."""
        self.root = Path(config.get("root", self.root)).resolve()
        if not self.root.is_dir():
            logger.warning(f"File secret provider root {self.root} does not exist")

    def _resolve(self, remote_key: str) -> Path:
        path = (self.root / remote_key.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise InvalidSpecError(
                f"Remote key {remote_key} resolves outside {self.root}"
            )
        return path

    async def fetch(self, remote_key: str) -> bytes:
        path = self._resolve(remote_key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except PermissionError as e:
            raise AuthorizationDenied(f"Cannot read {path}: {e}")
        except OSError as e:
            raise ProviderUnavailable(f"Cannot read {path}: {e}")
