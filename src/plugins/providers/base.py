"""
Secret Provider Base - Abstract interface for external secret stores.

Provider plugins fetch raw secret material from an external secret-holding
system (Vault, a cloud secret manager, a mounted directory, ...). The
reconciler assumes nothing beyond "fetch returns bytes or raises".
"""

from abc import ABC, abstractmethod
from typing import Any, Dict


class SecretProvider(ABC):
    """
    Abstract base class for secret provider plugins.

    ``fetch`` must raise one of the typed errors from ``errors``:
    ProviderUnavailable for outages, AuthorizationDenied for rejected
    credentials. Any other exception is treated as ProviderUnavailable.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'http')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Called once when the provider is first used.

        Args:
            config: Provider-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def fetch(self, remote_key: str) -> bytes:
        """
        Fetch the raw payload stored under ``remote_key``.

        Args:
            remote_key: Provider-specific key or path of the secret

        Returns:
            The payload bytes

        Raises:
            ProviderUnavailable: If the provider cannot serve the request
            AuthorizationDenied: If the provider rejected our credentials
        """
        pass

    async def close(self) -> None:
        """Release connections or other resources. Optional."""
        pass

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load provider-specific configuration from environment variables.

        Override this method in subclasses to define how the provider
        loads its configuration from the environment.

        Returns:
            Dictionary of configuration values for this provider.
        """
        return {}
