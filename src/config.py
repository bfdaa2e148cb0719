"""
Configuration module for the secret sync operator.

Loads configuration from environment variables. Secret specs themselves
live in a YAML file whose path is configured here.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_json(name: str) -> Dict[str, Any]:
    raw = os.getenv(name)
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"{name} must be valid JSON: {e}")
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a JSON object")
    return value


@dataclass
class ReconcilerConfig:
    """Reconciliation loop and retry configuration."""

    default_refresh_interval: float = 60.0  # seconds
    max_concurrent_syncs: int = 5
    fetch_timeout: float = 30.0
    poll_interval: float = 5.0

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0  # base delay in seconds
    backoff_max_delay: float = 300.0  # max delay in seconds (5 minutes)
    backoff_jitter_factor: float = 0.1  # up to +10% jitter
    failure_ceiling: int = 10

    def __post_init__(self):
        if self.default_refresh_interval <= 0:
            raise ValueError("SYNC_REFRESH_INTERVAL must be positive")
        if self.max_concurrent_syncs < 1:
            raise ValueError("MAX_CONCURRENT_SYNCS must be at least 1")
        if self.fetch_timeout <= 0:
            raise ValueError("FETCH_TIMEOUT must be positive")
        if self.poll_interval <= 0:
            raise ValueError("SCHEDULER_POLL_INTERVAL must be positive")
        if self.backoff_base_delay <= 0:
            raise ValueError("BACKOFF_BASE_DELAY must be positive")
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError("BACKOFF_MAX_DELAY must be >= BACKOFF_BASE_DELAY")
        if not 0.0 <= self.backoff_jitter_factor <= 1.0:
            raise ValueError("BACKOFF_JITTER_FACTOR must be within [0, 1]")
        if self.failure_ceiling < 0:
            raise ValueError("FAILURE_CEILING must not be negative")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            default_refresh_interval=float(os.getenv("SYNC_REFRESH_INTERVAL", "60")),
            max_concurrent_syncs=int(os.getenv("MAX_CONCURRENT_SYNCS", "5")),
            fetch_timeout=float(os.getenv("FETCH_TIMEOUT", "30")),
            poll_interval=float(os.getenv("SCHEDULER_POLL_INTERVAL", "5")),
            backoff_base_delay=float(os.getenv("BACKOFF_BASE_DELAY", "5")),
            backoff_max_delay=float(os.getenv("BACKOFF_MAX_DELAY", "300")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            failure_ceiling=int(os.getenv("FAILURE_CEILING", "10")),
        )


@dataclass
class DatabaseConfig:
    """PostgreSQL configuration for the postgres store backend."""

    host: str = "localhost"
    port: int = 5432
    database: str = "secret_sync"
    user: str = "secret_sync"
    password: str = field(default="", repr=False)  # Never log password
    min_pool_size: int = 2
    max_pool_size: int = 10

    @classmethod
    def from_env(cls, require_password: bool = False):
        """Load from environment variables."""
        password = os.getenv("DB_PASSWORD", "")
        if require_password and not password:
            raise ValueError(
                "DB_PASSWORD environment variable must be set when "
                "STORE_BACKEND=postgres. Database password cannot be empty."
            )

        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "secret_sync"),
            user=os.getenv("DB_USER", "secret_sync"),
            password=password,
            min_pool_size=int(os.getenv("DB_MIN_POOL_SIZE", "2")),
            max_pool_size=int(os.getenv("DB_MAX_POOL_SIZE", "10")),
        )


@dataclass
class StoreConfig:
    """Local secret store configuration."""

    backend: str = "memory"

    BACKENDS = ("memory", "postgres")

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        backend = os.getenv("STORE_BACKEND", "memory").lower()
        if backend not in cls.BACKENDS:
            raise ValueError(
                f"STORE_BACKEND must be one of {', '.join(cls.BACKENDS)}, "
                f"got '{backend}'"
            )
        return cls(backend=backend)


@dataclass
class APIConfig:
    """Status API server configuration."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled=os.getenv("API_ENABLED", "true").lower() == "true",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class ProviderConfig:
    """Secret provider plugin configuration."""

    # Provider names to register (empty = all built-in and discovered)
    enabled_providers: List[str] = field(default_factory=list)

    # Provider-specific configurations keyed by provider name or alias
    provider_configs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    # alias -> provider plugin name
    aliases: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            enabled_providers=_env_list("ENABLED_PROVIDERS"),
            provider_configs=_env_json("PROVIDER_CONFIGS"),
            aliases=_env_json("PROVIDER_ALIASES"),
        )

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a specific provider or alias."""
        return self.provider_configs.get(name, {})


@dataclass
class Config:
    """Main configuration object."""

    reconciler: ReconcilerConfig
    store: StoreConfig
    database: DatabaseConfig
    api: APIConfig
    providers: ProviderConfig
    specs_file: Optional[str] = None

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        store = StoreConfig.from_env()
        return cls(
            reconciler=ReconcilerConfig.from_env(),
            store=store,
            database=DatabaseConfig.from_env(
                require_password=store.backend == "postgres"
            ),
            api=APIConfig.from_env(),
            providers=ProviderConfig.from_env(),
            specs_file=os.getenv("SECRET_SPECS_FILE") or None,
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            reconciler=ReconcilerConfig(),
            store=StoreConfig(),
            database=DatabaseConfig(),
            api=APIConfig(),
            providers=ProviderConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
