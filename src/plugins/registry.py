"""
Plugin Registry - Discovery and registration of secret provider plugins.

This module provides the central registry for providers, handling
discovery, registration, aliasing, and instantiation.
"""

import asyncio
import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Tuple, Type

from plugins.providers.base import SecretProvider

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "secretsync.providers"


class PluginRegistry:
    """
    Central registry for secret provider plugins.

    Provider classes are registered under their ``name``. Aliases let
    several spec-level provider names share one provider class with
    different configuration (e.g. ``vault-prod`` and ``vault-stage`` both
    backed by ``http``). Pre-built instances can be added directly.
    """

    def __init__(self):
        # Registered provider classes (not instantiated)
        self._provider_classes: Dict[str, Type[SecretProvider]] = {}

        # Cached plugin metadata (name, version)
        self._provider_info: Dict[str, Dict[str, str]] = {}

        # Configuration loaded from the environment, per provider class
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

        # alias -> (provider class name, config overrides)
        self._aliases: Dict[str, Tuple[str, Dict[str, Any]]] = {}

        # Initialized provider instances, keyed by the name specs refer to
        self._instances: Dict[str, SecretProvider] = {}
        self._init_locks: Dict[str, asyncio.Lock] = {}

    # Registration methods

    def register_provider(self, provider_class: Type[SecretProvider]) -> None:
        """
        Register a provider plugin class.

        Args:
            provider_class: The SecretProvider subclass to register
        """
        temp_instance = provider_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._provider_classes:
            logger.warning(f"Overwriting existing provider plugin: {name}")

        self._provider_classes[name] = provider_class
        self._provider_info[name] = {"name": name, "version": version}
        self._provider_configs[name] = provider_class.load_config_from_env()
        logger.info(f"Registered provider plugin: {name} v{version}")

    def register_alias(
        self,
        alias: str,
        provider_name: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Expose a registered provider class under another name.

        Raises:
            ValueError: If the provider class is not registered
        """
        if provider_name not in self._provider_classes:
            raise ValueError(
                f"Cannot alias '{alias}' to unknown provider: {provider_name}"
            )
        self._aliases[alias] = (provider_name, dict(config or {}))
        logger.info(f"Registered provider alias: {alias} -> {provider_name}")

    def add_provider_instance(self, name: str, provider: SecretProvider) -> None:
        """Register an already-initialized provider instance under ``name``."""
        if name in self._instances:
            logger.warning(f"Overwriting existing provider instance: {name}")
        self._instances[name] = provider

    # Instantiation methods

    async def get_provider(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> SecretProvider:
        """
        Get an initialized provider instance.

        Configuration is the env-loaded config of the provider class,
        overlaid with the alias config, overlaid with ``config``.

        Args:
            name: Provider name or alias
            config: Optional configuration overrides for first initialization

        Returns:
            An initialized SecretProvider instance

        Raises:
            ValueError: If the name is not registered
        """
        if name in self._instances:
            return self._instances[name]

        # One initialization per name, even when first requests overlap
        lock = self._init_locks.setdefault(name, asyncio.Lock())
        async with lock:
            if name in self._instances:
                return self._instances[name]
            return await self._create_provider(name, config)

    async def _create_provider(
        self, name: str, config: Optional[Dict[str, Any]]
    ) -> SecretProvider:
        if name in self._aliases:
            class_name, alias_config = self._aliases[name]
        elif name in self._provider_classes:
            class_name, alias_config = name, {}
        else:
            available = ", ".join(self.list_providers()) or "none"
            raise ValueError(
                f"Unknown secret provider: {name}. Available providers: {available}"
            )

        plugin_config = self._provider_configs.get(class_name, {}).copy()
        plugin_config.update(alias_config)
        if config:
            plugin_config.update(config)

        provider = self._provider_classes[class_name]()
        await provider.initialize(plugin_config)
        self._instances[name] = provider
        logger.info(f"Initialized secret provider: {name} ({class_name})")
        return provider

    async def close(self) -> None:
        """Close every initialized provider instance."""
        for name, provider in list(self._instances.items()):
            try:
                await provider.close()
            except Exception as e:
                logger.error(f"Error closing provider '{name}': {e}")

    # Discovery methods

    def list_providers(self) -> List[str]:
        """List every name a spec may refer to (classes, aliases, instances)."""
        names = list(self._provider_classes.keys())
        names.extend(a for a in self._aliases if a not in names)
        names.extend(i for i in self._instances if i not in names)
        return names

    def has_provider(self, name: str) -> bool:
        """Check if a spec-level provider name can be resolved."""
        return (
            name in self._instances
            or name in self._aliases
            or name in self._provider_classes
        )

    def get_provider_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a provider name.

        Returns:
            Dictionary with 'name', 'version' and 'plugin', or None
        """
        if name in self._aliases:
            class_name = self._aliases[name][0]
        elif name in self._provider_classes:
            class_name = name
        elif name in self._instances:
            instance = self._instances[name]
            return {"name": name, "version": instance.version, "plugin": instance.name}
        else:
            return None
        info = self._provider_info[class_name]
        return {"name": name, "version": info["version"], "plugin": class_name}

    def configure_provider(self, name: str, config: Dict[str, Any]) -> None:
        """
        Overlay configuration onto a registered provider class.

        Only affects instances created after the call.

        Raises:
            ValueError: If the provider class is not registered
        """
        if name not in self._provider_classes:
            raise ValueError(f"Cannot configure unknown provider: {name}")
        self._provider_configs[name].update(config)

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        """Env-loaded configuration of a provider class, or empty dict."""
        return self._provider_configs.get(name, {})


# Global registry instance
_registry: Optional[PluginRegistry] = None


def get_registry() -> PluginRegistry:
    """Get the global plugin registry singleton."""
    global _registry
    if _registry is None:
        _registry = PluginRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_plugins(
    registry: Optional[PluginRegistry] = None,
    enabled: Optional[List[str]] = None,
) -> None:
    """
    Register the built-in providers and discover third-party providers
    via entry points.

    Args:
        registry: Registry to populate (defaults to the global one)
        enabled: Provider names to keep; empty or None keeps all
    """
    registry = registry or get_registry()
    candidates: List[Type[SecretProvider]] = []

    try:
        from plugins.providers.http import HTTPSecretProvider

        candidates.append(HTTPSecretProvider)
    except ImportError as e:
        logger.warning(f"Could not load HTTP secret provider: {e}")

    from plugins.providers.file import FileSecretProvider

    candidates.append(FileSecretProvider)

    for provider_class in candidates:
        if not enabled or provider_class().name in enabled:
            registry.register_provider(provider_class)

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        if enabled and ep.name not in enabled:
            logger.debug(f"Skipping disabled secret provider plugin {ep.name}")
            continue
        try:
            registry.register_provider(ep.load())
        except Exception as e:
            logger.warning(f"Could not load secret provider plugin {ep.name}: {e}")
