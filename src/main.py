"""
Main entry point for the secret sync operator.

Wires the provider registry, local secret store, reconciler and status API
together and runs them until SIGINT/SIGTERM. SIGHUP reloads the spec file.
"""

import asyncio
import logging
import signal
from typing import List, Optional

from api import APIServer, create_app
from config import Config, get_config
from db import PostgresSecretStore
from events import EventBus
from plugins.registry import PluginRegistry, get_registry, register_builtin_plugins
from reconciler import ReconcilerConfig, SecretReconciler
from specs import SpecRegistry, load_specs_file
from store import InMemorySecretStore, LocalSecretStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the reconciler and the status API."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.registry: Optional[PluginRegistry] = None
        self.store: Optional[LocalSecretStore] = None
        self.event_bus: Optional[EventBus] = None
        self.reconciler: Optional[SecretReconciler] = None
        self.api_server: Optional[APIServer] = None
        self.running = False

    def _setup_registry(self) -> PluginRegistry:
        registry = get_registry()
        provider_config = self.config.providers
        enabled = provider_config.enabled_providers
        register_builtin_plugins(registry, enabled=enabled)

        for name in enabled:
            if not registry.has_provider(name):
                logger.warning(f"Provider plugin '{name}' not found, skipping")

        for name in registry.list_providers():
            plugin_config = provider_config.get_provider_config(name)
            if plugin_config:
                registry.configure_provider(name, plugin_config)

        for alias, plugin_name in provider_config.aliases.items():
            registry.register_alias(
                alias, plugin_name, provider_config.get_provider_config(alias)
            )
        return registry

    async def _create_store(self) -> LocalSecretStore:
        if self.config.store.backend == "postgres":
            db_config = self.config.database
            store = PostgresSecretStore(
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
            await store.connect()
            await store.initialize_schema()
            logger.info("PostgreSQL secret store initialized")
            return store

        logger.info("Using in-memory secret store")
        return InMemorySecretStore()

    def load_specs(self) -> SpecRegistry:
        """Load the spec file, applying the global default refresh interval."""
        if not self.config.specs_file:
            logger.warning("SECRET_SPECS_FILE not set; no secrets will be synced")
            return SpecRegistry()
        return load_specs_file(
            self.config.specs_file,
            default_refresh_interval=self.config.reconciler.default_refresh_interval,
        )

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing secret sync operator")

        self.registry = self._setup_registry()
        self.store = await self._create_store()
        self.event_bus = EventBus()

        settings = self.config.reconciler
        self.reconciler = SecretReconciler(
            store=self.store,
            registry=self.registry,
            config=ReconcilerConfig(
                max_concurrent_syncs=settings.max_concurrent_syncs,
                fetch_timeout=settings.fetch_timeout,
                poll_interval=settings.poll_interval,
                backoff_base_delay=settings.backoff_base_delay,
                backoff_max_delay=settings.backoff_max_delay,
                backoff_jitter_factor=settings.backoff_jitter_factor,
                failure_ceiling=settings.failure_ceiling,
            ),
            event_bus=self.event_bus,
        )
        self.reconciler.apply_specs(self.load_specs())

        if self.config.api.enabled:
            app = create_app(self.reconciler, self.registry, self.event_bus)
            self.api_server = APIServer(
                app, host=self.config.api.host, port=self.config.api.port
            )

        logger.info("All components initialized")

    def reload_specs(self) -> None:
        """Re-read the spec file and apply the differences."""
        if not self.reconciler:
            return
        try:
            specs = self.load_specs()
        except Exception as e:
            logger.error(f"Spec reload failed, keeping current specs: {e}")
            return
        self.reconciler.apply_specs(specs)

    async def start(self):
        """Start the application."""
        if not self.reconciler:
            await self.initialize()

        self.running = True
        logger.info("Starting secret sync operator")

        tasks: List[asyncio.Task] = [asyncio.create_task(self.reconciler.run())]
        if self.api_server:
            tasks.append(asyncio.create_task(self.api_server.start()))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping secret sync operator")
        self.running = False

        if self.api_server:
            await self.api_server.stop()

        if self.reconciler:
            await self.reconciler.stop()

        if self.registry:
            await self.registry.close()

        if self.store:
            await self.store.close()

        logger.info("Secret sync operator stopped")


async def main():
    """Main entry point."""
    app = Application()

    # Set up signal handlers for graceful shutdown and spec reload
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    def reload_handler():
        logger.info("Received SIGHUP, reloading secret specs")
        app.reload_specs()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)
    loop.add_signal_handler(signal.SIGHUP, reload_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


if __name__ == "__main__":
    asyncio.run(main())
