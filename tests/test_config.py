"""Unit tests for config.py - Configuration management."""

import os
import pytest
from unittest.mock import patch

import config
from config import (
    APIConfig,
    Config,
    DatabaseConfig,
    ProviderConfig,
    ReconcilerConfig,
    StoreConfig,
    get_config,
    load_config,
    reset_config,
)


class TestReconcilerConfig:
    """Tests for ReconcilerConfig class."""

    def test_default_values(self):
        cfg = ReconcilerConfig()
        assert cfg.default_refresh_interval == 60.0
        assert cfg.max_concurrent_syncs == 5
        assert cfg.fetch_timeout == 30.0
        assert cfg.backoff_base_delay == 5.0
        assert cfg.backoff_max_delay == 300.0
        assert cfg.backoff_jitter_factor == 0.1
        assert cfg.failure_ceiling == 10

    def test_from_env(self):
        env_vars = {
            "SYNC_REFRESH_INTERVAL": "120",
            "MAX_CONCURRENT_SYNCS": "2",
            "FETCH_TIMEOUT": "7.5",
            "SCHEDULER_POLL_INTERVAL": "1",
            "BACKOFF_BASE_DELAY": "2",
            "BACKOFF_MAX_DELAY": "60",
            "BACKOFF_JITTER_FACTOR": "0",
            "FAILURE_CEILING": "3",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = ReconcilerConfig.from_env()
            assert cfg.default_refresh_interval == 120.0
            assert cfg.max_concurrent_syncs == 2
            assert cfg.fetch_timeout == 7.5
            assert cfg.poll_interval == 1.0
            assert cfg.backoff_base_delay == 2.0
            assert cfg.backoff_max_delay == 60.0
            assert cfg.backoff_jitter_factor == 0.0
            assert cfg.failure_ceiling == 3

    @pytest.mark.parametrize(
        "name,value",
        [
            ("BACKOFF_JITTER_FACTOR", "2"),
            ("MAX_CONCURRENT_SYNCS", "0"),
            ("FETCH_TIMEOUT", "0"),
            ("SYNC_REFRESH_INTERVAL", "-1"),
            ("SCHEDULER_POLL_INTERVAL", "0"),
            ("BACKOFF_MAX_DELAY", "1"),
            ("FAILURE_CEILING", "-1"),
        ],
    )
    def test_out_of_range_env_raises(self, name, value):
        with patch.dict(os.environ, {name: value}, clear=False):
            with pytest.raises(ValueError, match=name):
                ReconcilerConfig.from_env()


class TestDatabaseConfig:
    """Tests for DatabaseConfig class."""

    def test_default_values(self):
        cfg = DatabaseConfig()
        assert cfg.host == "localhost"
        assert cfg.port == 5432
        assert cfg.database == "secret_sync"
        assert cfg.user == "secret_sync"
        assert cfg.password == ""

    def test_from_env(self):
        env_vars = {
            "DB_HOST": "envhost",
            "DB_PORT": "5434",
            "DB_NAME": "envdb",
            "DB_USER": "envuser",
            "DB_PASSWORD": "envpassword",
            "DB_MIN_POOL_SIZE": "3",
            "DB_MAX_POOL_SIZE": "15",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = DatabaseConfig.from_env()
            assert cfg.host == "envhost"
            assert cfg.port == 5434
            assert cfg.database == "envdb"
            assert cfg.user == "envuser"
            assert cfg.password == "envpassword"
            assert cfg.min_pool_size == 3
            assert cfg.max_pool_size == 15

    def test_missing_password_raises_when_required(self):
        with patch.dict(os.environ, {"DB_PASSWORD": ""}, clear=True):
            with pytest.raises(ValueError, match="DB_PASSWORD"):
                DatabaseConfig.from_env(require_password=True)

    def test_password_not_in_repr(self):
        cfg = DatabaseConfig(password="hunter2")
        assert "hunter2" not in repr(cfg)


class TestStoreConfig:
    def test_default_backend(self):
        with patch.dict(os.environ, {}, clear=True):
            assert StoreConfig.from_env().backend == "memory"

    def test_postgres_backend(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "Postgres"}, clear=True):
            assert StoreConfig.from_env().backend == "postgres"

    def test_unknown_backend_raises(self):
        with patch.dict(os.environ, {"STORE_BACKEND": "etcd"}, clear=True):
            with pytest.raises(ValueError, match="STORE_BACKEND"):
                StoreConfig.from_env()


class TestAPIConfig:
    def test_from_env(self):
        env_vars = {
            "API_ENABLED": "false",
            "API_HOST": "127.0.0.1",
            "API_PORT": "9090",
            "LOG_LEVEL": "DEBUG",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            cfg = APIConfig.from_env()
            assert cfg.enabled is False
            assert cfg.host == "127.0.0.1"
            assert cfg.port == 9090
            assert cfg.log_level == "DEBUG"


class TestProviderConfig:
    def test_defaults_are_empty(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = ProviderConfig.from_env()
            assert cfg.enabled_providers == []
            assert cfg.provider_configs == {}
            assert cfg.aliases == {}

    def test_from_env(self):
        env_vars = {
            "ENABLED_PROVIDERS": "http, file",
            "PROVIDER_CONFIGS": '{"vault-prod": {"base_url": "https://vault"}}',
            "PROVIDER_ALIASES": '{"vault-prod": "http"}',
        }
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = ProviderConfig.from_env()
            assert cfg.enabled_providers == ["http", "file"]
            assert cfg.aliases == {"vault-prod": "http"}
            assert cfg.get_provider_config("vault-prod") == {
                "base_url": "https://vault"
            }
            assert cfg.get_provider_config("missing") == {}

    def test_invalid_json_raises(self):
        with patch.dict(os.environ, {"PROVIDER_CONFIGS": "{not json"}, clear=True):
            with pytest.raises(ValueError, match="PROVIDER_CONFIGS"):
                ProviderConfig.from_env()

    def test_non_object_json_raises(self):
        with patch.dict(os.environ, {"PROVIDER_ALIASES": '["http"]'}, clear=True):
            with pytest.raises(ValueError, match="JSON object"):
                ProviderConfig.from_env()


class TestConfig:
    """Tests for the top-level Config and singleton helpers."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_default(self):
        cfg = Config.default()
        assert cfg.store.backend == "memory"
        assert cfg.specs_file is None
        assert isinstance(cfg.reconciler, ReconcilerConfig)

    def test_postgres_backend_requires_password(self):
        env_vars = {"STORE_BACKEND": "postgres", "DB_PASSWORD": ""}
        with patch.dict(os.environ, env_vars, clear=True):
            with pytest.raises(ValueError, match="DB_PASSWORD"):
                Config.from_env()

    def test_specs_file_from_env(self):
        env_vars = {"SECRET_SPECS_FILE": "/etc/secret-sync/secrets.yaml"}
        with patch.dict(os.environ, env_vars, clear=True):
            cfg = Config.from_env()
            assert cfg.specs_file == "/etc/secret-sync/secrets.yaml"

    def test_load_config_is_singleton(self):
        with patch.dict(os.environ, {}, clear=True):
            first = load_config()
            assert get_config() is first
            assert config.config is first

    def test_reset_config(self):
        with patch.dict(os.environ, {}, clear=True):
            first = get_config()
            reset_config()
            assert get_config() is not first
