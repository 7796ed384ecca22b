"""Test Settings loading, env overrides and backend validation."""

import pytest

from commerce_bus.bus.factory import create_event_bus, create_idempotency_store, create_transport
from commerce_bus.core.config import Settings, load_settings
from commerce_bus.core.enums import IdempotencyBackend, TransportKind
from commerce_bus.core.errors import ConfigError
from commerce_bus.idempotency.memory import InMemoryIdempotencyStore
from commerce_bus.idempotency.redis_store import RedisIdempotencyStore
from commerce_bus.idempotency.sql_store import SqlIdempotencyStore
from commerce_bus.transport.memory import MemoryTransport
from commerce_bus.transport.redis_streams import RedisStreamsTransport


class TestSettingsLoadFromDict:
    def test_default_settings(self):
        settings = Settings()
        assert settings.broker.kind == TransportKind.MEMORY
        assert settings.idempotency.backend == IdempotencyBackend.MEMORY
        assert settings.idempotency.release_on_failure is True

    def test_consumer_defaults(self):
        settings = Settings()
        assert settings.consumer.max_delivery_attempts == 5
        assert settings.consumer.prefetch == 16
        assert settings.idempotency.retention_seconds == 7 * 24 * 3600

    def test_idempotency_redis_url_falls_back_to_broker(self):
        settings = Settings(broker={"url": "redis://broker:6379/1"})
        assert settings.idempotency_redis_url == "redis://broker:6379/1"

        settings = Settings(idempotency={"redis_url": "redis://cache:6379/0"})
        assert settings.idempotency_redis_url == "redis://cache:6379/0"


class TestLoadSettings:
    def test_toml_file(self, tmp_path):
        path = tmp_path / "bus.toml"
        path.write_text(
            'service_name = "ordering"\n'
            "[broker]\n"
            'kind = "redis"\n'
            "[consumer]\n"
            "max_delivery_attempts = 7\n"
        )
        settings = load_settings(path)
        assert settings.service_name == "ordering"
        assert settings.broker.kind == TransportKind.REDIS
        assert settings.consumer.max_delivery_attempts == 7

    def test_missing_file_uses_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "absent.toml")
        assert settings.broker.kind == TransportKind.MEMORY

    def test_overrides_applied(self):
        settings = load_settings(overrides={"service_name": "payments"})
        assert settings.service_name == "payments"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("COMMERCE_BUS_BROKER__KIND", "redis")
        monkeypatch.setenv("COMMERCE_BUS_CONSUMER__PREFETCH", "4")
        settings = Settings()
        assert settings.broker.kind == TransportKind.REDIS
        assert settings.consumer.prefetch == 4


class TestValidateBackends:
    def test_defaults_pass(self):
        Settings().validate_backends()  # Should not raise

    def test_zero_attempts_rejected(self):
        with pytest.raises(ConfigError, match="max_delivery_attempts"):
            Settings(consumer={"max_delivery_attempts": 0}).validate_backends()

    def test_zero_prefetch_rejected(self):
        with pytest.raises(ConfigError, match="prefetch"):
            Settings(consumer={"prefetch": 0}).validate_backends()

    def test_non_positive_retention_rejected(self):
        with pytest.raises(ConfigError, match="retention"):
            Settings(idempotency={"retention_seconds": 0}).validate_backends()

    def test_sql_without_url_rejected(self):
        with pytest.raises(ConfigError, match="database_url"):
            Settings(idempotency={"backend": "sql"}).validate_backends()

    def test_redis_without_url_rejected(self):
        settings = Settings(broker={"url": ""}, idempotency={"backend": "redis"})
        with pytest.raises(ConfigError, match="Redis URL"):
            settings.validate_backends()


class TestFactory:
    def test_memory_defaults(self):
        bus = create_event_bus(Settings())
        assert isinstance(bus.transport, MemoryTransport)
        assert isinstance(bus.store, InMemoryIdempotencyStore)

    def test_redis_transport(self):
        settings = Settings(
            broker={"kind": "redis", "stream_prefix": "shop:"},
            consumer={"consumer_name": "api-1"},
        )
        transport = create_transport(settings)
        assert isinstance(transport, RedisStreamsTransport)
        assert transport.stream_for("OrderCreated") == "shop:OrderCreated"
        assert transport.consumer_name == "api-1"

    def test_redis_store(self):
        store = create_idempotency_store(Settings(idempotency={"backend": "redis"}))
        assert isinstance(store, RedisIdempotencyStore)

    def test_sql_store(self, tmp_path):
        settings = Settings(
            idempotency={
                "backend": "sql",
                "database_url": f"sqlite+aiosqlite:///{tmp_path / 'bus.db'}",
            }
        )
        assert isinstance(create_idempotency_store(settings), SqlIdempotencyStore)

    def test_invalid_settings_rejected(self):
        with pytest.raises(ConfigError):
            create_event_bus(Settings(consumer={"max_delivery_attempts": 0}))

    def test_negative_purge_interval_rejected(self):
        with pytest.raises(ConfigError, match="purge_interval_seconds"):
            create_event_bus(Settings(idempotency={"purge_interval_seconds": -1}))
