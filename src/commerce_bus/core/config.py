"""Configuration management.

Loads from TOML config files + environment variables.
Uses pydantic-settings for validation and env var overriding.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .enums import IdempotencyBackend, TransportKind


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------

class BrokerConfig(BaseModel):
    kind: TransportKind = TransportKind.MEMORY
    url: str = "redis://localhost:6379/0"
    stream_prefix: str = "commerce:events:"  # Stream per event type name
    dead_letter_stream: str = "commerce:dead-letter"
    max_stream_length: int = 100_000
    block_ms: int = 1000
    batch_size: int = 10
    publish_retries: int = 5
    retry_backoff_seconds: float = 0.5
    max_backoff_seconds: float = 30.0


class ConsumerConfig(BaseModel):
    max_delivery_attempts: int = 5  # Before dead-lettering
    prefetch: int = 16  # In-flight messages per subscription
    redelivery_idle_ms: int = 30_000  # Pending entries older than this are reclaimed
    redelivery_delay_seconds: float = 0.0
    shutdown_timeout_seconds: float = 10.0
    consumer_name: str = ""  # Defaults to a random id per process


class IdempotencyConfig(BaseModel):
    backend: IdempotencyBackend = IdempotencyBackend.MEMORY
    retention_seconds: int = 7 * 24 * 3600
    purge_interval_seconds: float = 3600.0  # 0 disables the background purge
    release_on_failure: bool = True
    redis_url: str | None = None  # Falls back to broker.url
    key_prefix: str = "commerce:processed:"
    database_url: str | None = None


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "console"


# ---------------------------------------------------------------------------
# Top-level settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Top-level bus settings.

    Loaded from TOML config files, overridden by environment variables.
    """

    service_name: str = "commerce"

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    consumer: ConsumerConfig = Field(default_factory=ConsumerConfig)
    idempotency: IdempotencyConfig = Field(default_factory=IdempotencyConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    model_config = {"env_prefix": "COMMERCE_BUS_", "env_nested_delimiter": "__"}

    @property
    def idempotency_redis_url(self) -> str:
        return self.idempotency.redis_url or self.broker.url

    def validate_backends(self) -> None:
        """Reject inconsistent transport / store combinations."""
        from .errors import ConfigError

        if self.consumer.max_delivery_attempts < 1:
            raise ConfigError("consumer.max_delivery_attempts must be >= 1")
        if self.consumer.prefetch < 1:
            raise ConfigError("consumer.prefetch must be >= 1")
        if self.idempotency.retention_seconds <= 0:
            raise ConfigError("idempotency.retention_seconds must be > 0")
        if self.idempotency.purge_interval_seconds < 0:
            raise ConfigError("idempotency.purge_interval_seconds must be >= 0")

        backend = self.idempotency.backend
        if backend == IdempotencyBackend.SQL and not self.idempotency.database_url:
            raise ConfigError(
                "SQL idempotency backend requires idempotency.database_url"
            )
        if backend == IdempotencyBackend.REDIS and not self.idempotency_redis_url:
            raise ConfigError(
                "Redis idempotency backend requires a Redis URL"
            )


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from TOML file + env vars.

    Args:
        config_path: Path to TOML config file (optional).
        overrides: Dict of overrides to apply on top.
    """
    data: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            import tomli

            with open(path, "rb") as f:
                data = tomli.load(f)

    if overrides:
        data.update(overrides)

    return Settings(**data)
