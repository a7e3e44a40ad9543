"""Configuration management for the CDC relay."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceDatabaseConfig(BaseSettings):
    """Source Postgres (logical replication) configuration."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "cdcdb"
    host: str = "localhost"
    port: int = 5432
    slot_name: str = "cdc_relay"
    output_plugin: str = "wal2json"


class SinkDatabaseConfig(BaseSettings):
    """Sink Postgres configuration."""

    model_config = SettingsConfigDict(env_prefix="SINK_POSTGRES_")

    user: str = "cdcuser"
    password: str = "cdcpass"
    db: str = "analytics"
    host: str = "localhost"
    port: int = 5433


class KafkaConfig(BaseSettings):
    """Kafka configuration."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = "localhost:29092"
    topic_prefix: str = "cdc"
    request_timeout_ms: int = 10000


class RelayConfig(BaseSettings):
    """Relay behaviour: partitioning, retries and failure policy."""

    model_config = SettingsConfigDict(env_prefix="RELAY_")

    partition_count: int = Field(default=4, ge=1)
    publish_max_attempts: int = Field(default=5, ge=1)
    publish_initial_backoff_seconds: float = 0.1
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 30.0
    sink_retry_initial_backoff_seconds: float = 0.1
    batch_size: int = 100
    poll_timeout_ms: int = 1000
    on_malformed: Literal["halt", "skip"] = "halt"
    checkpoint_dir: str = "./checkpoints"
    delete_mode: Literal["hard", "tombstone"] = "hard"


class ObservabilityConfig(BaseSettings):
    """Observability configuration."""

    model_config = SettingsConfigDict(env_prefix="")

    metrics_port: int = Field(default=8000, alias="METRICS_PORT")
    health_check_port: int = Field(default=8001, alias="HEALTH_CHECK_PORT")


class ApplicationConfig(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    log_level: str = "INFO"


class Settings(BaseSettings):
    """Main settings container."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    postgres: SourceDatabaseConfig = Field(default_factory=SourceDatabaseConfig)
    sink_postgres: SinkDatabaseConfig = Field(default_factory=SinkDatabaseConfig)
    kafka: KafkaConfig = Field(default_factory=KafkaConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    app: ApplicationConfig = Field(default_factory=ApplicationConfig)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
