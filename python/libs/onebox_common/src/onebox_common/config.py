"""Configuration management for Onebox Python components."""
import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


class ServiceIdentity(BaseModel):
    """Service identity for telemetry."""

    name: str
    version: str
    team: str = "platform"
    domain: str = "mail"
    pipeline: str = "mail-sync"


class ElasticsearchConfig(BaseModel):
    """Elasticsearch index sink configuration."""

    url: str = "http://localhost:9200"
    api_key: str | None = None
    index: str = "emails"
    refresh: bool = True


class PostgresConfig(BaseModel):
    """Postgres configuration."""

    host: str = "localhost"
    port: int = 5432
    database: str = "onebox"
    user: str = "onebox"
    password: str = ""

    @property
    def connection_string(self) -> str:
        """Build psycopg connection string."""
        return (
            f"host={self.host} port={self.port} dbname={self.database} "
            f"user={self.user} password={self.password}"
        )


class SyncSettings(BaseModel):
    """Tuning knobs for the per-account sync loop."""

    mailbox: str = "INBOX"
    initial_window_days: int = Field(default=30, gt=0)
    initial_max_messages: int = Field(default=100, gt=0)
    initial_fallback_count: int = Field(default=50, gt=0)
    debounce_seconds: float = Field(default=1.0, ge=0)
    idle_renewal_seconds: float = Field(default=28 * 60, gt=0)
    idle_poll_seconds: float = Field(default=1.0, gt=0)
    reconnect_delay_seconds: float = Field(default=5.0, ge=0)
    connect_retry_delay_seconds: float = Field(default=10.0, ge=0)
    retry_jitter_seconds: float = Field(default=1.0, ge=0)
    max_attempts: int | None = Field(default=None, gt=0)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    default_label: str = "Unclassified"
    advance_on_partial_failure: bool = True
    cursor_store: Literal["memory", "postgres"] = "memory"


class OneboxConfig(BaseModel):
    """Main configuration for Onebox components."""

    env: str = Field(default="dev")
    service: ServiceIdentity
    elasticsearch: ElasticsearchConfig
    postgres: PostgresConfig
    sync: SyncSettings = Field(default_factory=SyncSettings)
    log_level: str = "INFO"


def _optional_int(name: str) -> int | None:
    value = os.getenv(name)
    return int(value) if value else None


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


@lru_cache
def get_config() -> OneboxConfig:
    """Load configuration from environment variables."""
    return OneboxConfig(
        env=os.getenv("ENV", "dev"),
        service=ServiceIdentity(
            name=os.getenv("SERVICE_NAME", "onebox-mail-sync"),
            version=os.getenv("SERVICE_VERSION", "0.1.0"),
            team=os.getenv("TEAM", "platform"),
            domain=os.getenv("DOMAIN", "mail"),
            pipeline=os.getenv("PIPELINE", "mail-sync"),
        ),
        elasticsearch=ElasticsearchConfig(
            url=os.getenv("ELASTIC_URL", "http://localhost:9200"),
            api_key=os.getenv("ELASTIC_API_KEY") or None,
            index=os.getenv("ELASTIC_INDEX", "emails"),
            refresh=_flag("ELASTIC_REFRESH", "true"),
        ),
        postgres=PostgresConfig(
            host=os.getenv("POSTGRES_HOST", "localhost"),
            port=int(os.getenv("POSTGRES_PORT", "5432")),
            database=os.getenv("POSTGRES_DB", "onebox"),
            user=os.getenv("POSTGRES_USER", "onebox"),
            password=os.getenv("POSTGRES_PASSWORD", ""),
        ),
        sync=SyncSettings(
            mailbox=os.getenv("SYNC_MAILBOX", "INBOX"),
            initial_window_days=int(os.getenv("SYNC_INITIAL_WINDOW_DAYS", "30")),
            initial_max_messages=int(os.getenv("SYNC_INITIAL_MAX_MESSAGES", "100")),
            initial_fallback_count=int(os.getenv("SYNC_INITIAL_FALLBACK_COUNT", "50")),
            debounce_seconds=float(os.getenv("SYNC_DEBOUNCE_SECONDS", "1.0")),
            idle_renewal_seconds=float(os.getenv("SYNC_IDLE_RENEWAL_SECONDS", "1680")),
            idle_poll_seconds=float(os.getenv("SYNC_IDLE_POLL_SECONDS", "1.0")),
            reconnect_delay_seconds=float(os.getenv("SYNC_RECONNECT_DELAY_SECONDS", "5")),
            connect_retry_delay_seconds=float(
                os.getenv("SYNC_CONNECT_RETRY_DELAY_SECONDS", "10")
            ),
            retry_jitter_seconds=float(os.getenv("SYNC_RETRY_JITTER_SECONDS", "1.0")),
            max_attempts=_optional_int("SYNC_MAX_ATTEMPTS"),
            shutdown_timeout_seconds=float(os.getenv("SYNC_SHUTDOWN_TIMEOUT_SECONDS", "30")),
            default_label=os.getenv("SYNC_DEFAULT_LABEL", "Unclassified"),
            advance_on_partial_failure=_flag("SYNC_ADVANCE_ON_PARTIAL_FAILURE", "true"),
            cursor_store="postgres"
            if os.getenv("SYNC_CURSOR_STORE", "memory") == "postgres"
            else "memory",
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
