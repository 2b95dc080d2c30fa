"""
Cronkeeper: Configuration Management

This module provides centralised configuration management for Cronkeeper.
It loads configuration from environment variables (optionally via a .env
file), with strongly typed access via Pydantic BaseSettings.

Key responsibilities:
- Load and validate configuration from environment variables
- Provide typed configuration objects for databases, throttling, retry,
  locking, heartbeats, archival, cold storage and notifications
- Expose a cached global configuration accessor for convenience

External dependencies:
- pydantic: Data validation and settings management
- pydantic-settings: Environment variable integration for settings
- python-dotenv: Optional .env loading for local development

Database tables accessed:
- None (configuration only)

Thread safety: Thread-safe (configuration is immutable after initial load)

Author: Cronkeeper Team
Created: 2026-10-19
Last Modified: 2026-10-19
Status: Development
Version: v0.1.0
"""

# ============================================================================
# Imports
# ============================================================================

from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# ============================================================================
# Data Models
# ============================================================================


class DatabaseConfig(BaseModel):
    """Database connection configuration.

    Attributes:
        host: Database host name or IP address.
        port: TCP port for the PostgreSQL instance.
        name: Database name.
        user: Database user for connections.
        password: Password for the database user.
        pool_size: Maximum number of connections in the pool.
    """

    host: str
    port: int
    name: str
    user: str
    password: str
    pool_size: int = 5


class UpstreamConfig(BaseModel):
    """Connection settings for the upstream data API."""

    base_url: str = ""
    api_key: str = ""
    timeout_seconds: float = 30.0


class RateLimitConfig(BaseModel):
    """Token-bucket throttle settings.

    Attributes:
        requests_per_minute: Bucket capacity and refill rate.
        min_interval_ms: Hard floor between two consecutive grants.
    """

    requests_per_minute: int = 60
    min_interval_ms: int = 1000


class RetryConfig(BaseModel):
    """Exponential backoff settings for upstream calls."""

    max_retries: int = 5
    base_delay_ms: int = 500
    max_delay_ms: int = 32000
    jitter_ms: int = 100
    retry_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)


class LockConfig(BaseModel):
    ttl_seconds: int = 600


class HeartbeatConfig(BaseModel):
    stale_threshold_hours: float = 25.0


class ArchivalConfig(BaseModel):
    """Archival job settings.

    Attributes:
        threshold_mb: Database size above which archival is triggered.
        target_days: Maximum number of trading days archived per run.
        min_remaining_days: Trading days that must always stay in the
            primary store.
        page_size: Rows fetched per export page.
        table_schema: Schema of the archived table.
        table_name: Name of the archived table.
        date_column: Trading date column used for the archive predicate.
        order_columns: Stable composite ordering for the export.
    """

    threshold_mb: float = 450.0
    target_days: int = 125
    min_remaining_days: int = 300
    page_size: int = 1000
    table_schema: str = "jquants_core"
    table_name: str = "equity_bar_daily"
    date_column: str = "trade_date"
    order_columns: Tuple[str, ...] = ("trade_date", "local_code", "session")


class ColdStorageConfig(BaseModel):
    """Cold storage destination for archived exports.

    ``backend`` is either ``"local"`` (a directory on disk) or ``"s3"``.
    """

    backend: str = "local"
    bucket: str = "db-archives"
    local_dir: str = "archives"
    region_name: Optional[str] = None
    endpoint_url: Optional[str] = None


class NotificationConfig(BaseModel):
    """SMTP settings for job notifications.

    Email is only sent when both ``smtp_host`` and ``alert_email_to`` are
    set. Success notifications additionally require ``notify_on_success``.
    """

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    alert_email_to: str = ""
    email_from: str = "cronkeeper@localhost"
    notify_on_success: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.alert_email_to)


class CatchUpConfig(BaseModel):
    """Missed business-day detection settings."""

    max_days: int = 5
    lookback_days: int = 30


class CronkeeperConfig(BaseSettings):
    """Main Cronkeeper configuration loaded from environment variables.

    Environment variables use the following mapping by default:

    - HISTORICAL_DB_* for the data store (archival target)
    - RUNTIME_DB_* for the coordination tables (locks, runs, heartbeats)
    - LOG_LEVEL / LOG_FILE for logging
    - UPSTREAM_*, RATE_LIMIT_*, RETRY_* for outbound calls
    - ARCHIVE_*, COLD_STORAGE_* for the archival job
    - SMTP_*, ALERT_EMAIL_TO, EMAIL_FROM, NOTIFY_ON_SUCCESS for email
    - SYNC_* for catch-up behaviour
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    # Historical DB
    historical_db_host: str = Field(default="localhost", alias="HISTORICAL_DB_HOST")
    historical_db_port: int = Field(default=5432, alias="HISTORICAL_DB_PORT")
    historical_db_name: str = Field(
        default="cronkeeper_historical", alias="HISTORICAL_DB_NAME"
    )
    historical_db_user: str = Field(default="cronkeeper", alias="HISTORICAL_DB_USER")
    historical_db_password: str = Field(default="", alias="HISTORICAL_DB_PASSWORD")

    # Runtime DB
    runtime_db_host: str = Field(default="localhost", alias="RUNTIME_DB_HOST")
    runtime_db_port: int = Field(default=5432, alias="RUNTIME_DB_PORT")
    runtime_db_name: str = Field(default="cronkeeper_runtime", alias="RUNTIME_DB_NAME")
    runtime_db_user: str = Field(default="cronkeeper", alias="RUNTIME_DB_USER")
    runtime_db_password: str = Field(default="", alias="RUNTIME_DB_PASSWORD")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: str = Field(default="cronkeeper.log", alias="LOG_FILE")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Upstream API
    upstream_base_url: str = Field(default="", alias="UPSTREAM_BASE_URL")
    upstream_api_key: str = Field(default="", alias="UPSTREAM_API_KEY")
    upstream_timeout_seconds: float = Field(default=30.0, alias="UPSTREAM_TIMEOUT_SECONDS")

    # Throttling and retry
    rate_limit_requests_per_minute: int = Field(
        default=60, alias="RATE_LIMIT_REQUESTS_PER_MINUTE"
    )
    rate_limit_min_interval_ms: int = Field(default=1000, alias="RATE_LIMIT_MIN_INTERVAL_MS")
    retry_max_retries: int = Field(default=5, alias="RETRY_MAX_RETRIES")
    retry_base_delay_ms: int = Field(default=500, alias="RETRY_BASE_DELAY_MS")
    retry_max_delay_ms: int = Field(default=32000, alias="RETRY_MAX_DELAY_MS")
    retry_jitter_ms: int = Field(default=100, alias="RETRY_JITTER_MS")

    # Locking and liveness
    lock_ttl_seconds: int = Field(default=600, alias="LOCK_TTL_SECONDS")
    heartbeat_stale_threshold_hours: float = Field(
        default=25.0, alias="HEARTBEAT_STALE_THRESHOLD_HOURS"
    )

    # Archival
    archive_threshold_mb: float = Field(default=450.0, alias="ARCHIVE_THRESHOLD_MB")
    archive_target_days: int = Field(default=125, alias="ARCHIVE_TARGET_DAYS")
    archive_min_remaining_days: int = Field(default=300, alias="ARCHIVE_MIN_REMAINING_DAYS")
    archive_page_size: int = Field(default=1000, alias="ARCHIVE_PAGE_SIZE")
    archive_table_schema: str = Field(default="jquants_core", alias="ARCHIVE_TABLE_SCHEMA")
    archive_table_name: str = Field(default="equity_bar_daily", alias="ARCHIVE_TABLE_NAME")

    # Cold storage
    cold_storage_backend: str = Field(default="local", alias="COLD_STORAGE_BACKEND")
    cold_storage_bucket: str = Field(default="db-archives", alias="COLD_STORAGE_BUCKET")
    cold_storage_local_dir: str = Field(default="archives", alias="COLD_STORAGE_LOCAL_DIR")
    cold_storage_region: Optional[str] = Field(default=None, alias="COLD_STORAGE_REGION")
    cold_storage_endpoint_url: Optional[str] = Field(
        default=None, alias="COLD_STORAGE_ENDPOINT_URL"
    )

    # Notifications
    smtp_host: str = Field(default="", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_user: str = Field(default="", alias="SMTP_USER")
    smtp_password: str = Field(default="", alias="SMTP_PASSWORD")
    smtp_use_tls: bool = Field(default=True, alias="SMTP_USE_TLS")
    alert_email_to: str = Field(default="", alias="ALERT_EMAIL_TO")
    email_from: str = Field(default="cronkeeper@localhost", alias="EMAIL_FROM")
    notify_on_success: bool = Field(default=False, alias="NOTIFY_ON_SUCCESS")

    # Catch-up
    sync_max_catchup_days: int = Field(default=5, alias="SYNC_MAX_CATCHUP_DAYS")
    sync_lookback_days: int = Field(default=30, alias="SYNC_LOOKBACK_DAYS")

    @property
    def historical_db(self) -> DatabaseConfig:
        """Return database configuration for the historical DB."""

        return DatabaseConfig(
            host=self.historical_db_host,
            port=self.historical_db_port,
            name=self.historical_db_name,
            user=self.historical_db_user,
            password=self.historical_db_password,
        )

    @property
    def runtime_db(self) -> DatabaseConfig:
        """Return database configuration for the runtime DB."""

        return DatabaseConfig(
            host=self.runtime_db_host,
            port=self.runtime_db_port,
            name=self.runtime_db_name,
            user=self.runtime_db_user,
            password=self.runtime_db_password,
        )

    @property
    def upstream(self) -> UpstreamConfig:
        return UpstreamConfig(
            base_url=self.upstream_base_url,
            api_key=self.upstream_api_key,
            timeout_seconds=self.upstream_timeout_seconds,
        )

    @property
    def rate_limit(self) -> RateLimitConfig:
        return RateLimitConfig(
            requests_per_minute=self.rate_limit_requests_per_minute,
            min_interval_ms=self.rate_limit_min_interval_ms,
        )

    @property
    def retry(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.retry_max_retries,
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            jitter_ms=self.retry_jitter_ms,
        )

    @property
    def lock(self) -> LockConfig:
        return LockConfig(ttl_seconds=self.lock_ttl_seconds)

    @property
    def heartbeat(self) -> HeartbeatConfig:
        return HeartbeatConfig(stale_threshold_hours=self.heartbeat_stale_threshold_hours)

    @property
    def archival(self) -> ArchivalConfig:
        """Return archival configuration.

        Environment variables:
        - ARCHIVE_THRESHOLD_MB
        - ARCHIVE_TARGET_DAYS
        - ARCHIVE_MIN_REMAINING_DAYS
        - ARCHIVE_PAGE_SIZE
        - ARCHIVE_TABLE_SCHEMA / ARCHIVE_TABLE_NAME
        """

        return ArchivalConfig(
            threshold_mb=self.archive_threshold_mb,
            target_days=self.archive_target_days,
            min_remaining_days=self.archive_min_remaining_days,
            page_size=self.archive_page_size,
            table_schema=self.archive_table_schema,
            table_name=self.archive_table_name,
        )

    @property
    def cold_storage(self) -> ColdStorageConfig:
        return ColdStorageConfig(
            backend=self.cold_storage_backend,
            bucket=self.cold_storage_bucket,
            local_dir=self.cold_storage_local_dir,
            region_name=self.cold_storage_region,
            endpoint_url=self.cold_storage_endpoint_url,
        )

    @property
    def notification(self) -> NotificationConfig:
        return NotificationConfig(
            smtp_host=self.smtp_host,
            smtp_port=self.smtp_port,
            smtp_user=self.smtp_user,
            smtp_password=self.smtp_password,
            smtp_use_tls=self.smtp_use_tls,
            alert_email_to=self.alert_email_to,
            email_from=self.email_from,
            notify_on_success=self.notify_on_success,
        )

    @property
    def catch_up(self) -> CatchUpConfig:
        return CatchUpConfig(
            max_days=self.sync_max_catchup_days,
            lookback_days=self.sync_lookback_days,
        )


# ============================================================================
# Public API
# ============================================================================


def load_config(env_file: Optional[Path] = None) -> CronkeeperConfig:
    """Load Cronkeeper configuration.

    For local development this function will attempt to load a `.env` file
    from the current working directory if one is present. Environment
    variables always take precedence over values from `.env`.

    Args:
        env_file: Optional explicit path to a `.env` file. Values from an
            explicit file override the current environment.

    Returns:
        A fully populated :class:`CronkeeperConfig` instance.

    Raises:
        FileNotFoundError: If an explicit ``env_file`` is provided but
            does not exist.
    """

    if env_file is not None:
        if not env_file.exists():
            msg = f"Environment file not found: {env_file}"
            raise FileNotFoundError(msg)
        load_dotenv(env_file, override=True)
    else:
        default_env = Path(".env")
        if default_env.exists():
            load_dotenv(default_env)

    return CronkeeperConfig()  # type: ignore[call-arg]


_global_config: Optional[CronkeeperConfig] = None


def get_config() -> CronkeeperConfig:
    """Return the global Cronkeeper configuration singleton.

    The configuration is loaded on first access and cached for subsequent
    calls.
    """

    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config
