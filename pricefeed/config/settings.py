"""
Retail Price Ingestion Service
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Bind parameters per statement; asyncpg stops at 32767 arguments
DRIVER_PARAMETER_LIMITS: Dict[str, int] = {
    "asyncpg": 32767,
    "psycopg": 65535,
    "aiosqlite": 32766,
}
DEFAULT_PARAMETER_LIMIT = 32766


class DatabaseSettings(BaseSettings):
    """Relational Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="pricefeed", alias="database", description="Database name")
    user: str = Field(default="pricefeed", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")
    echo: bool = Field(default=False, description="Echo SQL queries")
    create_tables: bool = Field(default=False, alias="DB_CREATE_TABLES", description="Create missing tables at startup")

    max_parameters: Optional[int] = Field(
        default=None,
        alias="DB_MAX_PARAMETERS",
        description="Bind parameter ceiling per statement (default: driver limit)",
    )

    @property
    def async_url(self) -> str:
        """Async database URL (asyncpg unless DATABASE_URL says otherwise)"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"

    @property
    def driver(self) -> str:
        """DBAPI driver named by the async URL, e.g. ``asyncpg``"""
        scheme = self.async_url.split("://", 1)[0]
        return scheme.split("+", 1)[1] if "+" in scheme else scheme

    @property
    def parameter_ceiling(self) -> int:
        """Bind parameters allowed in one statement for the configured driver"""
        if self.max_parameters:
            return self.max_parameters
        return DRIVER_PARAMETER_LIMITS.get(self.driver, DEFAULT_PARAMETER_LIMIT)


class CacheSettings(BaseSettings):
    """Crawl Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    root: str = Field(default="./data/cache", description="Cache root directory")
    backend: str = Field(default="parquet", description="Cache backend: parquet or csv")
    delimiter: str = Field(default=",", description="Delimiter for the text backend")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate cache backend name"""
        allowed = ["parquet", "csv"]
        if v.lower() not in allowed:
            raise ValueError(f"Cache backend must be one of: {allowed}")
        return v.lower()


class SourceConfig(BaseModel):
    """A dated-manifest delimited price source"""

    chain: str
    manifest_url: str
    delimiter: str = ";"
    decimal_separator: str = ","
    encodings: List[str] = Field(default_factory=lambda: ["utf-8", "windows-1250"])
    manifest_files_key: str = "files"
    manifest_url_key: str = "URL"
    filename_pattern: str = r"(?P<code>\d{4})"
    columns: Dict[str, str] = Field(default_factory=dict)

    @field_validator("chain")
    @classmethod
    def normalize_chain(cls, v: str) -> str:
        """Chain names are matched case-insensitively"""
        v = v.strip().lower()
        if not v or v == "*":
            raise ValueError("Chain name must be non-empty and not '*'")
        return v


class CrawlerSettings(BaseSettings):
    """Crawler Configuration"""

    model_config = SettingsConfigDict(env_prefix="CRAWLER_")

    request_timeout: float = Field(default=60.0, description="HTTP timeout in seconds")
    user_agent: str = Field(default="pricefeed/1.0", description="User-Agent header")
    sources: List[SourceConfig] = Field(default_factory=list, description="Configured manifest sources (JSON)")


class SchedulerSettings(BaseSettings):
    """Ingestion Scheduler Configuration"""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    idle_interval: float = Field(default=1.0, description="Queue poll backoff in seconds")
    autostart: bool = Field(default=True, description="Start the consumer loop with the app")


class MailSettings(BaseSettings):
    """Outbound E-mail Notification Configuration"""

    model_config = SettingsConfigDict(env_prefix="MAIL_")

    enabled: bool = Field(default=False, description="Send e-mail notifications")
    smtp_server: str = Field(default="localhost", description="SMTP host")
    port: int = Field(default=587, description="SMTP port")
    enable_ssl: bool = Field(default=True, description="Use STARTTLS")
    username: Optional[str] = Field(default=None, description="SMTP user")
    password: Optional[SecretStr] = Field(default=None, description="SMTP password")
    from_address: str = Field(default="pricefeed@localhost", description="Sender address")
    to_address: str = Field(default="admin@localhost", description="Recipient address")


class GeocodingSettings(BaseSettings):
    """Address Resolution Configuration"""

    model_config = SettingsConfigDict(env_prefix="GEOCODING_")

    api_key: Optional[SecretStr] = Field(default=None, description="Google Geocoding API key")
    base_url: str = Field(default="https://maps.googleapis.com", description="Geocoding base URL")
    timeout: float = Field(default=10.0, description="Request timeout in seconds")


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class DatabaseLogSettings(BaseSettings):
    """Persisted Application Log Configuration"""

    model_config = SettingsConfigDict(env_prefix="DB_LOG_")

    enabled: bool = Field(default=True, description="Write log entries to the application_logs table")
    min_level: str = Field(default="INFO", description="Lowest level persisted")
    buffer_size: int = Field(default=100, description="Buffered entries that trigger an early flush")
    flush_interval: float = Field(default=30.0, description="Seconds between flushes")
    excluded_categories: List[str] = Field(
        default_factory=lambda: ["sqlalchemy", "aiosqlite", "asyncpg"],
        description="Logger name prefixes never persisted",
    )


class MaintenanceSettings(BaseSettings):
    """Database Maintenance Configuration"""

    model_config = SettingsConfigDict(env_prefix="DB_MAINTENANCE_")

    enabled: bool = Field(default=True, description="Run ANALYZE and REINDEX periodically")
    interval_hours: float = Field(default=24.0, description="Hours between maintenance runs")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="pricefeed", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    mail: MailSettings = Field(default_factory=MailSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    db_logging: DatabaseLogSettings = Field(default_factory=DatabaseLogSettings)
    maintenance: MaintenanceSettings = Field(default_factory=MaintenanceSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
