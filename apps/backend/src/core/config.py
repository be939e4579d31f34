"""
Proxmox State Sync - Configuration Management

This module handles all configuration settings including database connections,
hypervisor API access, discovery/sync tuning, task polling and logging.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database configuration settings for the local state store"""

    # Full URL override (e.g. sqlite+aiosqlite:///./state.db)
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    # Database Connection
    postgres_host: str = Field(default="localhost", validation_alias="POSTGRES_HOST")
    postgres_port: int = Field(default=5432, validation_alias="POSTGRES_PORT")
    postgres_db: str = Field(default="pve_state", validation_alias="POSTGRES_DB")
    postgres_user: str = Field(default="pve_state", validation_alias="POSTGRES_USER")
    postgres_password: str = Field(default="change_me_in_production", validation_alias="POSTGRES_PASSWORD")

    # Connection Pool Settings
    db_pool_size: int = Field(default=10, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=20, validation_alias="DB_MAX_OVERFLOW")
    db_pool_timeout: int = Field(default=30, validation_alias="DB_POOL_TIMEOUT")
    db_pool_recycle: int = Field(default=3600, validation_alias="DB_POOL_RECYCLE")

    @property
    def database_url(self) -> str:
        """Generate async database URL"""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class ProxmoxSettings(BaseSettings):
    """Hypervisor management API connection settings"""

    proxmox_host: str = Field(default="pve.local", validation_alias="PROXMOX_HOST")
    proxmox_port: int = Field(default=8006, validation_alias="PROXMOX_PORT")
    proxmox_user: str = Field(default="root@pam", validation_alias="PROXMOX_USER")
    proxmox_token_id: str | None = Field(default=None, validation_alias="PROXMOX_TOKEN_ID")
    proxmox_token_secret: str | None = Field(default=None, validation_alias="PROXMOX_TOKEN_SECRET")

    # Self-signed deployments must opt in explicitly
    proxmox_verify_ssl: bool = Field(default=True, validation_alias="PROXMOX_VERIFY_SSL")
    proxmox_request_timeout: float = Field(default=10.0, validation_alias="PROXMOX_REQUEST_TIMEOUT")

    @property
    def base_url(self) -> str:
        return f"https://{self.proxmox_host}:{self.proxmox_port}/api2/json"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class SyncSettings(BaseSettings):
    """Discovery and synchronization tuning"""

    sync_worker_pool_size: int = Field(default=4, validation_alias="SYNC_WORKER_POOL_SIZE")
    sync_retry_attempts: int = Field(default=3, validation_alias="SYNC_RETRY_ATTEMPTS")
    sync_retry_base_delay: float = Field(default=0.5, validation_alias="SYNC_RETRY_BASE_DELAY")
    sync_deletion_grace_passes: int = Field(default=2, validation_alias="SYNC_DELETION_GRACE_PASSES")

    @field_validator("sync_worker_pool_size", "sync_retry_attempts", "sync_deletion_grace_passes")
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("sync_retry_base_delay")
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry delay cannot be negative")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class TaskMonitorSettings(BaseSettings):
    """Polling intervals for asynchronous hypervisor operations"""

    task_poll_initial_interval: float = Field(default=1.0, validation_alias="TASK_POLL_INITIAL_INTERVAL")
    task_poll_max_interval: float = Field(default=4.0, validation_alias="TASK_POLL_MAX_INTERVAL")
    task_poll_backoff_factor: float = Field(default=2.0, validation_alias="TASK_POLL_BACKOFF_FACTOR")
    task_default_timeout: float = Field(default=300.0, validation_alias="TASK_DEFAULT_TIMEOUT")

    @field_validator("task_poll_initial_interval", "task_poll_max_interval", "task_default_timeout")
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("polling intervals and timeouts must be positive")
        return v

    @field_validator("task_poll_backoff_factor")
    def validate_factor(cls, v: float) -> float:
        if v < 1:
            raise ValueError("backoff factor must be at least 1")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class RetentionSettings(BaseSettings):
    """Snapshot and task retention used by explicit maintenance runs"""

    retention_snapshot_days: int = Field(default=90, validation_alias="RETENTION_SNAPSHOT_DAYS")
    retention_task_days: int = Field(default=30, validation_alias="RETENTION_TASK_DAYS")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class LoggingSettings(BaseSettings):
    """Logging configuration settings"""

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    @field_validator("log_level")
    def validate_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v.upper()

    @field_validator("log_format")
    def validate_format(cls, v: str) -> str:
        if v not in ("json", "console"):
            raise ValueError("log format must be json or console")
        return v

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


class ApplicationSettings(BaseSettings):
    """Main application settings combining all configuration sections"""

    # Environment
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    debug: bool = Field(default=False, validation_alias="DEBUG")

    # Component settings
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    proxmox: ProxmoxSettings = Field(default_factory=ProxmoxSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    tasks: TaskMonitorSettings = Field(default_factory=TaskMonitorSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment.lower() == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment.lower() == "production"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


@lru_cache
def get_settings() -> ApplicationSettings:
    """Get cached application settings instance"""
    return ApplicationSettings()
