# subscription_engine/config.py

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


# --- PostgreSQL ---
class PostgresConfig(BaseModel):
    user: str = "postgres"
    password: str = "postgres"
    host: str = "localhost"
    port: int = 5432
    db: str = "billing"

    pool_size: int = 5
    max_overflow: int = 5
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    application_name: str = "subscription_engine"

    def get_pg_dsn(self) -> str:
        """Builds the SQLAlchemy DSN from this object's fields."""
        return f"postgresql+asyncpg://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"

    def get_raw_dsn(self) -> str:
        """Plain asyncpg DSN (used by the LISTEN/NOTIFY change feed)."""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


# --- Billing rules ---
class BillingConfig(BaseModel):
    grace_window_days: int = Field(7, ge=0)
    default_trial_days: int = Field(14, ge=0)
    # Days a freshly purchased (pending_payment) subscription waits for its first payment.
    payment_window_days: int = Field(7, ge=1)
    reminder_thresholds: List[int] = Field(default_factory=lambda: [14, 7, 3, 1])
    reminder_timezone: str = "UTC"

    # Optimistic-lock retry policy
    max_write_attempts: int = Field(5, ge=1)
    retry_min_seconds: float = 0.05
    retry_max_seconds: float = 1.0


class SchedulerConfig(BaseModel):
    interval_seconds: int = Field(300, ge=1)
    max_parallel_tenants: int = Field(10, ge=1)


class NotificationConfig(BaseModel):
    queue_size: int = Field(1000, ge=1)


# --- Explicit configuration object passed to the factory ---
class EngineConfig(BaseModel):
    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)


# --- Settings read from the environment / .env ---
class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter='_',
        env_nested_max_split=1,
        extra='ignore'
    )

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    postgres: PostgresConfig = Field(default_factory=PostgresConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def to_engine_config(self) -> EngineConfig:
        return EngineConfig(
            postgres=self.postgres,
            billing=self.billing,
            scheduler=self.scheduler,
            notifications=self.notifications,
        )


_cached_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Returns the settings singleton, creating it on first call.
    Keeps validation errors away from import time.
    """
    global _cached_settings
    if _cached_settings is None:
        _cached_settings = Settings()
    return _cached_settings


def reset_settings() -> None:
    """Drops the cached settings (tests change the environment between runs)."""
    global _cached_settings
    _cached_settings = None
