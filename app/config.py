from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    SQLITE_BUSY_TIMEOUT_SECONDS: int = 30  # Writer lock wait for file-backed SQLite

    # App Settings
    APP_NAME: str = "Affiliate Commission Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CREATE_TABLES_ON_STARTUP: bool = False  # Local development only; deployments use alembic

    # Serializable unit of work
    SERIALIZABLE_MAX_ATTEMPTS: int = 5  # Attempts before surfacing a transient failure
    SERIALIZABLE_RETRY_BACKOFF_SECONDS: float = 0.05  # Doubled on every retry
    SERIALIZABLE_RETRY_BACKOFF_MAX_SECONDS: float = 1.0
    SERIALIZABLE_TIMEOUT_SECONDS: float = 5.0  # Per attempt

    # Reporting suppression
    REPORTING_SUPPRESSION_FLOOR: int = 5  # Slices with fewer conversions are suppressed
    REPORTING_SUPPRESSION_MODE: str = "WITHHOLD"  # Options: WITHHOLD, ROUND
    REPORTING_ROUNDING_CENTS: int = 10000  # ROUND mode granularity ($100)
    REPORTING_TREND_DAYS: int = 90  # Max days in a daily trend series

    # Attribution defaults (per-tenant AttributionConfig rows take precedence)
    ATTRIBUTION_COOKIE_WINDOW_DAYS: int = 30
    ATTRIBUTION_NEW_CUSTOMER_MODEL: str = "FIRST_CLICK"
    ATTRIBUTION_RETURNING_CUSTOMER_MODEL: str = "LAST_CLICK"
    ATTRIBUTION_TIME_DECAY_HALF_LIFE_DAYS: int = 7

    # Fraud screening of new conversions
    FRAUD_CHECK_ENABLED: bool = True
    FRAUD_LOOKBACK_DAYS: int = 30
    FRAUD_SELF_REFERRAL_TOUCH_THRESHOLD: int = 10  # Touches from one IP hash before it looks like self-referral
    FRAUD_MAX_CONVERSIONS_PER_IP: int = 3
    FRAUD_HOLD_ON_REVIEW: bool = True  # Keep REVIEW events PENDING until cleared by an operator
    FRAUD_AUTO_PAUSE_ON_REJECT: bool = False

    # Jobs
    APPROVAL_BATCH_SIZE: int = 500  # Events approved per job run

    @field_validator('REPORTING_SUPPRESSION_MODE', 'ATTRIBUTION_NEW_CUSTOMER_MODEL',
                     'ATTRIBUTION_RETURNING_CUSTOMER_MODEL', 'LOG_LEVEL', mode='before')
    @classmethod
    def normalize_upper(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
