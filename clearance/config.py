from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    SQLITE_BUSY_TIMEOUT: float = 15.0  # Seconds a SQLite writer waits for the lock

    # JWT Settings (operator identity only, tokens are issued by the console)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # App Settings
    APP_NAME: str = "Ferry Affiliate Clearance"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Business calendar used to decide what "today" is for cutoff dates
    BUSINESS_TIMEZONE: str = "Europe/Athens"

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    ELIGIBILITY_CACHE_TTL: int = 300  # 5 minutes for ledger snapshots

    # Earnings Ledger Provider ("http" or "sandbox")
    EARNINGS_LEDGER_MODE: str = "http"
    EARNINGS_LEDGER_URL: str = ""
    EARNINGS_LEDGER_API_KEY: str = ""

    # Identity / ID expiry provider ("http" or "sandbox")
    IDENTITY_PROVIDER_MODE: str = "http"
    IDENTITY_PROVIDER_URL: str = ""
    IDENTITY_PROVIDER_API_KEY: str = ""

    # Payment Interface ("http" or "sandbox")
    PAYMENT_GATEWAY_MODE: str = "http"
    PAYMENT_GATEWAY_URL: str = ""
    PAYMENT_GATEWAY_API_KEY: str = ""

    EXTERNAL_HTTP_TIMEOUT_SECONDS: float = 20.0

    # Batch Settlement
    SETTLEMENT_TIMEOUT_SECONDS: float = 30.0  # Per affiliate payment call
    SETTLEMENT_MAX_CONCURRENCY: int = 8  # Affiliates processed in parallel per batch
    SETTLEMENT_CLAIM_TTL_MINUTES: int = 15  # Claims older than this are considered abandoned

    # Server-side eligibility filters (used by schedule/settle/complete/overrides)
    ELIGIBILITY_EXCLUDE_FAKE_AFFILIATES: bool = True
    ELIGIBILITY_EXCLUDE_EXPIRED_IDS: bool = False

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    STALE_CLAIM_SWEEP_INTERVAL_MINUTES: int = 5

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('EARNINGS_LEDGER_MODE', 'IDENTITY_PROVIDER_MODE', 'PAYMENT_GATEWAY_MODE', mode='before')
    @classmethod
    def normalize_mode(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {"http", "sandbox"}:
                raise ValueError("mode must be 'http' or 'sandbox'")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return list(self.CORS_ORIGINS)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
