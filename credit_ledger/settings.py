"""Credit ledger settings and configuration."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from CREDIT_LEDGER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CREDIT_LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_url: Optional[str] = None  # In-memory storage when unset
    create_schema: bool = False

    # Credit policy
    cancellation_credit_ttl_days: int = 365
    amount_quantum: Decimal = Decimal("1")

    # Consumption
    consume_max_attempts: int = 3

    # CORS
    cors_origins: list[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_format: str = '{"time": "%(asctime)s", "level": "%(levelname)s", "message": "%(message)s", "module": "%(name)s"}'


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
