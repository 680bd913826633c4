"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business limits are defined here once and consumed by every code path that moves money.
"""

from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings


class LedgerConfig(BaseSettings):
    """Ledger engine configuration"""

    # Storage configuration
    database_url: str = "sqlite:///ledger.db"
    storage_timeout_seconds: float = 5.0
    lock_timeout_seconds: float = 5.0

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    base_currency: str = "GTQ"
    business_timezone: str = "America/Guatemala"
    max_transfer_amount: Decimal = Decimal("2000.00")
    max_daily_transfer_amount: Decimal = Decimal("10000.00")
    reversal_window_minutes: int = 60

    # Exchange rate provider configuration
    rate_provider_url: str = ""  # Empty = provider disabled
    rate_provider_api_key: str = ""
    rate_provider_timeout: float = 8.0
    rate_refresh_interval_hours: float = 24.0

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("max_transfer_amount", "max_daily_transfer_amount")
    @classmethod
    def _positive_amount(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("transfer limits must be positive")
        return value

    @field_validator("reversal_window_minutes")
    @classmethod
    def _positive_window(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("reversal window must be positive")
        return value

    class Config:
        env_prefix = "LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
