"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class LateFeeType(Enum):
    """How the French-structure late fee is computed"""
    PERCENTAGE_DAILY = "percentage_daily"  # % of remaining capital per day late
    FIXED = "fixed"                        # flat amount once the grace period lapses


class LendingConfig(BaseSettings):
    """Lending engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///path/to/lending.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules: flat rate
    flat_rate_late_fee_rate: Decimal = Field(Decimal("0.05"), ge=0, description="Fraction of one installment per overdue installment")

    # Business rules: French amortization
    french_late_fee_type: LateFeeType = LateFeeType.PERCENTAGE_DAILY
    french_late_fee_value: Decimal = Field(Decimal("0.1"), ge=0, description="Percent per day, or fixed amount")
    grace_period_days: int = Field(0, ge=0, description="Days after the due date before a late fee applies")

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
