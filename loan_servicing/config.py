"""
Configuration Management Module

Centralized configuration using pydantic-settings. Every field can be
overridden with a LOAN_SERVICING_-prefixed environment variable or a .env
file entry.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LoanServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"   # or memory://

    # Money configuration
    default_currency: str = "INR"

    # Schedule policy
    absorb_rounding_residual: bool = True   # true-up the final installment

    # Foreclosure policy: settled_installments or elapsed_due_dates
    foreclosure_policy: str = "settled_installments"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_SERVICING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
