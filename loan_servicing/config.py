"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServicingConfig(BaseSettings):
    """Loan servicing engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LOANSVC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///loan_servicing.db"  # memory:// for in-memory

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Servicing rules
    lock_timeout_seconds: float = 5.0
    payment_allocation: str = "interest_first"  # interest_first or proportional
    closing_epsilon: str = "0.01"
    csv_import_max_rows: int = 5000

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("payment_allocation")
    @classmethod
    def _check_allocation(cls, value: str) -> str:
        value = value.lower()
        if value not in ("interest_first", "proportional"):
            raise ValueError("payment_allocation must be interest_first or proportional")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be json or text")
        return value

    @field_validator("lock_timeout_seconds")
    @classmethod
    def _check_lock_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("lock_timeout_seconds must be positive")
        return value


# Global configuration instance
config = ServicingConfig()


def get_config() -> ServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> ServicingConfig:
    """Reload configuration from environment"""
    global config
    config = ServicingConfig()
    return config
