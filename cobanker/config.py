"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

import re
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CobankerConfig(BaseSettings):
    """CoBanker ledger service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="COBANKER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "sqlite:///cobanker.db"  # memory://, sqlite:///path, postgresql://...
    sqlite_timeout: float = 5.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: List[str] = ["http://localhost:3000", "http://localhost:19006"]

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_audience: Optional[str] = None

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Ledger configuration
    account_number_prefix: str = "CB"
    account_number_attempts: int = 5
    movement_max_attempts: int = 25

    # Storage retry policy
    storage_retry_attempts: int = 3
    storage_retry_base_delay: float = 0.05
    storage_retry_max_delay: float = 1.0

    # Pagination
    default_page_size: int = 10
    max_page_size: int = 100

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("account_number_prefix")
    @classmethod
    def _two_letter_prefix(cls, value: str) -> str:
        if not re.fullmatch(r"[A-Z]{2}", value):
            raise ValueError("account_number_prefix must be two uppercase letters")
        return value

    @field_validator("log_format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("movement_max_attempts", "account_number_attempts", "storage_retry_attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("attempt counts must be at least 1")
        return value


# Global configuration instance
config = CobankerConfig()


def get_config() -> CobankerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CobankerConfig:
    """Reload configuration from environment"""
    global config
    config = CobankerConfig()
    return config
