# SPDX-License-Identifier: Apache-2.0
# Copyright 2024-2026 CAB Ingénierie / Christophe ABOULICAM
"""Application settings using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Certificate agent configuration settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "STOA Gateway Certificate Agent"
    app_version: str = "0.1.0"
    environment: Literal["dev", "staging", "prod"] = "dev"

    # Server (health, readiness and metrics only)
    host: str = "0.0.0.0"
    port: int = 8081

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"

    # Observability
    enable_metrics: bool = True

    # Consul agent (certificate authority)
    consul_http_addr: str = "http://127.0.0.1:8500"
    consul_http_token: str = ""
    consul_namespace: str | None = None
    consul_partition: str | None = None
    consul_timeout_seconds: float = 30.0

    # Service identity the leaf certificate is issued for
    service_name: str = "api-gateway"

    # Certificate manager
    cert_manager_enabled: bool = True
    cert_directory: str = "/certs"
    cert_tries: int = 10  # 0 = fail on the first error
    cert_backoff_seconds: float = 1.0
    cert_max_backoff_seconds: float = 30.0
    cert_min_renewal_seconds: float = 1.0

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper

    @field_validator("cert_tries")
    @classmethod
    def validate_cert_tries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("cert_tries must be >= 0")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "prod"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
