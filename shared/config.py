"""
Shared configuration management for the External Metrics Service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="EXTMETRICS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Update loops
    shutdown_timeout_seconds: float = Field(default=5.0)

    # Example application
    example_tick_interval_seconds: float = Field(default=1.0)
    example_namespace: str = Field(default="*")
    example_metric_name: str = Field(default="incrementable")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int = 8000
    host: str = "0.0.0.0"


def get_config(service_name: str, port: Optional[int] = None) -> ServiceConfig:
    """Get configuration for a specific service.

    An explicit ``port`` overrides ``EXTMETRICS_PORT``.
    """
    overrides = {} if port is None else {"port": port}
    return ServiceConfig(service_name=service_name, **overrides)
