"""
Shared configuration management for the policy layer.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="POLICY_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    postgres_dsn: str = Field(default="postgres://localhost:5432/policy")
    redis_url: str = Field(default="redis://localhost:6379/0")

    # Policy store
    store_backend: str = Field(default="postgres", description="postgres or memory")
    policy_table: str = Field(default="casbin_rule")

    # Cross-process refresh, both disabled by default
    reload_channel: Optional[str] = Field(default=None)
    refresh_interval_seconds: float = Field(default=0.0, ge=0)

    # Credentials
    token_prefix: str = Field(default="datk")

    # Identity handoff from the upstream authentication layer
    trust_principal_header: bool = Field(default=False)
    principal_header: str = Field(default="X-Principal-Id")


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
