"""
Shared configuration management for the RuleGate rule evaluation layer.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Result cache
    enable_cache: bool = Field(default=True)
    cache_size: int = Field(default=1000, ge=1)
    cache_ttl_seconds: float = Field(default=300.0, gt=0)
    cache_eviction: Literal["fifo", "lru"] = Field(default="fifo")
    rule_cache_size: int = Field(default=1000, ge=1)

    # Evaluation
    evaluation_timeout_seconds: float = Field(default=30.0, gt=0)
    cancel_on_timeout: bool = Field(default=False)
    strict_mode: bool = Field(default=False)
    disabled_rules_pass: bool = Field(default=True)
    max_batch_concurrency: int = Field(default=4, ge=1)

    # Validation
    min_priority: int = Field(default=0)
    max_priority: int = Field(default=1000)

    # Rule registry collaborator
    registry_retry_attempts: int = Field(default=3, ge=1)
    registry_retry_base_delay: float = Field(default=0.1, ge=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "rules"


def get_config(service_name: str = "rules", **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
