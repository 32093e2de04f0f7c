"""
Configuration Management

Pydantic-settings based configuration for the supplier access and follow-up engine.
All settings can be overridden via environment variables.
"""

from functools import lru_cache
from typing import Literal

from botocore.config import Config
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Environment variables are prefixed with MAINTENANCE_ and are case-insensitive.
    Example: MAINTENANCE_DYNAMODB_TABLE_NAME=MyTable
    """

    model_config = SettingsConfigDict(
        env_prefix="MAINTENANCE_",
        env_file=[".env.local", ".env"],  # Try .env.local first
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # DynamoDB Configuration
    dynamodb_table_name: str = Field(
        default="MaintenancePortal",
        description="DynamoDB table holding codes, schedules, counters and audit events",
    )
    dynamodb_gsi1_name: str = Field(
        default="GSI1",
        description="GSI1 index name for due follow-up queries",
    )
    dynamodb_endpoint_url: str | None = Field(
        default=None,
        description="DynamoDB endpoint URL (for local development)",
    )

    # SES Configuration
    ses_from_address: str = Field(
        default="portal@maintenance.example.com",
        description="From address for outbound notifications",
    )
    ses_from_name: str = Field(
        default="Condominium Maintenance",
        description="Display name for outbound notifications",
    )
    ses_configuration_set: str | None = Field(
        default=None,
        description="SES configuration set for tracking",
    )
    ses_template_prefix: str = Field(
        default="maintenance-",
        description="Prefix prepended to template identifiers to form SES template names",
    )
    ses_endpoint_url: str | None = Field(
        default=None,
        description="SES endpoint URL (use 'mock' for local)",
    )

    # AWS Configuration
    aws_region: str = Field(
        default="eu-west-1",
        description="AWS region",
    )
    aws_connect_timeout_seconds: float = Field(
        default=3.0,
        description="Connect timeout applied to every AWS client",
    )
    aws_read_timeout_seconds: float = Field(
        default=10.0,
        description="Read timeout applied to every AWS client",
    )
    aws_max_attempts: int = Field(
        default=3,
        description="Total attempts (including the first) for AWS calls",
    )

    # Application Configuration
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    portal_base_url: str = Field(
        default="http://localhost:5173",
        description="Base URL of the supplier portal embedded in emailed links",
    )

    # Access code configuration
    access_code_length: int = Field(
        default=24,
        ge=20,
        le=32,
        description="Characters per generated access code ([A-Z0-9])",
    )
    access_code_max_generation_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts before giving up on a colliding code",
    )
    invite_code_ttl_hours: int = Field(
        default=24,
        description="Lifetime of codes sent in the initial portal invite",
    )
    reminder_code_ttl_days: int = Field(
        default=30,
        description="Lifetime of codes minted for follow-up reminders",
    )
    reminder_code_min_remaining_hours: int = Field(
        default=24,
        description="Minimum remaining validity before an existing code is reused",
    )

    # Rate limiting
    validate_ip_max_attempts: int = Field(
        default=20,
        description="Validation attempts allowed per origin per window",
    )
    validate_code_max_attempts: int = Field(
        default=5,
        description="Validation attempts allowed per origin and code per window",
    )
    validate_window_seconds: int = Field(
        default=300,
        description="Fixed rate-limit window length in seconds",
    )

    # Follow-up Configuration
    followup_batch_size: int = Field(
        default=20,
        ge=1,
        description="Maximum schedules handled by one processor invocation",
    )
    followup_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Default maximum delivery attempts per schedule",
    )
    followup_retry_backoff_hours: int = Field(
        default=4,
        description="Delay before a failed schedule becomes eligible again",
    )
    followup_claim_timeout_minutes: int = Field(
        default=30,
        description="Age after which a processing claim is considered abandoned",
    )

    @property
    def is_local(self) -> bool:
        """Detect if running in local mode."""
        return (
            self.environment == "development"
            or self.dynamodb_endpoint_url == "mock"
            or self.ses_endpoint_url == "mock"
        )

    @property
    def botocore_config(self) -> Config:
        """Bounded timeouts and retries shared by every AWS client."""
        return Config(
            connect_timeout=self.aws_connect_timeout_seconds,
            read_timeout=self.aws_read_timeout_seconds,
            retries={"max_attempts": self.aws_max_attempts, "mode": "standard"},
        )

    @property
    def dynamodb_config(self) -> dict:
        """DynamoDB client configuration."""
        config = {"region_name": self.aws_region, "config": self.botocore_config}
        if self.dynamodb_endpoint_url and self.dynamodb_endpoint_url != "mock":
            config["endpoint_url"] = self.dynamodb_endpoint_url
        return config

    @property
    def ses_config(self) -> dict:
        """SES client configuration."""
        config = {"region_name": self.aws_region, "config": self.botocore_config}
        if self.ses_endpoint_url and self.ses_endpoint_url != "mock":
            config["endpoint_url"] = self.ses_endpoint_url
        return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are loaded only once.
    Call get_settings.cache_clear() in tests after changing the environment.
    """
    return Settings()
