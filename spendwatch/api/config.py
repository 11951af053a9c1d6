"""Configuration management for the spendwatch service."""

import os
from functools import lru_cache
from pathlib import Path

from platformdirs import user_data_dir
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from spendwatch.version import __version__


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # API Settings
    app_name: str = Field(default="Spendwatch", description="Application name")
    app_version: str = Field(default=__version__, description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server Settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=38640, description="Server port")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins",
    )

    # API Key Settings
    api_keys: str | None = Field(
        default=None, description="Server API keys for authentication (comma-separated)"
    )
    require_api_auth: bool = Field(default=True, description="Require API key authentication")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON structured logs")

    # Storage
    data_dir: str | None = Field(
        default=None,
        description="Data directory for the ledger database (default: platform user data dir)",
    )
    accounts_file: str | None = Field(
        default=None,
        description="YAML account registry (default: {data_dir}/accounts.yaml)",
    )

    # Scheduling
    scheduler_enabled: bool = Field(default=True, description="Enable periodic triggers")
    sweep_cron: str = Field(
        default="0 * * * *", description="Cron schedule for the threshold sweep (hourly)"
    )
    sync_cron: str = Field(
        default="0 1 * * *", description="Cron schedule for the ledger sync (daily at 1am UTC)"
    )
    cleanup_cron: str = Field(
        default="0 2 * * 0",
        description="Cron schedule for retention cleanup (weekly Sunday at 2am UTC)",
    )
    sweep_workers: int = Field(default=4, ge=1, description="Parallel subjects per sweep")

    # Alerting
    alert_cooldown_hours: int = Field(
        default=24, ge=1, description="Minimum spacing between two sent alerts of one kind"
    )
    alert_claim_lease_minutes: int = Field(
        default=15,
        ge=1,
        description="How long a pending alert claim blocks concurrent dispatch",
    )
    daily_summary_enabled: bool = Field(
        default=False, description="Send a daily cost summary after each ledger sync"
    )

    # Retention
    ledger_retention_months: int = Field(default=24, ge=1)
    alert_retention_months: int = Field(default=12, ge=1)
    job_run_retention_months: int = Field(default=6, ge=1)

    # Metered-billing provider
    provider_base_url: str = Field(
        default="http://localhost:8900", description="Base URL of the billing export API"
    )
    provider_token: str | None = Field(default=None, description="Bearer token for the provider")
    provider_timeout_seconds: float = Field(default=30.0, gt=0)
    provider_max_attempts: int = Field(default=4, ge=1)
    provider_backoff_seconds: float = Field(
        default=2.0, ge=0, description="Base delay for exponential backoff between attempts"
    )

    # Email transport
    smtp_host: str | None = Field(default=None, description="SMTP server host")
    smtp_port: int = Field(default=587, description="SMTP server port")
    smtp_user: str | None = Field(default=None, description="SMTP username")
    smtp_password: str | None = Field(default=None, description="SMTP password")
    smtp_sender: str | None = Field(default=None, description="From address (default: user)")
    smtp_timeout_seconds: float = Field(default=20.0, gt=0)

    def get_data_dir(self) -> Path:
        """Return the data directory, creating it if needed.

        Uses DATA_DIR if set (Docker deployments), otherwise the
        platform-specific user data directory.
        """
        base = Path(self.data_dir) if self.data_dir else Path(user_data_dir("spendwatch"))
        base.mkdir(parents=True, exist_ok=True)
        return base

    def get_accounts_path(self) -> Path:
        """Return the path to the account registry YAML file."""
        if self.accounts_file:
            return Path(os.path.expanduser(self.accounts_file))
        return self.get_data_dir() / "accounts.yaml"

    def parse_api_keys(self) -> set[str]:
        """Parse API_KEYS into a set of accepted keys."""
        if not self.api_keys:
            return set()
        return {key.strip() for key in self.api_keys.split(",") if key.strip()}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
