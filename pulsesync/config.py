"""Application configuration loaded from environment variables."""

import logging
import sys
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "PulseSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database (data tables and the job queue share one Postgres) ---
    database_url: str
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10
    db_command_timeout: float = 30.0

    # --- Auth (bearer tokens on job-triggering endpoints) ---
    jwt_secret: str | None = None
    jwt_public_key: str | None = None
    jwt_algorithm: str = "HS256"

    # --- Providers ---
    garmin_client_id: str | None = None
    garmin_client_secret: str | None = None  # also keys the webhook HMAC
    fitbit_client_id: str | None = None
    fitbit_client_secret: str | None = None  # also keys the webhook HMAC
    fitbit_subscriber_code: str | None = None
    provider_request_timeout_seconds: float = 30.0

    # Development only: accept webhooks unsigned when a provider secret is missing
    allow_unsigned_webhooks: bool = False

    # --- Sync policy ---
    sync_cron: str = "0 2 * * *"
    backfill_days_default: int = 60
    sync_trailing_days: int = 2
    fanout_batch_size: int = 500

    # --- Job queue ---
    job_retry_limit: int = 3
    job_retry_delay_seconds: int = 30
    job_retry_backoff: bool = True
    job_timeout_seconds: int = 900
    job_retention_days: int = 7
    queue_poll_interval_seconds: float = 2.0
    worker_concurrency: int = 2

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 60

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def _check_required_groups(self) -> "Settings":
        if not self.jwt_secret and not self.jwt_public_key:
            raise ValueError("jwt_secret or jwt_public_key must be configured")

        has_secret = bool(self.garmin_client_secret or self.fitbit_client_secret)
        if not has_secret and not self.allow_unsigned_webhooks:
            raise ValueError(
                "At least one provider must be configured (Garmin or Fitbit client secret)"
            )

        if self.allow_unsigned_webhooks and self.environment == "production":
            raise ValueError("allow_unsigned_webhooks cannot be enabled in production")
        return self

    def provider_secret(self, provider: str) -> str | None:
        """Return the webhook signing secret for a provider slug."""
        return {
            "garmin": self.garmin_client_secret,
            "fitbit": self.fitbit_client_secret,
        }.get(provider)


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def configure_logging(settings: Settings) -> None:
    """Process-wide logging setup shared by the API and the worker."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
