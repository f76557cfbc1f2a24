"""Billing sync configuration."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Environment-driven settings for the billing sync service."""

    stripe_secret_key: str = ""
    stripe_api_base: str = "https://api.stripe.com"

    # Primary signing secret plus older/alternate ones still trusted during rotation
    stripe_webhook_secret: str = ""
    stripe_webhook_secrets: list[str] = []
    webhook_tolerance_seconds: int = 300

    # Empty database_url -> in-memory stores (local development and tests)
    database_url: str = ""
    accounts_table: str = "accounts"
    events_table: str = "billing_events"

    # Empty redis_url -> no processed-marker cache
    redis_url: str = ""

    cors_allowed_origins: list[str] = ["*"]
    checkout_success_url: str = ""
    checkout_cancel_url: str = ""
    checkout_rate_limit: str = "20/minute"

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "extra": "ignore"}

    def trusted_secrets(self) -> list[str]:
        """Signing secrets in trial order, blanks and repeats removed."""
        ordered: list[str] = []
        for secret in [self.stripe_webhook_secret, *self.stripe_webhook_secrets]:
            secret = secret.strip()
            if secret and secret not in ordered:
                ordered.append(secret)
        return ordered


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    if any(getattr(h, "_billing_sync", False) for h in root.handlers):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    handler._billing_sync = True  # type: ignore[attr-defined]
    root.addHandler(handler)
    root.setLevel(level.upper())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use."""
    return Settings()
