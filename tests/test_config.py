"""Tests for settings and logging setup."""

from __future__ import annotations

import logging

from billing_sync.config import Settings, configure_logging


class TestSettings:
    def test_defaults(self, monkeypatch):
        for var in ("STRIPE_WEBHOOK_SECRET", "STRIPE_WEBHOOK_SECRETS", "WEBHOOK_TOLERANCE_SECONDS"):
            monkeypatch.delenv(var, raising=False)
        settings = Settings(_env_file=None)
        assert settings.webhook_tolerance_seconds == 300
        assert settings.accounts_table == "accounts"
        assert settings.events_table == "billing_events"
        assert settings.trusted_secrets() == []

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_primary")
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRETS", '["whsec_old", "whsec_primary", ""]')
        monkeypatch.setenv("WEBHOOK_TOLERANCE_SECONDS", "600")
        monkeypatch.setenv("CORS_ALLOWED_ORIGINS", '["https://app.example.com"]')
        settings = Settings(_env_file=None)
        assert settings.webhook_tolerance_seconds == 600
        assert settings.cors_allowed_origins == ["https://app.example.com"]
        assert settings.trusted_secrets() == ["whsec_primary", "whsec_old"]

    def test_trusted_secrets_order_and_blanks(self):
        settings = Settings(
            _env_file=None,
            stripe_webhook_secret="  ",
            stripe_webhook_secrets=["whsec_b", "whsec_a", "whsec_b"],
        )
        assert settings.trusted_secrets() == ["whsec_b", "whsec_a"]


class TestConfigureLogging:
    def test_installs_single_handler(self):
        root = logging.getLogger()
        configure_logging("debug")
        configure_logging("warning")
        ours = [h for h in root.handlers if getattr(h, "_billing_sync", False)]
        try:
            assert len(ours) == 1
            assert root.level == logging.WARNING
        finally:
            for handler in ours:
                root.removeHandler(handler)
