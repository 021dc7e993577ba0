"""Tests for environment-driven settings."""

import pytest

from leadengine_inbound.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in (
            "APP_ENV",
            "TASKS_BACKEND",
            "DEDUPE_TTL_MS",
            "WHATSAPP_WEBHOOK_SECRET",
            "WHATSAPP_WEBHOOK_SIGNATURE_SECRET",
        ):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()

        assert settings.app_env == "production"
        assert settings.tasks_backend == "asyncio"
        assert settings.dedupe_ttl_ms == 24 * 60 * 60 * 1000
        assert settings.webhook_secret == ""
        assert settings.webhook_signature_secret == ""
        assert not settings.is_local

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "local")
        monkeypatch.setenv("TASKS_BACKEND", "inline")
        monkeypatch.setenv("DEDUPE_TTL_MS", " 500 ")
        monkeypatch.setenv("WHATSAPP_WEBHOOK_SIGNATURE_SECRET", "sig")
        monkeypatch.setenv("MEDIA_DOWNLOAD_TIMEOUT_SECONDS", "2.5")
        settings = Settings.from_env()

        assert settings.webhook_signature_secret == "sig"
        assert settings.is_local
        assert settings.tasks_backend == "inline"
        assert settings.dedupe_ttl_ms == 500
        assert settings.media_download_timeout_seconds == 2.5

    def test_blank_values_use_default(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "   ")
        monkeypatch.setenv("DEDUPE_MAX_ENTRIES", "")
        settings = Settings.from_env()

        assert settings.app_env == "production"
        assert settings.dedupe_max_entries == 10_000

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("IDEMPOTENCY_TTL_MS", "soon")
        with pytest.raises(RuntimeError, match="IDEMPOTENCY_TTL_MS"):
            Settings.from_env()
