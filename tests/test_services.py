"""Tests for service wiring."""

import pytest

from leadengine_inbound.config import Settings
from leadengine_inbound.inbound.media import MediaDownloader
from leadengine_inbound.infra.repositories.poll_state_repository import (
    InMemoryPollStateRepository,
    PostgresPollStateRepository,
)
from leadengine_inbound.services import build_poll_state_repository, build_services


class TestBuildServices:
    def test_defaults(self):
        services = build_services(Settings(tasks_backend="inline"))
        try:
            assert services.settings.tasks_backend == "inline"
            assert services.scheduler.backend == "inline"
            assert services.storage.messages == {}
            assert services.ingestion._media_downloader is None
        finally:
            services.shutdown()

    def test_broker_url_enables_media_downloads(self, tmp_path):
        settings = Settings(
            tasks_backend="inline",
            broker_url="http://broker.local",
            media_storage_dir=str(tmp_path),
        )
        services = build_services(settings)
        try:
            assert isinstance(services.ingestion._media_downloader, MediaDownloader)
        finally:
            services.shutdown()

    def test_unknown_storage_backend(self):
        with pytest.raises(ValueError, match="STORAGE_BACKEND"):
            build_services(Settings(storage_backend="redis"))

    def test_unknown_tasks_backend(self):
        with pytest.raises(ValueError, match="TASKS_BACKEND"):
            build_services(Settings(tasks_backend="celery"))

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TASKS_BACKEND", "inline")
        monkeypatch.setenv("WHATSAPP_WEBHOOK_SECRET", "abc")
        services = build_services()
        try:
            assert services.scheduler.backend == "inline"
        finally:
            services.shutdown()


class TestPollStateRepository:
    def test_memory(self):
        assert isinstance(build_poll_state_repository("memory"), InMemoryPollStateRepository)

    def test_postgres(self):
        assert isinstance(build_poll_state_repository("postgres"), PostgresPollStateRepository)

    def test_unknown(self):
        with pytest.raises(ValueError, match="POLL_STATE_BACKEND"):
            build_poll_state_repository("mongo")
