"""Builds the pipeline's long-lived service instances.

Everything stateful (dedupe windows, queue cache, poll runtime registry,
scheduler) is created once here and injected; nothing is a module global.
"""

from __future__ import annotations

from dataclasses import dataclass

from leadengine_inbound.config import Settings
from leadengine_inbound.inbound.allocation import InMemoryLeadAllocator
from leadengine_inbound.inbound.dedupe import DedupeStore, IdempotencyRegistry
from leadengine_inbound.inbound.media import BrokerMediaClient, LocalMediaStorage, MediaDownloader
from leadengine_inbound.inbound.orchestrator import InboundIngestionService
from leadengine_inbound.inbound.provisioning import ProvisioningResolver, QueueCache
from leadengine_inbound.inbound.webhook_processor import WebhookEventProcessor
from leadengine_inbound.infra.memory_storage import InMemoryStorage
from leadengine_inbound.infra.realtime import LoggingRealtimeEmitter
from leadengine_inbound.infra.repositories.poll_state_repository import (
    InMemoryPollStateRepository,
    PollStateRepository,
    PostgresPollStateRepository,
)
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.polls.inbox import PollChoiceInboxService
from leadengine_inbound.polls.metadata_store import PollMetadataStore
from leadengine_inbound.polls.processor import PollChoiceProcessor
from leadengine_inbound.polls.rewriter import PollVoteMessageRewriter
from leadengine_inbound.polls.runtime import PollRuntimeService
from leadengine_inbound.polls.state import PollChoiceStateService
from leadengine_inbound.polls.sync import PollStateSynchronizer
from leadengine_inbound.tasks.scheduler import TaskScheduler

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: InMemoryStorage
    realtime: LoggingRealtimeEmitter
    scheduler: TaskScheduler
    runtime: PollRuntimeService
    ingestion: InboundIngestionService
    poll_processor: PollChoiceProcessor
    webhook_processor: WebhookEventProcessor

    def shutdown(self) -> None:
        self.scheduler.shutdown()


def build_poll_state_repository(backend: str) -> PollStateRepository:
    if backend == "memory":
        return InMemoryPollStateRepository()
    if backend == "postgres":
        return PostgresPollStateRepository()
    raise ValueError(f"Unknown POLL_STATE_BACKEND: {backend}")


def build_services(settings: Settings | None = None) -> Services:
    """Wire the pipeline from settings (environment when omitted)."""
    settings = settings or Settings.from_env()
    if settings.storage_backend != "memory":
        raise ValueError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")

    storage = InMemoryStorage()
    realtime = LoggingRealtimeEmitter()
    scheduler = TaskScheduler(settings.tasks_backend)
    runtime = PollRuntimeService(ttl_ms=settings.poll_runtime_ttl_seconds * 1000)

    provisioning = ProvisioningResolver(
        storage, realtime, QueueCache(ttl_seconds=settings.queue_cache_ttl_seconds)
    )
    media_downloader = None
    if settings.broker_url:
        media_downloader = MediaDownloader(
            BrokerMediaClient(
                settings.broker_url,
                settings.broker_api_key,
                timeout_seconds=settings.media_download_timeout_seconds,
            ),
            LocalMediaStorage(settings.media_storage_dir, settings.media_public_base_url),
            timeout_seconds=settings.media_download_timeout_seconds,
        )

    ingestion = InboundIngestionService(
        storage,
        realtime,
        provisioning,
        DedupeStore(default_ttl_ms=settings.dedupe_ttl_ms, max_entries=settings.dedupe_max_entries),
        InMemoryLeadAllocator(),
        media_downloader=media_downloader,
    )
    idempotency = IdempotencyRegistry(
        ttl_ms=settings.idempotency_ttl_ms, max_entries=settings.dedupe_max_entries
    )
    poll_state_repository = build_poll_state_repository(settings.poll_state_backend)
    metadata_store = PollMetadataStore(
        poll_state_repository, ttl_ms=settings.poll_runtime_ttl_seconds * 1000
    )
    poll_processor = PollChoiceProcessor(
        PollChoiceStateService(poll_state_repository),
        runtime,
        PollVoteMessageRewriter(storage, realtime),
        PollStateSynchronizer(storage, realtime),
        PollChoiceInboxService(storage, runtime, ingestion.ingest),
        scheduler,
        idempotency,
        retry_delay_ms=settings.poll_vote_retry_delay_ms,
        metadata_store=metadata_store,
    )

    logger.info(
        "services built",
        extra={
            "extra_fields": safe_log_context(
                appEnv=settings.app_env,
                tasksBackend=settings.tasks_backend,
                pollStateBackend=settings.poll_state_backend,
                mediaDownloads=media_downloader is not None,
            )
        },
    )
    return Services(
        settings=settings,
        storage=storage,
        realtime=realtime,
        scheduler=scheduler,
        runtime=runtime,
        ingestion=ingestion,
        poll_processor=poll_processor,
        webhook_processor=WebhookEventProcessor(
            ingestion, poll_processor, runtime, idempotency, metadata_store=metadata_store
        ),
    )
