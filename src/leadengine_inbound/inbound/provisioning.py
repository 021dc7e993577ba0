"""Tenant, instance, queue and campaign resolution for inbound messages.

Missing queues, instances and campaigns are provisioned on the fly so an
inbound message is never dropped only because the tenant was not set up
yet. Expected failures come back as ``Result`` values.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from leadengine_inbound.core.result import Result
from leadengine_inbound.infra.time import monotonic_ms, utc_now
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.payloads import as_list, first_string, get_path, unique_strings

from .collaborators import (
    Campaign,
    ForeignKeyViolation,
    Instance,
    RealtimeEmitter,
    Storage,
    UniqueViolation,
)

logger = get_logger(__name__)

DEFAULT_QUEUE_CACHE_TTL_SECONDS = 5 * 60
DEFAULT_QUEUE_NAME = "Atendimento Geral"
DEFAULT_QUEUE_DESCRIPTION = "Fila criada automaticamente para mensagens inbound do WhatsApp."
DEFAULT_QUEUE_COLOR = "#2563EB"

FALLBACK_CAMPAIGN_NAME = "WhatsApp • Inbound"
FALLBACK_CAMPAIGN_AGREEMENT_PREFIX = "whatsapp-instance-fallback"

AUTO_PROVISION_SOURCE = "inbound-auto"

TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
PROVISIONING_FAILED = "PROVISIONING_FAILED"
INSTANCE_NOT_FOUND = "INSTANCE_NOT_FOUND"

_TENANT_IDENTIFIER_PATHS = (
    "tenantId",
    "tenant_id",
    "tenantSlug",
    "tenant",
    "tenant.id",
    "tenant.tenantId",
    "tenant.slug",
    "tenant.code",
    "tenant.slugId",
    "context.tenantId",
    "context.tenant.id",
    "context.tenant.slug",
    "context.tenant.tenantId",
    "context.tenantSlug",
    "broker.tenantId",
    "integration.tenantId",
    "integration.tenant.id",
    "integration.tenant.slug",
    "integration.tenant.tenantId",
    "session.tenantId",
)
_SESSION_ID_PATHS = (
    "sessionId",
    "session_id",
    "session.id",
    "session.sessionId",
    "connection.sessionId",
    "broker.sessionId",
)
_BROKER_ID_PATHS = (
    "brokerId",
    "broker_id",
    "broker.id",
    "broker.sessionId",
    "instanceId",
    "instance_id",
    "broker.instanceId",
    "instance.id",
    "instance.instanceId",
)
_DISPLAY_NAME_PATHS = (
    "instanceName",
    "instanceFriendlyName",
    "instanceDisplayName",
    "instance.name",
    "instance.displayName",
    "instance.friendlyName",
    "connection.name",
    "session.name",
    "connectionName",
)


def resolve_tenant_identifiers(metadata: dict[str, Any]) -> list[str]:
    """Every tenant id or slug mentioned in event metadata, first-seen order."""
    return unique_strings(get_path(metadata, path) for path in _TENANT_IDENTIFIER_PATHS)


def resolve_session_id(metadata: dict[str, Any]) -> str | None:
    return first_string(metadata, _SESSION_ID_PATHS)


def resolve_broker_id(metadata: dict[str, Any]) -> str | None:
    return first_string(metadata, _BROKER_ID_PATHS) or resolve_session_id(metadata)


def resolve_instance_display_name(
    metadata: dict[str, Any], tenant_name: str | None, instance_id: str
) -> str:
    return (
        first_string(metadata, _DISPLAY_NAME_PATHS)
        or (f"WhatsApp • {tenant_name}" if tenant_name else None)
        or f"WhatsApp • {instance_id}"
    )


class ProvisioningError(Exception):
    """Provisioning could not complete.

    ``reason`` is ``TENANT_NOT_FOUND`` (recoverable once the tenant exists)
    or ``PROVISIONING_FAILED``.
    """

    def __init__(self, message: str, reason: str, recoverable: bool = False) -> None:
        super().__init__(message)
        self.reason = reason
        self.recoverable = recoverable


class QueueCache:
    """tenant_id -> (queue_id, expires_at_ms)."""

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_QUEUE_CACHE_TTL_SECONDS,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock
        self._entries: dict[str, tuple[str, int]] = {}

    def get(self, tenant_id: str) -> str | None:
        entry = self._entries.get(tenant_id)
        if entry is None:
            return None
        queue_id, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[tenant_id]
            return None
        return queue_id

    def set(self, tenant_id: str, queue_id: str) -> None:
        self._entries[tenant_id] = (queue_id, self._clock() + self._ttl_ms)

    def invalidate(self, tenant_id: str) -> None:
        self._entries.pop(tenant_id, None)

    def clear(self) -> None:
        self._entries.clear()


@dataclass(frozen=True)
class QueueResolution:
    queue_id: str
    was_provisioned: bool = False


def _timestamp(value: datetime | None) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _is_active(instance: Instance) -> bool:
    return instance.connected and instance.status == "connected"


def rank_tenant_instances(instances: list[Instance]) -> list[Instance]:
    """Connected first, then most recently updated, seen, created; id breaks ties."""
    ordered = sorted(instances, key=lambda instance: instance.id)
    return sorted(
        ordered,
        key=lambda instance: (
            not _is_active(instance),
            -_timestamp(instance.updated_at),
            -_timestamp(instance.last_seen_at),
            -_timestamp(instance.created_at),
        ),
    )


def merge_auto_provision_metadata(
    existing: dict[str, Any], provenance: dict[str, Any]
) -> dict[str, Any] | None:
    """Merged instance metadata, or None when nothing would change."""
    merged = copy.deepcopy(existing)
    changed = False

    if not merged.get("autoProvisionedAt"):
        merged["autoProvisionedAt"] = provenance["autoProvisionedAt"]
        changed = True
    if merged.get("autoProvisionSource") != provenance["autoProvisionSource"]:
        merged["autoProvisionSource"] = provenance["autoProvisionSource"]
        changed = True
    request_id = provenance.get("autoProvisionRequestId")
    if request_id and merged.get("autoProvisionRequestId") != request_id:
        merged["autoProvisionRequestId"] = request_id
        changed = True

    known = [value for value in as_list(merged.get("autoProvisionTenantIdentifiers")) if isinstance(value, str)]
    combined = list(dict.fromkeys(known + list(provenance["autoProvisionTenantIdentifiers"])))
    if len(combined) != len(known):
        merged["autoProvisionTenantIdentifiers"] = combined
        changed = True

    session_id = provenance.get("autoProvisionSessionId")
    if session_id and merged.get("autoProvisionSessionId") != session_id:
        merged["autoProvisionSessionId"] = session_id
        changed = True
    if merged.get("autoProvisionBrokerId") != provenance["autoProvisionBrokerId"]:
        merged["autoProvisionBrokerId"] = provenance["autoProvisionBrokerId"]
        changed = True

    return merged if changed else None


class ProvisioningResolver:
    """Resolves (and provisions when missing) what an inbound message needs."""

    def __init__(
        self,
        storage: Storage,
        realtime: RealtimeEmitter,
        queue_cache: QueueCache | None = None,
    ) -> None:
        self._storage = storage
        self._realtime = realtime
        self._queue_cache = queue_cache or QueueCache()

    @property
    def queue_cache(self) -> QueueCache:
        return self._queue_cache

    def invalidate_queue(self, tenant_id: str) -> None:
        self._queue_cache.invalidate(tenant_id)

    def _emit(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        try:
            self._realtime.emit_to_tenant(tenant_id, event, payload)
        except Exception as exc:
            logger.error(
                "provisioning realtime emission failed",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, event=event, error=exc)},
            )

    async def _upsert_default_queue(self, tenant_id: str) -> str:
        queue = await self._storage.upsert_queue(
            tenant_id,
            DEFAULT_QUEUE_NAME,
            description=DEFAULT_QUEUE_DESCRIPTION,
            color=DEFAULT_QUEUE_COLOR,
            order_index=0,
        )
        self._queue_cache.set(tenant_id, queue.id)
        return queue.id

    async def provision_default_queue(self, tenant_id: str) -> str:
        """Create the fallback queue, ensuring the tenant once on a FK error.

        Raises:
            ProvisioningError: TENANT_NOT_FOUND (recoverable) when the tenant
                still cannot be referenced, PROVISIONING_FAILED otherwise.
        """
        try:
            queue_id = await self._upsert_default_queue(tenant_id)
        except ForeignKeyViolation:
            logger.warning(
                "default queue provisioning failed, tenant missing; ensuring tenant",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id)},
            )
            try:
                await self._storage.ensure_tenant(tenant_id)
                queue_id = await self._upsert_default_queue(tenant_id)
            except Exception as exc:
                logger.error(
                    "default queue provisioning failed after ensuring tenant",
                    extra={"extra_fields": safe_log_context(tenantId=tenant_id, error=exc)},
                )
                raise ProvisioningError(
                    "Tenant ausente impede o provisionamento automático da fila padrão.",
                    TENANT_NOT_FOUND,
                    recoverable=True,
                ) from exc
            logger.info(
                "default queue provisioned after ensuring tenant",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, queueId=queue_id)},
            )
            return queue_id
        except Exception as exc:
            logger.error(
                "default queue provisioning failed",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, error=exc)},
            )
            raise ProvisioningError(
                "Erro desconhecido ao provisionar fila padrão.", PROVISIONING_FAILED
            ) from exc

        logger.info(
            "default queue provisioned",
            extra={"extra_fields": safe_log_context(tenantId=tenant_id, queueId=queue_id)},
        )
        return queue_id

    async def ensure_queue(
        self,
        tenant_id: str,
        *,
        instance_id: str | None = None,
        request_id: str | None = None,
    ) -> Result[QueueResolution]:
        """Queue for inbound tickets: cache, oldest queue, or a provisioned one."""
        cached = self._queue_cache.get(tenant_id)
        if cached:
            return Result.success(QueueResolution(queue_id=cached))

        try:
            queue = await self._storage.find_first_queue(tenant_id)
        except Exception as exc:
            logger.exception(
                "queue lookup failed",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, requestId=request_id)},
            )
            return Result.failure(str(exc), code=PROVISIONING_FAILED)
        if queue is not None:
            self._queue_cache.set(tenant_id, queue.id)
            return Result.success(QueueResolution(queue_id=queue.id))

        logger.info(
            "provisioning default queue",
            extra={
                "extra_fields": safe_log_context(
                    tenantId=tenant_id, instanceId=instance_id, requestId=request_id
                )
            },
        )
        try:
            queue_id = await self.provision_default_queue(tenant_id)
        except ProvisioningError as exc:
            self._queue_cache.invalidate(tenant_id)
            logger.error(
                "default queue missing after provisioning attempt",
                extra={
                    "extra_fields": safe_log_context(
                        tenantId=tenant_id,
                        instanceId=instance_id,
                        requestId=request_id,
                        reason=exc.reason,
                    )
                },
            )
            self._emit(
                tenant_id,
                "whatsapp.queue.missing",
                {
                    "tenantId": tenant_id,
                    "instanceId": instance_id,
                    "message": "Nenhuma fila padrão configurada para receber mensagens inbound.",
                    "reason": exc.reason,
                    "recoverable": exc.recoverable,
                },
            )
            return Result.failure(str(exc), code=exc.reason, recoverable=exc.recoverable)

        self._emit(
            tenant_id,
            "whatsapp.queue.autoProvisioned",
            {
                "tenantId": tenant_id,
                "instanceId": instance_id,
                "queueId": queue_id,
                "message": "Fila padrão criada automaticamente para mensagens inbound do WhatsApp.",
            },
        )
        return Result.success(QueueResolution(queue_id=queue_id, was_provisioned=True))

    async def _enrich(self, instance: Instance, provenance: dict[str, Any]) -> Instance:
        merged = merge_auto_provision_metadata(instance.metadata or {}, provenance)
        if merged is None:
            return instance
        return await self._storage.update_instance(instance.id, metadata=merged)

    async def auto_provision_instance(
        self,
        candidate_id: str,
        metadata: dict[str, Any],
        request_id: str | None = None,
    ) -> Instance | None:
        """Create (or adopt) an instance for a tenant named in the metadata."""
        identifiers = resolve_tenant_identifiers(metadata)
        if not identifiers:
            logger.warning(
                "inbound instance without identifiable tenant",
                extra={"extra_fields": safe_log_context(instanceId=candidate_id, requestId=request_id)},
            )
            return None

        tenant = None
        for identifier in identifiers:
            tenant = await self._storage.find_tenant(identifier)
            if tenant is not None:
                break
        if tenant is None:
            logger.warning(
                "tenant not found for instance auto-provision",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=candidate_id, requestId=request_id, tenantIdentifiers=identifiers
                    )
                },
            )
            return None

        broker_id = resolve_broker_id(metadata) or candidate_id
        provenance = {
            "autoProvisionedAt": utc_now().isoformat(),
            "autoProvisionSource": AUTO_PROVISION_SOURCE,
            "autoProvisionRequestId": request_id,
            "autoProvisionTenantIdentifiers": identifiers,
            "autoProvisionSessionId": resolve_session_id(metadata),
            "autoProvisionBrokerId": broker_id,
        }

        existing = await self._storage.find_instance_by_broker_id(broker_id, tenant.id)
        if existing is not None:
            logger.info(
                "instance reused by broker id",
                extra={"extra_fields": safe_log_context(instanceId=existing.id, tenantId=tenant.id)},
            )
            return await self._enrich(existing, provenance)

        now = utc_now()
        try:
            created = await self._storage.create_instance(
                Instance(
                    id=candidate_id,
                    tenant_id=tenant.id,
                    broker_id=broker_id,
                    name=resolve_instance_display_name(metadata, tenant.name, candidate_id),
                    status="connected",
                    connected=True,
                    metadata=provenance,
                    created_at=now,
                    updated_at=now,
                    last_seen_at=now,
                )
            )
        except UniqueViolation:
            adopted = (
                await self._storage.find_instance(candidate_id)
                or await self._storage.find_instance_by_broker_id(broker_id, tenant.id)
                or await self._storage.find_instance_by_broker_id(broker_id)
            )
            if adopted is None:
                logger.error(
                    "instance auto-provision collided but no instance found",
                    extra={"extra_fields": safe_log_context(instanceId=candidate_id, tenantId=tenant.id)},
                )
                return None
            logger.info(
                "instance reused after unique collision",
                extra={"extra_fields": safe_log_context(instanceId=adopted.id, tenantId=tenant.id)},
            )
            return await self._enrich(adopted, provenance)
        except Exception as exc:
            logger.error(
                "instance auto-provision failed",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=candidate_id, tenantId=tenant.id, requestId=request_id, error=exc
                    )
                },
            )
            return None

        logger.info(
            "instance auto-provisioned",
            extra={"extra_fields": safe_log_context(instanceId=created.id, tenantId=tenant.id)},
        )
        return created

    def _provision_metadata(
        self, metadata: dict[str, Any], candidate_id: str, tenant_id: str | None, broker_id: str | None
    ) -> dict[str, Any]:
        cloned = copy.deepcopy(metadata)
        if tenant_id:
            cloned["tenantId"] = tenant_id
            tenant = dict(cloned["tenant"]) if isinstance(cloned.get("tenant"), dict) else {}
            tenant.update({"id": tenant_id, "tenantId": tenant_id})
            cloned["tenant"] = tenant
        broker = dict(cloned["broker"]) if isinstance(cloned.get("broker"), dict) else {}
        if broker_id:
            broker["id"] = broker_id
            broker.setdefault("instanceId", candidate_id)
        cloned["broker"] = broker
        cloned["instanceId"] = candidate_id
        return cloned

    async def ensure_instance(
        self,
        instance_id: str | None,
        metadata: dict[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
        request_id: str | None = None,
    ) -> Result[Instance]:
        """Find the instance an event belongs to, provisioning it if possible."""
        metadata = metadata or {}
        broker_id = resolve_broker_id(metadata)
        try:
            instance = None
            if instance_id:
                instance = await self._storage.find_instance(instance_id) or await self.auto_provision_instance(
                    instance_id,
                    self._provision_metadata(metadata, instance_id, tenant_id, broker_id),
                    request_id,
                )
            if instance is None and broker_id:
                instance = await self._storage.find_instance_by_broker_id(
                    broker_id, tenant_id
                ) or await self.auto_provision_instance(
                    broker_id,
                    self._provision_metadata(metadata, broker_id, tenant_id, broker_id),
                    request_id,
                )
            if instance is None and tenant_id:
                ranked = rank_tenant_instances(await self._storage.list_tenant_instances(tenant_id))
                active = [candidate.id for candidate in ranked if _is_active(candidate)]
                if len(active) > 1:
                    logger.error(
                        "multiple active instances for tenant",
                        extra={"extra_fields": safe_log_context(tenantId=tenant_id, instanceIds=active)},
                    )
                instance = ranked[0] if ranked else None
        except Exception as exc:
            logger.exception(
                "instance resolution failed",
                extra={"extra_fields": safe_log_context(instanceId=instance_id, requestId=request_id)},
            )
            return Result.failure(str(exc), code=PROVISIONING_FAILED)

        if instance is None:
            logger.warning(
                "whatsapp instance not found",
                extra={
                    "extra_fields": safe_log_context(
                        instanceId=instance_id, tenantId=tenant_id, brokerId=broker_id, requestId=request_id
                    )
                },
            )
            return Result.failure("instance not found", code=INSTANCE_NOT_FOUND, recoverable=True)
        return Result.success(instance)

    async def ensure_fallback_campaign(self, tenant_id: str, instance: Instance) -> Campaign | None:
        """Upsert the per-instance fallback campaign; None when it fails."""
        try:
            campaign = await self._storage.upsert_campaign(
                tenant_id,
                f"{FALLBACK_CAMPAIGN_AGREEMENT_PREFIX}:{instance.id}",
                name=FALLBACK_CAMPAIGN_NAME,
                instance_id=instance.id,
                status="active",
                metadata={"fallback": True, "source": "whatsapp-inbound"},
            )
        except Exception as exc:
            logger.error(
                "fallback campaign provisioning failed",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, instanceId=instance.id, error=exc)},
            )
            return None
        logger.info(
            "fallback campaign provisioned",
            extra={
                "extra_fields": safe_log_context(
                    tenantId=tenant_id, instanceId=instance.id, campaignId=campaign.id
                )
            },
        )
        return campaign

    async def list_campaigns(self, tenant_id: str, instance: Instance) -> list[Campaign]:
        """Active campaigns of the instance, or the fallback campaign."""
        campaigns = list(await self._storage.list_active_campaigns(tenant_id, instance.id))
        if campaigns:
            return campaigns
        fallback = await self.ensure_fallback_campaign(tenant_id, instance)
        if fallback is not None:
            logger.warning(
                "no active campaign, fallback provisioned",
                extra={"extra_fields": safe_log_context(tenantId=tenant_id, instanceId=instance.id)},
            )
            return [fallback]
        logger.warning(
            "no active campaign for instance, continuing",
            extra={"extra_fields": safe_log_context(tenantId=tenant_id, instanceId=instance.id)},
        )
        return []

