"""Tests for instance, queue and campaign provisioning."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

from helpers import FailingRealtimeEmitter

from leadengine_inbound.inbound.collaborators import Instance
from leadengine_inbound.inbound.provisioning import (
    DEFAULT_QUEUE_NAME,
    INSTANCE_NOT_FOUND,
    PROVISIONING_FAILED,
    TENANT_NOT_FOUND,
    ProvisioningResolver,
    QueueCache,
    merge_auto_provision_metadata,
    rank_tenant_instances,
    resolve_broker_id,
    resolve_instance_display_name,
    resolve_tenant_identifiers,
)


def _at(minute):
    return datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = 0

    def __call__(self):
        return self.now


class TestMetadataResolution:
    def test_tenant_identifiers_in_path_order(self):
        metadata = {"tenantId": "t-1", "tenant": {"slug": "acme", "id": "t-1"}, "session": {"tenantId": "t-2"}}
        assert resolve_tenant_identifiers(metadata) == ["t-1", "acme", "t-2"]

    def test_broker_id_falls_back_to_session(self):
        assert resolve_broker_id({"brokerId": "b-1", "sessionId": "s-1"}) == "b-1"
        assert resolve_broker_id({"connection": {"sessionId": "s-1"}}) == "s-1"
        assert resolve_broker_id({}) is None

    def test_display_name(self):
        assert resolve_instance_display_name({"instanceName": "Vendas"}, "Acme", "inst-1") == "Vendas"
        assert resolve_instance_display_name({}, "Acme", "inst-1") == "WhatsApp • Acme"
        assert resolve_instance_display_name({}, None, "inst-1") == "WhatsApp • inst-1"


class TestRanking:
    def test_connected_then_most_recent(self):
        old_connected = Instance(id="a", tenant_id="t", status="connected", connected=True, updated_at=_at(1))
        new_disconnected = Instance(id="b", tenant_id="t", updated_at=_at(30))
        new_connected = Instance(id="c", tenant_id="t", status="connected", connected=True, updated_at=_at(20))

        ranked = rank_tenant_instances([old_connected, new_disconnected, new_connected])
        assert [instance.id for instance in ranked] == ["c", "a", "b"]

    def test_id_breaks_ties(self):
        ranked = rank_tenant_instances([Instance(id="z", tenant_id="t"), Instance(id="m", tenant_id="t")])
        assert [instance.id for instance in ranked] == ["m", "z"]


class TestMergeAutoProvisionMetadata:
    PROVENANCE = {
        "autoProvisionedAt": "2024-01-01T00:00:00+00:00",
        "autoProvisionSource": "inbound-auto",
        "autoProvisionRequestId": "req-1",
        "autoProvisionTenantIdentifiers": ["tenant-1"],
        "autoProvisionSessionId": None,
        "autoProvisionBrokerId": "b-1",
    }

    def test_fills_missing_fields(self):
        merged = merge_auto_provision_metadata({"custom": True}, self.PROVENANCE)
        assert merged["custom"] is True
        assert merged["autoProvisionSource"] == "inbound-auto"
        assert merged["autoProvisionTenantIdentifiers"] == ["tenant-1"]

    def test_unchanged_returns_none(self):
        merged = merge_auto_provision_metadata({}, self.PROVENANCE)
        assert merge_auto_provision_metadata(merged, self.PROVENANCE) is None

    def test_first_provision_time_is_kept(self):
        existing = {**self.PROVENANCE, "autoProvisionedAt": "2020-01-01T00:00:00+00:00"}
        merged = merge_auto_provision_metadata(existing, {**self.PROVENANCE, "autoProvisionBrokerId": "b-2"})
        assert merged["autoProvisionedAt"] == "2020-01-01T00:00:00+00:00"
        assert merged["autoProvisionBrokerId"] == "b-2"


class TestQueueCache:
    def test_entries_expire(self):
        clock = FakeClock()
        cache = QueueCache(ttl_seconds=10, clock=clock)
        cache.set("tenant-1", "queue-1")
        clock.now = 9_999
        assert cache.get("tenant-1") == "queue-1"
        clock.now = 10_000
        assert cache.get("tenant-1") is None

    def test_invalidate(self):
        cache = QueueCache()
        cache.set("tenant-1", "queue-1")
        cache.invalidate("tenant-1")
        assert cache.get("tenant-1") is None


class TestEnsureInstance:
    def test_existing_instance(self, storage, realtime):
        storage.add_instance(Instance(id="inst-1", tenant_id="tenant-1"))
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_instance("inst-1"))
        assert result.ok
        assert result.unwrap().id == "inst-1"
        assert storage.calls["create_instance"] == 0

    def test_auto_provision_by_tenant_slug(self, storage, realtime):
        resolver = ProvisioningResolver(storage, realtime)

        result = asyncio.run(resolver.ensure_instance("inst-9", {"tenantSlug": "acme"}, request_id="req-1"))

        instance = result.unwrap()
        assert instance.tenant_id == "tenant-1"
        assert instance.connected is True
        assert instance.name == "WhatsApp • Acme"
        assert instance.metadata["autoProvisionSource"] == "inbound-auto"
        assert instance.metadata["autoProvisionRequestId"] == "req-1"
        assert "inst-9" in storage.instances

    def test_auto_provision_by_transport_tenant(self, storage, realtime):
        resolver = ProvisioningResolver(storage, realtime)
        result = asyncio.run(resolver.ensure_instance("inst-9", {}, tenant_id="tenant-1"))
        assert result.unwrap().tenant_id == "tenant-1"

    def test_unknown_tenant(self, storage, realtime):
        resolver = ProvisioningResolver(storage, realtime)
        result = asyncio.run(resolver.ensure_instance("inst-9", {"tenantId": "nope"}))
        assert not result.ok
        assert result.error_code == INSTANCE_NOT_FOUND
        assert result.recoverable is True
        assert storage.instances == {}

    def test_adopts_instance_with_same_broker_id(self, storage, realtime):
        storage.add_instance(Instance(id="inst-1", tenant_id="tenant-1", broker_id="b-1"))
        resolver = ProvisioningResolver(storage, realtime)

        result = asyncio.run(resolver.ensure_instance("inst-2", {"tenantId": "tenant-1", "brokerId": "b-1"}))

        instance = result.unwrap()
        assert instance.id == "inst-1"
        assert instance.metadata["autoProvisionBrokerId"] == "b-1"
        assert "inst-2" not in storage.instances

    def test_adopts_after_unique_collision(self, storage, realtime):
        storage.add_instance(Instance(id="inst-1", tenant_id="tenant-1", broker_id="b-1"))
        resolver = ProvisioningResolver(storage, realtime)

        instance = asyncio.run(
            resolver.auto_provision_instance("inst-1", {"tenantId": "tenant-1", "brokerId": "b-2"})
        )

        assert instance.id == "inst-1"
        assert instance.metadata["autoProvisionSource"] == "inbound-auto"

    def test_falls_back_to_best_tenant_instance(self, storage, realtime):
        storage.add_instance(Instance(id="idle", tenant_id="tenant-1"))
        storage.add_instance(Instance(id="live", tenant_id="tenant-1", status="connected", connected=True))
        resolver = ProvisioningResolver(storage, realtime)

        result = asyncio.run(resolver.ensure_instance(None, {}, tenant_id="tenant-1"))
        assert result.unwrap().id == "live"

    def test_lookup_error(self, storage, realtime):
        storage.find_instance = AsyncMock(side_effect=RuntimeError("db down"))
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_instance("inst-1"))
        assert result.error_code == PROVISIONING_FAILED


class TestEnsureQueue:
    def test_provisions_default_queue_once(self, storage, realtime):
        resolver = ProvisioningResolver(storage, realtime)

        first = asyncio.run(resolver.ensure_queue("tenant-1", instance_id="inst-1"))
        second = asyncio.run(resolver.ensure_queue("tenant-1", instance_id="inst-1"))

        assert first.unwrap().was_provisioned is True
        assert second.unwrap().queue_id == first.unwrap().queue_id
        assert second.unwrap().was_provisioned is False
        assert storage.calls["find_first_queue"] == 1
        queue = storage.queues[first.unwrap().queue_id]
        assert queue.name == DEFAULT_QUEUE_NAME
        assert len(realtime.named("whatsapp.queue.autoProvisioned")) == 1

    def test_realtime_failure_keeps_provisioned_queue(self, storage):
        realtime = FailingRealtimeEmitter("whatsapp.queue.autoProvisioned")
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_queue("tenant-1"))
        assert result.unwrap().was_provisioned is True
        assert result.unwrap().queue_id in storage.queues

    def test_existing_queue_is_used(self, storage, realtime):
        existing = asyncio.run(storage.upsert_queue("tenant-1", "Vendas"))
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_queue("tenant-1"))
        assert result.unwrap().queue_id == existing.id
        assert realtime.events == []

    def test_missing_tenant_is_ensured(self, storage, realtime):
        resolver = ProvisioningResolver(storage, realtime)
        result = asyncio.run(resolver.ensure_queue("tenant-new"))
        assert result.unwrap().was_provisioned is True
        assert "tenant-new" in storage.tenants

    def test_tenant_cannot_be_ensured(self, storage, realtime):
        storage.ensure_tenant = AsyncMock(side_effect=RuntimeError("db down"))
        resolver = ProvisioningResolver(storage, realtime)

        result = asyncio.run(resolver.ensure_queue("tenant-new", instance_id="inst-1"))

        assert not result.ok
        assert result.error_code == TENANT_NOT_FOUND
        assert result.recoverable is True
        missing = realtime.named("whatsapp.queue.missing")
        assert missing[0].payload["reason"] == TENANT_NOT_FOUND

    def test_missing_queue_reported_even_if_realtime_fails(self, storage):
        storage.ensure_tenant = AsyncMock(side_effect=RuntimeError("db down"))
        realtime = FailingRealtimeEmitter("whatsapp.queue.missing")
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_queue("tenant-new"))
        assert result.error_code == TENANT_NOT_FOUND

    def test_unexpected_queue_error(self, storage, realtime):
        storage.upsert_queue = AsyncMock(side_effect=RuntimeError("db down"))
        result = asyncio.run(ProvisioningResolver(storage, realtime).ensure_queue("tenant-1"))
        assert result.error_code == PROVISIONING_FAILED
        assert result.recoverable is False


class TestCampaigns:
    def test_fallback_campaign_is_created_once(self, storage, realtime):
        instance = Instance(id="inst-1", tenant_id="tenant-1")
        resolver = ProvisioningResolver(storage, realtime)

        first = asyncio.run(resolver.list_campaigns("tenant-1", instance))
        second = asyncio.run(resolver.list_campaigns("tenant-1", instance))

        assert [campaign.id for campaign in first] == [campaign.id for campaign in second]
        assert first[0].agreement_id == "whatsapp-instance-fallback:inst-1"
        assert first[0].metadata["fallback"] is True
        assert len(storage.campaigns) == 1

    def test_fallback_failure_yields_no_campaigns(self, storage, realtime):
        storage.upsert_campaign = AsyncMock(side_effect=RuntimeError("db down"))
        resolver = ProvisioningResolver(storage, realtime)
        instance = Instance(id="inst-1", tenant_id="tenant-1")
        assert asyncio.run(resolver.list_campaigns("tenant-1", instance)) == []
