"""Tests for the in-process lead allocator."""

import asyncio

import pytest

from leadengine_inbound.inbound.allocation import InMemoryLeadAllocator
from leadengine_inbound.inbound.collaborators import AllocationTarget


def _lead(**overrides):
    lead = {"id": "lead-1", "fullName": "Maria", "phone": "+5511987654321", "document": None}
    lead.update(overrides)
    return lead


class TestInMemoryLeadAllocator:
    def test_allocates_once_per_target(self):
        allocator = InMemoryLeadAllocator()
        target = AllocationTarget(campaign_id="camp-1", instance_id="inst-1")

        first = asyncio.run(allocator.add_allocations("tenant-1", target, [_lead()]))
        second = asyncio.run(allocator.add_allocations("tenant-1", target, [_lead()]))

        assert len(first.newly_allocated) == 1
        assert first.newly_allocated[0]["campaignId"] == "camp-1"
        assert first.newly_allocated[0]["status"] == "allocated"
        assert second.newly_allocated == []
        assert second.summary == {"total": 1, "allocated": 0}

    def test_instance_target_without_campaign(self):
        allocator = InMemoryLeadAllocator()
        result = asyncio.run(
            allocator.add_allocations("tenant-1", AllocationTarget(instance_id="inst-1"), [_lead()])
        )
        assert result.newly_allocated[0]["instanceId"] == "inst-1"
        assert result.newly_allocated[0]["campaignId"] is None

    def test_document_identifies_lead_before_phone(self):
        allocator = InMemoryLeadAllocator()
        target = AllocationTarget(campaign_id="camp-1")
        asyncio.run(allocator.add_allocations("tenant-1", target, [_lead(document="12345678901")]))
        result = asyncio.run(
            allocator.add_allocations("tenant-1", target, [_lead(document="12345678901", phone="+5511000000000")])
        )
        assert result.newly_allocated == []

    def test_lead_without_identity_is_skipped(self):
        allocator = InMemoryLeadAllocator()
        result = asyncio.run(
            allocator.add_allocations(
                "tenant-1", AllocationTarget(campaign_id="camp-1"), [{"fullName": "Sem contato"}]
            )
        )
        assert result.newly_allocated == []

    def test_target_required(self):
        allocator = InMemoryLeadAllocator()
        with pytest.raises(ValueError):
            asyncio.run(allocator.add_allocations("tenant-1", AllocationTarget(), [_lead()]))

    def test_list_and_clear(self):
        allocator = InMemoryLeadAllocator()
        asyncio.run(allocator.add_allocations("tenant-1", AllocationTarget(campaign_id="camp-1"), [_lead()]))
        asyncio.run(allocator.add_allocations("tenant-2", AllocationTarget(campaign_id="camp-1"), [_lead()]))
        assert len(allocator.list_allocations("tenant-1")) == 1
        allocator.clear()
        assert allocator.list_allocations("tenant-1") == []
