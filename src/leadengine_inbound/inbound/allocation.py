"""In-process lead allocator used when no allocation service is wired in."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from leadengine_inbound.infra.time import utc_now
from leadengine_inbound.whatsapp.payloads import first_string_of

from .collaborators import AllocationResult, AllocationTarget


class InMemoryLeadAllocator:
    """Allocations keyed by tenant, target and lead identity.

    A lead already allocated to the same target is skipped, so a repeat
    call returns no newly allocated entries.
    """

    def __init__(self) -> None:
        self._allocations: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def add_allocations(
        self,
        tenant_id: str,
        target: AllocationTarget,
        leads: list[dict[str, Any]],
    ) -> AllocationResult:
        if not target.campaign_id and not target.instance_id:
            raise ValueError("campaign_id or instance_id must be provided to add allocations")

        target_key = target.campaign_id or f"instance:{target.instance_id}"
        newly_allocated: list[dict[str, Any]] = []
        async with self._lock:
            for lead in leads:
                identity = first_string_of((lead.get("document"), lead.get("phone"), lead.get("id")))
                if not identity:
                    continue
                key = (tenant_id, target_key, identity)
                if key in self._allocations:
                    continue
                allocation = {
                    "allocationId": str(uuid.uuid4()),
                    "leadId": lead.get("id"),
                    "tenantId": tenant_id,
                    "campaignId": target.campaign_id,
                    "instanceId": target.instance_id,
                    "agreementId": lead.get("agreementId"),
                    "status": "allocated",
                    "fullName": lead.get("fullName"),
                    "document": lead.get("document"),
                    "phone": lead.get("phone"),
                    "allocatedAt": utc_now().isoformat(),
                }
                self._allocations[key] = allocation
                newly_allocated.append(allocation)

            summary = {
                "total": sum(
                    1 for (tenant, key_target, _) in self._allocations
                    if tenant == tenant_id and key_target == target_key
                ),
                "allocated": len(newly_allocated),
            }
        return AllocationResult(newly_allocated=newly_allocated, summary=summary)

    def list_allocations(self, tenant_id: str) -> list[dict[str, Any]]:
        return [
            allocation
            for (tenant, _, _), allocation in self._allocations.items()
            if tenant == tenant_id
        ]

    def clear(self) -> None:
        self._allocations.clear()
