"""Realtime emitters.

The socket gateway lives outside this service; by default events are only
logged. ``RecordingRealtimeEmitter`` keeps them in memory for tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context

logger = get_logger(__name__)

Room = Literal["tenant", "ticket", "agreement"]


class LoggingRealtimeEmitter:
    def _log(self, room: Room, room_id: str, event: str) -> None:
        logger.info(
            "realtime event",
            extra={"extra_fields": safe_log_context(room=room, roomId=room_id, event=event)},
        )

    def emit_to_tenant(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        self._log("tenant", tenant_id, event)

    def emit_to_ticket(self, ticket_id: str, event: str, payload: dict[str, Any]) -> None:
        self._log("ticket", ticket_id, event)

    def emit_to_agreement(self, agreement_id: str, event: str, payload: dict[str, Any]) -> None:
        self._log("agreement", agreement_id, event)


@dataclass(frozen=True)
class RealtimeEvent:
    room: Room
    room_id: str
    event: str
    payload: dict[str, Any]


class RecordingRealtimeEmitter:
    def __init__(self) -> None:
        self.events: list[RealtimeEvent] = []

    def emit_to_tenant(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(RealtimeEvent("tenant", tenant_id, event, payload))

    def emit_to_ticket(self, ticket_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(RealtimeEvent("ticket", ticket_id, event, payload))

    def emit_to_agreement(self, agreement_id: str, event: str, payload: dict[str, Any]) -> None:
        self.events.append(RealtimeEvent("agreement", agreement_id, event, payload))

    def named(self, event: str) -> list[RealtimeEvent]:
        return [entry for entry in self.events if entry.event == event]

    def clear(self) -> None:
        self.events.clear()
