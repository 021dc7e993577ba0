"""Payload builders shared by the pipeline tests.

Regular functions, not fixtures. Phone numbers and JIDs are synthetic.
"""

from __future__ import annotations

from typing import Any

from leadengine_inbound.infra.realtime import RecordingRealtimeEmitter

TENANT_ID = "tenant-1"
INSTANCE_ID = "inst-1"
CONTACT_JID = "5511987654321@s.whatsapp.net"


def upsert_event(
    *entries: dict[str, Any],
    instance_id: str | None = INSTANCE_ID,
    tenant_id: str | None = TENANT_ID,
) -> dict[str, Any]:
    """Raw connector ``WHATSAPP_MESSAGES_UPSERT`` event."""
    event: dict[str, Any] = {"event": "WHATSAPP_MESSAGES_UPSERT", "payload": {"messages": list(entries)}}
    if instance_id:
        event["instanceId"] = instance_id
    if tenant_id:
        event["tenantId"] = tenant_id
    return event


def text_entry(
    message_id: str = "MSG-1",
    text: str = "Olá, quero saber mais",
    remote_jid: str = CONTACT_JID,
    push_name: str | None = "Maria",
    timestamp: int = 1_700_000_000,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "key": {"id": message_id, "remoteJid": remote_jid, "fromMe": False},
        "message": {"conversation": text},
        "messageTimestamp": timestamp,
    }
    if push_name:
        entry["pushName"] = push_name
    return entry


def image_entry(message_id: str = "IMG-1", url: str | None = None) -> dict[str, Any]:
    image: dict[str, Any] = {
        "mimetype": "image/jpeg",
        "caption": "foto do documento",
        "fileLength": 2048,
        "mediaKey": "bWVkaWEta2V5",
        "directPath": "/v/t62.7118-24/abc",
    }
    if url:
        image["url"] = url
    return {
        "key": {"id": message_id, "remoteJid": CONTACT_JID, "fromMe": False},
        "message": {"imageMessage": image},
        "messageTimestamp": 1_700_000_100,
        "pushName": "Maria",
    }


def poll_choice_payload(**overrides: Any) -> dict[str, Any]:
    """Connector ``POLL_CHOICE`` payload with two options, first one selected."""
    payload: dict[str, Any] = {
        "pollId": "poll-1",
        "voterJid": CONTACT_JID,
        "messageId": "vote-msg-1",
        "timestamp": "2024-01-01T12:00:00Z",
        "question": "Qual horário?",
        "selectedOptions": [{"id": "opt-a", "title": "Manhã"}],
        "options": [
            {"id": "opt-a", "title": "Manhã", "index": 0},
            {"id": "opt-b", "title": "Tarde", "index": 1},
        ],
    }
    payload.update(overrides)
    return payload


class FailingRealtimeEmitter(RecordingRealtimeEmitter):
    """Records events, but raises for the names in ``failing``."""

    def __init__(self, *failing: str) -> None:
        super().__init__()
        self.failing = set(failing)

    def _check(self, event: str) -> None:
        if event in self.failing:
            raise RuntimeError("socket gateway down")

    def emit_to_tenant(self, tenant_id: str, event: str, payload: dict[str, Any]) -> None:
        self._check(event)
        super().emit_to_tenant(tenant_id, event, payload)

    def emit_to_ticket(self, ticket_id: str, event: str, payload: dict[str, Any]) -> None:
        self._check(event)
        super().emit_to_ticket(ticket_id, event, payload)

    def emit_to_agreement(self, agreement_id: str, event: str, payload: dict[str, Any]) -> None:
        self._check(event)
        super().emit_to_agreement(agreement_id, event, payload)
