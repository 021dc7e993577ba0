"""WhatsApp webhook routes.

- ``/inbound``: webhook-shaped messages and contract events
- ``/broker``: raw connector upserts, status updates and poll choice events

Requests carry the shared secret in ``X-Webhook-Secret``; when a signature
secret is configured the raw body must also carry a valid HMAC-SHA256.

Every authenticated request with a JSON body is acknowledged with 200 and
a summary, including events that failed validation, so the sender does not
redeliver them forever.
"""

import hmac
import json
from typing import Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from leadengine_inbound.observability.correlation import get_correlation_id
from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.services import Services, build_services
from leadengine_inbound.whatsapp.event_normalizer import TransportHints
from leadengine_inbound.whatsapp.models import EnvelopeOrigin
from leadengine_inbound.whatsapp.signature import SIGNATURE_HEADERS, SignatureVerificationError, verify_signature

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

_services: Services | None = None


def _get_services() -> Services:
    """Get pipeline services, built on first use (allows test injection)."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def shutdown_services() -> None:
    if _services is not None:
        _services.shutdown()


def _authorized(services: Services, provided: str | None, correlation_id: str) -> bool:
    """Webhook secret check, fail-closed unless running locally."""
    expected = services.settings.webhook_secret
    if not expected:
        if services.settings.is_local:
            logger.warning(
                "WHATSAPP_WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "WHATSAPP_WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "whatsapp webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


def _signature_valid(services: Services, request: Request, body: bytes, correlation_id: str) -> bool:
    """Raw body HMAC check, enforced only when a signature secret is configured."""
    secret = services.settings.webhook_signature_secret
    if not secret:
        return True
    signature = next((request.headers[name] for name in SIGNATURE_HEADERS if request.headers.get(name)), "")
    try:
        verify_signature(body, signature, secret)
    except SignatureVerificationError as e:
        logger.warning(
            "whatsapp webhook signature verification failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
        )
        return False
    return True


async def _handle(
    request: Request,
    origin: EnvelopeOrigin,
    webhook_secret: str | None,
    tenant_id: str | None,
    instance_id: str | None,
) -> Response:
    correlation_id = get_correlation_id()
    services = _get_services()
    if not _authorized(services, webhook_secret, correlation_id):
        return Response(status_code=401, content="unauthorized")

    body = await request.body()
    if not _signature_valid(services, request, body, correlation_id):
        return Response(status_code=401, content="invalid signature")

    try:
        payload: Any = json.loads(body)
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, origin=origin)},
        )
        return Response(status_code=400, content="invalid json")

    hints = TransportHints(
        origin=origin,
        tenant_id=tenant_id,
        instance_id=instance_id,
        request_id=correlation_id or None,
    )
    summary = await services.webhook_processor.process(payload, hints)
    logger.info(
        "whatsapp webhook handled",
        extra={"extra_fields": safe_log_context(correlationId=correlation_id, origin=origin, **summary)},
    )
    return JSONResponse(summary)


@router.post("/inbound")
async def inbound_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
    x_instance_id: str | None = Header(None, alias="X-Instance-Id"),
) -> Response:
    """Receive webhook-shaped WhatsApp events.

    Returns:
        200 with ``{"received", "persisted", "ignored", "failures"}``.
        400 Bad Request if the body is not JSON.
        401 Unauthorized if secret validation fails.
    """
    return await _handle(request, "webhook", x_webhook_secret, x_tenant_id, x_instance_id)


@router.post("/broker")
async def broker_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
    x_tenant_id: str | None = Header(None, alias="X-Tenant-Id"),
    x_instance_id: str | None = Header(None, alias="X-Instance-Id"),
) -> Response:
    """Receive raw connector events forwarded by the WhatsApp broker."""
    return await _handle(request, "broker", x_webhook_secret, x_tenant_id, x_instance_id)
