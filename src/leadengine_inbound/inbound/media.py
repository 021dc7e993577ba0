"""Inbound media download through the broker and local storage of the bytes."""

from __future__ import annotations

import asyncio
import base64
import binascii
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

import requests

from leadengine_inbound.observability.logging import get_logger
from leadengine_inbound.observability.redaction import safe_log_context
from leadengine_inbound.whatsapp.models import NormalizedMessage
from leadengine_inbound.whatsapp.payloads import as_record, first_string_of, read_int

from .collaborators import MediaClient, MediaDownload, MediaRequest, MediaStorage

logger = get_logger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT_SECONDS = 15.0

DEFAULT_MIME_BY_TYPE = {
    "IMAGE": "image/jpeg",
    "VIDEO": "video/mp4",
    "AUDIO": "audio/ogg",
    "DOCUMENT": "application/octet-stream",
    "STICKER": "image/webp",
}

_FILENAME_RE = re.compile(r"filename\*=UTF-8''([^;]+)|filename=\"?([^\";]+)\"?", re.IGNORECASE)


class MediaDownloadError(Exception):
    """The broker could not return the media bytes."""


def is_http_url(value: str | None) -> bool:
    return bool(value) and value.strip().lower().startswith(("http://", "https://"))  # type: ignore[union-attr]


def _decode_binary(candidate: Any) -> bytes | None:
    if isinstance(candidate, (bytes, bytearray)):
        return bytes(candidate) or None
    if isinstance(candidate, list) and candidate and all(isinstance(item, int) for item in candidate):
        return bytes(candidate)
    if isinstance(candidate, str) and candidate.strip():
        try:
            return base64.b64decode(candidate.strip(), validate=True) or None
        except (binascii.Error, ValueError):
            return None
    return None


def parse_json_media(payload: Any) -> MediaDownload | None:
    """Media from a JSON broker response (base64 in one of several fields)."""
    record = as_record(payload)
    if record is None:
        return None
    media = as_record(record.get("media")) or {}
    data = None
    for source in (record, media):
        for key in ("buffer", "data", "base64", "content"):
            data = _decode_binary(source.get(key))
            if data:
                break
        if data:
            break
    if not data:
        return None
    size = read_int(record.get("size")) or read_int(record.get("length")) or read_int(media.get("size"))
    return MediaDownload(
        data=data,
        mime_type=first_string_of(
            (
                record.get("mimeType"),
                record.get("mimetype"),
                record.get("contentType"),
                media.get("mimeType"),
                media.get("mimetype"),
                media.get("contentType"),
            )
        ),
        file_name=first_string_of(
            (
                record.get("fileName"),
                record.get("filename"),
                record.get("name"),
                media.get("fileName"),
                media.get("filename"),
            )
        ),
        size=size if size is not None else len(data),
    )


def parse_content_disposition(value: str | None) -> str | None:
    if not value:
        return None
    match = _FILENAME_RE.search(value)
    if not match:
        return None
    encoded = match.group(1) or match.group(2)
    return unquote(encoded) if encoded else None


class BrokerMediaClient:
    """POST ``/instances/{session}/media/download`` on the WhatsApp broker."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._api_key)

    def _download_sync(self, request: MediaRequest) -> MediaDownload | None:
        if not request.direct_path and not request.media_key:
            return None
        if not self.configured:
            raise MediaDownloadError("WhatsApp broker is not configured")

        session_id = request.broker_id or request.instance_id
        body: dict[str, Any] = {
            "directPath": request.direct_path,
            "mediaKey": request.media_key,
            "instanceId": request.instance_id,
            "tenantId": request.tenant_id,
            "messageId": request.message_id,
            "mediaType": request.media_type,
        }
        url = f"{self._base_url}/instances/{quote(session_id, safe='')}/media/download"
        try:
            response = self._session.post(
                url,
                json={key: value for key, value in body.items() if value},
                headers={
                    "X-API-Key": self._api_key,
                    "Accept": "application/octet-stream, application/json",
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise MediaDownloadError(f"broker media download failed: {exc}") from exc

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                parsed = parse_json_media(response.json())
            except ValueError as exc:
                raise MediaDownloadError("broker media payload is not valid JSON") from exc
            if parsed is None:
                raise MediaDownloadError("broker media payload missing data")
            return parsed

        data = response.content
        if not data:
            raise MediaDownloadError("broker returned empty media payload")
        mime_type = content_type.split(";", 1)[0].strip() or None
        return MediaDownload(
            data=data,
            mime_type=mime_type,
            file_name=parse_content_disposition(response.headers.get("content-disposition")),
            size=read_int(response.headers.get("content-length")) or len(data),
        )

    async def download_media(self, request: MediaRequest) -> MediaDownload | None:
        """Download media bytes.

        Returns:
            MediaDownload, or None when the message carries no download hints.

        Raises:
            MediaDownloadError: Broker unreachable, non-2xx, or empty payload.
        """
        return await asyncio.to_thread(self._download_sync, request)


class LocalMediaStorage:
    """Writes media under ``base_dir/{tenant}/`` and serves it from ``public_base_url``."""

    def __init__(self, base_dir: str, public_base_url: str) -> None:
        self._base_dir = Path(base_dir)
        self._public_base_url = public_base_url.rstrip("/")

    def _save_sync(self, tenant_id: str, data: bytes, mime_type: str | None, file_name: str | None) -> str:
        extension = Path(file_name).suffix if file_name else ""
        if not extension and mime_type:
            extension = mimetypes.guess_extension(mime_type) or ""
        name = f"{uuid.uuid4().hex}{extension}"
        directory = self._base_dir / tenant_id
        directory.mkdir(parents=True, exist_ok=True)
        (directory / name).write_bytes(data)
        return f"{self._public_base_url}/{quote(tenant_id, safe='')}/{name}"

    async def save(
        self,
        tenant_id: str,
        data: bytes,
        mime_type: str | None,
        file_name: str | None,
    ) -> str:
        return await asyncio.to_thread(self._save_sync, tenant_id, data, mime_type, file_name)


@dataclass(frozen=True)
class StoredMedia:
    url: str
    mime_type: str | None
    file_name: str | None
    size: int | None


def needs_download(message: NormalizedMessage) -> bool:
    """Media type whose URL is not already fetchable over HTTP."""
    if not message.type.is_media:
        return False
    if message.media_url and not is_http_url(message.media_url):
        return True
    return bool(message.direct_path and message.media_key)


class MediaDownloader:
    """Downloads through a ``MediaClient`` and persists through a ``MediaStorage``."""

    def __init__(
        self,
        client: MediaClient,
        storage: MediaStorage,
        timeout_seconds: float = DEFAULT_DOWNLOAD_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self._storage = storage
        self._timeout = timeout_seconds

    async def download(
        self,
        message: NormalizedMessage,
        *,
        tenant_id: str,
        instance_id: str,
        broker_id: str | None = None,
    ) -> StoredMedia | None:
        """Fetch and store the attachment of ``message``.

        Returns None on timeout, broker failure, empty payload or missing
        download hints; the caller decides what to persist instead.
        """
        request = MediaRequest(
            broker_id=broker_id,
            instance_id=instance_id,
            tenant_id=tenant_id,
            message_id=message.external_id,
            media_type=message.type.value,
            media_key=message.media_key,
            direct_path=message.direct_path,
            media_url=message.media_url,
        )
        context = safe_log_context(
            tenantId=tenant_id,
            instanceId=instance_id,
            messageId=message.external_id,
            mediaType=message.type.value,
        )
        try:
            downloaded = await asyncio.wait_for(self._client.download_media(request), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("media download timed out", extra={"extra_fields": context})
            return None
        except (MediaDownloadError, requests.RequestException) as exc:
            logger.warning(
                "media download failed",
                extra={"extra_fields": {**context, **safe_log_context(error=exc)}},
            )
            return None

        if downloaded is None or not downloaded.data:
            logger.warning("media download returned no data", extra={"extra_fields": context})
            return None

        mime_type = message.mimetype or downloaded.mime_type or DEFAULT_MIME_BY_TYPE.get(message.type.value)
        file_name = message.file_name or downloaded.file_name
        try:
            url = await self._storage.save(tenant_id, downloaded.data, mime_type, file_name)
        except OSError as exc:
            logger.error(
                "media storage failed",
                extra={"extra_fields": {**context, **safe_log_context(error=exc)}},
            )
            return None
        logger.info("media downloaded and stored", extra={"extra_fields": context})
        return StoredMedia(
            url=url,
            mime_type=mime_type,
            file_name=file_name,
            size=message.file_size or downloaded.size or len(downloaded.data),
        )
