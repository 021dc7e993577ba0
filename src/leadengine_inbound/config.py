"""Runtime configuration read from environment variables.

Every knob has a default suitable for local development. Values are read
when ``Settings.from_env()`` is called so tests can monkeypatch the
environment before building services.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


def _env_str(name: str, default: str = "") -> str:
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    """Typed view over the environment."""

    app_env: str = "production"
    storage_backend: str = "memory"
    tasks_backend: str = "asyncio"
    poll_state_backend: str = "memory"

    dedupe_ttl_ms: int = 24 * 60 * 60 * 1000
    dedupe_max_entries: int = 10_000
    idempotency_ttl_ms: int = 60 * 1000
    queue_cache_ttl_seconds: int = 5 * 60
    poll_runtime_ttl_seconds: int = 6 * 60 * 60
    poll_vote_retry_delay_ms: int = 500

    media_download_timeout_seconds: float = 15.0
    broker_url: str = ""
    broker_api_key: str = ""
    media_storage_dir: str = "./var/media"
    media_public_base_url: str = "/media"

    webhook_secret: str = ""
    webhook_signature_secret: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            app_env=_env_str("APP_ENV", "production"),
            storage_backend=_env_str("STORAGE_BACKEND", "memory"),
            tasks_backend=_env_str("TASKS_BACKEND", "asyncio"),
            poll_state_backend=_env_str("POLL_STATE_BACKEND", "memory"),
            dedupe_ttl_ms=_env_int("DEDUPE_TTL_MS", cls.dedupe_ttl_ms),
            dedupe_max_entries=_env_int("DEDUPE_MAX_ENTRIES", cls.dedupe_max_entries),
            idempotency_ttl_ms=_env_int("IDEMPOTENCY_TTL_MS", cls.idempotency_ttl_ms),
            queue_cache_ttl_seconds=_env_int(
                "QUEUE_CACHE_TTL_SECONDS", cls.queue_cache_ttl_seconds
            ),
            poll_runtime_ttl_seconds=_env_int(
                "POLL_RUNTIME_TTL_SECONDS", cls.poll_runtime_ttl_seconds
            ),
            poll_vote_retry_delay_ms=_env_int(
                "POLL_VOTE_RETRY_DELAY_MS", cls.poll_vote_retry_delay_ms
            ),
            media_download_timeout_seconds=_env_float(
                "MEDIA_DOWNLOAD_TIMEOUT_SECONDS", cls.media_download_timeout_seconds
            ),
            broker_url=_env_str("WHATSAPP_BROKER_URL"),
            broker_api_key=_env_str("WHATSAPP_BROKER_API_KEY"),
            media_storage_dir=_env_str("MEDIA_STORAGE_DIR", cls.media_storage_dir),
            media_public_base_url=_env_str(
                "MEDIA_PUBLIC_BASE_URL", cls.media_public_base_url
            ),
            webhook_secret=_env_str("WHATSAPP_WEBHOOK_SECRET"),
            webhook_signature_secret=_env_str("WHATSAPP_WEBHOOK_SIGNATURE_SECRET"),
        )

    @property
    def is_local(self) -> bool:
        return self.app_env == "local"


def get_poll_secret_key() -> bytes:
    """Get AES-256 key used to encrypt stored poll message secrets.

    Raises:
        RuntimeError: If POLL_SECRET_KEY is not configured or invalid.
    """
    key_hex = os.environ.get("POLL_SECRET_KEY")
    if not key_hex:
        raise RuntimeError(
            "POLL_SECRET_KEY not configured. "
            "Generate with: openssl rand -hex 32"
        )
    try:
        key = bytes.fromhex(key_hex)
    except ValueError:
        raise RuntimeError("POLL_SECRET_KEY must be hex encoded") from None
    if len(key) != 32:
        raise RuntimeError(
            "POLL_SECRET_KEY must be 32 bytes hex (64 hex chars). "
            "Generate with: openssl rand -hex 32"
        )
    return key
