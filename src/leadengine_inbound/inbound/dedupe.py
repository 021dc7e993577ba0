"""Process-local TTL dedupe for inbound messages, allocations and webhooks."""

from __future__ import annotations

from collections import OrderedDict
from typing import Callable

from leadengine_inbound.infra.time import monotonic_ms

DEFAULT_DEDUPE_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_ENTRIES = 10_000
DEFAULT_IDEMPOTENCY_TTL_MS = 60 * 1000

UNKNOWN_CHAT = "__unknown__"


class DedupeStore:
    """Key to expiry map, bounded in size, oldest entries evicted first.

    Expired entries are purged lazily on each call. Only register a key
    after the guarded work has succeeded.
    """

    def __init__(
        self,
        default_ttl_ms: int = DEFAULT_DEDUPE_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self._default_ttl_ms = default_ttl_ms
        self._max_entries = max(max_entries, 1)
        self._clock = clock
        self._entries: OrderedDict[str, int] = OrderedDict()

    def _purge(self, now: int) -> None:
        # Insertion order is expiry order for the default TTL; stop at the first live entry
        while self._entries:
            key, expires_at = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[key]

    def should_skip(self, key: str, now: int | None = None) -> bool:
        now = self._clock() if now is None else now
        self._purge(now)
        expires_at = self._entries.get(key)
        return expires_at is not None and now < expires_at

    def register(self, key: str, now: int | None = None, ttl_ms: int | None = None) -> None:
        now = self._clock() if now is None else now
        self._purge(now)
        self._entries.pop(key, None)
        self._entries[key] = now + (self._default_ttl_ms if ttl_ms is None else ttl_ms)
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


class IdempotencyRegistry:
    """Short window (60s by default) guarding webhook redeliveries."""

    def __init__(
        self,
        ttl_ms: int = DEFAULT_IDEMPOTENCY_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], int] = monotonic_ms,
    ) -> None:
        self._store = DedupeStore(default_ttl_ms=ttl_ms, max_entries=max_entries, clock=clock)

    def register_once(self, key: str) -> bool:
        """Return True the first time ``key`` is seen inside the window."""
        if self._store.should_skip(key):
            return False
        self._store.register(key)
        return True

    def clear(self) -> None:
        self._store.clear()


def build_message_dedupe_key(
    tenant_id: str, instance_id: str, chat_id: str | None, message_id: str
) -> str:
    return f"{tenant_id}:{instance_id}:{chat_id or UNKNOWN_CHAT}:{message_id}"


def build_allocation_dedupe_key(
    tenant_id: str,
    campaign_id: str,
    document: str | None = None,
    phone: str | None = None,
    lead_seed: str | None = None,
) -> str:
    identity = document or phone or lead_seed or UNKNOWN_CHAT
    return f"{tenant_id}|{campaign_id}|{identity}"
