"""Allow-list cache powered by Upstash Redis with in-memory fallback.

Entries expire after a fixed TTL that is enforced when they are read, so a
cache that misses an invalidation still stops serving a snapshot once the TTL
has elapsed.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from threading import RLock
from typing import Callable, Dict, Optional, Protocol

import httpx
from pydantic import ValidationError

from gatekeeper.core.config import AppSettings
from gatekeeper.schemas.allowlist import AllowListRecord

DEFAULT_TTL_SECONDS = 300


class AllowListCacheError(RuntimeError):
    """Raised when the cache backend cannot be reached."""


class AllowListCache(Protocol):
    """Contract for caching allow-list snapshots by canonical email."""

    ttl_seconds: float

    def get(self, email: str) -> Optional[AllowListRecord]:
        ...

    def set(self, email: str, record: AllowListRecord) -> None:
        ...

    def invalidate(self, email: str) -> None:
        ...

    def clear(self) -> None:
        ...

    def close(self) -> None:
        ...


@dataclass(frozen=True)
class CacheEntry:
    record: AllowListRecord
    captured_at: float


@dataclass
class InMemoryAllowListCache(AllowListCache):
    """Thread-safe in-memory cache; expired entries are dropped on read."""

    ttl_seconds: float = DEFAULT_TTL_SECONDS
    clock: Callable[[], float] = field(default=time.monotonic)

    def __post_init__(self) -> None:
        self._store: Dict[str, CacheEntry] = {}
        self._lock = RLock()

    def get(self, email: str) -> Optional[AllowListRecord]:
        with self._lock:
            entry = self._store.get(email)
            if entry is None:
                return None
            if self.clock() - entry.captured_at >= self.ttl_seconds:
                self._store.pop(email, None)
                return None
            return entry.record

    def set(self, email: str, record: AllowListRecord) -> None:
        with self._lock:
            self._store[email] = CacheEntry(record=record, captured_at=self.clock())

    def invalidate(self, email: str) -> None:
        with self._lock:
            self._store.pop(email, None)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def close(self) -> None:
        self.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


class RedisAllowListCache(AllowListCache):
    """Redis-backed cache using the Upstash REST API."""

    def __init__(
        self,
        *,
        url: str,
        token: str,
        prefix: str,
        ttl_seconds: float,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )
        self.ttl_seconds = ttl_seconds
        self._ttl_ms = max(int(ttl_seconds * 1000), 1)
        self._prefix = prefix
        self._clock = clock
        self._logger = logging.getLogger("gatekeeper.services.cache")

    def get(self, email: str) -> Optional[AllowListRecord]:
        raw = self._execute("GET", self._key(email))
        if raw is None:
            return None
        try:
            payload = json.loads(str(raw))
            captured_at = float(payload["captured_at"])
            record = AllowListRecord.model_validate(payload["record"])
        except (ValueError, KeyError, TypeError, ValidationError):
            self._logger.warning("allowlist_cache_corrupt_entry", extra={"email": email})
            self.invalidate(email)
            return None
        if self._clock() - captured_at >= self.ttl_seconds:
            return None
        return record

    def set(self, email: str, record: AllowListRecord) -> None:
        payload = json.dumps(
            {"record": record.model_dump(mode="json"), "captured_at": self._clock()},
            separators=(",", ":"),
        )
        self._execute("SET", self._key(email), payload, "PX", str(self._ttl_ms))

    def invalidate(self, email: str) -> None:
        self._execute("DEL", self._key(email))

    def clear(self) -> None:
        cursor = "0"
        pattern = f"{self._prefix}:allowlist:*"
        while True:
            result = self._execute("SCAN", cursor, "MATCH", pattern, "COUNT", "100")
            if not isinstance(result, list) or len(result) != 2:
                return
            cursor, keys = str(result[0]), list(result[1] or [])
            if keys:
                self._execute("DEL", *keys)
            if cursor == "0":
                return

    def close(self) -> None:
        self._client.close()

    def _key(self, email: str) -> str:
        return f"{self._prefix}:allowlist:{email}"

    def _execute(self, *command: str) -> Optional[object]:
        try:
            response = self._client.post("/", json=list(command))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise AllowListCacheError(f"Cache command {command[0]} failed: {exc}") from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise AllowListCacheError(f"Cache command {command[0]} failed: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else None


def build_allowlist_cache(settings: AppSettings) -> AllowListCache:
    """Return the cache implementation selected by configuration."""

    if settings.redis_url and settings.redis_token:
        return RedisAllowListCache(
            url=settings.redis_url,
            token=settings.redis_token,
            prefix=settings.redis_cache_prefix,
            ttl_seconds=settings.allowlist_cache_ttl,
        )
    return InMemoryAllowListCache(ttl_seconds=settings.allowlist_cache_ttl)
