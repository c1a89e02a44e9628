"""Sliding window rate limiting backed by Upstash Redis with an in-process fallback."""

from __future__ import annotations

import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Deque, Dict, Mapping, Optional, Protocol, Tuple

import httpx

from gatekeeper.core.config import AppSettings


@dataclass(frozen=True)
class RateLimitPolicy:
    limit: int
    window_seconds: float


DEFAULT_POLICIES: Dict[str, RateLimitPolicy] = {
    "api": RateLimitPolicy(limit=100, window_seconds=60),
    "auth": RateLimitPolicy(limit=30, window_seconds=60),
    "admin": RateLimitPolicy(limit=20, window_seconds=60),
    "login": RateLimitPolicy(limit=5, window_seconds=300),
}


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float
    retry_after: int = 0


class RateLimiterError(RuntimeError):
    """Raised when the shared rate limit store cannot answer."""


class RateLimiter(Protocol):
    def hit(self, kind: str, identifier: str) -> RateLimitResult:
        ...

    def close(self) -> None:
        ...


def _resolve_policy(policies: Mapping[str, RateLimitPolicy], kind: str) -> RateLimitPolicy:
    try:
        return policies[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown rate limit policy: {kind}") from exc


def _rejected(policy: RateLimitPolicy, oldest: float, now: float) -> RateLimitResult:
    reset = oldest + policy.window_seconds
    return RateLimitResult(
        success=False,
        limit=policy.limit,
        remaining=0,
        reset=reset,
        retry_after=max(int(math.ceil(reset - now)), 1),
    )


class SlidingWindowRateLimiter(RateLimiter):
    """Counts hits per (policy, identifier) over a trailing window.

    Rejected attempts are not recorded, so a client that backs off regains
    capacity as its earlier hits age out. Identifiers are client-supplied, so
    keys whose hits have all expired are swept once per ``sweep_interval``.
    """

    def __init__(
        self,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        clock: Callable[[], float] = time.time,
        sweep_interval: float = 60.0,
    ) -> None:
        self._policies = dict(policies or DEFAULT_POLICIES)
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}
        self._lock = RLock()
        self._last_sweep = clock()

    def policy(self, kind: str) -> RateLimitPolicy:
        return _resolve_policy(self._policies, kind)

    def hit(self, kind: str, identifier: str) -> RateLimitResult:
        policy = self.policy(kind)
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep(now)
            hits = self._hits.setdefault((kind, identifier), deque())
            self._prune(hits, now - policy.window_seconds)
            if len(hits) >= policy.limit:
                return _rejected(policy, hits[0], now)
            hits.append(now)
            return RateLimitResult(
                success=True,
                limit=policy.limit,
                remaining=policy.limit - len(hits),
                reset=hits[0] + policy.window_seconds,
            )

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def close(self) -> None:
        self.reset()

    def _sweep(self, now: float) -> None:
        for key in list(self._hits):
            hits = self._hits[key]
            self._prune(hits, now - self.policy(key[0]).window_seconds)
            if not hits:
                del self._hits[key]
        self._last_sweep = now

    @staticmethod
    def _prune(hits: Deque[float], window_start: float) -> None:
        while hits and hits[0] <= window_start:
            hits.popleft()


# Trims the window, then records the hit only when the caller is under the limit.
# Returns {allowed, count, oldest_ms}; scores are epoch milliseconds.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, count, oldest[2]}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window)
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
return {1, count + 1, oldest[2]}
"""


class RedisRateLimiter(RateLimiter):
    """Shared sliding window kept in Redis sorted sets via the Upstash REST API.

    When Upstash cannot answer, the hit is counted by the in-process
    ``fallback`` instead, so limits still apply per worker.
    """

    def __init__(
        self,
        *,
        url: str,
        token: str,
        prefix: str,
        policies: Mapping[str, RateLimitPolicy] | None = None,
        fallback: Optional[SlidingWindowRateLimiter] = None,
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
        self._policies = dict(policies or DEFAULT_POLICIES)
        self._fallback = fallback or SlidingWindowRateLimiter(self._policies, clock=clock)
        self._prefix = prefix
        self._clock = clock
        self._logger = logging.getLogger("gatekeeper.services.rate_limit")

    def hit(self, kind: str, identifier: str) -> RateLimitResult:
        policy = _resolve_policy(self._policies, kind)
        now = self._clock()
        try:
            allowed, count, oldest = self._eval(policy, kind, identifier, now)
        except RateLimiterError:
            self._logger.warning("rate_limit_store_unavailable", extra={"policy": kind}, exc_info=True)
            return self._fallback.hit(kind, identifier)

        if not allowed:
            return _rejected(policy, oldest, now)
        return RateLimitResult(
            success=True,
            limit=policy.limit,
            remaining=max(policy.limit - count, 0),
            reset=oldest + policy.window_seconds,
        )

    def close(self) -> None:
        self._client.close()
        self._fallback.close()

    def _key(self, kind: str, identifier: str) -> str:
        return f"{self._prefix}:ratelimit:{kind}:{identifier}"

    def _eval(self, policy: RateLimitPolicy, kind: str, identifier: str, now: float) -> Tuple[bool, int, float]:
        now_ms = int(now * 1000)
        result = self._execute(
            "EVAL",
            SLIDING_WINDOW_SCRIPT,
            "1",
            self._key(kind, identifier),
            str(now_ms),
            str(int(policy.window_seconds * 1000)),
            str(policy.limit),
            f"{now_ms}-{uuid.uuid4().hex}",
        )
        if not isinstance(result, list) or len(result) != 3:
            raise RateLimiterError("Rate limit script returned an unexpected reply")
        try:
            allowed, count = int(result[0]), int(result[1])
            oldest_ms = float(result[2]) if result[2] is not None else float(now_ms)
        except (TypeError, ValueError) as exc:
            raise RateLimiterError("Rate limit script returned an unexpected reply") from exc
        return allowed == 1, count, oldest_ms / 1000

    def _execute(self, *command: str) -> Optional[object]:
        try:
            response = self._client.post("/", json=list(command))
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateLimiterError(f"Rate limit command {command[0]} failed: {exc}") from exc
        if isinstance(payload, dict) and payload.get("error"):
            raise RateLimiterError(f"Rate limit command {command[0]} failed: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else None


def build_rate_limiter(settings: AppSettings) -> RateLimiter:
    if settings.redis_url and settings.redis_token:
        return RedisRateLimiter(
            url=settings.redis_url,
            token=settings.redis_token,
            prefix=settings.redis_cache_prefix,
        )
    return SlidingWindowRateLimiter()

