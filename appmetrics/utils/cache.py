"""Single-flight TTL cache for aggregation results.

This module wraps :class:`cachetools.LRUCache` with the behavior the
aggregation service needs:

- entries expire ``ttl`` seconds after they were computed;
- concurrent requests for the same key share one computation (single
  flight), while different keys never wait on each other;
- when a recomputation fails, an expired entry still inside the stale window
  is served instead, flagged as stale;
- entries are replaced as a whole, never mutated.

Eviction is lazy: expired entries are dropped when they are next looked up,
and the LRU bound caps memory regardless.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Hashable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from cachetools import LRUCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """Stored payload with its freshness window (``clock`` seconds)."""

    key: Any
    payload: V
    computed_at: datetime
    stored_at: float
    expires_at: float


@dataclass(frozen=True)
class CacheResult(Generic[V]):
    """What a caller gets back from :meth:`AggregationCache.get_or_compute`."""

    payload: V
    stale: bool
    cache_hit: bool
    computed_at: datetime


class AggregationCache(Generic[K, V]):
    """Single-flight TTL cache.

    Parameters
    ----------
    maxsize: int
        Maximum number of entries to retain; least-recently-used entries are
        discarded first.
    max_stale_seconds: float
        How long past expiry an entry may still be served when recomputation
        fails.
    clock: Callable[[], float]
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        maxsize: int = 1024,
        max_stale_seconds: float = 900.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._entries: LRUCache[K, CacheEntry[V]] = LRUCache(maxsize=maxsize)
        self._inflight: Dict[K, "asyncio.Task[CacheResult[V]]"] = {}
        self._max_stale = max_stale_seconds
        self._clock = clock
        self._wall_clock = wall_clock

    def __len__(self) -> int:
        return len(self._entries)

    def peek(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the stored entry for ``key`` without freshness checks."""
        return self._entries.get(key)

    async def get_or_compute(
        self,
        key: K,
        compute_fn: Callable[[], Awaitable[V]],
        ttl: float,
    ) -> CacheResult[V]:
        """Return a fresh cached payload, or compute it exactly once.

        Parameters
        ----------
        key: K
            Cache key, e.g. ``(app_id, view_kind, range_token)``.
        compute_fn: Callable[[], Awaitable[V]]
            Coroutine factory producing the payload on a miss.
        ttl: float
            Freshness window in seconds for a newly computed payload.

        Raises
        ------
        Exception
            Whatever ``compute_fn`` raised, when no stale entry is usable.
        """
        now = self._clock()
        entry = self._lookup(key, now)
        if entry is not None and now < entry.expires_at:
            logger.debug("cache.hit", extra={"key": _key_repr(key)})
            return CacheResult(
                payload=entry.payload,
                stale=False,
                cache_hit=True,
                computed_at=entry.computed_at,
            )

        task = self._inflight.get(key)
        if task is None:
            logger.debug("cache.miss", extra={"key": _key_repr(key)})
            task = asyncio.ensure_future(self._compute(key, compute_fn, ttl))
            task.add_done_callback(_consume_exception)
            self._inflight[key] = task
        else:
            logger.debug("cache.join_inflight", extra={"key": _key_repr(key)})
        # Shielded so a cancelled caller does not cancel the shared computation
        return await asyncio.shield(task)

    async def _compute(
        self, key: K, compute_fn: Callable[[], Awaitable[V]], ttl: float
    ) -> CacheResult[V]:
        try:
            payload = await compute_fn()
        except Exception as exc:
            stale = self._lookup(key, self._clock())
            if stale is None:
                logger.warning(
                    "cache.compute_failed",
                    extra={"key": _key_repr(key), "error": str(exc)},
                )
                raise
            logger.warning(
                "cache.stale_served",
                extra={
                    "key": _key_repr(key),
                    "error": str(exc),
                    "age_seconds": round(self._clock() - stale.stored_at, 3),
                },
            )
            return CacheResult(
                payload=stale.payload,
                stale=True,
                cache_hit=True,
                computed_at=stale.computed_at,
            )
        finally:
            self._inflight.pop(key, None)

        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            computed_at=self._wall_clock(),
            stored_at=now,
            expires_at=now + ttl,
        )
        self._entries[key] = entry
        return CacheResult(
            payload=payload,
            stale=False,
            cache_hit=False,
            computed_at=entry.computed_at,
        )

    def _lookup(self, key: K, now: float) -> Optional[CacheEntry[V]]:
        """Entry for ``key`` unless it is past the stale window (then evicted)."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now - entry.expires_at > self._max_stale:
            self._entries.pop(key, None)
            logger.debug("cache.evicted", extra={"key": _key_repr(key)})
            return None
        return entry

    def invalidate(self, app_id: Optional[str] = None) -> int:
        """Drop all entries, or only those whose key starts with ``app_id``.

        In-flight computations are left alone; they store their result when
        they finish.
        """
        if app_id is None:
            count = len(self._entries)
            self._entries.clear()
        else:
            keys = [
                k
                for k in list(self._entries.keys())
                if isinstance(k, tuple) and k and k[0] == app_id
            ]
            for k in keys:
                self._entries.pop(k, None)
            count = len(keys)
        logger.info("cache.invalidated", extra={"app_id": app_id, "entries": count})
        return count


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Marks the exception retrieved when every caller was cancelled first
    if not task.cancelled():
        task.exception()


def _key_repr(key: Any) -> str:
    if isinstance(key, tuple):
        return "/".join(str(part) for part in key)
    return str(key)
