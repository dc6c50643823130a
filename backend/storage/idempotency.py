"""
Idempotency Guard
=================
"Seen once" set with TTL expiry, used to deduplicate gateway event ids.

Every insert schedules the key's removal on an expiry heap; each `once()`
call evicts whatever has come due, so the set never outgrows the keys that
are still inside their TTL window.

Process-local and not persisted: a restart forgets every key, so exactly-once
is best-effort. The session state machine is the second line of defence.
"""

import asyncio
import heapq
import time
from typing import Callable, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger().bind(component="idempotency")

DEFAULT_TTL_SECONDS = 600.0


class IdempotencyGuard:
    """
    Insert-if-absent with expiry, safe for concurrent coroutines.

    Example:
        guard = IdempotencyGuard()
        if not await guard.once("cg:evt_1"):
            return {"deduped": True}
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self._clock = clock
        self._expires: Dict[str, float] = {}
        self._schedule: List[Tuple[float, str]] = []
        self._lock = asyncio.Lock()

    def _evict_due(self, now: float) -> int:
        evicted = 0
        while self._schedule and self._schedule[0][0] <= now:
            expires_at, key = heapq.heappop(self._schedule)
            # a re-inserted key has a newer expiry and its own heap entry
            if self._expires.get(key) == expires_at:
                del self._expires[key]
                evicted += 1
        return evicted

    async def once(self, key: str, ttl: Optional[float] = None) -> bool:
        """True the first time `key` is seen inside its TTL window, else False."""
        ttl = self.default_ttl if ttl is None else ttl
        async with self._lock:
            now = self._clock()
            self._evict_due(now)
            if key in self._expires:
                logger.info("idempotency_duplicate", key=key)
                return False

            expires_at = now + ttl
            self._expires[key] = expires_at
            heapq.heappush(self._schedule, (expires_at, key))
            return True

    async def purge_expired(self) -> int:
        """Drop expired keys; returns how many were removed."""
        async with self._lock:
            return self._evict_due(self._clock())

    def __len__(self) -> int:
        return len(self._expires)
