# app/services/request_cache.py
"""
Short-lived in-process caches for lookups that are expensive upstream but
carry no correctness guarantees (listing limits, temporary blobs).

Instances are created once in the application lifespan and handed to
handlers through dependencies; tests construct their own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from itertools import islice
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    written_at: float
    expires_at: float


class RequestScopedCache:
    """
    TTL cache with a maximum entry count.

    Expired entries are dropped lazily on read and by a periodic sweep. When a
    write pushes the cache past max_entries, the oldest-written entries are
    evicted (at least ~10% of capacity at a time) so writes don't pay the
    eviction cost on every call.
    """

    def __init__(
        self,
        name: str,
        default_ttl: float,
        max_entries: int,
        sweep_interval: float = 600,
        eviction_fraction: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.name = name
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self.eviction_fraction = eviction_fraction
        self._clock = clock
        # Insertion ordered: the first key is always the oldest write
        self._entries: Dict[str, CacheEntry] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return entry.value if entry is not None else default

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        # Re-inserting moves the key to the newest position
        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(value=value, written_at=now, expires_at=now + ttl)
        if len(self._entries) > self.max_entries:
            self._evict_oldest()

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def _evict_oldest(self) -> int:
        overflow = len(self._entries) - self.max_entries
        batch = int(self.max_entries * self.eviction_fraction)
        count = max(overflow, batch, 1)
        stale_keys = list(islice(self._entries.keys(), count))
        for key in stale_keys:
            del self._entries[key]
        logger.debug(f"[{self.name}] Evicted {len(stale_keys)} oldest entries, size now {len(self._entries)}")
        return len(stale_keys)

    def sweep(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"[{self.name}] Swept {len(expired)} expired entries")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "default_ttl": self.default_ttl,
            "sweeping": self.is_sweeping,
        }

    # Lifecycle

    @property
    def is_sweeping(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop"""
        if self.is_sweeping:
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name=f"{self.name}-sweep")
        logger.info(f"[{self.name}] Periodic sweep started (every {self.sweep_interval}s)")

    async def stop(self) -> None:
        """Stop the periodic sweep"""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None
        logger.info(f"[{self.name}] Periodic sweep stopped")
