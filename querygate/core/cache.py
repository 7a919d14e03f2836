# querygate/core/cache.py
"""
QUERY CACHE - Raw input text → previously computed SkillResult

Rules:
    - an entry is served only while now < created_at + ttl
    - never more than `size` entries; a new key at capacity evicts the single
      oldest entry (by creation time)
    - a background sweeper drops expired entries every minute and stops for
      good once the cache is empty. It is not restarted: after that, expired
      entries linger until a write at capacity evicts them.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from querygate.core.config import CacheSettings, parse_duration
from querygate.core.schemas import SkillResult

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0
SWEEP_INTERVAL = 60.0


@dataclass(frozen=True)
class CacheEntry:
    result: SkillResult
    created_at: float


class QueryCache:
    def __init__(
        self,
        cache_settings: CacheSettings,
        sweep_interval: float = SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = cache_settings.enabled
        self.size = cache_settings.size
        self.ttl = parse_duration(cache_settings.ttl, DEFAULT_TTL)
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, input_text: str) -> Optional[SkillResult]:
        with self._lock:
            entry = self._entries.get(input_text)
            if entry is not None and self._clock() < entry.created_at + self.ttl:
                return entry.result
        return None

    def set(self, input_text: str, result: SkillResult) -> None:
        if not self.enabled:
            return

        with self._lock:
            if input_text not in self._entries and len(self._entries) >= self.size:
                self._evict_oldest()
            self._entries[input_text] = CacheEntry(result=result, created_at=self._clock())

        self._start_sweeper()

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [
                key
                for key, entry in self._entries.items()
                if now >= entry.created_at + self.ttl
            ]
            for key in expired:
                del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass

    def _evict_oldest(self) -> None:
        oldest_key = min(self._entries, key=lambda key: self._entries[key].created_at)
        del self._entries[oldest_key]

    def _start_sweeper(self) -> None:
        # Started once, by the first write made inside an event loop
        if self._sweeper is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.purge_expired()
            if removed:
                logger.debug("Cache sweeper removed %d expired entries", removed)
            if len(self) == 0:
                logger.debug("Cache is empty, sweeper exiting")
                return
