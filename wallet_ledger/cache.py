"""
Time-expiring read cache with in-flight request sharing.

Used only to cut read latency for wallet, transaction and work lookups. Ledger
mutations never take decisions from it; they only refresh or invalidate
entries after a successful commit.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    data: Any
    expires_at: float


class ReadCache:
    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._pending: dict[str, asyncio.Task] = {}
        self._ttl = float(ttl_seconds)
        self._max_entries = int(max_entries)
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            self._entries.pop(key, None)
            return None
        return entry.data

    def set(self, key: str, data: Any) -> None:
        if key in self._entries:
            self._entries.pop(key)
        while len(self._entries) >= self._max_entries:
            self._entries.popitem(last=False)
        self._entries[key] = CacheEntry(data=data, expires_at=self._clock() + self._ttl)

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear_all(self) -> None:
        self._entries.clear()
        self._pending.clear()

    def clear_user_cache(self, uid: str) -> None:
        for prefix in ("user", "wallet", "transactions", "works"):
            self.clear(f"{prefix}:{uid}")

    async def get_or_fetch(self, key: str, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached

        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key, fetcher))
            self._pending[key] = task
        # a cancelled waiter leaves the shared fetch running for the others
        return await asyncio.shield(task)

    async def _fetch(self, key: str, fetcher: Callable[[], Awaitable[Any]]) -> Any:
        try:
            data = await fetcher()
            if data is not None:
                self.set(key, data)
            return data
        except Exception:
            logger.exception("Fetch for cache key %s failed", key)
            raise
        finally:
            self._pending.pop(key, None)
