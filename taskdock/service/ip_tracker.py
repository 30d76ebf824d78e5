"""Per-address abuse tracking for signup and login.

Each client address gets a fixed-window counter. The first sighting opens
the window with ``count = 1``; every further sighting increments the count.
Once more than ``threshold`` sightings land inside one window the address
must pass a human-verification challenge. A sighting after the window has
elapsed starts a new window.

Fixed windows under-count bursts that straddle a boundary; that
approximation is accepted.
"""

from __future__ import annotations

import time
from typing import Optional

from redis.exceptions import RedisError

from taskdock.logging import get_logger
from taskdock.service.errors import StoreUnavailable
from taskdock.storage.common import DocumentStore
from taskdock.storage.errors import ConstraintViolation
from taskdock.storage.models import IP_RECORDS, IpRecord
from taskdock.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class IpTracker:
    """Fixed-window counter kept in the document store."""

    def __init__(
        self, store: DocumentStore, *, window_seconds: int, threshold: int
    ) -> None:
        self.store = store
        self.window_seconds = window_seconds
        self.threshold = threshold

    def _now(self) -> float:
        return time.time()

    def _window_elapsed(self, first_seen: float, now: float) -> bool:
        return first_seen + self.window_seconds < now

    async def needs_verification(self, address: str) -> bool:
        """Record one sighting of ``address`` and report whether it is over the limit.

        Raises ``StoreUnavailable`` when the backing store cannot be reached.
        """

        now = self._now()
        existing = self.store.find_one(IP_RECORDS, {"address": address})
        if existing is None:
            try:
                self.store.insert(IP_RECORDS, IpRecord(address, first_seen=now).to_doc())
                return False
            except ConstraintViolation:
                # another request inserted the record first; count this one
                logger.debug("ip_record_insert_raced", address=address)
        self.store.update_one(IP_RECORDS, {"address": address}, {"$inc": {"count": 1}})
        record = self.store.find_one(IP_RECORDS, {"address": address})
        if record is None:
            return False
        current = IpRecord.from_doc(record)
        if self._window_elapsed(current.first_seen, now):
            self.reset(address, now=now)
            return False
        return current.count > self.threshold

    def reset(self, address: str, *, now: Optional[float] = None) -> None:
        """Start a new window for ``address``."""

        started = self._now() if now is None else now
        self.store.update_one(
            IP_RECORDS,
            {"address": address},
            {"$set": {"count": 1, "first_seen": started}},
        )
        logger.info("ip_window_reset", address=address)


class RedisIpTracker:
    """The same fixed-window decision evaluated atomically inside Redis."""

    def __init__(
        self,
        cache: RedisCache | SyncRedisCache,
        *,
        window_seconds: int,
        threshold: int,
    ) -> None:
        self.cache = cache
        self.window_seconds = window_seconds
        self.threshold = threshold

    def _now(self) -> float:
        return time.time()

    async def needs_verification(self, address: str) -> bool:
        try:
            flagged, count = await self.cache.observe_ip(
                address, self.window_seconds, self.threshold, now=self._now()
            )
        except RedisError as exc:
            raise StoreUnavailable("ip tracker cache failure", detail={"error": str(exc)}) from exc
        if count == 1:
            logger.debug("ip_window_open", address=address)
        return flagged

    async def reset(self, address: str) -> None:
        await self.cache.reset_ip(address)


__all__ = ["IpTracker", "RedisIpTracker"]
