"""Webhook rate limiting per callback domain.

Callers' webhook endpoints accept a limited request rate, so pushes to the
same domain are spaced at least ``WEBHOOK_MIN_INTERVAL_SECONDS`` apart.
``acquire`` blocks until the slot is free rather than dropping the push.

Two backends:
1. In-memory - process-local spacing
2. MongoDB - one document per domain in ``rate_limits``, so every relay
   instance shares the same window
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

WEBHOOK_MIN_INTERVAL_SECONDS = float(os.getenv("WEBHOOK_MIN_INTERVAL_SECONDS", "10"))

# Collection name for MongoDB storage
RATE_LIMITS_COLLECTION = "rate_limits"


def rate_limit_key(url: str) -> str:
    """Limiter key for a callback URL: its host, lowercased."""
    try:
        host = httpx.URL(url).host
    except httpx.InvalidURL:
        host = ""
    return (host or url).lower()


class BaseRateLimiter(ABC):
    """Spaces calls sharing a key by a minimum interval."""

    def __init__(self, min_interval: Optional[float] = None):
        self.min_interval = (
            WEBHOOK_MIN_INTERVAL_SECONDS if min_interval is None else min_interval
        )

    @abstractmethod
    async def acquire(self, key: str) -> float:
        """Wait for the key's next slot and take it.

        Returns:
            Seconds spent waiting.
        """
        pass


class InMemoryRateLimiter(BaseRateLimiter):
    """Process-local limiter: a lock and a last-sent time per key.

    Keys whose window has passed are dropped on the next acquire, so the
    tables only hold domains pushed to within the last interval.
    """

    def __init__(self, min_interval: Optional[float] = None):
        super().__init__(min_interval)
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_sent: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        expired = [
            key for key, last in self._last_sent.items()
            if now - last >= self.min_interval and not self._locks[key].locked()
        ]
        for key in expired:
            del self._last_sent[key]
            del self._locks[key]

    async def acquire(self, key: str) -> float:
        self._prune(time.monotonic())
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            waited = 0.0
            last = self._last_sent.get(key)
            if last is not None:
                wait = self.min_interval - (time.monotonic() - last)
                if wait > 0:
                    logger.debug(f"Rate limit for {key}: waiting {wait:.2f}s")
                    await asyncio.sleep(wait)
                    waited = wait
            self._last_sent[key] = time.monotonic()
            return waited


class MongoRateLimiter(BaseRateLimiter):
    """Limiter shared between relay instances through MongoDB.

    Each domain document holds ``next_allowed_at`` (epoch seconds). A slot is
    taken by a conditional ``find_one_and_update`` that only matches once the
    window has passed; losers sleep until then and try again.
    """

    async def _get_collection(self):
        """Get the MongoDB collection."""
        from llm_relay.db.mongo import get_database
        db = await get_database()
        return db[RATE_LIMITS_COLLECTION]

    async def _try_take(self, key: str) -> Optional[float]:
        """Take the slot now, or return the epoch time it frees up."""
        collection = await self._get_collection()
        now = time.time()

        doc = await collection.find_one_and_update(
            {"_id": key, "next_allowed_at": {"$lte": now}},
            {"$set": {"next_allowed_at": now + self.min_interval}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            return None

        try:
            await collection.insert_one({"_id": key, "next_allowed_at": now + self.min_interval})
            return None
        except DuplicateKeyError:
            pass

        current = await collection.find_one({"_id": key})
        if current is None:
            return now
        return float(current.get("next_allowed_at", now))

    async def acquire(self, key: str) -> float:
        waited = 0.0
        while True:
            free_at = await self._try_take(key)
            if free_at is None:
                return waited
            wait = max(free_at - time.time(), 0.01)
            logger.debug(f"Rate limit for {key}: waiting {wait:.2f}s")
            await asyncio.sleep(wait)
            waited += wait


# Module-level singleton instance
_rate_limiter: Optional[BaseRateLimiter] = None


def get_rate_limiter() -> BaseRateLimiter:
    """Get the default rate limiter singleton."""
    global _rate_limiter
    if _rate_limiter is None:
        use_mongo = os.getenv("RATE_LIMIT_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _rate_limiter = MongoRateLimiter()
            logger.info("Using MongoDB webhook rate limiter")
        else:
            _rate_limiter = InMemoryRateLimiter()
            logger.info("Using in-memory webhook rate limiter")
    return _rate_limiter


def set_rate_limiter(limiter: Optional[BaseRateLimiter]) -> None:
    """Set the rate limiter instance (for testing)."""
    global _rate_limiter
    _rate_limiter = limiter
