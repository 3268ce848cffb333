"""Short-TTL read-through cache for per-account subscription views.

Values are JSON-compatible dicts/lists so the same payloads work for the
in-memory and Redis backends.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from subsync.config import CacheConfig

logger = structlog.get_logger(__name__)


class CacheView(str, Enum):
    """Per-account derived views."""

    SUMMARY = "summary"
    SUBSCRIPTION = "subscription"
    ACCESS = "access"
    INVOICES = "invoices"
    MEMBERSHIP = "membership_history"


PLANS_KEY = "plans_list"

# Views rebuilt from the record store on every merge.
STATE_VIEWS = (CacheView.SUMMARY, CacheView.SUBSCRIPTION, CacheView.ACCESS, CacheView.MEMBERSHIP)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def view_ttl(config: CacheConfig, view: CacheView) -> int:
    if view in (CacheView.INVOICES, CacheView.MEMBERSHIP):
        return config.ttl_medium_seconds
    return config.ttl_short_seconds


class Cache(Protocol):
    """Cache contract used by the reconciler and the read path."""

    async def get(self, account_id: str, view: CacheView) -> Any | None:
        """Cached value, or None on miss."""

    async def set(self, account_id: str, view: CacheView, value: Any) -> None:
        """Store one view."""

    async def invalidate(self, account_id: str) -> None:
        """Drop every view for the account."""

    async def warm(self, account_id: str, views: dict[CacheView, Any]) -> None:
        """Populate several views at once."""

    async def refresh(self, account_id: str, views: dict[CacheView, Any]) -> None:
        """Invalidate and warm with no observable gap between the two."""

    async def get_global(self, key: str) -> Any | None:
        """Cached value for a non-account key."""

    async def set_global(self, key: str, value: Any, ttl: int) -> None:
        """Store a non-account key."""

    async def delete_global(self, key: str) -> None:
        """Drop a non-account key."""


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: datetime
    ttl_seconds: int

    def expired(self, now: datetime) -> bool:
        return now >= self.inserted_at + timedelta(seconds=self.ttl_seconds)


class InMemoryCache:
    """Process-local cache. Mutations contain no awaits, so they are atomic."""

    def __init__(self, config: CacheConfig | None = None, now_provider=_utcnow) -> None:
        self.config = config or CacheConfig()
        self.now_provider = now_provider
        self.entries: dict[str, CacheEntry] = {}

    @staticmethod
    def _key(account_id: str, view: CacheView) -> str:
        return f"account:{account_id}:{view.value}"

    def _read(self, key: str) -> Any | None:
        entry = self.entries.get(key)
        if entry is None:
            return None
        if entry.expired(self.now_provider()):
            del self.entries[key]
            return None
        return entry.value

    def _write(self, key: str, value: Any, ttl: int) -> None:
        self.entries[key] = CacheEntry(
            value=value, inserted_at=self.now_provider(), ttl_seconds=ttl
        )

    def _drop_account(self, account_id: str) -> None:
        for view in CacheView:
            self.entries.pop(self._key(account_id, view), None)

    async def get(self, account_id: str, view: CacheView) -> Any | None:
        return self._read(self._key(account_id, view))

    async def set(self, account_id: str, view: CacheView, value: Any) -> None:
        self._write(self._key(account_id, view), value, view_ttl(self.config, view))

    async def invalidate(self, account_id: str) -> None:
        self._drop_account(account_id)

    async def warm(self, account_id: str, views: dict[CacheView, Any]) -> None:
        for view, value in views.items():
            self._write(self._key(account_id, view), value, view_ttl(self.config, view))

    async def refresh(self, account_id: str, views: dict[CacheView, Any]) -> None:
        self._drop_account(account_id)
        for view, value in views.items():
            self._write(self._key(account_id, view), value, view_ttl(self.config, view))

    async def get_global(self, key: str) -> Any | None:
        return self._read(f"global:{key}")

    async def set_global(self, key: str, value: Any, ttl: int) -> None:
        self._write(f"global:{key}", value, ttl)

    async def delete_global(self, key: str) -> None:
        self.entries.pop(f"global:{key}", None)


class RedisCache:
    """Redis-backed cache shared between API processes and ingestion workers.

    Cache outages degrade to misses; the record store stays the source of truth.
    """

    def __init__(self, client: Redis, config: CacheConfig) -> None:
        self.client = client
        self.config = config

    @classmethod
    def from_url(cls, config: CacheConfig) -> "RedisCache":
        return cls(Redis.from_url(config.redis_url, decode_responses=True), config)

    async def close(self) -> None:
        await self.client.aclose()

    def _key(self, account_id: str, view: CacheView) -> str:
        return f"{self.config.key_prefix}:account:{account_id}:{view.value}"

    def _global_key(self, key: str) -> str:
        return f"{self.config.key_prefix}:global:{key}"

    async def _get_key(self, key: str) -> Any | None:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None
        return json.loads(raw) if raw is not None else None

    async def get(self, account_id: str, view: CacheView) -> Any | None:
        return await self._get_key(self._key(account_id, view))

    async def set(self, account_id: str, view: CacheView, value: Any) -> None:
        try:
            await self.client.set(
                self._key(account_id, view), json.dumps(value), ex=view_ttl(self.config, view)
            )
        except RedisError as e:
            logger.warning(
                "cache_write_failed", account_id=account_id, view=view.value, error=str(e)
            )

    async def invalidate(self, account_id: str) -> None:
        try:
            await self.client.delete(*(self._key(account_id, view) for view in CacheView))
        except RedisError as e:
            logger.error("cache_invalidate_failed", account_id=account_id, error=str(e))

    async def warm(self, account_id: str, views: dict[CacheView, Any]) -> None:
        await self._write_views(account_id, views, drop_first=False)

    async def refresh(self, account_id: str, views: dict[CacheView, Any]) -> None:
        await self._write_views(account_id, views, drop_first=True)

    async def _write_views(
        self, account_id: str, views: dict[CacheView, Any], *, drop_first: bool
    ) -> None:
        # MULTI/EXEC: readers see either the old views or the new ones.
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                if drop_first:
                    pipe.delete(*(self._key(account_id, view) for view in CacheView))
                for view, value in views.items():
                    pipe.set(
                        self._key(account_id, view),
                        json.dumps(value),
                        ex=view_ttl(self.config, view),
                    )
                await pipe.execute()
        except RedisError as e:
            logger.error("cache_refresh_failed", account_id=account_id, error=str(e))

    async def get_global(self, key: str) -> Any | None:
        return await self._get_key(self._global_key(key))

    async def set_global(self, key: str, value: Any, ttl: int) -> None:
        try:
            await self.client.set(self._global_key(key), json.dumps(value), ex=ttl)
        except RedisError as e:
            logger.warning("cache_write_failed", key=key, error=str(e))

    async def delete_global(self, key: str) -> None:
        try:
            await self.client.delete(self._global_key(key))
        except RedisError as e:
            logger.error("cache_invalidate_failed", key=key, error=str(e))
