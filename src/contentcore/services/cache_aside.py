"""Cache-aside coordination for entity services.

Reads go to the cache first and fall through to the store on a miss.
Mutations drop the entity's id key and every cached list page of that entity.

Key families:
    {prefix}:id:{id}             one entity snapshot
    {prefix}:list:{hash(shape)}  one page of a normalized list query

A cache fault never fails the caller: every cache error is logged here and
reported as a miss.
"""

import asyncio
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from redis.exceptions import RedisError
from sqlalchemy import inspect

from contentcore.core.cache import RedisCacheStore
from contentcore.core.config import settings
from contentcore.core.logging import get_logger
from contentcore.core.serialization import from_json_value, to_json_value
from contentcore.repositories.port import EntityId

ModelType = TypeVar("ModelType")
KeyHasher = Callable[[Any], str]

logger = get_logger(__name__)

# Serialization problems are reported the same way as connectivity problems
_CACHE_ERRORS = (RedisError, OSError, TypeError, ValueError)


def default_key_hasher(shape: Any) -> str:
    """SHA-1 hex digest of the canonical JSON form of ``shape``."""
    canonical = json.dumps(shape, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheOptions:
    """Cache behaviour for one entity service.

    Attributes:
        enabled: Turn caching on or off for the entity
        ttl_seconds: Lifetime of id and list entries
        prefix: Key namespace, defaults to the entity name
        swr_seconds: Serve list pages whose remaining TTL is at or below this
            many seconds and refresh them in the background
    """

    enabled: bool = field(default_factory=lambda: settings.cache_enabled)
    ttl_seconds: int = field(default_factory=lambda: settings.cache_default_ttl_seconds)
    prefix: str | None = None
    swr_seconds: int | None = field(default_factory=lambda: settings.cache_swr_seconds)


class CacheAsideCoordinator(Generic[ModelType]):
    """Reads, writes and invalidates cached snapshots of one entity type."""

    def __init__(
        self,
        cache: RedisCacheStore | None,
        model: type[ModelType],
        options: CacheOptions | None = None,
        entity_name: str | None = None,
        key_hasher: KeyHasher = default_key_hasher,
    ) -> None:
        self._cache = cache
        self._model = model
        self.options = options or CacheOptions()
        self.prefix = self.options.prefix or entity_name or model.__name__.lower()
        self._key_hasher = key_hasher
        self._column_names = tuple(attr.key for attr in inspect(model).column_attrs)
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        self._refreshing: set[str] = set()
        self._logger = get_logger(f"{__name__}.{self.prefix}")

    @property
    def enabled(self) -> bool:
        return self.options.enabled and self._cache is not None

    # ========================================================================
    # KEYS
    # ========================================================================

    def id_key(self, entity_id: EntityId) -> str:
        return f"{self.prefix}:id:{entity_id}"

    def list_key(self, shape: Any) -> str:
        return f"{self.prefix}:list:{self._key_hasher(shape)}"

    @property
    def list_pattern(self) -> str:
        return f"{self.prefix}:list:*"

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def snapshot(self, entity: ModelType) -> dict[str, Any]:
        """JSON-safe column values of ``entity``; unloaded columns are skipped."""
        unloaded = inspect(entity).unloaded
        return {
            name: to_json_value(getattr(entity, name))
            for name in self._column_names
            if name not in unloaded
        }

    def rehydrate(self, snapshot: dict[str, Any]) -> ModelType:
        """Detached instance rebuilt from a snapshot."""
        values = {name: from_json_value(value) for name, value in snapshot.items()}
        return self._model(**values)

    # ========================================================================
    # ENTITY ENTRIES
    # ========================================================================

    async def get_entity(self, entity_id: EntityId) -> ModelType | None:
        if not self.enabled:
            return None
        key = self.id_key(entity_id)
        try:
            cached = await self._cache.get(key)  # type: ignore[union-attr]
            if cached is None:
                self._logger.debug("Cache miss", key=key)
                return None
            self._logger.debug("Cache hit", key=key)
            return self.rehydrate(cached)
        except _CACHE_ERRORS as e:
            self._logger.warning("Cache read failed", key=key, error=str(e))
            return None

    async def put_entity(self, entity: ModelType) -> None:
        if not self.enabled:
            return
        key = self.id_key(getattr(entity, "id"))
        try:
            await self._cache.set(key, self.snapshot(entity), self.options.ttl_seconds)  # type: ignore[union-attr]
        except _CACHE_ERRORS as e:
            self._logger.warning("Cache write failed", key=key, error=str(e))

    # ========================================================================
    # LIST ENTRIES
    # ========================================================================

    async def get_page(self, shape: Any) -> tuple[dict[str, Any] | None, bool]:
        """Cached list page for ``shape`` and whether it is due for refresh."""
        if not self.enabled:
            return None, False
        key = self.list_key(shape)
        try:
            cached = await self._cache.get(key)  # type: ignore[union-attr]
            if cached is None:
                self._logger.debug("Cache miss", key=key)
                return None, False
            stale = False
            if self.options.swr_seconds is not None:
                remaining = await self._cache.get_ttl(key)  # type: ignore[union-attr]
                stale = 0 <= remaining <= self.options.swr_seconds
            self._logger.debug("Cache hit", key=key, stale=stale)
            return cached, stale
        except _CACHE_ERRORS as e:
            self._logger.warning("Cache read failed", key=key, error=str(e))
            return None, False

    async def put_page(self, shape: Any, page: dict[str, Any]) -> None:
        if not self.enabled:
            return
        key = self.list_key(shape)
        try:
            await self._cache.set(key, page, self.options.ttl_seconds)  # type: ignore[union-attr]
        except _CACHE_ERRORS as e:
            self._logger.warning("Cache write failed", key=key, error=str(e))

    def schedule_refresh(self, shape: Any, refresh: Callable[[], Awaitable[None]]) -> None:
        """Run ``refresh`` in the background, once per key at a time."""
        key = self.list_key(shape)
        if key in self._refreshing:
            return
        self._refreshing.add(key)

        async def run() -> None:
            try:
                await refresh()
                self._logger.debug("Cache entry refreshed", key=key)
            except Exception as e:
                self._logger.warning("Background cache refresh failed", key=key, error=str(e))
            finally:
                self._refreshing.discard(key)

        task = asyncio.create_task(run())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def wait_for_refreshes(self) -> None:
        """Wait until all scheduled background refreshes have finished."""
        while self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks))

    # ========================================================================
    # INVALIDATION
    # ========================================================================

    async def invalidate(self, *entity_ids: EntityId) -> None:
        """Drop the id keys of ``entity_ids`` and every list page of the entity."""
        if not self.enabled:
            return
        for entity_id in entity_ids:
            key = self.id_key(entity_id)
            try:
                await self._cache.delete(key)  # type: ignore[union-attr]
            except _CACHE_ERRORS as e:
                self._logger.warning("Cache invalidation failed", key=key, error=str(e))
        try:
            removed = await self._cache.delete_keys_by_pattern(self.list_pattern)  # type: ignore[union-attr]
            self._logger.debug("List cache invalidated", pattern=self.list_pattern, removed=removed)
        except _CACHE_ERRORS as e:
            self._logger.warning("Cache invalidation failed", pattern=self.list_pattern, error=str(e))
