"""Valkey/Redis client management and the key-value store used by entity caches."""

import json
from typing import Any

import redis.asyncio as redis
from redis.asyncio import Redis

from contentcore.core.config import settings
from contentcore.core.logging import get_logger
from contentcore.core.tracing import trace_cache

# Import FakeRedis for testing
try:
    from fakeredis import FakeAsyncRedis
    FAKEREDIS_AVAILABLE = True
except ImportError:
    FAKEREDIS_AVAILABLE = False

logger = get_logger(__name__)

# Keys removed per UNLINK round-trip during pattern deletion
PATTERN_DELETE_CHUNK_SIZE = 500


class CacheErrorMessage:
    """Standardized cache error messages."""

    CREATE_CLIENT_NO_URL = "Valkey URL is not configured"
    CREATE_CLIENT_FAILED = "Failed to create Valkey client"
    CLOSE_CACHE_FAILED = "Failed to close cache connections"


def create_client() -> Redis:
    """Create async Redis client with connection pooling.

    Returns:
        Redis: Configured async Redis client (or FakeRedis for testing)

    Raises:
        ValueError: If Valkey URL is invalid or settings are misconfigured
    """
    try:
        # Use FakeRedis for testing when VALKEY_URL is empty/not set
        if not settings.valkey_url and FAKEREDIS_AVAILABLE:
            logger.info("Creating FakeRedis client for testing")
            return FakeAsyncRedis(decode_responses=True)  # type: ignore[return-value]

        if not settings.valkey_url:
            raise ValueError(CacheErrorMessage.CREATE_CLIENT_NO_URL)

        logger.info(
            "Creating async Valkey client",
            url=settings.valkey_url.split("@")[1] if "@" in settings.valkey_url else "***",
            max_connections=20,
        )

        client: Redis = redis.from_url(  # type: ignore[no-untyped-call]
            settings.valkey_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=20,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

        return client
    except ValueError:
        raise
    except Exception as e:
        logger.error(
            f"Failed to create Valkey client due to configuration error: {e}"
        )
        raise ValueError(CacheErrorMessage.CREATE_CLIENT_FAILED) from e


cache_client: Any = create_client()


class RedisCacheStore:
    """JSON key-value store over an async Redis client.

    Errors from Redis propagate to the caller; the cache-aside coordinator
    decides whether a failure matters.

    Example:
        store = RedisCacheStore(cache_client)
        await store.set("article:id:42", {"id": 42}, ttl_seconds=300)
        await store.delete_keys_by_pattern("article:list:*")
    """

    def __init__(self, client: Redis) -> None:
        self._client = client

    @trace_cache()
    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    @trace_cache()
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        serialized = json.dumps(value, separators=(",", ":"))
        if ttl_seconds is not None and ttl_seconds > 0:
            await self._client.set(key, serialized, ex=ttl_seconds)
        else:
            await self._client.set(key, serialized)

    @trace_cache()
    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    @trace_cache()
    async def get_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -1 without expiry, -2 when missing."""
        return int(await self._client.ttl(key))

    @trace_cache()
    async def delete_keys_by_pattern(self, pattern: str) -> int:
        """Delete all keys matching a glob pattern using SCAN + batched UNLINK.

        SCAN keeps the server responsive where KEYS would block it.

        Returns:
            Number of keys removed.
        """
        deleted = 0
        chunk: list[str] = []
        async for key in self._client.scan_iter(match=pattern):
            chunk.append(key)
            if len(chunk) >= PATTERN_DELETE_CHUNK_SIZE:
                deleted += int(await self._client.unlink(*chunk) or 0)
                chunk = []
        if chunk:
            deleted += int(await self._client.unlink(*chunk) or 0)

        if deleted:
            logger.debug("Cache keys invalidated", pattern=pattern, count=deleted)
        return deleted


@trace_cache()
async def check_cache_connection() -> bool:
    """Check if cache connection is available.

    Used for health checks and diagnostics.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        await cache_client.ping()
        logger.debug("Cache connection check passed")
        return True
    except Exception as e:
        logger.error(f"Cache connection check failed with error: {e}")
        return False


@trace_cache()
async def close_cache() -> None:
    """Close all cache connections.

    Should be called during application shutdown.

    Raises:
        RuntimeError: If graceful shutdown fails
    """
    try:
        logger.info("Closing cache connections")
        await cache_client.aclose()
        # Wait for connection pool to be cleaned up (real Redis only)
        if hasattr(cache_client, "connection_pool"):
            await cache_client.connection_pool.disconnect()
    except Exception as e:
        logger.error(f"Error closing cache connections: {e}")
        raise RuntimeError(CacheErrorMessage.CLOSE_CACHE_FAILED) from e
