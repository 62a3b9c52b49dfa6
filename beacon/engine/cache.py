"""
beacon.engine.cache — Redis Coordination Cache
===============================================

Thin async wrapper around a shared ``redis.asyncio.Redis`` client.  Every
node in the cluster talks to the same Redis; nothing here is authoritative
for points, it only coordinates and saves round-trips to PostgreSQL.

Primitives:

- **Node heartbeat** — ``bot:node:{id}`` JSON record with a short TTL.  A
  missing key means a dead node.
- **First message of the day** — ``SET key 1 NX EX 86400``.  One atomic
  command, so concurrent message bursts across nodes still yield exactly
  one winner.
- **Aggregate cache** — JSON blobs with a TTL.  Mutations bump a
  generation counter and *delete* keys.  A reader only writes its value back
  if the generation it saw before reading the store is still current
  (``WATCH`` / ``MULTI``), so a snapshot taken before a mutation is never
  cached after it.
- **Metrics** — per-minute buckets bumped with ``INCRBYFLOAT``; buckets
  older than 24 h are swept by :meth:`CoordinationCache.cleanup_metrics`.

All methods propagate :class:`redis.exceptions.RedisError`.  The services
decide what a failure degrades to.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import UTC, date, datetime
from typing import Any

import redis.asyncio as redis
from redis.exceptions import WatchError

from beacon.constants import (
    NODE_KEY_PREFIX,
    first_message_key,
    metric_key,
    node_key,
)

logger = logging.getLogger(__name__)

FIRST_MESSAGE_TTL_SECONDS = 86_400
GENERATION_TTL_SECONDS = 86_400
DEFAULT_NODE_TTL_SECONDS = 60
METRIC_RETENTION_HOURS = 24

# SCAN page size for key enumeration
_SCAN_COUNT = 200


def create_redis_client(url: str | None = None) -> redis.Redis:
    """Build an asyncio Redis client from ``REDIS_URL``.

    Socket timeouts are bounded so a stalled Redis turns into a
    :class:`redis.exceptions.TimeoutError` instead of a hung event handler.
    """
    url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
    client = redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
        health_check_interval=30,
    )
    logger.info("Redis client created → %s", url.split("@")[-1])
    return client


def minute_bucket(ts: float) -> int:
    """Index of the one-minute bucket containing epoch second *ts*."""
    return int(ts // 60)


class CoordinationCache:
    """Cluster-shared key/value primitives.

    Parameters
    ----------
    client:
        A ``redis.asyncio.Redis`` created with ``decode_responses=True``.
    """

    def __init__(self, client: redis.Redis) -> None:
        self.client = client

    # -------------------------------------------------------------------
    # Generic JSON helpers
    # -------------------------------------------------------------------
    async def get_json(self, key: str) -> Any | None:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable cache entry %s", key)
            await self.client.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def scan_keys(self, pattern: str) -> list[str]:
        """All keys matching *pattern*, enumerated with ``SCAN``."""
        return [key async for key in self.client.scan_iter(match=pattern, count=_SCAN_COUNT)]

    # -------------------------------------------------------------------
    # Generation-guarded cache entries
    # -------------------------------------------------------------------
    async def get_generation(self, gen_key: str) -> str:
        """Current value of a generation counter (``"0"`` if never bumped)."""
        return await self.client.get(gen_key) or "0"

    async def invalidate(self, gen_key: str, *keys: str) -> None:
        """Bump *gen_key* and delete *keys* in one ``MULTI`` block."""
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(gen_key)
            pipe.expire(gen_key, GENERATION_TTL_SECONDS)
            if keys:
                pipe.delete(*keys)
            await pipe.execute()

    async def set_json_if_current(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None,
        gen_key: str,
        generation: str,
    ) -> bool:
        """Write *value* only while *gen_key* still equals *generation*.

        Returns ``False`` (and writes nothing) when an invalidation landed
        after the caller sampled the generation.
        """
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(gen_key)
                current = await pipe.get(gen_key) or "0"
                if current != generation:
                    return False
                pipe.multi()
                pipe.set(key, json.dumps(value, default=str), ex=ttl_seconds)
                await pipe.execute()
            except WatchError:
                return False
        return True

    # -------------------------------------------------------------------
    # Node heartbeat registry
    # -------------------------------------------------------------------
    async def register_node(
        self,
        node_id: str,
        data: dict[str, Any],
        ttl_seconds: int = DEFAULT_NODE_TTL_SECONDS,
    ) -> None:
        """Write (or overwrite) this node's record with a fresh TTL."""
        record = {**data, "node_id": node_id, "timestamp": time.time()}
        await self.set_json(node_key(node_id), record, ttl_seconds)

    async def get_active_nodes(self) -> list[dict[str, Any]]:
        """Every node record currently present, in no particular order."""
        keys = await self.scan_keys(f"{NODE_KEY_PREFIX}*")
        if not keys:
            return []
        nodes: list[dict[str, Any]] = []
        for key, raw in zip(keys, await self.client.mget(keys)):
            if raw is None:
                continue  # expired between SCAN and MGET
            try:
                nodes.append(json.loads(raw))
            except ValueError:
                logger.warning("Unparseable node record at %s", key)
        return nodes

    async def remove_node(self, node_id: str) -> None:
        await self.client.delete(node_key(node_id))

    # -------------------------------------------------------------------
    # Once-per-day dedup
    # -------------------------------------------------------------------
    async def check_first_message_today(
        self,
        user_id: str,
        guild_id: str,
        today: date | None = None,
    ) -> bool:
        """True for exactly one caller per user+guild+UTC day."""
        today = today or datetime.now(UTC).date()
        key = first_message_key(guild_id, user_id, today)
        claimed = await self.client.set(key, "1", ex=FIRST_MESSAGE_TTL_SECONDS, nx=True)
        return bool(claimed)

    # -------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------
    async def record_metric(self, name: str, value: float = 1.0, ts: float | None = None) -> float:
        ts = time.time() if ts is None else ts
        return float(await self.client.incrbyfloat(metric_key(name, minute_bucket(ts)), value))

    async def get_metrics(
        self,
        name: str,
        minutes: int = 60,
        ts: float | None = None,
    ) -> list[dict[str, float]]:
        """Newest-first list of ``{"timestamp", "value"}`` for the last *minutes* buckets."""
        if minutes <= 0:
            return []
        now = time.time() if ts is None else ts
        stamps = [now - i * 60 for i in range(minutes)]
        keys = [metric_key(name, minute_bucket(s)) for s in stamps]
        values = await self.client.mget(keys)
        return [
            {"timestamp": s, "value": float(v) if v is not None else 0.0}
            for s, v in zip(stamps, values)
        ]

    async def cleanup_metrics(
        self,
        max_age_hours: int = METRIC_RETENTION_HOURS,
        ts: float | None = None,
    ) -> int:
        """Delete metric buckets older than *max_age_hours*.  Returns the count removed."""
        now = time.time() if ts is None else ts
        cutoff = minute_bucket(now - max_age_hours * 3600)
        stale: list[str] = []
        for key in await self.scan_keys("metrics:*"):
            try:
                bucket = int(key.rsplit(":", 1)[1])
            except (IndexError, ValueError):
                continue
            if bucket < cutoff:
                stale.append(key)
        if stale:
            await self.client.delete(*stale)
            logger.debug("Removed %d stale metric buckets", len(stale))
        return len(stale)

    # -------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()
