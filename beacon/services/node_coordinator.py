"""
beacon.services.node_coordinator — Heartbeats & Cluster Discovery
==================================================================

Each bot process registers ``bot:node:{node_id}`` in Redis with a TTL of
``ttl`` seconds.  The tasks Cog calls :meth:`NodeCoordinator.heartbeat_once`
every ``heartbeat_interval_seconds``.  A node whose key has expired is dead;
there is no other liveness signal.  Graceful shutdown deletes the key early
and silences any later beat.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

if TYPE_CHECKING:
    from beacon.engine.cache import CoordinationCache

logger = logging.getLogger(__name__)

DEAD_NODE_SECONDS = 300


@dataclass(slots=True)
class NodeStatus:
    """What a node publishes about itself on every heartbeat."""

    status: str = "online"
    guild_count: int = 0
    ping_ms: float = 0.0
    command_count: int = 0
    voice_sessions: int = 0


StatusProvider = Callable[[], NodeStatus]


class NodeCoordinator:
    """Owns this node's heartbeat and reads the rest of the cluster."""

    def __init__(
        self,
        cache: CoordinationCache,
        node_id: str,
        status_provider: StatusProvider = NodeStatus,
        ttl: int = 60,
    ) -> None:
        if not node_id:
            raise ValueError("node_id is required")
        self.cache = cache
        self.node_id = node_id
        self.status_provider = status_provider
        self.ttl = ttl
        self._stopped = False

    # -------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------
    async def heartbeat_once(self) -> bool:
        """Publish one heartbeat.  Failures are logged; the next beat retries.

        After :meth:`stop` this is a no-op returning ``False``.
        """
        if self._stopped:
            return False
        try:
            await self.cache.register_node(
                self.node_id, asdict(self.status_provider()), self.ttl,
            )
        except (RedisError, OSError):
            logger.warning("Heartbeat for node %s failed", self.node_id)
            return False
        return True

    async def stop(self, deregister: bool = True) -> None:
        """Stop heartbeating and, by default, delete this node's record."""
        self._stopped = True
        if deregister:
            try:
                await self.cache.remove_node(self.node_id)
            except (RedisError, OSError):
                logger.warning("Could not deregister node %s", self.node_id)
        logger.info("Node %s heartbeat stopped", self.node_id)

    # -------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------
    async def get_cluster_nodes(self) -> list[dict[str, Any]]:
        try:
            nodes = await self.cache.get_active_nodes()
        except (RedisError, OSError):
            logger.warning("Cluster discovery failed")
            return []
        return sorted(nodes, key=lambda n: str(n.get("node_id", "")))

    async def live_node_ids(self) -> set[str]:
        return {str(n["node_id"]) for n in await self.get_cluster_nodes() if n.get("node_id")}

    async def get_cluster_stats(self) -> dict[str, Any]:
        nodes = await self.get_cluster_nodes()
        pings = [float(n.get("ping_ms", 0)) for n in nodes]
        return {
            "node_count": len(nodes),
            "total_guilds": sum(int(n.get("guild_count", 0)) for n in nodes),
            "total_commands": sum(int(n.get("command_count", 0)) for n in nodes),
            "voice_sessions": sum(int(n.get("voice_sessions", 0)) for n in nodes),
            "average_ping_ms": round(sum(pings) / len(pings), 1) if pings else 0.0,
            "nodes": nodes,
        }

    async def prune_dead_nodes(self, max_age_seconds: float = DEAD_NODE_SECONDS, now: float | None = None) -> int:
        """Remove records whose last heartbeat is older than *max_age_seconds*.

        The TTL normally does this; records written without one (or by an
        older node) are caught here.
        """
        now = time.time() if now is None else now
        removed = 0
        for node in await self.get_cluster_nodes():
            node_id = node.get("node_id")
            if not node_id or node_id == self.node_id:
                continue
            if now - float(node.get("timestamp", 0)) > max_age_seconds:
                try:
                    await self.cache.remove_node(str(node_id))
                except (RedisError, OSError):
                    logger.warning("Could not prune node %s", node_id)
                    continue
                removed += 1
                logger.info("Pruned dead node %s", node_id)
        return removed
