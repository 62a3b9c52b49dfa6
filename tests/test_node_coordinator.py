"""
tests/test_node_coordinator.py — Cluster Coordination Tests
============================================================

Heartbeat registration, discovery, aggregate stats, dead-node pruning and
graceful deregistration, against fakeredis.
"""

from __future__ import annotations

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from beacon.constants import node_key
from beacon.engine.cache import CoordinationCache
from beacon.services.node_coordinator import NodeCoordinator, NodeStatus


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _coordinator(cache, node_id: str, **status) -> NodeCoordinator:
    return NodeCoordinator(cache, node_id, status_provider=lambda: NodeStatus(**status), ttl=60)


class TestHeartbeat:
    def test_heartbeat_registers_with_ttl(self, cache, redis_client):
        coordinator = _coordinator(cache, "node-a", guild_count=4, ping_ms=42.0)

        async def scenario():
            ok = await coordinator.heartbeat_once()
            raw = await redis_client.get(node_key("node-a"))
            ttl = await redis_client.ttl(node_key("node-a"))
            return ok, json.loads(raw), ttl

        ok, record, ttl = run_async(scenario())
        assert ok is True
        assert record["node_id"] == "node-a"
        assert record["guild_count"] == 4
        assert record["status"] == "online"
        assert 0 < ttl <= 60

    def test_heartbeat_failure_is_reported(self):
        broken = MagicMock(spec=CoordinationCache)
        broken.register_node = AsyncMock(side_effect=RedisConnectionError("down"))
        coordinator = NodeCoordinator(broken, "node-a")

        assert run_async(coordinator.heartbeat_once()) is False

    def test_requires_node_id(self, cache):
        with pytest.raises(ValueError):
            NodeCoordinator(cache, "")

    def test_stop_deregisters_and_silences_heartbeat(self, cache):
        coordinator = NodeCoordinator(cache, "node-a")

        async def scenario():
            await coordinator.heartbeat_once()
            alive = await coordinator.live_node_ids()
            await coordinator.stop()
            late_beat = await coordinator.heartbeat_once()
            return alive, late_beat, await coordinator.live_node_ids()

        alive, late_beat, after = run_async(scenario())
        assert alive == {"node-a"}
        assert late_beat is False
        assert after == set()

    def test_stop_without_deregister_keeps_record(self, cache):
        coordinator = NodeCoordinator(cache, "node-a")

        async def scenario():
            await coordinator.heartbeat_once()
            await coordinator.stop(deregister=False)
            return await coordinator.live_node_ids()

        assert run_async(scenario()) == {"node-a"}


class TestDiscovery:
    def test_cluster_stats_aggregate_nodes(self, cache):
        a = _coordinator(cache, "node-a", guild_count=3, ping_ms=40.0, command_count=10, voice_sessions=2)
        b = _coordinator(cache, "node-b", guild_count=5, ping_ms=60.0, command_count=5, voice_sessions=1)

        async def scenario():
            await a.heartbeat_once()
            await b.heartbeat_once()
            return await a.get_cluster_stats()

        stats = run_async(scenario())
        assert stats["node_count"] == 2
        assert stats["total_guilds"] == 8
        assert stats["total_commands"] == 15
        assert stats["voice_sessions"] == 3
        assert stats["average_ping_ms"] == 50.0
        assert [n["node_id"] for n in stats["nodes"]] == ["node-a", "node-b"]

    def test_empty_cluster(self, cache):
        stats = run_async(_coordinator(cache, "node-a").get_cluster_stats())
        assert stats["node_count"] == 0
        assert stats["average_ping_ms"] == 0.0

    def test_discovery_failure_is_empty(self):
        broken = MagicMock(spec=CoordinationCache)
        broken.get_active_nodes = AsyncMock(side_effect=RedisConnectionError("down"))
        assert run_async(NodeCoordinator(broken, "node-a").get_cluster_nodes()) == []

    def test_prune_dead_nodes_skips_self(self, cache):
        me = _coordinator(cache, "node-a")

        async def scenario():
            stale = time.time() - 3600
            await cache.set_json(node_key("node-old"), {"node_id": "node-old", "timestamp": stale})
            await cache.set_json(node_key("node-a"), {"node_id": "node-a", "timestamp": stale})
            await _coordinator(cache, "node-b").heartbeat_once()
            removed = await me.prune_dead_nodes(max_age_seconds=300)
            return removed, await me.live_node_ids()

        removed, live = run_async(scenario())
        assert removed == 1
        assert live == {"node-a", "node-b"}
