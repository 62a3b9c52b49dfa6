"""
beacon.bot.cogs.tasks — Periodic Background Tasks
==================================================

Scheduled jobs that run on ``discord.ext.tasks`` loops:

- **Heartbeat** — every ``heartbeat_interval_seconds`` (30), refreshes
  this node's record in Redis.
- **Maintenance** — every 10 minutes: ends over-long voice sessions on
  this node, closes sessions orphaned by dead nodes, sweeps metric buckets
  older than 24 h and prunes dead node records.
- **Retention** — daily, deletes aged ``daily_activity`` rows and journal
  entries.

These tasks fire in the bot process (not a separate worker) to keep the
deployment simple.  Store work goes through ``run_db()``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from discord.ext import commands, tasks

from beacon.database.engine import run_db
from beacon.services.retention_service import purge_old_records

if TYPE_CHECKING:
    from beacon.bot.core import BeaconBot

logger = logging.getLogger(__name__)


class PeriodicTasks(commands.Cog):
    """Cog for scheduled background maintenance tasks."""

    def __init__(self, bot: BeaconBot) -> None:
        self.bot = bot

    async def cog_load(self) -> None:
        """Start task loops when the cog is loaded."""
        self.heartbeat_loop.change_interval(seconds=self.bot.cfg.heartbeat_interval_seconds)
        self.heartbeat_loop.start()
        self.maintenance_loop.start()
        self.retention_loop.start()

    async def cog_unload(self) -> None:
        """Cancel task loops on unload."""
        self.heartbeat_loop.cancel()
        self.maintenance_loop.cancel()
        self.retention_loop.cancel()

    # -------------------------------------------------------------------
    # Node heartbeat
    # -------------------------------------------------------------------
    @tasks.loop(seconds=30)
    async def heartbeat_loop(self):
        """Refresh this node's short-TTL record so siblings see it alive."""
        try:
            await self.bot.coordinator.heartbeat_once()
        except Exception:
            logger.exception("Heartbeat failed", extra={"task": "heartbeat"})

    @heartbeat_loop.before_loop
    async def _wait_heartbeat(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Routine cleanup — every 10 minutes
    # -------------------------------------------------------------------
    @tasks.loop(minutes=10)
    async def maintenance_loop(self):
        """Voice sweeps, metric GC and dead-node pruning."""
        cfg = self.bot.cfg
        try:
            await self.bot.voice.end_stale_sessions(cfg.stale_voice_session_hours)
            live = await self.bot.coordinator.live_node_ids()
            live.add(cfg.node_id)
            await self.bot.voice.close_stale_sessions(live, cfg.stale_voice_session_hours)
            removed = await self.bot.cache.cleanup_metrics()
            pruned = await self.bot.coordinator.prune_dead_nodes()
            logger.info(
                "Maintenance complete: %d metric buckets removed, %d dead nodes pruned",
                removed, pruned,
            )
        except Exception:
            logger.exception("Maintenance task failed", extra={"task": "maintenance"})

    @maintenance_loop.before_loop
    async def _wait_maintenance(self):
        await self.bot.wait_until_ready()

    # -------------------------------------------------------------------
    # Retention cleanup — runs every 24 hours
    # -------------------------------------------------------------------
    @tasks.loop(hours=24)
    async def retention_loop(self):
        """Delete rows older than the configured retention windows."""
        cfg = self.bot.cfg
        try:
            result = await run_db(
                purge_old_records,
                self.bot.engine,
                cfg.daily_activity_retention_days,
                cfg.transaction_retention_days,
            )
            logger.info(
                "Retention task complete: %d daily rows, %d transactions deleted",
                result["daily_activity_deleted"], result["transactions_deleted"],
            )
        except Exception:
            logger.exception("Retention task failed", extra={"task": "retention"})

    @retention_loop.before_loop
    async def _wait_retention(self):
        await self.bot.wait_until_ready()


async def setup(bot: BeaconBot) -> None:
    await bot.add_cog(PeriodicTasks(bot))
