"""
beacon.bot.core — Bot Instance & Service Wiring
================================================

Defines :class:`BeaconBot`, a ``commands.Bot`` subclass that builds the
services once and hands them to every Cog:

- ``bot.ledger``       — :class:`~beacon.services.points_ledger.PointsLedger`
- ``bot.voice``        — :class:`~beacon.services.voice_tracker.VoiceTracker`
- ``bot.reaction_roles`` — :class:`~beacon.services.reaction_roles.ReactionRoleEngine`
- ``bot.coordinator``  — :class:`~beacon.services.node_coordinator.NodeCoordinator`

Also home of :class:`DiscordRoleGateway`, the discord.py implementation of
the :class:`~beacon.services.reaction_roles.RoleGateway` protocol.

Shutdown order matters: live voice sessions are ended (and paid) first,
then the node record is deleted, then the gateway connection closes.
"""

from __future__ import annotations

import logging
import math

import discord
from discord.ext import commands
from sqlalchemy import Engine

from beacon.config import BeaconConfig
from beacon.engine.cache import CoordinationCache
from beacon.services.node_coordinator import NodeCoordinator, NodeStatus
from beacon.services.points_ledger import PointsLedger
from beacon.services.reaction_roles import (
    MemberNotFoundError,
    MissingPermissionError,
    ReactionRoleEngine,
    RoleGrantError,
    RoleNotFoundError,
)
from beacon.services.voice_tracker import VoiceTracker

logger = logging.getLogger(__name__)

# Cog modules to load on startup.
EXTENSIONS: list[str] = [
    "beacon.bot.cogs.activity",
    "beacon.bot.cogs.reactions",
    "beacon.bot.cogs.voice",
    "beacon.bot.cogs.tasks",
]


# ---------------------------------------------------------------------------
# Role gateway (discord.py adapter)
# ---------------------------------------------------------------------------
class DiscordRoleGateway:
    """Role reads and writes against the live guild cache.

    Translates discord.py failures into the distinguishable
    :class:`~beacon.services.reaction_roles.RoleGrantError` family.
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot = bot

    def _guild(self, guild_id: str) -> discord.Guild:
        guild = self.bot.get_guild(int(guild_id))
        if guild is None:
            raise RoleNotFoundError(f"guild {guild_id} is not available on this node")
        return guild

    def _role(self, guild_id: str, role_id: str) -> discord.Role:
        role = self._guild(guild_id).get_role(int(role_id))
        if role is None:
            raise RoleNotFoundError(f"role {role_id} not found in guild {guild_id}")
        return role

    async def _member(self, guild_id: str, user_id: str) -> discord.Member:
        guild = self._guild(guild_id)
        member = guild.get_member(int(user_id))
        if member is not None:
            return member
        try:
            return await guild.fetch_member(int(user_id))
        except discord.NotFound as exc:
            raise MemberNotFoundError(f"member {user_id} not in guild {guild_id}") from exc
        except discord.HTTPException as exc:
            raise RoleGrantError(f"could not fetch member {user_id}: {exc}") from exc

    async def get_role_position(self, guild_id: str, role_id: str) -> int:
        return self._role(guild_id, role_id).position

    async def member_has_role(self, guild_id: str, user_id: str, role_id: str) -> bool:
        member = await self._member(guild_id, user_id)
        return member.get_role(int(role_id)) is not None

    async def bot_can_manage_roles(self, guild_id: str) -> bool:
        return self._guild(guild_id).me.guild_permissions.manage_roles

    async def bot_top_role_position(self, guild_id: str) -> int:
        return self._guild(guild_id).me.top_role.position

    async def grant_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None:
        member = await self._member(guild_id, user_id)
        role = self._role(guild_id, role_id)
        try:
            await member.add_roles(role, reason=reason)
        except discord.Forbidden as exc:
            raise MissingPermissionError(str(exc)) from exc
        except discord.HTTPException as exc:
            raise RoleGrantError(str(exc)) from exc

    async def revoke_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None:
        member = await self._member(guild_id, user_id)
        role = self._role(guild_id, role_id)
        try:
            await member.remove_roles(role, reason=reason)
        except discord.Forbidden as exc:
            raise MissingPermissionError(str(exc)) from exc
        except discord.HTTPException as exc:
            raise RoleGrantError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------
class BeaconBot(commands.Bot):
    """Custom Bot subclass that carries the shared services.

    Parameters
    ----------
    cfg:
        The parsed :class:`BeaconConfig` from ``config.yaml``.
    engine:
        A SQLAlchemy :class:`Engine` connected to PostgreSQL.
    cache:
        The shared :class:`CoordinationCache` (Redis).
    """

    def __init__(self, cfg: BeaconConfig, engine: Engine, cache: CoordinationCache) -> None:
        intents = discord.Intents.default()
        intents.message_content = True    # Privileged: message length / emoji bonuses
        intents.members = True            # Privileged: role grants on uncached members
        intents.voice_states = True
        intents.presences = False

        super().__init__(command_prefix=cfg.bot_prefix, intents=intents)

        self.cfg = cfg
        self.engine = engine
        self.cache = cache
        self.command_count = 0

        self.ledger = PointsLedger(engine, cache, cfg.node_id, on_level_up=self._dispatch_level_up)
        self.voice = VoiceTracker(
            self.ledger, engine, cfg.node_id, accrual_seconds=cfg.voice_accrual_seconds,
        )
        self.reaction_roles = ReactionRoleEngine(
            engine, DiscordRoleGateway(self), self.ledger, cfg.node_id,
        )
        self.coordinator = NodeCoordinator(
            cache,
            cfg.node_id,
            status_provider=self.node_status,
            ttl=cfg.node_ttl_seconds,
        )

    def node_status(self) -> NodeStatus:
        latency = self.latency
        return NodeStatus(
            status="online" if self.is_ready() else "starting",
            guild_count=len(self.guilds),
            ping_ms=round(latency * 1000, 1) if math.isfinite(latency) else 0.0,
            command_count=self.command_count,
            voice_sessions=self.voice.active_session_count(),
        )

    # -----------------------------------------------------------------------
    # Lifecycle hooks
    # -----------------------------------------------------------------------
    async def setup_hook(self) -> None:
        """Load every Cog extension; one broken Cog must not take down the bot."""
        for ext in EXTENSIONS:
            try:
                await self.load_extension(ext)
                logger.info("Loaded extension: %s", ext)
            except Exception as exc:
                logger.error("Failed to load extension %s: %s", ext, exc)

    async def on_ready(self) -> None:
        """Fired when the bot has connected and the cache is populated."""
        assert self.user is not None  # guaranteed after on_ready
        logger.info(
            "Logged in as %s (ID: %s) — node %s serving %d guild(s)",
            self.user.name, self.user.id, self.cfg.node_id, len(self.guilds),
        )
        await self.coordinator.heartbeat_once()
        await self._resume_voice_sessions()

    async def close(self) -> None:
        """Graceful shutdown — pay out voice sessions, deregister, disconnect."""
        logger.info("Bot shutting down…")
        try:
            await self.voice.force_end_all_sessions("shutdown")
        except Exception:
            logger.exception("Voice shutdown sweep failed")
        await self.coordinator.stop(deregister=True)
        await super().close()
        try:
            await self.cache.close()
        except Exception:
            logger.warning("Redis client did not close cleanly")

    async def _dispatch_level_up(
        self, user_id: str, guild_id: str, new_level: int, previous_level: int
    ) -> None:
        """Re-emit ledger level-ups as ``on_level_up`` for Cogs to announce."""
        self.dispatch("level_up", user_id, guild_id, new_level, previous_level)

    # -----------------------------------------------------------------------
    # Voice resume after (re)connect
    # -----------------------------------------------------------------------
    async def _resume_voice_sessions(self) -> None:
        """Bring the tracker in line with who is actually in voice.

        Sessions whose member left while the gateway was down are ended
        first; then members already sitting in voice get a session.
        """
        guilds = [g for g in self.guilds if not g.unavailable]
        present = {
            (str(member.id), str(guild.id))
            for guild in guilds
            for channel in guild.voice_channels
            for member in channel.members
            if not member.bot
        }
        await self.voice.end_absent_sessions({str(g.id) for g in guilds}, present)

        resumed = 0
        for guild in guilds:
            for channel in guild.voice_channels:
                for member in channel.members:
                    if member.bot or self.voice.is_in_voice(str(member.id), str(guild.id)):
                        continue
                    state = member.voice
                    try:
                        await self.voice.join(
                            str(member.id),
                            str(guild.id),
                            str(channel.id),
                            is_muted=bool(state and state.self_mute),
                            is_deafened=bool(state and state.self_deaf),
                        )
                        resumed += 1
                    except Exception:
                        logger.exception("Could not resume voice session for %s", member.id)
        if resumed:
            logger.info("Resumed %d voice session(s) after connect", resumed)
