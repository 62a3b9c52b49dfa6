"""
beacon.bot.cogs.voice — Voice State Glue
=========================================

Decomposes ``on_voice_state_update`` into tracker transitions:
join, leave, move, and mute/deafen changes within one channel.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from beacon.bot.core import BeaconBot

logger = logging.getLogger(__name__)


class Voice(commands.Cog, name="Voice"):
    """Feeds voice presence into the VoiceTracker."""

    def __init__(self, bot: BeaconBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        try:
            await self._handle_voice_update(member, before, after)
        except Exception:
            logger.exception("Error processing voice state update for user %s", member.id)

    async def _handle_voice_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if member.bot:
            return

        tracker = self.bot.voice
        user_id = str(member.id)
        guild_id = str(member.guild.id)

        # --- Voice JOIN ---
        if before.channel is None and after.channel is not None:
            await tracker.join(
                user_id, guild_id, str(after.channel.id),
                is_muted=bool(after.self_mute), is_deafened=bool(after.self_deaf),
            )

        # --- Voice LEAVE ---
        elif before.channel is not None and after.channel is None:
            await tracker.leave(user_id, guild_id, award_final=True)

        # --- Voice MOVE ---
        elif before.channel is not None and after.channel is not None and before.channel != after.channel:
            if not await tracker.switch_channel(user_id, guild_id, str(after.channel.id)):
                # Never saw the join (e.g. joined before this node connected)
                await tracker.join(
                    user_id, guild_id, str(after.channel.id),
                    is_muted=bool(after.self_mute), is_deafened=bool(after.self_deaf),
                )

        # --- Mute/deaf change in the same channel ---
        elif after.channel is not None:
            if before.self_mute != after.self_mute:
                await tracker.set_muted(user_id, guild_id, bool(after.self_mute))
            if before.self_deaf != after.self_deaf:
                await tracker.set_deafened(user_id, guild_id, bool(after.self_deaf))


async def setup(bot: BeaconBot) -> None:
    await bot.add_cog(Voice(bot))
