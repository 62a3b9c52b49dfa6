"""
beacon.bot.cogs.activity — Message & Command Points
====================================================

Listens for guild messages and completed commands and forwards them to
the points ledger.  The first message of a user's UTC day also refreshes
their profile row and runs the streak check.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from beacon.database.models import ActivityType

if TYPE_CHECKING:
    from beacon.bot.core import BeaconBot

logger = logging.getLogger(__name__)


class Activity(commands.Cog, name="Activity"):
    """Awards points for messages and command usage."""

    def __init__(self, bot: BeaconBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message) -> None:
        """Fires on every message the bot can see."""
        try:
            await self._handle_message(message)
        except Exception:
            logger.exception(
                "Error processing message %s from user %s",
                message.id, message.author.id,
            )

    async def _handle_message(self, message: discord.Message) -> None:
        # Gate: bots and DMs earn nothing
        if message.author.bot or message.guild is None:
            return

        ledger = self.bot.ledger
        user_id = str(message.author.id)
        guild_id = str(message.guild.id)

        points, metadata = await ledger.score_message(user_id, guild_id, message.content)
        metadata["channel_id"] = str(message.channel.id)
        awarded = await ledger.award_points(
            user_id, guild_id, points, "Message", ActivityType.MESSAGE, metadata,
        )

        if awarded and metadata.get("first_message_of_day"):
            await ledger.sync_user_profile(
                user_id,
                message.author.name,
                message.author.display_name,
                message.author.display_avatar.url,
            )
            streak = await ledger.check_daily_streak(user_id, guild_id)
            logger.debug("%s is on a %d-day streak in guild %s", user_id, streak, guild_id)

    @commands.Cog.listener()
    async def on_command_completion(self, ctx: commands.Context) -> None:
        if ctx.guild is None:
            return
        await self._award_command(ctx.author.id, ctx.guild.id, ctx.command.qualified_name if ctx.command else "unknown")

    @commands.Cog.listener()
    async def on_app_command_completion(self, interaction: discord.Interaction, command) -> None:
        if interaction.guild_id is None:
            return
        await self._award_command(interaction.user.id, interaction.guild_id, command.qualified_name)

    async def _award_command(self, user_id: int, guild_id: int, name: str) -> None:
        self.bot.command_count += 1
        try:
            await self.bot.ledger.award_points(
                str(user_id),
                str(guild_id),
                self.bot.ledger.points.COMMAND_USED,
                "Command Used",
                ActivityType.COMMAND,
                {"command": name},
            )
        except Exception:
            logger.exception("Error awarding command points to %s", user_id)


async def setup(bot: BeaconBot) -> None:
    await bot.add_cog(Activity(bot))
