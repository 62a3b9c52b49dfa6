"""
beacon.bot.cogs.reactions — Reaction Points & Reaction Roles
=============================================================

Uses raw reaction events so reactions on uncached messages still count.

- add:    REACTION_GIVEN for the reactor, REACTION_RECEIVED for the
          message author, then the reaction-role engine.
- remove: reaction-role engine only (points are never taken back).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

from beacon.database.models import ActivityType
from beacon.services.reaction_roles import ReactionRoleOutcome, emoji_identity

if TYPE_CHECKING:
    from beacon.bot.core import BeaconBot

logger = logging.getLogger(__name__)


class Reactions(commands.Cog, name="Reactions"):
    """Awards points for reactions and drives reaction roles."""

    def __init__(self, bot: BeaconBot) -> None:
        self.bot = bot

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent) -> None:
        """Fire when any reaction is added, even on uncached messages."""
        try:
            await self._handle_add(payload)
        except Exception:
            logger.exception(
                "Error processing reaction on message %s from user %s",
                payload.message_id, payload.user_id,
            )

    @commands.Cog.listener()
    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent) -> None:
        try:
            await self._handle_remove(payload)
        except Exception:
            logger.exception(
                "Error processing reaction remove on message %s from user %s",
                payload.message_id, payload.user_id,
            )

    async def _handle_add(self, payload: discord.RawReactionActionEvent) -> None:
        # Gate: guild reactions from humans only
        if payload.guild_id is None or payload.member is None or payload.member.bot:
            return

        ledger = self.bot.ledger
        guild_id = str(payload.guild_id)
        user_id = str(payload.user_id)
        emoji = emoji_identity(payload.emoji.id, payload.emoji.name)
        metadata = {"message_id": str(payload.message_id), "emoji": emoji}

        await ledger.award_points(
            user_id, guild_id, ledger.points.REACTION_GIVEN,
            "Reaction Given", ActivityType.REACTION_GIVEN, metadata,
        )

        author_id = getattr(payload, "message_author_id", None)
        if author_id and author_id != payload.user_id:
            author = payload.member.guild.get_member(author_id)
            if author is None or not author.bot:
                await ledger.award_points(
                    str(author_id), guild_id, ledger.points.REACTION_RECEIVED,
                    "Reaction Received", ActivityType.REACTION_RECEIVED,
                    {**metadata, "from_user_id": user_id},
                )

        outcome = await self.bot.reaction_roles.handle_reaction_add(
            guild_id, str(payload.message_id), emoji, user_id,
        )
        if outcome is not ReactionRoleOutcome.NO_MAPPING:
            logger.debug("Reaction role add on %s by %s: %s", payload.message_id, user_id, outcome.value)

    async def _handle_remove(self, payload: discord.RawReactionActionEvent) -> None:
        if payload.guild_id is None:
            return
        if self.bot.user is not None and payload.user_id == self.bot.user.id:
            return

        user_id = str(payload.user_id)
        emoji = emoji_identity(payload.emoji.id, payload.emoji.name)
        outcome = await self.bot.reaction_roles.handle_reaction_remove(
            str(payload.guild_id), str(payload.message_id), emoji, user_id,
        )
        if outcome is not ReactionRoleOutcome.NO_MAPPING:
            logger.debug("Reaction role remove on %s by %s: %s", payload.message_id, user_id, outcome.value)


async def setup(bot: BeaconBot) -> None:
    await bot.add_cog(Reactions(bot))
