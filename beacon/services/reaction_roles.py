"""
beacon.services.reaction_roles — Reaction → Role Engine
========================================================

Maps ``(guild, message, emoji)`` to a role.  Reaction-add grants the role,
reaction-remove revokes it.  Both directions are idempotent: a member who
already holds (or already lacks) the role is left alone, with no gateway
call, no log row and no bonus.

Grant pipeline (add):
  mapping → role exists → member holds it? → bot may manage roles →
  role below bot's top role → grant → bonus points → log row

Revoke is symmetric, without any point deduction.

Every permission or hierarchy failure is turned into a
:class:`ReactionRoleOutcome`, logged, and the event is dropped.  Nothing
here raises into the event dispatcher for a role failure.

Discord access goes through the :class:`RoleGateway` protocol so the
engine can be driven by fakes in tests; the discord.py adapter lives in
:mod:`beacon.bot.core`.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError

from beacon.database.engine import get_session, run_db
from beacon.database.models import (
    ActivityType,
    ReactionRoleLog,
    ReactionRoleMapping,
    RoleAction,
)
from beacon.engine.points import reaction_role_bonus

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from beacon.services.points_ledger import PointsLedger

logger = logging.getLogger(__name__)

BONUS_REASON = "Reaction Role Obtained"


# ---------------------------------------------------------------------------
# Errors reported by the gateway
# ---------------------------------------------------------------------------
class RoleGrantError(Exception):
    """A role could not be granted or revoked."""


class MissingPermissionError(RoleGrantError):
    """The bot lacks Manage Roles."""


class RoleHierarchyError(RoleGrantError):
    """The role sits at or above the bot's highest role."""


class RoleNotFoundError(RoleGrantError):
    """The mapped role no longer exists."""


class MemberNotFoundError(RoleGrantError):
    """The reacting user is not (or no longer) a guild member."""


class ReactionRoleOutcome(enum.StrEnum):
    NO_MAPPING = "no_mapping"
    GRANTED = "granted"
    REVOKED = "revoked"
    ALREADY_HELD = "already_held"
    NOT_HELD = "not_held"
    ROLE_NOT_FOUND = "role_not_found"
    MEMBER_NOT_FOUND = "member_not_found"
    MISSING_PERMISSIONS = "missing_permissions"
    HIERARCHY = "hierarchy"
    FAILED = "failed"


_ERROR_OUTCOMES: dict[type[RoleGrantError], ReactionRoleOutcome] = {
    MissingPermissionError: ReactionRoleOutcome.MISSING_PERMISSIONS,
    RoleHierarchyError: ReactionRoleOutcome.HIERARCHY,
    RoleNotFoundError: ReactionRoleOutcome.ROLE_NOT_FOUND,
    MemberNotFoundError: ReactionRoleOutcome.MEMBER_NOT_FOUND,
}


def outcome_for_error(exc: RoleGrantError) -> ReactionRoleOutcome:
    for error_type, outcome in _ERROR_OUTCOMES.items():
        if isinstance(exc, error_type):
            return outcome
    return ReactionRoleOutcome.FAILED


class RoleGateway(Protocol):
    """What the engine needs from the chat platform."""

    async def get_role_position(self, guild_id: str, role_id: str) -> int:
        """Position of the role; raises :class:`RoleNotFoundError`."""

    async def member_has_role(self, guild_id: str, user_id: str, role_id: str) -> bool:
        """Raises :class:`MemberNotFoundError`."""

    async def bot_can_manage_roles(self, guild_id: str) -> bool: ...

    async def bot_top_role_position(self, guild_id: str) -> int: ...

    async def grant_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None: ...

    async def revoke_role(self, guild_id: str, user_id: str, role_id: str, reason: str) -> None: ...


def emoji_identity(emoji_id: int | str | None, name: str | None) -> str:
    """Custom emojis are keyed by id, unicode emojis by their character(s)."""
    if emoji_id:
        return str(emoji_id)
    if not name:
        raise ValueError("emoji has neither id nor name")
    return name


# ---------------------------------------------------------------------------
# Mapping store (synchronous — call through run_db)
# ---------------------------------------------------------------------------
def add_mapping(
    engine: Engine,
    guild_id: str,
    message_id: str,
    emoji: str,
    role_id: str,
    channel_id: str | None = None,
    description: str | None = None,
) -> int:
    """Create or repoint the mapping for ``(guild, message, emoji)``."""
    if not (guild_id and message_id and emoji and role_id):
        raise ValueError("guild_id, message_id, emoji and role_id are required")
    with get_session(engine) as session:
        mapping = session.scalar(
            select(ReactionRoleMapping).where(
                ReactionRoleMapping.guild_id == guild_id,
                ReactionRoleMapping.message_id == message_id,
                ReactionRoleMapping.emoji == emoji,
            )
        )
        if mapping is None:
            mapping = ReactionRoleMapping(
                guild_id=guild_id,
                message_id=message_id,
                emoji=emoji,
                created_at=datetime.now(UTC),
            )
            session.add(mapping)
        mapping.role_id = role_id
        mapping.channel_id = channel_id
        mapping.description = description
        session.flush()
        logger.info("Reaction role %s on message %s → role %s", emoji, message_id, role_id)
        return mapping.id


def remove_mapping(engine: Engine, guild_id: str, message_id: str, emoji: str | None = None) -> int:
    """Delete one mapping, or every mapping on the message when *emoji* is None."""
    with get_session(engine) as session:
        stmt = delete(ReactionRoleMapping).where(
            ReactionRoleMapping.guild_id == guild_id,
            ReactionRoleMapping.message_id == message_id,
        )
        if emoji is not None:
            stmt = stmt.where(ReactionRoleMapping.emoji == emoji)
        return session.execute(stmt).rowcount or 0


def get_mapping(engine: Engine, guild_id: str, message_id: str, emoji: str) -> ReactionRoleMapping | None:
    with get_session(engine) as session:
        mapping = session.scalar(
            select(ReactionRoleMapping).where(
                ReactionRoleMapping.guild_id == guild_id,
                ReactionRoleMapping.message_id == message_id,
                ReactionRoleMapping.emoji == emoji,
            )
        )
        if mapping is not None:
            session.expunge(mapping)
        return mapping


def list_mappings(engine: Engine, guild_id: str, message_id: str | None = None) -> list[ReactionRoleMapping]:
    with get_session(engine) as session:
        stmt = select(ReactionRoleMapping).where(ReactionRoleMapping.guild_id == guild_id)
        if message_id is not None:
            stmt = stmt.where(ReactionRoleMapping.message_id == message_id)
        rows = list(session.scalars(
            stmt.order_by(ReactionRoleMapping.message_id, ReactionRoleMapping.id)
        ).all())
        session.expunge_all()
        return rows


def log_action(
    engine: Engine,
    guild_id: str,
    user_id: str,
    role_id: str,
    message_id: str,
    action: RoleAction,
    node_id: str,
) -> None:
    with get_session(engine) as session:
        session.add(ReactionRoleLog(
            guild_id=guild_id,
            user_id=user_id,
            role_id=role_id,
            message_id=message_id,
            action=action.value,
            node_id=node_id,
            created_at=datetime.now(UTC),
        ))


def cleanup_orphaned_mappings(engine: Engine, guild_id: str, existing_role_ids: Iterable[str]) -> int:
    """Drop mappings whose role was deleted from the guild."""
    existing = set(existing_role_ids)
    with get_session(engine) as session:
        stmt = delete(ReactionRoleMapping).where(ReactionRoleMapping.guild_id == guild_id)
        if existing:
            stmt = stmt.where(ReactionRoleMapping.role_id.not_in(existing))
        removed = session.execute(stmt).rowcount or 0
    if removed:
        logger.info("Removed %d orphaned reaction role mapping(s) in guild %s", removed, guild_id)
    return removed


def get_reaction_role_stats(engine: Engine, guild_id: str) -> dict[str, int]:
    with get_session(engine) as session:
        mappings, messages = session.execute(
            select(
                func.count(ReactionRoleMapping.id),
                func.count(distinct(ReactionRoleMapping.message_id)),
            ).where(ReactionRoleMapping.guild_id == guild_id)
        ).one()
        actions = dict(session.execute(
            select(ReactionRoleLog.action, func.count())
            .where(ReactionRoleLog.guild_id == guild_id)
            .group_by(ReactionRoleLog.action)
        ).all())
        users = session.scalar(
            select(func.count(distinct(ReactionRoleLog.user_id)))
            .where(ReactionRoleLog.guild_id == guild_id)
        ) or 0
    return {
        "total_mappings": int(mappings or 0),
        "messages": int(messages or 0),
        "grants": int(actions.get(RoleAction.ADDED.value, 0)),
        "revocations": int(actions.get(RoleAction.REMOVED.value, 0)),
        "unique_users": int(users),
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------
class ReactionRoleEngine:
    """Turns reaction add/remove events into role changes."""

    def __init__(
        self,
        engine: Engine,
        gateway: RoleGateway,
        ledger: PointsLedger,
        node_id: str,
    ) -> None:
        self.engine = engine
        self.gateway = gateway
        self.ledger = ledger
        self.node_id = node_id

    async def _lookup(self, guild_id: str, message_id: str, emoji: str) -> ReactionRoleMapping | None:
        if not (guild_id and message_id and emoji):
            raise ValueError("guild_id, message_id and emoji are required")
        return await run_db(get_mapping, self.engine, guild_id, message_id, emoji)

    async def _check_manageable(self, guild_id: str, role_id: str, role_position: int) -> None:
        """Raise unless the bot can move *role_id*."""
        if not await self.gateway.bot_can_manage_roles(guild_id):
            raise MissingPermissionError(f"missing Manage Roles in guild {guild_id}")
        if role_position >= await self.gateway.bot_top_role_position(guild_id):
            raise RoleHierarchyError(f"role {role_id} is not below the bot's top role")

    async def handle_reaction_add(
        self, guild_id: str, message_id: str, emoji: str, user_id: str
    ) -> ReactionRoleOutcome:
        if not user_id:
            raise ValueError("user_id is required")
        try:
            mapping = await self._lookup(guild_id, message_id, emoji)
        except (SQLAlchemyError, OSError):
            logger.exception("Reaction role lookup failed for message %s", message_id)
            return ReactionRoleOutcome.FAILED
        if mapping is None:
            return ReactionRoleOutcome.NO_MAPPING

        role_id = mapping.role_id
        try:
            role_position = await self.gateway.get_role_position(guild_id, role_id)
            if await self.gateway.member_has_role(guild_id, user_id, role_id):
                logger.debug("%s already has role %s", user_id, role_id)
                return ReactionRoleOutcome.ALREADY_HELD
            await self._check_manageable(guild_id, role_id, role_position)
            await self.gateway.grant_role(
                guild_id, user_id, role_id, f"Reaction role from message {message_id}",
            )
        except RoleGrantError as exc:
            outcome = outcome_for_error(exc)
            logger.warning(
                "Could not grant role %s to %s in guild %s: %s (%s)",
                role_id, user_id, guild_id, outcome.value, exc,
            )
            return outcome

        logger.info("Granted role %s to %s via reaction on message %s", role_id, user_id, message_id)

        await self.ledger.award_points(
            user_id,
            guild_id,
            reaction_role_bonus(self.ledger.points),
            BONUS_REASON,
            ActivityType.REACTION_ROLE,
            {"role_id": role_id, "message_id": message_id, "emoji": emoji},
        )
        await self._log(guild_id, user_id, role_id, message_id, RoleAction.ADDED)
        return ReactionRoleOutcome.GRANTED

    async def handle_reaction_remove(
        self, guild_id: str, message_id: str, emoji: str, user_id: str
    ) -> ReactionRoleOutcome:
        if not user_id:
            raise ValueError("user_id is required")
        try:
            mapping = await self._lookup(guild_id, message_id, emoji)
        except (SQLAlchemyError, OSError):
            logger.exception("Reaction role lookup failed for message %s", message_id)
            return ReactionRoleOutcome.FAILED
        if mapping is None:
            return ReactionRoleOutcome.NO_MAPPING

        role_id = mapping.role_id
        try:
            role_position = await self.gateway.get_role_position(guild_id, role_id)
            if not await self.gateway.member_has_role(guild_id, user_id, role_id):
                return ReactionRoleOutcome.NOT_HELD
            await self._check_manageable(guild_id, role_id, role_position)
            await self.gateway.revoke_role(
                guild_id, user_id, role_id, f"Reaction role removed from message {message_id}",
            )
        except RoleGrantError as exc:
            outcome = outcome_for_error(exc)
            logger.warning(
                "Could not revoke role %s from %s in guild %s: %s (%s)",
                role_id, user_id, guild_id, outcome.value, exc,
            )
            return outcome

        logger.info("Revoked role %s from %s via reaction on message %s", role_id, user_id, message_id)
        await self._log(guild_id, user_id, role_id, message_id, RoleAction.REMOVED)
        return ReactionRoleOutcome.REVOKED

    async def _log(
        self, guild_id: str, user_id: str, role_id: str, message_id: str, action: RoleAction
    ) -> None:
        try:
            await run_db(
                log_action, self.engine, guild_id, user_id, role_id, message_id, action, self.node_id,
            )
        except (SQLAlchemyError, OSError):
            logger.exception("Could not log reaction role %s for %s", action.value, user_id)
