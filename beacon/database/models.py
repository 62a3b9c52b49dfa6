"""
beacon.database.models — SQLAlchemy 2.0 Data Models
====================================================

Tables:
- users                  — Member profiles (Discord snowflake as string PK)
- guilds                 — Server profiles
- user_guild_stats       — Points, level and activity counters per user+guild
- points_transactions    — Append-only points journal
- voice_sessions         — One row per continuous voice presence interval
- daily_activity         — Per-day counters used for streaks and insights
- reaction_role_mappings — (message, emoji) → role, unique per guild
- reaction_role_logs     — Append-only record of role grants/revocations

Ownership:
``user_guild_stats`` and ``points_transactions`` are written only by
:class:`beacon.services.points_ledger.PointsLedger`.  ``voice_sessions``
belongs to the voice tracker, the reaction-role tables to the reaction-role
engine.
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Beacon ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ActivityType(enum.StrEnum):
    """What earned the points — recorded on every transaction."""
    GENERAL = "general"
    MESSAGE = "message"
    COMMAND = "command"
    VOICE = "voice"
    REACTION_GIVEN = "reaction_given"
    REACTION_RECEIVED = "reaction_received"
    REACTION_ROLE = "reaction_role"
    STREAK = "streak"
    MANUAL = "manual"


class RoleAction(enum.StrEnum):
    """Actions recorded in reaction_role_logs."""
    ADDED = "added"
    REMOVED = "removed"


# ---------------------------------------------------------------------------
# Users & guilds — denormalised display data, created on first activity
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    display_name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown")
    avatar_url: Mapped[str | None] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} name={self.username!r}>"


class Guild(Base):
    __tablename__ = "guilds"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, default="Unknown Guild")
    icon_url: Mapped[str | None] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<Guild id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# UserGuildStats — the mutable aggregate
# ---------------------------------------------------------------------------
class UserGuildStats(Base):
    """Points and counters for one user in one guild.

    ``level`` is derived from ``total_points`` and is rewritten in the same
    transaction as every change to the total.
    """
    __tablename__ = "user_guild_stats"

    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True
    )
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    messages_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commands_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reactions_given: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reactions_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    voice_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Streak bonus watermarks: the day each bonus was last paid
    last_weekly_bonus_on: Mapped[date | None] = mapped_column(Date, default=None)
    last_monthly_bonus_on: Mapped[date | None] = mapped_column(Date, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_user_guild_stats_leaderboard", "guild_id", "total_points"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserGuildStats user={self.user_id} guild={self.guild_id} "
            f"pts={self.total_points} lvl={self.level}>"
        )


# ---------------------------------------------------------------------------
# PointsTransaction — append-only journal
# ---------------------------------------------------------------------------
class PointsTransaction(Base):
    """Immutable record of a single award.

    ``user_guild_stats.total_points`` is the running sum of these rows,
    maintained incrementally.
    """
    __tablename__ = "points_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    guild_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    points_change: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(200), nullable=False)
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_points_tx_user_guild_time", "user_id", "guild_id", "created_at"),
        Index("ix_points_tx_guild_time", "guild_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<PointsTransaction id={self.id} user={self.user_id} "
            f"change={self.points_change} type={self.activity_type}>"
        )


# ---------------------------------------------------------------------------
# VoiceSession — one continuous presence interval
# ---------------------------------------------------------------------------
class VoiceSession(Base):
    __tablename__ = "voice_sessions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, default=None)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accrual_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    is_muted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deafened: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        # At most one open session per user+guild
        Index(
            "uq_voice_sessions_open",
            "user_id",
            "guild_id",
            unique=True,
            postgresql_where=ended_at.is_(None),
            sqlite_where=ended_at.is_(None),
        ),
        Index("ix_voice_sessions_user_guild_start", "user_id", "guild_id", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<VoiceSession id={self.id} user={self.user_id} "
            f"channel={self.channel_id} open={self.ended_at is None}>"
        )


# ---------------------------------------------------------------------------
# DailyActivity — per-day counters (streaks, insights)
# ---------------------------------------------------------------------------
class DailyActivity(Base):
    __tablename__ = "daily_activity"

    user_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    activity_date: Mapped[date] = mapped_column(Date, primary_key=True)
    messages_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commands_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    voice_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reactions_given: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reactions_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_daily_activity_guild_date", "guild_id", "activity_date"),
    )


# ---------------------------------------------------------------------------
# Reaction roles
# ---------------------------------------------------------------------------
class ReactionRoleMapping(Base):
    __tablename__ = "reaction_role_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    channel_id: Mapped[str | None] = mapped_column(String(32), default=None)
    message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    emoji: Mapped[str] = mapped_column(String(100), nullable=False)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("guild_id", "message_id", "emoji", name="uq_reaction_role_mapping"),
        Index("ix_reaction_role_mappings_message", "message_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReactionRoleMapping msg={self.message_id} emoji={self.emoji!r} "
            f"role={self.role_id}>"
        )


class ReactionRoleLog(Base):
    """Append-only trail of reaction-role grants and revocations."""
    __tablename__ = "reaction_role_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False)
    role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    message_id: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    node_id: Mapped[str] = mapped_column(String(64), nullable=False, default="unknown")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_reaction_role_logs_guild_time", "guild_id", "created_at"),
    )
