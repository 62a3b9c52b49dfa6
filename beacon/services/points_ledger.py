"""
beacon.services.points_ledger — Points Award Protocol, Stats & Leaderboards
============================================================================

The only writer of ``user_guild_stats.total_points`` / ``level`` and of
``points_transactions``.  Everything else (voice tracker, reaction roles,
cogs) calls :meth:`PointsLedger.award_points`.

Award protocol (one PostgreSQL transaction):

1. ``INSERT … ON CONFLICT DO NOTHING`` placeholder ``users`` / ``guilds`` rows.
2. Append the ``points_transactions`` row.
3. ``INSERT … ON CONFLICT DO UPDATE SET total_points = total_points + :delta
   RETURNING total_points, level`` — the upsert takes the row lock, so
   concurrent awards from different nodes for the same user+guild serialise
   on it.  ``level`` is not touched by the upsert, so it still holds the
   level before this award.
4. Write ``level`` derived from the returned total.

Then, outside the transaction and best-effort: activity counters, the
``daily_activity`` row, cache invalidation (generation bump + delete),
metrics and the optional level-up callback.

The synchronous functions at module level take an
:class:`~sqlalchemy.Engine` and are run on a worker thread via
:func:`~beacon.database.engine.run_db`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError
from sqlalchemy import Date, bindparam, distinct, func, inspect, or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from beacon.constants import (
    MONTHLY_STREAK_DAYS,
    POINTS,
    WEEKLY_STREAK_DAYS,
    PointValues,
    leaderboard_key,
    level_for_points,
    points_to_next_level,
    user_stats_generation_key,
    user_stats_key,
)
from beacon.database.engine import get_session, run_db
from beacon.database.models import (
    ActivityType,
    DailyActivity,
    PointsTransaction,
    User,
    UserGuildStats,
    VoiceSession,
)
from beacon.engine.points import calculate_message_points, calculate_voice_points
from beacon.engine.stats import AwardResult, LeaderboardEntry, UserStats

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from beacon.engine.cache import CoordinationCache

logger = logging.getLogger(__name__)

USER_STATS_TTL_SECONDS = 300
LEADERBOARD_TTL_SECONDS = 120
MAX_LEADERBOARD_SIZE = 100
METRIC_PREFIX = "points_system."

# Infrastructure failures that degrade to safe defaults
STORE_ERRORS = (SQLAlchemyError, OSError)
CACHE_ERRORS = (RedisError, OSError)

# (user_id, guild_id, new_level, previous_level)
LevelUpCallback = Callable[[str, str, int, int], Awaitable[None]]

# activity type → user_guild_stats / daily_activity counter column
_COUNTER_COLUMNS: dict[ActivityType, str] = {
    ActivityType.MESSAGE: "messages_sent",
    ActivityType.COMMAND: "commands_used",
    ActivityType.REACTION_GIVEN: "reactions_given",
    ActivityType.REACTION_RECEIVED: "reactions_received",
    ActivityType.VOICE: "voice_time_seconds",
}


def _require_ids(**ids: str) -> None:
    for name, value in ids.items():
        if not value:
            raise ValueError(f"{name} must be a non-empty string")


# ---------------------------------------------------------------------------
# Store functions (synchronous — call through run_db)
# ---------------------------------------------------------------------------
_ENSURE_USER = text("""
    INSERT INTO users (id, username, display_name)
    VALUES (:user_id, 'Unknown', 'Unknown')
    ON CONFLICT (id) DO NOTHING
""")

_ENSURE_GUILD = text("""
    INSERT INTO guilds (id, name)
    VALUES (:guild_id, 'Unknown Guild')
    ON CONFLICT (id) DO NOTHING
""")

_ENSURE_STATS = text("""
    INSERT INTO user_guild_stats (
        user_id, guild_id, total_points, level,
        messages_sent, commands_used, reactions_given, reactions_received,
        voice_time_seconds
    )
    VALUES (:user_id, :guild_id, 0, 1, 0, 0, 0, 0, 0)
    ON CONFLICT (user_id, guild_id) DO NOTHING
""")

_ADD_POINTS = text("""
    INSERT INTO user_guild_stats (
        user_id, guild_id, total_points, level,
        messages_sent, commands_used, reactions_given, reactions_received,
        voice_time_seconds
    )
    VALUES (:user_id, :guild_id, :initial, 1, 0, 0, 0, 0, 0)
    ON CONFLICT (user_id, guild_id) DO UPDATE SET
        total_points = CASE
            WHEN user_guild_stats.total_points + :delta < 0 THEN 0
            ELSE user_guild_stats.total_points + :delta
        END,
        updated_at = CURRENT_TIMESTAMP
    RETURNING total_points, level
""")

_SET_LEVEL = text("""
    UPDATE user_guild_stats SET level = :level
    WHERE user_id = :user_id AND guild_id = :guild_id
""")

_UPSERT_DAILY = text("""
    INSERT INTO daily_activity (
        user_id, guild_id, activity_date,
        messages_sent, commands_used, voice_time_seconds,
        reactions_given, reactions_received, points_earned
    )
    VALUES (
        :user_id, :guild_id, :day,
        :messages_sent, :commands_used, :voice_time_seconds,
        :reactions_given, :reactions_received, :points_earned
    )
    ON CONFLICT (user_id, guild_id, activity_date) DO UPDATE SET
        messages_sent = daily_activity.messages_sent + excluded.messages_sent,
        commands_used = daily_activity.commands_used + excluded.commands_used,
        voice_time_seconds = daily_activity.voice_time_seconds + excluded.voice_time_seconds,
        reactions_given = daily_activity.reactions_given + excluded.reactions_given,
        reactions_received = daily_activity.reactions_received + excluded.reactions_received,
        points_earned = daily_activity.points_earned + excluded.points_earned,
        last_activity_at = CURRENT_TIMESTAMP
""").bindparams(bindparam("day", type_=Date))


def ensure_user_and_guild(session: Session, user_id: str, guild_id: str) -> None:
    """Placeholder profile rows so the stats foreign keys always resolve."""
    session.execute(_ENSURE_USER, {"user_id": user_id})
    session.execute(_ENSURE_GUILD, {"guild_id": guild_id})


def apply_award(
    engine: Engine,
    user_id: str,
    guild_id: str,
    points: int,
    reason: str,
    activity_type: str,
    metadata: Mapping[str, Any] | None,
    node_id: str,
    multiplier: int = POINTS.LEVEL_MULTIPLIER,
) -> AwardResult:
    """Durably apply one award.

    Either the transaction row and the new total/level all land, or
    nothing does.
    """
    with get_session(engine) as session:
        ensure_user_and_guild(session, user_id, guild_id)

        session.add(PointsTransaction(
            user_id=user_id,
            guild_id=guild_id,
            points_change=points,
            reason=reason,
            activity_type=activity_type,
            metadata_=dict(metadata) if metadata else {},
            node_id=node_id,
            created_at=datetime.now(UTC),
        ))
        session.flush()

        new_total, previous_level = session.execute(
            _ADD_POINTS,
            {
                "user_id": user_id,
                "guild_id": guild_id,
                "initial": max(points, 0),
                "delta": points,
            },
        ).one()
        new_level = level_for_points(new_total, multiplier)
        session.execute(
            _SET_LEVEL,
            {"level": new_level, "user_id": user_id, "guild_id": guild_id},
        )
    return AwardResult(total_points=new_total, level=new_level, previous_level=previous_level)


def apply_activity_stats(
    engine: Engine,
    user_id: str,
    guild_id: str,
    activity_type: str,
    amount: int = 1,
    points_earned: int = 0,
    today: date | None = None,
) -> None:
    """Bump the lifetime counter for *activity_type* and today's daily row."""
    column = _COUNTER_COLUMNS.get(ActivityType(activity_type))
    today = today or datetime.now(UTC).date()

    daily = {
        "messages_sent": 0,
        "commands_used": 0,
        "voice_time_seconds": 0,
        "reactions_given": 0,
        "reactions_received": 0,
    }
    if column is not None:
        daily[column] = amount

    with get_session(engine) as session:
        ensure_user_and_guild(session, user_id, guild_id)
        if column is not None and amount:
            session.execute(_ENSURE_STATS, {"user_id": user_id, "guild_id": guild_id})
            counter = getattr(UserGuildStats, column)
            session.execute(
                update(UserGuildStats)
                .where(
                    UserGuildStats.user_id == user_id,
                    UserGuildStats.guild_id == guild_id,
                )
                .values({column: counter + amount})
            )
        session.execute(_UPSERT_DAILY, {
            "user_id": user_id,
            "guild_id": guild_id,
            "day": today,
            "points_earned": points_earned,
            **daily,
        })


def load_user_stats(
    engine: Engine,
    user_id: str,
    guild_id: str,
    multiplier: int = POINTS.LEVEL_MULTIPLIER,
) -> UserStats:
    """Stats row plus rank; an all-zero record when the user has no history."""
    with get_session(engine) as session:
        row = session.get(UserGuildStats, (user_id, guild_id))
        if row is None:
            return UserStats.default(user_id, guild_id)

        rank = None
        if row.total_points > 0:
            ahead = session.scalar(
                select(func.count())
                .select_from(UserGuildStats)
                .where(
                    UserGuildStats.guild_id == guild_id,
                    UserGuildStats.total_points > row.total_points,
                )
            ) or 0
            rank = ahead + 1

        return UserStats(
            user_id=user_id,
            guild_id=guild_id,
            total_points=row.total_points,
            level=row.level,
            points_to_next=points_to_next_level(row.total_points, multiplier),
            rank=rank,
            messages_sent=row.messages_sent,
            commands_used=row.commands_used,
            reactions_given=row.reactions_given,
            reactions_received=row.reactions_received,
            voice_time_seconds=row.voice_time_seconds,
        )


def load_leaderboard(engine: Engine, guild_id: str, limit: int) -> list[LeaderboardEntry]:
    """Top *limit* users with a positive total, highest first."""
    with get_session(engine) as session:
        rows = session.execute(
            select(UserGuildStats, User.username, User.display_name)
            .outerjoin(User, User.id == UserGuildStats.user_id)
            .where(
                UserGuildStats.guild_id == guild_id,
                UserGuildStats.total_points > 0,
            )
            .order_by(UserGuildStats.total_points.desc())
            .limit(limit)
        ).all()

        return [
            LeaderboardEntry(
                rank=position,
                user_id=stats.user_id,
                username=username or "Unknown",
                display_name=display_name or username or "Unknown",
                total_points=stats.total_points,
                level=stats.level,
                messages_sent=stats.messages_sent,
                voice_minutes=stats.voice_time_seconds // 60,
            )
            for position, (stats, username, display_name) in enumerate(rows, start=1)
        ]


def count_streak_days(
    engine: Engine,
    user_id: str,
    guild_id: str,
    today: date,
    max_days: int = MONTHLY_STREAK_DAYS,
) -> int:
    """Consecutive UTC days with activity, ending *today*."""
    with get_session(engine) as session:
        days = session.scalars(
            select(distinct(DailyActivity.activity_date))
            .where(
                DailyActivity.user_id == user_id,
                DailyActivity.guild_id == guild_id,
                DailyActivity.activity_date <= today,
            )
            .order_by(DailyActivity.activity_date.desc())
            .limit(max_days)
        ).all()

    streak = 0
    expected = today
    for day in days:
        if day != expected:
            break
        streak += 1
        expected -= timedelta(days=1)
    return streak


def claim_streak_bonus(
    engine: Engine,
    user_id: str,
    guild_id: str,
    watermark: str,
    period_days: int,
    today: date,
) -> bool:
    """Atomically move a bonus watermark to *today*.

    Succeeds only if the bonus was never paid or was last paid at least
    *period_days* ago.  The conditional ``UPDATE`` makes the claim safe
    against two nodes checking the same streak at once.
    """
    column = getattr(UserGuildStats, watermark)
    with get_session(engine) as session:
        result = session.execute(
            update(UserGuildStats)
            .where(
                UserGuildStats.user_id == user_id,
                UserGuildStats.guild_id == guild_id,
                or_(column.is_(None), column <= today - timedelta(days=period_days)),
            )
            .values({watermark: today})
        )
        return result.rowcount == 1


def load_guild_insights(engine: Engine, guild_id: str, days: int, now: datetime) -> dict[str, Any]:
    """Activity summary for the last *days* days, with growth vs the window before."""
    cutoff = now - timedelta(days=days)
    previous_cutoff = now - timedelta(days=days * 2)

    def _window_totals(session: Session, start: datetime, end: datetime) -> tuple[int, int]:
        users, total = session.execute(
            select(
                func.count(distinct(PointsTransaction.user_id)),
                func.coalesce(func.sum(PointsTransaction.points_change), 0),
            ).where(
                PointsTransaction.guild_id == guild_id,
                PointsTransaction.created_at >= start,
                PointsTransaction.created_at < end,
            )
        ).one()
        return int(users or 0), int(total or 0)

    with get_session(engine) as session:
        total_users, total_points = _window_totals(session, cutoff, now)
        _, previous_points = _window_totals(session, previous_cutoff, cutoff)

        active_users = session.scalar(
            select(func.count(distinct(DailyActivity.user_id))).where(
                DailyActivity.guild_id == guild_id,
                DailyActivity.activity_date >= cutoff.date(),
            )
        ) or 0

        top = session.execute(
            select(
                PointsTransaction.activity_type,
                func.count().label("events"),
                func.sum(PointsTransaction.points_change).label("points"),
            )
            .where(
                PointsTransaction.guild_id == guild_id,
                PointsTransaction.created_at >= cutoff,
            )
            .group_by(PointsTransaction.activity_type)
            .order_by(func.count().desc())
            .limit(1)
        ).first()

    growth_rate = 0
    if previous_points > 0:
        growth_rate = round((total_points - previous_points) / previous_points * 100)

    return {
        "guild_id": guild_id,
        "days": days,
        "total_users": total_users,
        "total_points": total_points,
        "avg_points_per_user": round(total_points / total_users) if total_users else 0,
        "active_users": int(active_users),
        "top_activity": (
            {"activity_type": top.activity_type, "events": top.events, "points": int(top.points or 0)}
            if top is not None else None
        ),
        "growth_rate": growth_rate,
    }


def _row_to_dict(obj: Any) -> dict[str, Any]:
    """ORM row → JSON-friendly dict keyed by column name."""
    out: dict[str, Any] = {}
    for attr in inspect(obj).mapper.column_attrs:
        value = getattr(obj, attr.key)
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        out[attr.columns[0].name] = value
    return out


def export_user_data(engine: Engine, user_id: str, guild_id: str) -> dict[str, list[dict[str, Any]]]:
    """Everything stored about one user in one guild, as plain dicts."""
    with get_session(engine) as session:
        stats = session.get(UserGuildStats, (user_id, guild_id))
        history = session.scalars(
            select(PointsTransaction)
            .where(PointsTransaction.user_id == user_id, PointsTransaction.guild_id == guild_id)
            .order_by(PointsTransaction.created_at.desc(), PointsTransaction.id.desc())
        ).all()
        sessions = session.scalars(
            select(VoiceSession)
            .where(VoiceSession.user_id == user_id, VoiceSession.guild_id == guild_id)
            .order_by(VoiceSession.started_at.desc())
        ).all()
        daily = session.scalars(
            select(DailyActivity)
            .where(DailyActivity.user_id == user_id, DailyActivity.guild_id == guild_id)
            .order_by(DailyActivity.activity_date.desc())
        ).all()

        return {
            "user_stats": [_row_to_dict(stats)] if stats is not None else [],
            "points_history": [_row_to_dict(r) for r in history],
            "voice_sessions": [_row_to_dict(r) for r in sessions],
            "daily_activity": [_row_to_dict(r) for r in daily],
        }


def upsert_user_profile(
    engine: Engine,
    user_id: str,
    username: str,
    display_name: str | None = None,
    avatar_url: str | None = None,
) -> None:
    """Refresh the denormalised display fields for a user."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            user = User(id=user_id)
            session.add(user)
        user.username = username
        user.display_name = display_name or username
        user.avatar_url = avatar_url


# ---------------------------------------------------------------------------
# PointsLedger — the async façade used by cogs and other services
# ---------------------------------------------------------------------------
class PointsLedger:
    """Award points and read aggregates, cache-first.

    Parameters
    ----------
    engine:
        SQLAlchemy engine for the durable store.
    cache:
        Shared :class:`CoordinationCache`.
    node_id:
        Identity of this process; stamped on every transaction row.
    points:
        Point table.  Defaults to :data:`beacon.constants.POINTS`.
    on_level_up:
        Awaited after an award moves a user to a higher level.  Errors are
        logged and never fail the award.
    """

    def __init__(
        self,
        engine: Engine,
        cache: CoordinationCache,
        node_id: str,
        points: PointValues = POINTS,
        on_level_up: LevelUpCallback | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.node_id = node_id
        self.points = points
        self.on_level_up = on_level_up

    # -------------------------------------------------------------------
    # Award protocol
    # -------------------------------------------------------------------
    async def award_points(
        self,
        user_id: str,
        guild_id: str,
        points: int,
        reason: str = "Activity",
        activity_type: ActivityType | str = ActivityType.GENERAL,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """Award *points* and return whether the durable write succeeded.

        Raises :class:`ValueError` for empty ids or an unknown activity type.
        Infrastructure failures are logged and reported as ``False``.
        """
        _require_ids(user_id=user_id, guild_id=guild_id)
        activity = ActivityType(activity_type)
        metadata = dict(metadata or {})

        try:
            result = await run_db(
                apply_award,
                self.engine,
                user_id,
                guild_id,
                points,
                reason,
                activity.value,
                metadata,
                self.node_id,
                self.points.LEVEL_MULTIPLIER,
            )
        except STORE_ERRORS:
            logger.exception(
                "Award of %d points to %s in guild %s failed (%s)",
                points, user_id, guild_id, reason,
            )
            return False

        amount = int(metadata.get("voice_seconds", 0)) if activity is ActivityType.VOICE else 1
        await self.update_activity_stats(user_id, guild_id, activity, amount, points)
        await self.invalidate_user_cache(user_id, guild_id)
        await self.record_metric("points_awarded", points)

        logger.info(
            "Awarded %d points to %s in guild %s for %s (type=%s, total=%d, level=%d)",
            points, user_id, guild_id, reason, activity.value, result.total_points, result.level,
        )
        if result.leveled_up:
            await self._handle_level_up(user_id, guild_id, result)
        return True

    async def _handle_level_up(self, user_id: str, guild_id: str, result: AwardResult) -> None:
        logger.info(
            "User %s in guild %s leveled up: %d → %d",
            user_id, guild_id, result.previous_level, result.level,
        )
        await self.record_metric("level_ups")
        if self.on_level_up is None:
            return
        try:
            await self.on_level_up(user_id, guild_id, result.level, result.previous_level)
        except Exception:
            logger.exception("Level-up handler failed for %s in guild %s", user_id, guild_id)

    async def update_activity_stats(
        self,
        user_id: str,
        guild_id: str,
        activity_type: ActivityType | str,
        amount: int = 1,
        points_earned: int = 0,
    ) -> bool:
        """Best-effort counter update; failures are logged, never raised."""
        _require_ids(user_id=user_id, guild_id=guild_id)
        activity = ActivityType(activity_type)
        try:
            await run_db(
                apply_activity_stats,
                self.engine,
                user_id,
                guild_id,
                activity.value,
                amount,
                points_earned,
            )
        except STORE_ERRORS:
            logger.exception("Activity stats update failed for %s in guild %s", user_id, guild_id)
            return False
        return True

    async def invalidate_user_cache(self, user_id: str, guild_id: str) -> None:
        try:
            await self.cache.invalidate(
                user_stats_generation_key(guild_id, user_id), user_stats_key(guild_id, user_id),
            )
        except CACHE_ERRORS:
            logger.warning("Could not invalidate stats cache for %s in guild %s", user_id, guild_id)

    # -------------------------------------------------------------------
    # Point math
    # -------------------------------------------------------------------
    async def is_first_message_today(self, user_id: str, guild_id: str) -> bool:
        """Claim today's first-message flag.  Cache failure → ``False``."""
        try:
            return await self.cache.check_first_message_today(user_id, guild_id)
        except CACHE_ERRORS:
            logger.warning("First-message check unavailable for %s in guild %s", user_id, guild_id)
            return False

    async def score_message(
        self, user_id: str, guild_id: str, content: str
    ) -> tuple[int, dict[str, Any]]:
        """Points and bonus metadata for a message, consulting the daily flag."""
        _require_ids(user_id=user_id, guild_id=guild_id)
        first_today = await self.is_first_message_today(user_id, guild_id)
        return calculate_message_points(content, first_today, self.points)

    def calculate_voice_points(self, seconds: float) -> tuple[int, dict[str, Any]]:
        return calculate_voice_points(seconds, self.points)

    # -------------------------------------------------------------------
    # Reads (cache-first)
    # -------------------------------------------------------------------
    async def get_user_stats(self, user_id: str, guild_id: str, use_cache: bool = True) -> UserStats:
        """Stats for one user; never raises for infrastructure failures.

        On a miss the cache generation is sampled *before* the store read,
        and the result is only cached if no award invalidated the key in
        between.
        """
        _require_ids(user_id=user_id, guild_id=guild_id)
        key = user_stats_key(guild_id, user_id)
        gen_key = user_stats_generation_key(guild_id, user_id)
        generation: str | None = None

        if use_cache:
            try:
                cached = await self.cache.get_json(key)
                if cached is not None:
                    return UserStats.from_dict(cached)
                generation = await self.cache.get_generation(gen_key)
            except CACHE_ERRORS:
                logger.warning("Stats cache read failed for %s", key)

        try:
            stats = await run_db(
                load_user_stats, self.engine, user_id, guild_id, self.points.LEVEL_MULTIPLIER,
            )
        except STORE_ERRORS:
            logger.exception("Stats read failed for %s in guild %s", user_id, guild_id)
            return UserStats.default(user_id, guild_id)

        if generation is not None:
            try:
                stored = await self.cache.set_json_if_current(
                    key, stats.to_dict(), USER_STATS_TTL_SECONDS, gen_key, generation,
                )
                if not stored:
                    logger.debug("Skipped stale stats write-back for %s", key)
            except CACHE_ERRORS:
                logger.warning("Stats cache write failed for %s", key)
        return stats

    async def get_leaderboard(
        self, guild_id: str, limit: int = 10, use_cache: bool = True
    ) -> list[LeaderboardEntry]:
        """Top users by points; ``[]`` on failure or an inactive guild."""
        _require_ids(guild_id=guild_id)
        limit = max(1, min(limit, MAX_LEADERBOARD_SIZE))
        key = leaderboard_key(guild_id, limit)

        if use_cache:
            try:
                cached = await self.cache.get_json(key)
                if cached is not None:
                    return [LeaderboardEntry.from_dict(row) for row in cached]
            except CACHE_ERRORS:
                logger.warning("Leaderboard cache read failed for %s", key)

        try:
            board = await run_db(load_leaderboard, self.engine, guild_id, limit)
        except STORE_ERRORS:
            logger.exception("Leaderboard read failed for guild %s", guild_id)
            return []

        if use_cache:
            try:
                await self.cache.set_json(key, [e.to_dict() for e in board], LEADERBOARD_TTL_SECONDS)
            except CACHE_ERRORS:
                logger.warning("Leaderboard cache write failed for %s", key)
        return board

    async def refresh_leaderboards(self) -> int:
        """Drop every cached leaderboard.  Returns the number of keys removed."""
        try:
            keys = await self.cache.scan_keys("leaderboard:*")
            return await self.cache.delete(*keys)
        except CACHE_ERRORS:
            logger.warning("Leaderboard refresh failed")
            return 0

    # -------------------------------------------------------------------
    # Streaks
    # -------------------------------------------------------------------
    async def check_daily_streak(self, user_id: str, guild_id: str, today: date | None = None) -> int:
        """Pay weekly/monthly streak bonuses that are due; return the streak length.

        Each bonus is guarded by a watermark on ``user_guild_stats``, so a
        7-day streak pays ``WEEKLY_BONUS`` once and again only after
        another full week.
        """
        _require_ids(user_id=user_id, guild_id=guild_id)
        today = today or datetime.now(UTC).date()

        try:
            streak = await run_db(count_streak_days, self.engine, user_id, guild_id, today)
        except STORE_ERRORS:
            logger.exception("Streak check failed for %s in guild %s", user_id, guild_id)
            return 0

        bonuses = (
            (WEEKLY_STREAK_DAYS, "last_weekly_bonus_on", self.points.WEEKLY_BONUS, "Weekly Streak Bonus"),
            (MONTHLY_STREAK_DAYS, "last_monthly_bonus_on", self.points.MONTHLY_BONUS, "Monthly Streak Bonus"),
        )
        for threshold, watermark, bonus, reason in bonuses:
            if streak < threshold:
                continue
            try:
                claimed = await run_db(
                    claim_streak_bonus, self.engine, user_id, guild_id, watermark, threshold, today,
                )
            except STORE_ERRORS:
                logger.exception("Could not claim %s for %s", reason, user_id)
                continue
            if claimed:
                await self.award_points(
                    user_id, guild_id, bonus, reason, ActivityType.STREAK, {"streak_days": streak},
                )
        return streak

    # -------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------
    async def record_metric(self, name: str, value: float = 1.0) -> None:
        try:
            await self.cache.record_metric(f"{METRIC_PREFIX}{name}", value)
        except CACHE_ERRORS:
            logger.debug("Metric %s dropped", name)

    async def get_metrics(self, name: str, minutes: int = 60) -> list[dict[str, float]]:
        try:
            return await self.cache.get_metrics(f"{METRIC_PREFIX}{name}", minutes)
        except CACHE_ERRORS:
            logger.warning("Metric read failed for %s", name)
            return []

    # -------------------------------------------------------------------
    # Insights & export
    # -------------------------------------------------------------------
    async def get_guild_insights(self, guild_id: str, days: int = 7) -> dict[str, Any] | None:
        _require_ids(guild_id=guild_id)
        try:
            return await run_db(load_guild_insights, self.engine, guild_id, days, datetime.now(UTC))
        except STORE_ERRORS:
            logger.exception("Insights query failed for guild %s", guild_id)
            return None

    async def export_user_data(self, user_id: str, guild_id: str) -> dict[str, list[dict[str, Any]]]:
        _require_ids(user_id=user_id, guild_id=guild_id)
        return await run_db(export_user_data, self.engine, user_id, guild_id)

    async def sync_user_profile(
        self,
        user_id: str,
        username: str,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> None:
        _require_ids(user_id=user_id)
        try:
            await run_db(upsert_user_profile, self.engine, user_id, username, display_name, avatar_url)
        except STORE_ERRORS:
            logger.warning("Profile sync failed for %s", user_id)
