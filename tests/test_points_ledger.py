"""
tests/test_points_ledger.py — PointsLedger Integration Tests
=============================================================

Exercises the award protocol, counters, cache-first reads, leaderboards
and streak bonuses against in-memory SQLite (shared conftest fixtures)
and fakeredis.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from beacon.constants import POINTS, leaderboard_key, user_stats_key
from beacon.database.models import (
    ActivityType,
    DailyActivity,
    PointsTransaction,
    UserGuildStats,
)
from beacon.engine.cache import CoordinationCache
from beacon.services.points_ledger import (
    PointsLedger,
    apply_activity_stats,
    apply_award,
    count_streak_days,
)

GUILD = "100"
USER = "1000"


# Helper to run async tests without pytest-asyncio
def run_async(coro):
    """Run an async coroutine in a new event loop."""
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def ledger(db_engine, cache) -> PointsLedger:
    return PointsLedger(db_engine, cache, "node-test")


def _stats_row(db_session, user_id: str = USER, guild_id: str = GUILD) -> UserGuildStats | None:
    db_session.expire_all()
    return db_session.get(UserGuildStats, (user_id, guild_id))


# ===========================================================================
# Award protocol
# ===========================================================================
class TestAwardPoints:
    def test_three_awards_accumulate(self, ledger, db_session):
        async def scenario():
            return [await ledger.award_points(USER, GUILD, 1, "Message", ActivityType.MESSAGE) for _ in range(3)]

        assert run_async(scenario()) == [True, True, True]

        row = _stats_row(db_session)
        assert row.total_points == 3
        assert row.level == 1
        count = db_session.scalar(select(func.count()).select_from(PointsTransaction))
        assert count == 3

    def test_level_is_written_with_total(self, ledger, db_session):
        assert run_async(ledger.award_points(USER, GUILD, 250, "Manual", ActivityType.MANUAL))

        row = _stats_row(db_session)
        assert row.total_points == 250
        assert row.level == 3

    def test_level_matches_total_for_every_row(self, ledger, db_session):
        async def scenario():
            for user, pts in [("a", 99), ("a", 1), ("b", 450), ("c", 5), ("b", 55)]:
                await ledger.award_points(user, GUILD, pts)

        run_async(scenario())
        rows = db_session.scalars(select(UserGuildStats)).all()
        assert len(rows) == 3
        for row in rows:
            assert row.level == row.total_points // POINTS.LEVEL_MULTIPLIER + 1

    def test_transaction_row_records_award(self, ledger, db_session):
        run_async(ledger.award_points(
            USER, GUILD, 7, "Reaction Given", ActivityType.REACTION_GIVEN, {"emoji": "🔥"},
        ))
        tx = db_session.scalars(select(PointsTransaction)).one()
        assert tx.points_change == 7
        assert tx.reason == "Reaction Given"
        assert tx.activity_type == "reaction_given"
        assert tx.node_id == "node-test"
        assert tx.metadata_ == {"emoji": "🔥"}

    def test_negative_award_floors_at_zero(self, ledger, db_session):
        async def scenario():
            await ledger.award_points(USER, GUILD, 30)
            await ledger.award_points(USER, GUILD, -50, "Correction", ActivityType.MANUAL)

        run_async(scenario())
        row = _stats_row(db_session)
        assert row.total_points == 0
        assert row.level == 1

    def test_empty_ids_rejected(self, ledger):
        with pytest.raises(ValueError):
            run_async(ledger.award_points("", GUILD, 1))
        with pytest.raises(ValueError):
            run_async(ledger.award_points(USER, "", 1))

    def test_unknown_activity_type_rejected(self, ledger):
        with pytest.raises(ValueError):
            run_async(ledger.award_points(USER, GUILD, 1, "x", "dancing"))

    def test_store_failure_returns_false_and_keeps_cache(self, ledger, cache, db_session):
        key = user_stats_key(GUILD, USER)

        async def scenario():
            await cache.set_json(key, {"user_id": USER, "guild_id": GUILD, "total_points": 9}, 300)
            with patch(
                "beacon.services.points_ledger.apply_award",
                side_effect=OperationalError("INSERT", {}, Exception("db down")),
            ):
                ok = await ledger.award_points(USER, GUILD, 5)
            return ok, await cache.get_json(key)

        ok, cached = run_async(scenario())
        assert ok is False
        assert cached["total_points"] == 9
        assert _stats_row(db_session) is None

    def test_apply_award_reports_previous_level(self, db_engine):
        first = apply_award(db_engine, USER, GUILD, 90, "Manual", "manual", None, "n")
        second = apply_award(db_engine, USER, GUILD, 20, "Manual", "manual", None, "n")

        assert (first.total_points, first.level, first.leveled_up) == (90, 1, False)
        assert (second.previous_level, second.level, second.leveled_up) == (1, 2, True)

    def test_level_up_callback(self, db_engine, cache):
        on_level_up = AsyncMock()
        ledger = PointsLedger(db_engine, cache, "node-test", on_level_up=on_level_up)

        async def scenario():
            await ledger.award_points(USER, GUILD, 60)
            await ledger.award_points(USER, GUILD, 60)
            await ledger.award_points(USER, GUILD, 10)
            await ledger.award_points(USER, GUILD, 200)

        run_async(scenario())
        assert [c.args for c in on_level_up.await_args_list] == [
            (USER, GUILD, 2, 1),
            (USER, GUILD, 4, 2),
        ]

    def test_level_up_callback_error_does_not_fail_award(self, db_engine, cache, db_session):
        on_level_up = AsyncMock(side_effect=RuntimeError("announce failed"))
        ledger = PointsLedger(db_engine, cache, "node-test", on_level_up=on_level_up)

        assert run_async(ledger.award_points(USER, GUILD, 150)) is True
        assert _stats_row(db_session).level == 2

    def test_records_points_metric(self, ledger):
        async def scenario():
            await ledger.award_points(USER, GUILD, 4)
            await ledger.award_points(USER, GUILD, 6)
            return await ledger.get_metrics("points_awarded", minutes=2)

        series = run_async(scenario())
        assert sum(p["value"] for p in series) == 10.0


# ===========================================================================
# Activity counters
# ===========================================================================
class TestActivityCounters:
    def test_message_increments_counters(self, ledger, db_session):
        run_async(ledger.award_points(USER, GUILD, 11, "Message", ActivityType.MESSAGE))

        row = _stats_row(db_session)
        assert row.messages_sent == 1
        daily = db_session.scalars(select(DailyActivity)).one()
        assert daily.messages_sent == 1
        assert daily.points_earned == 11
        assert daily.activity_date == datetime.now(UTC).date()

    def test_voice_counts_seconds_not_points(self, ledger, db_session):
        run_async(ledger.award_points(
            USER, GUILD, 5, "Voice Activity (Periodic)", ActivityType.VOICE, {"voice_seconds": 60},
        ))
        row = _stats_row(db_session)
        assert row.voice_time_seconds == 60
        assert row.messages_sent == 0

    def test_daily_row_accumulates(self, db_engine, db_session):
        day = date(2026, 2, 1)
        apply_activity_stats(db_engine, USER, GUILD, "message", 1, 3, today=day)
        apply_activity_stats(db_engine, USER, GUILD, "command", 1, 3, today=day)

        daily = db_session.scalars(select(DailyActivity)).one()
        assert (daily.messages_sent, daily.commands_used, daily.points_earned) == (1, 1, 6)

    def test_counter_failure_is_reported_not_raised(self, ledger):
        with patch(
            "beacon.services.points_ledger.apply_activity_stats",
            side_effect=OperationalError("UPDATE", {}, Exception("db down")),
        ):
            assert run_async(ledger.update_activity_stats(USER, GUILD, ActivityType.MESSAGE)) is False


# ===========================================================================
# Cache-first reads
# ===========================================================================
class TestUserStats:
    def test_unknown_user_gets_default(self, ledger):
        stats = run_async(ledger.get_user_stats(USER, GUILD))
        assert stats.total_points == 0
        assert stats.level == 1
        assert stats.rank is None

    def test_read_after_award_is_fresh(self, ledger):
        async def scenario():
            await ledger.award_points(USER, GUILD, 10)
            before = await ledger.get_user_stats(USER, GUILD)
            await ledger.award_points(USER, GUILD, 95)
            after = await ledger.get_user_stats(USER, GUILD)
            return before, after

        before, after = run_async(scenario())
        assert before.total_points == 10
        assert after.total_points == 105
        assert after.level == 2
        assert after.points_to_next == 95

    def test_populates_cache_with_ttl(self, ledger, redis_client):
        async def scenario():
            await ledger.award_points(USER, GUILD, 10)
            await ledger.get_user_stats(USER, GUILD)
            return await redis_client.ttl(user_stats_key(GUILD, USER))

        ttl = run_async(scenario())
        assert 0 < ttl <= 300

    def test_award_during_read_is_not_cached(self, ledger, cache):
        write_back = cache.set_json_if_current

        async def award_then_write_back(*args, **kwargs):
            # Another event's award commits between the store read and the cache write
            await ledger.award_points(USER, GUILD, 50)
            return await write_back(*args, **kwargs)

        async def scenario():
            await ledger.award_points(USER, GUILD, 10)
            cache.set_json_if_current = award_then_write_back
            racing = await ledger.get_user_stats(USER, GUILD)
            cache.set_json_if_current = write_back
            return racing, await ledger.get_user_stats(USER, GUILD), await cache.get_json(
                user_stats_key(GUILD, USER)
            )

        racing, after, cached = run_async(scenario())
        assert racing.total_points == 10
        assert after.total_points == 60
        assert cached["total_points"] == 60

    def test_rank_counts_users_ahead(self, ledger):
        async def scenario():
            await ledger.award_points("a", GUILD, 50)
            await ledger.award_points("b", GUILD, 80)
            await ledger.award_points("c", GUILD, 20)
            return [await ledger.get_user_stats(u, GUILD, use_cache=False) for u in ("a", "b", "c")]

        ranks = [s.rank for s in run_async(scenario())]
        assert ranks == [2, 1, 3]

    def test_cache_outage_falls_back_to_store(self, db_engine):
        broken = MagicMock(spec=CoordinationCache)
        broken.get_json = AsyncMock(side_effect=RedisConnectionError("down"))
        broken.set_json = AsyncMock(side_effect=RedisConnectionError("down"))
        broken.delete = AsyncMock(side_effect=RedisConnectionError("down"))
        broken.invalidate = AsyncMock(side_effect=RedisConnectionError("down"))
        broken.record_metric = AsyncMock(side_effect=RedisConnectionError("down"))
        ledger = PointsLedger(db_engine, broken, "node-test")

        async def scenario():
            assert await ledger.award_points(USER, GUILD, 12)
            return await ledger.get_user_stats(USER, GUILD)

        assert run_async(scenario()).total_points == 12

    def test_store_outage_returns_default(self, ledger):
        with patch(
            "beacon.services.points_ledger.load_user_stats",
            side_effect=OperationalError("SELECT", {}, Exception("db down")),
        ):
            stats = run_async(ledger.get_user_stats(USER, GUILD, use_cache=False))
        assert stats.total_points == 0


class TestLeaderboard:
    def test_ordering_and_filtering(self, ledger):
        async def scenario():
            await ledger.sync_user_profile("a", "alice", "Alice")
            await ledger.award_points("a", GUILD, 30)
            await ledger.award_points("b", GUILD, 90)
            await ledger.award_points("z", GUILD, 5)
            await ledger.award_points("z", GUILD, -5)
            await ledger.award_points("x", "other-guild", 500)
            return await ledger.get_leaderboard(GUILD, limit=10)

        board = run_async(scenario())
        assert [e.user_id for e in board] == ["b", "a"]
        assert [e.rank for e in board] == [1, 2]
        assert board[1].display_name == "Alice"

    def test_limit_is_clamped(self, ledger):
        async def scenario():
            for i in range(3):
                await ledger.award_points(f"u{i}", GUILD, 10 + i)
            low = await ledger.get_leaderboard(GUILD, limit=0)
            high = await ledger.get_leaderboard(GUILD, limit=1000)
            return low, high

        low, high = run_async(scenario())
        assert len(low) == 1
        assert len(high) == 3

    def test_cached_until_refreshed(self, ledger, cache):
        async def scenario():
            await ledger.award_points("a", GUILD, 30)
            first = await ledger.get_leaderboard(GUILD)
            await ledger.award_points("b", GUILD, 60)
            stale = await ledger.get_leaderboard(GUILD)
            removed = await ledger.refresh_leaderboards()
            fresh = await ledger.get_leaderboard(GUILD)
            cached = await cache.get_json(leaderboard_key(GUILD, 10))
            return first, stale, removed, fresh, cached

        first, stale, removed, fresh, cached = run_async(scenario())
        assert [e.user_id for e in first] == ["a"]
        assert [e.user_id for e in stale] == ["a"]
        assert removed == 1
        assert [e.user_id for e in fresh] == ["b", "a"]
        assert len(cached) == 2

    def test_empty_guild(self, ledger):
        assert run_async(ledger.get_leaderboard("nobody-here")) == []


# ===========================================================================
# First message & streaks
# ===========================================================================
class TestFirstMessage:
    def test_bonus_only_once(self, ledger):
        async def scenario():
            first = await ledger.score_message(USER, GUILD, "hello")
            second = await ledger.score_message(USER, GUILD, "hello again")
            return first, second

        (p1, m1), (p2, m2) = run_async(scenario())
        assert p1 == POINTS.MESSAGE_SENT + POINTS.FIRST_MESSAGE_DAY
        assert m1["first_message_of_day"] is True
        assert p2 == POINTS.MESSAGE_SENT
        assert "first_message_of_day" not in m2

    def test_cache_outage_means_no_bonus(self, db_engine):
        broken = MagicMock(spec=CoordinationCache)
        broken.check_first_message_today = AsyncMock(side_effect=RedisConnectionError("down"))
        ledger = PointsLedger(db_engine, broken, "node-test")

        points, _ = run_async(ledger.score_message(USER, GUILD, "hi"))
        assert points == POINTS.MESSAGE_SENT


class TestStreaks:
    TODAY = date(2026, 4, 20)

    def _seed_days(self, engine, days: int, end: date | None = None):
        end = end or self.TODAY
        for offset in range(days):
            apply_activity_stats(engine, USER, GUILD, "message", 1, 1, today=end - timedelta(days=offset))

    def test_count_stops_at_gap(self, db_engine):
        self._seed_days(db_engine, 3)
        apply_activity_stats(db_engine, USER, GUILD, "message", 1, 1, today=self.TODAY - timedelta(days=5))
        assert count_streak_days(db_engine, USER, GUILD, self.TODAY) == 3

    def test_no_activity_today_is_zero(self, db_engine):
        self._seed_days(db_engine, 4, end=self.TODAY - timedelta(days=1))
        assert count_streak_days(db_engine, USER, GUILD, self.TODAY) == 0

    def test_weekly_bonus_paid_once(self, ledger, db_session, db_engine):
        self._seed_days(db_engine, 7)

        async def scenario():
            first = await ledger.check_daily_streak(USER, GUILD, today=self.TODAY)
            second = await ledger.check_daily_streak(USER, GUILD, today=self.TODAY)
            return first, second

        assert run_async(scenario()) == (7, 7)

        bonuses = db_session.scalars(
            select(PointsTransaction).where(PointsTransaction.activity_type == "streak")
        ).all()
        assert [b.points_change for b in bonuses] == [POINTS.WEEKLY_BONUS]
        assert bonuses[0].reason == "Weekly Streak Bonus"
        assert _stats_row(db_session).last_weekly_bonus_on == self.TODAY

    def test_weekly_bonus_again_after_a_week(self, ledger, db_session, db_engine):
        self._seed_days(db_engine, 14)

        async def scenario():
            await ledger.check_daily_streak(USER, GUILD, today=self.TODAY - timedelta(days=7))
            await ledger.check_daily_streak(USER, GUILD, today=self.TODAY - timedelta(days=1))
            await ledger.check_daily_streak(USER, GUILD, today=self.TODAY)

        run_async(scenario())
        paid = db_session.scalar(
            select(func.count()).select_from(PointsTransaction)
            .where(PointsTransaction.reason == "Weekly Streak Bonus")
        )
        assert paid == 2

    def test_monthly_bonus(self, ledger, db_session, db_engine):
        self._seed_days(db_engine, 30)
        streak = run_async(ledger.check_daily_streak(USER, GUILD, today=self.TODAY))

        assert streak == 30
        reasons = sorted(db_session.scalars(
            select(PointsTransaction.reason).where(PointsTransaction.activity_type == "streak")
        ).all())
        assert reasons == ["Monthly Streak Bonus", "Weekly Streak Bonus"]

    def test_short_streak_pays_nothing(self, ledger, db_session, db_engine):
        self._seed_days(db_engine, 6)
        assert run_async(ledger.check_daily_streak(USER, GUILD, today=self.TODAY)) == 6
        assert _stats_row(db_session).total_points == 0


# ===========================================================================
# Insights & export
# ===========================================================================
class TestInsightsAndExport:
    def test_guild_insights(self, ledger):
        async def scenario():
            await ledger.award_points("a", GUILD, 10, "Message", ActivityType.MESSAGE)
            await ledger.award_points("a", GUILD, 10, "Message", ActivityType.MESSAGE)
            await ledger.award_points("b", GUILD, 40, "Voice", ActivityType.VOICE, {"voice_seconds": 480})
            return await ledger.get_guild_insights(GUILD, days=7)

        insights = run_async(scenario())
        assert insights["total_users"] == 2
        assert insights["total_points"] == 60
        assert insights["avg_points_per_user"] == 30
        assert insights["active_users"] == 2
        assert insights["top_activity"]["activity_type"] == "message"
        assert insights["growth_rate"] == 0

    def test_export_user_data(self, ledger):
        async def scenario():
            await ledger.award_points(USER, GUILD, 3, "Message", ActivityType.MESSAGE)
            await ledger.award_points(USER, GUILD, 2, "Reaction Received", ActivityType.REACTION_RECEIVED)
            return await ledger.export_user_data(USER, GUILD)

        data = run_async(scenario())
        assert set(data) == {"user_stats", "points_history", "voice_sessions", "daily_activity"}
        assert data["user_stats"][0]["total_points"] == 5
        assert len(data["points_history"]) == 2
        assert "metadata" in data["points_history"][0]
        assert data["voice_sessions"] == []
        assert len(data["daily_activity"]) == 1
