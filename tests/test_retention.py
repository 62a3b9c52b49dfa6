"""
tests/test_retention.py — Retention Cleanup Tests
==================================================

Aged journal rows, role logs and daily rows are deleted; running totals
in ``user_guild_stats`` are untouched.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from unittest.mock import patch

from sqlalchemy import func, select

from beacon.database.models import (
    DailyActivity,
    Guild,
    PointsTransaction,
    ReactionRoleLog,
    User,
    UserGuildStats,
)
from beacon.services import retention_service
from beacon.services.retention_service import purge_old_records

NOW = datetime(2026, 6, 1, 12, 0, 0, tzinfo=UTC)


def _seed(db_session):
    db_session.add_all([User(id="u1"), Guild(id="g1")])
    db_session.flush()
    db_session.add(UserGuildStats(user_id="u1", guild_id="g1", total_points=500, level=6))
    for days_old in (400, 380, 10):
        db_session.add(PointsTransaction(
            user_id="u1", guild_id="g1", points_change=1, reason="Message",
            activity_type="message", node_id="n", created_at=NOW - timedelta(days=days_old),
        ))
        db_session.add(ReactionRoleLog(
            guild_id="g1", user_id="u1", role_id="r", message_id="m", action="added",
            node_id="n", created_at=NOW - timedelta(days=days_old),
        ))
    for days_old in (120, 91, 89, 0):
        db_session.add(DailyActivity(
            user_id="u1", guild_id="g1", activity_date=(NOW - timedelta(days=days_old)).date(),
        ))
    db_session.commit()


def _count(db_session, model) -> int:
    return db_session.scalar(select(func.count()).select_from(model))


class TestPurgeOldRecords:
    def test_deletes_only_aged_rows(self, db_engine, db_session):
        _seed(db_session)

        result = purge_old_records(db_engine, daily_activity_days=90, transaction_days=365, now=NOW)

        assert result == {
            "daily_activity_deleted": 2,
            "transactions_deleted": 2,
            "role_logs_deleted": 2,
        }
        db_session.expire_all()
        assert _count(db_session, PointsTransaction) == 1
        assert _count(db_session, ReactionRoleLog) == 1
        remaining = sorted(db_session.scalars(select(DailyActivity.activity_date)).all())
        assert remaining == [date(2026, 3, 4), date(2026, 6, 1)]

    def test_totals_survive(self, db_engine, db_session):
        _seed(db_session)
        purge_old_records(db_engine, now=NOW)

        db_session.expire_all()
        assert db_session.get(UserGuildStats, ("u1", "g1")).total_points == 500

    def test_batches_until_done(self, db_engine, db_session):
        _seed(db_session)
        with patch.object(retention_service, "BATCH_SIZE", 1):
            result = purge_old_records(db_engine, now=NOW)
        assert result["transactions_deleted"] == 2

    def test_nothing_to_delete(self, db_engine):
        assert purge_old_records(db_engine, now=NOW) == {
            "daily_activity_deleted": 0,
            "transactions_deleted": 0,
            "role_logs_deleted": 0,
        }
