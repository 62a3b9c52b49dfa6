"""
beacon.services.retention_service — Age-based Cleanup
======================================================

Periodic cleanup of aged ``daily_activity`` and ``points_transactions``
rows.  ``user_guild_stats`` keeps running totals, so pruning the journal
never changes anyone's points.

**Deletion is batched** to avoid locking the table for too long: rows are
removed in chunks of ``BATCH_SIZE``, one transaction per chunk.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import Engine, delete, select

from beacon.database.engine import get_session
from beacon.database.models import DailyActivity, PointsTransaction, ReactionRoleLog

logger = logging.getLogger(__name__)

# How many rows to delete in each batch (avoids long-held row locks)
BATCH_SIZE = 5_000


def _purge_by_age(engine: Engine, cutoff: datetime, model) -> int:
    deleted = 0
    while True:
        with get_session(engine) as session:
            ids = session.scalars(
                select(model.id).where(model.created_at < cutoff).limit(BATCH_SIZE)
            ).all()
            if not ids:
                break
            result = session.execute(delete(model).where(model.id.in_(ids)))
            deleted += result.rowcount  # type: ignore[operator]
            logger.info(
                "Retention: deleted %d %s rows (total so far: %d)",
                result.rowcount, model.__tablename__, deleted,
            )
    return deleted


def purge_old_records(
    engine: Engine,
    daily_activity_days: int = 90,
    transaction_days: int = 365,
    now: datetime | None = None,
) -> dict[str, int]:
    """Delete daily rows and journal entries past their retention window.

    Returns ``{"daily_activity_deleted": N, "transactions_deleted": M,
    "role_logs_deleted": K}``.  Reaction-role logs follow the transaction
    window.
    """
    now = now or datetime.now(UTC)
    tx_cutoff = now - timedelta(days=transaction_days)
    day_cutoff = (now - timedelta(days=daily_activity_days)).date()

    transactions_deleted = _purge_by_age(engine, tx_cutoff, PointsTransaction)
    role_logs_deleted = _purge_by_age(engine, tx_cutoff, ReactionRoleLog)

    # daily_activity has a composite key, so it goes in one statement
    with get_session(engine) as session:
        result = session.execute(
            delete(DailyActivity).where(DailyActivity.activity_date < day_cutoff)
        )
        daily_deleted = result.rowcount or 0

    logger.info(
        "Retention cleanup complete — %d daily rows, %d transactions, %d role logs removed",
        daily_deleted, transactions_deleted, role_logs_deleted,
    )
    return {
        "daily_activity_deleted": daily_deleted,
        "transactions_deleted": transactions_deleted,
        "role_logs_deleted": role_logs_deleted,
    }
