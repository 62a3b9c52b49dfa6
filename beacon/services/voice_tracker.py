"""
beacon.services.voice_tracker — Voice Session State Machine & Accrual
======================================================================

Per user+guild the tracker is either IDLE (no entry in the registry) or
IN_VOICE (one :class:`ActiveVoiceSession`).

- ``join``   — closes any stale session first, opens a ``voice_sessions``
  row and starts the accrual task.
- ``leave``  — cancels the accrual task, pays the partial last minute and
  closes the row.
- ``switch_channel`` / ``set_muted`` / ``set_deafened`` — metadata only;
  timing and accrual are channel independent.

Each session owns its accrual :class:`asyncio.Task`.  Every path that ends
a session (leave event, pre-emption by a new join, shutdown sweep, stale
sweep, reconnect reconciliation) goes through :meth:`VoiceTracker.leave`,
which removes the session from the registry and cancels the task before
any await.

Every ``accrual_seconds`` the task awards ``VOICE_MINUTE`` points through
the ledger.  The minute is claimed on the session *before* the award is
awaited, so a leave racing with a tick never pays the same minute twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from beacon.database.engine import get_session, run_db
from beacon.database.models import ActivityType, VoiceSession

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from beacon.services.points_ledger import PointsLedger

logger = logging.getLogger(__name__)

PERIODIC_REASON = "Voice Activity (Periodic)"
FINAL_REASON = "Voice Activity"
DEFAULT_ACCRUAL_SECONDS = 60
DEFAULT_STALE_HOURS = 6

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# In-memory state
# ---------------------------------------------------------------------------
@dataclass(eq=False)
class ActiveVoiceSession:
    """Live voice presence for one user in one guild on this node."""

    user_id: str
    guild_id: str
    channel_id: str
    started_at: datetime
    session_id: int | None = None
    is_muted: bool = False
    is_deafened: bool = False
    ticks: int = 0
    points_awarded: int = 0
    last_accrual_at: datetime | None = None
    _accrual: asyncio.Task | None = field(default=None, repr=False)

    @property
    def key(self) -> tuple[str, str]:
        return self.user_id, self.guild_id

    @property
    def accrual_running(self) -> bool:
        return self._accrual is not None and not self._accrual.done()

    def attach_accrual(self, task: asyncio.Task) -> None:
        self.stop_accrual()
        self._accrual = task

    def stop_accrual(self) -> bool:
        """Cancel the accrual task.  Safe to call any number of times.

        Returns True only for the call that actually cancelled it.
        """
        task, self._accrual = self._accrual, None
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def elapsed_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.started_at).total_seconds())


class VoiceSessionRegistry:
    """Owned container of this node's live sessions, keyed by (user, guild)."""

    def __init__(self) -> None:
        self._sessions: dict[tuple[str, str], ActiveVoiceSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._sessions

    def get(self, user_id: str, guild_id: str) -> ActiveVoiceSession | None:
        return self._sessions.get((user_id, guild_id))

    def add(self, session: ActiveVoiceSession) -> None:
        if session.key in self._sessions:
            raise ValueError(f"session already registered for {session.key}")
        self._sessions[session.key] = session

    def remove(self, user_id: str, guild_id: str) -> ActiveVoiceSession | None:
        return self._sessions.pop((user_id, guild_id), None)

    def is_current(self, session: ActiveVoiceSession) -> bool:
        """True while *session* (this exact object) is still registered."""
        return self._sessions.get(session.key) is session

    def all(self) -> list[ActiveVoiceSession]:
        return list(self._sessions.values())

    def for_guild(self, guild_id: str) -> list[ActiveVoiceSession]:
        return [s for s in self._sessions.values() if s.guild_id == guild_id]


# ---------------------------------------------------------------------------
# Store functions (synchronous — call through run_db)
# ---------------------------------------------------------------------------
def _close_row(row: VoiceSession, ended_at: datetime) -> None:
    row.ended_at = ended_at
    row.duration_seconds = max(0, int((ended_at - _as_utc(row.started_at)).total_seconds()))


def open_voice_session(
    engine: Engine,
    user_id: str,
    guild_id: str,
    channel_id: str,
    node_id: str,
    started_at: datetime,
    is_muted: bool = False,
    is_deafened: bool = False,
) -> int:
    """Close any open row for user+guild, then insert the new one.

    Both steps share one transaction, so at most one open row exists.
    """
    with get_session(engine) as session:
        stale = session.scalars(
            select(VoiceSession).where(
                VoiceSession.user_id == user_id,
                VoiceSession.guild_id == guild_id,
                VoiceSession.ended_at.is_(None),
            )
        ).all()
        for row in stale:
            _close_row(row, started_at)
            logger.info("Closed stale open voice session %d for %s", row.id, user_id)
        session.flush()

        row = VoiceSession(
            user_id=user_id,
            guild_id=guild_id,
            channel_id=channel_id,
            node_id=node_id,
            started_at=started_at,
            is_muted=is_muted,
            is_deafened=is_deafened,
        )
        session.add(row)
        session.flush()
        return row.id


def update_voice_session(engine: Engine, session_id: int, values: dict[str, Any]) -> None:
    with get_session(engine) as session:
        session.execute(
            update(VoiceSession).where(VoiceSession.id == session_id).values(**values)
        )


def close_voice_session(
    engine: Engine,
    session_id: int,
    ended_at: datetime,
    duration_seconds: int,
    points_awarded: int,
) -> None:
    with get_session(engine) as session:
        session.execute(
            update(VoiceSession)
            .where(VoiceSession.id == session_id, VoiceSession.ended_at.is_(None))
            .values(
                ended_at=ended_at,
                duration_seconds=duration_seconds,
                points_awarded=points_awarded,
            )
        )


def close_open_sessions(engine: Engine, user_id: str, guild_id: str, ended_at: datetime) -> int:
    """Close whatever is open for user+guild without awarding anything."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(VoiceSession).where(
                VoiceSession.user_id == user_id,
                VoiceSession.guild_id == guild_id,
                VoiceSession.ended_at.is_(None),
            )
        ).all()
        for row in rows:
            _close_row(row, ended_at)
        return len(rows)


def close_orphaned_sessions(
    engine: Engine,
    cutoff: datetime,
    live_node_ids: Iterable[str],
    node_id: str,
    tracked_ids: Iterable[int],
) -> int:
    """Close open rows older than *cutoff* that no live process is tracking.

    A row is orphaned when its node is gone, or when it claims this node
    but has no in-memory session.  The end time is the last paid accrual
    (or the start), so no extra points are ever inferred.
    """
    live = set(live_node_ids)
    tracked = set(tracked_ids)
    closed = 0
    with get_session(engine) as session:
        rows = session.scalars(
            select(VoiceSession).where(
                VoiceSession.ended_at.is_(None),
                VoiceSession.started_at < cutoff,
            )
        ).all()
        for row in rows:
            if row.node_id == node_id:
                if row.id in tracked:
                    continue
            elif row.node_id in live:
                continue
            _close_row(row, _as_utc(row.last_accrual_at or row.started_at))
            closed += 1
    return closed


# ---------------------------------------------------------------------------
# VoiceTracker
# ---------------------------------------------------------------------------
class VoiceTracker:
    """Voice presence state machine with periodic point accrual.

    Parameters
    ----------
    ledger:
        Where points go.  The tracker never touches totals itself.
    engine:
        Store for ``voice_sessions`` rows.
    node_id:
        Stamped on every row so orphan sweeps can tell owners apart.
    accrual_seconds:
        Period of the accrual task.
    clock:
        Returns the current UTC time.  Injected by tests.
    """

    def __init__(
        self,
        ledger: PointsLedger,
        engine: Engine,
        node_id: str,
        accrual_seconds: float = DEFAULT_ACCRUAL_SECONDS,
        clock: Clock = utc_now,
        registry: VoiceSessionRegistry | None = None,
    ) -> None:
        self.ledger = ledger
        self.engine = engine
        self.node_id = node_id
        self.accrual_seconds = accrual_seconds
        self.clock = clock
        self.registry = registry or VoiceSessionRegistry()

    @property
    def points(self):
        return self.ledger.points

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    async def join(
        self,
        user_id: str,
        guild_id: str,
        channel_id: str,
        is_muted: bool = False,
        is_deafened: bool = False,
    ) -> ActiveVoiceSession:
        """IDLE → IN_VOICE.  A session already open for the user is ended first."""
        if not (user_id and guild_id and channel_id):
            raise ValueError("user_id, guild_id and channel_id are required")

        if self.registry.get(user_id, guild_id) is not None:
            logger.info("Join for %s in guild %s while already in voice — ending old session", user_id, guild_id)
            await self.leave(user_id, guild_id, award_final=True)

        now = self.clock()
        session = ActiveVoiceSession(
            user_id=user_id,
            guild_id=guild_id,
            channel_id=channel_id,
            started_at=now,
            is_muted=is_muted,
            is_deafened=is_deafened,
        )
        # Registered before the first await so a racing leave sees it
        self.registry.add(session)
        session.attach_accrual(asyncio.create_task(
            self._accrual_loop(session), name=f"voice-accrual:{user_id}:{guild_id}",
        ))

        try:
            session_id = await run_db(
                open_voice_session,
                self.engine, user_id, guild_id, channel_id, self.node_id, now,
                is_muted, is_deafened,
            )
        except (SQLAlchemyError, OSError):
            logger.exception("Could not persist voice session for %s in guild %s", user_id, guild_id)
        else:
            if self.registry.is_current(session):
                session.session_id = session_id
            else:
                # Left while the row was being written
                await self._persist_close(session_id, now, 0, 0)

        logger.info("%s joined voice %s in guild %s", user_id, channel_id, guild_id)
        return session

    async def leave(self, user_id: str, guild_id: str, award_final: bool = True) -> int:
        """IN_VOICE → IDLE.  Returns the points paid for the partial last minute."""
        session = self.registry.remove(user_id, guild_id)
        if session is None:
            try:
                closed = await run_db(close_open_sessions, self.engine, user_id, guild_id, self.clock())
            except (SQLAlchemyError, OSError):
                logger.exception("Could not close untracked voice sessions for %s", user_id)
            else:
                if closed:
                    logger.info("Closed %d untracked voice session(s) for %s", closed, user_id)
            return 0

        session.stop_accrual()
        now = self.clock()
        elapsed = session.elapsed_seconds(now)

        final_points = 0
        if award_final:
            remaining = max(0.0, elapsed - session.ticks * self.accrual_seconds)
            final_points, metadata = self.ledger.calculate_voice_points(remaining)
            metadata["channel_id"] = session.channel_id
            if final_points > 0:
                paid = await self.ledger.award_points(
                    user_id, guild_id, final_points, FINAL_REASON, ActivityType.VOICE, metadata,
                )
                if paid:
                    session.points_awarded += final_points
                else:
                    final_points = 0
            elif remaining >= 1:
                await self.ledger.update_activity_stats(
                    user_id, guild_id, ActivityType.VOICE, int(remaining),
                )

        if session.session_id is not None:
            await self._persist_close(session.session_id, now, int(elapsed), session.points_awarded)

        logger.info(
            "%s left voice in guild %s after %ds (%d points this session)",
            user_id, guild_id, int(elapsed), session.points_awarded,
        )
        return final_points

    async def switch_channel(self, user_id: str, guild_id: str, channel_id: str) -> bool:
        """Move the live session to *channel_id*.  False if not in voice."""
        session = self.registry.get(user_id, guild_id)
        if session is None:
            return False
        old = session.channel_id
        session.channel_id = channel_id
        await self._persist_update(session, channel_id=channel_id)
        logger.debug("%s moved voice %s → %s in guild %s", user_id, old, channel_id, guild_id)
        return True

    async def set_muted(self, user_id: str, guild_id: str, muted: bool) -> bool:
        session = self.registry.get(user_id, guild_id)
        if session is None:
            return False
        session.is_muted = muted
        await self._persist_update(session, is_muted=muted)
        return True

    async def set_deafened(self, user_id: str, guild_id: str, deafened: bool) -> bool:
        session = self.registry.get(user_id, guild_id)
        if session is None:
            return False
        session.is_deafened = deafened
        await self._persist_update(session, is_deafened=deafened)
        return True

    # -------------------------------------------------------------------
    # Accrual
    # -------------------------------------------------------------------
    async def _accrual_loop(self, session: ActiveVoiceSession) -> None:
        while self.registry.is_current(session):
            await asyncio.sleep(self.accrual_seconds)
            if not self.registry.is_current(session):
                return
            try:
                await self.accrue(session)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Voice accrual tick failed for %s", session.user_id)

    async def accrue(self, session: ActiveVoiceSession) -> bool:
        """Pay one periodic minute for *session*.  Returns whether points landed."""
        if not self.registry.is_current(session):
            return False

        session.ticks += 1
        amount = self.points.VOICE_MINUTE
        paid = await self.ledger.award_points(
            session.user_id,
            session.guild_id,
            amount,
            PERIODIC_REASON,
            ActivityType.VOICE,
            {
                "voice_seconds": int(self.accrual_seconds),
                "channel_id": session.channel_id,
                "periodic": True,
            },
        )
        if not paid or not self.registry.is_current(session):
            return paid

        now = self.clock()
        session.points_awarded += amount
        session.last_accrual_at = now
        await self._persist_update(session, last_accrual_at=now, points_awarded=session.points_awarded)
        return True

    # -------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------
    async def force_end_all_sessions(self, reason: str = "shutdown") -> int:
        """End every live session with a final award.  Used on shutdown."""
        sessions = self.registry.all()
        if not sessions:
            return 0
        logger.info("Force-ending %d voice session(s): %s", len(sessions), reason)
        ended = 0
        for session in sessions:
            try:
                await self.leave(session.user_id, session.guild_id, award_final=True)
                ended += 1
            except Exception:
                logger.exception("Failed to end voice session for %s", session.user_id)
        return ended

    async def end_stale_sessions(self, max_age_hours: float = DEFAULT_STALE_HOURS) -> int:
        """End live sessions on this node that have run for too long."""
        cutoff = self.clock() - timedelta(hours=max_age_hours)
        ended = 0
        for session in self.registry.all():
            if session.started_at < cutoff:
                await self.leave(session.user_id, session.guild_id, award_final=True)
                ended += 1
        if ended:
            logger.info("Ended %d stale in-memory voice session(s)", ended)
        return ended

    async def end_absent_sessions(
        self,
        guild_ids: Collection[str],
        present: Collection[tuple[str, str]],
    ) -> int:
        """End live sessions in *guild_ids* whose ``(user_id, guild_id)`` is not in *present*.

        Run after a gateway (re)connect: leave events missed while
        disconnected would otherwise keep the accrual task paying.
        """
        ended = 0
        for session in self.registry.all():
            if session.guild_id not in guild_ids or session.key in present:
                continue
            try:
                await self.leave(session.user_id, session.guild_id, award_final=True)
                ended += 1
            except Exception:
                logger.exception("Failed to end absent voice session for %s", session.user_id)
        if ended:
            logger.info("Ended %d voice session(s) for members no longer in voice", ended)
        return ended

    async def close_stale_sessions(
        self,
        live_node_ids: Iterable[str],
        max_age_hours: float = DEFAULT_STALE_HOURS,
    ) -> int:
        """Close stored sessions orphaned by a node that died without shutdown."""
        cutoff = self.clock() - timedelta(hours=max_age_hours)
        tracked = [s.session_id for s in self.registry.all() if s.session_id is not None]
        try:
            closed = await run_db(
                close_orphaned_sessions, self.engine, cutoff, list(live_node_ids), self.node_id, tracked,
            )
        except (SQLAlchemyError, OSError):
            logger.exception("Orphaned voice session sweep failed")
            return 0
        if closed:
            logger.info("Closed %d orphaned voice session(s)", closed)
        return closed

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def is_in_voice(self, user_id: str, guild_id: str) -> bool:
        return (user_id, guild_id) in self.registry

    def get_session(self, user_id: str, guild_id: str) -> ActiveVoiceSession | None:
        return self.registry.get(user_id, guild_id)

    def active_session_count(self, guild_id: str | None = None) -> int:
        if guild_id is None:
            return len(self.registry)
        return len(self.registry.for_guild(guild_id))

    def active_sessions(self, guild_id: str) -> list[dict[str, Any]]:
        now = self.clock()
        out = []
        for session in self.registry.for_guild(guild_id):
            elapsed = session.elapsed_seconds(now)
            estimated, _ = self.ledger.calculate_voice_points(elapsed)
            out.append({
                "user_id": session.user_id,
                "channel_id": session.channel_id,
                "started_at": session.started_at.isoformat(),
                "duration_seconds": int(elapsed),
                "estimated_points": estimated,
                "points_awarded": session.points_awarded,
                "is_muted": session.is_muted,
                "is_deafened": session.is_deafened,
            })
        return out

    # -------------------------------------------------------------------
    # Persistence helpers (best-effort)
    # -------------------------------------------------------------------
    async def _persist_update(self, session: ActiveVoiceSession, **values: Any) -> None:
        if session.session_id is None:
            return
        try:
            await run_db(update_voice_session, self.engine, session.session_id, values)
        except (SQLAlchemyError, OSError):
            logger.warning("Could not update voice session %d", session.session_id)

    async def _persist_close(self, session_id: int, ended_at: datetime, duration: int, points: int) -> None:
        try:
            await run_db(close_voice_session, self.engine, session_id, ended_at, duration, points)
        except (SQLAlchemyError, OSError):
            logger.exception("Could not close voice session %d", session_id)
