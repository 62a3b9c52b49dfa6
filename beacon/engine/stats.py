"""
beacon.engine.stats — Read models for stats and leaderboards
=============================================================

Plain dataclasses returned by the points ledger.  They round-trip through
JSON so they can live in the Redis aggregate cache.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any

from beacon.constants import POINTS

__all__ = ["AwardResult", "UserStats", "LeaderboardEntry"]


@dataclass(frozen=True, slots=True)
class AwardResult:
    """Outcome of one durable award."""

    total_points: int
    level: int
    previous_level: int

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level


@dataclass(slots=True)
class UserStats:
    """Aggregate stats for one user in one guild."""

    user_id: str
    guild_id: str
    total_points: int = 0
    level: int = 1
    points_to_next: int = POINTS.LEVEL_MULTIPLIER
    rank: int | None = None  # None → unranked (no points yet)
    messages_sent: int = 0
    commands_used: int = 0
    reactions_given: int = 0
    reactions_received: int = 0
    voice_time_seconds: int = 0

    @classmethod
    def default(cls, user_id: str, guild_id: str) -> UserStats:
        """All-zero record for users with no history."""
        return cls(user_id=user_id, guild_id=guild_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserStats:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(slots=True)
class LeaderboardEntry:
    """One leaderboard row."""

    rank: int
    user_id: str
    username: str
    display_name: str
    total_points: int
    level: int
    messages_sent: int = 0
    voice_minutes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LeaderboardEntry:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})
