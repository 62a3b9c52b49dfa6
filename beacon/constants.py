"""
beacon.constants — Shared Constants & Helpers
==============================================

Single source of truth for point values, the leveling formula and the
Redis key layout.  Import from here instead of duplicating in cogs and
services.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date


# ---------------------------------------------------------------------------
# Point values — fixed, not a rules engine
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PointValues:
    """Points granted per activity.

    Services accept an instance so tests can pin values, but production
    always runs on :data:`POINTS`.
    """

    MESSAGE_SENT: int = 1
    REACTION_GIVEN: int = 1
    REACTION_RECEIVED: int = 2
    VOICE_MINUTE: int = 5
    COMMAND_USED: int = 3
    FIRST_MESSAGE_DAY: int = 10
    LONG_MESSAGE: int = 5
    EMOJI_USED: int = 1
    LEVEL_MULTIPLIER: int = 100
    WEEKLY_BONUS: int = 200
    MONTHLY_BONUS: int = 1000


POINTS = PointValues()

# Messages longer than this earn LONG_MESSAGE on top of MESSAGE_SENT
LONG_MESSAGE_THRESHOLD = 100

# Streak thresholds (consecutive UTC days with activity)
WEEKLY_STREAK_DAYS = 7
MONTHLY_STREAK_DAYS = 30


# ---------------------------------------------------------------------------
# Leveling formula — THE single canonical implementation
# ---------------------------------------------------------------------------
def level_for_points(total_points: int, multiplier: int = POINTS.LEVEL_MULTIPLIER) -> int:
    """Level reached with *total_points*.

    Linear curve::

        level = floor(total_points / multiplier) + 1
    """
    return total_points // multiplier + 1


def points_to_next_level(total_points: int, multiplier: int = POINTS.LEVEL_MULTIPLIER) -> int:
    """Points still missing before the next level-up."""
    return level_for_points(total_points, multiplier) * multiplier - total_points


# ---------------------------------------------------------------------------
# Text processing helpers
# ---------------------------------------------------------------------------
_CUSTOM_EMOJI_REGEX = re.compile(r"<a?:\w+:\d+>")


def count_custom_emojis(text: str) -> int:
    """Count Discord custom emojis (``<:name:id>`` / ``<a:name:id>``) in text."""
    return len(_CUSTOM_EMOJI_REGEX.findall(text))


# ---------------------------------------------------------------------------
# Redis key layout
# ---------------------------------------------------------------------------
NODE_KEY_PREFIX = "bot:node:"


def node_key(node_id: str) -> str:
    return f"{NODE_KEY_PREFIX}{node_id}"


def first_message_key(guild_id: str, user_id: str, day: date) -> str:
    return f"daily:{guild_id}:{user_id}:{day.isoformat()}"


def user_stats_key(guild_id: str, user_id: str) -> str:
    return f"cache:user:{guild_id}:{user_id}"


def user_stats_generation_key(guild_id: str, user_id: str) -> str:
    return f"cache:user:gen:{guild_id}:{user_id}"


def leaderboard_key(guild_id: str, limit: int) -> str:
    return f"leaderboard:{guild_id}:{limit}"


def metric_key(name: str, bucket: int) -> str:
    return f"metrics:{name}:{bucket}"
