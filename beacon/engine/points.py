"""
beacon.engine.points — Point Calculation
=========================================

Pure functions.  No Discord I/O, no DB I/O, no cache I/O: whether a
message is the first of the day is decided by the caller (through the
coordination cache) and passed in.
"""

from __future__ import annotations

from typing import Any

from beacon.constants import (
    LONG_MESSAGE_THRESHOLD,
    POINTS,
    PointValues,
    count_custom_emojis,
)


def calculate_message_points(
    content: str,
    is_first_today: bool,
    points: PointValues = POINTS,
) -> tuple[int, dict[str, Any]]:
    """Score one chat message.

    Returns ``(points, metadata)``; the metadata records which bonuses
    fired and ends up on the transaction row.
    """
    total = points.MESSAGE_SENT
    metadata: dict[str, Any] = {"message_length": len(content)}

    if len(content) > LONG_MESSAGE_THRESHOLD:
        total += points.LONG_MESSAGE
        metadata["long_message_bonus"] = True

    emoji_count = count_custom_emojis(content)
    if emoji_count:
        emoji_bonus = emoji_count * points.EMOJI_USED
        total += emoji_bonus
        metadata["custom_emojis"] = emoji_count
        metadata["emoji_bonus"] = emoji_bonus

    if is_first_today:
        total += points.FIRST_MESSAGE_DAY
        metadata["first_message_of_day"] = True

    return total, metadata


def calculate_voice_points(
    seconds: float,
    points: PointValues = POINTS,
) -> tuple[int, dict[str, Any]]:
    """``floor(seconds / 60) × VOICE_MINUTE`` — partial minutes earn nothing."""
    seconds = max(0, int(seconds))
    minutes = seconds // 60
    return minutes * points.VOICE_MINUTE, {
        "voice_seconds": seconds,
        "minutes": minutes,
        "points_per_minute": points.VOICE_MINUTE,
    }


def reaction_role_bonus(points: PointValues = POINTS) -> int:
    """Bonus for obtaining a role through a reaction."""
    return points.REACTION_GIVEN * 2
