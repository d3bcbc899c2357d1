"""Points-to-level conversion shared by progress tracking and settlement."""

from __future__ import annotations

POINTS_PER_LEVEL = 1000

LEVEL_TIERS = (
    (100, {"name": "Diamond", "color": "#60A5FA", "emoji": "💎"}),
    (67, {"name": "The 67", "color": "#F59E0B", "emoji": "6️⃣7️⃣"}),
    (50, {"name": "Gold", "color": "#FBBF24", "emoji": "🥇"}),
    (20, {"name": "Silver", "color": "#D1D5DB", "emoji": "🥈"}),
    (10, {"name": "Bronze", "color": "#CD7F32", "emoji": "🥉"}),
    (0, {"name": "Rookie", "color": "#9CA3AF", "emoji": "⭐"}),
)


def level_for(points: int) -> int:
    """Return the number of whole levels contained in ``points``.

    Anything other than a non-negative int is a caller bug and raises.
    """
    if isinstance(points, bool) or not isinstance(points, int):
        raise TypeError(f"points must be an int, got {type(points).__name__}")
    if points < 0:
        raise ValueError(f"points must be non-negative, got {points}")
    return points // POINTS_PER_LEVEL


def points_to_next_level(points: int) -> int:
    return (level_for(points) + 1) * POINTS_PER_LEVEL - points


def level_tier(level: int) -> dict:
    """Badge tier label for a level, used in level-up emails."""
    for threshold, tier in LEVEL_TIERS:
        if level >= threshold:
            return dict(tier)
    return dict(LEVEL_TIERS[-1][1])
