"""User-facing text for reaction times and streak state. Plain text only."""

from __future__ import annotations

from datetime import datetime

from habitloop.data.schemas import StreakLevel, StreakOutcome, StreakRecord
from habitloop.data.streaks import next_level, protection_available, threshold_for

MS_PER_DAY = 86_400_000

# (upper bound ms, rating, emoji); first bound the time is under wins.
_RATINGS: list[tuple[int, str, str]] = [
    (3_000, "Lightning Fast", "⚡"),
    (10_000, "Super Quick", "🚀"),
    (30_000, "Very Fast", "💨"),
    (60_000, "Fast", "🏃"),
    (5 * 60_000, "Good", "👍"),
    (10 * 60_000, "Decent", "👌"),
]
_SLOWEST = ("Slow & Steady", "🐢")

_LEVEL_EMOJI = {
    StreakLevel.BRONZE: "🥉",
    StreakLevel.SILVER: "🥈",
    StreakLevel.GOLD: "🥇",
    StreakLevel.DIAMOND: "💎",
}


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def format_duration(ms: int) -> str:
    """'4m 12s' under ten minutes, whole minutes beyond."""
    minutes = ms // 60_000
    if ms >= 10 * 60_000:
        return f"{minutes}m"
    return f"{minutes}m {(ms % 60_000) // 1000}s"


def rate_reaction_time(ms: int) -> tuple[str, str]:
    """Return (rating, emoji) for a reaction time."""
    for bound, rating, emoji in _RATINGS:
        if ms < bound:
            return rating, emoji
    return _SLOWEST


def format_reaction_time(ms: int) -> str:
    """E.g. 4200 -> '🚀 0m 4s (Super Quick)'."""
    rating, emoji = rate_reaction_time(ms)
    return f"{emoji} {format_duration(ms)} ({rating})"


def format_streak_update(latency_ms: int | None, outcome: StreakOutcome) -> str:
    """Message sent after a cycle resolves."""
    if latency_ms is None:
        lines = ["⏰ No response this time."]
    else:
        lines = [f"Response time: {format_reaction_time(latency_ms)}"]

    if outcome.protection_used:
        lines.append(f"🛡️ Streak protection used! Your streak ({outcome.new_streak}) continues.")
    elif outcome.streak_broken:
        lines.append("⚠️ Your quick response streak was reset.")
    elif outcome.streak_increased:
        lines.append(f"🔥 Quick response streak: {_plural(outcome.new_streak, 'quick response')}!")
        if outcome.new_level is not None:
            lines.append(f"🎖️ LEVEL UP! You've reached {outcome.new_level.value.capitalize()} level!")
    elif outcome.new_streak > 0:
        lines.append(f"✅ Streak maintained at {_plural(outcome.new_streak, 'quick response')}.")
    return "\n".join(lines)


def format_streak_status(record: StreakRecord, now: datetime, cooldown_ms: int) -> str:
    """Summary of a streak record: current, longest, level, next level, protection."""
    emoji = _LEVEL_EMOJI.get(record.streak_level, "")
    current = f"Current streak: {_plural(record.current_streak, 'quick response')}"
    lines = [f"{emoji} {current}" if emoji else current]
    lines.append(f"🏆 Longest streak: {_plural(record.longest_streak, 'quick response')}")

    if record.streak_level != StreakLevel.NONE:
        lines.append(f"🎖️ Current level: {record.streak_level.value.capitalize()}")

    upcoming = next_level(record.streak_level)
    if upcoming is not None:
        remaining = threshold_for(upcoming) - record.current_streak
        if remaining > 0:
            lines.append(
                f"⬆️ Next level: {upcoming.value.capitalize()} ({_plural(remaining, 'more quick response')})"
            )

    if record.current_streak > 0:
        if protection_available(record, now, cooldown_ms):
            lines.append("🛡️ Streak protection available")
        elif record.last_protection_used_at is not None:
            elapsed_days = int((now - record.last_protection_used_at).total_seconds() * 1000 // MS_PER_DAY)
            days_left = cooldown_ms // MS_PER_DAY - elapsed_days
            if days_left > 0:
                lines.append(f"⏳ Streak protection available in {_plural(days_left, 'day')}")
    return "\n".join(lines)
