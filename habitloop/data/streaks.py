"""Quick-response streak engine: latency classification and level transitions."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from habitloop.data.schemas import OutcomeKind, StreakLevel, StreakOutcome, StreakRecord

logger = logging.getLogger(__name__)

# Consecutive quick responses needed for each level, lowest first.
STREAK_THRESHOLDS: dict[StreakLevel, int] = {
    StreakLevel.BRONZE: 3,
    StreakLevel.SILVER: 7,
    StreakLevel.GOLD: 14,
    StreakLevel.DIAMOND: 30,
}

_LEVEL_ORDER = list(StreakLevel)


def level_for(streak: int) -> StreakLevel:
    """Return the highest level whose threshold is <= streak."""
    level = StreakLevel.NONE
    for candidate, threshold in STREAK_THRESHOLDS.items():
        if streak >= threshold:
            level = candidate
    return level


def next_level(level: StreakLevel) -> StreakLevel | None:
    """Return the level after `level`, or None at the top."""
    idx = _LEVEL_ORDER.index(level)
    if idx + 1 >= len(_LEVEL_ORDER):
        return None
    return _LEVEL_ORDER[idx + 1]


def threshold_for(level: StreakLevel) -> int:
    """Return the streak length that unlocks `level` (0 for NONE)."""
    return STREAK_THRESHOLDS.get(level, 0)


def protection_available(record: StreakRecord, now: datetime, cooldown_ms: int) -> bool:
    """True if the cooldown since the last protection has elapsed (or none was used)."""
    if record.last_protection_used_at is None:
        return True
    elapsed_ms = (now - record.last_protection_used_at).total_seconds() * 1000
    return elapsed_ms >= cooldown_ms


def advance(
    record: StreakRecord,
    latency_ms: int | None,
    quick_threshold_ms: int,
    max_latency_ms: int,
    protection_cooldown_ms: int,
    now: datetime,
) -> tuple[StreakRecord, StreakOutcome]:
    """Apply one resolved reminder cycle to a streak record.

    `latency_ms` is None when nothing qualifying arrived before the timeout.
    Rules, first match wins:

    1. No response, or slower than `max_latency_ms`: use streak protection if
       the streak is active and the cooldown has elapsed, else break to 0.
    2. At most `quick_threshold_ms`: streak + 1, level recomputed.
    3. Anything in between: unchanged.

    Both boundaries are inclusive on the lenient side. Returns a new record;
    the input is not modified.
    """
    if latency_ms is None or latency_ms > max_latency_ms:
        if record.current_streak > 0 and protection_available(record, now, protection_cooldown_ms):
            updated = replace(
                record,
                protection_used_count=record.protection_used_count + 1,
                last_protection_used_at=now,
                last_updated=now,
            )
            logger.info("Streak protection used, streak stays at %d", updated.current_streak)
            return updated, StreakOutcome(
                kind=OutcomeKind.PROTECTED, new_streak=updated.current_streak, previous_streak=record.current_streak
            )

        updated = replace(record, current_streak=0, streak_level=StreakLevel.NONE, last_updated=now)
        logger.info("Streak broken (was %d)", record.current_streak)
        return updated, StreakOutcome(
            kind=OutcomeKind.BROKEN, new_streak=0, previous_streak=record.current_streak
        )

    if latency_ms <= quick_threshold_ms:
        streak = record.current_streak + 1
        level = level_for(streak)
        updated = replace(
            record,
            current_streak=streak,
            longest_streak=max(record.longest_streak, streak),
            streak_level=level,
            last_updated=now,
        )
        new_level = level if level != record.streak_level else None
        return updated, StreakOutcome(
            kind=OutcomeKind.INCREASED, new_streak=streak, new_level=new_level, previous_streak=record.current_streak
        )

    updated = replace(record, last_updated=now)
    return updated, StreakOutcome(
        kind=OutcomeKind.UNCHANGED, new_streak=updated.current_streak, previous_streak=record.current_streak
    )
