"""Reminder preferences, streak records, and activity log schemas."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, TypedDict


class StreakLevel(StrEnum):
    """Named streak tiers, lowest first."""

    NONE = "none"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    DIAMOND = "diamond"


class OutcomeKind(StrEnum):
    """What a streak transition did."""

    INCREASED = "increased"
    BROKEN = "broken"
    PROTECTED = "protected"
    UNCHANGED = "unchanged"


class ResolutionSource(StrEnum):
    """How a delivery cycle settled."""

    CHOICE = "choice"  # inline button
    ACK = "ack"  # passive reaction
    TIMEOUT = "timeout"
    FAILED = "failed"  # send failed, treated as timeout


class ActivityKind(StrEnum):
    """Activity log entry kinds."""

    WATER = "water"
    WATER_REACTION_TIME = "water_reaction_time"


class ActivityUnit(StrEnum):
    """Units for activity amounts."""

    MILLILITERS = "ml"
    MILLISECONDS = "ms"


@dataclass
class ReminderPreference:
    """A user's configuration for one reminder type."""

    user_id: str
    reminder_type: str
    enabled: bool = False
    start_time: str = "08:00"  # HH:MM local
    end_time: str = "19:00"  # HH:MM local, exclusive
    timezone: str = "America/Los_Angeles"
    frequency_minutes: int = 60
    random: bool = False
    frequency_random_multiple: float = 1.0
    last_sent: datetime | None = None


@dataclass
class StreakRecord:
    """Quick-response streak state for one (user, reminder type)."""

    current_streak: int = 0
    longest_streak: int = 0
    streak_level: StreakLevel = StreakLevel.NONE
    protection_used_count: int = 0
    last_protection_used_at: datetime | None = None
    last_updated: datetime | None = None


@dataclass
class StreakOutcome:
    """Result of a streak transition, for user-facing messaging."""

    kind: OutcomeKind
    new_streak: int
    new_level: StreakLevel | None = None
    previous_streak: int = 0

    @property
    def streak_increased(self) -> bool:
        return self.kind == OutcomeKind.INCREASED

    @property
    def streak_broken(self) -> bool:
        return self.kind == OutcomeKind.BROKEN

    @property
    def protection_used(self) -> bool:
        return self.kind == OutcomeKind.PROTECTED

    def as_payload(self) -> dict[str, Any]:
        """Return the outcome event payload."""
        return {
            "streak_increased": self.streak_increased,
            "new_streak": self.new_streak,
            "new_level": self.new_level.value if self.new_level is not None else None,
            "streak_broken": self.streak_broken,
            "protection_used": self.protection_used,
        }


@dataclass
class Resolution:
    """How a single delivery cycle was resolved."""

    source: ResolutionSource
    choice: str | None = None
    latency_ms: int | None = None  # None = no qualifying response

    @property
    def responded(self) -> bool:
        return self.latency_ms is not None


class ActivityRecord(TypedDict):
    """A single logged action (e.g. a glass of water)."""

    user_id: str
    kind: str  # ActivityKind value
    amount: float
    unit: str  # ActivityUnit value
    note: str
    timestamp: str  # ISO 8601


def make_activity_record(
    user_id: str,
    kind: str,
    amount: float,
    unit: str,
    note: str = "",
    timestamp: str | None = None,
) -> ActivityRecord:
    """Create an activity record with auto-timestamp."""
    return ActivityRecord(
        user_id=user_id,
        kind=kind,
        amount=amount,
        unit=unit,
        note=note,
        timestamp=timestamp or datetime.now().astimezone().isoformat(),
    )
