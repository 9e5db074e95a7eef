"""Protocols for the stores the reminder core depends on."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from habitloop.data.schemas import ReminderPreference, StreakRecord


class PreferenceStore(Protocol):
    """Durable per-user reminder configuration."""

    async def load(self, user_id: str, reminder_type: str) -> ReminderPreference | None:
        """Return preferences, or None if the user never configured this type."""
        ...

    async def save(self, prefs: ReminderPreference) -> None:
        """Insert or update preferences."""
        ...

    async def list_enabled(self, reminder_type: str) -> list[ReminderPreference]:
        """All enabled preferences for a reminder type."""
        ...

    async def mark_sent(self, user_id: str, reminder_type: str, at: datetime) -> None:
        """Update only the diagnostic last-sent timestamp."""
        ...


class StreakStore(Protocol):
    """Point lookup and upsert of streak records."""

    async def load_streak(self, user_id: str, streak_type: str) -> StreakRecord:
        """Return the record, creating a zeroed one if absent."""
        ...

    async def save_streak(self, user_id: str, streak_type: str, record: StreakRecord) -> None:
        """Persist a record."""
        ...
