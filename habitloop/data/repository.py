"""SQLite access layer for reminder preferences and streak records."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import aiosqlite

from habitloop.core.errors import PersistenceError
from habitloop.data.schemas import ReminderPreference, StreakLevel, StreakRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS reminder_preferences (
    user_id TEXT NOT NULL,
    reminder_type TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 0,
    start_time TEXT NOT NULL DEFAULT '08:00',
    end_time TEXT NOT NULL DEFAULT '19:00',
    timezone TEXT NOT NULL DEFAULT 'America/Los_Angeles',
    frequency_minutes INTEGER NOT NULL,
    random INTEGER NOT NULL DEFAULT 0,
    frequency_random_multiple REAL NOT NULL DEFAULT 1.0,
    last_sent TEXT,
    PRIMARY KEY (user_id, reminder_type)
);

CREATE TABLE IF NOT EXISTS streaks (
    user_id TEXT NOT NULL,
    streak_type TEXT NOT NULL,
    current_streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    streak_level TEXT NOT NULL DEFAULT 'none',
    protection_used INTEGER NOT NULL DEFAULT 0,
    last_protection_used TEXT,
    last_updated TEXT,
    PRIMARY KEY (user_id, streak_type)
);
"""


def _to_text(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt is not None else None


def _from_text(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_preference(row: aiosqlite.Row) -> ReminderPreference:
    return ReminderPreference(
        user_id=row["user_id"],
        reminder_type=row["reminder_type"],
        enabled=bool(row["enabled"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        timezone=row["timezone"],
        frequency_minutes=row["frequency_minutes"],
        random=bool(row["random"]),
        frequency_random_multiple=row["frequency_random_multiple"],
        last_sent=_from_text(row["last_sent"]),
    )


class Repository:
    """Database access layer.

    Implements the preference store (`load`, `save`, `list_enabled`,
    `mark_sent`) and the streak half of the activity log (`load_streak`,
    `save_streak`). Every `aiosqlite.Error` surfaces as PersistenceError.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """Open the connection and create tables if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info("Connected to database at %s", self.db_path)

    async def close(self) -> None:
        """Close the connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("Database connection closed")

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            msg = "Database not connected"
            raise PersistenceError(msg)
        return self._db

    # Preference store

    async def load(self, user_id: str, reminder_type: str) -> ReminderPreference | None:
        """Point lookup of a user's preferences for one reminder type."""
        try:
            async with self.db.execute(
                "SELECT * FROM reminder_preferences WHERE user_id = ? AND reminder_type = ?",
                (user_id, reminder_type),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            msg = f"load preferences failed for {user_id}:{reminder_type}"
            raise PersistenceError(msg) from exc
        return _row_to_preference(row) if row is not None else None

    async def save(self, prefs: ReminderPreference) -> None:
        """Upsert preferences. `last_sent` is only written by mark_sent."""
        try:
            await self.db.execute(
                """
                INSERT INTO reminder_preferences
                    (user_id, reminder_type, enabled, start_time, end_time, timezone,
                     frequency_minutes, random, frequency_random_multiple)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, reminder_type) DO UPDATE SET
                    enabled = excluded.enabled,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    timezone = excluded.timezone,
                    frequency_minutes = excluded.frequency_minutes,
                    random = excluded.random,
                    frequency_random_multiple = excluded.frequency_random_multiple
                """,
                (
                    prefs.user_id,
                    prefs.reminder_type,
                    int(prefs.enabled),
                    prefs.start_time,
                    prefs.end_time,
                    prefs.timezone,
                    prefs.frequency_minutes,
                    int(prefs.random),
                    prefs.frequency_random_multiple,
                ),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            msg = f"save preferences failed for {prefs.user_id}:{prefs.reminder_type}"
            raise PersistenceError(msg) from exc

    async def list_enabled(self, reminder_type: str) -> list[ReminderPreference]:
        """All enabled preferences for a reminder type."""
        try:
            async with self.db.execute(
                "SELECT * FROM reminder_preferences WHERE enabled = 1 AND reminder_type = ?",
                (reminder_type,),
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            msg = f"list enabled preferences failed for {reminder_type}"
            raise PersistenceError(msg) from exc
        return [_row_to_preference(row) for row in rows]

    async def mark_sent(self, user_id: str, reminder_type: str, at: datetime) -> None:
        """Record when the last reminder went out."""
        try:
            await self.db.execute(
                "UPDATE reminder_preferences SET last_sent = ? WHERE user_id = ? AND reminder_type = ?",
                (_to_text(at), user_id, reminder_type),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            msg = f"mark_sent failed for {user_id}:{reminder_type}"
            raise PersistenceError(msg) from exc

    # Streak records

    async def load_streak(self, user_id: str, streak_type: str) -> StreakRecord:
        """Return the streak record, creating an all-zero one if absent."""
        try:
            await self.db.execute(
                "INSERT OR IGNORE INTO streaks (user_id, streak_type) VALUES (?, ?)",
                (user_id, streak_type),
            )
            await self.db.commit()
            async with self.db.execute(
                "SELECT * FROM streaks WHERE user_id = ? AND streak_type = ?",
                (user_id, streak_type),
            ) as cursor:
                row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            msg = f"load streak failed for {user_id}:{streak_type}"
            raise PersistenceError(msg) from exc

        if row is None:
            msg = f"No streak data for {user_id}:{streak_type} after initialization"
            raise PersistenceError(msg)
        return StreakRecord(
            current_streak=row["current_streak"],
            longest_streak=row["longest_streak"],
            streak_level=StreakLevel(row["streak_level"] or StreakLevel.NONE),
            protection_used_count=row["protection_used"],
            last_protection_used_at=_from_text(row["last_protection_used"]),
            last_updated=_from_text(row["last_updated"]),
        )

    async def save_streak(self, user_id: str, streak_type: str, record: StreakRecord) -> None:
        """Upsert a streak record."""
        try:
            await self.db.execute(
                """
                INSERT INTO streaks
                    (user_id, streak_type, current_streak, longest_streak, streak_level,
                     protection_used, last_protection_used, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id, streak_type) DO UPDATE SET
                    current_streak = excluded.current_streak,
                    longest_streak = excluded.longest_streak,
                    streak_level = excluded.streak_level,
                    protection_used = excluded.protection_used,
                    last_protection_used = excluded.last_protection_used,
                    last_updated = excluded.last_updated
                """,
                (
                    user_id,
                    streak_type,
                    record.current_streak,
                    record.longest_streak,
                    record.streak_level.value,
                    record.protection_used_count,
                    _to_text(record.last_protection_used_at),
                    _to_text(record.last_updated),
                ),
            )
            await self.db.commit()
        except aiosqlite.Error as exc:
            msg = f"save streak failed for {user_id}:{streak_type}"
            raise PersistenceError(msg) from exc
