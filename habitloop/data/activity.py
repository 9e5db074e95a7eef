"""Activity log: encrypted lake entries for actions, SQLite rows for streaks."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from habitloop.core.config import Settings, settings
from habitloop.core.errors import PersistenceError
from habitloop.data.lake import read_records, store_record
from habitloop.data.schemas import ActivityRecord, StreakRecord, make_activity_record
from habitloop.data.stores import StreakStore

logger = logging.getLogger(__name__)

ACTIVITY_CATEGORY = "activity"


class ActivityLog:
    """Append-only activity entries plus streak record access."""

    def __init__(self, streaks: StreakStore, config: Settings | None = None) -> None:
        self._streaks = streaks
        self._config = config or settings

    async def record_activity(
        self,
        user_id: str,
        kind: str,
        amount: float,
        unit: str,
        note: str = "",
    ) -> ActivityRecord:
        """Append one activity entry to the lake."""
        record = make_activity_record(user_id=user_id, kind=kind, amount=amount, unit=unit, note=note)
        try:
            await asyncio.to_thread(store_record, dict(record), ACTIVITY_CATEGORY, self._config)
        except Exception as exc:
            msg = f"record_activity failed for {user_id} ({kind})"
            raise PersistenceError(msg) from exc
        logger.info("Logged activity for %s: %s %s%s", user_id, kind, amount, unit)
        return record

    async def query_activity(self, user_id: str, kind: str | None = None) -> list[dict[str, Any]]:
        """Return a user's activity entries, optionally of one kind."""
        filters: dict[str, Any] = {"user_id": user_id}
        if kind is not None:
            filters["kind"] = kind
        try:
            return await asyncio.to_thread(read_records, ACTIVITY_CATEGORY, self._config, filters)
        except OSError as exc:
            msg = f"query_activity failed for {user_id}"
            raise PersistenceError(msg) from exc

    async def load_streak(self, user_id: str, streak_type: str) -> StreakRecord:
        return await self._streaks.load_streak(user_id, streak_type)

    async def save_streak(self, user_id: str, streak_type: str, record: StreakRecord) -> None:
        await self._streaks.save_streak(user_id, streak_type, record)
