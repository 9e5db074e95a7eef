"""Delivery window arithmetic and reminder interval jitter."""

from __future__ import annotations

import logging
import random
import re
from datetime import UTC, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habitloop.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

MS_PER_MINUTE = 60_000


def parse_hhmm(value: str) -> time:
    """Parse a 24-hour 'HH:MM' string. Raises ConfigurationError on bad input."""
    match = _HHMM_RE.match(value or "")
    if match is None:
        msg = f"Invalid time '{value}', expected 24-hour HH:MM (e.g. 08:00)"
        raise ConfigurationError(msg)
    return time(int(match.group(1)), int(match.group(2)))


def load_zone(tz: str) -> ZoneInfo:
    """Resolve an IANA zone name. Raises ConfigurationError if unknown."""
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone '{tz}'"
        raise ConfigurationError(msg) from exc


def _local_now(now: datetime, tz: str) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(load_zone(tz))


def is_within_window(now: datetime, tz: str, start: str, end: str) -> bool:
    """True if local wall-clock time of `now` in `tz` lies in [start, end)."""
    local = _local_now(now, tz).time()
    return parse_hhmm(start) <= local < parse_hhmm(end)


def next_window_start(now: datetime, tz: str, start: str, end: str) -> datetime:
    """Return the next instant (UTC) at which the daily window opens.

    Today's start if `now` is before it, otherwise tomorrow's. The result is
    always strictly after `now` and its local time equals `start`, including
    across DST transitions.
    """
    zone = load_zone(tz)
    start_time = parse_hhmm(start)
    local = _local_now(now, tz)

    candidate_day = local.date()
    while True:
        candidate = datetime.combine(candidate_day, start_time, tzinfo=zone)
        # Wall-clock times skipped by a DST gap do not round-trip; try the next day.
        round_trip = candidate.astimezone(UTC).astimezone(zone)
        if round_trip.time() == start_time and candidate.astimezone(UTC) > local.astimezone(UTC):
            return candidate.astimezone(UTC)
        candidate_day += timedelta(days=1)


def ms_until(target: datetime, now: datetime) -> int:
    """Milliseconds from `now` to `target`, never negative."""
    return max(0, int((target - now).total_seconds() * 1000))


def next_delay(
    base_minutes: float,
    randomize: bool,
    multiplier: float = 1.0,
    rng: random.Random | None = None,
) -> int:
    """Return the delay in ms before the next reminder.

    Without randomization this is exactly `base_minutes`. With it, the delay is
    drawn uniformly from [base, base * multiplier] minutes.
    """
    base_ms = int(base_minutes * MS_PER_MINUTE)
    if not randomize:
        return base_ms
    upper_ms = int(base_minutes * max(multiplier, 1.0) * MS_PER_MINUTE)
    delay = (rng or random).randint(base_ms, upper_ms)
    logger.debug("Jittered delay %dms in [%d, %d]", delay, base_ms, upper_ms)
    return delay
