"""Building and validating reminder preferences before they are saved."""

from __future__ import annotations

from habitloop.core.config import Settings, settings
from habitloop.core.errors import ConfigurationError
from habitloop.core.registry import ReminderHandler
from habitloop.core.timing import load_zone, parse_hhmm
from habitloop.data.schemas import ReminderPreference


def validate_preference(prefs: ReminderPreference) -> ReminderPreference:
    """Reject preferences the scheduler cannot run. Returns prefs unchanged."""
    start = parse_hhmm(prefs.start_time)
    end = parse_hhmm(prefs.end_time)
    if start >= end:
        msg = f"Start time {prefs.start_time} must be before end time {prefs.end_time}"
        raise ConfigurationError(msg)
    load_zone(prefs.timezone)
    if prefs.frequency_minutes <= 0:
        msg = f"Frequency must be a positive number of minutes, got {prefs.frequency_minutes}"
        raise ConfigurationError(msg)
    if prefs.frequency_random_multiple < 1.0:
        msg = f"Random multiple must be at least 1.0, got {prefs.frequency_random_multiple}"
        raise ConfigurationError(msg)
    return prefs


def make_preference(
    user_id: str,
    handler: ReminderHandler,
    start_time: str | None = None,
    end_time: str | None = None,
    timezone: str | None = None,
    frequency_minutes: int | None = None,
    random: bool | None = None,
    frequency_random_multiple: float | None = None,
    enabled: bool = True,
    config: Settings | None = None,
) -> ReminderPreference:
    """Create validated preferences, filling gaps from handler and app defaults."""
    cfg = config or settings
    prefs = ReminderPreference(
        user_id=user_id,
        reminder_type=handler.reminder_type,
        enabled=enabled,
        start_time=start_time or cfg.default_start_time,
        end_time=end_time or cfg.default_end_time,
        timezone=timezone or cfg.default_timezone,
        frequency_minutes=frequency_minutes or handler.default_frequency_minutes,
        random=handler.default_random if random is None else random,
        frequency_random_multiple=(
            handler.default_random_multiple if frequency_random_multiple is None else frequency_random_multiple
        ),
    )
    return validate_preference(prefs)
