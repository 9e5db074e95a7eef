"""Error taxonomy for the reminder core."""

from __future__ import annotations


class HabitloopError(Exception):
    """Base class for all habitloop errors."""


class ConfigurationError(HabitloopError, ValueError):
    """Invalid reminder configuration (time format, timezone, frequency).

    Raised when preferences are set, before anything is scheduled. This is the
    only error class that is shown to the user.
    """


class DeliveryError(HabitloopError):
    """The notification channel could not deliver a reminder."""


class PersistenceError(HabitloopError):
    """A preference or activity store read/write failed."""


class RaceResolutionError(HabitloopError):
    """A second response listener tried to resolve an already-resolved cycle."""
