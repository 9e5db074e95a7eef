"""Reminder-type registry: one behaviour descriptor per reminder type."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator

from habitloop.data.schemas import Resolution

logger = logging.getLogger(__name__)


class ReminderHandler(ABC):
    """Behaviour of one reminder type.

    The scheduler only relies on the default interval settings and
    `on_deliver`, so adding a reminder type never touches the scheduler.
    """

    reminder_type: str
    default_frequency_minutes: int = 60
    default_random: bool = False
    default_random_multiple: float = 1.0
    messages: tuple[str, ...] = ()

    @abstractmethod
    async def on_deliver(self, user_id: str) -> Resolution:
        """Send one reminder and wait for the user's response or the timeout.

        Raises DeliveryError if the reminder could not be sent.
        """


class HandlerRegistry:
    """Maps reminder-type tags to their handlers. Built once at startup."""

    def __init__(self, handlers: list[ReminderHandler] | None = None) -> None:
        self._handlers: dict[str, ReminderHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: ReminderHandler) -> None:
        """Register (or replace) the handler for its reminder type."""
        if handler.reminder_type in self._handlers:
            logger.warning("Replacing handler for reminder type %s", handler.reminder_type)
        self._handlers[handler.reminder_type] = handler

    def get(self, reminder_type: str) -> ReminderHandler:
        """Return the handler for a type. Raises KeyError if unknown."""
        handler = self._handlers.get(reminder_type)
        if handler is None:
            msg = f"No handler registered for reminder type: {reminder_type}"
            raise KeyError(msg)
        return handler

    def types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, reminder_type: object) -> bool:
        return reminder_type in self._handlers

    def __iter__(self) -> Iterator[ReminderHandler]:
        return iter(self._handlers.values())

    def __len__(self) -> int:
        return len(self._handlers)
