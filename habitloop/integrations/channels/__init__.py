"""Notification channels package: ABC + channel implementations."""

from habitloop.integrations.channels.base import (
    AckResponse,
    Capability,
    ChoiceResponse,
    MessageRef,
    MessageSpec,
    NotificationChannel,
)
from habitloop.integrations.channels.telegram import TelegramChannel

__all__ = [
    "AckResponse",
    "Capability",
    "ChoiceResponse",
    "MessageRef",
    "MessageSpec",
    "NotificationChannel",
    "TelegramChannel",
]
