"""Abstract base for notification channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class Capability(StrEnum):
    """What a channel can do."""

    SEND_MESSAGE = "send_message"
    INTERACTIVE_CHOICE = "interactive_choice"
    PASSIVE_ACK = "passive_ack"
    REPLY = "reply"


@dataclass
class MessageSpec:
    """What to send: text plus the choices offered as buttons."""

    text: str
    choices: list[str] = field(default_factory=list)
    choice_labels: dict[str, str] = field(default_factory=dict)

    def label_for(self, choice: str) -> str:
        return self.choice_labels.get(choice, choice)


@dataclass
class MessageRef:
    """Reference to a delivered reminder message."""

    channel: str  # provider name (e.g. "telegram")
    user_id: str
    chat_id: int
    message_id: int
    sent_at: datetime


@dataclass
class ChoiceResponse:
    """The user pressed one of the offered choices."""

    choice: str
    elapsed_ms: int


@dataclass
class AckResponse:
    """The user acknowledged the message passively (e.g. a reaction)."""

    elapsed_ms: int
    detail: str = ""  # e.g. the reaction emoji


class NotificationChannel(ABC):
    """Abstract notification channel.

    Implementations: TelegramChannel. Tests use in-memory fakes.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique channel name (e.g. 'telegram')."""

    @property
    @abstractmethod
    def capabilities(self) -> frozenset[Capability]:
        """Set of capabilities this channel supports."""

    @abstractmethod
    async def send(self, user_id: str, spec: MessageSpec) -> MessageRef:
        """Deliver a message. Raises DeliveryError if the user is unreachable."""

    @abstractmethod
    async def await_choice(
        self,
        ref: MessageRef,
        allowed_choices: list[str],
        timeout_ms: int,
    ) -> ChoiceResponse | None:
        """Wait for the user to pick one of `allowed_choices`. None on timeout."""

    @abstractmethod
    async def await_ack(self, ref: MessageRef, timeout_ms: int) -> AckResponse | None:
        """Wait for a passive acknowledgement of the message. None on timeout."""

    @abstractmethod
    async def reply(self, ref: MessageRef, text: str) -> None:
        """Send a follow-up message referring to `ref`."""

    def supports(self, capability: Capability) -> bool:
        """Check if this channel supports a capability."""
        return capability in self.capabilities

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the channel (called during app startup)."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Clean shutdown (called during app teardown)."""
