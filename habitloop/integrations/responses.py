"""Race the interactive-choice and passive-ack listeners for one reminder.

A single human action can be observed through both channels (pressing a
button and reacting to the message). Whichever listener settles first claims
the cycle through a ResolutionCell; later settlements are dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable

from habitloop.core.errors import RaceResolutionError
from habitloop.data.schemas import Resolution, ResolutionSource
from habitloop.integrations.channels.base import (
    AckResponse,
    Capability,
    ChoiceResponse,
    MessageRef,
    NotificationChannel,
)

logger = logging.getLogger(__name__)


class ResolutionCell:
    """Single-assignment holder for a cycle's resolution."""

    def __init__(self) -> None:
        self._value: Resolution | None = None

    @property
    def value(self) -> Resolution | None:
        return self._value

    @property
    def settled(self) -> bool:
        return self._value is not None

    def settle(self, resolution: Resolution) -> None:
        """Claim the cycle. Raises RaceResolutionError if already claimed."""
        # No await between check and set: atomic on the event loop.
        if self._value is not None:
            msg = f"cycle already resolved by {self._value.source}, dropping {resolution.source}"
            raise RaceResolutionError(msg)
        self._value = resolution


async def _listen_choice(
    cell: ResolutionCell,
    pending: Awaitable[ChoiceResponse | None],
) -> None:
    response = await pending
    if response is None:
        return
    try:
        cell.settle(
            Resolution(source=ResolutionSource.CHOICE, choice=response.choice, latency_ms=response.elapsed_ms),
        )
    except RaceResolutionError as exc:
        logger.debug("Ignored late choice: %s", exc)


async def _listen_ack(
    cell: ResolutionCell,
    pending: Awaitable[AckResponse | None],
) -> None:
    response = await pending
    if response is None:
        return
    try:
        cell.settle(
            Resolution(source=ResolutionSource.ACK, choice=response.detail or None, latency_ms=response.elapsed_ms),
        )
    except RaceResolutionError as exc:
        logger.debug("Ignored late acknowledgement: %s", exc)


async def race_responses(
    channel: NotificationChannel,
    ref: MessageRef,
    allowed_choices: list[str],
    timeout_ms: int,
) -> Resolution:
    """Open both listeners on `ref` and return the first settlement.

    Both listeners are bounded by `timeout_ms`. If neither settles, the
    result is a TIMEOUT resolution with no latency. Listeners still running
    once the cycle is claimed are cancelled.
    """
    cell = ResolutionCell()
    listeners: list[asyncio.Task[None]] = []
    if channel.supports(Capability.INTERACTIVE_CHOICE) and allowed_choices:
        listeners.append(
            asyncio.create_task(_listen_choice(cell, channel.await_choice(ref, allowed_choices, timeout_ms)))
        )
    if channel.supports(Capability.PASSIVE_ACK):
        listeners.append(asyncio.create_task(_listen_ack(cell, channel.await_ack(ref, timeout_ms))))

    pending = set(listeners)
    try:
        while pending and not cell.settled:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    logger.warning("Response listener for message %s failed: %s", ref.message_id, exc)
    finally:
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    if cell.value is not None:
        return cell.value
    return Resolution(source=ResolutionSource.TIMEOUT)
