"""Water reminder: send a hydration nudge, log the reaction, reply."""

from __future__ import annotations

import logging
import random

from habitloop.core.config import Settings, settings
from habitloop.core.errors import DeliveryError, PersistenceError
from habitloop.core.registry import ReminderHandler
from habitloop.data.activity import ActivityLog
from habitloop.data.schemas import ActivityKind, ActivityUnit, Resolution, ResolutionSource
from habitloop.integrations.channels.base import MessageRef, MessageSpec, NotificationChannel
from habitloop.integrations.responses import race_responses
from habitloop.integrations.scheduler import ErrorSink, log_error_sink

logger = logging.getLogger(__name__)

WATER_AMOUNT_ML = 250  # one glass

CHOICE_DRANK = "drank"
CHOICE_SKIP = "skip"
CHOICE_LABELS = {CHOICE_DRANK: "💧 Drank it", CHOICE_SKIP: "🙅 Not now"}

REMINDER_MESSAGES = (
    "💧 H2O alert! Your cells are sending an SOS for hydration!",
    "🚰 Splash time! Your body's internal plants need watering.",
    "💦 Hydration station calling! Time to refuel your liquid levels.",
    "🌊 Water wizard says: cast the spell of hydration upon thyself!",
    "💧 Brain fog? Water is the windshield wiper for your mind!",
    "💦 Psst... your kidneys just texted: 'Send water!'",
    "🌊 Mission: Hydration. Status: Pending. Action required!",
    "💧 Water o'clock! The universal time for quenching thirst.",
)

CONGRATULATORY_MESSAGES = (
    "🎉 Hydration achievement unlocked!",
    "💪 Water victory! Your cells are doing a happy dance right now.",
    "⭐ Splash-tastic! You're officially a hydro-homie!",
    "🏆 Liquid legend status achieved!",
    "🌈 Brilliant! Your thirst sensors are doing a victory lap.",
)

ENCOURAGEMENT_MESSAGES = (
    "💭 That's alright! Your next glass of water is your comeback story.",
    "🌱 No pressure! Your hydration journey has many chapters ahead.",
    "💧 Even ocean waves take breaks. Grab some H2O when you can.",
    "🧠 Your future hydrated self is patiently waiting in the wings.",
)

ACK_REPLY = "Thanks for acknowledging the reminder! Remember to stay hydrated!"


class WaterReminderHandler(ReminderHandler):
    """Hydration reminders with 'drank' / 'skip' buttons and reaction acks."""

    reminder_type = "water"
    default_frequency_minutes = 60
    default_random = True
    default_random_multiple = 1.5
    messages = REMINDER_MESSAGES

    def __init__(
        self,
        channel: NotificationChannel,
        activity: ActivityLog,
        config: Settings | None = None,
        rng: random.Random | None = None,
        error_sink: ErrorSink | None = None,
    ) -> None:
        self._channel = channel
        self._activity = activity
        self._config = config or settings
        self._rng = rng or random.Random()
        self._error_sink = error_sink or log_error_sink

    async def on_deliver(self, user_id: str) -> Resolution:
        spec = MessageSpec(
            text=self._rng.choice(self.messages),
            choices=[CHOICE_DRANK, CHOICE_SKIP],
            choice_labels=dict(CHOICE_LABELS),
        )
        try:
            ref = await self._channel.send(user_id, spec)
        except DeliveryError:
            raise
        except Exception as exc:
            msg = f"Could not send water reminder to {user_id}"
            raise DeliveryError(msg) from exc
        logger.debug("Water reminder %s sent to %s", ref.message_id, user_id)

        resolution = await race_responses(self._channel, ref, spec.choices, self._config.max_latency_ms)
        await self._record(user_id, resolution)
        await self._reply(ref, resolution)
        return resolution

    async def _record(self, user_id: str, resolution: Resolution) -> None:
        """Log reaction time (or the max on timeout) and any water drunk."""
        if resolution.latency_ms is None:
            reaction_ms = self._config.max_latency_ms
            note = "No reaction"
        else:
            reaction_ms = resolution.latency_ms
            note = f"{resolution.source}: {resolution.choice}" if resolution.choice else str(resolution.source)
        try:
            await self._activity.record_activity(
                user_id,
                ActivityKind.WATER_REACTION_TIME,
                reaction_ms,
                ActivityUnit.MILLISECONDS,
                note,
            )
            if resolution.source == ResolutionSource.CHOICE and resolution.choice == CHOICE_DRANK:
                await self._activity.record_activity(
                    user_id,
                    ActivityKind.WATER,
                    WATER_AMOUNT_ML,
                    ActivityUnit.MILLILITERS,
                    "Water reminder",
                )
        except PersistenceError as exc:
            self._error_sink(exc, {"op": "record_activity", "user_id": user_id, "reminder_type": self.reminder_type})

    async def _reply(self, ref: MessageRef, resolution: Resolution) -> None:
        if resolution.source == ResolutionSource.CHOICE:
            pool = CONGRATULATORY_MESSAGES if resolution.choice == CHOICE_DRANK else ENCOURAGEMENT_MESSAGES
            text = self._rng.choice(pool)
        elif resolution.source == ResolutionSource.ACK:
            text = ACK_REPLY
        else:
            return
        try:
            await self._channel.reply(ref, text)
        except Exception as exc:
            logger.warning("Reply to water reminder %s failed: %s", ref.message_id, exc)
