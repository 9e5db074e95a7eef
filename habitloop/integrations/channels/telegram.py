"""Telegram implementation of NotificationChannel."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, ReplyParameters, Update
from telegram.error import TelegramError
from telegram.ext import Application, ApplicationBuilder, CallbackQueryHandler, ContextTypes, MessageReactionHandler

from habitloop.core.config import settings
from habitloop.core.errors import DeliveryError
from habitloop.integrations.channels.base import (
    AckResponse,
    Capability,
    ChoiceResponse,
    MessageRef,
    MessageSpec,
    NotificationChannel,
)

logger = logging.getLogger(__name__)

CALLBACK_PREFIX = "nudge:"

MessageKey = tuple[int, int]  # (chat_id, message_id)


@dataclass
class _Waiter:
    ref: MessageRef
    future: asyncio.Future[Any]
    allowed: list[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TelegramChannel(NotificationChannel):
    """Private-chat reminders over python-telegram-bot.

    Choices are inline-keyboard buttons; any emoji reaction on the reminder
    counts as a passive acknowledgement. The user id is the private chat id,
    and only that user can resolve a pending reminder.
    """

    def __init__(self, bot_token: str = "", clock: Callable[[], datetime] | None = None) -> None:
        self._bot_token = bot_token or settings.telegram_bot_token
        self._clock = clock or _utcnow
        self._bot: Bot | None = None
        self._app: Application[Any, Any, Any, Any, Any, Any] | None = None
        self._choice_waiters: dict[MessageKey, _Waiter] = {}
        self._ack_waiters: dict[MessageKey, _Waiter] = {}

    @property
    def name(self) -> str:
        return "telegram"

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(Capability)

    @property
    def bot(self) -> Bot:
        """Return the bot instance, creating lazily if needed."""
        if self._bot is None:
            self._bot = Bot(token=self._bot_token)
        return self._bot

    def set_bot(self, bot: Bot) -> None:
        """Override the bot instance (useful for testing)."""
        self._bot = bot

    async def initialize(self) -> None:
        """Build and start the Telegram Application with polling."""
        if not self._bot_token:
            logger.warning("No Telegram bot token, channel disabled")
            return
        self._app = ApplicationBuilder().token(self._bot_token).build()
        self._app.add_handler(CallbackQueryHandler(self._handle_callback, pattern=f"^{CALLBACK_PREFIX}"))
        self._app.add_handler(MessageReactionHandler(self._handle_reaction))
        await self._app.initialize()
        await self._app.start()
        if self._app.updater is not None:
            # Reactions are only delivered when explicitly requested.
            await self._app.updater.start_polling(allowed_updates=Update.ALL_TYPES)
        self._bot = self._app.bot
        logger.info("TelegramChannel initialized")

    async def shutdown(self) -> None:
        """Stop polling and shut down the Application."""
        for waiter in [*self._choice_waiters.values(), *self._ack_waiters.values()]:
            waiter.future.cancel()
        if self._app is not None:
            if self._app.updater is not None:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            logger.info("TelegramChannel shut down")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, user_id: str, spec: MessageSpec) -> MessageRef:
        try:
            chat_id = int(user_id)
        except ValueError as exc:
            msg = f"Telegram user id must be numeric, got {user_id!r}"
            raise DeliveryError(msg) from exc

        keyboard = None
        if spec.choices:
            keyboard = InlineKeyboardMarkup(
                [[InlineKeyboardButton(spec.label_for(c), callback_data=f"{CALLBACK_PREFIX}{c}") for c in spec.choices]]
            )
        try:
            message = await self.bot.send_message(chat_id=chat_id, text=spec.text, reply_markup=keyboard)
        except TelegramError as exc:
            msg = f"Telegram send to {user_id} failed: {exc}"
            raise DeliveryError(msg) from exc
        return MessageRef(
            channel=self.name,
            user_id=user_id,
            chat_id=chat_id,
            message_id=message.message_id,
            sent_at=self._clock(),
        )

    async def reply(self, ref: MessageRef, text: str) -> None:
        try:
            await self.bot.send_message(
                chat_id=ref.chat_id,
                text=text,
                reply_parameters=ReplyParameters(message_id=ref.message_id),
            )
        except TelegramError as exc:
            msg = f"Telegram reply to {ref.message_id} failed: {exc}"
            raise DeliveryError(msg) from exc

    # ------------------------------------------------------------------
    # Waiting for responses
    # ------------------------------------------------------------------

    async def await_choice(
        self,
        ref: MessageRef,
        allowed_choices: list[str],
        timeout_ms: int,
    ) -> ChoiceResponse | None:
        return await self._wait(self._choice_waiters, ref, timeout_ms, allowed_choices)

    async def await_ack(self, ref: MessageRef, timeout_ms: int) -> AckResponse | None:
        return await self._wait(self._ack_waiters, ref, timeout_ms)

    async def _wait(
        self,
        waiters: dict[MessageKey, _Waiter],
        ref: MessageRef,
        timeout_ms: int,
        allowed: list[str] | None = None,
    ) -> Any:
        key = (ref.chat_id, ref.message_id)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        waiter = _Waiter(ref=ref, future=future, allowed=list(allowed or []))
        waiters[key] = waiter
        try:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except TimeoutError:
            return None
        finally:
            if waiters.get(key) is waiter:
                del waiters[key]

    def _elapsed_ms(self, ref: MessageRef) -> int:
        return max(0, int((self._clock() - ref.sent_at).total_seconds() * 1000))

    async def _handle_callback(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Resolve a pending choice from an inline-keyboard press."""
        query = update.callback_query
        if query is None or query.data is None or query.message is None:
            return
        key = (query.message.chat.id, query.message.message_id)

        if query.from_user is None or query.from_user.id != key[0]:
            logger.warning(
                "Unauthorized callback from user_id=%s",
                query.from_user.id if query.from_user else "unknown",
            )
            await query.answer(text="Unauthorized.", show_alert=True)
            return

        choice = query.data.removeprefix(CALLBACK_PREFIX)
        waiter = self._choice_waiters.get(key)
        if waiter is None or waiter.future.done() or choice not in waiter.allowed:
            await query.answer(text="This reminder has expired.")
            return
        waiter.future.set_result(ChoiceResponse(choice=choice, elapsed_ms=self._elapsed_ms(waiter.ref)))
        await query.answer()

    async def _handle_reaction(
        self,
        update: Update,
        context: ContextTypes.DEFAULT_TYPE,
    ) -> None:
        """Resolve a pending acknowledgement from an emoji reaction."""
        reaction = update.message_reaction
        if reaction is None or not reaction.new_reaction:
            return
        key = (reaction.chat.id, reaction.message_id)
        if reaction.user is None or reaction.user.id != key[0]:
            logger.debug("Ignored reaction on %s from another user", key)
            return
        waiter = self._ack_waiters.get(key)
        if waiter is None or waiter.future.done():
            return
        detail = getattr(reaction.new_reaction[0], "emoji", "") or ""
        waiter.future.set_result(AckResponse(elapsed_ms=self._elapsed_ms(waiter.ref), detail=detail))
