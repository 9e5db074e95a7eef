"""Per-user reminder scheduler: timers, delivery windows, streak updates."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from habitloop.core.config import Settings, settings
from habitloop.core.errors import ConfigurationError, DeliveryError, PersistenceError
from habitloop.core.registry import HandlerRegistry, ReminderHandler
from habitloop.core.timing import is_within_window, ms_until, next_delay, next_window_start
from habitloop.data.schemas import ReminderPreference, Resolution, ResolutionSource, StreakOutcome
from habitloop.data.stores import PreferenceStore, StreakStore
from habitloop.data.streaks import advance

logger = logging.getLogger(__name__)

TimerKey = tuple[str, str]  # (user_id, reminder_type)
OutcomeCallback = Callable[[str, str, Resolution, StreakOutcome], Awaitable[None]]
ErrorSink = Callable[[BaseException, dict[str, Any]], None]
SleepFn = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]


class ReminderState(StrEnum):
    """Lifecycle of one (user, reminder type) key."""

    IDLE = "idle"
    ARMED = "armed"
    DELIVERING = "delivering"
    STOPPED = "stopped"


@dataclass
class TimerHandle:
    """A pending timer for one key. Only the newest generation may fire."""

    key: TimerKey
    generation: int
    fire_at: datetime
    task: asyncio.Task[None] | None = field(default=None, repr=False)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def log_error_sink(exc: BaseException, context: dict[str, Any]) -> None:
    """Default error sink: log with traceback."""
    logger.error("Reminder error %s: %s", context, exc, exc_info=exc)


class ReminderScheduler:
    """Owns one timer per (user, reminder type) and runs reminder cycles.

    A cycle is: timer fires -> reload preferences -> (outside the window: re-arm
    for the next window start) -> handler delivers and waits for a response ->
    streak transition persisted -> outcome emitted -> next timer armed with the
    jittered frequency.

    Concurrency model: everything runs on one event loop. The timer map is only
    mutated synchronously between awaits, and every arm bumps the key's
    generation so a timer that wakes after being superseded exits without
    firing. A key's next timer is armed only at the end of its running cycle,
    so deliveries for one key never overlap.
    """

    def __init__(
        self,
        preferences: PreferenceStore,
        streaks: StreakStore,
        registry: HandlerRegistry,
        config: Settings | None = None,
        *,
        on_outcome: OutcomeCallback | None = None,
        error_sink: ErrorSink | None = None,
        clock: Clock | None = None,
        sleep: SleepFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._preferences = preferences
        self._streaks = streaks
        self._registry = registry
        self._config = config or settings
        self._on_outcome = on_outcome
        self._error_sink = error_sink or log_error_sink
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep
        self._rng = rng
        self._timers: dict[TimerKey, TimerHandle] = {}
        self._generations: dict[TimerKey, int] = {}
        self._states: dict[TimerKey, ReminderState] = {}
        self._delivering: set[TimerKey] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def state_of(self, user_id: str, reminder_type: str) -> ReminderState:
        """Current lifecycle state of a key (IDLE if never seen)."""
        return self._states.get((user_id, reminder_type), ReminderState.IDLE)

    def timer_for(self, user_id: str, reminder_type: str) -> TimerHandle | None:
        """The live timer for a key, if one is armed."""
        handle = self._timers.get((user_id, reminder_type))
        if handle is None or handle.task is None or handle.task.done():
            return None
        return handle

    @property
    def live_timer_count(self) -> int:
        return sum(1 for h in self._timers.values() if h.task is not None and not h.task.done())

    async def start_reminders(self, user_id: str, reminder_type: str) -> ReminderState:
        """Begin the reminder chain for a key according to its stored preferences.

        Raises ConfigurationError for an unregistered reminder type and
        PersistenceError if the preferences cannot be read.
        """
        if reminder_type not in self._registry:
            msg = f"Unknown reminder type: {reminder_type}"
            raise ConfigurationError(msg)
        key = (user_id, reminder_type)
        prefs = await self._preferences.load(user_id, reminder_type)

        if key in self._delivering:
            # The running cycle re-arms once it resolves.
            self._states[key] = ReminderState.DELIVERING
            logger.info("Reminders for %s:%s resumed during delivery", user_id, reminder_type)
            return ReminderState.DELIVERING

        if prefs is None or not prefs.enabled:
            self._cancel_timer(key)
            self._states[key] = ReminderState.IDLE
            logger.info("Reminders for %s:%s not enabled, staying idle", user_id, reminder_type)
            return ReminderState.IDLE

        self._arm(key, self._ms_until_window(prefs))
        logger.info("Reminders started for %s:%s", user_id, reminder_type)
        return ReminderState.ARMED

    def stop_reminders(self, user_id: str, reminder_type: str) -> None:
        """Cancel any pending timer for a key. Idempotent and non-blocking.

        A cycle that is already delivering finishes its streak update but
        does not arm another timer.
        """
        key = (user_id, reminder_type)
        self._generations[key] = self._generations.get(key, 0) + 1
        cancelled = self._cancel_timer(key)
        self._states[key] = ReminderState.STOPPED
        if cancelled:
            logger.info("Reminders stopped for %s:%s", user_id, reminder_type)

    async def initialize_all(self) -> int:
        """Arm every enabled (user, type) pair on process start. Returns armed count."""
        armed = 0
        for reminder_type in self._registry.types():
            try:
                enabled = await self._preferences.list_enabled(reminder_type)
            except PersistenceError as exc:
                self._report(exc, {"op": "initialize_all", "reminder_type": reminder_type})
                continue
            for prefs in enabled:
                try:
                    state = await self.start_reminders(prefs.user_id, reminder_type)
                except (PersistenceError, ConfigurationError) as exc:
                    self._report(exc, {"op": "start", "user_id": prefs.user_id, "reminder_type": reminder_type})
                    continue
                if state is ReminderState.ARMED:
                    armed += 1
        logger.info("Initialized reminders: %d armed", armed)
        return armed

    async def shutdown(self) -> None:
        """Cancel all timers and in-flight cycles."""
        for key in list(self._timers):
            self.stop_reminders(*key)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Scheduler shut down")

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _arm(self, key: TimerKey, delay_ms: int) -> TimerHandle:
        """Replace any timer for `key` with a new one firing after delay_ms."""
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        self._cancel_timer(key)

        handle = TimerHandle(key=key, generation=generation, fire_at=self._clock() + timedelta(milliseconds=delay_ms))
        task = asyncio.create_task(self._run_timer(handle, delay_ms), name=f"reminder:{key[0]}:{key[1]}")
        handle.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._timers[key] = handle
        self._states[key] = ReminderState.ARMED
        logger.debug("Armed %s:%s gen=%d in %dms", key[0], key[1], generation, delay_ms)
        return handle

    def _cancel_timer(self, key: TimerKey) -> bool:
        handle = self._timers.pop(key, None)
        if handle is None or handle.task is None or handle.task.done():
            return False
        if handle.task is asyncio.current_task():
            return False
        handle.task.cancel()
        return True

    def _is_current(self, key: TimerKey, generation: int) -> bool:
        return self._generations.get(key) == generation

    async def _run_timer(self, handle: TimerHandle, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)
        if not self._is_current(handle.key, handle.generation):
            logger.debug("Stale timer for %s:%s gen=%d ignored", *handle.key, handle.generation)
            return
        if self._timers.get(handle.key) is handle:
            del self._timers[handle.key]
        await self._fire(handle.key, handle.generation)

    def _ms_until_window(self, prefs: ReminderPreference) -> int:
        now = self._clock()
        if is_within_window(now, prefs.timezone, prefs.start_time, prefs.end_time):
            return 0
        opens = next_window_start(now, prefs.timezone, prefs.start_time, prefs.end_time)
        logger.debug("Outside window for %s:%s, next start %s", prefs.user_id, prefs.reminder_type, opens)
        return ms_until(opens, now)

    def _next_interval(self, handler: ReminderHandler, prefs: ReminderPreference) -> int:
        frequency = prefs.frequency_minutes or handler.default_frequency_minutes
        return next_delay(frequency, prefs.random, prefs.frequency_random_multiple, rng=self._rng)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _fire(self, key: TimerKey, generation: int) -> None:
        user_id, reminder_type = key
        try:
            handler = self._registry.get(reminder_type)
        except KeyError as exc:
            self._report(exc, {"op": "fire", "user_id": user_id, "reminder_type": reminder_type})
            self._states[key] = ReminderState.IDLE
            return

        try:
            prefs = await self._preferences.load(user_id, reminder_type)
        except PersistenceError as exc:
            self._report(exc, {"op": "load_preferences", "user_id": user_id, "reminder_type": reminder_type})
            if self._is_current(key, generation):
                self._arm(key, next_delay(handler.default_frequency_minutes, False))
            return

        if not self._is_current(key, generation):
            return
        if prefs is None or not prefs.enabled:
            self._states[key] = ReminderState.IDLE
            logger.info("Reminders for %s:%s disabled, not re-arming", user_id, reminder_type)
            return

        try:
            wait_ms = self._ms_until_window(prefs)
        except ConfigurationError as exc:
            self._report(exc, {"op": "window", "user_id": user_id, "reminder_type": reminder_type})
            self._states[key] = ReminderState.IDLE
            return
        if wait_ms > 0:
            self._arm(key, wait_ms)
            return

        self._states[key] = ReminderState.DELIVERING
        self._delivering.add(key)
        sent_at = self._clock()
        try:
            resolution = await self._deliver(handler, user_id)
            await self._resolve(key, resolution, sent_at)
        finally:
            self._delivering.discard(key)

        if self._states.get(key) is ReminderState.STOPPED:
            logger.info("Reminders for %s:%s stopped during delivery, not re-arming", user_id, reminder_type)
            return
        await self._rearm(key, handler, prefs)

    async def _deliver(self, handler: ReminderHandler, user_id: str) -> Resolution:
        """Run the handler; any failure counts as an unanswered reminder."""
        try:
            return await handler.on_deliver(user_id)
        except DeliveryError as exc:
            logger.warning("Delivery to %s failed: %s", user_id, exc)
            self._report(exc, {"op": "deliver", "user_id": user_id, "reminder_type": handler.reminder_type})
        except Exception as exc:
            self._report(exc, {"op": "deliver", "user_id": user_id, "reminder_type": handler.reminder_type})
        return Resolution(source=ResolutionSource.FAILED)

    async def _resolve(self, key: TimerKey, resolution: Resolution, sent_at: datetime) -> None:
        """Persist the streak transition for a resolved cycle and emit the outcome.

        `last_sent` gets the time the reminder went out and is left alone when
        delivery failed.
        """
        user_id, reminder_type = key
        now = self._clock()
        context = {"user_id": user_id, "reminder_type": reminder_type}

        if resolution.source != ResolutionSource.FAILED:
            try:
                await self._preferences.mark_sent(user_id, reminder_type, sent_at)
            except PersistenceError as exc:
                self._report(exc, {"op": "mark_sent", **context})

        try:
            record = await self._streaks.load_streak(user_id, reminder_type)
        except PersistenceError as exc:
            self._report(exc, {"op": "load_streak", **context})
            return

        updated, outcome = advance(
            record,
            resolution.latency_ms,
            quick_threshold_ms=self._config.quick_threshold_ms,
            max_latency_ms=self._config.max_latency_ms,
            protection_cooldown_ms=self._config.protection_cooldown_ms,
            now=now,
        )
        try:
            await self._streaks.save_streak(user_id, reminder_type, updated)
        except PersistenceError as exc:
            self._report(exc, {"op": "save_streak", **context})
            return

        logger.info(
            "Cycle %s:%s resolved via %s: %s (streak %d)",
            user_id,
            reminder_type,
            resolution.source,
            outcome.kind,
            outcome.new_streak,
        )
        if self._on_outcome is not None:
            try:
                await self._on_outcome(user_id, reminder_type, resolution, outcome)
            except Exception as exc:
                self._report(exc, {"op": "on_outcome", **context})

    async def _rearm(self, key: TimerKey, handler: ReminderHandler, fallback: ReminderPreference) -> None:
        user_id, reminder_type = key
        try:
            prefs = await self._preferences.load(user_id, reminder_type)
        except PersistenceError as exc:
            self._report(exc, {"op": "load_preferences", "user_id": user_id, "reminder_type": reminder_type})
            prefs = fallback

        if self._states.get(key) is ReminderState.STOPPED:
            return
        if prefs is None or not prefs.enabled:
            self._states[key] = ReminderState.IDLE
            logger.info("Reminders for %s:%s disabled, not re-arming", user_id, reminder_type)
            return
        self._arm(key, self._next_interval(handler, prefs))

    def _report(self, exc: BaseException, context: dict[str, Any]) -> None:
        try:
            self._error_sink(exc, context)
        except Exception:
            logger.exception("Error sink failed while reporting %r", exc)
