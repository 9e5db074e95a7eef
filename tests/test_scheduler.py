"""Tests for habitloop.integrations.scheduler: timers, cycles, stop/start races."""

from __future__ import annotations

import asyncio
import random
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from habitloop.core.config import Settings
from habitloop.core.errors import ConfigurationError, DeliveryError, PersistenceError
from habitloop.core.registry import HandlerRegistry, ReminderHandler
from habitloop.data.schemas import (
    ReminderPreference,
    Resolution,
    ResolutionSource,
    StreakLevel,
    StreakRecord,
)
from habitloop.integrations.channels.base import (
    AckResponse,
    Capability,
    ChoiceResponse,
    MessageRef,
    MessageSpec,
    NotificationChannel,
)
from habitloop.integrations.responses import race_responses
from habitloop.integrations.scheduler import ReminderScheduler, ReminderState

IN_WINDOW = datetime(2026, 6, 1, 16, 0, tzinfo=UTC)  # 09:00 in Los Angeles
BEFORE_WINDOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)  # 05:00 in Los Angeles
USER = "42"

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class ManualSleep:
    """Zero-length sleeps yield once; longer ones wait until released."""

    def __init__(self) -> None:
        self.calls: list[float] = []
        self._waiters: list[asyncio.Future[None]] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    def release_all(self) -> None:
        waiters, self._waiters = self._waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(None)


class FakePreferenceStore:
    def __init__(self) -> None:
        self.prefs: dict[tuple[str, str], ReminderPreference] = {}
        self.sent: list[tuple[str, str, datetime]] = []
        self.fail_load = False

    async def load(self, user_id: str, reminder_type: str) -> ReminderPreference | None:
        if self.fail_load:
            msg = "db down"
            raise PersistenceError(msg)
        prefs = self.prefs.get((user_id, reminder_type))
        return replace(prefs) if prefs is not None else None

    async def save(self, prefs: ReminderPreference) -> None:
        self.prefs[(prefs.user_id, prefs.reminder_type)] = replace(prefs)

    async def list_enabled(self, reminder_type: str) -> list[ReminderPreference]:
        return [replace(p) for (_, t), p in self.prefs.items() if t == reminder_type and p.enabled]

    async def mark_sent(self, user_id: str, reminder_type: str, at: datetime) -> None:
        self.sent.append((user_id, reminder_type, at))


class FakeStreakStore:
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], StreakRecord] = {}
        self.saves = 0
        self.fail_load = False

    async def load_streak(self, user_id: str, streak_type: str) -> StreakRecord:
        if self.fail_load:
            msg = "streaks unavailable"
            raise PersistenceError(msg)
        return replace(self.records.get((user_id, streak_type), StreakRecord()))

    async def save_streak(self, user_id: str, streak_type: str, record: StreakRecord) -> None:
        self.saves += 1
        self.records[(user_id, streak_type)] = replace(record)


class FakeHandler(ReminderHandler):
    reminder_type = "water"
    default_frequency_minutes = 60

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.result: Resolution = Resolution(source=ResolutionSource.CHOICE, choice="drank", latency_ms=1000)
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def on_deliver(self, user_id: str) -> Resolution:
        self.calls.append(user_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


class InstantChannel(NotificationChannel):
    """Channel where the button press and the reaction arrive together."""

    @property
    def name(self) -> str:
        return "instant"

    @property
    def capabilities(self) -> frozenset[Capability]:
        return frozenset(Capability)

    async def send(self, user_id: str, spec: MessageSpec) -> MessageRef:
        return MessageRef(channel="instant", user_id=user_id, chat_id=1, message_id=1, sent_at=IN_WINDOW)

    async def await_choice(self, ref, allowed_choices, timeout_ms):  # type: ignore[no-untyped-def]
        return ChoiceResponse("drank", 500)

    async def await_ack(self, ref, timeout_ms):  # type: ignore[no-untyped-def]
        return AckResponse(500)

    async def reply(self, ref: MessageRef, text: str) -> None:
        return None

    async def initialize(self) -> None:
        return None

    async def shutdown(self) -> None:
        return None


class RacingHandler(ReminderHandler):
    reminder_type = "water"
    default_frequency_minutes = 60

    def __init__(self, channel: NotificationChannel) -> None:
        self.channel = channel

    async def on_deliver(self, user_id: str) -> Resolution:
        ref = await self.channel.send(user_id, MessageSpec(text="Drink water", choices=["drank"]))
        return await race_responses(self.channel, ref, ["drank"], 60_000)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _prefs(**overrides: object) -> ReminderPreference:
    values: dict[str, object] = {
        "user_id": USER,
        "reminder_type": "water",
        "enabled": True,
        "start_time": "08:00",
        "end_time": "19:00",
        "timezone": "America/Los_Angeles",
        "frequency_minutes": 60,
        "random": False,
        "frequency_random_multiple": 1.0,
    }
    values.update(overrides)
    return ReminderPreference(**values)  # type: ignore[arg-type]


class Harness:
    def __init__(
        self,
        now: datetime = IN_WINDOW,
        rng: random.Random | None = None,
        handler: ReminderHandler | None = None,
    ) -> None:
        self.prefs = FakePreferenceStore()
        self.streaks = FakeStreakStore()
        self.handler = handler or FakeHandler()
        self.clock = FakeClock(now)
        self.sleep = ManualSleep()
        self.on_outcome = AsyncMock()
        self.error_sink = MagicMock()
        self.scheduler = ReminderScheduler(
            self.prefs,
            self.streaks,
            HandlerRegistry([self.handler]),
            Settings(),
            on_outcome=self.on_outcome,
            error_sink=self.error_sink,
            clock=self.clock,
            sleep=self.sleep,
            rng=rng,
        )

    def state(self) -> ReminderState:
        return self.scheduler.state_of(USER, "water")


@pytest.fixture
async def harness():  # type: ignore[no-untyped-def]
    h = Harness()
    h.prefs.prefs[(USER, "water")] = _prefs()
    yield h
    await h.scheduler.shutdown()


# ---------------------------------------------------------------------------
# start_reminders
# ---------------------------------------------------------------------------


class TestStart:
    async def test_in_window_delivers_and_rearms(self, harness: Harness) -> None:
        state = await harness.scheduler.start_reminders(USER, "water")
        assert state == ReminderState.ARMED
        await settle()

        assert harness.handler.calls == [USER]
        assert harness.sleep.calls == [0, 3600.0]
        assert harness.state() == ReminderState.ARMED
        assert harness.scheduler.live_timer_count == 1
        assert harness.streaks.records[(USER, "water")].current_streak == 1
        assert harness.prefs.sent == [(USER, "water", IN_WINDOW)]

        harness.on_outcome.assert_awaited_once()
        user_id, reminder_type, resolution, outcome = harness.on_outcome.await_args.args
        assert (user_id, reminder_type) == (USER, "water")
        assert resolution.source == ResolutionSource.CHOICE
        assert outcome.streak_increased

    async def test_outside_window_arms_for_window_start(self, harness: Harness) -> None:
        harness.clock.now = BEFORE_WINDOW
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        assert harness.handler.calls == []
        assert harness.sleep.calls == [3 * 3600.0]
        timer = harness.scheduler.timer_for(USER, "water")
        assert timer is not None
        assert timer.fire_at == datetime(2026, 6, 1, 15, 0, tzinfo=UTC)

    async def test_disabled_stays_idle(self, harness: Harness) -> None:
        harness.prefs.prefs[(USER, "water")] = _prefs(enabled=False)
        state = await harness.scheduler.start_reminders(USER, "water")
        assert state == ReminderState.IDLE
        assert harness.scheduler.live_timer_count == 0

    async def test_missing_preferences_stay_idle(self, harness: Harness) -> None:
        assert await harness.scheduler.start_reminders("nobody", "water") == ReminderState.IDLE

    async def test_unknown_type(self, harness: Harness) -> None:
        with pytest.raises(ConfigurationError):
            await harness.scheduler.start_reminders(USER, "stretch")

    async def test_restart_replaces_timer(self, harness: Harness) -> None:
        harness.clock.now = BEFORE_WINDOW
        await harness.scheduler.start_reminders(USER, "water")
        first = harness.scheduler.timer_for(USER, "water")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        second = harness.scheduler.timer_for(USER, "water")
        assert first is not None and second is not None
        assert second.generation > first.generation
        assert first.task is not None and first.task.cancelled()
        assert harness.scheduler.live_timer_count == 1

    async def test_jittered_interval(self) -> None:
        h = Harness(rng=random.Random(3))
        h.prefs.prefs[(USER, "water")] = _prefs(random=True, frequency_random_multiple=1.5)
        await h.scheduler.start_reminders(USER, "water")
        await settle()
        assert 3600.0 <= h.sleep.calls[-1] <= 5400.0
        await h.scheduler.shutdown()


# ---------------------------------------------------------------------------
# stop_reminders
# ---------------------------------------------------------------------------


class TestStop:
    async def test_stop_is_idempotent(self, harness: Harness) -> None:
        harness.clock.now = BEFORE_WINDOW
        await harness.scheduler.start_reminders(USER, "water")
        harness.scheduler.stop_reminders(USER, "water")
        harness.scheduler.stop_reminders(USER, "water")
        await settle()

        assert harness.state() == ReminderState.STOPPED
        assert harness.scheduler.live_timer_count == 0

    async def test_stop_unknown_key(self, harness: Harness) -> None:
        harness.scheduler.stop_reminders("nobody", "water")
        assert harness.scheduler.state_of("nobody", "water") == ReminderState.STOPPED

    async def test_stopped_timer_never_fires(self, harness: Harness) -> None:
        harness.clock.now = BEFORE_WINDOW
        await harness.scheduler.start_reminders(USER, "water")
        harness.scheduler.stop_reminders(USER, "water")
        harness.clock.now = IN_WINDOW
        harness.sleep.release_all()
        await settle()
        assert harness.handler.calls == []

    async def test_stop_during_delivery_finishes_cycle_without_rearm(self, harness: Harness) -> None:
        harness.handler.gate = asyncio.Event()
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        assert harness.state() == ReminderState.DELIVERING

        harness.scheduler.stop_reminders(USER, "water")
        harness.handler.gate.set()
        await settle()

        harness.on_outcome.assert_awaited_once()
        assert harness.streaks.records[(USER, "water")].current_streak == 1
        assert harness.state() == ReminderState.STOPPED
        assert harness.scheduler.live_timer_count == 0
        assert harness.sleep.calls == [0]

    async def test_start_during_delivery_revokes_stop(self, harness: Harness) -> None:
        harness.handler.gate = asyncio.Event()
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        harness.scheduler.stop_reminders(USER, "water")
        state = await harness.scheduler.start_reminders(USER, "water")
        assert state == ReminderState.DELIVERING
        harness.handler.gate.set()
        await settle()

        assert harness.handler.calls == [USER]
        assert harness.state() == ReminderState.ARMED
        assert harness.sleep.calls == [0, 3600.0]


# ---------------------------------------------------------------------------
# Timer fire
# ---------------------------------------------------------------------------


class TestFire:
    async def test_disable_mid_window_prevents_rearm(self, harness: Harness) -> None:
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        harness.prefs.prefs[(USER, "water")].enabled = False

        harness.sleep.release_all()
        await settle()

        assert harness.handler.calls == [USER]
        assert harness.state() == ReminderState.IDLE
        assert harness.scheduler.live_timer_count == 0

    async def test_fire_after_window_closes_waits_for_next_start(self, harness: Harness) -> None:
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        harness.clock.now = datetime(2026, 6, 2, 2, 30, tzinfo=UTC)  # 19:30 in Los Angeles

        harness.sleep.release_all()
        await settle()

        assert harness.handler.calls == [USER]
        assert harness.sleep.calls[-1] == 12.5 * 3600
        assert harness.state() == ReminderState.ARMED

    async def test_consecutive_cycles(self, harness: Harness) -> None:
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        for _ in range(3):
            harness.sleep.release_all()
            await settle()

        assert len(harness.handler.calls) == 4
        record = harness.streaks.records[(USER, "water")]
        assert record.current_streak == 4
        assert record.streak_level == StreakLevel.BRONZE

    async def test_last_sent_is_delivery_time(self, harness: Harness) -> None:
        harness.handler.gate = asyncio.Event()
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        harness.clock.now = IN_WINDOW.replace(minute=5)
        harness.handler.gate.set()
        await settle()

        assert harness.prefs.sent == [(USER, "water", IN_WINDOW)]

    async def test_invalid_stored_zone_stops_chain_and_reports(self, harness: Harness) -> None:
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        harness.prefs.prefs[(USER, "water")] = _prefs(timezone="Mars/Olympus_Mons")

        harness.sleep.release_all()
        await settle()

        exc, context = harness.error_sink.call_args.args
        assert isinstance(exc, ConfigurationError)
        assert context["op"] == "window"
        assert harness.state() == ReminderState.IDLE
        assert harness.scheduler.live_timer_count == 0
        assert harness.handler.calls == [USER]

    async def test_preferences_reload_failure_keeps_schedule(self, harness: Harness) -> None:
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        harness.prefs.fail_load = True

        harness.sleep.release_all()
        await settle()

        assert harness.handler.calls == [USER]
        assert harness.scheduler.live_timer_count == 1
        assert isinstance(harness.error_sink.call_args.args[0], PersistenceError)


# ---------------------------------------------------------------------------
# Failures inside a cycle
# ---------------------------------------------------------------------------


class TestCycleFailures:
    async def test_delivery_error_counts_as_timeout(self, harness: Harness) -> None:
        harness.streaks.records[(USER, "water")] = StreakRecord(current_streak=2, longest_streak=2)
        harness.handler.error = DeliveryError("blocked by user")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        exc, context = harness.error_sink.call_args.args
        assert isinstance(exc, DeliveryError)
        assert context["op"] == "deliver"
        _user, _type, resolution, outcome = harness.on_outcome.await_args.args
        assert resolution.source == ResolutionSource.FAILED
        assert outcome.protection_used
        assert harness.state() == ReminderState.ARMED

    async def test_failed_delivery_does_not_mark_sent(self, harness: Harness) -> None:
        harness.handler.error = DeliveryError("blocked by user")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        assert harness.prefs.sent == []
        assert harness.streaks.saves == 1

    async def test_unexpected_handler_error_keeps_schedule(self, harness: Harness) -> None:
        harness.handler.error = RuntimeError("boom")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        _user, _type, _resolution, outcome = harness.on_outcome.await_args.args
        assert outcome.streak_broken
        assert harness.scheduler.live_timer_count == 1

    async def test_streak_load_failure_skips_update_only(self, harness: Harness) -> None:
        harness.streaks.fail_load = True
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        harness.on_outcome.assert_not_awaited()
        assert harness.error_sink.call_args.args[1]["op"] == "load_streak"
        assert harness.sleep.calls == [0, 3600.0]

    async def test_outcome_callback_error_reported(self, harness: Harness) -> None:
        harness.on_outcome.side_effect = RuntimeError("telegram down")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()

        assert harness.error_sink.call_args.args[1]["op"] == "on_outcome"
        assert harness.state() == ReminderState.ARMED

    async def test_failing_error_sink_does_not_break_cycle(self, harness: Harness) -> None:
        harness.error_sink.side_effect = RuntimeError("sink broken")
        harness.handler.error = DeliveryError("nope")
        await harness.scheduler.start_reminders(USER, "water")
        await settle()
        assert harness.state() == ReminderState.ARMED


async def test_simultaneous_choice_and_ack_resolve_cycle_once() -> None:
    h = Harness(handler=RacingHandler(InstantChannel()))
    h.prefs.prefs[(USER, "water")] = _prefs()
    try:
        await h.scheduler.start_reminders(USER, "water")
        await settle()

        h.on_outcome.assert_awaited_once()
        assert h.streaks.saves == 1
        assert h.streaks.records[(USER, "water")].current_streak == 1
        _user, _type, resolution, _outcome = h.on_outcome.await_args.args
        assert resolution.latency_ms == 500
        assert h.state() == ReminderState.ARMED
    finally:
        await h.scheduler.shutdown()


# ---------------------------------------------------------------------------
# initialize_all / shutdown
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_initialize_all_arms_enabled(self) -> None:
        h = Harness(now=BEFORE_WINDOW)
        h.prefs.prefs[("1", "water")] = _prefs(user_id="1")
        h.prefs.prefs[("2", "water")] = _prefs(user_id="2")
        h.prefs.prefs[("3", "water")] = _prefs(user_id="3", enabled=False)

        armed = await h.scheduler.initialize_all()

        assert armed == 2
        assert h.scheduler.live_timer_count == 2
        assert h.scheduler.state_of("3", "water") == ReminderState.IDLE
        await h.scheduler.shutdown()

    async def test_initialize_all_reports_store_failure(self) -> None:
        h = Harness()
        h.prefs.fail_load = True
        h.prefs.prefs[("1", "water")] = _prefs(user_id="1")

        assert await h.scheduler.initialize_all() == 0
        h.error_sink.assert_called_once()

    async def test_shutdown_cancels_everything(self, harness: Harness) -> None:
        harness.clock.now = BEFORE_WINDOW
        await harness.scheduler.start_reminders(USER, "water")
        await harness.scheduler.shutdown()
        assert harness.scheduler.live_timer_count == 0
        assert harness.state() == ReminderState.STOPPED
