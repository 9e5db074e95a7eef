"""FastAPI entrypoint with Telegram channel and reminder scheduler lifespan."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from habitloop.core.config import settings
from habitloop.core.errors import ConfigurationError, DeliveryError, PersistenceError
from habitloop.core.registry import HandlerRegistry
from habitloop.data.activity import ActivityLog
from habitloop.data.lake import write_audit_entry
from habitloop.data.preferences import make_preference
from habitloop.data.repository import Repository
from habitloop.data.schemas import Resolution, ResolutionSource, StreakOutcome
from habitloop.integrations.channels import MessageSpec, TelegramChannel
from habitloop.integrations.formatting import format_streak_status, format_streak_update
from habitloop.integrations.scheduler import ReminderScheduler, ReminderState, log_error_sink
from habitloop.integrations.water import WaterReminderHandler

logger = logging.getLogger(__name__)

_repository: Repository | None = None
_channel: TelegramChannel | None = None
_registry: HandlerRegistry | None = None
_scheduler: ReminderScheduler | None = None


def audit_error_sink(exc: BaseException, context: dict[str, Any]) -> None:
    """Log the error and append it to the error audit log."""
    log_error_sink(exc, context)
    write_audit_entry(
        settings.data_audit_path / "errors.jsonl",
        {
            "timestamp": datetime.now(UTC).isoformat(),
            "error": type(exc).__name__,
            "message": str(exc),
            **context,
        },
    )


async def _send_outcome(user_id: str, reminder_type: str, resolution: Resolution, outcome: StreakOutcome) -> None:
    """Tell the user how the cycle affected their streak."""
    if _channel is None or resolution.source == ResolutionSource.FAILED:
        return
    if not resolution.responded and outcome.previous_streak == 0:
        return
    try:
        await _channel.send(user_id, MessageSpec(text=format_streak_update(resolution.latency_ms, outcome)))
    except DeliveryError as exc:
        logger.warning("Streak update for %s:%s not sent: %s", user_id, reminder_type, exc)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Connect storage, start the Telegram channel and arm all enabled reminders."""
    global _repository, _channel, _registry, _scheduler  # noqa: PLW0603

    logging.basicConfig(level=settings.log_level)

    _repository = Repository(settings.database_path)
    await _repository.connect()
    activity = ActivityLog(_repository)

    if settings.telegram_bot_token:
        _channel = TelegramChannel()
        await _channel.initialize()
        _registry = HandlerRegistry([WaterReminderHandler(_channel, activity, error_sink=audit_error_sink)])

        if settings.scheduler_enabled:
            _scheduler = ReminderScheduler(
                _repository,
                activity,
                _registry,
                on_outcome=_send_outcome,
                error_sink=audit_error_sink,
            )
            await _scheduler.initialize_all()
            logger.info("Reminder scheduler started")
    else:
        logger.warning("TELEGRAM_BOT_TOKEN not set, reminders disabled")

    yield

    if _scheduler is not None:
        await _scheduler.shutdown()
        _scheduler = None
    if _channel is not None:
        await _channel.shutdown()
        _channel = None
    _registry = None
    await _repository.close()
    _repository = None


app = FastAPI(title="Habitloop", version="0.1.0", lifespan=lifespan)

_bearer_scheme = HTTPBearer()


class HealthResponse(BaseModel):
    """Response for the /health endpoint."""

    status: str


class ReminderRequest(BaseModel):
    """Body for PUT /reminders. Omitted fields fall back to defaults."""

    start_time: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    frequency_minutes: int | None = None
    random: bool | None = None
    frequency_random_multiple: float | None = None


class ReminderResponse(BaseModel):
    """Stored preferences plus the scheduler state."""

    user_id: str
    reminder_type: str
    enabled: bool
    state: str
    start_time: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    frequency_minutes: int | None = None
    random: bool | None = None
    frequency_random_multiple: float | None = None


class StreakResponse(BaseModel):
    """Streak record and a human-readable status."""

    user_id: str
    reminder_type: str
    current_streak: int
    longest_streak: int
    streak_level: str
    protection_used_count: int
    status: str


async def _verify_api_key(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),  # noqa: B008
) -> str:
    """Validate the Bearer token against the configured api_key."""
    if not settings.api_key or credentials.credentials != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return credentials.credentials


def _require_repository() -> Repository:
    if _repository is None:
        raise HTTPException(status_code=503, detail="Storage not ready")
    return _repository


def _require_known_type(reminder_type: str) -> None:
    if _registry is not None and reminder_type not in _registry:
        raise HTTPException(status_code=404, detail=f"Unknown reminder type: {reminder_type}")


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.put("/reminders/{user_id}/{reminder_type}", response_model=ReminderResponse)
async def set_reminder(
    user_id: str,
    reminder_type: str,
    body: ReminderRequest,
    _key: str = Depends(_verify_api_key),
) -> ReminderResponse:
    """Validate and save preferences, then (re)start the reminder chain."""
    repository = _require_repository()
    if _registry is None:
        raise HTTPException(status_code=503, detail="Reminders disabled")
    _require_known_type(reminder_type)

    try:
        prefs = make_preference(user_id, _registry.get(reminder_type), **body.model_dump())
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        await repository.save(prefs)
        state = ReminderState.IDLE
        if _scheduler is not None:
            state = await _scheduler.start_reminders(user_id, reminder_type)
    except PersistenceError as exc:
        logger.error("Saving reminders for %s:%s failed: %s", user_id, reminder_type, exc)
        raise HTTPException(status_code=503, detail="Storage error") from exc

    return ReminderResponse(
        user_id=user_id,
        reminder_type=reminder_type,
        enabled=prefs.enabled,
        state=str(state),
        start_time=prefs.start_time,
        end_time=prefs.end_time,
        timezone=prefs.timezone,
        frequency_minutes=prefs.frequency_minutes,
        random=prefs.random,
        frequency_random_multiple=prefs.frequency_random_multiple,
    )


@app.delete("/reminders/{user_id}/{reminder_type}", response_model=ReminderResponse)
async def disable_reminder(
    user_id: str,
    reminder_type: str,
    _key: str = Depends(_verify_api_key),
) -> ReminderResponse:
    """Disable reminders and cancel any pending timer."""
    repository = _require_repository()
    _require_known_type(reminder_type)

    if _scheduler is not None:
        _scheduler.stop_reminders(user_id, reminder_type)
    try:
        prefs = await repository.load(user_id, reminder_type)
        if prefs is not None and prefs.enabled:
            prefs.enabled = False
            await repository.save(prefs)
    except PersistenceError as exc:
        logger.error("Disabling reminders for %s:%s failed: %s", user_id, reminder_type, exc)
        raise HTTPException(status_code=503, detail="Storage error") from exc

    state = _scheduler.state_of(user_id, reminder_type) if _scheduler is not None else ReminderState.STOPPED
    return ReminderResponse(user_id=user_id, reminder_type=reminder_type, enabled=False, state=str(state))


@app.get("/streaks/{user_id}/{reminder_type}", response_model=StreakResponse)
async def get_streak(
    user_id: str,
    reminder_type: str,
    _key: str = Depends(_verify_api_key),
) -> StreakResponse:
    """Current streak record with a status summary."""
    repository = _require_repository()
    _require_known_type(reminder_type)
    try:
        record = await repository.load_streak(user_id, reminder_type)
    except PersistenceError as exc:
        logger.error("Loading streak for %s:%s failed: %s", user_id, reminder_type, exc)
        raise HTTPException(status_code=503, detail="Storage error") from exc

    return StreakResponse(
        user_id=user_id,
        reminder_type=reminder_type,
        current_streak=record.current_streak,
        longest_streak=record.longest_streak,
        streak_level=str(record.streak_level),
        protection_used_count=record.protection_used_count,
        status=format_streak_status(record, datetime.now(UTC), settings.protection_cooldown_ms),
    )


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.app_host, port=settings.app_port)


if __name__ == "__main__":
    main()
