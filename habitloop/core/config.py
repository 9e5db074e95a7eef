"""Configuration via environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # Telegram
    telegram_bot_token: str = ""
    telegram_admin_chat_id: int = 0

    # Storage
    database_path: Path = Path("data/habitloop.db")
    age_recipient: str = ""
    age_identity: str = ""
    data_lake_path: Path = Path("data/lake")
    data_audit_path: Path = Path("data/audit")

    # Reminder defaults
    default_timezone: str = "America/Los_Angeles"
    default_start_time: str = "08:00"
    default_end_time: str = "19:00"

    # Streaks
    quick_response_minutes: int = 10
    max_response_minutes: int = 60
    protection_cooldown_days: int = 7

    # Scheduler
    scheduler_enabled: bool = True

    # App
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    api_key: str = ""
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def quick_threshold_ms(self) -> int:
        return self.quick_response_minutes * 60_000

    @property
    def max_latency_ms(self) -> int:
        return self.max_response_minutes * 60_000

    @property
    def protection_cooldown_ms(self) -> int:
        return self.protection_cooldown_days * 86_400_000


settings = Settings()
