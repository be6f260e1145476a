"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every canonical hour, cap and retry constant of the scheduler is declared here
instead of deep inside the window or dispatch code. Components take a
`Settings` instance in their constructor and fall back to the module-level
`settings`, so tests can build isolated configurations.
"""
from zoneinfo import ZoneInfo

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "UTC"

    # Rate limiting
    DAILY_CAP: int = 2
    HOURLY_CAP: int | None = None

    # Retry policy
    MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_MINUTES: int = 60
    SEND_TIMEOUT_S: float = 10.0
    STUCK_PROCESSING_MINUTES: int = 30
    DISPATCH_BATCH_SIZE: int = 200

    # Scheduling windows (local time, Python weekday numbering: Monday=0)
    IMMEDIATE_DELAY_MINUTES: int = 2
    DIGEST_HOUR: int = 20
    WEEKLY_DAY: int = 6
    WEEKLY_GENERATE_HOUR: int = 9
    WEEKLY_SEND_HOUR: int = 10
    INACTIVITY_SCAN_HOUR: int = 9
    INACTIVITY_MILESTONE_DAYS: list[int] = [14, 30]
    PHASE_TOLERANCE_MINUTES: int = 5

    # Persistence and mail provider used by the CLI and the ops server
    DATABASE_PATH: str = "notifications.db"
    MAIL_API_URL: str = "https://api.resend.com/emails"
    MAIL_API_KEY: str = ""
    MAIL_FROM: str = "Paint Tracker <noreply@painttracker.app>"

    class Config:
        env_file = ".env"
        # Tolerate missing env vars to allow easy out-of-the-box execution
        env_file_encoding = 'utf-8'
        extra = 'ignore'

    @field_validator("IMMEDIATE_DELAY_MINUTES")
    @classmethod
    def _debounce_window(cls, value: int) -> int:
        if not 2 <= value <= 5:
            raise ValueError("IMMEDIATE_DELAY_MINUTES must be between 2 and 5")
        return value

    @field_validator("WEEKLY_SEND_HOUR")
    @classmethod
    def _send_after_generate(cls, value: int, info) -> int:
        generate_hour = info.data.get("WEEKLY_GENERATE_HOUR")
        if generate_hour is not None and value <= generate_hour:
            raise ValueError("WEEKLY_SEND_HOUR must be later than WEEKLY_GENERATE_HOUR")
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.TIMEZONE)


settings = Settings()
