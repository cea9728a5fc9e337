import os
from datetime import time

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_time(value: str | None, default: time) -> time:
    if not value:
        return default
    return time.fromisoformat(value.strip())


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic_scheduler.db")

CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:4200"])

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "30"))
MAX_SLOT_GENERATION_DAYS = int(os.getenv("MAX_SLOT_GENERATION_DAYS", "90"))
DEFAULT_DAY_START = _get_time(os.getenv("DEFAULT_DAY_START"), time(9, 0))
DEFAULT_DAY_END = _get_time(os.getenv("DEFAULT_DAY_END"), time(17, 0))

NOTIFICATION_CHANNEL_BUFFER = int(os.getenv("NOTIFICATION_CHANNEL_BUFFER", "100"))

APPOINTMENT_CODE_LENGTH = int(os.getenv("APPOINTMENT_CODE_LENGTH", "10"))
MAX_APPOINTMENT_NOTES_LENGTH = int(os.getenv("MAX_APPOINTMENT_NOTES_LENGTH", "600"))
BOOKING_REQUIRE_FUTURE = _get_bool(os.getenv("BOOKING_REQUIRE_FUTURE"), default=True)


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if DEFAULT_DAY_START >= DEFAULT_DAY_END:
        raise RuntimeError("DEFAULT_DAY_START must be earlier than DEFAULT_DAY_END.")
    if NOTIFICATION_CHANNEL_BUFFER < 1:
        raise RuntimeError("NOTIFICATION_CHANNEL_BUFFER must be at least 1.")
