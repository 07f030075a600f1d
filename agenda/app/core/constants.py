from __future__ import annotations

import os


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return str(val).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_str(name: str, default: str = "") -> str:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val.strip()


def _normalize_currency(code: str | None) -> str | None:
    if not code:
        return None
    cleaned = str(code).strip().upper()
    if len(cleaned) == 3 and cleaned.isalpha():
        return cleaned
    return None


# Timezone / locale
DEFAULT_TIMEZONE: str = _env_str("DEFAULT_TIMEZONE", "Europe/Oslo")
DEFAULT_CURRENCY: str = _normalize_currency(os.getenv("DEFAULT_CURRENCY")) or "NOK"
DATE_FORMAT: str = _env_str("DATE_FORMAT", "%A, %d %B %Y")
TIME_FORMAT: str = _env_str("TIME_FORMAT", "%H:%M")

# Public links used in notification templates
PUBLIC_BASE_URL: str = _env_str("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# Booking admission
BOOKING_MAX_ATTEMPTS: int = max(1, _env_int("BOOKING_MAX_ATTEMPTS", 3))
ENFORCE_BUSINESS_HOURS: bool = _env_bool("ENFORCE_BUSINESS_HOURS", False)
DEFAULT_CANCELLATION_CUTOFF_HOURS: int = max(0, _env_int("DEFAULT_CANCELLATION_CUTOFF_HOURS", 24))

# Workflow scheduler
WORKFLOW_SWEEP_INTERVAL_SECONDS: int = max(5, _env_int("WORKFLOW_SWEEP_INTERVAL_SECONDS", 600))
WORKFLOW_TOLERANCE_MINUTES: int = max(1, _env_int("WORKFLOW_TOLERANCE_MINUTES", 15))
WORKFLOW_CATCHUP_MINUTES: int = max(0, _env_int("WORKFLOW_CATCHUP_MINUTES", 0))
WEBHOOK_TIMEOUT_SECONDS: int = max(1, _env_int("WEBHOOK_TIMEOUT_SECONDS", 10))
CRON_SECRET: str = _env_str("CRON_SECRET", "")

# Email (Resend)
RESEND_API_KEY: str = _env_str("RESEND_API_KEY", "")
EMAIL_FROM_ADDRESS: str = _env_str("EMAIL_FROM_ADDRESS", "bookings@example.com")
EMAIL_FROM_NAME: str = _env_str("EMAIL_FROM_NAME", "Agenda")

# Feature flags / logging
LOG_LEVEL_NAME: str = _env_str("LOG_LEVEL", "INFO").upper()
LOG_FILE: str = _env_str("LOG_FILE", "")
AUTO_CREATE_SCHEMA: bool = _env_bool("AUTO_CREATE_SCHEMA", False)

__all__ = [
    "DEFAULT_TIMEZONE",
    "DEFAULT_CURRENCY",
    "DATE_FORMAT",
    "TIME_FORMAT",
    "PUBLIC_BASE_URL",
    "BOOKING_MAX_ATTEMPTS",
    "ENFORCE_BUSINESS_HOURS",
    "DEFAULT_CANCELLATION_CUTOFF_HOURS",
    "WORKFLOW_SWEEP_INTERVAL_SECONDS",
    "WORKFLOW_TOLERANCE_MINUTES",
    "WORKFLOW_CATCHUP_MINUTES",
    "WEBHOOK_TIMEOUT_SECONDS",
    "CRON_SECRET",
    "RESEND_API_KEY",
    "EMAIL_FROM_ADDRESS",
    "EMAIL_FROM_NAME",
    "LOG_LEVEL_NAME",
    "LOG_FILE",
    "AUTO_CREATE_SCHEMA",
]
