from __future__ import annotations

from typing import Any, Dict

from dotenv import load_dotenv

load_dotenv()

from agenda.app.core import constants as C  # noqa: E402

# Runtime settings (env-backed; tests may patch entries directly)
SETTINGS: Dict[str, Any] = {
    "public_base_url": C.PUBLIC_BASE_URL,
    "booking_max_attempts": C.BOOKING_MAX_ATTEMPTS,
    "enforce_business_hours": C.ENFORCE_BUSINESS_HOURS,
    "cancellation_cutoff_hours": C.DEFAULT_CANCELLATION_CUTOFF_HOURS,
    "workflow_sweep_interval_seconds": C.WORKFLOW_SWEEP_INTERVAL_SECONDS,
    "workflow_tolerance_minutes": C.WORKFLOW_TOLERANCE_MINUTES,
    "workflow_catchup_minutes": C.WORKFLOW_CATCHUP_MINUTES,
    "webhook_timeout_seconds": C.WEBHOOK_TIMEOUT_SECONDS,
    "cron_secret": C.CRON_SECRET,
    "resend_api_key": C.RESEND_API_KEY,
    "email_from_address": C.EMAIL_FROM_ADDRESS,
    "email_from_name": C.EMAIL_FROM_NAME,
}


def get_setting(key: str, default: Any = None) -> Any:
    """Return a runtime setting by key."""
    return SETTINGS.get(key, default)


def get_cron_secret() -> str:
    return str(SETTINGS.get("cron_secret") or "")


def get_public_base_url() -> str:
    return str(SETTINGS.get("public_base_url") or "").rstrip("/")


def get_cancellation_cutoff_hours() -> int:
    """Flat cancellation cutoff used when a provider has no CancellationPolicy."""
    try:
        return max(0, int(SETTINGS.get("cancellation_cutoff_hours", 24)))
    except (TypeError, ValueError):
        return 24


__all__ = [
    "SETTINGS",
    "get_setting",
    "get_cron_secret",
    "get_public_base_url",
    "get_cancellation_cutoff_hours",
]
