import importlib
import logging
from datetime import UTC, datetime, timedelta

from agenda.app.core import constants


def _reload_constants(monkeypatch, **env) -> object:
    """Reload constants with a temporary env state."""
    for key, value in env.items():
        if value is None:
            monkeypatch.delenv(key, raising=False)
        else:
            monkeypatch.setenv(key, value)
    return importlib.reload(constants)


def test_env_helpers_parse_ints_and_bools(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        BOOKING_MAX_ATTEMPTS="5",
        ENFORCE_BUSINESS_HOURS="yes",
        DEFAULT_CURRENCY="eur",
        PUBLIC_BASE_URL="https://book.example.com/",
    )
    assert module.BOOKING_MAX_ATTEMPTS == 5
    assert module.ENFORCE_BUSINESS_HOURS is True
    assert module.DEFAULT_CURRENCY == "EUR"
    assert module.PUBLIC_BASE_URL == "https://book.example.com"
    _reload_constants(
        monkeypatch,
        BOOKING_MAX_ATTEMPTS=None,
        ENFORCE_BUSINESS_HOURS=None,
        DEFAULT_CURRENCY=None,
        PUBLIC_BASE_URL=None,
    )


def test_env_helpers_fallbacks(monkeypatch):
    module = _reload_constants(
        monkeypatch,
        BOOKING_MAX_ATTEMPTS="oops",
        WORKFLOW_SWEEP_INTERVAL_SECONDS="1",
        WORKFLOW_TOLERANCE_MINUTES="0",
        DEFAULT_CURRENCY="too-long",
    )
    assert module.BOOKING_MAX_ATTEMPTS == 3
    assert module.WORKFLOW_SWEEP_INTERVAL_SECONDS == 5
    assert module.WORKFLOW_TOLERANCE_MINUTES == 1
    assert module.DEFAULT_CURRENCY == "NOK"
    _reload_constants(
        monkeypatch,
        BOOKING_MAX_ATTEMPTS=None,
        WORKFLOW_SWEEP_INTERVAL_SECONDS=None,
        WORKFLOW_TOLERANCE_MINUTES=None,
        DEFAULT_CURRENCY=None,
    )


def test_currency_normalization(monkeypatch):
    module = _reload_constants(monkeypatch)
    assert module._normalize_currency("eur") == "EUR"
    assert module._normalize_currency(" usd ") == "USD"
    assert module._normalize_currency("too-long") is None
    assert module._normalize_currency("") is None


def test_setup_logging_installs_console_and_file_handlers(tmp_path):
    from rich.logging import RichHandler

    from agenda.app.core.logger import setup_logging

    root = logging.getLogger()
    saved = (root.handlers[:], root.level)
    try:
        log = setup_logging("debug", str(tmp_path / "agenda.log"))
        assert log.name == "agenda"
        assert root.level == logging.DEBUG
        assert any(isinstance(h, RichHandler) for h in root.handlers)
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert file_handlers and file_handlers[0].level == logging.WARNING
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        for handler in root.handlers:
            if handler not in saved[0]:
                handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_settings_getters(monkeypatch):
    import agenda.config as cfg

    monkeypatch.setitem(cfg.SETTINGS, "cron_secret", "s3cret")
    monkeypatch.setitem(cfg.SETTINGS, "public_base_url", "https://x.test/")
    monkeypatch.setitem(cfg.SETTINGS, "cancellation_cutoff_hours", "bad")
    assert cfg.get_cron_secret() == "s3cret"
    assert cfg.get_public_base_url() == "https://x.test"
    assert cfg.get_cancellation_cutoff_hours() == 24


def test_container_applies_scheduler_settings(monkeypatch):
    import agenda.config as cfg
    from agenda.app.core.bootstrap import build_container

    monkeypatch.setitem(cfg.SETTINGS, "workflow_tolerance_minutes", 5)
    monkeypatch.setitem(cfg.SETTINGS, "workflow_catchup_minutes", 30)
    container = build_container(session_factory=object(), email_sender=object(), http_client=object())

    now = datetime(2030, 1, 7, 9, 0, tzinfo=UTC)
    start, end = container.scheduler.candidate_window(timedelta(hours=-24), now)
    target = now - timedelta(hours=24)
    assert (start, end) == (target - timedelta(minutes=35), target + timedelta(minutes=5))
