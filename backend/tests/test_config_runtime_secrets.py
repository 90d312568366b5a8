from __future__ import annotations

import os

from invoice_notify.config import Settings, get_settings, runtime_secret_issues
from invoice_notify.models import MAX_BATCH_PAYLOADS


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults() -> None:
    names = ("QUEUE_BACKEND", "QUEUE_MAX_ATTEMPTS", "EMAIL_SENDER_TYPE", "RUNTIME_SECRET_GUARD_MODE")
    previous = {name: _set_env(name, None) for name in names}
    try:
        settings = get_settings()
        assert settings.queue_backend == "inmemory"
        assert settings.queue_max_attempts == 3
        assert settings.queue_backoff_seconds == 5.0
        assert settings.email_sender_type == "stub"
        assert settings.runtime_secret_guard_mode == "warn"
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_unknown_modes_fall_back_to_defaults() -> None:
    previous = {
        "QUEUE_BACKEND": _set_env("QUEUE_BACKEND", "redis"),
        "RUNTIME_SECRET_GUARD_MODE": _set_env("RUNTIME_SECRET_GUARD_MODE", "ENFORCE"),
        "REMINDER_BATCH_SIZE": _set_env("REMINDER_BATCH_SIZE", "not-a-number"),
    }
    try:
        settings = get_settings()
        assert settings.queue_backend == "inmemory"
        assert settings.runtime_secret_guard_mode == "enforce"
        assert settings.reminder_batch_size == 50
    finally:
        for name, value in previous.items():
            _restore_env(name, value)


def test_configured_runtime_has_no_issues() -> None:
    settings = Settings(
        render_service_url="https://render.internal",
        render_service_secret="prod-render-secret-001",
        email_sender_type="http",
        email_api_key="re_prod_key",
    )
    assert runtime_secret_issues(settings) == ()
    assert settings.render_configured is True


def test_placeholder_render_secret_is_reported() -> None:
    issues = runtime_secret_issues(
        Settings(render_service_url="https://render.internal", render_service_secret="dev-render-secret")
    )
    assert any("RENDER_SERVICE_SECRET" in issue for issue in issues)


def test_http_email_without_api_key_is_reported() -> None:
    issues = runtime_secret_issues(
        Settings(
            render_service_url="https://render.internal",
            render_service_secret="prod-render-secret-001",
            email_sender_type="http",
        )
    )
    assert issues == ("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http",)


def test_reminder_batch_size_is_capped_at_render_batch_limit() -> None:
    previous = _set_env("REMINDER_BATCH_SIZE", "5000")
    try:
        assert get_settings().reminder_batch_size == MAX_BATCH_PAYLOADS
    finally:
        _restore_env("REMINDER_BATCH_SIZE", previous)
