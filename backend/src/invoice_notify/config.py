from __future__ import annotations

import os
from dataclasses import dataclass

from .models import MAX_BATCH_PAYLOADS


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Invoice Notifications"
    api_prefix: str = "/api/v1"
    runtime_secret_guard_mode: str = "warn"
    # Rendering service.
    render_service_url: str = ""
    render_service_secret: str = ""
    render_timeout_seconds: int = 30
    render_pool_size: int = 2
    render_pool_acquire_timeout_seconds: float = 30.0
    # Email provider.
    email_sender_type: str = "stub"
    email_api_base_url: str = "https://api.resend.com"
    email_api_key: str = ""
    email_from: str = "no-reply@invoices.example.com"
    email_timeout_seconds: int = 30
    operator_email: str = ""
    # Invoice store; "package.module:callable" taking Settings. Empty keeps the in-process store.
    invoice_store_factory: str = ""
    # Queue broker.
    queue_backend: str = "inmemory"
    queue_url: str = ""
    queue_host: str = "localhost"
    queue_port: int = 5432
    queue_user: str = "postgres"
    queue_password: str = ""
    queue_database: str = "invoices"
    queue_max_attempts: int = 3
    queue_backoff_seconds: float = 5.0
    queue_completed_history: int = 100
    queue_lease_seconds: int = 300
    worker_poll_interval_seconds: float = 1.0
    # Reminder scheduler.
    reminder_batch_size: int = 50

    @property
    def render_configured(self) -> bool:
        return bool(self.render_service_url.strip() and self.render_service_secret.strip())


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("INVOICING_APP_NAME", "Invoice Notifications"),
        api_prefix=os.getenv("INVOICING_API_PREFIX", "/api/v1"),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
        render_service_url=os.getenv("RENDER_SERVICE_URL", "").strip(),
        render_service_secret=os.getenv("RENDER_SERVICE_SECRET", "").strip(),
        render_timeout_seconds=_as_int(os.getenv("RENDER_TIMEOUT_SECONDS"), 30),
        render_pool_size=max(1, _as_int(os.getenv("RENDER_POOL_SIZE"), 2)),
        render_pool_acquire_timeout_seconds=_as_float(os.getenv("RENDER_POOL_ACQUIRE_TIMEOUT_SECONDS"), 30.0),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", "https://api.resend.com"),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_from=os.getenv("EMAIL_FROM", "no-reply@invoices.example.com"),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        operator_email=os.getenv("OPERATOR_EMAIL", ""),
        invoice_store_factory=os.getenv("INVOICE_STORE_FACTORY", "").strip(),
        queue_backend=_normalize_mode(
            os.getenv("QUEUE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        queue_url=os.getenv("QUEUE_URL", ""),
        queue_host=os.getenv("QUEUE_HOST", "localhost"),
        queue_port=_as_int(os.getenv("QUEUE_PORT"), 5432),
        queue_user=os.getenv("QUEUE_USER", "postgres"),
        queue_password=os.getenv("QUEUE_PASSWORD", ""),
        queue_database=os.getenv("QUEUE_DATABASE", "invoices"),
        queue_max_attempts=max(1, _as_int(os.getenv("QUEUE_MAX_ATTEMPTS"), 3)),
        queue_backoff_seconds=_as_float(os.getenv("QUEUE_BACKOFF_SECONDS"), 5.0),
        queue_completed_history=max(0, _as_int(os.getenv("QUEUE_COMPLETED_HISTORY"), 100)),
        queue_lease_seconds=max(1, _as_int(os.getenv("QUEUE_LEASE_SECONDS"), 300)),
        worker_poll_interval_seconds=_as_float(os.getenv("WORKER_POLL_INTERVAL_SECONDS"), 1.0),
        reminder_batch_size=min(MAX_BATCH_PAYLOADS, max(1, _as_int(os.getenv("REMINDER_BATCH_SIZE"), 50))),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not settings.render_service_url.strip():
        issues.append("RENDER_SERVICE_URL is not set; invoice documents cannot be rendered")
    if _is_placeholder(
        settings.render_service_secret,
        defaults={"dev-render-secret", "change-me-in-production"},
    ):
        issues.append("RENDER_SERVICE_SECRET is empty or uses a development placeholder")
    if settings.email_sender_type == "http" and not settings.email_api_key.strip():
        issues.append("EMAIL_API_KEY is required when EMAIL_SENDER_TYPE=http")
    if settings.queue_backend == "postgres" and not (settings.queue_url.strip() or settings.queue_host.strip()):
        issues.append("QUEUE_URL or QUEUE_HOST is required when QUEUE_BACKEND=postgres")
    return tuple(issues)
