from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .reminder_plan import DEFAULT_REMINDER_OFFSETS


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_offsets(value: str | None) -> tuple[int, ...]:
    items = _as_csv_tuple(value)
    if not items:
        return DEFAULT_REMINDER_OFFSETS
    try:
        return tuple(int(item) for item in items)
    except ValueError:
        return DEFAULT_REMINDER_OFFSETS


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Subscription Renewal Reminders"
    api_prefix: str = "/api/v1"
    subscription_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    reminder_offsets_days: tuple[int, ...] = DEFAULT_REMINDER_OFFSETS
    reminder_timezone: str = "UTC"
    # disabled | local | http
    workflow_trigger_backend: str = "local"
    workflow_trigger_url: str = "https://qstash.upstash.io"
    workflow_trigger_token: str = ""
    workflow_trigger_timeout_seconds: int = 30
    public_base_url: str = "http://localhost:8000"
    reminder_worker_enabled: bool = True
    reminder_worker_poll_seconds: float = 30.0
    notifier_sender_type: str = "stub"
    notifier_enabled: bool = True
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:5173",)
    runtime_config_guard_mode: str = "warn"

    def reminder_tzinfo(self) -> tzinfo:
        return ZoneInfo(self.reminder_timezone)

    @property
    def trigger_configured(self) -> bool:
        if self.workflow_trigger_backend == "local":
            return True
        if self.workflow_trigger_backend == "http":
            return bool(self.workflow_trigger_token.strip()) and bool(self.public_base_url.strip())
        return False


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("SUBSCRIPTIONS_APP_NAME", "Subscription Renewal Reminders"),
        api_prefix=os.getenv("SUBSCRIPTIONS_API_PREFIX", "/api/v1"),
        subscription_store_backend=os.getenv("SUBSCRIPTION_STORE_BACKEND", "inmemory"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        reminder_offsets_days=_as_offsets(os.getenv("REMINDER_OFFSETS_DAYS")),
        reminder_timezone=os.getenv("REMINDER_TIMEZONE", "UTC"),
        workflow_trigger_backend=_normalize_mode(
            os.getenv("WORKFLOW_TRIGGER_BACKEND"),
            default="local",
            allowed={"disabled", "local", "http"},
        ),
        workflow_trigger_url=os.getenv("WORKFLOW_TRIGGER_URL", "https://qstash.upstash.io"),
        workflow_trigger_token=os.getenv("WORKFLOW_TRIGGER_TOKEN", ""),
        workflow_trigger_timeout_seconds=int(os.getenv("WORKFLOW_TRIGGER_TIMEOUT_SECONDS", "30")),
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
        reminder_worker_enabled=_as_bool(os.getenv("REMINDER_WORKER_ENABLED"), True),
        reminder_worker_poll_seconds=_as_float(os.getenv("REMINDER_WORKER_POLL_SECONDS"), 30.0),
        notifier_sender_type=os.getenv("NOTIFIER_SENDER_TYPE", "stub"),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), True),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=int(os.getenv("NOTIFIER_TIMEOUT_SECONDS", "30")),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173")),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def reminder_schedule_issues(settings: Settings) -> tuple[str, ...]:
    """Issues that leave no usable reminder schedule; startup cannot proceed past them."""
    issues: list[str] = []
    try:
        settings.reminder_tzinfo()
    except (ZoneInfoNotFoundError, ValueError):
        issues.append(f"REMINDER_TIMEZONE={settings.reminder_timezone!r} is not a known IANA timezone")
    offsets = settings.reminder_offsets_days
    if not offsets or any(value <= 0 for value in offsets) or len(set(offsets)) != len(offsets):
        issues.append("REMINDER_OFFSETS_DAYS must be unique positive day counts")
    return tuple(issues)


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = list(reminder_schedule_issues(settings))
    if settings.workflow_trigger_backend != "disabled" and not settings.reminder_worker_enabled:
        issues.append(
            "REMINDER_WORKER_ENABLED=false; scheduled reminder runs will not resume "
            "unless the run endpoint is called externally"
        )
    if settings.workflow_trigger_backend == "http" and not settings.workflow_trigger_token.strip():
        issues.append(
            "WORKFLOW_TRIGGER_TOKEN is empty; reminder runs will not be scheduled "
            "while WORKFLOW_TRIGGER_BACKEND=http"
        )
    if settings.notifier_sender_type == "http" and (
        not settings.notifier_api_base_url.strip() or not settings.notifier_api_key.strip()
    ):
        issues.append("NOTIFIER_API_BASE_URL and NOTIFIER_API_KEY are required when NOTIFIER_SENDER_TYPE=http")
    uses_database = "postgres" in {
        settings.subscription_store_backend.strip().lower(),
        settings.reminder_store_backend.strip().lower(),
    }
    if uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when a store backend is set to postgres")
    return tuple(issues)
