from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Literal, Protocol

NotifierResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class ReminderNotification:
    subscription_id: str
    recipient: str
    recipient_name: str | None
    label: str
    idempotency_key: str
    subscription_name: str
    price: float
    currency: str
    frequency: str
    payment_method: str
    renewal_date: date


@dataclass(frozen=True)
class NotifierResult:
    status: NotifierResultStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class NotifierSender(Protocol):
    def send_reminder(self, notification: ReminderNotification) -> NotifierResult: ...


class StubNotifierSender:
    """Records deliveries in memory; recipients containing ``fail`` are rejected."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[ReminderNotification] = []

    def send_reminder(self, notification: ReminderNotification) -> NotifierResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return NotifierResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error_message="Live reminder delivery is disabled",
            )

        if "fail" in notification.recipient.lower():
            return NotifierResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append(notification)
        return NotifierResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=f"stub-{notification.idempotency_key}",
        )


class _NotifierSendError(Exception):
    """Internal error raised when a notifier HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class HttpNotifierSender:
    """Delivers reminders through an HTTP messaging API."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send_reminder(self, notification: ReminderNotification) -> NotifierResult:
        attempted_at = datetime.now(timezone.utc)
        greeting = notification.recipient_name or "there"
        message_body = (
            f"Hi {greeting}, your {notification.subscription_name} subscription "
            f"({notification.currency} {notification.price:.2f}, {notification.frequency}) renews on "
            f"{notification.renewal_date.isoformat()} using {notification.payment_method}."
        )
        request_payload = {
            "channel": "email",
            "recipient": notification.recipient,
            "subject": f"Subscription renewal: {notification.label}",
            "message": message_body,
            "idempotency_key": notification.idempotency_key,
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            return NotifierResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(notification.recipient)})",
            )
        return NotifierResult(
            status="sent",
            attempted_at=attempted_at,
            provider_message_id=response_data.get("message_id"),
        )

    def _post(self, body: dict[str, str]) -> dict[str, str]:
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Idempotency-Key": body["idempotency_key"],
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


def mask_email(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
