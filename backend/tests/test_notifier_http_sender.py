from __future__ import annotations

import json
import urllib.error
from datetime import date, timezone
from unittest.mock import MagicMock, patch

import pytest

from renewal_reminders.notifier import HttpNotifierSender, ReminderNotification, StubNotifierSender, mask_email


def _make_notification(*, recipient: str = "jane@example.com") -> ReminderNotification:
    return ReminderNotification(
        subscription_id="sub_000001",
        recipient=recipient,
        recipient_name="Jane",
        label="3 days before reminder",
        idempotency_key="sub_000001:2026-01-31:3 days before reminder",
        subscription_name="Netflix Premium",
        price=15.99,
        currency="USD",
        frequency="monthly",
        payment_method="Credit Card",
        renewal_date=date(2026, 1, 31),
    )


def _make_sender() -> HttpNotifierSender:
    return HttpNotifierSender(base_url="https://notify.example.test/", api_key="notify-key-abc")


def _mock_response(body: dict[str, str]) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("renewal_reminders.notifier.urllib.request.urlopen")
def test_http_sender_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-123"})

    result = _make_sender().send_reminder(_make_notification())

    assert result.status == "sent"
    assert result.provider_message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://notify.example.test/v1/messages/send"
    assert request_arg.get_header("Authorization") == "Bearer notify-key-abc"
    assert request_arg.get_header("Idempotency-key") == "sub_000001:2026-01-31:3 days before reminder"

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["recipient"] == "jane@example.com"
    assert sent_body["subject"] == "Subscription renewal: 3 days before reminder"
    assert "2026-01-31" in sent_body["message"]
    assert "Netflix Premium" in sent_body["message"]


@patch("renewal_reminders.notifier.urllib.request.urlopen")
def test_http_sender_maps_http_error_to_failed_result(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://notify.example.test",
        code=503,
        msg="Service Unavailable",
        hdrs=None,  # type: ignore[arg-type]
        fp=None,
    )

    result = _make_sender().send_reminder(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "http_503"
    assert result.error_message is not None
    assert "j***@example.com" in result.error_message
    assert "jane@example.com" not in result.error_message


@patch("renewal_reminders.notifier.urllib.request.urlopen")
def test_http_sender_maps_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    result = _make_sender().send_reminder(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "connection_error"


def test_http_sender_requires_credentials() -> None:
    with pytest.raises(ValueError, match="api_key"):
        HttpNotifierSender(base_url="https://notify.example.test", api_key="")
    with pytest.raises(ValueError, match="base_url"):
        HttpNotifierSender(base_url=" ", api_key="key")


def test_stub_sender_records_and_fails_on_demand() -> None:
    sender = StubNotifierSender()

    sent = sender.send_reminder(_make_notification())
    failed = sender.send_reminder(_make_notification(recipient="fail@example.com"))

    assert sent.status == "sent"
    assert sent.provider_message_id == "stub-sub_000001:2026-01-31:3 days before reminder"
    assert failed.status == "failed"
    assert failed.error_code == "stub_delivery_failed"
    assert len(sender.sent) == 1


def test_disabled_stub_sender_fails_every_delivery() -> None:
    result = StubNotifierSender(enabled=False).send_reminder(_make_notification())

    assert result.status == "failed"
    assert result.error_code == "notifier_disabled"


def test_mask_email() -> None:
    assert mask_email("jane@example.com") == "j***@example.com"
    assert mask_email("j@example.com") == "*@example.com"
    assert mask_email("") == "***"
