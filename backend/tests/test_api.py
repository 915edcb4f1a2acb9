from __future__ import annotations

import time
import urllib.error
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from renewal_reminders.clock import ManualClock
from renewal_reminders.config import Settings
from renewal_reminders.main import create_app
from renewal_reminders.notifier import StubNotifierSender
from renewal_reminders.runtime import ReminderRuntime, build_runtime

NOW = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _client(**overrides: object) -> tuple[TestClient, ReminderRuntime]:
    settings = replace(Settings(), **overrides)
    runtime = build_runtime(settings, clock=ManualClock(NOW), notifier=StubNotifierSender())
    return TestClient(create_app(settings=settings, runtime=runtime)), runtime


def _subscription_payload(**overrides: object) -> dict:
    payload: dict[str, object] = {
        "name": "Netflix Premium",
        "price": 15.99,
        "currency": "USD",
        "frequency": "monthly",
        "category": "entertainment",
        "payment_method": "Credit Card",
        "start_date": "2026-01-01",
        "owner_id": "user-001",
        "owner_email": "jane@example.com",
        "owner_name": "Jane",
    }
    payload.update(overrides)
    return payload


def _set_clock(runtime: ReminderRuntime, value: datetime) -> None:
    assert isinstance(runtime.clock, ManualClock)
    runtime.clock.set(value)


def test_health_reports_trigger_state() -> None:
    client, _ = _client()

    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "trigger_configured": True, "pending_wakeups": 0}


def test_create_subscription_schedules_reminder_run() -> None:
    client, runtime = _client()

    response = client.post("/api/v1/subscriptions", json=_subscription_payload())

    assert response.status_code == 201
    body = response.json()
    assert body["subscription"]["renewal_date"] == "2026-01-31"
    assert body["subscription"]["status"] == "active"
    assert body["workflow_run_id"] == "wrun_000001"
    assert len(runtime.timer) == 1


def test_create_subscription_without_trigger_still_succeeds() -> None:
    client, runtime = _client(workflow_trigger_backend="disabled")

    response = client.post("/api/v1/subscriptions", json=_subscription_payload())

    assert response.status_code == 201
    assert response.json()["workflow_run_id"] is None
    assert runtime.repository.list_open_runs() == []


def test_create_subscription_survives_trigger_outage() -> None:
    client, _ = _client(workflow_trigger_backend="http", workflow_trigger_token="qstash-token")

    with patch("renewal_reminders.trigger.urllib.request.urlopen") as mock_urlopen:
        mock_urlopen.side_effect = urllib.error.URLError("connection refused")
        response = client.post("/api/v1/subscriptions", json=_subscription_payload())

    assert response.status_code == 201
    assert response.json()["workflow_run_id"] is None


def test_create_subscription_validation() -> None:
    client, _ = _client()

    bad_frequency = client.post("/api/v1/subscriptions", json=_subscription_payload(frequency="hourly"))
    future_start = client.post("/api/v1/subscriptions", json=_subscription_payload(start_date="2026-02-01"))
    bad_renewal = client.post(
        "/api/v1/subscriptions",
        json=_subscription_payload(renewal_date="2025-12-31"),
    )

    assert bad_frequency.status_code == 422
    assert future_start.status_code == 400
    assert "start_date" in future_start.json()["detail"]
    assert bad_renewal.status_code == 422


def test_reminder_jobs_endpoint_when_not_configured() -> None:
    client, _ = _client(workflow_trigger_backend="disabled")
    subscription_id = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()["subscription"][
        "subscription_id"
    ]

    response = client.post(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs")
    workflow = client.post("/api/v1/workflows/subscription/reminder", json={"subscription_id": subscription_id})
    health = client.get("/api/v1/health")

    assert response.status_code == 503
    assert response.json()["detail"] == "Reminder workflow is not configured"
    assert workflow.status_code == 503
    assert health.json()["trigger_configured"] is False


def test_reminder_jobs_endpoint_for_missing_subscription() -> None:
    client, _ = _client()

    response = client.post("/api/v1/subscriptions/sub_missing/reminder-jobs")

    assert response.status_code == 404


def test_reminder_jobs_endpoint_reuses_open_run() -> None:
    client, _ = _client()
    created = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()
    subscription_id = created["subscription"]["subscription_id"]

    response = client.post(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs")

    assert response.status_code == 201
    assert response.json() == {"subscription_id": subscription_id, "workflow_run_id": created["workflow_run_id"]}


def test_run_endpoint_sleeps_then_fires() -> None:
    client, runtime = _client()
    created = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()
    subscription_id = created["subscription"]["subscription_id"]
    run_url = f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/run"

    sleeping = client.post(run_url)
    _set_clock(runtime, datetime(2026, 1, 24, 0, 0, tzinfo=timezone.utc))
    fired = client.post(run_url)

    assert sleeping.status_code == 200
    assert sleeping.json()["status"] == "sleeping"
    assert sleeping.json()["wake_at"].startswith("2026-01-24T00:00:00")
    assert fired.json()["fired_labels"] == ["7 days before reminder"]
    assert fired.json()["wake_at"].startswith("2026-01-26T00:00:00")

    detail = client.get(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/{created['workflow_run_id']}")
    assert detail.status_code == 200
    assert detail.json()["fired_count"] == 1
    assert [fire["label"] for fire in detail.json()["fires"]] == ["7 days before reminder"]
    assert detail.json()["fires"][0]["status"] == "sent"


def test_workflow_trigger_endpoint_accepts_camel_case_id() -> None:
    client, _ = _client()
    subscription_id = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()["subscription"][
        "subscription_id"
    ]

    response = client.post("/api/v1/workflows/subscription/reminder", json={"subscriptionId": subscription_id})

    assert response.status_code == 202
    assert response.json()["status"] == "sleeping"


def test_cancel_stops_pending_reminders() -> None:
    client, runtime = _client()
    subscription_id = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()["subscription"][
        "subscription_id"
    ]
    client.post(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/run")

    canceled = client.put(f"/api/v1/subscriptions/{subscription_id}/cancel")
    _set_clock(runtime, datetime(2026, 1, 24, tzinfo=timezone.utc))
    outcome = client.post(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/run")

    assert canceled.status_code == 200
    assert canceled.json()["status"] == "canceled"
    assert outcome.json()["status"] == "aborted"
    assert outcome.json()["abort_reason"] == "not_active"
    assert isinstance(runtime.notifier, StubNotifierSender)
    assert runtime.notifier.sent == []


def test_renewal_change_reschedules_run() -> None:
    client, _ = _client()
    created = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()
    subscription_id = created["subscription"]["subscription_id"]

    updated = client.put(f"/api/v1/subscriptions/{subscription_id}", json={"renewal_date": "2026-03-01"})
    old_run = client.get(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/{created['workflow_run_id']}")
    new_run = client.get(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/wrun_000002")

    assert updated.status_code == 200
    assert updated.json()["renewal_date"] == "2026-03-01"
    assert old_run.json()["status"] == "aborted"
    assert old_run.json()["abort_reason"] == "renewal_rescheduled"
    assert new_run.status_code == 200
    assert new_run.json()["renewal_date"] == "2026-03-01"


def test_subscription_crud() -> None:
    client, _ = _client()
    subscription_id = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()["subscription"][
        "subscription_id"
    ]
    client.post("/api/v1/subscriptions", json=_subscription_payload(owner_id="user-002", name="Hulu"))

    listed = client.get("/api/v1/subscriptions", params={"owner_id": "user-001"})
    fetched = client.get(f"/api/v1/subscriptions/{subscription_id}")
    renamed = client.put(f"/api/v1/subscriptions/{subscription_id}", json={"name": "Netflix Standard"})
    negative_price = client.put(f"/api/v1/subscriptions/{subscription_id}", json={"price": -1})
    deleted = client.delete(f"/api/v1/subscriptions/{subscription_id}")
    missing = client.get(f"/api/v1/subscriptions/{subscription_id}")

    assert [item["subscription_id"] for item in listed.json()] == [subscription_id]
    assert fetched.json()["name"] == "Netflix Premium"
    assert renamed.json()["name"] == "Netflix Standard"
    assert negative_price.status_code == 422
    assert deleted.status_code == 204
    assert missing.status_code == 404
    assert client.put(f"/api/v1/subscriptions/{subscription_id}/cancel").status_code == 404
    assert client.delete(f"/api/v1/subscriptions/{subscription_id}").status_code == 404


def test_run_detail_for_unknown_run() -> None:
    client, _ = _client()
    subscription_id = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()["subscription"][
        "subscription_id"
    ]

    response = client.get(f"/api/v1/subscriptions/{subscription_id}/reminder-jobs/wrun_999999")

    assert response.status_code == 404


def test_lifespan_restores_pending_wakeups() -> None:
    settings = Settings()
    runtime = build_runtime(settings, clock=ManualClock(NOW))
    runtime.scheduler.repository.get_or_create_open_run(
        subscription_id="sub_000001",
        renewal_date=datetime(2026, 1, 31).date(),
        now=NOW,
    )
    runtime.worker = MagicMock()

    with TestClient(create_app(settings=settings, runtime=runtime)) as client:
        assert client.get("/api/v1/health").json()["pending_wakeups"] == 1

    runtime.worker.stop.assert_called_once()


def test_default_settings_resume_scheduled_runs_in_background() -> None:
    settings = Settings()
    runtime = build_runtime(settings, clock=ManualClock(NOW), notifier=StubNotifierSender())

    with TestClient(create_app(settings=settings, runtime=runtime)) as client:
        created = client.post("/api/v1/subscriptions", json=_subscription_payload()).json()
        run_url = (
            f"/api/v1/subscriptions/{created['subscription']['subscription_id']}"
            f"/reminder-jobs/{created['workflow_run_id']}"
        )
        deadline = time.monotonic() + 5
        status = client.get(run_url).json()["status"]
        while status == "awaiting_start" and time.monotonic() < deadline:
            time.sleep(0.05)
            status = client.get(run_url).json()["status"]
        assert runtime.worker.running

    assert status == "sleeping"
    assert not runtime.worker.running
