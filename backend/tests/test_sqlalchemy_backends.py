from __future__ import annotations

from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from renewal_reminders.clock import ManualClock
from renewal_reminders.models import SubscriptionCreateRequest
from renewal_reminders.notifier import StubNotifierSender
from renewal_reminders.reminder_runs import (
    InMemoryReminderRunRepository,
    SqlAlchemyReminderRunRepository,
    create_reminder_run_repository,
)
from renewal_reminders.scheduler import ReminderScheduler
from renewal_reminders.store import InMemorySubscriptionStore, SubscriptionNotFoundError
from renewal_reminders.store_backends import SqlAlchemySubscriptionStore, create_subscription_store
from renewal_reminders.timers import DurableTimer

NOW = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def _sqlite_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'reminders.db'}"


def _payload(**overrides: object) -> SubscriptionCreateRequest:
    values: dict[str, object] = {
        "name": "Spotify Family",
        "price": 16.99,
        "currency": "EUR",
        "frequency": "monthly",
        "category": "entertainment",
        "payment_method": "Debit Card",
        "start_date": date(2026, 1, 1),
        "owner_id": "user-002",
        "owner_email": "sam@example.com",
    }
    values.update(overrides)
    return SubscriptionCreateRequest(**values)


def test_subscription_store_round_trip(tmp_path: Path) -> None:
    store = SqlAlchemySubscriptionStore(_sqlite_url(tmp_path), clock=ManualClock(NOW))

    created = store.create_subscription(_payload())
    found = store.find_subscription(created.subscription_id)

    assert found is not None
    assert found.renewal_date == date(2026, 1, 31)
    assert found.created_at == NOW
    assert store.list_subscriptions(owner_id="user-002") == [found]
    assert store.list_subscriptions(owner_id="someone-else") == []


def test_subscription_store_update_rederives_renewal(tmp_path: Path) -> None:
    store = SqlAlchemySubscriptionStore(_sqlite_url(tmp_path), clock=ManualClock(NOW))
    created = store.create_subscription(_payload())

    updated = store.update_subscription(created.subscription_id, {"frequency": "weekly"})

    assert updated.renewal_date == date(2026, 1, 8)
    assert store.find_subscription(created.subscription_id) == updated


def test_subscription_store_rejects_immutable_fields(tmp_path: Path) -> None:
    store = SqlAlchemySubscriptionStore(_sqlite_url(tmp_path), clock=ManualClock(NOW))
    created = store.create_subscription(_payload())

    with pytest.raises(ValueError, match="owner_id"):
        store.update_subscription(created.subscription_id, {"owner_id": "user-999"})


def test_subscription_store_delete(tmp_path: Path) -> None:
    store = SqlAlchemySubscriptionStore(_sqlite_url(tmp_path), clock=ManualClock(NOW))
    created = store.create_subscription(_payload())

    store.delete_subscription(created.subscription_id)

    assert store.find_subscription(created.subscription_id) is None
    with pytest.raises(SubscriptionNotFoundError):
        store.delete_subscription(created.subscription_id)


def test_subscription_store_rejects_future_start(tmp_path: Path) -> None:
    store = SqlAlchemySubscriptionStore(_sqlite_url(tmp_path), clock=ManualClock(NOW))

    with pytest.raises(ValueError, match="start_date"):
        store.create_subscription(_payload(start_date=date(2026, 2, 1)))


def test_checkpoint_claim_is_unique(tmp_path: Path) -> None:
    repository = SqlAlchemyReminderRunRepository(_sqlite_url(tmp_path))
    run, created = repository.get_or_create_open_run(
        subscription_id="sub_1",
        renewal_date=date(2026, 1, 31),
        now=NOW,
    )
    assert created is True
    claim = {
        "idempotency_key": "sub_1:2026-01-31:7 days before reminder",
        "run_id": run.run_id,
        "subscription_id": "sub_1",
        "label": "7 days before reminder",
        "fire_at": datetime(2026, 1, 24, tzinfo=timezone.utc),
        "now": datetime(2026, 1, 24, tzinfo=timezone.utc),
    }

    assert repository.claim_checkpoint(**claim) is True
    assert repository.claim_checkpoint(**claim) is False

    repository.record_fire_result(
        claim["idempotency_key"],
        status="sent",
        provider_message_id="msg-1",
        error_code=None,
        error_message=None,
    )
    fires = repository.list_fires(run.run_id)
    assert len(fires) == 1
    assert fires[0].status == "sent"
    assert fires[0].fire_at == datetime(2026, 1, 24, tzinfo=timezone.utc)


def test_open_run_is_reused_until_finished(tmp_path: Path) -> None:
    repository = SqlAlchemyReminderRunRepository(_sqlite_url(tmp_path))
    first, _ = repository.get_or_create_open_run(subscription_id="sub_1", renewal_date=date(2026, 1, 31), now=NOW)
    again, created = repository.get_or_create_open_run(
        subscription_id="sub_1",
        renewal_date=date(2026, 1, 31),
        now=NOW,
    )
    assert created is False
    assert again.run_id == first.run_id

    finished = repository.finish_run(first.run_id, status="aborted", abort_reason="not_active", now=NOW)

    assert finished.is_open is False
    assert finished.finished_at == NOW
    assert repository.get_open_run("sub_1") is None
    assert repository.list_open_runs() == []
    latest = repository.get_latest_run("sub_1")
    assert latest is not None
    assert latest.abort_reason == "not_active"


def test_scheduler_survives_restart_on_sqlite(tmp_path: Path) -> None:
    url = _sqlite_url(tmp_path)
    clock = ManualClock(NOW)
    notifier = StubNotifierSender()
    store = SqlAlchemySubscriptionStore(url, clock=clock)
    subscription_id = store.create_subscription(_payload()).subscription_id

    first = ReminderScheduler(
        store=store,
        repository=SqlAlchemyReminderRunRepository(url),
        notifier=notifier,
        timer=DurableTimer(),
        clock=clock,
    )
    assert first.run(subscription_id).status == "sleeping"
    clock.set(datetime(2026, 1, 26, 6, 0, tzinfo=timezone.utc))

    repository = SqlAlchemyReminderRunRepository(url)
    timer = DurableTimer()
    assert timer.restore(repository) == 1
    second = ReminderScheduler(
        store=SqlAlchemySubscriptionStore(url, clock=clock),
        repository=repository,
        notifier=notifier,
        timer=timer,
        clock=clock,
    )
    due = timer.pop_due(clock.now())
    outcome = second.run(due[0].subscription_id)

    assert outcome.fired_labels == ("7 days before reminder", "5 days before reminder")
    assert outcome.wake_at == datetime(2026, 1, 28, tzinfo=timezone.utc)
    assert [fire.status for fire in repository.list_fires(outcome.run_id)] == ["sent", "sent"]


def test_factories_select_backend(tmp_path: Path) -> None:
    assert isinstance(
        create_subscription_store(backend="inmemory", database_url=""),
        InMemorySubscriptionStore,
    )
    assert isinstance(
        create_subscription_store(backend="postgres", database_url=_sqlite_url(tmp_path)),
        SqlAlchemySubscriptionStore,
    )
    assert isinstance(
        create_reminder_run_repository(backend="inmemory", database_url=""),
        InMemoryReminderRunRepository,
    )
    with pytest.raises(RuntimeError, match="REMINDER_STORE_BACKEND"):
        create_reminder_run_repository(backend="redis", database_url="")
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        create_reminder_run_repository(backend="postgres", database_url="")
