from __future__ import annotations

from datetime import date, timezone, tzinfo
from itertools import count
from threading import Lock
from typing import Protocol

from .clock import Clock, SystemClock
from .models import SubscriptionCreateRequest, SubscriptionRecord
from .renewal import apply_renewal_defaults

_IMMUTABLE_FIELDS = {"subscription_id", "owner_id", "created_at", "updated_at"}


class SubscriptionNotFoundError(KeyError):
    """Raised when an operation references a subscription id that does not exist."""


class SubscriptionStore(Protocol):
    def reset(self) -> None: ...

    def create_subscription(self, payload: SubscriptionCreateRequest) -> SubscriptionRecord: ...

    def find_subscription(self, subscription_id: str) -> SubscriptionRecord | None: ...

    def list_subscriptions(self, *, owner_id: str | None = None) -> list[SubscriptionRecord]: ...

    def update_subscription(self, subscription_id: str, changes: dict[str, object]) -> SubscriptionRecord: ...

    def delete_subscription(self, subscription_id: str) -> None: ...


def local_today(clock: Clock, tz: tzinfo) -> date:
    return clock.now().astimezone(tz).date()


def build_new_record(
    subscription_id: str,
    payload: SubscriptionCreateRequest,
    *,
    clock: Clock,
    tz: tzinfo,
) -> SubscriptionRecord:
    today = local_today(clock, tz)
    if payload.start_date > today:
        raise ValueError("start_date must not be in the future")
    renewal_date, status = apply_renewal_defaults(
        start_date=payload.start_date,
        frequency=payload.frequency,
        renewal_date=payload.renewal_date,
        status=payload.status,
        today=today,
    )
    now = clock.now()
    return SubscriptionRecord(
        subscription_id=subscription_id,
        **payload.model_dump(exclude={"renewal_date", "status"}),
        renewal_date=renewal_date,
        status=status,
        created_at=now,
        updated_at=now,
    )


def apply_changes(
    record: SubscriptionRecord,
    changes: dict[str, object],
    *,
    clock: Clock,
    tz: tzinfo,
) -> SubscriptionRecord:
    blocked = _IMMUTABLE_FIELDS.intersection(changes)
    if blocked:
        raise ValueError(f"fields cannot be updated: {', '.join(sorted(blocked))}")
    merged = record.model_dump()
    merged.update(changes)
    # A new start date or frequency without an explicit renewal date re-derives it.
    if "renewal_date" not in changes and {"start_date", "frequency"}.intersection(changes):
        merged["renewal_date"] = None
    renewal_date, status = apply_renewal_defaults(
        start_date=merged["start_date"],
        frequency=merged["frequency"],
        renewal_date=merged["renewal_date"],
        status=merged["status"],
        today=local_today(clock, tz),
    )
    merged.update(renewal_date=renewal_date, status=status, updated_at=clock.now())
    return SubscriptionRecord.model_validate(merged)


class InMemorySubscriptionStore:
    """Deterministic in-memory subscription store with incremental ids."""

    def __init__(self, *, clock: Clock | None = None, tz: tzinfo = timezone.utc) -> None:
        self._lock = Lock()
        self._clock = clock or SystemClock()
        self._tz = tz
        self._counter = count(1)
        self._subscriptions: dict[str, SubscriptionRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = count(1)
            self._subscriptions.clear()

    def create_subscription(self, payload: SubscriptionCreateRequest) -> SubscriptionRecord:
        with self._lock:
            subscription_id = f"sub_{next(self._counter):06d}"
            record = build_new_record(subscription_id, payload, clock=self._clock, tz=self._tz)
            self._subscriptions[subscription_id] = record
            return record

    def find_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def list_subscriptions(self, *, owner_id: str | None = None) -> list[SubscriptionRecord]:
        with self._lock:
            return [
                self._subscriptions[key]
                for key in sorted(self._subscriptions)
                if owner_id is None or self._subscriptions[key].owner_id == owner_id
            ]

    def update_subscription(self, subscription_id: str, changes: dict[str, object]) -> SubscriptionRecord:
        with self._lock:
            record = self._subscriptions.get(subscription_id)
            if record is None:
                raise SubscriptionNotFoundError(subscription_id)
            updated = apply_changes(record, changes, clock=self._clock, tz=self._tz)
            self._subscriptions[subscription_id] = updated
            return updated

    def delete_subscription(self, subscription_id: str) -> None:
        with self._lock:
            if self._subscriptions.pop(subscription_id, None) is None:
                raise SubscriptionNotFoundError(subscription_id)
