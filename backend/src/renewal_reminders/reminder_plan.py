from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterable

DEFAULT_REMINDER_OFFSETS: tuple[int, ...] = (7, 5, 3, 1)


@dataclass(frozen=True)
class ReminderCheckpoint:
    offset_days: int
    fire_date: date
    fire_at: datetime
    label: str


def checkpoint_label(offset_days: int) -> str:
    unit = "day" if offset_days == 1 else "days"
    return f"{offset_days} {unit} before reminder"


def checkpoint_idempotency_key(subscription_id: str, renewal_date: date, label: str) -> str:
    return f"{subscription_id}:{renewal_date.isoformat()}:{label}"


def normalize_offsets(offsets: Iterable[int]) -> tuple[int, ...]:
    values = [int(value) for value in offsets]
    if not values:
        raise ValueError("at least one reminder offset is required")
    if any(value <= 0 for value in values):
        raise ValueError("reminder offsets must be positive day counts")
    if len(set(values)) != len(values):
        raise ValueError("reminder offsets must be unique")
    return tuple(sorted(values, reverse=True))


def build_plan(
    renewal_date: date,
    offsets: Iterable[int] = DEFAULT_REMINDER_OFFSETS,
    *,
    tz: tzinfo = timezone.utc,
) -> tuple[ReminderCheckpoint, ...]:
    """Build the ordered checkpoints for one renewal cycle.

    Checkpoints are sorted by ``fire_at`` ascending (largest offset first).
    Checkpoints already in the past are kept; deciding what to do with them is
    left to the scheduler.
    """
    checkpoints: list[ReminderCheckpoint] = []
    for offset_days in normalize_offsets(offsets):
        fire_date = renewal_date - timedelta(days=offset_days)
        fire_at = datetime.combine(fire_date, time.min, tzinfo=tz).astimezone(timezone.utc)
        checkpoints.append(
            ReminderCheckpoint(
                offset_days=offset_days,
                fire_date=fire_date,
                fire_at=fire_at,
                label=checkpoint_label(offset_days),
            )
        )
    return tuple(checkpoints)
