"""Renewal date and status derivation for subscriptions."""

from __future__ import annotations

from datetime import date, timedelta

RENEWAL_PERIOD_DAYS: dict[str, int] = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "yearly": 365,
}


class InvalidFrequencyError(ValueError):
    """Raised when a billing frequency is not one of the recognized values."""

    def __init__(self, frequency: object) -> None:
        super().__init__(
            f"unsupported frequency {frequency!r}; expected one of {', '.join(RENEWAL_PERIOD_DAYS)}"
        )
        self.frequency = frequency


def compute_renewal_date(start_date: date, frequency: str) -> date:
    period_days = RENEWAL_PERIOD_DAYS.get(frequency) if isinstance(frequency, str) else None
    if period_days is None:
        raise InvalidFrequencyError(frequency)
    return start_date + timedelta(days=period_days)


def compute_status(renewal_date: date, today: date, current_status: str) -> str:
    """Return ``expired`` once the renewal date is behind ``today``.

    Any other status is returned as-is, so a canceled subscription is never
    promoted back to active.
    """
    if renewal_date < today:
        return "expired"
    return current_status


def apply_renewal_defaults(
    *,
    start_date: date,
    frequency: str,
    renewal_date: date | None,
    status: str,
    today: date,
) -> tuple[date, str]:
    """Fill a missing renewal date and derive the stored status.

    An explicitly supplied renewal date is kept; the frequency is still
    validated so bad input surfaces to the caller either way.
    """
    derived = compute_renewal_date(start_date, frequency)
    resolved = renewal_date if renewal_date is not None else derived
    if resolved <= start_date:
        raise ValueError("renewal_date must be after start_date")
    return resolved, compute_status(resolved, today, status)
