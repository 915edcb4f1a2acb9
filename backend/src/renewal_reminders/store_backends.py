from __future__ import annotations

import secrets
from datetime import date, datetime, timezone, tzinfo

from sqlalchemy import Date, DateTime, Float, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .clock import Clock, SystemClock
from .models import SubscriptionCreateRequest, SubscriptionRecord
from .store import (
    InMemorySubscriptionStore,
    SubscriptionNotFoundError,
    SubscriptionStore,
    apply_changes,
    build_new_record,
)


class SubscriptionStoreBase(DeclarativeBase):
    pass


class _SubscriptionRow(SubscriptionStoreBase):
    __tablename__ = "subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    owner_email: Mapped[str] = mapped_column(String(256), nullable=False)
    owner_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_record(row: _SubscriptionRow) -> SubscriptionRecord:
    return SubscriptionRecord(
        subscription_id=row.subscription_id,
        name=row.name,
        price=row.price,
        currency=row.currency,  # type: ignore[arg-type]
        frequency=row.frequency,  # type: ignore[arg-type]
        category=row.category,  # type: ignore[arg-type]
        payment_method=row.payment_method,
        status=row.status,  # type: ignore[arg-type]
        start_date=row.start_date,
        renewal_date=row.renewal_date,
        owner_id=row.owner_id,
        owner_email=row.owner_email,
        owner_name=row.owner_name,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _copy_into_row(row: _SubscriptionRow, record: SubscriptionRecord) -> None:
    for key, value in record.model_dump().items():
        setattr(row, key, value)


class SqlAlchemySubscriptionStore:
    def __init__(self, database_url: str, *, clock: Clock | None = None, tz: tzinfo = timezone.utc) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SUBSCRIPTION_STORE_BACKEND=postgres")
        self._clock = clock or SystemClock()
        self._tz = tz
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SubscriptionStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_SubscriptionRow).delete()

    def create_subscription(self, payload: SubscriptionCreateRequest) -> SubscriptionRecord:
        subscription_id = f"sub_{secrets.token_hex(8)}"
        record = build_new_record(subscription_id, payload, clock=self._clock, tz=self._tz)
        with self._session() as session:
            with session.begin():
                row = _SubscriptionRow()
                _copy_into_row(row, record)
                session.add(row)
        return record

    def find_subscription(self, subscription_id: str) -> SubscriptionRecord | None:
        with self._session() as session:
            row = session.get(_SubscriptionRow, subscription_id)
            if row is None:
                return None
            return _to_record(row)

    def list_subscriptions(self, *, owner_id: str | None = None) -> list[SubscriptionRecord]:
        with self._session() as session:
            query = select(_SubscriptionRow).order_by(_SubscriptionRow.created_at.asc())
            if owner_id is not None:
                query = query.where(_SubscriptionRow.owner_id == owner_id)
            return [_to_record(row) for row in session.execute(query).scalars()]

    def update_subscription(self, subscription_id: str, changes: dict[str, object]) -> SubscriptionRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription_id)
                if row is None:
                    raise SubscriptionNotFoundError(subscription_id)
                updated = apply_changes(_to_record(row), changes, clock=self._clock, tz=self._tz)
                _copy_into_row(row, updated)
                return updated

    def delete_subscription(self, subscription_id: str) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_SubscriptionRow, subscription_id)
                if row is None:
                    raise SubscriptionNotFoundError(subscription_id)
                session.delete(row)


def create_subscription_store(
    *,
    backend: str,
    database_url: str,
    clock: Clock | None = None,
    tz: tzinfo = timezone.utc,
) -> SubscriptionStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySubscriptionStore(database_url, clock=clock, tz=tz)
    if normalized == "inmemory":
        return InMemorySubscriptionStore(clock=clock, tz=tz)
    raise RuntimeError(f"unsupported SUBSCRIPTION_STORE_BACKEND: {backend}")
