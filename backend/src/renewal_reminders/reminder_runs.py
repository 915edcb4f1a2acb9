from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from itertools import count
from threading import Lock
from typing import Protocol

from sqlalchemy import Date, DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

OPEN_RUN_STATUSES = frozenset({"awaiting_start", "running", "sleeping"})


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class ReminderRunRecord:
    run_id: str
    subscription_id: str
    renewal_date: date
    status: str
    abort_reason: str | None
    next_checkpoint_index: int
    wake_at: datetime | None
    fired_count: int
    failed_count: int
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_RUN_STATUSES


@dataclass(frozen=True)
class CheckpointFireRecord:
    idempotency_key: str
    run_id: str
    subscription_id: str
    label: str
    fire_at: datetime
    fired_at: datetime
    status: str
    provider_message_id: str | None
    error_code: str | None
    error_message: str | None


class ReminderRunRepository(Protocol):
    def reset(self) -> None: ...

    def get_or_create_open_run(
        self,
        *,
        subscription_id: str,
        renewal_date: date,
        now: datetime,
    ) -> tuple[ReminderRunRecord, bool]: ...

    def get_run(self, run_id: str) -> ReminderRunRecord | None: ...

    def get_open_run(self, subscription_id: str) -> ReminderRunRecord | None: ...

    def get_latest_run(self, subscription_id: str) -> ReminderRunRecord | None: ...

    def list_open_runs(self) -> list[ReminderRunRecord]: ...

    def save_progress(
        self,
        run_id: str,
        *,
        status: str,
        next_checkpoint_index: int,
        wake_at: datetime | None,
        fired_count: int,
        failed_count: int,
        now: datetime,
    ) -> ReminderRunRecord: ...

    def finish_run(self, run_id: str, *, status: str, abort_reason: str | None, now: datetime) -> ReminderRunRecord: ...

    def claim_checkpoint(
        self,
        *,
        idempotency_key: str,
        run_id: str,
        subscription_id: str,
        label: str,
        fire_at: datetime,
        now: datetime,
    ) -> bool: ...

    def record_fire_result(
        self,
        idempotency_key: str,
        *,
        status: str,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> None: ...

    def list_fires(self, run_id: str) -> list[CheckpointFireRecord]: ...


class InMemoryReminderRunRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._run_counter = count(1)
        self._runs: dict[str, ReminderRunRecord] = {}
        self._run_ids_by_subscription: dict[str, list[str]] = {}
        self._fires: dict[str, CheckpointFireRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._run_counter = count(1)
            self._runs.clear()
            self._run_ids_by_subscription.clear()
            self._fires.clear()

    def get_or_create_open_run(
        self,
        *,
        subscription_id: str,
        renewal_date: date,
        now: datetime,
    ) -> tuple[ReminderRunRecord, bool]:
        with self._lock:
            existing = self._open_run_locked(subscription_id)
            if existing is not None:
                return existing, False
            run_id = f"wrun_{next(self._run_counter):06d}"
            run = ReminderRunRecord(
                run_id=run_id,
                subscription_id=subscription_id,
                renewal_date=renewal_date,
                status="awaiting_start",
                abort_reason=None,
                next_checkpoint_index=0,
                wake_at=None,
                fired_count=0,
                failed_count=0,
                created_at=now,
                updated_at=now,
                finished_at=None,
            )
            self._runs[run_id] = run
            self._run_ids_by_subscription.setdefault(subscription_id, []).append(run_id)
            return run, True

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def get_open_run(self, subscription_id: str) -> ReminderRunRecord | None:
        with self._lock:
            return self._open_run_locked(subscription_id)

    def get_latest_run(self, subscription_id: str) -> ReminderRunRecord | None:
        with self._lock:
            ids = self._run_ids_by_subscription.get(subscription_id, [])
            return self._runs[ids[-1]] if ids else None

    def list_open_runs(self) -> list[ReminderRunRecord]:
        with self._lock:
            return [run for run in self._runs.values() if run.is_open]

    def save_progress(
        self,
        run_id: str,
        *,
        status: str,
        next_checkpoint_index: int,
        wake_at: datetime | None,
        fired_count: int,
        failed_count: int,
        now: datetime,
    ) -> ReminderRunRecord:
        with self._lock:
            updated = replace(
                self._runs[run_id],
                status=status,
                next_checkpoint_index=next_checkpoint_index,
                wake_at=wake_at,
                fired_count=fired_count,
                failed_count=failed_count,
                updated_at=now,
            )
            self._runs[run_id] = updated
            return updated

    def finish_run(self, run_id: str, *, status: str, abort_reason: str | None, now: datetime) -> ReminderRunRecord:
        with self._lock:
            updated = replace(
                self._runs[run_id],
                status=status,
                abort_reason=abort_reason,
                wake_at=None,
                updated_at=now,
                finished_at=now,
            )
            self._runs[run_id] = updated
            return updated

    def claim_checkpoint(
        self,
        *,
        idempotency_key: str,
        run_id: str,
        subscription_id: str,
        label: str,
        fire_at: datetime,
        now: datetime,
    ) -> bool:
        with self._lock:
            if idempotency_key in self._fires:
                return False
            self._fires[idempotency_key] = CheckpointFireRecord(
                idempotency_key=idempotency_key,
                run_id=run_id,
                subscription_id=subscription_id,
                label=label,
                fire_at=fire_at,
                fired_at=now,
                status="pending",
                provider_message_id=None,
                error_code=None,
                error_message=None,
            )
            return True

    def record_fire_result(
        self,
        idempotency_key: str,
        *,
        status: str,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> None:
        with self._lock:
            row = self._fires[idempotency_key]
            self._fires[idempotency_key] = replace(
                row,
                status=status,
                provider_message_id=provider_message_id,
                error_code=error_code,
                error_message=error_message,
            )

    def list_fires(self, run_id: str) -> list[CheckpointFireRecord]:
        with self._lock:
            rows = [value for value in self._fires.values() if value.run_id == run_id]
            return sorted(rows, key=lambda value: value.fire_at)

    def _open_run_locked(self, subscription_id: str) -> ReminderRunRecord | None:
        for run_id in reversed(self._run_ids_by_subscription.get(subscription_id, [])):
            run = self._runs[run_id]
            if run.is_open:
                return run
        return None


class ReminderRunsBase(DeclarativeBase):
    pass


class _ReminderRunRow(ReminderRunsBase):
    __tablename__ = "reminder_runs"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    abort_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    next_checkpoint_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    wake_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    fired_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _CheckpointFireRow(ReminderRunsBase):
    __tablename__ = "reminder_checkpoint_fires"

    idempotency_key: Mapped[str] = mapped_column(String(256), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), ForeignKey("reminder_runs.run_id"), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(64), nullable=False)
    fire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


def _run_from_row(row: _ReminderRunRow) -> ReminderRunRecord:
    return ReminderRunRecord(
        run_id=row.run_id,
        subscription_id=row.subscription_id,
        renewal_date=row.renewal_date,
        status=row.status,
        abort_reason=row.abort_reason,
        next_checkpoint_index=row.next_checkpoint_index,
        wake_at=_coerce_optional_utc(row.wake_at),
        fired_count=row.fired_count,
        failed_count=row.failed_count,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        finished_at=_coerce_optional_utc(row.finished_at),
    )


def _fire_from_row(row: _CheckpointFireRow) -> CheckpointFireRecord:
    return CheckpointFireRecord(
        idempotency_key=row.idempotency_key,
        run_id=row.run_id,
        subscription_id=row.subscription_id,
        label=row.label,
        fire_at=_coerce_utc(row.fire_at),
        fired_at=_coerce_utc(row.fired_at),
        status=row.status,
        provider_message_id=row.provider_message_id,
        error_code=row.error_code,
        error_message=row.error_message,
    )


class SqlAlchemyReminderRunRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderRunsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_CheckpointFireRow).delete()
                session.query(_ReminderRunRow).delete()

    def get_or_create_open_run(
        self,
        *,
        subscription_id: str,
        renewal_date: date,
        now: datetime,
    ) -> tuple[ReminderRunRecord, bool]:
        with self._session() as session:
            with session.begin():
                existing = session.execute(
                    self._open_run_query(subscription_id).with_for_update()
                ).scalar_one_or_none()
                if existing is not None:
                    return _run_from_row(existing), False
                row = _ReminderRunRow(
                    run_id=f"wrun_{secrets.token_hex(8)}",
                    subscription_id=subscription_id,
                    renewal_date=renewal_date,
                    status="awaiting_start",
                    abort_reason=None,
                    next_checkpoint_index=0,
                    wake_at=None,
                    fired_count=0,
                    failed_count=0,
                    created_at=now,
                    updated_at=now,
                    finished_at=None,
                )
                session.add(row)
                session.flush()
                return _run_from_row(row), True

    def get_run(self, run_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRunRow, run_id)
            return _run_from_row(row) if row is not None else None

    def get_open_run(self, subscription_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.execute(self._open_run_query(subscription_id)).scalar_one_or_none()
            return _run_from_row(row) if row is not None else None

    def get_latest_run(self, subscription_id: str) -> ReminderRunRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_ReminderRunRow)
                .where(_ReminderRunRow.subscription_id == subscription_id)
                .order_by(_ReminderRunRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _run_from_row(row) if row is not None else None

    def list_open_runs(self) -> list[ReminderRunRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRunRow)
                .where(_ReminderRunRow.status.in_(sorted(OPEN_RUN_STATUSES)))
                .order_by(_ReminderRunRow.created_at.asc())
            ).scalars()
            return [_run_from_row(row) for row in rows]

    def save_progress(
        self,
        run_id: str,
        *,
        status: str,
        next_checkpoint_index: int,
        wake_at: datetime | None,
        fired_count: int,
        failed_count: int,
        now: datetime,
    ) -> ReminderRunRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRunRow, run_id)
                if row is None:
                    raise KeyError(run_id)
                row.status = status
                row.next_checkpoint_index = next_checkpoint_index
                row.wake_at = wake_at
                row.fired_count = fired_count
                row.failed_count = failed_count
                row.updated_at = now
                return _run_from_row(row)

    def finish_run(self, run_id: str, *, status: str, abort_reason: str | None, now: datetime) -> ReminderRunRecord:
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRunRow, run_id)
                if row is None:
                    raise KeyError(run_id)
                row.status = status
                row.abort_reason = abort_reason
                row.wake_at = None
                row.updated_at = now
                row.finished_at = now
                return _run_from_row(row)

    def claim_checkpoint(
        self,
        *,
        idempotency_key: str,
        run_id: str,
        subscription_id: str,
        label: str,
        fire_at: datetime,
        now: datetime,
    ) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _CheckpointFireRow(
                            idempotency_key=idempotency_key,
                            run_id=run_id,
                            subscription_id=subscription_id,
                            label=label,
                            fire_at=fire_at,
                            fired_at=now,
                            status="pending",
                        )
                    )
        except IntegrityError:
            return False
        return True

    def record_fire_result(
        self,
        idempotency_key: str,
        *,
        status: str,
        provider_message_id: str | None,
        error_code: str | None,
        error_message: str | None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_CheckpointFireRow, idempotency_key)
                if row is None:
                    return
                row.status = status
                row.provider_message_id = provider_message_id
                row.error_code = error_code
                row.error_message = error_message

    def list_fires(self, run_id: str) -> list[CheckpointFireRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_CheckpointFireRow)
                .where(_CheckpointFireRow.run_id == run_id)
                .order_by(_CheckpointFireRow.fire_at.asc())
            ).scalars()
            return [_fire_from_row(row) for row in rows]

    @staticmethod
    def _open_run_query(subscription_id: str):
        return (
            select(_ReminderRunRow)
            .where(_ReminderRunRow.subscription_id == subscription_id)
            .where(_ReminderRunRow.status.in_(sorted(OPEN_RUN_STATUSES)))
            .order_by(_ReminderRunRow.created_at.desc())
            .limit(1)
        )


def create_reminder_run_repository(*, backend: str, database_url: str) -> ReminderRunRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRunRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRunRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
