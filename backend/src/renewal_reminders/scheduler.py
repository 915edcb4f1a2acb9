"""Durable reminder workflow for a single subscription renewal cycle.

A run walks the checkpoint plan in order. Whenever the next checkpoint lies in
the future the run persists its cursor and wake time, registers the wake-up
with the timer and returns, so no thread is held while it sleeps. Re-entering
``run`` picks up from the persisted cursor. Each checkpoint is claimed in the
fire ledger under ``<subscription>:<renewal date>:<label>`` before the notifier
is called, which keeps delivery at most once per checkpoint across restarts
and duplicate triggers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone, tzinfo
from threading import Lock
from typing import Iterable

from .clock import Clock, SystemClock
from .models import SubscriptionRecord
from .notifier import NotifierResult, NotifierSender, ReminderNotification
from .reminder_plan import (
    DEFAULT_REMINDER_OFFSETS,
    ReminderCheckpoint,
    build_plan,
    checkpoint_idempotency_key,
    normalize_offsets,
)
from .reminder_runs import ReminderRunRecord, ReminderRunRepository
from .store import SubscriptionNotFoundError, SubscriptionStore
from .timers import DurableTimer

logger = logging.getLogger(__name__)

# Runs for one subscription are serialized through a fixed pool of locks.
LOCK_STRIPES = 64


@dataclass(frozen=True)
class RunOutcome:
    run_id: str | None
    subscription_id: str
    status: str
    abort_reason: str | None = None
    wake_at: datetime | None = None
    next_checkpoint_index: int = 0
    fired_labels: tuple[str, ...] = ()
    failed_labels: tuple[str, ...] = ()

    @property
    def suspended(self) -> bool:
        return self.status == "sleeping"


class ReminderScheduler:
    def __init__(
        self,
        *,
        store: SubscriptionStore,
        repository: ReminderRunRepository,
        notifier: NotifierSender,
        timer: DurableTimer,
        clock: Clock | None = None,
        offsets: Iterable[int] = DEFAULT_REMINDER_OFFSETS,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self._store = store
        self._repository = repository
        self._notifier = notifier
        self._timer = timer
        self._clock = clock or SystemClock()
        self._offsets = normalize_offsets(offsets)
        self._tz = tz
        self._locks = tuple(Lock() for _ in range(LOCK_STRIPES))

    @property
    def repository(self) -> ReminderRunRepository:
        return self._repository

    def plan_for(self, renewal_date: date) -> tuple[ReminderCheckpoint, ...]:
        return build_plan(renewal_date, self._offsets, tz=self._tz)

    def enqueue(self, subscription_id: str) -> str:
        """Open (or reuse) the run for the subscription's current cycle and wake it now."""
        with self._subscription_lock(subscription_id):
            subscription = self._store.find_subscription(subscription_id)
            if subscription is None:
                raise SubscriptionNotFoundError(subscription_id)
            now = self._clock.now()
            self._retire_stale_run(subscription, now)
            run, created = self._repository.get_or_create_open_run(
                subscription_id=subscription_id,
                renewal_date=subscription.renewal_date,
                now=now,
            )
        if created:
            self._timer.schedule(run_id=run.run_id, subscription_id=subscription_id, wake_at=now)
            logger.info("queued reminder run %s for subscription %s", run.run_id, subscription_id)
        return run.run_id

    def run(self, subscription_id: str) -> RunOutcome:
        with self._subscription_lock(subscription_id):
            return self._run_locked(subscription_id)

    def _run_locked(self, subscription_id: str) -> RunOutcome:
        now = self._clock.now()
        subscription = self._store.find_subscription(subscription_id)
        run = self._retire_stale_run(subscription, now) if subscription is not None else None
        if run is None and subscription is None:
            run = self._repository.get_open_run(subscription_id)

        if run is None:
            latest = self._repository.get_latest_run(subscription_id)
            if subscription is None:
                logger.info("subscription %s not found; stopping reminder workflow", subscription_id)
                return RunOutcome(
                    run_id=latest.run_id if latest is not None else None,
                    subscription_id=subscription_id,
                    status="aborted",
                    abort_reason="subscription_missing",
                )
            if latest is not None and latest.renewal_date == subscription.renewal_date:
                # This cycle already terminated; replaying it has no side effects.
                return self._outcome(latest)
            run, _ = self._repository.get_or_create_open_run(
                subscription_id=subscription_id,
                renewal_date=subscription.renewal_date,
                now=now,
            )

        reason = self._guard(run, subscription, now)
        if reason is not None:
            return self._abort(run, reason, now)
        return self._advance(run)

    def _retire_stale_run(self, subscription: SubscriptionRecord, now: datetime) -> ReminderRunRecord | None:
        """Return the open run for the current cycle, aborting one left on an old renewal date."""
        run = self._repository.get_open_run(subscription.subscription_id)
        if run is not None and run.renewal_date != subscription.renewal_date:
            self._abort(run, "renewal_rescheduled", now)
            return None
        return run

    def _advance(self, run: ReminderRunRecord) -> RunOutcome:
        plan = self.plan_for(run.renewal_date)
        index = run.next_checkpoint_index
        fired_count = run.fired_count
        failed_count = run.failed_count
        fired: list[str] = []
        failed: list[str] = []

        while index < len(plan):
            checkpoint = plan[index]
            now = self._clock.now()
            if checkpoint.fire_at > now:
                run = self._repository.save_progress(
                    run.run_id,
                    status="sleeping",
                    next_checkpoint_index=index,
                    wake_at=checkpoint.fire_at,
                    fired_count=fired_count,
                    failed_count=failed_count,
                    now=now,
                )
                self._timer.schedule(run_id=run.run_id, subscription_id=run.subscription_id, wake_at=checkpoint.fire_at)
                logger.info(
                    "run %s sleeping until %s for %s",
                    run.run_id,
                    checkpoint.fire_at.isoformat(),
                    checkpoint.label,
                )
                return self._outcome(run, fired=fired, failed=failed)

            # The subscription may have changed while the run was asleep.
            subscription = self._store.find_subscription(run.subscription_id)
            reason = self._guard(run, subscription, now)
            if subscription is None or reason is not None:
                self._repository.save_progress(
                    run.run_id,
                    status="running",
                    next_checkpoint_index=index,
                    wake_at=None,
                    fired_count=fired_count,
                    failed_count=failed_count,
                    now=now,
                )
                outcome = self._abort(run, reason or "subscription_missing", now)
                return replace(outcome, fired_labels=tuple(fired), failed_labels=tuple(failed))

            result = self._fire(run, subscription, checkpoint, now)
            if result == "sent":
                fired_count += 1
                fired.append(checkpoint.label)
            elif result == "failed":
                failed_count += 1
                failed.append(checkpoint.label)
            index += 1
            run = self._repository.save_progress(
                run.run_id,
                status="running",
                next_checkpoint_index=index,
                wake_at=None,
                fired_count=fired_count,
                failed_count=failed_count,
                now=now,
            )

        run = self._repository.finish_run(run.run_id, status="completed", abort_reason=None, now=self._clock.now())
        self._timer.cancel(run.run_id)
        logger.info(
            "reminder run %s completed for subscription %s (%d sent, %d failed)",
            run.run_id,
            run.subscription_id,
            run.fired_count,
            run.failed_count,
        )
        return self._outcome(run, fired=fired, failed=failed)

    def _fire(
        self,
        run: ReminderRunRecord,
        subscription: SubscriptionRecord,
        checkpoint: ReminderCheckpoint,
        now: datetime,
    ) -> str:
        idempotency_key = checkpoint_idempotency_key(run.subscription_id, run.renewal_date, checkpoint.label)
        claimed = self._repository.claim_checkpoint(
            idempotency_key=idempotency_key,
            run_id=run.run_id,
            subscription_id=run.subscription_id,
            label=checkpoint.label,
            fire_at=checkpoint.fire_at,
            now=now,
        )
        if not claimed:
            logger.info("checkpoint %s already fired; skipping", idempotency_key)
            return "skipped"

        logger.info("triggering %s for subscription %s", checkpoint.label, run.subscription_id)
        notification = ReminderNotification(
            subscription_id=subscription.subscription_id,
            recipient=subscription.owner_email,
            recipient_name=subscription.owner_name,
            label=checkpoint.label,
            idempotency_key=idempotency_key,
            subscription_name=subscription.name,
            price=subscription.price,
            currency=subscription.currency,
            frequency=subscription.frequency,
            payment_method=subscription.payment_method,
            renewal_date=subscription.renewal_date,
        )
        try:
            result = self._notifier.send_reminder(notification)
        except Exception as exc:
            logger.exception("notifier raised while sending %s", idempotency_key)
            result = NotifierResult(
                status="failed",
                attempted_at=now,
                error_code="notifier_exception",
                error_message=str(exc) or exc.__class__.__name__,
            )

        self._repository.record_fire_result(
            idempotency_key,
            status=result.status,
            provider_message_id=result.provider_message_id,
            error_code=result.error_code,
            error_message=result.error_message,
        )
        if result.status != "sent":
            logger.warning(
                "reminder %s failed (%s): %s",
                idempotency_key,
                result.error_code,
                result.error_message,
            )
        return result.status

    def _guard(self, run: ReminderRunRecord, subscription: SubscriptionRecord | None, now: datetime) -> str | None:
        if subscription is None:
            return "subscription_missing"
        if subscription.status != "active":
            return "not_active"
        if subscription.renewal_date < now.astimezone(self._tz).date():
            return "renewal_passed"
        if subscription.renewal_date != run.renewal_date:
            return "renewal_rescheduled"
        return None

    def _abort(self, run: ReminderRunRecord, reason: str, now: datetime) -> RunOutcome:
        run = self._repository.finish_run(run.run_id, status="aborted", abort_reason=reason, now=now)
        self._timer.cancel(run.run_id)
        logger.info("reminder run %s for subscription %s stopped: %s", run.run_id, run.subscription_id, reason)
        return self._outcome(run)

    @staticmethod
    def _outcome(
        run: ReminderRunRecord,
        *,
        fired: list[str] | None = None,
        failed: list[str] | None = None,
    ) -> RunOutcome:
        return RunOutcome(
            run_id=run.run_id,
            subscription_id=run.subscription_id,
            status=run.status,
            abort_reason=run.abort_reason,
            wake_at=run.wake_at,
            next_checkpoint_index=run.next_checkpoint_index,
            fired_labels=tuple(fired or ()),
            failed_labels=tuple(failed or ()),
        )

    def _subscription_lock(self, subscription_id: str) -> Lock:
        return self._locks[hash(subscription_id) % LOCK_STRIPES]
