from __future__ import annotations

import logging
from dataclasses import dataclass

from .clock import Clock, SystemClock
from .config import Settings
from .notifier import HttpNotifierSender, NotifierSender, StubNotifierSender
from .reminder_runs import ReminderRunRepository, create_reminder_run_repository
from .scheduler import ReminderScheduler
from .store import SubscriptionStore
from .store_backends import create_subscription_store
from .timers import DurableTimer
from .trigger import (
    HttpWorkflowTriggerClient,
    LocalWorkflowTriggerClient,
    TriggerGateway,
    WorkflowTriggerClient,
)
from .worker import ReminderWorker

logger = logging.getLogger(__name__)


@dataclass
class ReminderRuntime:
    """Collaborators shared by the HTTP routes and the background worker."""

    settings: Settings
    clock: Clock
    store: SubscriptionStore
    repository: ReminderRunRepository
    notifier: NotifierSender
    timer: DurableTimer
    scheduler: ReminderScheduler
    gateway: TriggerGateway
    worker: ReminderWorker

    def restore(self) -> int:
        return self.timer.restore(self.repository)

    def start(self) -> None:
        self.restore()
        if self.settings.reminder_worker_enabled:
            self.worker.start()

    def stop(self) -> None:
        self.worker.stop()


def create_notifier(settings: Settings) -> NotifierSender:
    if settings.notifier_sender_type.strip().lower() == "http":
        return HttpNotifierSender(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotifierSender(enabled=settings.notifier_enabled)


def create_trigger_client(settings: Settings, scheduler: ReminderScheduler) -> WorkflowTriggerClient | None:
    backend = settings.workflow_trigger_backend
    if backend == "local":
        return LocalWorkflowTriggerClient(scheduler)
    if backend == "http":
        if not settings.trigger_configured:
            logger.warning("WORKFLOW_TRIGGER_TOKEN is not set; reminder workflows are disabled")
            return None
        return HttpWorkflowTriggerClient(
            service_url=settings.workflow_trigger_url,
            token=settings.workflow_trigger_token,
            public_base_url=settings.public_base_url,
            api_prefix=settings.api_prefix,
            timeout_seconds=settings.workflow_trigger_timeout_seconds,
        )
    return None


def build_runtime(
    settings: Settings,
    *,
    clock: Clock | None = None,
    notifier: NotifierSender | None = None,
) -> ReminderRuntime:
    clock = clock or SystemClock()
    tz = settings.reminder_tzinfo()
    store = create_subscription_store(
        backend=settings.subscription_store_backend,
        database_url=settings.database_url,
        clock=clock,
        tz=tz,
    )
    repository = create_reminder_run_repository(
        backend=settings.reminder_store_backend,
        database_url=settings.database_url,
    )
    notifier = notifier or create_notifier(settings)
    timer = DurableTimer()
    scheduler = ReminderScheduler(
        store=store,
        repository=repository,
        notifier=notifier,
        timer=timer,
        clock=clock,
        offsets=settings.reminder_offsets_days,
        tz=tz,
    )
    gateway = TriggerGateway(client=create_trigger_client(settings, scheduler), scheduler=scheduler)
    worker = ReminderWorker(
        timer=timer,
        gateway=gateway,
        clock=clock,
        poll_seconds=settings.reminder_worker_poll_seconds,
    )
    return ReminderRuntime(
        settings=settings,
        clock=clock,
        store=store,
        repository=repository,
        notifier=notifier,
        timer=timer,
        scheduler=scheduler,
        gateway=gateway,
        worker=worker,
    )
