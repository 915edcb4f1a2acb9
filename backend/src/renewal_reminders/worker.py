from __future__ import annotations

import logging
import threading
from datetime import timedelta

from .clock import Clock, SystemClock
from .scheduler import RunOutcome
from .timers import DurableTimer
from .trigger import TriggerGateway

logger = logging.getLogger(__name__)

RETRY_DELAY = timedelta(seconds=60)


class ReminderWorker:
    """Single background thread that resumes runs whose wake-up is due."""

    def __init__(
        self,
        *,
        timer: DurableTimer,
        gateway: TriggerGateway,
        clock: Clock | None = None,
        poll_seconds: float = 30.0,
    ) -> None:
        self._timer = timer
        self._gateway = gateway
        self._clock = clock or SystemClock()
        self._poll_seconds = poll_seconds
        self._cond = threading.Condition()
        self._stopped = True
        self._thread: threading.Thread | None = None
        timer.add_listener(self.notify)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_pending(self) -> list[RunOutcome]:
        outcomes: list[RunOutcome] = []
        for wakeup in self._timer.pop_due(self._clock.now()):
            try:
                outcomes.append(self._gateway.execute(wakeup.subscription_id))
            except Exception:
                retry_at = self._clock.now() + RETRY_DELAY
                logger.exception(
                    "resuming run %s failed; retrying at %s",
                    wakeup.run_id,
                    retry_at.isoformat(),
                )
                self._timer.schedule(run_id=wakeup.run_id, subscription_id=wakeup.subscription_id, wake_at=retry_at)
        return outcomes

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._thread = threading.Thread(target=self._loop, name="reminder-worker", daemon=True)
        self._thread.start()
        logger.info("reminder worker started")

    def stop(self) -> None:
        self._stopped = True
        self.notify()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join()
        self._thread = None

    def notify(self) -> None:
        with self._cond:
            self._cond.notify()

    def _loop(self) -> None:
        while not self._stopped:
            self.run_pending()
            with self._cond:
                if self._stopped:
                    break
                self._cond.wait(self._next_timeout())

    def _next_timeout(self) -> float:
        next_wake = self._timer.next_wake_at()
        if next_wake is None:
            return self._poll_seconds
        seconds = (next_wake - self._clock.now()).total_seconds()
        return min(max(0.0, seconds), self._poll_seconds)
