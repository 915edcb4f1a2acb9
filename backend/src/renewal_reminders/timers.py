"""Durable wake-up timer for suspended reminder runs.

The heap only indexes wake-ups in memory; the authoritative ``wake_at`` of
every open run lives in the run repository, so a restarted process calls
``restore`` to rebuild the heap before the worker starts popping entries.

Canceled or superseded wake-ups stay in the heap as stale entries until they
are popped. When a cancel leaves more than ``COMPACT_THRESHOLD`` stale entries
the heap is rebuilt from the live entries only.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime
from itertools import count
from threading import Lock
from typing import Callable

from .reminder_runs import ReminderRunRepository

logger = logging.getLogger(__name__)

COMPACT_THRESHOLD = 256


@dataclass(order=True, frozen=True)
class Wakeup:
    wake_at: datetime
    sequence: int
    run_id: str = field(compare=False)
    subscription_id: str = field(compare=False)


class DurableTimer:
    def __init__(self) -> None:
        self._lock = Lock()
        self._sequence = count(1)
        self._heap: list[Wakeup] = []
        # run_id -> sequence of the live entry; older heap entries are stale.
        self._live: dict[str, int] = {}
        self._listeners: list[Callable[[], None]] = []

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def schedule(self, *, run_id: str, subscription_id: str, wake_at: datetime) -> Wakeup:
        with self._lock:
            wakeup = Wakeup(
                wake_at=wake_at,
                sequence=next(self._sequence),
                run_id=run_id,
                subscription_id=subscription_id,
            )
            heapq.heappush(self._heap, wakeup)
            self._live[run_id] = wakeup.sequence
        for listener in self._listeners:
            listener()
        return wakeup

    def cancel(self, run_id: str) -> None:
        with self._lock:
            self._live.pop(run_id, None)
            if len(self._heap) - len(self._live) > COMPACT_THRESHOLD:
                self._compact_locked()

    def pop_due(self, now: datetime) -> list[Wakeup]:
        due: list[Wakeup] = []
        with self._lock:
            while self._heap and self._heap[0].wake_at <= now:
                wakeup = heapq.heappop(self._heap)
                if self._live.get(wakeup.run_id) != wakeup.sequence:
                    continue
                del self._live[wakeup.run_id]
                due.append(wakeup)
        return due

    def next_wake_at(self) -> datetime | None:
        with self._lock:
            while self._heap and self._live.get(self._heap[0].run_id) != self._heap[0].sequence:
                heapq.heappop(self._heap)
            return self._heap[0].wake_at if self._heap else None

    def restore(self, repository: ReminderRunRepository) -> int:
        restored = 0
        for run in repository.list_open_runs():
            # Runs interrupted before or during a step resume immediately.
            wake_at = run.wake_at if run.wake_at is not None else run.updated_at
            self.schedule(run_id=run.run_id, subscription_id=run.subscription_id, wake_at=wake_at)
            restored += 1
        if restored:
            logger.info("restored %d pending reminder wake-ups", restored)
        return restored

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)

    def _compact_locked(self) -> None:
        self._heap = [wakeup for wakeup in self._heap if self._live.get(wakeup.run_id) == wakeup.sequence]
        heapq.heapify(self._heap)
