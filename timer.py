from __future__ import annotations

import logging
import math
import random
import threading
import time
from typing import Callable, List, Optional

from charts import PALETTE, format_time
from storage import EntryStore, TimeEntry

logger = logging.getLogger(__name__)

POLL_INTERVAL = 1.0


class ValidationError(ValueError):
    """User input was rejected before any state changed."""


class TimerStateError(RuntimeError):
    """The requested transition is not valid from the current state."""


class _Poller(threading.Thread):
    """Calls ``callback`` every ``interval`` seconds until stopped."""

    def __init__(self, callback: Callable[[], None], interval: float):
        super().__init__(daemon=True)
        self.callback = callback
        self.interval = interval
        self._stop_event = threading.Event()

    def stop(self):
        self._stop_event.set()

    def run(self):
        while not self._stop_event.wait(self.interval):
            self.callback()


class TimerSession:
    """A start/stop timer for a single user.

    Idle until :meth:`start`, Running until :meth:`stop`. While running, a
    background poll refreshes :attr:`elapsed_seconds` from the wall clock
    once per ``poll_interval``.
    """

    def __init__(self, user_id: int, clock: Callable[[], float] = time.time, poll_interval: float = POLL_INTERVAL):
        self.user_id = user_id
        self.clock = clock
        self.poll_interval = poll_interval
        self.category = ""
        self.elapsed_seconds = 0
        self.started_at: Optional[float] = None
        self._poller: Optional[_Poller] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self.started_at is not None

    def start(self, category: str) -> None:
        category = (category or "").strip()
        if not category:
            raise ValidationError("Please enter a task name!")

        with self._lock:
            if self.started_at is not None:
                raise TimerStateError("Timer is already running.")
            self.category = category
            self.elapsed_seconds = 0
            self.started_at = self.clock()
            poller = self._poller = _Poller(self.tick, self.poll_interval)
        poller.start()
        logger.info("Timer started for user %s on %r", self.user_id, category)

    def tick(self) -> int:
        with self._lock:
            return self._tick()

    def stop(self, store: EntryStore) -> List[TimeEntry]:
        """Persist the elapsed time as a new entry and return the refreshed list.

        The timer is back to Idle even when saving fails; the
        :class:`storage.StorageError` propagates to the caller.
        """
        with self._lock:
            if self.started_at is None:
                raise TimerStateError("Timer is not running.")
            seconds = self._tick()
            category = self.category
            poller = self._detach()
        _join(poller)

        color = random.choice(PALETTE)
        store.insert_entry(self.user_id, category, seconds, color)
        logger.info("Timer stopped for user %s: %r, %s", self.user_id, category, format_time(seconds))
        return store.fetch_entries(self.user_id)

    def cancel(self) -> None:
        """Drop a running timer without saving anything."""
        with self._lock:
            poller = self._detach()
        _join(poller)

    def status(self) -> dict:
        with self._lock:
            elapsed = self._tick()
            return {
                "running": self.started_at is not None,
                "category": self.category,
                "elapsed": elapsed,
                "elapsed_str": format_time(elapsed),
            }

    # The helpers below expect the caller to hold ``_lock``.

    def _tick(self) -> int:
        started_at = self.started_at
        if started_at is not None:
            self.elapsed_seconds = max(0, math.floor(self.clock() - started_at))
        return self.elapsed_seconds

    def _detach(self) -> Optional[_Poller]:
        poller = self._poller
        self._poller = None
        self.started_at = None
        self.category = ""
        self.elapsed_seconds = 0
        return poller


def _join(poller: Optional[_Poller]) -> None:
    # Joined outside the lock, since the poller's own tick() takes it.
    if poller is not None:
        poller.stop()
        if poller is not threading.current_thread():
            poller.join()
