import sqlite3
import threading
import time

import pytest

from charts import PALETTE
from storage import SCHEMA, EntryStore, StorageError
from timer import TimerSession, TimerStateError, ValidationError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def entry_store():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.executescript(SCHEMA)
    yield EntryStore(conn)
    conn.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer(clock):
    session = TimerSession(7, clock=clock, poll_interval=0.01)
    yield session
    session.cancel()


@pytest.mark.parametrize("category", ["", "   ", None])
def test_start_requires_category(timer, category):
    with pytest.raises(ValidationError):
        timer.start(category)
    assert not timer.running


def test_elapsed_is_whole_seconds(timer, clock):
    timer.start("Code")
    clock.advance(5.7)
    assert timer.tick() == 5
    assert timer.status() == {"running": True, "category": "Code", "elapsed": 5, "elapsed_str": "00:00:05"}


def test_poll_refreshes_elapsed(timer, clock):
    timer.start("Code")
    clock.advance(3)
    deadline = time.monotonic() + 2
    while timer.elapsed_seconds != 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert timer.elapsed_seconds == 3


def test_stop_saves_entry_and_returns_refreshed_list(timer, clock, entry_store):
    entry_store.insert_entry(7, "earlier", 10)
    timer.start("  Write docs ")
    clock.advance(61)

    entries = timer.stop(entry_store)

    assert not timer.running
    assert timer.status()["elapsed"] == 0
    assert len(entries) == 2
    saved = next(e for e in entries if e.category == "Write docs")
    assert saved.seconds == 61
    assert saved.user_id == 7
    assert saved.color in PALETTE


def test_stop_when_idle(timer, entry_store):
    with pytest.raises(TimerStateError):
        timer.stop(entry_store)


def test_start_while_running(timer):
    timer.start("a")
    with pytest.raises(TimerStateError):
        timer.start("b")
    assert timer.category == "a"


def test_storage_failure_leaves_timer_idle(timer, clock, entry_store):
    timer.start("Code")
    clock.advance(2)
    entry_store.conn.close()
    with pytest.raises(StorageError):
        timer.stop(entry_store)
    assert not timer.running


def test_cancel_discards_running_timer(timer, clock):
    timer.start("Code")
    clock.advance(10)
    timer.cancel()
    assert not timer.running
    assert timer.tick() == 0


def test_stop_while_a_tick_is_reading_the_clock(clock, entry_store):
    timer = TimerSession(7, clock=clock, poll_interval=60)
    timer.start("Code")
    clock.advance(4)

    results = {}
    stopper_started = threading.Event()

    def stop_in_background():
        stopper_started.set()
        results["entries"] = timer.stop(entry_store)

    stopper = threading.Thread(target=stop_in_background)

    def racing_clock():
        # First read: let another thread try to stop the timer mid-tick.
        if "raced" not in results:
            results["raced"] = True
            stopper.start()
            stopper_started.wait(1)
            time.sleep(0.05)
        return clock()

    timer.clock = racing_clock
    assert timer.tick() == 4
    stopper.join(2)

    assert not timer.running
    assert [e.seconds for e in results["entries"]] == [4]


def test_status_is_a_consistent_snapshot(clock):
    timer = TimerSession(7, clock=clock, poll_interval=0.001)
    seen = []
    done = threading.Event()

    def watch():
        while not done.is_set():
            seen.append(timer.status())

    watcher = threading.Thread(target=watch)
    watcher.start()
    try:
        for _ in range(50):
            timer.start("Code")
            timer.cancel()
    finally:
        done.set()
        watcher.join(2)

    for snapshot in seen:
        assert snapshot["running"] == (snapshot["category"] == "Code")
