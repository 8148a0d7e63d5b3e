import random

import pytest

from alarms.events import EventBus
from alarms.lifecycle import AlarmLifecycleManager
from alarms.puzzles import PuzzleEngine
from alarms.scheduler import AlarmScheduler, PendingWake, WakeHost
from alarms.storage import AlarmStore

T0 = 1_750_000_000_000


class ManualClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, millis: int) -> None:
        self.now += millis


class RecordingPlayer:
    def __init__(self):
        self.start_calls = 0
        self.stop_calls = 0

    def start_alert(self) -> None:
        self.start_calls += 1

    def stop_alert(self) -> None:
        self.stop_calls += 1


class ManualTimer:
    def __init__(self, delay, function, args=()):
        self.delay = delay
        self.function = function
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.function(*self.args)


class TimerRecorder:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, function, args=()):
        timer = ManualTimer(delay, function, args)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> ManualTimer:
        return self.timers[-1]


class ManualWakeHost(WakeHost):
    def __init__(self):
        self.handler = None
        self._pending = None
        self.started = False
        self.stopped = False

    def set_handler(self, handler) -> None:
        self.handler = handler

    def schedule_wake(self, at: int, payload: dict) -> None:
        self._pending = PendingWake(at, dict(payload))

    def cancel_wake(self) -> None:
        self._pending = None

    def pending(self):
        return self._pending

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def fire(self) -> None:
        wake, self._pending = self._pending, None
        self.handler(wake.payload)


class FlakyStore(AlarmStore):
    fail_writes = False

    def _write(self) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        super()._write()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(tmp_path):
    return FlakyStore(tmp_path / "alarms.json")


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def puzzles(store, clock):
    return PuzzleEngine(store, rng=random.Random(7), clock=clock)


@pytest.fixture
def lifecycle(store, events, puzzles, clock):
    return AlarmLifecycleManager(store, events=events, puzzles=puzzles, clock=clock, min_duration_ms=5_000)


@pytest.fixture
def player():
    return RecordingPlayer()


@pytest.fixture
def timers():
    return TimerRecorder()


@pytest.fixture
def wake_host():
    return ManualWakeHost()


@pytest.fixture
def scheduler(lifecycle, puzzles, player, wake_host, clock, timers):
    return AlarmScheduler(
        lifecycle,
        puzzles,
        player,
        wake_host,
        clock=clock,
        timer_factory=timers,
        run_countdown=False,
    )
