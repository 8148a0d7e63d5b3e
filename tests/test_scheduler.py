import json
import threading

from alarms.scheduler import ThreadWakeHost
from alarms.storage import AlarmStatus
from conftest import T0

SECOND = 1_000


def test_trigger_points_at_earliest_alarm(scheduler, wake_host):
    later = scheduler.create_alarm(T0 + 20 * SECOND, T0 + 30 * SECOND, "Later")
    assert wake_host.pending().payload["alarm_id"] == later.id

    earlier = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND, "Earlier")

    pending = wake_host.pending()
    assert pending.at == T0 + 5 * SECOND
    assert pending.payload == {"alarm_id": earlier.id, "end_time": earlier.end_time}


def test_wake_activates_and_starts_session(scheduler, wake_host, lifecycle, player, timers, clock):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(5 * SECOND)

    wake_host.fire()

    assert lifecycle.get(alarm.id).status is AlarmStatus.ACTIVE
    session = scheduler.current_session
    assert session.alarm_id == alarm.id
    assert session.current_puzzle is not None
    assert player.start_calls == 1
    assert timers.last.started and timers.last.daemon
    assert timers.last.delay == 10.0
    assert wake_host.pending() is None


def test_wrong_then_right_answer_dismisses(scheduler, wake_host, lifecycle, player, timers, clock):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(5 * SECOND)
    wake_host.fire()
    session = scheduler.current_session

    wrong = session.submit_answer(str(session.current_puzzle.correct_answer + 1))
    assert wrong.attempts == 1
    assert lifecycle.get(alarm.id).status is AlarmStatus.ACTIVE

    session.submit_answer(str(session.current_puzzle.correct_answer))

    assert lifecycle.get(alarm.id).status is AlarmStatus.DISMISSED
    assert player.stop_calls == 1
    assert timers.last.cancelled
    assert scheduler.current_session is None


def test_deadline_expires_sounding_alarm(scheduler, wake_host, lifecycle, player, timers, clock, store):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(5 * SECOND)
    wake_host.fire()
    puzzle_count = len(store.all_puzzles())

    clock.advance(10 * SECOND)
    timers.last.fire()

    assert lifecycle.get(alarm.id).status is AlarmStatus.EXPIRED
    assert player.stop_calls == 1
    assert scheduler.current_session is None
    assert len(store.all_puzzles()) == puzzle_count


def test_dismissal_rearms_for_next_alarm(scheduler, wake_host, clock):
    first = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    second = scheduler.create_alarm(T0 + 40 * SECOND, T0 + 50 * SECOND)
    clock.advance(5 * SECOND)
    wake_host.fire()

    assert wake_host.pending().payload["alarm_id"] == second.id
    assert wake_host.pending().at == second.start_time

    session = scheduler.current_session
    session.submit_answer(str(session.current_puzzle.correct_answer))

    assert session.alarm_id == first.id
    assert wake_host.pending().payload["alarm_id"] == second.id


def test_cancel_withdraws_trigger(scheduler, wake_host, lifecycle):
    first = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    second = scheduler.create_alarm(T0 + 20 * SECOND, T0 + 30 * SECOND)

    scheduler.cancel_alarm(first.id)
    assert wake_host.pending().payload["alarm_id"] == second.id

    scheduler.cancel_alarm(second.id)
    assert wake_host.pending() is None
    assert lifecycle.get(second.id).status is AlarmStatus.CANCELLED


def test_stale_wake_is_ignored(scheduler, wake_host, lifecycle, player, clock):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    scheduler.cancel_alarm(alarm.id)
    clock.advance(5 * SECOND)

    wake_host.handler({"alarm_id": alarm.id, "end_time": alarm.end_time})
    wake_host.handler({"alarm_id": "al_unknown"})

    assert lifecycle.get(alarm.id).status is AlarmStatus.CANCELLED
    assert scheduler.current_session is None
    assert player.start_calls == 0


def test_late_wake_expires_without_sounding(scheduler, wake_host, lifecycle, player, clock):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(20 * SECOND)

    wake_host.fire()

    assert lifecycle.get(alarm.id).status is AlarmStatus.EXPIRED
    assert player.start_calls == 0
    assert scheduler.current_session is None


def test_overdue_active_alarm_hands_over(scheduler, wake_host, lifecycle, player, clock):
    first = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    second = scheduler.create_alarm(T0 + 15 * SECOND, T0 + 25 * SECOND)
    clock.advance(5 * SECOND)
    wake_host.fire()
    assert wake_host.pending().at == T0 + 15 * SECOND

    # the deadline timer never fired
    clock.advance(11 * SECOND)
    wake_host.fire()

    assert lifecycle.get(first.id).status is AlarmStatus.EXPIRED
    assert lifecycle.get(second.id).status is AlarmStatus.ACTIVE
    assert scheduler.current_session.alarm_id == second.id
    assert player.start_calls == 2
    assert player.stop_calls == 1
    assert wake_host.pending() is None


def test_unpersisted_activation_still_sounds(scheduler, wake_host, lifecycle, store, player, clock):
    scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(5 * SECOND)
    store.fail_writes = True

    wake_host.fire()

    session = scheduler.current_session
    assert player.start_calls == 1
    assert session is not None
    assert session.current_puzzle is None
    assert session.snapshot().error == "Failed to generate puzzle, retrying"
    assert lifecycle.active_alarm() is not None
    assert wake_host.pending() is None


def test_start_recovers_and_resumes(scheduler, wake_host, lifecycle, player, timers, clock):
    missed = lifecycle.create(T0 + 5 * SECOND, T0 + 15 * SECOND)
    current = lifecycle.create(T0 + 20 * SECOND, T0 + 40 * SECOND)
    upcoming = lifecycle.create(T0 + 60 * SECOND, T0 + 70 * SECOND)
    clock.advance(25 * SECOND)

    scheduler.start()

    assert lifecycle.get(missed.id).status is AlarmStatus.EXPIRED
    assert lifecycle.get(current.id).status is AlarmStatus.ACTIVE
    assert scheduler.current_session.alarm_id == current.id
    assert timers.last.delay == 15.0
    assert player.start_calls == 1
    assert wake_host.started
    assert wake_host.pending().payload["alarm_id"] == upcoming.id


def test_shutdown_silences_without_changing_status(scheduler, wake_host, lifecycle, player, timers, clock):
    alarm = scheduler.create_alarm(T0 + 5 * SECOND, T0 + 15 * SECOND)
    clock.advance(5 * SECOND)
    wake_host.fire()

    scheduler.shutdown()

    assert player.stop_calls == 1
    assert timers.last.cancelled
    assert wake_host.stopped
    assert scheduler.current_session is None
    assert lifecycle.get(alarm.id).status is AlarmStatus.ACTIVE


def test_thread_wake_host_persists_trigger(tmp_path):
    path = tmp_path / "wake.json"
    host = ThreadWakeHost(path, clock=lambda: T0)
    host.schedule_wake(T0 + 60 * SECOND, {"alarm_id": "al_12345678"})

    reopened = ThreadWakeHost(path, clock=lambda: T0)
    assert reopened.pending().at == T0 + 60 * SECOND
    assert reopened.pending().payload == {"alarm_id": "al_12345678"}

    reopened.cancel_wake()
    assert json.loads(path.read_text(encoding="utf-8")) is None
    assert ThreadWakeHost(path, clock=lambda: T0).pending() is None


def test_thread_wake_host_ignores_unreadable_state(tmp_path):
    path = tmp_path / "wake.json"
    path.write_text('{"payload": {}}', encoding="utf-8")

    assert ThreadWakeHost(path, clock=lambda: T0).pending() is None


def test_thread_wake_host_fires_missed_trigger_on_start(tmp_path):
    path = tmp_path / "wake.json"
    path.write_text(json.dumps({"at": T0 - SECOND, "payload": {"alarm_id": "al_abcdef12"}}), encoding="utf-8")
    received = []
    delivered = threading.Event()

    def handler(payload):
        received.append(payload)
        delivered.set()

    host = ThreadWakeHost(path, clock=lambda: T0, check_interval=0.05)
    host.set_handler(handler)
    host.start()
    try:
        assert delivered.wait(2)
    finally:
        host.stop()

    assert received == [{"alarm_id": "al_abcdef12"}]
    assert host.pending() is None
