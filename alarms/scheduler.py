from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Event, Lock, RLock, Thread, Timer
from typing import Callable, Optional

from time_utils import now_ms

from .errors import AlarmError, Conflict
from .lifecycle import AlarmLifecycleManager
from .puzzles import PuzzleEngine
from .session import MAX_ANSWER_LENGTH, DismissalSession, SessionState
from .sounds import AlarmSoundPlayer
from .storage import Alarm

logger = logging.getLogger(__name__)

WakeHandler = Callable[[dict], None]


@dataclass
class PendingWake:
    at: int
    payload: dict


class WakeHost:
    """Host deferred-wake primitive: one outstanding trigger at a time."""

    def set_handler(self, handler: WakeHandler) -> None:
        raise NotImplementedError

    def schedule_wake(self, at: int, payload: dict) -> None:
        raise NotImplementedError

    def cancel_wake(self) -> None:
        raise NotImplementedError

    def pending(self) -> Optional[PendingWake]:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass


class ThreadWakeHost(WakeHost):
    """Wake host backed by a daemon thread and a JSON file.

    The pending trigger is written to ``state_path`` so that a trigger whose
    time passed while the process was down fires as soon as the host starts.
    """

    def __init__(self, state_path: Path, clock: Callable[[], int] = now_ms, check_interval: float = 0.8):
        self.state_path = Path(state_path)
        self.clock = clock
        self.check_interval = max(0.05, check_interval)
        self._handler: Optional[WakeHandler] = None
        self._pending: Optional[PendingWake] = _load_pending(self.state_path)
        self._lock = Lock()
        self._changed = Event()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    def set_handler(self, handler: WakeHandler) -> None:
        self._handler = handler

    def schedule_wake(self, at: int, payload: dict) -> None:
        with self._lock:
            self._pending = PendingWake(at=at, payload=dict(payload))
            self._save()
        logger.info("Wake trigger armed for %s (payload=%s)", at, payload)
        self._changed.set()

    def cancel_wake(self) -> None:
        with self._lock:
            if self._pending is None:
                return
            self._pending = None
            self._save()
        logger.info("Wake trigger cancelled")
        self._changed.set()

    def pending(self) -> Optional[PendingWake]:
        with self._lock:
            if self._pending is None:
                return None
            return PendingWake(self._pending.at, dict(self._pending.payload))

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="wake-host", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._changed.set()
        if self._thread:
            self._thread.join(timeout=2)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            due = self._pop_due()
            if due is not None:
                self._deliver(due)
                continue
            pending = self.pending()
            timeout = self.check_interval
            if pending is not None:
                timeout = min(timeout, max(0.0, (pending.at - self.clock()) / 1000))
            self._changed.wait(timeout)
            self._changed.clear()

    def _pop_due(self) -> Optional[PendingWake]:
        with self._lock:
            if self._pending is None or self._pending.at > self.clock():
                return None
            due = self._pending
            self._pending = None
            self._save()
            return due

    def _deliver(self, wake: PendingWake) -> None:
        if not self._handler:
            logger.warning("Wake trigger fired with no handler registered")
            return
        try:
            self._handler(wake.payload)
        except Exception:  # pragma: no cover - handler safety
            logger.error("Wake handler failed", exc_info=True)

    def _save(self) -> None:
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_name(self.state_path.name + ".tmp")
            body = {"at": self._pending.at, "payload": self._pending.payload} if self._pending else None
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(body, f)
            os.replace(tmp_path, self.state_path)
        except OSError as exc:
            logger.error("Failed to persist wake trigger to %s: %s", self.state_path, exc)


def _load_pending(path: Path) -> Optional[PendingWake]:
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            body = json.load(f)
        if not body:
            return None
        return PendingWake(at=int(body["at"]), payload=dict(body.get("payload") or {}))
    except (OSError, ValueError, KeyError, TypeError) as exc:
        logger.warning("Ignoring unreadable wake state %s: %s", path, exc)
        return None


class AlarmScheduler:
    """Turns scheduled alarms into wake triggers and sounding sessions.

    Exactly one wake trigger is outstanding, for the earliest scheduled alarm.
    When it fires the alarm is activated, a ``DismissalSession`` begins and a
    local deadline timer is armed for the alarm's end time.
    """

    def __init__(
        self,
        lifecycle: AlarmLifecycleManager,
        puzzles: PuzzleEngine,
        player: AlarmSoundPlayer,
        wake_host: WakeHost,
        clock: Callable[[], int] = now_ms,
        timer_factory: Callable[..., Timer] = Timer,
        on_session_started: Optional[Callable[[DismissalSession], None]] = None,
        session_listener: Optional[Callable[[SessionState], None]] = None,
        max_answer_length: int = MAX_ANSWER_LENGTH,
        run_countdown: bool = True,
    ):
        self.lifecycle = lifecycle
        self.puzzles = puzzles
        self.player = player
        self.wake_host = wake_host
        self.clock = clock
        self.timer_factory = timer_factory
        self.on_session_started = on_session_started
        self.session_listener = session_listener
        self.max_answer_length = max_answer_length
        self.run_countdown = run_countdown

        self._lock = RLock()
        self._session: Optional[DismissalSession] = None
        self._deadline: Optional[Timer] = None
        self.wake_host.set_handler(self.on_wake)

    @property
    def current_session(self) -> Optional[DismissalSession]:
        with self._lock:
            if self._session and not self._session.is_closed:
                return self._session
            return None

    def start(self, now: Optional[int] = None) -> None:
        now = self.clock() if now is None else now
        self.lifecycle.recover_state(now)
        active = self.lifecycle.active_alarm()
        if active is not None:
            logger.info("Resuming session for active alarm %s", active.id)
            self._begin_session(active)
        self.schedule_next(now)
        self.wake_host.start()

    def shutdown(self) -> None:
        with self._lock:
            self._cancel_deadline()
            session = self._session
            self._session = None
        if session is not None:
            session.on_end = None
            session.end("shutdown")
        self.wake_host.stop()

    # commands

    def create_alarm(self, start_time: int, end_time: int, label: str = "") -> Alarm:
        alarm = self.lifecycle.create(start_time, end_time, label)
        self.schedule_next()
        return alarm

    def cancel_alarm(self, alarm_id: str) -> None:
        self.lifecycle.cancel(alarm_id)
        self.schedule_next()

    def schedule_next(self, now: Optional[int] = None) -> Optional[Alarm]:
        now = self.clock() if now is None else now
        with self._lock:
            upcoming = self.lifecycle.next_scheduled(now)
            pending = self.wake_host.pending()
            if upcoming is None:
                if pending is not None:
                    self.wake_host.cancel_wake()
                return None
            at = upcoming.start_time
            active = self.lifecycle.active_alarm()
            if active is not None and active.id != upcoming.id:
                at = max(at, active.end_time)
            if pending is not None and pending.at == at and pending.payload.get("alarm_id") == upcoming.id:
                return upcoming
            self.wake_host.schedule_wake(at, {"alarm_id": upcoming.id, "end_time": upcoming.end_time})
            return upcoming

    # triggers

    def on_wake(self, payload: dict) -> None:
        alarm_id = payload.get("alarm_id")
        try:
            self._handle_wake(alarm_id)
        except AlarmError as exc:
            logger.error("Wake for alarm %s could not be handled: %s", alarm_id, exc)
        finally:
            self.schedule_next()

    def _handle_wake(self, alarm_id: Optional[str]) -> None:
        now = self.clock()
        with self._lock:
            alarm = self.lifecycle.get(alarm_id) if alarm_id else None
            if alarm is None or alarm.is_terminal:
                logger.info("Ignoring stale wake trigger for alarm %s", alarm_id)
                return
            if now >= alarm.end_time:
                logger.info("Wake for alarm %s arrived after its end time, expiring", alarm_id)
                self.lifecycle.expire(alarm.id)
                return
            try:
                result = self.lifecycle.activate(alarm.id)
            except Conflict:
                blocking = self.lifecycle.active_alarm()
                if blocking is None or blocking.end_time > now:
                    raise
                logger.info("Expiring overdue alarm %s before activating %s", blocking.id, alarm.id)
                self._expire(blocking.id)
                result = self.lifecycle.activate(alarm.id)
            if not result.persisted:
                logger.warning("Activation of %s not persisted, sounding anyway: %s", alarm.id, result.error)
            self._begin_session(alarm)

    def _begin_session(self, alarm: Alarm) -> DismissalSession:
        with self._lock:
            if self._session is not None and not self._session.is_closed:
                if self._session.alarm_id == alarm.id:
                    return self._session
                logger.warning("Session for %s still open while %s starts", self._session.alarm_id, alarm.id)
            session = DismissalSession(
                self.lifecycle,
                self.puzzles,
                self.player,
                clock=self.clock,
                on_update=self.session_listener,
                on_end=self._on_session_end,
                max_answer_length=self.max_answer_length,
                run_countdown=self.run_countdown,
            )
            self._session = session
            self._arm_deadline(alarm)
        session.begin(alarm.id, alarm.end_time)
        if self.on_session_started and not session.is_closed:
            try:
                self.on_session_started(session)
            except Exception:  # pragma: no cover - callback safety
                logger.error("on_session_started callback failed", exc_info=True)
        return session

    def _arm_deadline(self, alarm: Alarm) -> None:
        self._cancel_deadline()
        delay = max(0.0, (alarm.end_time - self.clock()) / 1000)
        timer = self.timer_factory(delay, self._on_deadline, args=(alarm.id,))
        timer.daemon = True
        timer.start()
        self._deadline = timer
        logger.debug("Deadline timer for alarm %s armed in %.1fs", alarm.id, delay)

    def _cancel_deadline(self) -> None:
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def _on_deadline(self, alarm_id: str) -> None:
        logger.info("Deadline reached for alarm %s", alarm_id)
        try:
            self._expire(alarm_id)
        except Exception:  # pragma: no cover - timer thread safety
            logger.error("Deadline handling failed for alarm %s", alarm_id, exc_info=True)
        finally:
            self.schedule_next()

    def _expire(self, alarm_id: str) -> None:
        with self._lock:
            session = self._session
        if session is not None and session.alarm_id == alarm_id and not session.is_closed:
            session.expire()
        else:
            self.lifecycle.expire(alarm_id)

    def _on_session_end(self, session: DismissalSession, reason: str) -> None:
        with self._lock:
            if self._session is session:
                self._cancel_deadline()
                self._session = None
        self.schedule_next()
