from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from threading import RLock
from typing import Callable, Dict, List, Optional

from time_utils import now_ms

from .errors import Conflict, DurationTooLong, DurationTooShort, InvalidWindow, NotFound, StorageFailure
from .events import AlarmEvent, EventBus
from .puzzles import PuzzleEngine
from .storage import DEFAULT_LABEL, Alarm, AlarmStatus, AlarmStore

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
MAX_DURATION_MS = 12 * 60 * MINUTE_MS
PRODUCTION_MIN_DURATION_MS = MINUTE_MS
DEBUG_MIN_DURATION_MS = 5 * 1000
ALARM_RETENTION_MS = 7 * 24 * 60 * MINUTE_MS


@dataclass
class TransitionResult:
    alarm_id: str
    status: Optional[AlarmStatus]
    changed: bool
    persisted: bool = True
    error: Optional[str] = None


@dataclass
class RecoveryReport:
    activated: List[str] = field(default_factory=list)
    expired: List[str] = field(default_factory=list)


@dataclass
class CleanupReport:
    alarms_removed: int = 0
    puzzles_removed: int = 0


class AlarmLifecycleManager:
    """Owns every alarm status transition.

    All status-changing entry points run under one re-entrant lock, which is
    what keeps "at most one active alarm" true when a wake trigger, a deadline
    timer and a user dismissal race each other. Terminal transitions on an
    alarm that is already terminal are successful no-ops.

    When an activate, dismiss, expire or recovery write fails, the new record is kept in
    ``_pending_writes`` and served to readers in place of the stored one, then
    retried on the next recovery sweep or cleanup pass.
    """

    def __init__(
        self,
        store: AlarmStore,
        events: Optional[EventBus] = None,
        puzzles: Optional[PuzzleEngine] = None,
        clock: Callable[[], int] = now_ms,
        min_duration_ms: int = PRODUCTION_MIN_DURATION_MS,
        max_duration_ms: int = MAX_DURATION_MS,
        retention_ms: int = ALARM_RETENTION_MS,
    ):
        self.store = store
        self.events = events or EventBus()
        self.puzzles = puzzles
        self.clock = clock
        self.min_duration_ms = min_duration_ms
        self.max_duration_ms = max_duration_ms
        self.retention_ms = retention_ms

        self._gate = RLock()
        self._pending_writes: Dict[str, Alarm] = {}

    # validation

    def validate(self, start_time: int, end_time: int, now: Optional[int] = None) -> None:
        now = self.clock() if now is None else now
        if start_time <= now:
            raise InvalidWindow("Start time must be in the future")
        if end_time <= start_time:
            raise InvalidWindow("End time must be after start time")
        duration = end_time - start_time
        if duration > self.max_duration_ms:
            hours = self.max_duration_ms / (60 * MINUTE_MS)
            raise DurationTooLong(f"Alarm duration cannot exceed {hours:g} hours")
        if duration < self.min_duration_ms:
            raise DurationTooShort(f"Alarm duration must be at least {self.min_duration_ms // 1000} seconds")

    def can_create(self, start_time: int, end_time: int) -> bool:
        with self._gate:
            return self._conflict_reason(start_time, end_time) is None

    def _conflict_reason(self, start_time: int, end_time: int) -> Optional[str]:
        active = self._active()
        if active is not None:
            return f"Alarm {active.id} is currently active, dismiss it first"
        for alarm in self._alarms_with_status(AlarmStatus.SCHEDULED):
            if not (end_time <= alarm.start_time or start_time >= alarm.end_time):
                return f"This time conflicts with alarm {alarm.id}"
        return None

    # transitions

    def create(self, start_time: int, end_time: int, label: str = DEFAULT_LABEL, now: Optional[int] = None) -> Alarm:
        now = self.clock() if now is None else now
        self.validate(start_time, end_time, now)
        with self._gate:
            reason = self._conflict_reason(start_time, end_time)
            if reason:
                raise Conflict(reason)
            alarm = Alarm(
                id=self._new_id(),
                start_time=start_time,
                end_time=end_time,
                status=AlarmStatus.SCHEDULED,
                label=(label or "").strip() or DEFAULT_LABEL,
                created_at=now,
                updated_at=now,
            )
            self.store.put_alarm(alarm)
        logger.info(
            "Alarm %s scheduled for [%s, %s) (%s ms, label=%s)",
            alarm.id,
            start_time,
            end_time,
            alarm.duration_ms,
            alarm.label,
        )
        self.events.publish(AlarmEvent(alarm.id, None, alarm.status, now))
        return replace(alarm)

    def activate(self, alarm_id: str) -> TransitionResult:
        with self._gate:
            alarm = self._read(alarm_id)
            if alarm is None:
                raise NotFound(f"Alarm {alarm_id} not found", alarm_id)
            if alarm.status is AlarmStatus.ACTIVE:
                return TransitionResult(alarm_id, alarm.status, changed=False)
            if alarm.is_terminal:
                raise Conflict(f"Alarm {alarm_id} is already {alarm.status.value}", alarm_id)
            active = self._active()
            if active is not None and active.id != alarm_id:
                raise Conflict(f"Alarm {active.id} is already active", alarm_id)
            return self._transition(alarm, AlarmStatus.ACTIVE, swallow=True)

    def dismiss(self, alarm_id: str) -> TransitionResult:
        return self._finish(alarm_id, AlarmStatus.DISMISSED)

    def expire(self, alarm_id: str) -> TransitionResult:
        return self._finish(alarm_id, AlarmStatus.EXPIRED)

    def cancel(self, alarm_id: str) -> TransitionResult:
        with self._gate:
            alarm = self._read(alarm_id)
            if alarm is None:
                raise NotFound(f"Alarm {alarm_id} not found", alarm_id)
            if alarm.status is AlarmStatus.ACTIVE:
                raise Conflict("An active alarm can only be stopped by solving the puzzle", alarm_id)
            return self._finish(alarm_id, AlarmStatus.CANCELLED, swallow=False)

    def _finish(self, alarm_id: str, target: AlarmStatus, swallow: bool = True) -> TransitionResult:
        with self._gate:
            alarm = self._read(alarm_id)
            if alarm is None:
                logger.warning("Ignoring %s for unknown alarm %s", target.value, alarm_id)
                return TransitionResult(alarm_id, None, changed=False)
            if alarm.is_terminal:
                logger.debug("Alarm %s already %s, %s is a no-op", alarm_id, alarm.status.value, target.value)
                return TransitionResult(alarm_id, alarm.status, changed=False)
            return self._transition(alarm, target, swallow=swallow)

    def _transition(
        self,
        alarm: Alarm,
        target: AlarmStatus,
        swallow: bool = False,
        at: Optional[int] = None,
    ) -> TransitionResult:
        previous = alarm.status
        updated = replace(alarm, status=target, updated_at=self.clock() if at is None else at)
        persisted = True
        error = None
        try:
            self.store.put_alarm(updated)
            self._pending_writes.pop(updated.id, None)
        except StorageFailure as exc:
            if not swallow:
                raise
            logger.error("Could not persist %s -> %s for alarm %s: %s", previous.value, target.value, alarm.id, exc)
            self._pending_writes[updated.id] = updated
            persisted = False
            error = str(exc)
        logger.info("Alarm %s: %s -> %s", alarm.id, previous.value, target.value)
        self.events.publish(AlarmEvent(alarm.id, previous, target, updated.updated_at))
        return TransitionResult(alarm.id, target, changed=True, persisted=persisted, error=error)

    # recovery and housekeeping

    def recover_state(self, now: Optional[int] = None) -> RecoveryReport:
        now = self.clock() if now is None else now
        report = RecoveryReport()
        with self._gate:
            self._flush_pending_writes()
            for alarm in self._alarms_with_status(AlarmStatus.SCHEDULED, AlarmStatus.ACTIVE):
                if alarm.end_time <= now:
                    self._transition(alarm, AlarmStatus.EXPIRED, swallow=True, at=now)
                    report.expired.append(alarm.id)

            for alarm in self._alarms_with_status(AlarmStatus.SCHEDULED):
                if not (alarm.start_time <= now < alarm.end_time):
                    continue
                active = self._active()
                if active is not None and active.id != alarm.id:
                    logger.warning("Recovery skipped activating %s, %s is already active", alarm.id, active.id)
                    continue
                self._transition(alarm, AlarmStatus.ACTIVE, swallow=True, at=now)
                report.activated.append(alarm.id)

        if report.activated or report.expired:
            logger.info("Recovery sweep: activated=%s expired=%s", report.activated, report.expired)
        return report

    def cleanup(self, now: Optional[int] = None) -> CleanupReport:
        now = self.clock() if now is None else now
        report = CleanupReport()
        with self._gate:
            self._flush_pending_writes()
            cutoff = now - self.retention_ms
            stale = [
                a.id
                for a in self._all_alarms()
                if a.is_terminal and a.updated_at < cutoff and a.id not in self._pending_writes
            ]
            try:
                report.alarms_removed = self.store.delete_alarms(stale)
            except StorageFailure as exc:
                logger.warning("Alarm cleanup failed: %s", exc)
        if self.puzzles is not None:
            try:
                report.puzzles_removed = self.puzzles.cleanup(now)
            except StorageFailure as exc:
                logger.warning("Puzzle cleanup failed: %s", exc)
        if report.alarms_removed:
            logger.info("Purged %s finished alarms", report.alarms_removed)
        return report

    def _flush_pending_writes(self) -> None:
        for alarm in list(self._pending_writes.values()):
            try:
                self.store.put_alarm(alarm)
            except StorageFailure as exc:
                logger.warning("Still unable to persist alarm %s: %s", alarm.id, exc)
                continue
            self._pending_writes.pop(alarm.id, None)
            logger.info("Persisted deferred %s status for alarm %s", alarm.status.value, alarm.id)

    # queries

    def get(self, alarm_id: str) -> Optional[Alarm]:
        with self._gate:
            return self._read(alarm_id)

    def list_alarms(self) -> List[Alarm]:
        with self._gate:
            return self._all_alarms()

    def active_alarm(self) -> Optional[Alarm]:
        with self._gate:
            return self._active()

    def has_active_alarm(self) -> bool:
        return self.active_alarm() is not None

    def next_scheduled(self, now: Optional[int] = None) -> Optional[Alarm]:
        now = self.clock() if now is None else now
        with self._gate:
            upcoming = [a for a in self._alarms_with_status(AlarmStatus.SCHEDULED) if a.end_time > now]
        return upcoming[0] if upcoming else None

    def _new_id(self) -> str:
        while True:
            alarm_id = f"al_{uuid.uuid4().hex[:8]}"
            if self._read(alarm_id) is None:
                return alarm_id

    def _read(self, alarm_id: str) -> Optional[Alarm]:
        pending = self._pending_writes.get(alarm_id)
        if pending is not None:
            return replace(pending)
        return self.store.get_alarm(alarm_id)

    def _all_alarms(self) -> List[Alarm]:
        merged = {a.id: a for a in self.store.all_alarms()}
        for alarm_id, pending in self._pending_writes.items():
            merged[alarm_id] = replace(pending)
        return sorted(merged.values(), key=lambda a: a.start_time)

    def _alarms_with_status(self, *statuses: AlarmStatus) -> List[Alarm]:
        found = {a.id: a for a in self.store.alarms_by_status(*statuses) if a.id not in self._pending_writes}
        for alarm_id, pending in self._pending_writes.items():
            if pending.status in statuses:
                found[alarm_id] = replace(pending)
        return sorted(found.values(), key=lambda a: a.start_time)

    def _active(self) -> Optional[Alarm]:
        active = self._alarms_with_status(AlarmStatus.ACTIVE)
        return active[0] if active else None
