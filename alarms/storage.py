from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import StorageFailure

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "NonStop Alarm"


class AlarmStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    DISMISSED = "dismissed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AlarmStatus.DISMISSED, AlarmStatus.EXPIRED, AlarmStatus.CANCELLED})


class Operation(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"

    @property
    def symbol(self) -> str:
        return {"add": "+", "subtract": "-", "multiply": "×"}[self.value]


@dataclass
class Alarm:
    id: str
    start_time: int
    end_time: int
    status: AlarmStatus
    label: str
    created_at: int
    updated_at: int

    @property
    def duration_ms(self) -> int:
        return self.end_time - self.start_time

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def time_until_start(self, now: int) -> int:
        return max(0, self.start_time - now)

    def time_until_end(self, now: int) -> int:
        return max(0, self.end_time - now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "status": self.status.value,
            "label": self.label,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Alarm":
        if "start_time" not in data or "end_time" not in data:
            raise ValueError("Alarm payload missing start_time/end_time fields")
        created_at = int(data.get("created_at") or 0)
        return cls(
            id=str(data.get("id", "")),
            start_time=int(data["start_time"]),
            end_time=int(data["end_time"]),
            status=AlarmStatus(data.get("status", AlarmStatus.SCHEDULED.value)),
            label=str(data.get("label") or DEFAULT_LABEL),
            created_at=created_at,
            updated_at=int(data.get("updated_at") or created_at),
        )


@dataclass
class Puzzle:
    id: str
    operand1: int
    operand2: int
    operation: Operation
    correct_answer: int
    generated_at: int
    attempts: int = 0
    max_attempts: int = 5

    @property
    def text(self) -> str:
        return f"{self.operand1} {self.operation.symbol} {self.operand2} = ?"

    @property
    def has_reached_max_attempts(self) -> bool:
        return self.attempts >= self.max_attempts

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operand1": self.operand1,
            "operand2": self.operand2,
            "operation": self.operation.value,
            "correct_answer": self.correct_answer,
            "generated_at": self.generated_at,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Puzzle":
        return cls(
            id=str(data["id"]),
            operand1=int(data["operand1"]),
            operand2=int(data["operand2"]),
            operation=Operation(data["operation"]),
            correct_answer=int(data["correct_answer"]),
            generated_at=int(data["generated_at"]),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 5)),
        )


class AlarmStore:
    """JSON-file record store for alarms and puzzles.

    The whole document is rewritten on every mutation through a temp file and
    ``os.replace`` so a crash never leaves a half-written store behind. When a
    write fails the in-memory view is rolled back and ``StorageFailure`` is
    raised, so a failed put is never visible to later reads.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = Lock()
        self._alarms, self._puzzles = _load_document(self.path)
        logger.info(
            "Loaded %s alarms and %s puzzles from %s", len(self._alarms), len(self._puzzles), self.path
        )

    # alarms

    def put_alarm(self, alarm: Alarm) -> None:
        with self._lock:
            previous = dict(self._alarms)
            self._alarms[alarm.id] = replace(alarm)
            self._commit(previous_alarms=previous)

    def get_alarm(self, alarm_id: str) -> Optional[Alarm]:
        with self._lock:
            alarm = self._alarms.get(alarm_id)
            return replace(alarm) if alarm else None

    def alarms_by_status(self, *statuses: AlarmStatus) -> List[Alarm]:
        wanted = set(statuses)
        with self._lock:
            found = [replace(a) for a in self._alarms.values() if a.status in wanted]
        return sorted(found, key=lambda a: a.start_time)

    def all_alarms(self) -> List[Alarm]:
        with self._lock:
            found = [replace(a) for a in self._alarms.values()]
        return sorted(found, key=lambda a: a.start_time)

    def delete_alarms(self, alarm_ids: Iterable[str]) -> int:
        with self._lock:
            previous = dict(self._alarms)
            removed = 0
            for alarm_id in alarm_ids:
                if self._alarms.pop(alarm_id, None) is not None:
                    removed += 1
            if removed:
                self._commit(previous_alarms=previous)
            return removed

    # puzzles

    def put_puzzle(self, puzzle: Puzzle) -> None:
        with self._lock:
            previous = dict(self._puzzles)
            self._puzzles[puzzle.id] = replace(puzzle)
            self._commit(previous_puzzles=previous)

    def get_puzzle(self, puzzle_id: str) -> Optional[Puzzle]:
        with self._lock:
            puzzle = self._puzzles.get(puzzle_id)
            return replace(puzzle) if puzzle else None

    def all_puzzles(self) -> List[Puzzle]:
        with self._lock:
            return [replace(p) for p in self._puzzles.values()]

    def delete_puzzles(self, puzzle_ids: Iterable[str]) -> int:
        with self._lock:
            previous = dict(self._puzzles)
            removed = 0
            for puzzle_id in puzzle_ids:
                if self._puzzles.pop(puzzle_id, None) is not None:
                    removed += 1
            if removed:
                self._commit(previous_puzzles=previous)
            return removed

    def _commit(
        self,
        previous_alarms: Optional[Dict[str, Alarm]] = None,
        previous_puzzles: Optional[Dict[str, Puzzle]] = None,
    ) -> None:
        try:
            self._write()
        except (OSError, TypeError, ValueError) as exc:
            if previous_alarms is not None:
                self._alarms = previous_alarms
            if previous_puzzles is not None:
                self._puzzles = previous_puzzles
            logger.error("Failed to write alarm store %s: %s", self.path, exc)
            raise StorageFailure(f"Could not write {self.path}: {exc}") from exc

    def _write(self) -> None:
        payload = {
            "alarms": [a.to_dict() for a in self._alarms.values()],
            "puzzles": [p.to_dict() for p in self._puzzles.values()],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)


def _load_document(path: Path) -> Tuple[Dict[str, Alarm], Dict[str, Puzzle]]:
    if not path.exists():
        return {}, {}
    try:
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError) as exc:
        logger.error("Failed to load alarm store from %s: %s", path, exc)
        _move_aside(path)
        return {}, {}
    if not isinstance(payload, dict):
        logger.error("Alarm store %s has unexpected layout, ignoring it", path)
        _move_aside(path)
        return {}, {}

    alarms: Dict[str, Alarm] = {}
    for item in payload.get("alarms") or []:
        try:
            alarm = Alarm.from_dict(item)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping alarm item due to parse error: %s", exc)
            continue
        alarms[alarm.id] = alarm

    puzzles: Dict[str, Puzzle] = {}
    for item in payload.get("puzzles") or []:
        try:
            puzzle = Puzzle.from_dict(item)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping puzzle item due to parse error: %s", exc)
            continue
        puzzles[puzzle.id] = puzzle
    return alarms, puzzles


def _move_aside(path: Path) -> None:
    target = path.with_name(path.name + ".corrupt")
    try:
        os.replace(path, target)
        logger.warning("Moved unreadable store to %s", target)
    except OSError as exc:
        logger.warning("Could not move unreadable store %s aside: %s", path, exc)
