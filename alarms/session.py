from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from threading import Event, RLock, Thread
from typing import Callable, Optional

from time_utils import format_remaining, now_ms

from .errors import EmptyInput, NotANumber, NotFound, SessionClosed, StorageFailure
from .lifecycle import AlarmLifecycleManager
from .puzzles import PuzzleEngine
from .sounds import AlarmSoundPlayer
from .storage import AlarmStatus, Puzzle

logger = logging.getLogger(__name__)

MAX_ANSWER_LENGTH = 10
INCORRECT_MESSAGE = "Incorrect. Try again with a new problem."
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


@dataclass
class SessionState:
    alarm_id: str
    end_time: int
    puzzle_id: Optional[str] = None
    puzzle_text: str = ""
    user_answer: str = ""
    attempts: int = 0
    time_remaining: int = 0
    time_remaining_display: str = ""
    message: Optional[str] = None
    error: Optional[str] = None
    dismissed: bool = False
    expired: bool = False


@dataclass
class AnswerOutcome:
    correct: bool
    attempts: int
    message: str
    next_puzzle: Optional[Puzzle] = None
    note: Optional[str] = None


class DismissalSession:
    """Headless controller for the one alarm that is currently sounding.

    ``begin`` starts playback, hands out a puzzle and runs a once-per-second
    countdown that expires the alarm on its own if the deadline passes.
    ``end`` is idempotent and stops playback exactly once.
    """

    def __init__(
        self,
        lifecycle: AlarmLifecycleManager,
        puzzles: PuzzleEngine,
        player: AlarmSoundPlayer,
        clock: Callable[[], int] = now_ms,
        on_update: Optional[Callable[[SessionState], None]] = None,
        on_end: Optional[Callable[["DismissalSession", str], None]] = None,
        max_answer_length: int = MAX_ANSWER_LENGTH,
        tick_seconds: float = 1.0,
        run_countdown: bool = True,
    ):
        self.lifecycle = lifecycle
        self.puzzles = puzzles
        self.player = player
        self.clock = clock
        self.on_update = on_update
        self.on_end = on_end
        self.max_answer_length = max(1, max_answer_length)
        self.tick_seconds = tick_seconds
        self.run_countdown = run_countdown

        self.alarm_id: Optional[str] = None
        self.end_time = 0
        self.end_reason: Optional[str] = None
        self._state: Optional[SessionState] = None
        self._puzzle: Optional[Puzzle] = None
        self._lock = RLock()
        self._closed = Event()
        self._began = False
        self._countdown: Optional[Thread] = None

    # lifecycle

    def begin(self, alarm_id: str, end_time: int) -> SessionState:
        with self._lock:
            if self._began:
                raise RuntimeError(f"Session for {self.alarm_id} already started")
            self._began = True
            self.alarm_id = alarm_id
            self.end_time = end_time
            self._state = SessionState(alarm_id=alarm_id, end_time=end_time)

        logger.info("Dismissal session started for alarm %s", alarm_id)
        self.player.start_alert()
        now = self.clock()
        if now >= end_time:
            self.expire()
            return self.snapshot()

        self._issue_puzzle()
        self._update_remaining(now)
        self._publish()

        if self.run_countdown:
            self._countdown = Thread(target=self._countdown_loop, name=f"countdown-{alarm_id}", daemon=True)
            self._countdown.start()
        return self.snapshot()

    def end(self, reason: str) -> bool:
        with self._lock:
            if self.is_closed:
                return False
            self.end_reason = reason
            self._closed.set()
            if self._state is not None:
                self._state.dismissed = reason == "dismissed"
                self._state.expired = reason == "expired"
        self.player.stop_alert()
        logger.info("Dismissal session for alarm %s ended (%s)", self.alarm_id, reason)
        self._publish()
        if self.on_end:
            try:
                self.on_end(self, reason)
            except Exception:  # pragma: no cover - callback safety
                logger.error("on_end callback failed", exc_info=True)
        return True

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    @property
    def current_puzzle(self) -> Optional[Puzzle]:
        with self._lock:
            return replace(self._puzzle) if self._puzzle else None

    def snapshot(self) -> SessionState:
        with self._lock:
            if self._state is None:
                raise RuntimeError("Session has not begun")
            return replace(self._state)

    # countdown

    def tick(self) -> None:
        if self.is_closed:
            return
        now = self.clock()
        if now >= self.end_time:
            self.expire()
            return
        if self._puzzle is None:
            self._issue_puzzle()
        self._update_remaining(now)
        self._publish()

    def _countdown_loop(self) -> None:
        while not self._closed.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:  # pragma: no cover - keep the countdown alive
                logger.error("Countdown tick failed for alarm %s", self.alarm_id, exc_info=True)

    def expire(self) -> None:
        if self.is_closed:
            return
        result = self.lifecycle.expire(self.alarm_id)
        with self._lock:
            if self._state is not None:
                self._state.time_remaining = 0
                self._state.time_remaining_display = format_remaining(0)
                self._state.message = "Alarm stopped automatically at end time"
                if not result.persisted:
                    self._state.error = f"Note: {result.error}"
        self.end("expired")

    # answers

    def submit_answer(self, raw: str) -> AnswerOutcome:
        if self.is_closed:
            raise SessionClosed("This alarm is no longer sounding", self.alarm_id)
        text = (raw or "")[: self.max_answer_length].strip()
        if not text:
            self._set_error("Please enter an answer")
            raise EmptyInput("Please enter an answer", self.alarm_id)
        if not _INTEGER_RE.match(text):
            self._set_error("Please enter a valid number")
            raise NotANumber("Please enter a valid number", self.alarm_id)
        answer = int(text)

        if self.clock() >= self.end_time:
            self.expire()
            raise SessionClosed("The alarm reached its end time", self.alarm_id)

        with self._lock:
            puzzle = self._puzzle
        if puzzle is None:
            raise NotFound("No puzzle available yet", self.alarm_id)

        if self.puzzles.validate(puzzle.id, answer):
            return self._accept()

        with self._lock:
            self._state.attempts += 1
            attempts = self._state.attempts
        logger.info("Incorrect answer for alarm %s (attempts=%s)", self.alarm_id, attempts)
        next_puzzle = self._issue_puzzle()
        with self._lock:
            self._state.user_answer = ""
            self._state.message = INCORRECT_MESSAGE
            if next_puzzle is not None:
                self._state.error = None
        self._publish()
        return AnswerOutcome(correct=False, attempts=attempts, message=INCORRECT_MESSAGE, next_puzzle=next_puzzle)

    def submit_current(self) -> AnswerOutcome:
        return self.submit_answer(self.snapshot().user_answer)

    def _accept(self) -> AnswerOutcome:
        result = self.lifecycle.dismiss(self.alarm_id)
        if result.status is AlarmStatus.EXPIRED and not result.changed:
            message = "Alarm already stopped at end time"
        else:
            message = "Correct! Alarm dismissed."
        note = None if result.persisted else f"Note: {result.error}"
        with self._lock:
            self._state.message = message
            self._state.error = note
            self._puzzle = None
            attempts = self._state.attempts
        self.end("dismissed")
        return AnswerOutcome(correct=True, attempts=attempts, message=message, note=note)

    # keypad editing

    def update_answer(self, text: str) -> str:
        with self._lock:
            self._state.user_answer = (text or "")[: self.max_answer_length]
            value = self._state.user_answer
        self._publish()
        return value

    def append_digit(self, digit: str) -> str:
        with self._lock:
            current = self._state.user_answer
        if len(current) >= self.max_answer_length:
            return current
        return self.update_answer(current + digit)

    def backspace(self) -> str:
        with self._lock:
            current = self._state.user_answer
        return self.update_answer(current[:-1])

    def clear_answer(self) -> str:
        return self.update_answer("")

    # helpers

    def _issue_puzzle(self) -> Optional[Puzzle]:
        try:
            puzzle = self.puzzles.generate()
        except StorageFailure as exc:
            logger.error("Failed to generate puzzle for alarm %s: %s", self.alarm_id, exc)
            with self._lock:
                self._puzzle = None
                self._state.puzzle_id = None
                self._state.puzzle_text = ""
                self._state.error = "Failed to generate puzzle, retrying"
            return None
        with self._lock:
            if self.is_closed:
                return None
            self._puzzle = puzzle
            self._state.puzzle_id = puzzle.id
            self._state.puzzle_text = puzzle.text
        return replace(puzzle)

    def _update_remaining(self, now: int) -> None:
        remaining = max(0, self.end_time - now)
        with self._lock:
            self._state.time_remaining = remaining
            self._state.time_remaining_display = format_remaining(remaining)

    def _set_error(self, message: str) -> None:
        with self._lock:
            if self._state is not None:
                self._state.error = message
        self._publish()

    def _publish(self) -> None:
        if not self.on_update:
            return
        try:
            self.on_update(self.snapshot())
        except Exception:  # pragma: no cover - callback safety
            logger.error("on_update callback failed", exc_info=True)
