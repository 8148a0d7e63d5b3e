"""Alarm core for NonStop: lifecycle, puzzles, scheduling and dismissal sessions."""

from .errors import (
    AlarmError,
    Conflict,
    DurationTooLong,
    DurationTooShort,
    EmptyInput,
    InvalidWindow,
    NotANumber,
    NotFound,
    SessionClosed,
    StorageFailure,
)
from .events import AlarmEvent, EventBus
from .lifecycle import AlarmLifecycleManager, CleanupReport, RecoveryReport, TransitionResult
from .puzzles import PuzzleEngine
from .scheduler import AlarmScheduler, PendingWake, ThreadWakeHost, WakeHost
from .session import AnswerOutcome, DismissalSession, SessionState
from .sounds import AlarmSoundPlayer
from .storage import Alarm, AlarmStatus, AlarmStore, Operation, Puzzle
