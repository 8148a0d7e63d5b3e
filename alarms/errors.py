from __future__ import annotations

from typing import Optional


class AlarmError(Exception):
    """Base class for every error the alarm core reports to its callers."""

    code = "alarm_error"

    def __init__(self, message: str, alarm_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.alarm_id = alarm_id


class InvalidWindow(AlarmError):
    code = "invalid_window"


class DurationTooShort(AlarmError):
    code = "duration_too_short"


class DurationTooLong(AlarmError):
    code = "duration_too_long"


class Conflict(AlarmError):
    code = "conflict"


class NotFound(AlarmError):
    code = "not_found"


class EmptyInput(AlarmError):
    code = "empty_input"


class NotANumber(AlarmError):
    code = "not_a_number"


class SessionClosed(AlarmError):
    code = "session_closed"


class StorageFailure(AlarmError):
    code = "storage_failure"
