from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timedelta, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

_RELATIVE_RE = re.compile(r"^\+(\d+)\s*([smh]?)$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def resolve_timezone(name: Optional[str]) -> tzinfo:
    if name:
        try:
            return ZoneInfo(name)
        except Exception as exc:  # pragma: no cover - environment-dependent
            logger.warning("Failed to load timezone %s via zoneinfo (%s)", name, exc)
    local_tz = datetime.now().astimezone().tzinfo
    if name:
        logger.warning("Using system local timezone instead: %s", getattr(local_tz, "key", local_tz))
    return local_tz  # type: ignore[return-value]


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_ms(value: int, tz: Optional[tzinfo] = None) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=tz or datetime.now().astimezone().tzinfo)


def format_clock(value: int, tz: Optional[tzinfo] = None) -> str:
    return from_ms(value, tz).strftime("%H:%M:%S")


def format_remaining(millis: int) -> str:
    if millis <= 0:
        return "Time's up!"
    total_seconds = millis // 1000
    hours, rest = divmod(total_seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{minutes:02d}:{seconds:02d}"


def format_until(millis: int) -> str:
    if millis <= 0:
        return "Starting now"
    hours, rest = divmod(millis // 1000, 3600)
    minutes = rest // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m"
    return "Less than 1m"


def parse_time_arg(text: str, now: datetime, after: Optional[datetime] = None) -> datetime:
    """Parse a CLI time argument relative to ``now``.

    Accepts ``+15m`` / ``+30s`` / ``+2h`` offsets, ``HH:MM[:SS]`` (next
    occurrence, strictly after ``after`` when given) and ISO datetimes. Naive
    values take the timezone of ``now``.
    """
    cleaned = text.strip()
    if not cleaned:
        raise ValueError("empty time value")

    relative = _RELATIVE_RE.match(cleaned)
    if relative:
        amount = int(relative.group(1))
        unit = relative.group(2) or "m"
        delta = {"s": timedelta(seconds=amount), "m": timedelta(minutes=amount), "h": timedelta(hours=amount)}[unit]
        base = after or now
        return base + delta

    clock = _CLOCK_RE.match(cleaned)
    if clock:
        hour, minute = int(clock.group(1)), int(clock.group(2))
        second = int(clock.group(3) or 0)
        if hour > 23 or minute > 59 or second > 59:
            raise ValueError(f"invalid clock time: {cleaned}")
        anchor = after or now
        candidate = anchor.replace(hour=hour, minute=minute, second=second, microsecond=0)
        if candidate <= anchor:
            candidate += timedelta(days=1)
        return candidate

    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValueError(f"unrecognised time: {cleaned}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=now.tzinfo)
    return parsed
