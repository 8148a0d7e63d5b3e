import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROFILES = {"production", "debug"}
DEFAULT_MIN_DURATION_MS = {"production": 60_000, "debug": 5_000}


def _get_env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip() in {"1", "true", "True", "yes", "YES", "y"}


def _get_env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


@dataclass
class Config:
    profile: str
    min_duration_ms: int
    max_duration_ms: int
    alarms_path: Path
    wake_state_path: Path
    alarm_sound_path: Path
    alarm_retention_days: int
    puzzle_retention_hours: int
    puzzle_max_attempts: int
    answer_max_length: int
    cleanup_interval_min: int
    timezone: Optional[str]
    debug: bool
    log_level: str
    log_dir: Path

    @property
    def alarm_retention_ms(self) -> int:
        return self.alarm_retention_days * 24 * 60 * 60 * 1000

    @property
    def puzzle_retention_ms(self) -> int:
        return self.puzzle_retention_hours * 60 * 60 * 1000


def load_config(env_path: Optional[Path] = None) -> Config:
    if env_path is None:
        env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    debug = _get_env_bool("DEBUG", False)
    profile = os.getenv("NONSTOP_PROFILE", "debug" if debug else "production").strip().lower()
    if profile not in PROFILES:
        raise ValueError(f"NONSTOP_PROFILE must be one of {sorted(PROFILES)}, got {profile!r}")

    min_duration_ms = _get_env_int("MIN_DURATION_MS", DEFAULT_MIN_DURATION_MS[profile])
    max_duration_ms = _get_env_int("MAX_DURATION_MS", 12 * 60 * 60 * 1000)
    if min_duration_ms <= 0 or max_duration_ms < min_duration_ms:
        raise ValueError("MIN_DURATION_MS must be positive and not exceed MAX_DURATION_MS")

    alarms_path = Path(os.getenv("ALARM_STORAGE_PATH", "data/alarms.json"))
    wake_state_path = Path(os.getenv("WAKE_STATE_PATH", "data/wake.json"))
    alarm_sound_path = Path(os.getenv("ALARM_SOUND_PATH", "data/alarm.wav"))
    alarm_retention_days = _get_env_int("ALARM_RETENTION_DAYS", 7)
    puzzle_retention_hours = _get_env_int("PUZZLE_RETENTION_HOURS", 24)
    puzzle_max_attempts = _get_env_int("PUZZLE_MAX_ATTEMPTS", 5)
    answer_max_length = _get_env_int("ANSWER_MAX_LENGTH", 10)
    cleanup_interval_min = _get_env_int("CLEANUP_INTERVAL_MIN", 60)
    timezone = os.getenv("TIMEZONE") or None
    log_level = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    return Config(
        profile=profile,
        min_duration_ms=min_duration_ms,
        max_duration_ms=max_duration_ms,
        alarms_path=alarms_path,
        wake_state_path=wake_state_path,
        alarm_sound_path=alarm_sound_path,
        alarm_retention_days=alarm_retention_days,
        puzzle_retention_hours=puzzle_retention_hours,
        puzzle_max_attempts=puzzle_max_attempts,
        answer_max_length=answer_max_length,
        cleanup_interval_min=cleanup_interval_min,
        timezone=timezone,
        debug=debug,
        log_level=log_level,
        log_dir=log_dir,
    )


def setup_logging(log_level: str = "INFO", log_dir: Path = Path("logs")) -> None:
    log_dir.mkdir(parents=True, exist_ok=True)

    log_path = log_dir / "nonstop.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = logging.handlers.RotatingFileHandler(
        log_path, maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        handlers=[file_handler, console_handler],
    )
