from pathlib import Path

import pytest

from config import load_config

ENV_VARS = (
    "NONSTOP_PROFILE",
    "MIN_DURATION_MS",
    "MAX_DURATION_MS",
    "ALARM_STORAGE_PATH",
    "WAKE_STATE_PATH",
    "ALARM_SOUND_PATH",
    "ALARM_RETENTION_DAYS",
    "PUZZLE_RETENTION_HOURS",
    "PUZZLE_MAX_ATTEMPTS",
    "ANSWER_MAX_LENGTH",
    "CLEANUP_INTERVAL_MIN",
    "TIMEZONE",
    "DEBUG",
    "LOG_LEVEL",
    "LOG_DIR",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        # setenv first so values loaded from a .env file are undone after the test
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    return monkeypatch


def test_production_defaults(clean_env, tmp_path):
    config = load_config(tmp_path / "missing.env")

    assert config.profile == "production"
    assert config.min_duration_ms == 60_000
    assert config.max_duration_ms == 12 * 60 * 60 * 1000
    assert config.alarms_path == Path("data/alarms.json")
    assert config.answer_max_length == 10
    assert config.puzzle_max_attempts == 5
    assert config.alarm_retention_ms == 7 * 24 * 60 * 60 * 1000
    assert config.puzzle_retention_ms == 24 * 60 * 60 * 1000
    assert config.timezone is None
    assert config.log_level == "INFO"


def test_debug_switches_profile(clean_env, tmp_path):
    clean_env.setenv("DEBUG", "1")

    config = load_config(tmp_path / "missing.env")

    assert config.profile == "debug"
    assert config.min_duration_ms == 5_000
    assert config.log_level == "DEBUG"


def test_values_from_env_file(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "NONSTOP_PROFILE=debug\nALARM_STORAGE_PATH={}\nALARM_RETENTION_DAYS=3\nTIMEZONE=Europe/Berlin\n".format(
            tmp_path / "alarms.json"
        ),
        encoding="utf-8",
    )

    config = load_config(env_file)

    assert config.profile == "debug"
    assert config.alarms_path == tmp_path / "alarms.json"
    assert config.alarm_retention_days == 3
    assert config.timezone == "Europe/Berlin"


def test_environment_wins_over_env_file(clean_env, tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("PUZZLE_MAX_ATTEMPTS=9\n", encoding="utf-8")
    clean_env.setenv("PUZZLE_MAX_ATTEMPTS", "4")

    assert load_config(env_file).puzzle_max_attempts == 4


@pytest.mark.parametrize(
    "name, value",
    [
        ("NONSTOP_PROFILE", "staging"),
        ("MIN_DURATION_MS", "soon"),
        ("MIN_DURATION_MS", "0"),
        ("MAX_DURATION_MS", "1000"),
    ],
)
def test_invalid_values_are_rejected(clean_env, tmp_path, name, value):
    clean_env.setenv(name, value)
    with pytest.raises(ValueError):
        load_config(tmp_path / "missing.env")
