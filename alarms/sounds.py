from __future__ import annotations

import logging
import wave
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Optional

import numpy as np

try:
    import winsound
except ImportError:  # pragma: no cover - non-Windows fallback
    winsound = None  # type: ignore

logger = logging.getLogger(__name__)


def render_alarm_tone(
    sample_rate: int = 24000,
    duration_seconds: float = 1.5,
    freq: float = 880.0,
    amplitude: float = 0.4,
) -> np.ndarray:
    """Two-pulse square-ish alarm tone as int16 samples."""
    t = np.arange(int(duration_seconds * sample_rate)) / sample_rate
    carrier = np.sin(2 * np.pi * freq * t)
    # 4 Hz on/off gating
    gate = (np.sin(2 * np.pi * 4.0 * t) > 0).astype(np.float64)
    samples = amplitude * carrier * gate
    return (samples * 32767).astype(np.int16)


def ensure_alarm_sound(path: Path, duration_seconds: float = 1.5) -> None:
    if path.exists():
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    sample_rate = 24000
    samples = render_alarm_tone(sample_rate=sample_rate, duration_seconds=duration_seconds)
    with wave.open(str(path), "w") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(samples.astype("<i2").tobytes())
    logger.info("Generated default alarm sound at %s", path)


class AlarmSoundPlayer:
    """Playback device: loops the alarm sound until ``stop_alert``.

    Both calls are idempotent. On Windows the WAV is looped by ``winsound``;
    elsewhere a daemon thread logs a beep every 0.75 s.
    """

    def __init__(self, sound_path: Path):
        self.sound_path = sound_path
        self._stop_event = Event()
        self._lock = Lock()
        self._playing = False
        self._beep_thread: Optional[Thread] = None

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._playing

    def start_alert(self) -> None:
        with self._lock:
            if self._playing:
                return
            self._playing = True
        try:
            ensure_alarm_sound(self.sound_path)
        except OSError as exc:
            logger.warning("Could not prepare alarm sound %s: %s", self.sound_path, exc)
        self._stop_event.clear()
        if winsound:
            try:
                winsound.PlaySound(
                    str(self.sound_path),
                    winsound.SND_FILENAME | winsound.SND_LOOP | winsound.SND_ASYNC,
                )
                return
            except RuntimeError:
                logger.warning("winsound.PlaySound failed, falling back to beep loop")

        if self._beep_thread and self._beep_thread.is_alive():
            return
        self._beep_thread = Thread(target=self._beep_loop, name="alarm-beep", daemon=True)
        self._beep_thread.start()

    def stop_alert(self) -> None:
        with self._lock:
            if not self._playing:
                return
            self._playing = False
        self._stop_event.set()
        if winsound:
            try:
                winsound.PlaySound(None, winsound.SND_PURGE)
            except RuntimeError:
                logger.debug("winsound.PlaySound purge failed")
        logger.info("Alarm sound stopped")

    def _beep_loop(self) -> None:  # pragma: no cover - timing loop
        while not self._stop_event.is_set():
            if winsound:
                try:
                    winsound.Beep(880, 250)
                except RuntimeError:
                    logger.debug("winsound.Beep failed inside loop")
            else:
                logger.info("Alarm ringing...")
            self._stop_event.wait(0.75)
