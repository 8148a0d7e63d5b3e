import logging
import shlex
import signal
from datetime import datetime
from pathlib import Path
from queue import Empty
from threading import Event, Thread
from typing import Callable, List, Optional

import typer
from filelock import FileLock, Timeout

from alarms import (
    AlarmError,
    AlarmEvent,
    AlarmLifecycleManager,
    AlarmScheduler,
    AlarmSoundPlayer,
    AlarmStatus,
    AlarmStore,
    DismissalSession,
    EventBus,
    PuzzleEngine,
    SessionState,
    StorageFailure,
    ThreadWakeHost,
    WakeHost,
)
from config import Config, load_config, setup_logging
from time_utils import format_clock, format_until, now_ms, parse_time_arg, resolve_timezone, to_ms

logger = logging.getLogger("nonstop")

DOMAIN_ERROR_EXIT_CODE = 3

app = typer.Typer(help="Time-bounded alarms that only a solved puzzle can silence.", no_args_is_help=True)


class AlarmRuntime:
    """Object graph of the alarm core built from a ``Config``.

    The store keeps its records in memory, so the runtime holds an exclusive
    lock next to the data file until ``close``. A second process touching the
    same data fails with ``StorageFailure`` instead of overwriting it.
    """

    def __init__(
        self,
        config: Config,
        clock: Callable[[], int] = now_ms,
        player: Optional[AlarmSoundPlayer] = None,
        wake_host: Optional[WakeHost] = None,
        session_listener: Optional[Callable[[SessionState], None]] = None,
        on_session_started: Optional[Callable[[DismissalSession], None]] = None,
    ):
        self.config = config
        self.clock = clock
        self.tzinfo = resolve_timezone(config.timezone)
        self.data_lock = _acquire_data_lock(config.alarms_path)
        self.store = AlarmStore(config.alarms_path)
        self.events = EventBus()
        self.puzzles = PuzzleEngine(
            self.store,
            clock=clock,
            max_attempts=config.puzzle_max_attempts,
            retention_ms=config.puzzle_retention_ms,
        )
        self.lifecycle = AlarmLifecycleManager(
            self.store,
            events=self.events,
            puzzles=self.puzzles,
            clock=clock,
            min_duration_ms=config.min_duration_ms,
            max_duration_ms=config.max_duration_ms,
            retention_ms=config.alarm_retention_ms,
        )
        self.player = player or AlarmSoundPlayer(config.alarm_sound_path)
        self.wake_host = wake_host or ThreadWakeHost(config.wake_state_path, clock=clock)
        self.scheduler = AlarmScheduler(
            self.lifecycle,
            self.puzzles,
            self.player,
            self.wake_host,
            clock=clock,
            on_session_started=on_session_started,
            session_listener=session_listener,
            max_answer_length=config.answer_max_length,
        )

    def close(self) -> None:
        if self.data_lock.is_locked:
            self.data_lock.release()

    def __enter__(self) -> "AlarmRuntime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def parse_window(self, start: str, end: str) -> "tuple[int, int]":
        now = datetime.fromtimestamp(self.clock() / 1000, tz=self.tzinfo)
        start_dt = parse_time_arg(start, now)
        end_dt = parse_time_arg(end, now, after=start_dt)
        return to_ms(start_dt), to_ms(end_dt)

    def describe(self, alarm) -> str:
        now = self.clock()
        line = (
            f"[{alarm.id}] {alarm.label}: {format_clock(alarm.start_time, self.tzinfo)}"
            f" -> {format_clock(alarm.end_time, self.tzinfo)} ({alarm.status.value})"
        )
        if alarm.status is AlarmStatus.SCHEDULED:
            line += f", starts in {format_until(alarm.time_until_start(now))}"
        elif alarm.status is AlarmStatus.ACTIVE:
            line += f", stops by itself in {format_until(alarm.time_until_end(now))}"
        return line


def _acquire_data_lock(alarms_path: Path) -> FileLock:
    alarms_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(alarms_path) + ".lock")
    try:
        lock.acquire(timeout=0)
    except Timeout as exc:
        raise StorageFailure(f"{alarms_path} is in use by another nonstop-alarm process, stop it first") from exc
    return lock


def _build_runtime(env_file: Optional[Path], **kwargs) -> AlarmRuntime:
    config = load_config(env_file)
    setup_logging(config.log_level, config.log_dir)
    try:
        return AlarmRuntime(config, **kwargs)
    except StorageFailure as exc:
        _fail(exc)


def _fail(exc: Exception) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=DOMAIN_ERROR_EXIT_CODE)


@app.command()
def create(
    start: str = typer.Argument(..., help="HH:MM, +<n>[s|m|h] or ISO datetime"),
    end: str = typer.Argument(..., help="HH:MM, +<n>[s|m|h] after start, or ISO datetime"),
    label: str = typer.Option("", "--label", "-l"),
    env_file: Optional[Path] = typer.Option(None, "--env-file"),
) -> None:
    """Schedule a new alarm window."""
    with _build_runtime(env_file) as runtime:
        try:
            start_ms, end_ms = runtime.parse_window(start, end)
            alarm = runtime.scheduler.create_alarm(start_ms, end_ms, label)
        except (AlarmError, ValueError) as exc:
            _fail(exc)
        typer.echo(f"Alarm set: {runtime.describe(alarm)}")


@app.command()
def cancel(alarm_id: str, env_file: Optional[Path] = typer.Option(None, "--env-file")) -> None:
    """Cancel an alarm that has not started yet."""
    with _build_runtime(env_file) as runtime:
        try:
            runtime.scheduler.cancel_alarm(alarm_id)
        except AlarmError as exc:
            _fail(exc)
        typer.echo(f"Alarm {alarm_id} is {runtime.lifecycle.get(alarm_id).status.value}")


@app.command("list")
def list_alarms(env_file: Optional[Path] = typer.Option(None, "--env-file")) -> None:
    """Show stored alarms."""
    with _build_runtime(env_file) as runtime:
        alarms = runtime.lifecycle.list_alarms()
        if not alarms:
            typer.echo("No alarms.")
            return
        for alarm in alarms:
            typer.echo(runtime.describe(alarm))


@app.command()
def recover(env_file: Optional[Path] = typer.Option(None, "--env-file")) -> None:
    """Run the recovery sweep against the current clock."""
    with _build_runtime(env_file) as runtime:
        report = runtime.lifecycle.recover_state()
    typer.echo(f"Activated: {', '.join(report.activated) or '-'}; expired: {', '.join(report.expired) or '-'}")


@app.command()
def cleanup(env_file: Optional[Path] = typer.Option(None, "--env-file")) -> None:
    """Purge old finished alarms and puzzles."""
    with _build_runtime(env_file) as runtime:
        report = runtime.lifecycle.cleanup()
    typer.echo(f"Removed {report.alarms_removed} alarms and {report.puzzles_removed} puzzles")


@app.command()
def run(env_file: Optional[Path] = typer.Option(None, "--env-file")) -> None:
    """Run the alarm service with an interactive prompt."""
    console = InteractiveConsole()
    runtime = _build_runtime(
        env_file,
        session_listener=console.on_session_update,
        on_session_started=console.on_session_started,
    )
    console.attach(runtime)
    signal.signal(signal.SIGINT, _graceful_exit)
    logger.info("Starting NonStop alarm service (profile=%s)", runtime.config.profile)
    with runtime:
        runtime.scheduler.start()
        console.start_background()
        try:
            console.loop()
        except (KeyboardInterrupt, EOFError):
            logger.info("Interrupted by user")
        finally:
            console.stop()
            runtime.scheduler.shutdown()


def _graceful_exit(signum, frame) -> None:  # pragma: no cover - signal handler
    logger.info("Shutting down (signal %s)", signum)
    raise KeyboardInterrupt()


class InteractiveConsole:
    """Thin stdin/stdout adapter over the scheduler and the current session."""

    HELP = "commands: create START END [LABEL] | cancel ID | list | cleanup | quit"

    def __init__(self, read_line: Callable[[str], str] = input, write: Callable[[str], None] = typer.echo):
        self.read_line = read_line
        self.write = write
        self.runtime: Optional[AlarmRuntime] = None
        self._stop_event = Event()
        self._threads: List[Thread] = []
        self._last_display = ""

    def attach(self, runtime: AlarmRuntime) -> None:
        self.runtime = runtime

    def on_session_started(self, session: DismissalSession) -> None:
        self.write(f"ALARM {session.alarm_id}! Type the answer to dismiss it.")

    def on_session_update(self, state: SessionState) -> None:
        if state.dismissed or state.expired:
            self.write(state.message or "Alarm stopped.")
            return
        # print at most once per minute
        display = state.time_remaining_display[:-3] if state.time_remaining_display else ""
        if display and display != self._last_display:
            self._last_display = display
            self.write(f"{state.puzzle_text}  (time left {state.time_remaining_display})")

    def start_background(self) -> None:
        self._stop_event.clear()
        for target, name in ((self._event_log_loop, "event-log"), (self._cleanup_loop, "cleanup")):
            thread = Thread(target=target, name=name, daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=2)
        self._threads = []

    def loop(self) -> None:
        self.write(self.HELP)
        while not self._stop_event.is_set():
            line = self.read_line("> ").strip()
            if not self.handle_line(line):
                break

    def handle_line(self, line: str) -> bool:
        runtime = self.runtime
        session = runtime.scheduler.current_session
        if session is not None:
            try:
                outcome = session.submit_answer(line)
            except AlarmError as exc:
                self.write(exc.message)
                return True
            self.write(outcome.message)
            if outcome.note:
                self.write(outcome.note)
            if outcome.next_puzzle is not None:
                self.write(f"New problem: {outcome.next_puzzle.text}")
            return True

        if not line:
            return True
        try:
            parts = shlex.split(line)
        except ValueError as exc:
            self.write(f"Could not parse command: {exc}")
            return True
        command, args = parts[0].lower(), parts[1:]
        try:
            if command in {"quit", "exit"}:
                return False
            if command == "create" and len(args) >= 2:
                start_ms, end_ms = runtime.parse_window(args[0], args[1])
                alarm = runtime.scheduler.create_alarm(start_ms, end_ms, " ".join(args[2:]))
                self.write(f"Alarm set: {runtime.describe(alarm)}")
            elif command == "cancel" and len(args) == 1:
                runtime.scheduler.cancel_alarm(args[0])
                self.write(f"Alarm {args[0]} cancelled")
            elif command == "list":
                alarms = runtime.lifecycle.list_alarms()
                self.write("\n".join(runtime.describe(a) for a in alarms) if alarms else "No alarms.")
            elif command == "cleanup":
                report = runtime.lifecycle.cleanup()
                self.write(f"Removed {report.alarms_removed} alarms and {report.puzzles_removed} puzzles")
            else:
                self.write(self.HELP)
        except (AlarmError, ValueError) as exc:
            self.write(f"Error: {exc}")
        return True

    def _event_log_loop(self) -> None:
        queue = self.runtime.events.subscribe()
        try:
            while not self._stop_event.is_set():
                try:
                    event: AlarmEvent = queue.get(timeout=0.5)
                except Empty:
                    continue
                previous = event.previous.value if event.previous else "new"
                logger.info("Alarm %s is now %s (was %s)", event.alarm_id, event.status.value, previous)
        finally:
            self.runtime.events.unsubscribe(queue)

    def _cleanup_loop(self) -> None:
        interval = max(1, self.runtime.config.cleanup_interval_min) * 60
        while not self._stop_event.wait(interval):
            self.runtime.lifecycle.cleanup()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
