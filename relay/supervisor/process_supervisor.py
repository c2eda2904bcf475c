"""
Supervisor for one external ffmpeg process.

ProcessSupervisor owns the lifecycle of a single subprocess (the capture
pipeline, or one publish endpoint):

    IDLE -> STARTING -> CONNECTED -> STOPPING -> STOPPED
                 ^          |
                 +----------+  (unplanned exit, restart scheduled)
                            |
                            +-> FAILED (restart policy gave up)

Each spawned process gets one daemon reader thread that drains stderr into a
DiagnosticsParser and, at EOF, reaps the process and hands the exit to the
RestartPolicy. Restarts are scheduled on a threading.Timer so the exit
handler never sleeps; stop() cancels any pending timer.

All mutable state is guarded by one RLock. Callbacks are always invoked
after the lock is released.
"""

from __future__ import annotations

import enum
import logging
import subprocess
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from relay.errors import MaxAttemptsExceeded, SpawnError
from relay.supervisor.diagnostics import DiagnosticEvent, DiagnosticsParser, EventKind
from relay.supervisor.restart_policy import ActionKind, RestartAction, RestartPolicy
from relay.urls import redact_command

logger = logging.getLogger(__name__)

CommandSpec = Union[Sequence[str], Callable[[Optional[float]], Sequence[str]]]

READ_CHUNK_SIZE = 4096


class ProcessState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    CONNECTED = "connected"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class ProcessStats:
    """Snapshot of a supervised process for status queries."""
    name: str
    state: str
    pid: Optional[int]
    started_at: Optional[float]
    uptime_seconds: float
    last_exit_code: Optional[int]
    reconnect_attempts: int
    max_attempts: int
    last_error: Optional[str]
    last_diagnostic: Optional[str]
    connected: bool
    stable: bool

    def to_dict(self) -> dict:
        return asdict(self)


def default_popen(argv: Sequence[str]) -> subprocess.Popen:
    """Spawn argv with stderr piped for diagnostics and stdin/stdout detached."""
    return subprocess.Popen(
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
    )


class ProcessSupervisor:
    """
    Supervise one external process with restart policy and diagnostics parsing.

    Args:
        name: Label used in logs and stats (e.g. "capture", "publisher:youtube")
        command: argv list, or a callable taking an optional resume position
                 and returning the argv for that position
        policy: RestartPolicy deciding what happens after each exit
        secrets: Strings redacted from every log line and diagnostic
        on_event: Called with every DiagnosticEvent (reader thread)
        on_state_change: Called with the new ProcessState
        on_restart_scheduled: Called with the RestartAction when a restart is scheduled
        on_give_up: Called with ProcessStats when the policy gives up
        on_exit: Called with the exit code of every unplanned exit
        position_provider: Returns the last stable position for resume restarts
        stabilization_sec: Connected time after which the attempt counter resets
        stop_timeout_sec: Grace period between SIGTERM and SIGKILL in stop()
        popen: Spawn function (argv -> Popen-like handle)
    """

    def __init__(
        self,
        name: str,
        command: CommandSpec,
        policy: Optional[RestartPolicy] = None,
        secrets: Sequence[str] = (),
        on_event: Optional[Callable[[DiagnosticEvent], None]] = None,
        on_state_change: Optional[Callable[[ProcessState], None]] = None,
        on_restart_scheduled: Optional[Callable[[RestartAction], None]] = None,
        on_give_up: Optional[Callable[[ProcessStats], None]] = None,
        on_exit: Optional[Callable[[Optional[int]], None]] = None,
        position_provider: Optional[Callable[[], Optional[float]]] = None,
        stabilization_sec: float = 45.0,
        stop_timeout_sec: float = 5.0,
        popen: Optional[Callable[[Sequence[str]], Any]] = None,
    ) -> None:
        self.name = name
        self._command = command
        self._policy = policy or RestartPolicy()
        self._secrets = tuple(s for s in secrets if s)
        self._on_event = on_event
        self._on_state_change = on_state_change
        self._on_restart_scheduled = on_restart_scheduled
        self._on_give_up = on_give_up
        self._on_exit = on_exit
        self._position_provider = position_provider
        self._stabilization_sec = stabilization_sec
        self._stop_timeout_sec = stop_timeout_sec
        self._popen = popen or default_popen

        self._lock = threading.RLock()
        self._state = ProcessState.IDLE
        self._process: Optional[Any] = None
        self._parser: Optional[DiagnosticsParser] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._restart_timer: Optional[threading.Timer] = None
        self._stability_timer: Optional[threading.Timer] = None

        # Bumped on every spawn and stop; stale threads/timers compare against it
        self._generation = 0
        self._intentional_stop = False
        self._stable = False
        self._input_ended = False

        self._started_at: Optional[float] = None
        self._last_exit_code: Optional[int] = None
        self._reconnect_attempts = 0
        self._last_error: Optional[str] = None
        self._last_diagnostic: Optional[str] = None
        self._run_error: Optional[str] = None

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._process.pid if self._process is not None else None

    @property
    def is_running(self) -> bool:
        """True while a process is alive or a restart is pending."""
        with self._lock:
            return self._state in (ProcessState.STARTING, ProcessState.CONNECTED)

    @property
    def is_connected(self) -> bool:
        with self._lock:
            return self._state is ProcessState.CONNECTED

    @property
    def is_stable(self) -> bool:
        """Connected for at least the stabilization window."""
        with self._lock:
            return self._state is ProcessState.CONNECTED and self._stable

    @property
    def input_ended(self) -> bool:
        """The last process exited at end of input and was not restarted."""
        with self._lock:
            return self._input_ended

    @property
    def reconnect_attempts(self) -> int:
        with self._lock:
            return self._reconnect_attempts

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def policy(self) -> RestartPolicy:
        return self._policy

    def diagnostics_tail(self) -> List[str]:
        with self._lock:
            return self._parser.tail() if self._parser is not None else []

    def get_stats(self) -> ProcessStats:
        with self._lock:
            alive = self._state in (ProcessState.STARTING, ProcessState.CONNECTED) and self._process is not None
            uptime = time.time() - self._started_at if (alive and self._started_at) else 0.0
            return ProcessStats(
                name=self.name,
                state=self._state.value,
                pid=self._process.pid if self._process is not None else None,
                started_at=self._started_at,
                uptime_seconds=round(uptime, 1),
                last_exit_code=self._last_exit_code,
                reconnect_attempts=self._reconnect_attempts,
                max_attempts=self._policy.max_attempts,
                last_error=self._last_error,
                last_diagnostic=self._last_diagnostic,
                connected=self._state is ProcessState.CONNECTED,
                stable=self._state is ProcessState.CONNECTED and self._stable,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, command: Optional[CommandSpec] = None, resume_position: Optional[float] = None) -> bool:
        """
        Start the process (administrative start).

        Resets the attempt counter and a previous FAILED state. No-op with a
        warning if the process is already running or a stop is in progress.

        Returns:
            True if a spawn was attempted
        """
        with self._lock:
            if self._state in (ProcessState.STARTING, ProcessState.CONNECTED):
                logger.warning(f"[{self.name}] already running")
                return False
            if self._state is ProcessState.STOPPING:
                logger.warning(f"[{self.name}] stop in progress, start ignored")
                return False
            if command is not None:
                self._command = command
            self._intentional_stop = False
            self._reconnect_attempts = 0
            self._last_error = None
            self._policy.reset()
            calls = self._spawn_locked(resume_position)
        self._run_callbacks(calls)
        return True

    def stop(self) -> None:
        """
        Stop the process and cancel any pending restart.

        Idempotent. Sends SIGTERM, waits up to stop_timeout_sec, then kills.
        """
        calls: List[Tuple[Callable, tuple]] = []
        with self._lock:
            self._intentional_stop = True
            self._generation += 1
            self._cancel_timers_locked()
            proc = self._process
            reader = self._reader_thread
            self._process = None
            self._reader_thread = None
            if proc is None:
                if self._state is ProcessState.STOPPING:
                    # Another stop() owns the shutdown
                    return
                if self._state not in (ProcessState.IDLE, ProcessState.STOPPED):
                    if self._state is ProcessState.STARTING:
                        logger.info(f"[{self.name}] pending restart cancelled")
                    calls += self._set_state_locked(ProcessState.STOPPED)
            else:
                calls += self._set_state_locked(ProcessState.STOPPING)
        self._run_callbacks(calls)
        if proc is None:
            return

        logger.info(f"[{self.name}] stopping pid {proc.pid}")
        exit_code = self._terminate(proc)

        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=1.0)

        with self._lock:
            self._last_exit_code = exit_code
            calls = []
            if self._state is ProcessState.STOPPING:
                calls = self._set_state_locked(ProcessState.STOPPED)
        self._run_callbacks(calls)
        logger.info(f"[{self.name}] stopped (exit code: {exit_code})")

    def restart(self, resume_position: Optional[float] = None) -> bool:
        """Stop, then start again (administrative restart)."""
        self.stop()
        return self.start(resume_position=resume_position)

    def _terminate(self, proc: Any) -> Optional[int]:
        try:
            proc.terminate()
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"[{self.name}] terminate failed: {e}")
        try:
            return proc.wait(timeout=self._stop_timeout_sec)
        except subprocess.TimeoutExpired:
            logger.warning(f"[{self.name}] did not exit within {self._stop_timeout_sec:.1f}s, killing")
            try:
                proc.kill()
            except (ProcessLookupError, OSError) as e:
                logger.debug(f"[{self.name}] kill failed: {e}")
            return proc.wait()

    # ------------------------------------------------------------------
    # Spawning and restart scheduling (call with lock held)
    # ------------------------------------------------------------------

    def _build_command(self, resume_position: Optional[float]) -> List[str]:
        if callable(self._command):
            return list(self._command(resume_position))
        return list(self._command)

    def _spawn_locked(self, resume_position: Optional[float]) -> List[Tuple[Callable, tuple]]:
        self._generation += 1
        generation = self._generation
        self._stable = False
        self._input_ended = False
        self._run_error = None
        self._parser = DiagnosticsParser(secrets=self._secrets)
        calls = self._set_state_locked(ProcessState.STARTING)

        try:
            argv = self._build_command(resume_position)
            proc = self._popen(argv)
        except (OSError, ValueError) as e:
            error = SpawnError(self.name, e)
            logger.error(f"[{self.name}] {error}")
            self._last_error = str(error)
            self._run_error = str(error)
            return calls + self._handle_exit_locked(None)

        self._process = proc
        self._started_at = time.time()
        if resume_position:
            logger.info(f"[{self.name}] started pid {proc.pid} (resume at {resume_position:.1f}s)")
        else:
            logger.info(f"[{self.name}] started pid {proc.pid}")
        logger.debug(f"[{self.name}] command: {redact_command(argv, self._secrets)}")

        reader = threading.Thread(
            target=self._drain_diagnostics,
            args=(generation, proc, self._parser),
            daemon=True,
            name=f"{self.name}-diagnostics",
        )
        self._reader_thread = reader
        reader.start()
        return calls

    def _schedule_restart_locked(self, action: RestartAction) -> None:
        position = action.position if action.kind is ActionKind.RESUME_RESTART else None
        timer = threading.Timer(action.delay_sec, self._restart_fired, args=(self._generation, position))
        timer.daemon = True
        timer.name = f"{self.name}-restart"
        self._restart_timer = timer
        timer.start()

    def _restart_fired(self, generation: int, resume_position: Optional[float]) -> None:
        with self._lock:
            if generation != self._generation or self._intentional_stop:
                return
            self._restart_timer = None
            logger.info(f"[{self.name}] restarting (attempt {self._reconnect_attempts}/{self._policy.max_attempts})")
            calls = self._spawn_locked(resume_position)
        self._run_callbacks(calls)

    def _cancel_timers_locked(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None
        if self._stability_timer is not None:
            self._stability_timer.cancel()
            self._stability_timer = None

    def _set_state_locked(self, new_state: ProcessState) -> List[Tuple[Callable, tuple]]:
        old_state = self._state
        if old_state is new_state:
            return []
        self._state = new_state
        logger.debug(f"[{self.name}] state: {old_state.value} -> {new_state.value}")
        if self._on_state_change is not None:
            return [(self._on_state_change, (new_state,))]
        return []

    def _run_callbacks(self, calls: List[Tuple[Callable, tuple]]) -> None:
        for fn, args in calls:
            try:
                fn(*args)
            except Exception as e:
                logger.error(f"[{self.name}] callback {getattr(fn, '__name__', fn)} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _drain_diagnostics(self, generation: int, proc: Any, parser: DiagnosticsParser) -> None:
        stream = proc.stderr
        if stream is not None:
            read = getattr(stream, "read1", None) or stream.readline
            try:
                while True:
                    chunk = read(READ_CHUNK_SIZE)
                    if not chunk:
                        break
                    for event in parser.feed(chunk):
                        self._handle_event(generation, event)
            except (OSError, ValueError) as e:
                # Pipe closed underneath us (stop() or process death)
                logger.debug(f"[{self.name}] diagnostics stream closed: {e}")
            for event in parser.flush():
                self._handle_event(generation, event)

        exit_code = proc.wait()
        self._on_process_exit(generation, exit_code)

    def _handle_event(self, generation: int, event: DiagnosticEvent) -> None:
        calls: List[Tuple[Callable, tuple]] = []
        with self._lock:
            if generation != self._generation:
                return
            self._last_diagnostic = event.raw
            if event.kind is EventKind.CONNECTED and self._state is ProcessState.STARTING:
                logger.info(f"[{self.name}] connected")
                calls += self._set_state_locked(ProcessState.CONNECTED)
                self._start_stability_timer_locked(generation)
            elif event.kind is EventKind.ERROR_DETECTED:
                category = event.category.value if event.category else "unknown"
                self._run_error = f"{category}: {event.raw}"
                self._last_error = self._run_error
                logger.warning(f"[FFMPEG:{self.name}] {event.raw}")
            elif event.kind is EventKind.END_OF_INPUT:
                logger.info(f"[FFMPEG:{self.name}] {event.raw}")
            elif event.kind is EventKind.UNCLASSIFIED:
                logger.debug(f"[FFMPEG:{self.name}] {event.raw}")
        if self._on_event is not None:
            calls.append((self._on_event, (event,)))
        self._run_callbacks(calls)

    def _start_stability_timer_locked(self, generation: int) -> None:
        if self._stability_timer is not None:
            self._stability_timer.cancel()
        timer = threading.Timer(self._stabilization_sec, self._mark_stable, args=(generation,))
        timer.daemon = True
        timer.name = f"{self.name}-stability"
        self._stability_timer = timer
        timer.start()

    def _mark_stable(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state is not ProcessState.CONNECTED:
                return
            self._stability_timer = None
            self._stable = True
            if self._reconnect_attempts:
                logger.info(
                    f"[{self.name}] stable for {self._stabilization_sec:.0f}s - resetting restart counter "
                    f"(was {self._reconnect_attempts})"
                )
            self._reconnect_attempts = 0

    # ------------------------------------------------------------------
    # Exit handling
    # ------------------------------------------------------------------

    def _on_process_exit(self, generation: int, exit_code: Optional[int]) -> None:
        with self._lock:
            if generation != self._generation:
                return
            calls = self._handle_exit_locked(exit_code)
        self._run_callbacks(calls)

    def _handle_exit_locked(self, exit_code: Optional[int]) -> List[Tuple[Callable, tuple]]:
        self._process = None
        self._reader_thread = None
        self._last_exit_code = exit_code
        self._stable = False
        if self._stability_timer is not None:
            self._stability_timer.cancel()
            self._stability_timer = None

        if self._intentional_stop:
            return self._set_state_locked(ProcessState.STOPPED)

        calls: List[Tuple[Callable, tuple]] = []
        if self._on_exit is not None:
            calls.append((self._on_exit, (exit_code,)))

        tail = self._parser.tail() if self._parser is not None else []
        position = self._position_provider() if self._position_provider is not None else None
        action = self._policy.decide(exit_code, tail, self._reconnect_attempts, False, stable_position=position)

        if exit_code is not None:
            logger.warning(f"[{self.name}] exited with code {exit_code}")

        if action.kind is ActionKind.GIVE_UP:
            error = MaxAttemptsExceeded(self.name, self._policy.max_attempts, exit_code)
            self._last_error = str(error)
            logger.error(f"[{self.name}] {error}")
            calls += self._set_state_locked(ProcessState.FAILED)
            if self._on_give_up is not None:
                calls.append((self._on_give_up, (self.get_stats(),)))
            return calls

        if action.kind is ActionKind.NONE:
            logger.info(f"[{self.name}] input ended, not restarting")
            self._input_ended = True
            calls += self._set_state_locked(ProcessState.STOPPED)
            return calls

        if action.kind is ActionKind.IMMEDIATE_RESTART:
            logger.info(f"[{self.name}] end of input, restarting in {action.delay_sec:.1f}s")
        else:
            self._reconnect_attempts += 1
            detail = f" ({self._run_error})" if self._run_error else ""
            self._last_error = (
                f"exited with code {exit_code} "
                f"(attempt {self._reconnect_attempts}/{self._policy.max_attempts}){detail}"
            )
            if action.kind is ActionKind.RESUME_RESTART:
                logger.warning(
                    f"[{self.name}] restart {self._reconnect_attempts}/{self._policy.max_attempts} "
                    f"in {action.delay_sec:.1f}s, resuming at {action.position:.1f}s"
                )
            else:
                logger.warning(
                    f"[{self.name}] restart {self._reconnect_attempts}/{self._policy.max_attempts} "
                    f"in {action.delay_sec:.1f}s"
                )

        calls += self._set_state_locked(ProcessState.STARTING)
        self._schedule_restart_locked(action)
        if self._on_restart_scheduled is not None:
            calls.append((self._on_restart_scheduled, (action,)))
        return calls
