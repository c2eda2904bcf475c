"""
Restart policy for supervised ffmpeg processes.

Decides what to do after a process exits:

- intentional stop            -> NONE
- attempts exhausted          -> GIVE_UP
- end of input (EOF-like)     -> IMMEDIATE_RESTART (looped input) or NONE
- anything else               -> BACKOFF_RESTART, or RESUME_RESTART when a
                                 stable playback position is known

EOF restarts are rate limited: a source that serves very short content (or
rejects range requests at the end) would otherwise be hammered once a second.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from relay.supervisor.diagnostics import contains_end_of_stream

logger = logging.getLogger(__name__)


class ActionKind(enum.Enum):
    NONE = "none"
    IMMEDIATE_RESTART = "immediate_restart"
    BACKOFF_RESTART = "backoff_restart"
    RESUME_RESTART = "resume_restart"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RestartAction:
    """
    Result of RestartPolicy.decide().

    Attributes:
        kind: What the supervisor should do
        delay_sec: Seconds to wait before respawning (restart kinds only)
        position: Resume position in seconds (RESUME_RESTART only)
        eof: True if the exit was classified as end of input
    """
    kind: ActionKind
    delay_sec: float = 0.0
    position: Optional[float] = None
    eof: bool = False

    @property
    def restarts(self) -> bool:
        return self.kind in (
            ActionKind.IMMEDIATE_RESTART,
            ActionKind.BACKOFF_RESTART,
            ActionKind.RESUME_RESTART,
        )


class RestartPolicy:
    """
    Exit classification and backoff computation.

    The only state kept is the time of the last EOF-triggered restart (for
    rate limiting). Attempt counting belongs to the caller.

    Args:
        max_attempts: Restarts allowed in one failure streak before GIVE_UP
        base_delay_sec: First backoff delay
        growth_factor: Multiplier applied per further attempt
        max_delay_sec: Backoff cap
        loop_input: Restart after end of input (True) or stop (False)
        resume_enabled: Prefer RESUME_RESTART when a stable position is known
        eof_delay_sec: Delay for an EOF restart
        eof_frequent_delay_sec: Delay for an EOF restart inside eof_window_sec of the previous one
        eof_window_sec: Rate-limit window for EOF restarts
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        max_attempts: int = 15,
        base_delay_sec: float = 5.0,
        growth_factor: float = 1.5,
        max_delay_sec: float = 60.0,
        loop_input: bool = True,
        resume_enabled: bool = False,
        eof_delay_sec: float = 1.0,
        eof_frequent_delay_sec: float = 3.0,
        eof_window_sec: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {max_attempts}")
        if base_delay_sec < 0 or max_delay_sec < 0:
            raise ValueError("Restart delays must be >= 0")
        if growth_factor < 1.0:
            raise ValueError(f"growth_factor must be >= 1.0, got {growth_factor}")
        if eof_frequent_delay_sec < eof_delay_sec:
            raise ValueError("eof_frequent_delay_sec must be >= eof_delay_sec")

        self.max_attempts = max_attempts
        self.base_delay_sec = base_delay_sec
        self.growth_factor = growth_factor
        self.max_delay_sec = max_delay_sec
        self.loop_input = loop_input
        self.resume_enabled = resume_enabled
        self.eof_delay_sec = eof_delay_sec
        self.eof_frequent_delay_sec = eof_frequent_delay_sec
        self.eof_window_sec = eof_window_sec
        self._clock = clock
        self._last_eof_restart_at: Optional[float] = None

    def reset(self) -> None:
        """Forget EOF restart history (used on an administrative start)."""
        self._last_eof_restart_at = None

    def backoff_delay(self, attempt: int) -> float:
        """
        Delay before restart number `attempt` (1-based) of a failure streak.

        delay = min(base * factor^(attempt-1), max)
        """
        exponent = max(attempt, 1) - 1
        return min(self.base_delay_sec * (self.growth_factor ** exponent), self.max_delay_sec)

    def is_eof_like(self, exit_code: Optional[int], diagnostics_tail: Sequence[str] = ()) -> bool:
        if exit_code is None:
            return False
        return exit_code == 0 or contains_end_of_stream(diagnostics_tail)

    def decide(
        self,
        exit_code: Optional[int],
        diagnostics_tail: Sequence[str],
        attempt_count: int,
        was_intentional: bool,
        stable_position: Optional[float] = None,
    ) -> RestartAction:
        """
        Decide what to do after a process exit.

        Args:
            exit_code: Process exit code (None when the process never spawned)
            diagnostics_tail: Last diagnostic lines of the run
            attempt_count: Restarts already made in the current failure streak
            was_intentional: True when stop() caused the exit
            stable_position: Last confirmed playback position, if tracked

        Returns:
            RestartAction
        """
        if was_intentional:
            return RestartAction(ActionKind.NONE)

        if attempt_count >= self.max_attempts:
            return RestartAction(ActionKind.GIVE_UP)

        if self.is_eof_like(exit_code, diagnostics_tail):
            if not self.loop_input:
                return RestartAction(ActionKind.NONE, eof=True)
            now = self._clock()
            frequent = (
                self._last_eof_restart_at is not None
                and now - self._last_eof_restart_at < self.eof_window_sec
            )
            self._last_eof_restart_at = now
            delay = self.eof_frequent_delay_sec if frequent else self.eof_delay_sec
            if frequent:
                logger.debug(f"EOF restart within {self.eof_window_sec:.0f}s of the previous one, delaying {delay:.1f}s")
            return RestartAction(ActionKind.IMMEDIATE_RESTART, delay_sec=delay, eof=True)

        delay = self.backoff_delay(attempt_count + 1)
        if self.resume_enabled and stable_position is not None and stable_position > 0:
            return RestartAction(ActionKind.RESUME_RESTART, delay_sec=delay, position=stable_position)
        return RestartAction(ActionKind.BACKOFF_RESTART, delay_sec=delay)
