"""
Periodic health checks and automatic recovery.

The monitor samples the capture supervisor, segment cache and publisher pool
on a fixed interval and triggers recovery actions through callbacks supplied
by the service. A tick that starts while the previous one is still running
is skipped.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from relay.cache.segment_cache import SegmentCache
from relay.publisher.pool import PublisherPool
from relay.supervisor.process_supervisor import ProcessState, ProcessSupervisor

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    """Result of one health check."""
    timestamp: float
    capture_running: bool
    capture_state: str
    lookahead_seconds: float
    active_connections: int
    recent_reconnects: int
    primary_active: bool
    backup_active: bool
    fallback_latched: bool
    actions: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def healthy(self) -> bool:
        return self.capture_running and self.active_connections > 0 and not self.actions

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "healthy": self.healthy,
            "capture_running": self.capture_running,
            "capture_state": self.capture_state,
            "lookahead_seconds": self.lookahead_seconds,
            "active_connections": self.active_connections,
            "recent_reconnects": self.recent_reconnects,
            "primary_active": self.primary_active,
            "backup_active": self.backup_active,
            "fallback_latched": self.fallback_latched,
            "actions": list(self.actions),
            "skipped": self.skipped,
        }


class HealthMonitor:
    """
    Fixed-interval health checks.

    Args:
        capture: Supervisor of the capture process
        cache: Segment cache (lookahead)
        pool: Publisher pool
        on_continuity_restart: Called to restart the pipeline from the last stable position
        interval_sec: Seconds between checks
        min_lookahead_sec: Lookahead below this is logged
        reconnect_threshold: Publisher reconnects above this trigger a quality fallback
        restart_cooldown_sec: Minimum time between continuity restarts for lost publishers
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        capture: ProcessSupervisor,
        cache: SegmentCache,
        pool: PublisherPool,
        on_continuity_restart: Callable[[str], None],
        interval_sec: float = 15.0,
        min_lookahead_sec: float = 30.0,
        reconnect_threshold: int = 5,
        restart_cooldown_sec: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capture = capture
        self.cache = cache
        self.pool = pool
        self._on_continuity_restart = on_continuity_restart
        self.interval_sec = interval_sec
        self.min_lookahead_sec = min_lookahead_sec
        self.reconnect_threshold = reconnect_threshold
        self.restart_cooldown_sec = restart_cooldown_sec
        self._clock = clock

        self._check_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._fallback_latched = False
        self._last_restart_at: Optional[float] = None
        self.last_report: Optional[HealthReport] = None

    @property
    def fallback_latched(self) -> bool:
        return self._fallback_latched

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="health-monitor")
        self._thread.start()
        logger.info(f"[HEALTH] monitoring every {self.interval_sec:.0f}s")

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_sec):
            try:
                self.check()
            except Exception as e:
                logger.error(f"[HEALTH] check failed: {e}", exc_info=True)

    def check(self) -> HealthReport:
        """Run one check. Returns a report marked skipped if a check is already running."""
        if not self._check_lock.acquire(blocking=False):
            logger.debug("[HEALTH] previous check still running, skipping")
            return self._report(skipped=True)
        try:
            return self._check()
        finally:
            self._check_lock.release()

    def _report(self, actions: Optional[List[str]] = None, skipped: bool = False) -> HealthReport:
        return HealthReport(
            timestamp=time.time(),
            capture_running=self.capture.is_running,
            capture_state=self.capture.state.value,
            lookahead_seconds=self.cache.lookahead_seconds(),
            active_connections=self.pool.active_connection_count(),
            recent_reconnects=self.pool.recent_reconnects(),
            primary_active=self.pool.primary_active,
            backup_active=self.pool.backup_active,
            fallback_latched=self._fallback_latched,
            actions=actions or [],
            skipped=skipped,
        )

    def _check(self) -> HealthReport:
        actions: List[str] = []

        if (
            not self.capture.is_running
            and self.capture.state is not ProcessState.FAILED
            and not self.capture.input_ended
        ):
            logger.warning("[HEALTH] capture pipeline not running - triggering continuity restart")
            self._continuity_restart("capture not running", actions)

        lookahead = self.cache.lookahead_seconds()
        if lookahead < self.min_lookahead_sec:
            logger.info(f"[HEALTH] low lookahead: {lookahead:.0f}s (minimum {self.min_lookahead_sec:.0f}s)")

        reconnects = self.pool.recent_reconnects()
        if reconnects > self.reconnect_threshold and not self._fallback_latched:
            logger.warning(f"[HEALTH] {reconnects} publisher reconnects - triggering quality fallback")
            if self.pool.fallback_quality():
                actions.append("fallback_quality")
            self._fallback_latched = True

        if self.pool.is_running and self.pool.active_connection_count() == 0 and "continuity_restart" not in actions:
            now = self._clock()
            if self._last_restart_at is None or now - self._last_restart_at >= self.restart_cooldown_sec:
                logger.warning("[HEALTH] no active publisher connections - triggering continuity restart")
                self._continuity_restart("no active connections", actions)

        if self._fallback_latched and self.pool.is_stable():
            logger.info("[HEALTH] publisher connection stable, fallback re-armed")
            self._fallback_latched = False

        # Restore only once the fallback window has ended
        if (
            not actions
            and not self._fallback_latched
            and self.pool.backup_active
            and not self.pool.primary_active
        ):
            logger.info("[HEALTH] backup active without primary - attempting quality restore")
            if self.pool.restore_quality():
                actions.append("restore_quality")

        report = self._report(actions)
        self.last_report = report
        return report

    def _continuity_restart(self, reason: str, actions: List[str]) -> None:
        self._last_restart_at = self._clock()
        actions.append("continuity_restart")
        try:
            self._on_continuity_restart(reason)
        except Exception as e:
            logger.error(f"[HEALTH] continuity restart failed: {e}", exc_info=True)
