"""
Relay service: wires the capture supervisor, segment cache, continuity
controller, publisher pool and health monitor into one pipeline.

Modes:
    cached  source -> capture ffmpeg -> segment cache -> serving manifest
            -> one publisher ffmpeg per endpoint
    direct  source -> single looping ffmpeg -> primary endpoint

start() returns as soon as the capture process is spawned. A pipeline thread
waits for the first segments, writes the manifest, starts the publishers and
the health monitor, then keeps the manifest current until stop().
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from relay.cache.segment_cache import SegmentCache
from relay.commands import BACKUP_PROFILE, PRIMARY_PROFILE, build_capture_command, build_direct_command
from relay.config import RelayConfig
from relay.continuity.controller import ContinuityController
from relay.errors import CacheInitError, ConfigError
from relay.health.monitor import HealthMonitor
from relay.publisher.pool import PublisherPool
from relay.supervisor.diagnostics import DiagnosticEvent, EventKind
from relay.supervisor.process_supervisor import ProcessStats, ProcessSupervisor
from relay.supervisor.restart_policy import ActionKind, RestartAction, RestartPolicy

logger = logging.getLogger(__name__)


class ServiceStatus(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class RelayService:
    """
    The relay as a whole.

    Args:
        config: Loaded RelayConfig
        popen: Spawn function for every ffmpeg process (tests inject a fake)
    """

    def __init__(self, config: RelayConfig, popen: Optional[Callable[[Sequence[str]], Any]] = None):
        self.config = config
        self.mode = config.mode
        secrets = list(config.secrets)
        for url in (config.primary_url, config.backup_url):
            if url:
                secrets.append(url)
        self._secrets = tuple(secrets)

        self.cache = SegmentCache(
            config.cache_dir,
            segment_duration=config.segment_duration,
            max_cache_seconds=config.max_cache_seconds,
            lookahead_seconds=config.lookahead_seconds,
            checkpoint_every=config.checkpoint_every,
        )
        self.continuity = ContinuityController(self.cache)
        self.pool = PublisherPool(
            config.endpoints(),
            primary_profile=PRIMARY_PROFILE,
            backup_profile=BACKUP_PROFILE,
            ffmpeg_path=config.ffmpeg_path,
            max_reconnects=config.max_reconnects,
            base_delay_sec=config.reconnect_base_delay_sec,
            growth_factor=config.restart_growth_factor,
            max_delay_sec=config.reconnect_max_delay_sec,
            restore_settle_sec=config.restore_settle_sec,
            stabilization_sec=config.stabilization_sec,
            stop_timeout_sec=config.stop_timeout_sec,
            secrets=self._secrets,
            popen=popen,
            on_event=self._on_publisher_event,
        )
        self.capture = ProcessSupervisor(
            name="capture",
            command=self._capture_command,
            policy=RestartPolicy(
                max_attempts=config.max_restart_attempts,
                base_delay_sec=config.restart_base_delay_sec,
                growth_factor=config.restart_growth_factor,
                max_delay_sec=config.restart_max_delay_sec,
                loop_input=config.loop_input,
                resume_enabled=config.resume_enabled,
            ),
            secrets=self._secrets,
            on_event=self._on_capture_event,
            on_restart_scheduled=self._on_capture_restart,
            on_give_up=self._on_give_up,
            on_exit=self._on_capture_exit,
            position_provider=self.continuity.resume_position,
            stabilization_sec=config.stabilization_sec,
            stop_timeout_sec=config.stop_timeout_sec,
            popen=popen,
        )
        self.direct = ProcessSupervisor(
            name="direct",
            command=self._direct_command,
            policy=RestartPolicy(
                max_attempts=config.max_restart_attempts,
                base_delay_sec=config.restart_base_delay_sec,
                growth_factor=config.restart_growth_factor,
                max_delay_sec=config.restart_max_delay_sec,
                loop_input=True,
            ),
            secrets=self._secrets,
            on_give_up=self._on_give_up,
            stabilization_sec=config.stabilization_sec,
            stop_timeout_sec=config.stop_timeout_sec,
            popen=popen,
        )
        self.health_monitor = HealthMonitor(
            capture=self.capture,
            cache=self.cache,
            pool=self.pool,
            on_continuity_restart=self.continuity_restart,
            interval_sec=config.health_interval_sec,
            min_lookahead_sec=config.min_lookahead_sec,
            reconnect_threshold=config.reconnect_threshold,
            restart_cooldown_sec=config.restart_cooldown_sec,
        )

        self._lock = threading.RLock()
        # Serializes start(), stop() and continuity_restart()
        self._lifecycle = threading.RLock()
        self._output_positions: Dict[str, float] = {}
        self._status = ServiceStatus.IDLE
        self._started_at: Optional[float] = None
        self._last_error: Optional[str] = None
        self._generation = 0
        self._pipeline_thread: Optional[threading.Thread] = None
        self._pipeline_stop = threading.Event()
        self._restart_timer: Optional[threading.Timer] = None
        self._cache_ready = False
        self._shutdown = threading.Event()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _capture_command(self, resume_position: Optional[float]) -> List[str]:
        return build_capture_command(
            self.config.video_url,
            self.cache.cache_dir,
            segment_duration=self.config.segment_duration,
            max_cache_seconds=self.config.max_cache_seconds,
            resume_position=resume_position,
            ffmpeg_path=self.config.ffmpeg_path,
        )

    def _direct_command(self, _resume_position: Optional[float]) -> List[str]:
        return build_direct_command(
            self.config.video_url,
            self.config.primary_url,
            PRIMARY_PROFILE,
            loop=self.config.loop_input,
            ffmpeg_path=self.config.ffmpeg_path,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def status(self) -> ServiceStatus:
        with self._lock:
            return self._status

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            if self._last_error:
                return self._last_error
        active = self.direct if self.mode == "direct" else self.capture
        return active.last_error or (self.pool.last_error if self.mode == "cached" else None)

    def _set_error(self, message: str) -> None:
        with self._lock:
            self._status = ServiceStatus.ERROR
            self._last_error = message
        logger.error(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start relaying.

        Returns:
            False if already running, if a stop() arrived before anything was
            spawned, or if configuration or the cache is unusable (status
            becomes "error" with the reason as last_error)
        """
        with self._lifecycle:
            with self._lock:
                if self._status in (ServiceStatus.STARTING, ServiceStatus.RUNNING):
                    logger.warning("Relay already running")
                    return False
                if self._status is ServiceStatus.STOPPING:
                    logger.warning("Relay is stopping, start ignored")
                    return False
                recovering = self._status is ServiceStatus.ERROR
                self._generation += 1
                generation = self._generation
                self._status = ServiceStatus.STARTING
                self._started_at = time.time()
                self._last_error = None

            if recovering:
                # Components may still be running after a give-up
                self._stop_components()

            with self._lock:
                self._pipeline_stop = threading.Event()
                self._output_positions.clear()

            try:
                self.config.require_stream_inputs()
            except ConfigError as e:
                self._set_error(str(e))
                return False

            logger.info(f"=== Relay starting ({self.mode} mode) ===")

            if self.mode == "direct":
                if self._abandoned(generation, "Start"):
                    return False
                self.direct.start()
                with self._lock:
                    if self._is_current(generation):
                        self._status = ServiceStatus.RUNNING
                return True

            try:
                self.cache.initialize()
            except CacheInitError as e:
                self._set_error(str(e))
                return False
            self._cache_ready = True

            self.continuity.reset_stop()
            self.continuity.load_state()
            resume = self.continuity.resume_position() if self.config.resume_enabled else None
            if resume is None and self.continuity.last_stable_position > 0:
                self.continuity.handle_restart_from_beginning()

            if self._abandoned(generation, "Start"):
                return False
            self.capture.start(resume_position=resume)
            self._start_pipeline_thread(generation)
            return True

    def _start_pipeline_thread(self, generation: int) -> None:
        thread = threading.Thread(
            target=self._run_pipeline,
            args=(generation, self._pipeline_stop),
            daemon=True,
            name="relay-pipeline",
        )
        with self._lock:
            self._pipeline_thread = thread
        thread.start()

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation and self._status in (ServiceStatus.STARTING, ServiceStatus.RUNNING)

    def _abandoned(self, generation: int, operation: str) -> bool:
        """True (and logged) if a stop() has superseded this operation."""
        if self._is_current(generation):
            return False
        logger.info(f"{operation} abandoned: relay is stopping")
        return True

    def _run_pipeline(self, generation: int, stop_event: threading.Event) -> None:
        manifest = None
        while manifest is None:
            ready = self.continuity.wait_for_segments(self.config.min_segments, self.config.segment_wait_ms)
            if not self._is_current(generation) or stop_event.is_set():
                return
            if not ready:
                logger.warning("Starting publishers with the segments available so far")
            manifest = self.continuity.generate_playlist()
            if manifest is None:
                logger.warning("No segments available yet, still waiting")

        self.pool.start(manifest)
        self.health_monitor.start()
        with self._lock:
            if not self._is_current(generation):
                return
            self._status = ServiceStatus.RUNNING
        logger.info("=== Relay running ===")

        refresh = max(0.5, self.config.segment_duration / 2)
        while not stop_event.wait(refresh):
            if not self._is_current(generation):
                return
            self.continuity.update_playlist()

    def stop(self) -> None:
        """
        Stop everything. Idempotent.

        A start() or continuity_restart() in flight sees the STOPPING status,
        spawns nothing further, and finishes before the components are torn
        down.
        """
        with self._lock:
            if self._status in (ServiceStatus.IDLE, ServiceStatus.STOPPED, ServiceStatus.STOPPING):
                self._cancel_restart_timer_locked()
                return
            self._status = ServiceStatus.STOPPING
            self._generation += 1
            self._cancel_restart_timer_locked()
        logger.info("=== Relay stopping ===")
        with self._lifecycle:
            self._stop_components()
        with self._lock:
            self._status = ServiceStatus.STOPPED
            self._started_at = None
        logger.info("=== Relay stopped ===")

    def _stop_components(self) -> None:
        with self._lock:
            pipeline = self._pipeline_thread
            self._pipeline_thread = None
            stop_event = self._pipeline_stop
        stop_event.set()
        self.continuity.stop()
        # The pipeline thread may be about to start the publishers
        if pipeline is not None and pipeline is not threading.current_thread():
            pipeline.join(timeout=2.0)
        self.health_monitor.stop()
        self.pool.stop()
        self.capture.stop()
        self.direct.stop()
        if self._cache_ready:
            self.cache.close()

    def restart(self, delay_sec: Optional[float] = None) -> bool:
        """Stop now, start again after delay_sec (default restart_delay_sec)."""
        delay = self.config.restart_delay_sec if delay_sec is None else delay_sec
        self.stop()
        with self._lock:
            self._cancel_restart_timer_locked()
            timer = threading.Timer(delay, self._delayed_start)
            timer.daemon = True
            timer.name = "relay-restart"
            self._restart_timer = timer
            timer.start()
        logger.info(f"Relay restart scheduled in {delay:.1f}s")
        return True

    def _delayed_start(self) -> None:
        with self._lock:
            self._restart_timer = None
        self.start()

    def _cancel_restart_timer_locked(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    def continuity_restart(self, reason: str = "requested") -> bool:
        """
        Restart the pipeline from the last stable position.

        The publishers are restarted as well when they are running, so an
        endpoint that gave up gets a fresh set of attempts.

        Skipped while a start() or stop() is in progress. A stop() that
        arrives during the restart wins: nothing is respawned.
        """
        if not self._lifecycle.acquire(blocking=False):
            logger.warning(f"Continuity restart skipped ({reason}): start or stop in progress")
            return False
        try:
            return self._continuity_restart(reason)
        finally:
            self._lifecycle.release()

    def _continuity_restart(self, reason: str) -> bool:
        with self._lock:
            status = self._status
            generation = self._generation
        if status not in (ServiceStatus.STARTING, ServiceStatus.RUNNING):
            logger.warning(f"Continuity restart ignored ({reason}): relay is {status.value}")
            return False

        logger.warning(f"Continuity restart: {reason}")
        if self.mode == "direct":
            self.direct.stop()
            if self._abandoned(generation, "Continuity restart"):
                return False
            return self.direct.start()

        publishers_running = self.pool.is_running
        if publishers_running:
            self.pool.stop()
        self.capture.stop()
        if self._abandoned(generation, "Continuity restart"):
            return False

        if self.config.resume_enabled:
            resume = self.continuity.handle_stream_failure()
        else:
            self.continuity.handle_restart_from_beginning()
            resume = None
        self.capture.start(resume_position=resume)

        if publishers_running:
            if not self.pool.primary_active and not self.pool.backup_active:
                primaries = [ep for ep in self.pool.endpoints if ep.is_primary]
                if primaries:
                    self.pool.set_endpoint_active(primaries[0].name, True)
            manifest = self.continuity.update_playlist()
            if manifest is not None:
                self.pool.start(manifest)
            elif self._is_current(generation):
                with self._lock:
                    self._status = ServiceStatus.STARTING
                self._pipeline_stop.set()
                with self._lock:
                    self._pipeline_stop = threading.Event()
                self._start_pipeline_thread(generation)
        return True

    def seek_to(self, segment_id: int) -> bool:
        if self.mode != "cached":
            return False
        return self.continuity.seek_to(segment_id)

    def fallback_quality(self) -> bool:
        if self.mode != "cached":
            return False
        return self.pool.fallback_quality()

    def restore_quality(self) -> bool:
        if self.mode != "cached":
            return False
        return self.pool.restore_quality()

    def run_forever(self) -> None:
        """Block until request_shutdown() is called, then stop."""
        while not self._shutdown.wait(1.0):
            pass
        self.stop()

    def request_shutdown(self) -> None:
        """Make run_forever() return. Safe to call from a signal handler."""
        self._shutdown.set()

    # ------------------------------------------------------------------
    # Supervisor callbacks
    # ------------------------------------------------------------------

    def _on_capture_event(self, event: DiagnosticEvent) -> None:
        if event.kind is EventKind.SEGMENT_READY and event.segment_id is not None:
            if self.cache.register_segment(event.segment_id):
                logger.debug(f"[CAPTURE] segment {event.segment_id} opened")
        elif event.kind is EventKind.PROGRESS and event.position_seconds is not None:
            self.continuity.on_progress(event.position_seconds)

    def _on_publisher_event(self, name: str, event: DiagnosticEvent) -> None:
        if event.kind is EventKind.PROGRESS and event.position_seconds is not None:
            with self._lock:
                self._output_positions[name] = event.position_seconds

    def _on_capture_exit(self, exit_code: Optional[int]) -> None:
        promoted = self.cache.finalize_pending()
        logger.info(f"[CAPTURE] exited with code {exit_code} ({promoted} pending segment(s) finalized)")

    def _on_capture_restart(self, action: RestartAction) -> None:
        if action.kind is ActionKind.RESUME_RESTART:
            self.continuity.handle_stream_failure()
        else:
            self.continuity.handle_restart_from_beginning()

    def _on_give_up(self, stats: ProcessStats) -> None:
        self._set_error(stats.last_error or f"{stats.name}: gave up")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def health(self) -> dict:
        """Status snapshot for the control surface."""
        with self._lock:
            status = self._status
            started_at = self._started_at
        active = self.direct if self.mode == "direct" else self.capture
        stats = active.get_stats()
        uptime = int(time.time() - started_at) if started_at else 0

        if self.mode == "direct":
            endpoints = [
                {
                    "name": ep.name,
                    "active": ep.is_primary,
                    "connected": ep.is_primary and stats.connected,
                }
                for ep in self.pool.endpoints
            ]
            current_position = None
            stable_position = None
            lookahead = 0.0
        else:
            with self._lock:
                output_positions = dict(self._output_positions)
            endpoints = [
                {
                    "name": entry["name"],
                    "active": entry["active"],
                    "connected": entry["connected"],
                    "output_seconds": output_positions.get(entry["name"]),
                }
                for entry in self.pool.get_stats()["endpoints"]
            ]
            state = self.continuity.state
            current_position = round(state.session_start_position + state.session_position, 2)
            stable_position = round(state.last_stable_position, 2)
            lookahead = self.cache.lookahead_seconds()

        return {
            "status": status.value,
            "mode": self.mode,
            "uptime": uptime,
            "last_error": self.last_error,
            "restart_attempts": stats.reconnect_attempts,
            "max_restart_attempts": stats.max_attempts,
            "pid": stats.pid,
            "endpoints": endpoints,
            "current_position": current_position,
            "stable_position": stable_position,
            "lookahead_seconds": lookahead,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def stats(self) -> dict:
        """Detailed component statistics."""
        result = {"health": self.health()}
        if self.mode == "direct":
            result["direct"] = self.direct.get_stats().to_dict()
            return result
        result["capture"] = self.capture.get_stats().to_dict()
        result["cache"] = self.cache.get_stats().to_dict()
        result["continuity"] = self.continuity.get_stats()
        result["publishers"] = self.pool.get_stats()
        report = self.health_monitor.last_report
        result["last_health_check"] = report.to_dict() if report is not None else None
        return result
