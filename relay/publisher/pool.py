"""
Publisher pool: one supervised ffmpeg per active RTMP endpoint.

Each endpoint publisher reads the serving manifest and follows the
ProcessSupervisor lifecycle with its own restart policy. An endpoint whose
publisher exhausts its reconnects is marked inactive until it is
reactivated explicitly (set_endpoint_active / restore_quality).

Quality fallback activates the lower-bitrate backup endpoint before pausing
the primary, so there is no gap in output. Restore brings the primary back
and drops the backups after a settle delay.

Lock order: pool lock, then supervisor lock. Supervisors are stopped outside
the pool lock because stop() joins the reader thread, whose callbacks take
the pool lock.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from relay.commands import BACKUP_PROFILE, PRIMARY_PROFILE, QualityProfile, build_publish_command, profile_for_priority
from relay.publisher.endpoint import Endpoint
from relay.supervisor.diagnostics import DiagnosticEvent
from relay.supervisor.process_supervisor import ProcessStats, ProcessSupervisor
from relay.supervisor.restart_policy import RestartAction, RestartPolicy

logger = logging.getLogger(__name__)


class PublisherPool:
    """
    Manage publisher processes for a set of endpoints.

    Args:
        endpoints: Destinations; names must be unique
        primary_profile: Encoder settings for priority 1 endpoints
        backup_profile: Encoder settings for backup endpoints
        ffmpeg_path: ffmpeg binary
        max_reconnects: Restarts per failure streak before an endpoint is given up
        base_delay_sec: First reconnect delay
        growth_factor: Reconnect delay multiplier
        max_delay_sec: Reconnect delay cap
        restore_settle_sec: Delay between reactivating the primary and dropping backups
        stabilization_sec: Connected time after which a publisher counts as stable
        stop_timeout_sec: Grace period when stopping a publisher
        secrets: Extra strings (stream keys) to redact from logs
        popen: Spawn function passed to every supervisor
        on_event: Called with (endpoint_name, DiagnosticEvent)
    """

    def __init__(
        self,
        endpoints: Iterable[Endpoint],
        primary_profile: QualityProfile = PRIMARY_PROFILE,
        backup_profile: QualityProfile = BACKUP_PROFILE,
        ffmpeg_path: str = "ffmpeg",
        max_reconnects: int = 10,
        base_delay_sec: float = 2.0,
        growth_factor: float = 1.5,
        max_delay_sec: float = 30.0,
        restore_settle_sec: float = 10.0,
        stabilization_sec: float = 45.0,
        stop_timeout_sec: float = 5.0,
        secrets: Sequence[str] = (),
        popen: Optional[Callable[[Sequence[str]], Any]] = None,
        on_event: Optional[Callable[[str, DiagnosticEvent], None]] = None,
    ) -> None:
        self._endpoints: Dict[str, Endpoint] = {}
        for endpoint in endpoints:
            if endpoint.name in self._endpoints:
                raise ValueError(f"Duplicate endpoint name: {endpoint.name}")
            self._endpoints[endpoint.name] = endpoint

        self.primary_profile = primary_profile
        self.backup_profile = backup_profile
        self.ffmpeg_path = ffmpeg_path
        self.max_reconnects = max_reconnects
        self.base_delay_sec = base_delay_sec
        self.growth_factor = growth_factor
        self.max_delay_sec = max_delay_sec
        self.restore_settle_sec = restore_settle_sec
        self.stabilization_sec = stabilization_sec
        self.stop_timeout_sec = stop_timeout_sec
        self._secrets = tuple(s for s in secrets if s)
        self._popen = popen
        self._on_event = on_event

        self._lock = threading.RLock()
        self._supervisors: Dict[str, ProcessSupervisor] = {}
        self._manifest_path: Optional[Path] = None
        self._running = False
        self._restore_timer: Optional[threading.Timer] = None
        self._restore_generation = 0

        self.failed_connections = 0
        self.reconnects = 0

    # ------------------------------------------------------------------
    # Endpoint state
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def endpoints(self) -> List[Endpoint]:
        with self._lock:
            return list(self._endpoints.values())

    @property
    def primary_active(self) -> bool:
        with self._lock:
            return any(ep.active for ep in self._endpoints.values() if ep.is_primary)

    @property
    def backup_active(self) -> bool:
        with self._lock:
            return any(ep.active for ep in self._endpoints.values() if not ep.is_primary)

    def _primary(self) -> Optional[Endpoint]:
        primaries = sorted((ep for ep in self._endpoints.values() if ep.is_primary), key=lambda ep: ep.priority)
        return primaries[0] if primaries else None

    def _backups(self) -> List[Endpoint]:
        return sorted((ep for ep in self._endpoints.values() if not ep.is_primary), key=lambda ep: ep.priority)

    def supervisor(self, name: str) -> Optional[ProcessSupervisor]:
        with self._lock:
            return self._supervisors.get(name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, manifest_path: Union[str, Path]) -> bool:
        """Start a publisher for every active endpoint."""
        with self._lock:
            if self._running:
                logger.warning("[PUBLISHER] already running")
                return False
            self._running = True
            self._manifest_path = Path(manifest_path)
            to_start = [self._ensure_supervisor_locked(ep) for ep in self._endpoints.values() if ep.active]
        logger.info(f"[PUBLISHER] starting {len(to_start)} publisher(s) from {manifest_path}")
        for supervisor in to_start:
            supervisor.start()
        return True

    def stop(self) -> None:
        """Stop every publisher and cancel a pending restore. Idempotent."""
        with self._lock:
            was_running = self._running
            self._running = False
            self._cancel_restore_locked()
            supervisors = list(self._supervisors.values())
            self._supervisors.clear()
        for supervisor in supervisors:
            supervisor.stop()
        if was_running:
            logger.info("[PUBLISHER] stopped")

    def _publish_command(self, endpoint: Endpoint) -> Callable[[Optional[float]], List[str]]:
        def command(_resume_position: Optional[float]) -> List[str]:
            with self._lock:
                manifest = self._manifest_path
            profile = profile_for_priority(endpoint.priority, self.primary_profile, self.backup_profile)
            return build_publish_command(manifest, endpoint.url, profile, ffmpeg_path=self.ffmpeg_path)
        return command

    def _ensure_supervisor_locked(self, endpoint: Endpoint) -> ProcessSupervisor:
        supervisor = self._supervisors.get(endpoint.name)
        if supervisor is not None:
            return supervisor
        name = endpoint.name
        policy = RestartPolicy(
            max_attempts=self.max_reconnects,
            base_delay_sec=self.base_delay_sec,
            growth_factor=self.growth_factor,
            max_delay_sec=self.max_delay_sec,
            loop_input=True,
        )
        supervisor = ProcessSupervisor(
            name=f"publisher:{name}",
            command=self._publish_command(endpoint),
            policy=policy,
            secrets=self._secrets + (endpoint.url,),
            on_event=(lambda event: self._on_event(name, event)) if self._on_event else None,
            on_restart_scheduled=lambda action: self._on_restart_scheduled(name, action),
            on_give_up=lambda stats: self._on_give_up(name, stats),
            stabilization_sec=self.stabilization_sec,
            stop_timeout_sec=self.stop_timeout_sec,
            popen=self._popen,
        )
        self._supervisors[name] = supervisor
        return supervisor

    def _on_restart_scheduled(self, name: str, action: RestartAction) -> None:
        with self._lock:
            if not action.eof:
                self.reconnects += 1
        logger.info(f"[PUBLISHER] {name}: reconnecting in {action.delay_sec:.1f}s")

    def _on_give_up(self, name: str, stats: ProcessStats) -> None:
        with self._lock:
            endpoint = self._endpoints.get(name)
            if endpoint is not None:
                endpoint.active = False
            self.failed_connections += 1
        logger.error(f"[PUBLISHER] {name}: max reconnect attempts reached, marking inactive")

    # ------------------------------------------------------------------
    # Endpoint control
    # ------------------------------------------------------------------

    def set_endpoint_active(self, name: str, active: bool) -> bool:
        """
        Activate or deactivate an endpoint, starting or stopping its publisher.

        Returns:
            False if the endpoint does not exist
        """
        to_start = None
        to_stop = None
        with self._lock:
            endpoint = self._endpoints.get(name)
            if endpoint is None:
                logger.warning(f"[PUBLISHER] unknown endpoint: {name}")
                return False
            endpoint.active = active
            if self._running:
                if active:
                    to_start = self._ensure_supervisor_locked(endpoint)
                else:
                    to_stop = self._supervisors.get(name)
        if to_stop is not None:
            to_stop.stop()
        if to_start is not None and not to_start.is_running:
            to_start.start()
        logger.info(f"[PUBLISHER] {name}: {'activated' if active else 'deactivated'}")
        return True

    def add_endpoint(self, endpoint: Endpoint) -> None:
        """
        Add an endpoint; its publisher starts immediately if the pool is running.

        Raises:
            ValueError: If an endpoint with the same name exists
        """
        to_start = None
        with self._lock:
            if endpoint.name in self._endpoints:
                raise ValueError(f"Duplicate endpoint name: {endpoint.name}")
            self._endpoints[endpoint.name] = endpoint
            if self._running and endpoint.active:
                to_start = self._ensure_supervisor_locked(endpoint)
        logger.info(f"[PUBLISHER] endpoint added: {endpoint.name} (priority {endpoint.priority})")
        if to_start is not None:
            to_start.start()

    def remove_endpoint(self, name: str) -> bool:
        with self._lock:
            endpoint = self._endpoints.pop(name, None)
            supervisor = self._supervisors.pop(name, None)
        if endpoint is None:
            return False
        if supervisor is not None:
            supervisor.stop()
        logger.info(f"[PUBLISHER] endpoint removed: {name}")
        return True

    # ------------------------------------------------------------------
    # Quality ladder
    # ------------------------------------------------------------------

    def fallback_quality(self) -> bool:
        """
        Switch output to the backup endpoint.

        The backup is activated before the primary is paused.

        Returns:
            False if there is no backup endpoint
        """
        with self._lock:
            backups = self._backups()
            primary = self._primary()
            self._cancel_restore_locked()
        if not backups:
            logger.warning("[PUBLISHER] quality fallback requested but no backup endpoint is configured")
            return False

        logger.info("[PUBLISHER] quality fallback: switching to backup endpoint")
        backup = backups[0]
        if not backup.active:
            self.set_endpoint_active(backup.name, True)
        if primary is not None and primary.active:
            self.set_endpoint_active(primary.name, False)
        return True

    def restore_quality(self) -> bool:
        """
        Reactivate the primary endpoint and drop backups after the settle delay.

        Returns:
            False if there is no primary endpoint
        """
        with self._lock:
            primary = self._primary()
            if primary is None:
                logger.warning("[PUBLISHER] quality restore requested but no primary endpoint is configured")
                return False
            self._cancel_restore_locked()
        logger.info("[PUBLISHER] quality restore: reactivating primary endpoint")
        self.set_endpoint_active(primary.name, True)

        with self._lock:
            self._restore_generation += 1
            timer = threading.Timer(self.restore_settle_sec, self._finish_restore, args=(self._restore_generation,))
            timer.daemon = True
            timer.name = "publisher-restore"
            self._restore_timer = timer
            timer.start()
        return True

    def _finish_restore(self, generation: int) -> None:
        with self._lock:
            if generation != self._restore_generation:
                return
            self._restore_timer = None
            primary = self._primary()
            if primary is None or not primary.active:
                logger.warning("[PUBLISHER] primary endpoint inactive after settle delay, keeping backups")
                return
            backups = [ep.name for ep in self._backups() if ep.active]
        for name in backups:
            self.set_endpoint_active(name, False)
        if backups:
            logger.info("[PUBLISHER] quality restored: primary endpoint only")

    def _cancel_restore_locked(self) -> None:
        self._restore_generation += 1
        if self._restore_timer is not None:
            self._restore_timer.cancel()
            self._restore_timer = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def active_connection_count(self) -> int:
        with self._lock:
            return sum(
                1 for name, sup in self._supervisors.items()
                if self._endpoints.get(name) is not None and self._endpoints[name].active and sup.is_connected
            )

    def recent_reconnects(self) -> int:
        """Reconnects in the current failure streaks (reset when a publisher stays connected)."""
        with self._lock:
            return sum(sup.reconnect_attempts for sup in self._supervisors.values())

    def is_stable(self) -> bool:
        """True if any active publisher has stayed connected for the stabilization window."""
        with self._lock:
            return any(
                sup.is_stable for name, sup in self._supervisors.items()
                if self._endpoints.get(name) is not None and self._endpoints[name].active
            )

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            errors = [sup.last_error for sup in self._supervisors.values() if sup.last_error]
        return errors[-1] if errors else None

    def get_stats(self) -> dict:
        with self._lock:
            endpoints = []
            for endpoint in self._endpoints.values():
                supervisor = self._supervisors.get(endpoint.name)
                entry = endpoint.to_dict()
                entry["process"] = supervisor.get_stats().to_dict() if supervisor is not None else None
                entry["connected"] = bool(supervisor is not None and endpoint.active and supervisor.is_connected)
                endpoints.append(entry)
            return {
                "running": self._running,
                "active_connections": self.active_connection_count(),
                "failed_connections": self.failed_connections,
                "reconnects": self.reconnects,
                "recent_reconnects": self.recent_reconnects(),
                "primary_active": self.primary_active,
                "backup_active": self.backup_active,
                "last_error": self.last_error,
                "endpoints": endpoints,
            }
