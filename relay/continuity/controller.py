"""
Continuity controller.

Tracks how far the relayed stream has progressed so a restarted capture
process resumes where the last one stopped instead of at position zero, and
maintains the serving manifest the publishers read.

Positions:
    session time    ffmpeg's time= for the current capture process (restarts at 0)
    stream time     session_start_position + session time (never goes backwards)
    source time     stream time minus loop_offset (what ffmpeg -ss expects)
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from relay.cache.checkpoint import CheckpointStore
from relay.cache.segment_cache import SegmentCache
from relay.continuity.playlist import render_playlist, write_playlist

logger = logging.getLogger(__name__)

STATE_FILENAME = "continuity.json"
PLAYLIST_FILENAME = "serve.m3u8"


@dataclass
class ContinuityState:
    last_stable_position: float = 0.0
    session_start_position: float = 0.0
    session_position: float = 0.0
    loop_offset: float = 0.0
    total_restart_count: int = 0
    last_checkpoint_position: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ContinuityState":
        """
        Raises:
            ValueError: If a position is not a finite number
            TypeError: If a field has an unusable type
        """
        return cls(
            last_stable_position=_position(data, "last_stable_position"),
            session_start_position=_position(data, "session_start_position"),
            session_position=_position(data, "session_position"),
            loop_offset=_position(data, "loop_offset"),
            total_restart_count=int(data.get("total_restart_count", 0)),
            last_checkpoint_position=_position(data, "last_checkpoint_position"),
        )


def _position(data: dict, key: str) -> float:
    value = float(data.get(key, 0.0))
    # NaN would freeze the stable position (nothing compares greater)
    if not math.isfinite(value):
        raise ValueError(f"Invalid {key}: {value} (must be finite)")
    return value


class ContinuityController:
    """
    Owns ContinuityState and the serving manifest.

    Args:
        cache: SegmentCache holding the captured segments
        playlist_path: Manifest path (defaults to serve.m3u8 in the cache directory)
        state_store: Persistence for ContinuityState (defaults to continuity.json
                     in the cache directory)
        checkpoint_interval_sec: Persist after this much confirmed advance
        poll_interval_sec: Poll period for wait_for_segments()
    """

    def __init__(
        self,
        cache: SegmentCache,
        playlist_path: Optional[Union[str, Path]] = None,
        state_store: Optional[CheckpointStore] = None,
        checkpoint_interval_sec: float = 3.0,
        poll_interval_sec: float = 0.5,
    ) -> None:
        self.cache = cache
        self.playlist_path = Path(playlist_path) if playlist_path else cache.cache_dir / PLAYLIST_FILENAME
        self._store = state_store or CheckpointStore(cache.cache_dir / STATE_FILENAME)
        self.checkpoint_interval_sec = checkpoint_interval_sec
        self.poll_interval_sec = poll_interval_sec

        self._lock = threading.RLock()
        self._state = ContinuityState()
        self._stop_event = threading.Event()
        self._last_playlist: Optional[str] = None

    @property
    def state(self) -> ContinuityState:
        """Copy of the current state."""
        with self._lock:
            return ContinuityState(**asdict(self._state))

    @property
    def last_stable_position(self) -> float:
        with self._lock:
            return self._state.last_stable_position

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load_state(self) -> bool:
        """Restore state saved by a previous run. Returns True if a state was loaded."""
        data = self._store.load()
        if data is None:
            return False
        try:
            restored = ContinuityState.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"[CONTINUITY] ignoring corrupt state: {e}")
            return False
        with self._lock:
            # A restarted service resumes from the last stable point
            restored.session_start_position = restored.last_stable_position
            restored.session_position = 0.0
            self._state = restored
        logger.info(
            f"[CONTINUITY] restored state: stable position {restored.last_stable_position:.1f}s, "
            f"{restored.total_restart_count} restarts"
        )
        return True

    def _persist(self) -> None:
        with self._lock:
            data = self._state.to_dict()
        data["saved_at"] = datetime.now(timezone.utc).isoformat()
        try:
            self._store.save(data)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"[CONTINUITY] failed to persist state: {e}")

    # ------------------------------------------------------------------
    # Position tracking
    # ------------------------------------------------------------------

    def on_progress(self, session_seconds: float) -> float:
        """
        Record confirmed progress reported by the capture process.

        Returns:
            The (possibly unchanged) last stable position
        """
        persist = False
        with self._lock:
            state = self._state
            state.session_position = session_seconds
            position = state.session_start_position + session_seconds
            if position > state.last_stable_position:
                state.last_stable_position = position
                if position - state.last_checkpoint_position >= self.checkpoint_interval_sec:
                    state.last_checkpoint_position = position
                    persist = True
            stable = state.last_stable_position
        if persist:
            self._persist()
        return stable

    def resume_position(self) -> Optional[float]:
        """Source position for ffmpeg -ss, or None to start from the beginning."""
        with self._lock:
            position = self._state.last_stable_position - self._state.loop_offset
        return position if position > 0 else None

    def handle_stream_failure(self) -> Optional[float]:
        """
        Prepare a resumed capture after a failure.

        The next session starts at the last stable position. Persists the state
        and refreshes the manifest from whatever is still cached.

        Returns:
            The source position the capture process should resume from
        """
        with self._lock:
            state = self._state
            state.session_start_position = state.last_stable_position
            state.session_position = 0.0
            state.total_restart_count += 1
            count = state.total_restart_count
        resume = self.resume_position()
        if resume is not None:
            logger.info(f"[CONTINUITY] stream failure #{count}, resuming from {resume:.1f}s")
        else:
            logger.info(f"[CONTINUITY] stream failure #{count}, restarting from the beginning")
        self._persist()
        self.update_playlist()
        return resume

    def handle_restart_from_beginning(self) -> None:
        """The source is being read from position zero again (loop or non-resumable restart)."""
        with self._lock:
            state = self._state
            state.loop_offset = state.last_stable_position
            state.session_start_position = state.last_stable_position
            state.session_position = 0.0
            state.total_restart_count += 1
            offset = state.loop_offset
        logger.info(f"[CONTINUITY] source restarted from the beginning (stream offset {offset:.1f}s)")
        self._persist()

    # ------------------------------------------------------------------
    # Segments and manifest
    # ------------------------------------------------------------------

    def wait_for_segments(self, min_count: int, timeout_ms: float) -> bool:
        """
        Wait until min_count contiguous ready segments exist from the serving position.

        Always returns within timeout_ms (or sooner if stop() is called).
        """
        deadline = time.monotonic() + timeout_ms / 1000.0
        while True:
            available = len(self.cache.contiguous_ready_from(self.cache.current_segment_id))
            if available >= min_count:
                logger.info(f"[CONTINUITY] {available} segments ready")
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    f"[CONTINUITY] timed out waiting for {min_count} segments ({available} ready)"
                )
                return False
            if self._stop_event.wait(min(self.poll_interval_sec, remaining)):
                logger.info("[CONTINUITY] wait for segments aborted")
                return False

    def _render(self) -> Optional[str]:
        current = self.cache.current_segment_id
        entries = []
        for segment_id in self.cache.get_available_segments():
            if segment_id < current:
                continue
            segment = self.cache.get_segment(segment_id)
            if segment is None:
                continue
            entries.append((segment_id, segment.file_path.name, segment.duration_seconds))
        if not entries:
            return None
        return render_playlist(entries)

    def generate_playlist(self) -> Optional[Path]:
        """Write the serving manifest. Returns its path, or None if nothing is ready."""
        path = self._write_playlist(force=True)
        if path is not None:
            logger.info(f"[CONTINUITY] playlist generated at {path}")
        return path

    def update_playlist(self) -> Optional[Path]:
        """Refresh the manifest if the ready set changed. Returns its path, or None if nothing is ready."""
        return self._write_playlist(force=False)

    def _write_playlist(self, force: bool) -> Optional[Path]:
        text = self._render()
        if text is None:
            logger.debug("[CONTINUITY] no ready segments for playlist")
            return None
        with self._lock:
            if not force and text == self._last_playlist and self.playlist_path.exists():
                return self.playlist_path
            try:
                write_playlist(self.playlist_path, text)
            except OSError as e:
                logger.error(f"[CONTINUITY] failed to write playlist {self.playlist_path}: {e}")
                return None
            self._last_playlist = text
        return self.playlist_path

    def seek_to(self, segment_id: int) -> bool:
        """Move the serving position to a ready segment."""
        if self.cache.get_segment(segment_id) is None:
            logger.warning(f"[CONTINUITY] cannot seek to segment {segment_id}: not available")
            return False
        self.cache.set_current_segment(segment_id)
        logger.info(f"[CONTINUITY] serving position moved to segment {segment_id}")
        self.update_playlist()
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_stats(self) -> dict:
        state = self.state
        return {
            "current_segment_id": self.cache.current_segment_id,
            "last_stable_position": round(state.last_stable_position, 2),
            "session_start_position": round(state.session_start_position, 2),
            "session_position": round(state.session_position, 2),
            "loop_offset": round(state.loop_offset, 2),
            "total_restart_count": state.total_restart_count,
            "lookahead_seconds": self.cache.lookahead_seconds(),
            "playlist_path": str(self.playlist_path),
        }

    def reset_stop(self) -> None:
        """Re-arm wait_for_segments() after stop()."""
        self._stop_event.clear()

    def stop(self) -> None:
        """Abort pending waits and persist the state."""
        self._stop_event.set()
        self._persist()
