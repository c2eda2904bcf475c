"""
Rolling cache of HLS segments written by the capture ffmpeg.

The capture process writes segment_<n>.ts files into the cache directory and
deletes old ones itself (hls_flags delete_segments with an hls_list_size equal
to this cache's window). SegmentCache only tracks metadata:

- a segment is registered when ffmpeg reports opening its file
- the newest segment is still being written, so it stays pending until a
  later segment opens (or the capture exits), then it is promoted to ready
- metadata beyond the window is evicted oldest-first
- a checkpoint is written every Nth segment and on close()

A segment is never reported as ready unless its file can be stat'ed.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from relay.cache.checkpoint import CheckpointStore
from relay.errors import CacheInitError

logger = logging.getLogger(__name__)

CHECKPOINT_FILENAME = "checkpoint.json"


@dataclass
class Segment:
    """One time-sliced unit of captured media."""
    id: int
    file_path: Path
    created_at: float
    duration_seconds: float
    ready: bool = False
    size_bytes: int = 0


@dataclass
class CacheStats:
    current_segment_id: int
    total_tracked: int
    ready_segments: int
    last_segment_id: Optional[int]
    lookahead_segments: int
    lookahead_seconds: float
    needed_segments: int
    last_error: Optional[str]

    def to_dict(self) -> dict:
        return {
            "current_segment_id": self.current_segment_id,
            "total_tracked": self.total_tracked,
            "ready_segments": self.ready_segments,
            "last_segment_id": self.last_segment_id,
            "lookahead_segments": self.lookahead_segments,
            "lookahead_seconds": self.lookahead_seconds,
            "needed_segments": self.needed_segments,
            "last_error": self.last_error,
        }


class SegmentCache:
    """
    Metadata for the rolling window of captured segments.

    Args:
        cache_dir: Directory the capture process writes segments into
        segment_duration: Target segment length in seconds (ffmpeg -hls_time)
        max_cache_seconds: Window size in seconds
        lookahead_seconds: Desired buffered seconds ahead of the serving position
        checkpoint_every: Persist a checkpoint when a segment id is a multiple of this
        segment_extension: Segment file extension
        clock: Wall clock used for created_at
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        segment_duration: float = 2.0,
        max_cache_seconds: float = 300.0,
        lookahead_seconds: float = 60.0,
        checkpoint_every: int = 100,
        segment_extension: str = "ts",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if segment_duration <= 0:
            raise ValueError(f"segment_duration must be > 0, got {segment_duration}")
        if max_cache_seconds < segment_duration:
            raise ValueError("max_cache_seconds must be >= segment_duration")
        if checkpoint_every <= 0:
            raise ValueError(f"checkpoint_every must be > 0, got {checkpoint_every}")

        self.cache_dir = Path(cache_dir)
        self.segment_duration = segment_duration
        self.max_cache_seconds = max_cache_seconds
        self.lookahead_target_seconds = lookahead_seconds
        self.checkpoint_every = checkpoint_every
        self.segment_extension = segment_extension
        self.max_segments = math.ceil(max_cache_seconds / segment_duration)
        self._clock = clock

        self._lock = threading.RLock()
        self._segments: Dict[int, Segment] = {}
        self._current_segment_id = 0
        self._checkpoint = CheckpointStore(self.cache_dir / CHECKPOINT_FILENAME)
        self.last_error: Optional[str] = None

    def segment_path(self, segment_id: int) -> Path:
        return self.cache_dir / f"segment_{segment_id}.{self.segment_extension}"

    # ------------------------------------------------------------------
    # Initialisation and checkpoints
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Create the cache directory and restore the checkpoint.

        Raises:
            CacheInitError: If the directory cannot be created
        """
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.last_error = f"Cannot create cache directory {self.cache_dir}: {e}"
            logger.error(f"[CACHE] {self.last_error}")
            raise CacheInitError(self.last_error) from e

        self._load_checkpoint()
        logger.info(
            f"[CACHE] initialized at {self.cache_dir} "
            f"(window {self.max_segments} segments, starting from segment {self._current_segment_id})"
        )

    def _load_checkpoint(self) -> None:
        data = self._checkpoint.load()
        if data is None:
            logger.info("[CACHE] no checkpoint found, starting fresh")
            return

        restored: Dict[int, Segment] = {}
        try:
            current = int(data.get("current_segment_id", 0))
            entries = data.get("segments") or {}
            for key, meta in entries.items():
                segment_id = int(key)
                path = self.segment_path(segment_id)
                try:
                    size = path.stat().st_size
                except OSError:
                    logger.info(f"[CACHE] removing stale segment {segment_id} from checkpoint")
                    continue
                restored[segment_id] = Segment(
                    id=segment_id,
                    file_path=path,
                    created_at=float(meta.get("created_at", self._clock())),
                    duration_seconds=float(meta.get("duration_seconds", self.segment_duration)),
                    ready=bool(meta.get("ready", False)) and size > 0,
                    size_bytes=size,
                )
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"[CACHE] corrupt checkpoint ignored, starting fresh: {e}")
            return

        with self._lock:
            self._segments = restored
            self._current_segment_id = current
            self._evict_locked()
        logger.info(f"[CACHE] checkpoint loaded: segment {current}, {len(restored)} cached segments")

    def save_checkpoint(self) -> bool:
        """Persist the cache state. Failures are logged and recorded, not raised."""
        with self._lock:
            checkpoint = {
                "current_segment_id": self._current_segment_id,
                "saved_at": datetime.now(timezone.utc).isoformat(),
                "segments": {
                    str(seg.id): {
                        "created_at": seg.created_at,
                        "duration_seconds": seg.duration_seconds,
                        "ready": seg.ready,
                    }
                    for seg in self._segments.values()
                },
            }
        try:
            self._checkpoint.save(checkpoint)
            return True
        except (OSError, TypeError, ValueError) as e:
            self.last_error = f"Failed to save checkpoint: {e}"
            return False

    def close(self) -> None:
        """Promote the last written segment and persist a final checkpoint."""
        self.finalize_pending()
        self.save_checkpoint()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_segment(self, segment_id: int) -> bool:
        """
        Track a segment the capture process just opened.

        Duplicate ids are ignored. Earlier pending segments are promoted to
        ready, since ffmpeg has finished writing them.

        Returns:
            True if the segment was newly tracked
        """
        with self._lock:
            if segment_id in self._segments:
                logger.debug(f"[CACHE] segment {segment_id} already tracked")
                return False

            self._promote_pending_locked(before_id=segment_id)

            path = self.segment_path(segment_id)
            try:
                size = path.stat().st_size
            except OSError:
                # ffmpeg logs "Opening" just before creating the file
                size = 0
            self._segments[segment_id] = Segment(
                id=segment_id,
                file_path=path,
                created_at=self._clock(),
                duration_seconds=self.segment_duration,
                ready=False,
                size_bytes=size,
            )
            self._evict_locked()
            due = segment_id % self.checkpoint_every == 0

        logger.debug(f"[CACHE] segment {segment_id} opened")
        if due:
            self.save_checkpoint()
        return True

    def finalize_pending(self) -> int:
        """Promote every pending segment (capture process has exited). Returns the number promoted."""
        with self._lock:
            return self._promote_pending_locked(before_id=None)

    def _promote_pending_locked(self, before_id: Optional[int]) -> int:
        promoted = 0
        for segment_id in sorted(self._segments):
            if before_id is not None and segment_id >= before_id:
                break
            segment = self._segments[segment_id]
            if segment.ready:
                continue
            try:
                size = segment.file_path.stat().st_size
            except OSError as e:
                logger.warning(f"[CACHE] segment {segment_id} missing on disk, dropping: {e}")
                del self._segments[segment_id]
                continue
            if size <= 0:
                continue
            segment.ready = True
            segment.size_bytes = size
            promoted += 1
            logger.debug(f"[CACHE] segment {segment_id} ready ({size / 1024:.1f}KB)")
        return promoted

    def _evict_locked(self) -> None:
        ids = sorted(self._segments)
        while ids and (len(ids) > self.max_segments or ids[-1] - ids[0] >= self.max_segments):
            oldest = ids.pop(0)
            del self._segments[oldest]
            logger.debug(f"[CACHE] segment {oldest} removed from tracking (file handled by HLS muxer)")
        if ids and self._current_segment_id < ids[0]:
            self._current_segment_id = ids[0]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _is_ready_locked(self, segment: Segment) -> bool:
        if not segment.ready:
            return False
        try:
            segment.file_path.stat()
        except OSError:
            segment.ready = False
            logger.warning(f"[CACHE] segment {segment.id} file disappeared, marking not ready")
            return False
        return True

    def get_segment(self, segment_id: int) -> Optional[Segment]:
        """Return the segment if it is tracked and ready, else None."""
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None or not self._is_ready_locked(segment):
                return None
            return segment

    def get_available_segments(self) -> List[int]:
        """Ready segment ids in ascending order."""
        with self._lock:
            return [sid for sid in sorted(self._segments) if self._is_ready_locked(self._segments[sid])]

    def contiguous_ready_from(self, start_id: int) -> List[int]:
        """Ready ids starting at the first ready id >= start_id, up to the first gap."""
        run: List[int] = []
        for segment_id in self.get_available_segments():
            if segment_id < start_id:
                continue
            if run and segment_id != run[-1] + 1:
                break
            run.append(segment_id)
        return run

    @property
    def current_segment_id(self) -> int:
        with self._lock:
            return self._current_segment_id

    def set_current_segment(self, segment_id: int) -> None:
        with self._lock:
            self._current_segment_id = segment_id

    def advance_segment(self) -> int:
        with self._lock:
            self._current_segment_id += 1
            return self._current_segment_id

    def lookahead_seconds(self) -> float:
        """Seconds of ready segments at or after the serving position."""
        current = self.current_segment_id
        ahead = [sid for sid in self.get_available_segments() if sid >= current]
        return len(ahead) * self.segment_duration

    def get_stats(self) -> CacheStats:
        available = self.get_available_segments()
        with self._lock:
            current = self._current_segment_id
            tracked = len(self._segments)
            last_id = max(self._segments) if self._segments else None
        ahead = [sid for sid in available if sid >= current]
        needed = max(0, math.ceil(self.lookahead_target_seconds / self.segment_duration) - len(ahead))
        return CacheStats(
            current_segment_id=current,
            total_tracked=tracked,
            ready_segments=len(available),
            last_segment_id=last_id,
            lookahead_segments=len(ahead),
            lookahead_seconds=len(ahead) * self.segment_duration,
            needed_segments=needed,
            last_error=self.last_error,
        )
