"""
Relay segment cache subsystem.

- SegmentCache: metadata for the capture process's rolling HLS window
- CheckpointStore: atomic JSON persistence shared with the continuity state
"""

from relay.cache.checkpoint import CheckpointStore
from relay.cache.segment_cache import CacheStats, Segment, SegmentCache

__all__ = [
    "CacheStats",
    "CheckpointStore",
    "Segment",
    "SegmentCache",
]
