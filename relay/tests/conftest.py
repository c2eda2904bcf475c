"""
Shared pytest fixtures for relay tests.
"""

import threading

import pytest

from relay.cache.segment_cache import SegmentCache
from relay.config import RelayConfig
from relay.tests._fakes import FakeClock, FakePopen


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_popen():
    """Spawn function whose processes stay alive until terminated."""
    return FakePopen()


@pytest.fixture
def cache(tmp_path):
    """Initialized segment cache with a 10-segment window."""
    cache = SegmentCache(tmp_path / "cache", segment_duration=2.0, max_cache_seconds=20.0, lookahead_seconds=10.0)
    cache.initialize()
    return cache


@pytest.fixture
def relay_config(tmp_path):
    """Configuration with fast timings and a backup endpoint."""
    return RelayConfig(
        video_url="https://media.example.com/show.mp4",
        rtmp_url="rtmp://live.example.com/app",
        stream_key="primary-secret-key",
        backup_rtmp_url="rtmp://backup.example.com/app",
        backup_stream_key="backup-secret-key",
        port=0,
        auto_start=False,
        cache_dir=str(tmp_path / "relay-cache"),
        min_segments=2,
        segment_wait_ms=2000,
        restart_base_delay_sec=0.05,
        restart_max_delay_sec=0.2,
        reconnect_base_delay_sec=0.05,
        reconnect_max_delay_sec=0.2,
        restore_settle_sec=0.1,
        stop_timeout_sec=0.5,
        health_interval_sec=60.0,
        restart_delay_sec=0.05,
    )


@pytest.fixture(autouse=False)
def thread_leak_guard():
    """
    Detect non-daemon threads leaked by a test.

    Request it explicitly in tests that exercise shutdown.
    """
    before = set(t.ident for t in threading.enumerate())
    yield
    after = set(t.ident for t in threading.enumerate())
    leaked = [t for t in threading.enumerate() if t.ident in after - before and not t.daemon]
    if leaked:
        thread_info = "\n".join(f"  - {t.name}" for t in leaked)
        assert False, f"Thread leak detected - shutdown incomplete.\nLeaked threads:\n{thread_info}"
