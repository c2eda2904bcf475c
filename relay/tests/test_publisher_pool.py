"""
Tests for PublisherPool endpoint management and the quality ladder.
"""

import pytest

from relay.commands import BACKUP_PROFILE, PRIMARY_PROFILE
from relay.publisher.endpoint import Endpoint
from relay.publisher.pool import PublisherPool
from relay.supervisor.process_supervisor import ProcessState
from relay.tests._fakes import FakePopen, wait_until

PRIMARY_URL = "rtmp://live.example.com/app/primary-key"
BACKUP_URL = "rtmp://backup.example.com/app/backup-key"
STATS_LINE = "frame=  100 fps= 25 q=28.0 size=     512kB time=00:00:04.00 bitrate= 1048.6kbits/s speed=1x\r"


def make_endpoints(backup_active=False):
    return [
        Endpoint("primary", PRIMARY_URL, priority=1, active=True),
        Endpoint("backup", BACKUP_URL, priority=2, active=backup_active),
    ]


@pytest.fixture
def pools():
    created = []

    def make(popen, endpoints=None, **kwargs):
        params = dict(
            base_delay_sec=0.01,
            max_delay_sec=0.05,
            restore_settle_sec=0.1,
            stop_timeout_sec=0.5,
            popen=popen,
        )
        params.update(kwargs)
        pool = PublisherPool(make_endpoints() if endpoints is None else endpoints, **params)
        created.append(pool)
        return pool

    yield make
    for pool in created:
        pool.stop()


def spawned_urls(popen):
    return [argv[-1] for argv in popen.calls]


class TestLifecycle:

    def test_start_spawns_active_endpoints_only(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        assert pool.start(tmp_path / "serve.m3u8") is True
        assert spawned_urls(fake_popen) == [PRIMARY_URL]
        argv = fake_popen.calls[0]
        assert str(tmp_path / "serve.m3u8") in argv
        assert argv[argv.index("-rtmp_buffer") + 1] == str(PRIMARY_PROFILE.rtmp_buffer_ms)

    def test_start_twice_is_ignored(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        assert pool.start(tmp_path / "serve.m3u8") is False
        assert fake_popen.call_count == 1

    def test_stop_terminates_publishers(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen, endpoints=make_endpoints(backup_active=True))
        pool.start(tmp_path / "serve.m3u8")
        pool.stop()
        assert not pool.is_running
        assert all(p.terminated for p in fake_popen.processes)
        assert pool.supervisor("primary") is None

    def test_duplicate_endpoint_names_rejected(self):
        with pytest.raises(ValueError):
            PublisherPool([Endpoint("a", PRIMARY_URL), Endpoint("a", BACKUP_URL, priority=2)])

    def test_add_and_remove_endpoint_while_running(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen, endpoints=[Endpoint("primary", PRIMARY_URL)])
        pool.start(tmp_path / "serve.m3u8")
        pool.add_endpoint(Endpoint("extra", BACKUP_URL, priority=2))
        assert spawned_urls(fake_popen) == [PRIMARY_URL, BACKUP_URL]
        with pytest.raises(ValueError):
            pool.add_endpoint(Endpoint("extra", BACKUP_URL, priority=2))
        assert pool.remove_endpoint("extra") is True
        assert fake_popen.last.terminated
        assert pool.remove_endpoint("extra") is False

    def test_connection_count_follows_connected_publishers(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        assert pool.active_connection_count() == 0
        fake_popen.last.emit(STATS_LINE)
        assert wait_until(lambda: pool.active_connection_count() == 1)


class TestFailures:

    def test_publisher_giving_up_marks_endpoint_inactive(self, pools, tmp_path):
        popen = FakePopen(default={"exit_code": 1})
        pool = pools(popen, max_reconnects=2)
        pool.start(tmp_path / "serve.m3u8")
        assert wait_until(lambda: not pool.primary_active)
        assert pool.supervisor("primary").state is ProcessState.FAILED
        assert pool.failed_connections == 1
        assert pool.reconnects == 2
        assert pool.recent_reconnects() == 2

    def test_last_error_is_redacted(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        fake_popen.last.emit(f"[rtmp @ 0x1] Server error: {PRIMARY_URL} rejected\n")
        assert wait_until(lambda: pool.last_error is not None)
        assert "primary-key" not in pool.last_error


class TestQualityLadder:
    """Fallback activates the backup first; restore drops it after settling."""

    def test_fallback_starts_backup_before_stopping_primary(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        primary_process = fake_popen.last

        assert pool.fallback_quality() is True

        assert spawned_urls(fake_popen) == [PRIMARY_URL, BACKUP_URL]
        backup_process = fake_popen.last
        assert primary_process.terminated
        assert not backup_process.terminated
        assert pool.backup_active and not pool.primary_active

        argv = fake_popen.calls[1]
        assert argv[argv.index("-rtmp_buffer") + 1] == str(BACKUP_PROFILE.rtmp_buffer_ms)
        assert "640x360" in argv

    def test_fallback_without_backup(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen, endpoints=[Endpoint("primary", PRIMARY_URL)])
        pool.start(tmp_path / "serve.m3u8")
        assert pool.fallback_quality() is False
        assert pool.primary_active

    def test_restore_leaves_only_primary_after_settle(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        pool.fallback_quality()

        assert pool.restore_quality() is True
        assert pool.primary_active and pool.backup_active, "Backup keeps running until the primary settles"

        assert wait_until(lambda: not pool.backup_active)
        assert pool.primary_active
        assert pool.supervisor("primary").is_running
        assert not pool.supervisor("backup").is_running

    def test_fallback_cancels_pending_restore(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen, restore_settle_sec=0.2)
        pool.start(tmp_path / "serve.m3u8")
        pool.fallback_quality()
        pool.restore_quality()
        pool.fallback_quality()
        assert not wait_until(lambda: not pool.backup_active, timeout=0.4)
        assert pool.backup_active and not pool.primary_active

    def test_stats_never_expose_stream_keys(self, pools, fake_popen, tmp_path):
        pool = pools(fake_popen)
        pool.start(tmp_path / "serve.m3u8")
        stats = pool.get_stats()
        assert "primary-key" not in repr(stats)
        assert "backup-key" not in repr(stats)
        assert [ep["name"] for ep in stats["endpoints"]] == ["primary", "backup"]
        assert stats["primary_active"] is True
