"""
Tests for HealthMonitor recovery rules.

Collaborators are mocks; the clock is a FakeClock.
"""

import logging
import threading
from unittest.mock import Mock

import pytest

from relay.health.monitor import HealthMonitor
from relay.supervisor.process_supervisor import ProcessState
from relay.tests._fakes import FakeClock, wait_until


def make_capture(running=True, state=ProcessState.CONNECTED, input_ended=False):
    capture = Mock()
    capture.is_running = running
    capture.state = state
    capture.input_ended = input_ended
    return capture


def make_pool(reconnects=0, connections=1, running=True, primary=True, backup=False, stable=False):
    pool = Mock()
    pool.is_running = running
    pool.primary_active = primary
    pool.backup_active = backup
    pool.recent_reconnects.return_value = reconnects
    pool.active_connection_count.return_value = connections
    pool.is_stable.return_value = stable
    pool.fallback_quality.return_value = True
    pool.restore_quality.return_value = True
    return pool


def make_cache(lookahead=60.0):
    cache = Mock()
    cache.lookahead_seconds.return_value = lookahead
    return cache


@pytest.fixture
def restart_callback():
    return Mock()


@pytest.fixture
def make_monitor(restart_callback, clock):
    def make(capture=None, pool=None, cache=None, **kwargs):
        return HealthMonitor(
            capture or make_capture(),
            cache or make_cache(),
            pool or make_pool(),
            on_continuity_restart=restart_callback,
            clock=clock,
            **kwargs,
        )
    return make


class TestCaptureRecovery:

    def test_healthy_pipeline_takes_no_action(self, make_monitor, restart_callback):
        report = make_monitor().check()
        assert report.actions == []
        assert report.healthy
        restart_callback.assert_not_called()

    def test_stopped_capture_triggers_continuity_restart(self, make_monitor, restart_callback):
        monitor = make_monitor(capture=make_capture(running=False, state=ProcessState.STOPPED))
        report = monitor.check()
        restart_callback.assert_called_once_with("capture not running")
        assert report.actions == ["continuity_restart"]
        assert not report.healthy

    @pytest.mark.parametrize("capture", [
        make_capture(running=False, state=ProcessState.FAILED),
        make_capture(running=False, state=ProcessState.STOPPED, input_ended=True),
    ])
    def test_failed_or_finished_capture_is_left_alone(self, make_monitor, restart_callback, capture):
        make_monitor(capture=capture).check()
        restart_callback.assert_not_called()

    def test_restart_callback_error_does_not_break_check(self, make_monitor, restart_callback):
        restart_callback.side_effect = RuntimeError("boom")
        monitor = make_monitor(capture=make_capture(running=False, state=ProcessState.STOPPED))
        report = monitor.check()
        assert report.actions == ["continuity_restart"]

    def test_low_lookahead_is_logged_only(self, make_monitor, restart_callback, caplog):
        caplog.set_level(logging.INFO, logger="relay.health.monitor")
        report = make_monitor(cache=make_cache(lookahead=4.0)).check()
        assert "low lookahead" in caplog.text
        assert report.actions == []


class TestPublisherRecovery:

    def test_no_connections_triggers_restart_with_cooldown(self, make_monitor, restart_callback, clock):
        monitor = make_monitor(pool=make_pool(connections=0), restart_cooldown_sec=60.0)
        monitor.check()
        clock.advance(30.0)
        monitor.check()
        assert restart_callback.call_count == 1
        clock.advance(31.0)
        monitor.check()
        assert restart_callback.call_count == 2
        restart_callback.assert_called_with("no active connections")

    def test_single_restart_when_capture_and_publishers_are_down(self, make_monitor, restart_callback):
        monitor = make_monitor(
            capture=make_capture(running=False, state=ProcessState.STOPPED),
            pool=make_pool(connections=0),
        )
        monitor.check()
        assert restart_callback.call_count == 1

    def test_stopped_pool_is_not_restarted(self, make_monitor, restart_callback):
        make_monitor(pool=make_pool(connections=0, running=False)).check()
        restart_callback.assert_not_called()


class TestQualityFallback:
    """Reconnect storms fall back once per fallback window."""

    def test_six_reconnects_fall_back_exactly_once(self, make_monitor):
        pool = make_pool(reconnects=6)
        monitor = make_monitor(pool=pool, reconnect_threshold=5)
        for _ in range(5):
            monitor.check()
        assert pool.fallback_quality.call_count == 1
        assert monitor.fallback_latched

    def test_threshold_is_exclusive(self, make_monitor):
        pool = make_pool(reconnects=5)
        make_monitor(pool=pool, reconnect_threshold=5).check()
        pool.fallback_quality.assert_not_called()

    def test_fallback_rearms_once_publisher_is_stable(self, make_monitor):
        pool = make_pool(reconnects=6)
        monitor = make_monitor(pool=pool, reconnect_threshold=5)
        monitor.check()
        pool.is_stable.return_value = True
        monitor.check()
        assert not monitor.fallback_latched
        pool.is_stable.return_value = False
        monitor.check()
        assert pool.fallback_quality.call_count == 2

    def test_no_restore_while_latched(self, make_monitor):
        pool = make_pool(reconnects=6, primary=False, backup=True)
        monitor = make_monitor(pool=pool, reconnect_threshold=5)
        monitor.check()
        monitor.check()
        pool.restore_quality.assert_not_called()

    def test_restore_when_backup_runs_alone(self, make_monitor):
        pool = make_pool(reconnects=0, primary=False, backup=True)
        report = make_monitor(pool=pool).check()
        pool.restore_quality.assert_called_once_with()
        assert report.actions == ["restore_quality"]


class TestScheduling:

    def test_overlapping_check_is_skipped(self, make_monitor, restart_callback):
        entered = threading.Event()
        release = threading.Event()

        def slow_restart(reason):
            entered.set()
            release.wait(2.0)

        restart_callback.side_effect = slow_restart
        monitor = make_monitor(capture=make_capture(running=False, state=ProcessState.STOPPED))
        worker = threading.Thread(target=monitor.check)
        worker.start()
        try:
            assert entered.wait(2.0)
            report = monitor.check()
            assert report.skipped
            assert restart_callback.call_count == 1
        finally:
            release.set()
            worker.join(2.0)

    def test_background_thread_runs_checks(self, restart_callback):
        monitor = HealthMonitor(
            make_capture(), make_cache(), make_pool(),
            on_continuity_restart=restart_callback,
            interval_sec=0.01,
            clock=FakeClock(),
        )
        monitor.start()
        try:
            assert wait_until(lambda: monitor.last_report is not None)
        finally:
            monitor.stop()
        assert monitor.last_report.to_dict()["healthy"] is True
