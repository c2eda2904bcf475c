"""
Tests for ContinuityController and playlist rendering.
"""

import json
import os
import threading
import time

import pytest

from relay.continuity.controller import ContinuityController, ContinuityState
from relay.continuity.playlist import render_playlist
from relay.tests._fakes import write_segment


@pytest.fixture
def controller(cache):
    return ContinuityController(cache, poll_interval_sec=0.01)


def ready_segments(cache, ids):
    """Register ids and promote them all, as if the capture had exited."""
    for segment_id in ids:
        write_segment(cache, segment_id)
        cache.register_segment(segment_id)
    cache.finalize_pending()


class TestStablePosition:
    """Stream time never goes backwards across capture restarts."""

    def test_progress_advances_stable_position(self, controller):
        controller.on_progress(1.0)
        controller.on_progress(4.5)
        assert controller.last_stable_position == 4.5

    def test_stable_position_never_decreases(self, controller):
        controller.on_progress(10.0)
        assert controller.on_progress(3.0) == 10.0

    def test_restart_continues_from_stable_position(self, controller):
        """After a failure the new session's time is added to the old stable position."""
        controller.on_progress(30.0)
        controller.handle_stream_failure()
        controller.on_progress(0.5)
        assert controller.last_stable_position == 30.5
        assert controller.state.session_start_position == 30.0

    def test_sequence_of_restarts_is_monotonic(self, controller):
        observed = []
        for session in ([2.0, 5.0], [1.0, 3.0], [0.0, 4.0]):
            for seconds in session:
                observed.append(controller.on_progress(seconds))
            controller.handle_stream_failure()
        assert observed == sorted(observed)
        assert controller.last_stable_position == 12.0
        assert controller.state.total_restart_count == 3


class TestResumePosition:

    def test_no_resume_before_any_progress(self, controller):
        assert controller.resume_position() is None
        assert controller.handle_stream_failure() is None

    def test_failure_resumes_at_stable_position(self, controller):
        controller.on_progress(42.0)
        assert controller.handle_stream_failure() == 42.0

    def test_restart_from_beginning_records_loop_offset(self, controller):
        """After a loop the source is read from 0 while stream time keeps growing."""
        controller.on_progress(120.0)
        controller.handle_restart_from_beginning()
        assert controller.resume_position() is None
        controller.on_progress(15.0)
        assert controller.last_stable_position == 135.0
        assert controller.resume_position() == 15.0


class TestPersistence:

    def test_state_is_persisted_after_interval(self, controller, cache):
        state_file = cache.cache_dir / "continuity.json"
        controller.on_progress(1.0)
        assert not state_file.exists()
        controller.on_progress(3.5)
        assert json.loads(state_file.read_text())["last_stable_position"] == 3.5

    def test_load_state_resumes_from_saved_position(self, controller, cache):
        controller.on_progress(50.0)
        controller.handle_stream_failure()

        reloaded = ContinuityController(cache)
        assert reloaded.load_state() is True
        assert reloaded.last_stable_position == 50.0
        assert reloaded.state.session_start_position == 50.0
        assert reloaded.state.total_restart_count == 1

    def test_load_state_without_file(self, controller):
        assert controller.load_state() is False
        assert controller.state == ContinuityState()

    @pytest.mark.parametrize("bad_value", ["NaN", "Infinity", "-Infinity"])
    def test_non_finite_position_is_treated_as_corrupt(self, controller, cache, bad_value):
        state_file = cache.cache_dir / "continuity.json"
        state_file.write_text(f'{{"last_stable_position": {bad_value}, "total_restart_count": 2}}')

        assert controller.load_state() is False
        assert controller.state == ContinuityState()
        controller.on_progress(4.0)
        assert controller.last_stable_position == 4.0


class TestWaitForSegments:

    def test_returns_true_when_enough_segments(self, controller, cache):
        ready_segments(cache, [0, 1, 2])
        assert controller.wait_for_segments(3, timeout_ms=100) is True

    def test_times_out(self, controller, cache):
        ready_segments(cache, [0])
        start = time.monotonic()
        assert controller.wait_for_segments(3, timeout_ms=100) is False
        assert time.monotonic() - start < 1.0

    def test_segments_arriving_during_wait(self, controller, cache):
        timer = threading.Timer(0.05, ready_segments, args=(cache, [0, 1]))
        timer.start()
        try:
            assert controller.wait_for_segments(2, timeout_ms=2000) is True
        finally:
            timer.cancel()

    def test_stop_aborts_wait(self, controller):
        timer = threading.Timer(0.05, controller.stop)
        timer.start()
        start = time.monotonic()
        try:
            assert controller.wait_for_segments(3, timeout_ms=5000) is False
        finally:
            timer.cancel()
        assert time.monotonic() - start < 2.0


class TestPlaylist:

    def test_render_marks_discontinuities(self):
        text = render_playlist([(4, "segment_4.ts", 2.0), (5, "segment_5.ts", 2.0), (9, "segment_9.ts", 1.5)])
        lines = text.splitlines()
        assert lines[:4] == [
            "#EXTM3U",
            "#EXT-X-VERSION:3",
            "#EXT-X-TARGETDURATION:2",
            "#EXT-X-MEDIA-SEQUENCE:4",
        ]
        assert lines.count("#EXT-X-DISCONTINUITY") == 1
        assert lines.index("#EXT-X-DISCONTINUITY") == lines.index("segment_9.ts") - 2
        assert "#EXTINF:1.500," in lines
        assert "#EXT-X-ENDLIST" not in text

    def test_render_requires_segments(self):
        with pytest.raises(ValueError):
            render_playlist([])

    def test_generate_lists_ready_segments_from_current(self, controller, cache):
        ready_segments(cache, [0, 1, 2, 3])
        cache.set_current_segment(1)
        path = controller.generate_playlist()
        text = path.read_text()
        assert "segment_0.ts" not in text
        assert "#EXT-X-MEDIA-SEQUENCE:1" in text
        assert text.count("#EXTINF") == 3

    def test_generate_without_segments_returns_none(self, controller):
        assert controller.generate_playlist() is None

    def test_missing_file_is_left_out(self, controller, cache):
        ready_segments(cache, [0, 1, 2])
        os.remove(cache.segment_path(1))
        text = controller.generate_playlist().read_text()
        assert "segment_1.ts" not in text
        assert "#EXT-X-DISCONTINUITY" in text

    def test_update_rewrites_only_on_change(self, controller, cache):
        ready_segments(cache, [0, 1])
        path = controller.generate_playlist()
        mtime = path.stat().st_mtime_ns
        os.utime(path, ns=(mtime - 10_000_000, mtime - 10_000_000))
        controller.update_playlist()
        assert path.stat().st_mtime_ns == mtime - 10_000_000, "Unchanged playlist must not be rewritten"

        ready_segments(cache, [2])
        controller.update_playlist()
        assert "segment_2.ts" in path.read_text()


class TestSeek:

    def test_seek_to_ready_segment(self, controller, cache):
        ready_segments(cache, [0, 1, 2])
        assert controller.seek_to(2) is True
        assert cache.current_segment_id == 2
        assert "#EXT-X-MEDIA-SEQUENCE:2" in controller.playlist_path.read_text()

    def test_seek_to_unavailable_segment(self, controller, cache):
        ready_segments(cache, [0, 1])
        assert controller.seek_to(7) is False
        assert cache.current_segment_id == 0
