"""
Tests for the ffmpeg diagnostics parser.
"""

import pytest

from relay.supervisor.diagnostics import (
    DiagnosticsParser,
    ErrorCategory,
    EventKind,
    classify_error,
    parse_timestamp,
)

STATS_LINE = "frame=  250 fps= 25 q=28.0 size=    1024kB time=00:01:02.50 bitrate= 134.2kbits/s speed=1.0x"


def kinds(events):
    return [e.kind for e in events]


class TestLineSplitting:
    """Partial lines and carriage-return terminated stats lines."""

    def test_partial_line_is_buffered_until_terminated(self):
        parser = DiagnosticsParser()
        assert parser.feed(b"Input #0, mov,mp4") == []
        events = parser.feed(b",m4a from 'x.mp4':\n")
        assert kinds(events) == [EventKind.UNCLASSIFIED]
        assert events[0].raw == "Input #0, mov,mp4,m4a from 'x.mp4':"

    def test_carriage_return_terminates_stats_lines(self):
        parser = DiagnosticsParser()
        events = parser.feed(
            "frame=1 fps=0.0 time=00:00:01.00\rframe=2 fps=25 time=00:00:02.00\r"
        )
        assert kinds(events) == [EventKind.CONNECTED, EventKind.PROGRESS, EventKind.PROGRESS]
        assert [e.position_seconds for e in events if e.kind is EventKind.PROGRESS] == [1.0, 2.0]

    def test_crlf_split_across_chunks_is_one_terminator(self):
        parser = DiagnosticsParser()
        first = parser.feed(b"Stream mapping:\r")
        second = parser.feed(b"\nPress [q] to stop\n")
        assert [e.raw for e in first] == ["Stream mapping:"]
        assert [e.raw for e in second] == ["Press [q] to stop"]
        assert parser.tail() == ["Stream mapping:", "Press [q] to stop"]

    def test_flush_emits_trailing_partial_line(self):
        parser = DiagnosticsParser()
        parser.feed(b"Conversion failed!")
        events = parser.flush()
        assert kinds(events) == [EventKind.ERROR_DETECTED]
        assert parser.flush() == []

    def test_invalid_utf8_does_not_raise(self):
        parser = DiagnosticsParser()
        events = parser.feed(b"title : \xff\xfe broken\n")
        assert kinds(events) == [EventKind.UNCLASSIFIED]


class TestClassification:
    """Per-line precedence and event payloads."""

    def test_segment_open_line_yields_segment_ready(self):
        parser = DiagnosticsParser()
        events = parser.feed("[hls @ 0x5581] Opening '/tmp/cache/segment_12.ts' for writing\n")
        assert kinds(events) == [EventKind.SEGMENT_READY]
        assert events[0].segment_id == 12

    def test_segment_ready_takes_precedence_over_connection(self):
        """A segment line that also carries a rate marker is still a segment event."""
        parser = DiagnosticsParser()
        events = parser.feed("Opening 'segment_3.ts' for writing time=00:00:06.00\n")
        assert kinds(events) == [EventKind.SEGMENT_READY]
        assert not parser.connected

    def test_playlist_open_is_not_a_segment(self):
        parser = DiagnosticsParser()
        events = parser.feed("[hls @ 0x5581] Opening '/tmp/cache/stream.m3u8.tmp' for writing\n")
        assert kinds(events) == [EventKind.UNCLASSIFIED]

    def test_connected_is_reported_once_per_run(self):
        parser = DiagnosticsParser()
        first = parser.feed(STATS_LINE + "\r")
        second = parser.feed(STATS_LINE + "\r")
        assert kinds(first) == [EventKind.CONNECTED, EventKind.PROGRESS]
        assert kinds(second) == [EventKind.PROGRESS]
        parser.reset()
        assert kinds(parser.feed(STATS_LINE + "\r"))[0] is EventKind.CONNECTED

    def test_rate_marker_without_time_only_connects(self):
        parser = DiagnosticsParser()
        events = parser.feed("frame=    0 fps=0.0 q=0.0 size=       0kB time=N/A bitrate=N/A\r")
        assert kinds(events) == [EventKind.CONNECTED]

    def test_end_of_input(self):
        parser = DiagnosticsParser()
        events = parser.feed("[http @ 0x1] HTTP error 416 Requested Range Not Satisfiable\n")
        assert kinds(events) == [EventKind.END_OF_INPUT]

    @pytest.mark.parametrize("line, category", [
        ("[tcp @ 0x1] Connection to tcp://live.example.com:1935 failed: Connection refused",
         ErrorCategory.NETWORK_UNREACHABLE),
        ("rtmp://x/app: Network is unreachable", ErrorCategory.NETWORK_UNREACHABLE),
        ("Unrecognized option 'rtmp_bufer'.", ErrorCategory.CONFIG_INVALID),
        ("https://x/missing.mp4: No such file or directory", ErrorCategory.CONFIG_INVALID),
        ("[rtmp @ 0x1] Handshake failed", ErrorCategory.PROTOCOL_ERROR),
        ("Invalid data found when processing input", ErrorCategory.PROTOCOL_ERROR),
        ("Conversion failed!", ErrorCategory.UNKNOWN),
    ])
    def test_error_categories(self, line, category):
        parser = DiagnosticsParser()
        events = parser.feed(line + "\n")
        assert kinds(events) == [EventKind.ERROR_DETECTED]
        assert events[0].category is category

    def test_classify_error_ignores_ordinary_lines(self):
        assert classify_error("Stream #0:0: Video: h264") is None


class TestRedactionAndTail:
    """Stored and emitted lines never carry stream keys."""

    def test_stream_key_is_redacted_in_events_and_tail(self):
        parser = DiagnosticsParser(secrets=["sk-abc123"])
        events = parser.feed("[rtmp @ 0x1] Cannot open connection rtmp://live.example.com/app/sk-abc123\n")
        assert "sk-abc123" not in events[0].raw
        assert all("sk-abc123" not in line for line in parser.tail())
        assert "***" in events[0].raw

    def test_tail_is_bounded(self):
        parser = DiagnosticsParser(tail_size=5)
        for i in range(20):
            parser.feed(f"line {i}\n")
        assert parser.tail() == [f"line {i}" for i in range(15, 20)]


class TestParseTimestamp:

    @pytest.mark.parametrize("text, expected", [
        ("time=00:00:00.00", 0.0),
        ("time=00:01:02.50", 62.5),
        ("time=01:00:00.04", 3600.04),
        ("size=1kB time= 00:00:03.20 bitrate", 3.2),
    ])
    def test_parses_hms(self, text, expected):
        assert parse_timestamp(text) == pytest.approx(expected)

    def test_missing_or_na(self):
        assert parse_timestamp("time=N/A") is None
        assert parse_timestamp("no timestamp here") is None
