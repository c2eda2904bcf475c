"""
Tests for ffmpeg command construction and the quality ladder.
"""

from dataclasses import replace

import pytest

from relay.commands import (
    BACKUP_PROFILE,
    PRIMARY_PROFILE,
    build_capture_command,
    build_direct_command,
    build_publish_command,
    profile_for_priority,
    validate_profiles,
)
from relay.errors import ConfigError


def option(argv, flag):
    return argv[argv.index(flag) + 1]


class TestCaptureCommand:

    def test_segments_into_cache_directory(self, tmp_path):
        argv = build_capture_command("https://media.example.com/show.mp4", tmp_path, 2.0, 300.0)
        assert option(argv, "-i") == "https://media.example.com/show.mp4"
        assert option(argv, "-f") == "hls"
        assert option(argv, "-hls_time") == "2"
        assert option(argv, "-hls_list_size") == "150"
        assert option(argv, "-hls_segment_filename") == str(tmp_path / "segment_%d.ts")
        assert "append_list" in option(argv, "-hls_flags")
        assert argv[-1] == str(tmp_path / "stream.m3u8")
        assert "-ss" not in argv

    def test_resume_seeks_before_input(self, tmp_path):
        argv = build_capture_command("https://media.example.com/show.mp4", tmp_path, resume_position=93.25)
        assert option(argv, "-ss") == "93.250"
        assert argv.index("-ss") < argv.index("-i")

    def test_loglevel_reports_segment_opens(self, tmp_path):
        argv = build_capture_command("src", tmp_path)
        assert option(argv, "-loglevel") == "info"


class TestPublishCommands:

    def test_publish_reads_manifest_and_writes_flv(self, tmp_path):
        argv = build_publish_command(tmp_path / "serve.m3u8", "rtmp://h/app/key", PRIMARY_PROFILE)
        assert option(argv, "-i") == str(tmp_path / "serve.m3u8")
        assert argv[-1] == "rtmp://h/app/key"
        assert option(argv, "-maxrate") == "2000k"
        assert option(argv, "-rtmp_buffer") == "2000"
        assert argv.index("-re") < argv.index("-i")

    def test_direct_loops_forever(self):
        argv = build_direct_command("https://media.example.com/show.mp4", "rtmp://h/app/key")
        assert option(argv, "-stream_loop") == "-1"
        assert option(argv, "-reconnect_on_http_error") == "4xx,5xx"

    def test_direct_without_loop(self):
        argv = build_direct_command("src", "rtmp://h/app/key", loop=False)
        assert "-stream_loop" not in argv


class TestQualityLadder:

    def test_backup_is_lighter_than_primary(self):
        validate_profiles(PRIMARY_PROFILE, BACKUP_PROFILE)
        assert "-s" in BACKUP_PROFILE.encoder_args()
        assert "-s" not in PRIMARY_PROFILE.encoder_args()

    def test_heavier_backup_is_rejected(self):
        heavy = replace(BACKUP_PROFILE, rtmp_buffer_ms=PRIMARY_PROFILE.rtmp_buffer_ms + 1)
        with pytest.raises(ConfigError, match="rtmp_buffer_ms"):
            validate_profiles(PRIMARY_PROFILE, heavy)

    @pytest.mark.parametrize("priority, expected", [(0, "primary"), (1, "primary"), (2, "backup"), (5, "backup")])
    def test_profile_for_priority(self, priority, expected):
        assert profile_for_priority(priority, PRIMARY_PROFILE, BACKUP_PROFILE).name == expected
