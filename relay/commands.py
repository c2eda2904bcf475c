"""
ffmpeg command lines for the relay pipelines.

Three processes are built here:
- capture:  source URL -> rolling HLS segments in the cache directory
- publish:  serving manifest -> one RTMP endpoint, encoded with a QualityProfile
- direct:   source URL -> RTMP endpoint, looping forever (no cache)

Capture and publish run at loglevel info: the segment "Opening ..." lines and
the stats line are what the diagnostics parser feeds on.
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from relay.errors import ConfigError

CAPTURE_PLAYLIST = "stream.m3u8"
SEGMENT_PATTERN = "segment_%d.ts"


@dataclass(frozen=True)
class QualityProfile:
    """Encoder settings for one tier of the quality ladder."""
    name: str
    preset: str
    crf: int
    maxrate_kbps: int
    bufsize_kbps: int
    audio_bitrate_kbps: int
    rtmp_buffer_ms: int
    resolution: Optional[str] = None
    framerate: Optional[int] = None
    gop: int = 60

    def encoder_args(self) -> List[str]:
        args = [
            "-c:v", "libx264",
            "-preset", self.preset,
            "-crf", str(self.crf),
            "-maxrate", f"{self.maxrate_kbps}k",
            "-bufsize", f"{self.bufsize_kbps}k",
            "-g", str(self.gop),
        ]
        if self.resolution:
            args += ["-s", self.resolution]
        if self.framerate:
            args += ["-r", str(self.framerate)]
        args += ["-c:a", "aac", "-b:a", f"{self.audio_bitrate_kbps}k"]
        return args


PRIMARY_PROFILE = QualityProfile(
    name="primary",
    preset="veryfast",
    crf=23,
    maxrate_kbps=2000,
    bufsize_kbps=4000,
    audio_bitrate_kbps=128,
    rtmp_buffer_ms=2000,
)

BACKUP_PROFILE = QualityProfile(
    name="backup",
    preset="ultrafast",
    crf=28,
    maxrate_kbps=1000,
    bufsize_kbps=2000,
    audio_bitrate_kbps=96,
    rtmp_buffer_ms=1000,
    resolution="640x360",
)


def validate_profiles(primary: QualityProfile, backup: QualityProfile) -> None:
    """
    Refuse a backup tier that would use more resources than the primary.

    Raises:
        ConfigError: If any backup bitrate or buffer exceeds the primary's
    """
    for field_name in ("maxrate_kbps", "bufsize_kbps", "audio_bitrate_kbps", "rtmp_buffer_ms"):
        if getattr(backup, field_name) > getattr(primary, field_name):
            raise ConfigError(
                f"Backup quality profile exceeds primary: {field_name}="
                f"{getattr(backup, field_name)} > {getattr(primary, field_name)}"
            )


def profile_for_priority(priority: int, primary: QualityProfile, backup: QualityProfile) -> QualityProfile:
    return primary if priority <= 1 else backup


def build_capture_command(
    source_url: str,
    cache_dir: Union[str, Path],
    segment_duration: float = 2.0,
    max_cache_seconds: float = 300.0,
    resume_position: Optional[float] = None,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Source -> rolling HLS window of segment_<n>.ts files."""
    cache_dir = Path(cache_dir)
    duration = f"{segment_duration:g}"
    argv = [ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", "info"]
    if resume_position and resume_position > 0:
        argv += ["-ss", f"{resume_position:.3f}"]
    argv += [
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "30",
        "-i", source_url,
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-c:a", "aac",
        "-b:a", "128k",
        "-force_key_frames", f"expr:gte(t,n_forced*{duration})",
        "-f", "hls",
        "-hls_time", duration,
        "-hls_flags", "delete_segments+append_list+omit_endlist+independent_segments",
        "-hls_list_size", str(math.ceil(max_cache_seconds / segment_duration)),
        "-hls_segment_type", "mpegts",
        "-hls_segment_filename", str(cache_dir / SEGMENT_PATTERN),
        str(cache_dir / CAPTURE_PLAYLIST),
    ]
    return argv


def build_publish_command(
    manifest_path: Union[str, Path],
    endpoint_url: str,
    profile: QualityProfile,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Serving manifest -> RTMP endpoint."""
    return [
        ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", "info",
        "-re",
        "-f", "hls",
        "-live_start_index", "0",
        "-i", str(manifest_path),
        *profile.encoder_args(),
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        "-rtmp_live", "live",
        "-rtmp_buffer", str(profile.rtmp_buffer_ms),
        endpoint_url,
    ]


def build_direct_command(
    source_url: str,
    endpoint_url: str,
    profile: QualityProfile = PRIMARY_PROFILE,
    loop: bool = True,
    ffmpeg_path: str = "ffmpeg",
) -> List[str]:
    """Source -> RTMP endpoint without the segment cache."""
    argv = [ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", "info", "-re"]
    if loop:
        argv += ["-stream_loop", "-1"]
    argv += [
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_delay_max", "15",
        "-reconnect_on_network_error", "1",
        "-reconnect_on_http_error", "4xx,5xx",
        "-i", source_url,
        *profile.encoder_args(),
        "-f", "flv",
        "-flvflags", "no_duration_filesize",
        "-rtmp_live", "live",
        "-rtmp_buffer", str(profile.rtmp_buffer_ms),
        endpoint_url,
    ]
    return argv
