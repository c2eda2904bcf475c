"""
Configuration management for the relay.

Reads configuration from an optional .env file and environment variables with
sensible defaults. The stream inputs keep their historic names (VIDEO_URL,
RTMP_URL, STREAM_KEY, BACKUP_RTMP_URL, BACKUP_STREAM_KEY, PORT); everything
else is RELAY_*.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from relay.commands import BACKUP_PROFILE, PRIMARY_PROFILE, validate_profiles
from relay.errors import ConfigError
from relay.publisher.endpoint import Endpoint
from relay.urls import normalize_share_url

DEFAULT_ENV_FILE = Path("/etc/relay/relay.env")

VALID_MODES = ("cached", "direct")

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from the .env file if it exists."""
    env_path = Path(os.getenv("RELAY_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, str(default))
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name, str(default))
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes", "on")


def join_stream_url(base_url: str, stream_key: Optional[str]) -> str:
    """rtmp://host/app + key -> rtmp://host/app/key"""
    if not stream_key:
        return base_url
    return f"{base_url.rstrip('/')}/{stream_key}"


@dataclass
class RelayConfig:
    """Relay configuration loaded from .env file and environment variables."""

    # Stream inputs
    video_url: Optional[str] = None
    rtmp_url: Optional[str] = None
    stream_key: Optional[str] = None
    backup_rtmp_url: Optional[str] = None
    backup_stream_key: Optional[str] = None

    # Control surface
    host: str = "0.0.0.0"
    port: int = 5000
    auto_start: bool = True
    auto_start_delay_sec: float = 3.0
    restart_delay_sec: float = 2.0

    # Pipeline
    mode: str = "cached"
    ffmpeg_path: str = "ffmpeg"
    loop_input: bool = True
    resume_enabled: bool = True

    # Segment cache
    cache_dir: str = "/tmp/relay-cache"
    segment_duration: float = 2.0
    max_cache_seconds: float = 300.0
    lookahead_seconds: float = 60.0
    checkpoint_every: int = 100
    min_segments: int = 3
    segment_wait_ms: int = 60000

    # Capture restart policy
    max_restart_attempts: int = 15
    restart_base_delay_sec: float = 5.0
    restart_growth_factor: float = 1.5
    restart_max_delay_sec: float = 60.0
    stabilization_sec: float = 45.0
    stop_timeout_sec: float = 5.0

    # Publishers
    max_reconnects: int = 10
    reconnect_base_delay_sec: float = 2.0
    reconnect_max_delay_sec: float = 30.0
    restore_settle_sec: float = 10.0

    # Health monitor
    health_interval_sec: float = 15.0
    min_lookahead_sec: float = 30.0
    reconnect_threshold: int = 5
    restart_cooldown_sec: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def primary_url(self) -> Optional[str]:
        if not self.rtmp_url:
            return None
        return join_stream_url(self.rtmp_url, self.stream_key)

    @property
    def backup_url(self) -> Optional[str]:
        if not self.backup_rtmp_url:
            return None
        return join_stream_url(self.backup_rtmp_url, self.backup_stream_key or self.stream_key)

    @property
    def secrets(self) -> List[str]:
        """Values that must never appear in logs."""
        return [s for s in (self.stream_key, self.backup_stream_key) if s]

    def endpoints(self) -> List[Endpoint]:
        """Publish endpoints: primary (priority 1) and an inactive backup if configured."""
        endpoints = []
        if self.primary_url:
            endpoints.append(Endpoint(name="primary", url=self.primary_url, priority=1, active=True))
        if self.backup_url:
            endpoints.append(Endpoint(name="backup", url=self.backup_url, priority=2, active=False))
        return endpoints

    @classmethod
    def load_config(cls) -> "RelayConfig":
        """
        Load configuration from environment variables.

        Returns:
            RelayConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        _load_env_file()

        video_url = os.getenv("VIDEO_URL") or None
        if video_url:
            video_url = normalize_share_url(video_url)

        config = cls(
            video_url=video_url,
            rtmp_url=os.getenv("RTMP_URL") or None,
            stream_key=os.getenv("STREAM_KEY") or None,
            backup_rtmp_url=os.getenv("BACKUP_RTMP_URL") or None,
            backup_stream_key=os.getenv("BACKUP_STREAM_KEY") or None,
            host=os.getenv("RELAY_HOST", "0.0.0.0"),
            port=_get_int("PORT", 5000),
            auto_start=_get_bool("RELAY_AUTO_START", True),
            auto_start_delay_sec=_get_float("RELAY_AUTO_START_DELAY_SEC", 3.0),
            restart_delay_sec=_get_float("RELAY_RESTART_DELAY_SEC", 2.0),
            mode=os.getenv("RELAY_MODE", "cached").lower(),
            ffmpeg_path=os.getenv("RELAY_FFMPEG_PATH", "ffmpeg"),
            loop_input=_get_bool("RELAY_LOOP_INPUT", True),
            resume_enabled=_get_bool("RELAY_RESUME_ENABLED", True),
            cache_dir=os.getenv("RELAY_CACHE_DIR", "/tmp/relay-cache"),
            segment_duration=_get_float("RELAY_SEGMENT_DURATION", 2.0),
            max_cache_seconds=_get_float("RELAY_MAX_CACHE_SECONDS", 300.0),
            lookahead_seconds=_get_float("RELAY_LOOKAHEAD_SECONDS", 60.0),
            checkpoint_every=_get_int("RELAY_CHECKPOINT_EVERY", 100),
            min_segments=_get_int("RELAY_MIN_SEGMENTS", 3),
            segment_wait_ms=_get_int("RELAY_SEGMENT_WAIT_MS", 60000),
            max_restart_attempts=_get_int("RELAY_MAX_RESTART_ATTEMPTS", 15),
            restart_base_delay_sec=_get_float("RELAY_RESTART_BASE_DELAY_SEC", 5.0),
            restart_growth_factor=_get_float("RELAY_RESTART_GROWTH_FACTOR", 1.5),
            restart_max_delay_sec=_get_float("RELAY_RESTART_MAX_DELAY_SEC", 60.0),
            stabilization_sec=_get_float("RELAY_STABILIZATION_SEC", 45.0),
            stop_timeout_sec=_get_float("RELAY_STOP_TIMEOUT_SEC", 5.0),
            max_reconnects=_get_int("RELAY_MAX_RECONNECTS", 10),
            reconnect_base_delay_sec=_get_float("RELAY_RECONNECT_BASE_DELAY_SEC", 2.0),
            reconnect_max_delay_sec=_get_float("RELAY_RECONNECT_MAX_DELAY_SEC", 30.0),
            restore_settle_sec=_get_float("RELAY_RESTORE_SETTLE_SEC", 10.0),
            health_interval_sec=_get_float("RELAY_HEALTH_INTERVAL_SEC", 15.0),
            min_lookahead_sec=_get_float("RELAY_MIN_LOOKAHEAD_SEC", 30.0),
            reconnect_threshold=_get_int("RELAY_RECONNECT_THRESHOLD", 5),
            restart_cooldown_sec=_get_float("RELAY_RESTART_COOLDOWN_SEC", 60.0),
            log_level=os.getenv("RELAY_LOG_LEVEL", "INFO"),
            log_file=os.getenv("RELAY_LOG_FILE") or None,
        )

        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values. Missing stream inputs are not an error
        here (the control surface still runs); see require_stream_inputs().

        Raises:
            ValueError: If configuration is invalid
        """
        if self.port < 1 or self.port > 65535:
            raise ValueError(f"Invalid port: {self.port} (must be 1-65535)")

        if self.mode not in VALID_MODES:
            raise ValueError(f"Invalid RELAY_MODE: {self.mode} (must be one of: {', '.join(VALID_MODES)})")

        if self.segment_duration <= 0:
            raise ValueError(f"Invalid segment duration: {self.segment_duration} (must be > 0)")

        if self.max_cache_seconds < self.segment_duration:
            raise ValueError(
                f"Invalid max cache seconds: {self.max_cache_seconds} "
                f"(must be >= segment duration {self.segment_duration})"
            )

        if self.checkpoint_every <= 0:
            raise ValueError(f"Invalid checkpoint interval: {self.checkpoint_every} (must be > 0)")

        if self.min_segments <= 0:
            raise ValueError(f"Invalid minimum segments: {self.min_segments} (must be > 0)")

        if self.max_restart_attempts < 1:
            raise ValueError(f"Invalid max restart attempts: {self.max_restart_attempts} (must be >= 1)")

        if self.max_reconnects < 1:
            raise ValueError(f"Invalid max reconnects: {self.max_reconnects} (must be >= 1)")

        if self.restart_growth_factor < 1.0:
            raise ValueError(f"Invalid restart growth factor: {self.restart_growth_factor} (must be >= 1)")

        for name in ("restart_base_delay_sec", "restart_max_delay_sec", "reconnect_base_delay_sec",
                     "reconnect_max_delay_sec", "health_interval_sec", "stop_timeout_sec"):
            if getattr(self, name) <= 0:
                raise ValueError(f"Invalid {name}: {getattr(self, name)} (must be > 0)")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(valid_log_levels)})"
            )

        validate_profiles(PRIMARY_PROFILE, BACKUP_PROFILE)

    def require_stream_inputs(self) -> None:
        """
        Raises:
            ConfigError: If the source or the primary endpoint is missing
        """
        missing = []
        if not self.video_url:
            missing.append("VIDEO_URL")
        if not self.rtmp_url:
            missing.append("RTMP_URL")
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


def load_config() -> RelayConfig:
    """
    Load and validate relay configuration from environment variables.

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return RelayConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
