"""
Logging setup for the relay.

Console logging via basicConfig, plus an optional rotation-tolerant log file.
Write failures on the file handler never propagate into the relay.
"""

import logging
import logging.handlers
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class SafeWatchedFileHandler(logging.handlers.WatchedFileHandler):
    """WatchedFileHandler (logrotate-friendly) whose write failures degrade silently."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            super().emit(record)
        except OSError:
            pass

    def handleError(self, record: logging.LogRecord) -> None:
        # Disk full or file removed: drop the record
        pass


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure root logging.

    Args:
        level: Log level name
        log_file: Optional path for a WatchedFileHandler
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    root = logging.getLogger()
    # basicConfig is a no-op once handlers exist
    root.setLevel(numeric_level)
    if not log_file:
        return

    if any(
        isinstance(h, logging.handlers.WatchedFileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_file)
        for h in root.handlers
    ):
        return
    try:
        handler = SafeWatchedFileHandler(log_file, mode="a", delay=True)
    except OSError as e:
        logging.getLogger(__name__).warning(f"File logging disabled ({log_file}): {e}")
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
