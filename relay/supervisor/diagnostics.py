"""
Parser for ffmpeg's line-oriented diagnostic output.

ffmpeg writes its periodic stats line ("frame= ... fps= ... time=00:01:02.50")
terminated by a carriage return, and everything else terminated by a newline.
Chunks read from the pipe split lines arbitrarily, so DiagnosticsParser buffers
partial lines and splits on both terminators.

Each complete line produces zero or more DiagnosticEvent values. Precedence for
a single line is:

1. SEGMENT_READY  - "Opening '.../segment_12.ts' for writing"
2. CONNECTED / PROGRESS - rate markers (fps=, frame=, time=)
3. END_OF_INPUT   - end-of-stream markers
4. ERROR_DETECTED - categorised error text
5. UNCLASSIFIED   - anything else

Error categories are informational only; restart decisions are made by
RestartPolicy from the exit code and the end-of-stream markers.
"""

from __future__ import annotations

import enum
import re
from collections import deque
from dataclasses import dataclass
from typing import Deque, Iterable, List, Optional, Union

from relay.urls import redact_text


class EventKind(enum.Enum):
    CONNECTED = "connected"
    PROGRESS = "progress"
    SEGMENT_READY = "segment_ready"
    END_OF_INPUT = "end_of_input"
    ERROR_DETECTED = "error_detected"
    UNCLASSIFIED = "unclassified"


class ErrorCategory(enum.Enum):
    NETWORK_UNREACHABLE = "network_unreachable"
    CONFIG_INVALID = "config_invalid"
    PROTOCOL_ERROR = "protocol_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class DiagnosticEvent:
    """One typed event extracted from a diagnostic line (raw is already redacted)."""
    kind: EventKind
    raw: str = ""
    position_seconds: Optional[float] = None
    segment_id: Optional[int] = None
    category: Optional[ErrorCategory] = None


RATE_MARKERS = ("fps=", "frame=", "time=")

END_OF_STREAM_MARKERS = (
    "end of file",
    "immediate exit requested",
    "range not satisfiable",
    "http error 416",
    "server returned 416",
)

_TIME_RE = re.compile(r"time=\s*(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)")
_SEGMENT_RE = re.compile(r"segment_(\d+)\.([A-Za-z0-9]+)")
_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")

_ERROR_PATTERNS = (
    (ErrorCategory.NETWORK_UNREACHABLE, (
        "connection refused",
        "network is unreachable",
        "connection timed out",
        "connection reset",
        "no route to host",
        "failed to resolve",
        "name or service not known",
        "temporary failure in name resolution",
        "broken pipe",
        "input/output error",
    )),
    (ErrorCategory.CONFIG_INVALID, (
        "invalid argument",
        "option not found",
        "unrecognized option",
        "does not exist",
        "no such file or directory",
        "error splitting the argument list",
        "unknown encoder",
        "invalid option",
    )),
    (ErrorCategory.PROTOCOL_ERROR, (
        "protocol not found",
        "handshake",
        "invalid data found when processing input",
        "server error",
        "rtmp_",
    )),
)

_GENERIC_ERROR_MARKERS = ("error", "failed")

# Max bytes kept for an unterminated line before it is force-split
_MAX_PARTIAL_CHARS = 64 * 1024


def parse_timestamp(text: str) -> Optional[float]:
    """Parse the first time=HH:MM:SS.cc token in text into seconds (None if absent or N/A)."""
    match = _TIME_RE.search(text)
    if match is None:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def classify_error(line: str) -> Optional[ErrorCategory]:
    """Categorise an error line, or return None if it does not look like an error."""
    lowered = line.lower()
    for category, needles in _ERROR_PATTERNS:
        if any(needle in lowered for needle in needles):
            return category
    if "rtmp" in lowered and "error" in lowered:
        return ErrorCategory.PROTOCOL_ERROR
    if any(marker in lowered for marker in _GENERIC_ERROR_MARKERS):
        return ErrorCategory.UNKNOWN
    return None


def is_end_of_stream(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in END_OF_STREAM_MARKERS)


def contains_end_of_stream(lines: Iterable[str]) -> bool:
    """True if any line of a diagnostics tail carries an end-of-stream marker."""
    return any(is_end_of_stream(line) for line in lines)


class DiagnosticsParser:
    """
    Incremental parser for one subprocess's stderr.

    A parser instance belongs to exactly one process run; create a new one
    (or call reset()) for every spawn so CONNECTED is reported once per run.

    Args:
        secrets: Strings to redact from every stored/emitted line
        tail_size: Number of recent lines kept for tail()
    """

    def __init__(self, secrets: Iterable[str] = (), tail_size: int = 50) -> None:
        self._secrets = tuple(s for s in secrets if s)
        self._partial = ""
        self._tail: Deque[str] = deque(maxlen=tail_size)
        self._connected = False
        self._pending_cr = False

    @property
    def connected(self) -> bool:
        return self._connected

    def reset(self) -> None:
        self._partial = ""
        self._tail.clear()
        self._connected = False
        self._pending_cr = False

    def tail(self) -> List[str]:
        return list(self._tail)

    def feed(self, chunk: Union[bytes, str]) -> List[DiagnosticEvent]:
        """
        Consume a chunk of diagnostic output.

        Returns:
            Events for every line completed by this chunk, in order
        """
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        if not chunk:
            return []

        # A chunk ending in "\r" may be followed by the "\n" of a "\r\n" pair.
        if self._pending_cr and chunk.startswith("\n"):
            chunk = chunk[1:]
        self._pending_cr = chunk.endswith("\r")

        data = self._partial + chunk
        pieces = _LINE_SPLIT_RE.split(data)
        self._partial = pieces.pop()
        if len(self._partial) > _MAX_PARTIAL_CHARS:
            pieces.append(self._partial)
            self._partial = ""

        events: List[DiagnosticEvent] = []
        for line in pieces:
            events.extend(self.parse_line(line))
        return events

    def flush(self) -> List[DiagnosticEvent]:
        """Emit events for any buffered, unterminated line (call at process exit)."""
        line, self._partial = self._partial, ""
        return self.parse_line(line)

    def parse_line(self, line: str) -> List[DiagnosticEvent]:
        line = line.strip()
        if not line:
            return []
        safe = redact_text(line, self._secrets)
        self._tail.append(safe)
        lowered = line.lower()

        if "opening" in lowered:
            match = _SEGMENT_RE.search(line)
            if match is not None:
                return [DiagnosticEvent(EventKind.SEGMENT_READY, raw=safe, segment_id=int(match.group(1)))]

        if any(marker in line for marker in RATE_MARKERS):
            events = []
            if not self._connected:
                self._connected = True
                events.append(DiagnosticEvent(EventKind.CONNECTED, raw=safe))
            position = parse_timestamp(line)
            if position is not None:
                events.append(DiagnosticEvent(EventKind.PROGRESS, raw=safe, position_seconds=position))
            return events

        if is_end_of_stream(line):
            return [DiagnosticEvent(EventKind.END_OF_INPUT, raw=safe)]

        category = classify_error(line)
        if category is not None:
            return [DiagnosticEvent(EventKind.ERROR_DETECTED, raw=safe, category=category)]

        return [DiagnosticEvent(EventKind.UNCLASSIFIED, raw=safe)]
