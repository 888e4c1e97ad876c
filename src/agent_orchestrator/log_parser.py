"""Container log line parsing."""

from dataclasses import dataclass
from enum import Enum
import re

from agent_orchestrator.models import utcnow

# Docker format: "2025-12-26T10:30:45.123456789Z actual log message"
TIMESTAMP_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}T[\d:.]+Z)\s+(.*)$")

ERROR_KEYWORDS = ("error", "fatal", "fail", "exception")
WARN_KEYWORDS = ("warn", "caution", "deprecated")
DEBUG_KEYWORDS = ("debug", "trace", "verbose")


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class LogEntry:
    timestamp: str
    level: LogLevel
    message: str


def detect_log_level(message: str) -> LogLevel:
    """Guess a level from keywords in the message. Defaults to info."""
    lowered = message.lower()
    if any(keyword in lowered for keyword in ERROR_KEYWORDS):
        return LogLevel.ERROR
    if any(keyword in lowered for keyword in WARN_KEYWORDS):
        return LogLevel.WARN
    if any(keyword in lowered for keyword in DEBUG_KEYWORDS):
        return LogLevel.DEBUG
    return LogLevel.INFO


def _now_iso() -> str:
    return utcnow().isoformat().replace("+00:00", "Z")


def parse_log_line(line: str, has_timestamps: bool) -> LogEntry | None:
    """Parse one raw log line. Returns None for blank lines."""
    stripped = line.strip()
    if not stripped:
        return None

    timestamp = None
    message = stripped
    if has_timestamps:
        match = TIMESTAMP_PATTERN.match(stripped)
        if match:
            timestamp = match.group(1)
            message = match.group(2).strip()

    return LogEntry(
        timestamp=timestamp or _now_iso(),
        level=detect_log_level(message),
        message=message,
    )
