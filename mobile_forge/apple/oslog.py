"""Mapping of Apple device logs onto log records.

Two sources are understood:

* ``log stream --style ndjson`` (simulators) -- one JSON object per line,
  severity in ``messageType``.
* ``idevicesyslog`` (physical devices) -- classic syslog lines with the
  severity in angle brackets::

      Oct 19 12:34:56 iPhone Foo(UIKitCore)[312] <Notice>: message
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any, Callable, Optional

from ..config import Platform
from ..logs import LogLevel, LogRecord

OSLOG_LEVELS = {
    "Debug": LogLevel.DEBUG,
    "Info": LogLevel.INFO,
    "Default": LogLevel.INFO,
    "Error": LogLevel.ERROR,
    "Fault": LogLevel.ERROR,
}

SYSLOG_LEVELS = {
    "Debug": LogLevel.DEBUG,
    "Info": LogLevel.INFO,
    "Notice": LogLevel.INFO,
    "Warning": LogLevel.WARN,
    "Error": LogLevel.ERROR,
    "Critical": LogLevel.ERROR,
    "Alert": LogLevel.ERROR,
    "Emergency": LogLevel.ERROR,
}

_SYSLOG = re.compile(
    r"^(?P<month>[A-Z][a-z]{2})\s+(?P<day>\d{1,2})\s+"
    r"(?P<time>\d\d:\d\d:\d\d(?:\.\d+)?)\s+"
    r"(?P<host>\S+)\s+"
    r"(?P<process>[^\[\s(]+)(?:\((?P<library>[^)]*)\))?\[(?P<pid>\d+)\]\s+"
    r"<(?P<level>\w+)>:\s?(?P<message>.*)$"
)

_NOISE_PREFIXES = (
    "Filtering the log data",
    "Timestamp ",
    "[connected",
    "[disconnected",
    "[waiting",
)


def is_noise(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith(_NOISE_PREFIXES)


def _parse_oslog_timestamp(value: str) -> Optional[datetime]:
    for fmt in ("%Y-%m-%d %H:%M:%S.%f%z", "%Y-%m-%d %H:%M:%S%z", "%Y-%m-%d %H:%M:%S.%f"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


def _map_ndjson(data: dict[str, Any], now: datetime) -> LogRecord:
    level = OSLOG_LEVELS.get(str(data.get("messageType", "")), LogLevel.INFO)
    process = str(data.get("processImagePath", "")).rsplit("/", 1)[-1]
    tag = data.get("category") or data.get("subsystem") or process
    timestamp = _parse_oslog_timestamp(str(data.get("timestamp", ""))) or now
    return LogRecord(
        timestamp=timestamp,
        level=level,
        tag=str(tag),
        message=str(data.get("eventMessage", "")),
        source_platform=Platform.APPLE,
    )


def _map_syslog(match: re.Match[str], now: datetime) -> LogRecord:
    try:
        timestamp = datetime.strptime(
            f"{now.year} {match['month']} {match['day']} {match['time'].split('.')[0]}",
            "%Y %b %d %H:%M:%S",
        )
    except ValueError:
        timestamp = now
    return LogRecord(
        timestamp=timestamp,
        level=SYSLOG_LEVELS.get(match["level"], LogLevel.INFO),
        tag=match["process"],
        message=match["message"],
        source_platform=Platform.APPLE,
    )


def map_apple_line(line: str, now: Callable[[], datetime] = datetime.now) -> Optional[LogRecord]:
    """Map one ndjson or syslog line.

    Noise lines map to ``None``; anything else that does not parse becomes
    an ``info`` record with an empty tag.
    """
    if is_noise(line):
        return None
    current = now()
    stripped = line.strip()

    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            if data.get("finished"):
                return None
            return _map_ndjson(data, current)

    match = _SYSLOG.match(stripped)
    if match is not None:
        return _map_syslog(match, current)

    return LogRecord(current, LogLevel.INFO, "", stripped, Platform.APPLE)
