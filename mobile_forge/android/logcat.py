"""Mapping of ``adb logcat -v threadtime`` lines onto log records."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Optional

from ..config import Platform
from ..logs import LogLevel, LogRecord

# 10-19 12:34:56.789  1234  5678 I ActivityManager: Start proc ...
_THREADTIME = re.compile(
    r"^(?P<month>\d\d)-(?P<day>\d\d)\s+"
    r"(?P<time>\d\d:\d\d:\d\d\.\d+)\s+"
    r"(?P<pid>\d+)\s+(?P<tid>\d+)\s+"
    r"(?P<level>[VDIWEFAS])\s+"
    r"(?P<tag>.*?)\s*: ?(?P<message>.*)$"
)

LOGCAT_LEVELS = {
    "V": LogLevel.VERBOSE,
    "D": LogLevel.DEBUG,
    "I": LogLevel.INFO,
    "W": LogLevel.WARN,
    "E": LogLevel.ERROR,
    "F": LogLevel.ERROR,
    "A": LogLevel.ERROR,
    "S": LogLevel.VERBOSE,
}


def is_noise(line: str) -> bool:
    return not line.strip() or line.startswith("--------- beginning of ")


def map_logcat_line(line: str, now: Callable[[], datetime] = datetime.now) -> Optional[LogRecord]:
    """Map one threadtime line.

    Noise lines map to ``None``; anything else that does not parse becomes
    an ``info`` record with an empty tag.
    """
    if is_noise(line):
        return None

    match = _THREADTIME.match(line)
    if match is None:
        return LogRecord(now(), LogLevel.INFO, "", line.strip(), Platform.ANDROID)

    current = now()
    try:
        timestamp = datetime.strptime(
            f"{current.year}-{match['month']}-{match['day']} {match['time'][:15]}",
            "%Y-%m-%d %H:%M:%S.%f",
        )
    except ValueError:
        timestamp = current
    return LogRecord(
        timestamp=timestamp,
        level=LOGCAT_LEVELS[match["level"]],
        tag=match["tag"].strip(),
        message=match["message"],
        source_platform=Platform.ANDROID,
    )
