"""Log Filter/Mapper: normalized device log records and their stream.

Platform mappers (``android/logcat.py``, ``apple/oslog.py``) turn raw log
lines into :class:`LogRecord` objects.  :class:`LogStream` runs one mapper
over the output of a log process in a producer task and hands the filtered
records to the consumer through a bounded queue::

    stream = LogStream(process, mapper, LogFilter(LogLevel.INFO))
    stream.start()
    async for record in stream:
        console.print(format_record(record))

A stream is lazy, unbounded, and non-restartable.  It ends when the log
process exits or when :meth:`LogStream.detach` is called.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Optional

from .config import NoiseLevel, Platform
from .utils import iter_lines, terminate_process

logger = logging.getLogger(__name__)


class LogLevel(IntEnum):
    """Severity, totally ordered: verbose < debug < info < warn < error."""

    VERBOSE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    @property
    def letter(self) -> str:
        return "VDIWE"[self.value]

    @classmethod
    def parse(cls, value: str) -> "LogLevel":
        """Accept a level name (``warn``, ``WARNING``) or its initial (``w``)."""
        key = value.strip().lower()
        aliases = {"warning": "warn", "err": "error", "trace": "verbose"}
        key = aliases.get(key, key)
        for level in cls:
            if key in (level.name.lower(), level.letter.lower()):
                return level
        raise ValueError(f"unknown log level {value!r}")


@dataclass(frozen=True)
class LogRecord:
    timestamp: datetime
    level: LogLevel
    tag: str
    message: str
    source_platform: Platform


LogMapper = Callable[[str], Optional[LogRecord]]


def format_record(record: LogRecord) -> str:
    """``HH:MM:SS.mmm L tag: message``; the tag part is omitted when empty."""
    stamp = record.timestamp.strftime("%H:%M:%S.") + f"{record.timestamp.microsecond // 1000:03d}"
    if record.tag:
        return f"{stamp} {record.level.letter} {record.tag}: {record.message}"
    return f"{stamp} {record.level.letter} {record.message}"


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

_NOISE_THRESHOLDS = {
    NoiseLevel.POLITE: LogLevel.WARN,
    NoiseLevel.LOUD: LogLevel.INFO,
    NoiseLevel.PEDANTIC: LogLevel.VERBOSE,
}


@dataclass(frozen=True)
class LogFilter:
    """Drops records below ``threshold``.

    Raising the threshold can only ever remove records from the output.
    """

    threshold: LogLevel = LogLevel.WARN

    def accepts(self, record: LogRecord) -> bool:
        return record.level >= self.threshold

    @classmethod
    def from_options(cls, level: Optional[str] = None, noise: NoiseLevel = NoiseLevel.POLITE) -> "LogFilter":
        """An explicit *level* wins; otherwise the threshold follows *noise*."""
        if level:
            return cls(LogLevel.parse(level))
        return cls(_NOISE_THRESHOLDS[noise])


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------

_END = object()


class LogStream:
    """Async iterator over the filtered records of one log process.

    Args:
        process: The running log process (stdout piped).
        mapper: Platform line mapper; returns ``None`` for noise lines.
        log_filter: Applied in the producer, before records are queued.
        buffer: Queue capacity; the producer waits when the consumer lags.
        terminate_grace: Seconds between SIGTERM and SIGKILL on detach.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        mapper: LogMapper,
        log_filter: LogFilter,
        buffer: int = 256,
        terminate_grace: float = 5.0,
    ) -> None:
        self.process = process
        self.mapper = mapper
        self.log_filter = log_filter
        self.terminate_grace = terminate_grace
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer)
        self._producer: Optional[asyncio.Task] = None
        self._started = False
        self._detached = False
        self._finished = False

    @property
    def attached(self) -> bool:
        return self._started and not (self._detached or self._finished)

    def start(self) -> None:
        """Begin reading the log process.

        Raises:
            RuntimeError: If the stream was already started or detached.
        """
        if self._started or self._detached:
            raise RuntimeError("a log stream cannot be restarted")
        self._started = True
        self._producer = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            async for line in iter_lines(self.process):
                record = self.mapper(line)
                if record is not None and self.log_filter.accepts(record):
                    await self._queue.put(record)
            await self.process.wait()
            logger.debug("log process exited with status %s", self.process.returncode)
            await self._queue.put(_END)
        except (OSError, ValueError) as exc:
            logger.error("log stream stopped: %s", exc)
            await terminate_process(self.process, grace=self.terminate_grace)
            # records read before the failure stay ahead of the marker
            await self._queue.put(_END)
        finally:
            self._finished = True

    def _close_queue(self) -> None:
        """Replace anything still queued with the end marker."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_END)

    async def detach(self) -> None:
        """Stop the producer and kill the log process.  Idempotent."""
        if self._detached:
            return
        self._detached = True
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass
        await terminate_process(self.process, grace=self.terminate_grace)
        # wakes a consumer blocked on get()
        self._close_queue()

    def __aiter__(self) -> "LogStream":
        return self

    async def __anext__(self) -> LogRecord:
        if not self._started:
            raise RuntimeError("log stream not started")
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any later call.
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item
