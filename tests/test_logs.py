"""Tests for log records, filtering, and streaming (mobile_forge.logs)."""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest

from mobile_forge.android.logcat import map_logcat_line
from mobile_forge.config import NoiseLevel, Platform
from mobile_forge.logs import LogFilter, LogLevel, LogRecord, LogStream, format_record
from mobile_forge.utils import spawn

pytestmark = pytest.mark.unit


def _record(level: LogLevel, tag: str = "Foo", message: str = "hello") -> LogRecord:
    return LogRecord(datetime(2026, 10, 19, 12, 34, 56, 789000), level, tag, message, Platform.ANDROID)


LOGCAT = [
    "--------- beginning of main",
    "10-19 12:34:56.001  1234  1240 V Foo: verbose",
    "10-19 12:34:56.002  1234  1240 D Foo: debug",
    "10-19 12:34:56.003  1234  1240 I Foo: info",
    "10-19 12:34:56.004  1234  1240 W Foo: warn",
    "10-19 12:34:56.005  1234  1240 E Foo: error",
]


# ---------------------------------------------------------------------------
# Levels and records
# ---------------------------------------------------------------------------


class TestLogLevel:
    def test_total_order(self):
        assert LogLevel.VERBOSE < LogLevel.DEBUG < LogLevel.INFO < LogLevel.WARN < LogLevel.ERROR

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("warn", LogLevel.WARN),
            ("WARNING", LogLevel.WARN),
            ("w", LogLevel.WARN),
            (" error ", LogLevel.ERROR),
            ("trace", LogLevel.VERBOSE),
            ("I", LogLevel.INFO),
        ],
    )
    def test_parse(self, value, expected):
        assert LogLevel.parse(value) is expected

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="unknown log level"):
            LogLevel.parse("loud")


class TestFormatRecord:
    def test_with_tag(self):
        assert format_record(_record(LogLevel.WARN)) == "12:34:56.789 W Foo: hello"

    def test_without_tag(self):
        assert format_record(_record(LogLevel.INFO, tag="")) == "12:34:56.789 I hello"


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class TestLogFilter:
    @pytest.mark.parametrize(
        "noise, threshold",
        [
            (NoiseLevel.POLITE, LogLevel.WARN),
            (NoiseLevel.LOUD, LogLevel.INFO),
            (NoiseLevel.PEDANTIC, LogLevel.VERBOSE),
        ],
    )
    def test_threshold_follows_noise(self, noise, threshold):
        assert LogFilter.from_options(None, noise).threshold is threshold

    def test_explicit_level_wins(self):
        assert LogFilter.from_options("error", NoiseLevel.PEDANTIC).threshold is LogLevel.ERROR

    def test_raising_threshold_only_removes(self):
        records = [_record(level) for level in LogLevel]
        previous = None
        for level in LogLevel:
            accepted = {r.level for r in records if LogFilter(level).accepts(r)}
            assert accepted == {lvl for lvl in LogLevel if lvl >= level}
            if previous is not None:
                assert accepted <= previous
            previous = accepted


# ---------------------------------------------------------------------------
# Stream
# ---------------------------------------------------------------------------


class TestLogStream:
    @pytest.mark.asyncio
    async def test_filters_and_preserves_order(self, streaming_process):
        process = streaming_process(LOGCAT)
        stream = LogStream(process, map_logcat_line, LogFilter(LogLevel.INFO))
        stream.start()

        records = [record async for record in stream]

        assert [r.message for r in records] == ["info", "warn", "error"]
        assert all(r.source_platform is Platform.ANDROID for r in records)
        assert not stream.attached

    @pytest.mark.asyncio
    async def test_iteration_stays_finished(self, streaming_process):
        stream = LogStream(streaming_process([]), map_logcat_line, LogFilter(LogLevel.VERBOSE))
        stream.start()
        assert [r async for r in stream] == []
        assert [r async for r in stream] == []

    @pytest.mark.asyncio
    async def test_cannot_restart(self, streaming_process):
        stream = LogStream(streaming_process([]), map_logcat_line, LogFilter())
        stream.start()
        with pytest.raises(RuntimeError):
            stream.start()
        await stream.detach()

    @pytest.mark.asyncio
    async def test_iterating_unstarted_stream_fails(self, streaming_process):
        stream = LogStream(streaming_process([]), map_logcat_line, LogFilter())
        with pytest.raises(RuntimeError, match="not started"):
            await stream.__anext__()

    @pytest.mark.asyncio
    async def test_detach_stops_running_process(self, streaming_process):
        process = streaming_process(LOGCAT[-1:], block=True)
        stream = LogStream(process, map_logcat_line, LogFilter(LogLevel.VERBOSE), terminate_grace=0.1)

        with patch("mobile_forge.logs.terminate_process", new_callable=AsyncMock) as terminate:
            stream.start()
            assert stream.attached
            first = await asyncio.wait_for(stream.__anext__(), timeout=1.0)
            assert first.message == "error"

            consumer = asyncio.create_task(stream.__anext__())
            await asyncio.sleep(0.05)
            await stream.detach()
            with pytest.raises(StopAsyncIteration):
                await asyncio.wait_for(consumer, timeout=1.0)

            await stream.detach()

        terminate.assert_awaited_once_with(process, grace=0.1)
        assert not stream.attached
        with pytest.raises(RuntimeError):
            stream.start()

    @pytest.mark.asyncio
    async def test_bounded_buffer_applies_backpressure(self, streaming_process):
        lines = [f"10-19 12:34:56.{i:03d}  1  1 E Foo: line {i}" for i in range(10)]
        stream = LogStream(streaming_process(lines), map_logcat_line, LogFilter(LogLevel.VERBOSE), buffer=2)
        stream.start()
        await asyncio.sleep(0.05)
        assert stream._queue.qsize() <= 2

        records = [r async for r in stream]
        assert [r.message for r in records] == [f"line {i}" for i in range(10)]

    @pytest.mark.asyncio
    async def test_read_error_ends_stream(self, streaming_process):
        process = streaming_process([])
        process.stdout.readline = AsyncMock(side_effect=OSError("pipe closed"))
        stream = LogStream(process, map_logcat_line, LogFilter())
        stream.start()
        assert [r async for r in stream] == []

    @pytest.mark.asyncio
    async def test_read_error_keeps_queued_records_and_stops_process(self, streaming_process):
        process = streaming_process(block=True)
        process.stdout.readline = AsyncMock(
            side_effect=[f"{LOGCAT[-1]}\n".encode("utf-8"), OSError("pipe closed")]
        )
        stream = LogStream(process, map_logcat_line, LogFilter(LogLevel.VERBOSE), terminate_grace=0.1)

        with patch("mobile_forge.logs.terminate_process", new_callable=AsyncMock) as terminate:
            stream.start()
            records = [r async for r in stream]

        assert [r.message for r in records] == ["error"]
        terminate.assert_awaited_once_with(process, grace=0.1)

    @pytest.mark.asyncio
    async def test_over_long_line_does_not_end_stream(self):
        script = (
            "print('10-19 12:34:56.001  1  1 I Foo: first'); "
            "print('x' * 70000); "
            "print('10-19 12:34:56.002  1  1 I Foo: after')"
        )
        process = await spawn([sys.executable, "-c", script])
        stream = LogStream(process, map_logcat_line, LogFilter(LogLevel.VERBOSE))
        stream.start()
        records = [r async for r in stream]
        assert [r.message for r in records if r.tag == "Foo"] == ["first", "after"]
