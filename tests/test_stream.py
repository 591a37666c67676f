"""Tests for the LiveStream loader glue, run on a real event loop."""

from __future__ import annotations

import asyncio

from feed_watchdog.config import WatchdogConfig
from feed_watchdog.loader import LoadError
from feed_watchdog.models import ConnectionState
from feed_watchdog.stream import LiveStream

FRAME = b"\xff\xd8frame\xff\xd9"


class ScriptedLoader:
    """Each call to frames() plays the next step: an exception or a list of frames.
    After its frames, a load stays open like a live MJPEG response."""

    def __init__(self, *steps) -> None:
        self.steps = list(steps)
        self.urls: list[str] = []
        self.cancelled = 0

    async def frames(self, url: str):
        self.urls.append(url)
        step = self.steps.pop(0) if self.steps else []
        if isinstance(step, Exception):
            raise step
        for frame in step:
            yield frame
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise


def _make_stream(loader, **config) -> LiveStream:
    return LiveStream("feed_1", "http://cam:5000", loader, WatchdogConfig(**config))


def _run(scenario):
    return asyncio.run(scenario())


class TestLiveStream:
    def test_first_frame_goes_live(self):
        loader = ScriptedLoader([FRAME, FRAME])

        async def scenario():
            stream = _make_stream(loader)
            stream.start()
            await asyncio.sleep(0.05)
            status = stream.status()
            latest = stream.latest_frame
            await stream.close()
            return status, latest

        status, latest = _run(scenario)
        assert status.state == ConnectionState.LIVE
        assert status.connected is True
        assert latest == FRAME

    def test_load_error_schedules_reconnect(self):
        loader = ScriptedLoader(LoadError("HTTP 503"))

        async def scenario():
            stream = _make_stream(loader, base_delay_ms=10_000)
            stream.start()
            await asyncio.sleep(0.05)
            state = stream.watchdog.state
            pending = stream.watchdog.has_pending_reconnect
            await stream.close()
            return state, pending

        state, pending = _run(scenario)
        assert state == ConnectionState.RECONNECTING
        assert pending is True

    def test_recovers_after_backoff(self):
        loader = ScriptedLoader(LoadError("refused"), [FRAME])

        async def scenario():
            stream = _make_stream(loader, base_delay_ms=20)
            stream.start()
            await asyncio.sleep(0.3)
            status = stream.status()
            await stream.close()
            return status

        status = _run(scenario)
        assert status.state == ConnectionState.LIVE
        assert status.attempts == 0
        assert len(loader.urls) == 2
        assert loader.urls[0] != loader.urls[1]

    def test_unexpected_loader_error_counts_as_load_error(self):
        loader = ScriptedLoader(ValueError("bad bytes"))

        async def scenario():
            stream = _make_stream(loader, max_attempts=0)
            stream.start()
            await asyncio.sleep(0.05)
            state = stream.watchdog.state
            await stream.close()
            return state

        assert _run(scenario) == ConnectionState.FAILED

    def test_retry_supersedes_running_load(self):
        loader = ScriptedLoader([], [FRAME])

        async def scenario():
            stream = _make_stream(loader)
            stream.start()
            await asyncio.sleep(0.02)
            stream.retry()
            await asyncio.sleep(0.05)
            status = stream.status()
            await stream.close()
            return status

        status = _run(scenario)
        assert status.state == ConnectionState.LIVE
        assert status.generation == 2
        assert loader.cancelled >= 1

    def test_close_stops_everything(self):
        loader = ScriptedLoader([FRAME])
        changes = []

        async def scenario():
            stream = LiveStream(
                "feed_1", "http://cam:5000", loader,
                WatchdogConfig(stale_timeout_ms=20, stale_check_ms=10),
                on_change=changes.append,
            )
            stream.start()
            await asyncio.sleep(0.005)
            await stream.close()
            seen = len(changes)
            await asyncio.sleep(0.1)
            return seen, stream.watchdog.closed

        seen, closed = _run(scenario)
        assert closed is True
        assert len(changes) == seen
        assert len(loader.urls) == 1
