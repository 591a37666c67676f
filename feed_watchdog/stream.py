"""Async driver that runs the loads a stream watchdog asks for.

Each connect attempt gets its own loader task; a newer attempt cancels the
older task, and every frame or failure is reported back with the attempt's
generation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Protocol

from feed_watchdog.config import WatchdogConfig
from feed_watchdog.loader import LoadError
from feed_watchdog.models import StreamStatus
from feed_watchdog.watchdog import Scheduler, StreamWatchdog

log = logging.getLogger(__name__)


class FrameSource(Protocol):
    def frames(self, url: str) -> AsyncIterator[bytes]: ...


class LiveStream:
    """Background loader for one feed: runs a load per connect attempt and
    reports results to the feed's watchdog."""

    def __init__(
        self,
        feed_id: str,
        base_url: str,
        loader: FrameSource,
        config: WatchdogConfig | None = None,
        *,
        on_failure: Callable[[StreamStatus], None] | None = None,
        on_change: Callable[[StreamStatus], None] | None = None,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._task: asyncio.Task | None = None
        self._latest_frame: bytes | None = None
        self.watchdog = StreamWatchdog(
            feed_id,
            base_url,
            config,
            scheduler=scheduler,
            clock=clock,
            on_connect=self._on_connect,
            on_failure=on_failure,
            on_change=on_change,
        )

    @property
    def feed_id(self) -> str:
        return self.watchdog.feed_id

    @property
    def latest_frame(self) -> bytes | None:
        return self._latest_frame

    def status(self) -> StreamStatus:
        return self.watchdog.status()

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self.watchdog.start()

    def retry(self) -> None:
        self.watchdog.retry()

    async def close(self) -> None:
        self.watchdog.teardown()
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- loading ----------------------------------------------------------

    def _on_connect(self, generation: int, url: str) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.ensure_future(self._consume(generation, url))

    async def _consume(self, generation: int, url: str) -> None:
        first = True
        try:
            async for frame in self._loader.frames(url):
                self._latest_frame = frame
                if first:
                    first = False
                    self.watchdog.load_succeeded(generation)
                else:
                    self.watchdog.frame_received(generation)
        except asyncio.CancelledError:
            raise
        except LoadError as exc:
            self.watchdog.load_failed(generation, exc)
        except Exception as exc:
            log.exception("Unexpected loader failure on %s", self.feed_id)
            self.watchdog.load_failed(generation, exc)
