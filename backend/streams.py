from __future__ import annotations

import logging
from typing import Callable

from backend.config import settings
from feed_watchdog.config import WatchdogConfig
from feed_watchdog.loader import MjpegLoader
from feed_watchdog.models import ConnectionState, StreamStatus
from feed_watchdog.stream import FrameSource, LiveStream

log = logging.getLogger(__name__)


class StreamRegistry:
    """One `LiveStream` per configured feed, mounted and unmounted together."""

    def __init__(
        self,
        feed_ids: list[str] | None = None,
        base_url: str | None = None,
        config: WatchdogConfig | None = None,
        loader: FrameSource | None = None,
    ) -> None:
        self.feed_ids = list(feed_ids if feed_ids is not None else settings.feed_ids)
        self.base_url = base_url or settings.backend_url
        self.config = config or settings.watchdog_config()
        self._loader = loader
        self._owns_loader = loader is None
        self._streams: dict[str, LiveStream] = {}
        self._listeners: set[Callable[[StreamStatus], None]] = set()
        self._failure_listeners: set[Callable[[StreamStatus], None]] = set()

    # -- listeners --------------------------------------------------------

    def subscribe(self, listener: Callable[[StreamStatus], None]) -> None:
        self._listeners.add(listener)

    def unsubscribe(self, listener: Callable[[StreamStatus], None]) -> None:
        self._listeners.discard(listener)

    def subscribe_failures(self, listener: Callable[[StreamStatus], None]) -> None:
        self._failure_listeners.add(listener)

    def unsubscribe_failures(self, listener: Callable[[StreamStatus], None]) -> None:
        self._failure_listeners.discard(listener)

    def _notify(self, listeners: set[Callable[[StreamStatus], None]], status: StreamStatus) -> None:
        for listener in list(listeners):
            listener(status)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._streams:
            return
        if self._loader is None:
            self._loader = MjpegLoader(
                timeout=settings.http_timeout, decode=settings.decode_frames
            )
        for feed_id in self.feed_ids:
            stream = LiveStream(
                feed_id,
                self.base_url,
                self._loader,
                self.config,
                on_change=lambda status: self._notify(self._listeners, status),
                on_failure=lambda status: self._notify(self._failure_listeners, status),
            )
            self._streams[feed_id] = stream
            stream.start()
        log.info("Mounted %d streams from %s", len(self._streams), self.base_url)

    async def close(self) -> None:
        for stream in self._streams.values():
            await stream.close()
        self._streams.clear()
        if self._owns_loader and isinstance(self._loader, MjpegLoader):
            await self._loader.aclose()
            self._loader = None

    # -- access -----------------------------------------------------------

    def get(self, feed_id: str) -> LiveStream:
        """Return the stream for *feed_id*; raises KeyError for unknown feeds."""
        return self._streams[feed_id]

    def status(self, feed_id: str) -> StreamStatus:
        return self.get(feed_id).status()

    def statuses(self) -> dict[str, StreamStatus]:
        return {fid: s.status() for fid, s in self._streams.items()}

    def retry(self, feed_id: str) -> StreamStatus:
        stream = self.get(feed_id)
        stream.retry()
        return stream.status()

    def retry_failed(self) -> list[str]:
        """Manually retry every stream that has given up."""
        retried = [
            fid for fid, s in self._streams.items()
            if s.watchdog.state == ConnectionState.FAILED
        ]
        for fid in retried:
            self._streams[fid].retry()
        return retried


registry = StreamRegistry()
