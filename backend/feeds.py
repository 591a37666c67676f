from __future__ import annotations

import asyncio
import logging
from datetime import datetime

import httpx
from pydantic import ValidationError

from backend.config import settings
from backend.models import AlertLevel, FeedData, FeedPanel, FeedsResponse, LiveFeedView
from feed_watchdog.models import StreamStatus

log = logging.getLogger(__name__)

_BADGE_VARIANTS: dict[AlertLevel, str] = {
    AlertLevel.CRITICAL: "destructive",
    AlertLevel.WARNING: "default",
    AlertLevel.NORMAL: "secondary",
}

_STATUS_TEXT: dict[AlertLevel, str] = {
    AlertLevel.CRITICAL: "Critical",
    AlertLevel.WARNING: "Warning",
    AlertLevel.NORMAL: "Normal",
}


# -- panel rendering helpers ----------------------------------------------

def badge_variant(level: AlertLevel | None) -> str:
    return _BADGE_VARIANTS.get(level, "outline")


def status_text(level: AlertLevel | None) -> str:
    return _STATUS_TEXT.get(level, "Unknown")


def panel_title(feed_id: str, data: FeedData | None) -> str:
    if data is not None and data.name:
        return data.name
    return feed_id.replace("_", " ", 1).upper()


def area_label(data: FeedData | None) -> str:
    if data is None or not data.area:
        return "Unknown Location"
    return data.area.replace("_", " ", 1).upper()


def build_panel(feed_id: str, data: FeedData | None, stream: StreamStatus) -> FeedPanel:
    """One card on the live-feed page: feed metadata plus its stream state."""
    online = data is not None
    level = data.alert_level if online else None
    return FeedPanel(
        feed_id=feed_id,
        title=panel_title(feed_id, data),
        area=area_label(data),
        online=online,
        status_text=status_text(level) if online else "Offline",
        badge_variant=badge_variant(level),
        alert=online and level != AlertLevel.NORMAL,
        density_percentage=data.density_percentage if online else None,
        stream=stream,
    )


# -- poller ---------------------------------------------------------------

class FeedsMonitor:
    """Polls the crowd backend's feed list and tracks whether it is reachable."""

    def __init__(
        self,
        backend_url: str | None = None,
        interval: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.backend_url = (backend_url or settings.backend_url).rstrip("/")
        self.interval = interval if interval is not None else settings.feeds_poll_interval
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task | None = None
        self._running = False

        self.feeds: dict[str, FeedData] = {}
        self.error: str | None = None
        self.online = False
        self.last_update: datetime | None = None

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout)
        self._running = True
        self._task = asyncio.ensure_future(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    # -- polling ----------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch the feed list now. Returns True when the backend answered."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.http_timeout)
        url = f"{self.backend_url}/api/feeds"
        try:
            response = await self._client.get(url, headers={"Cache-Control": "no-cache"})
            response.raise_for_status()
            data = FeedsResponse.model_validate(response.json())
        except (httpx.HTTPError, ValidationError, ValueError) as exc:
            if self.online or self.error is None:
                log.warning("Failed to fetch feeds data: %s", exc)
            self.error = str(exc) or type(exc).__name__
            self.online = False
            return False

        if not self.online:
            log.info("Feeds backend online (%d feeds)", len(data.feeds))
        self.feeds = data.feeds
        self.error = None
        self.online = True
        self.last_update = datetime.now()
        return True

    async def _loop(self) -> None:
        log.info("Feeds poller started (interval=%.1fs, url=%s)", self.interval, self.backend_url)
        while self._running:
            await self.refresh()
            await asyncio.sleep(self.interval)

    # -- view -------------------------------------------------------------

    def view(self, feed_ids: list[str], streams: dict[str, StreamStatus]) -> LiveFeedView:
        return LiveFeedView(
            panels=[
                build_panel(fid, self.feeds.get(fid), streams[fid])
                for fid in feed_ids
                if fid in streams
            ],
            system_online=self.online,
            error=self.error,
            last_update=self.last_update,
        )


monitor = FeedsMonitor()
