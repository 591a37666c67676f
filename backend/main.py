from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import Response

from backend import feeds, streams
from backend.models import LiveFeedView, WSMessageType, WSOutgoing
from feed_watchdog.models import StreamStatus

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(name)-20s  %(message)s")
log = logging.getLogger(__name__)

_clients: set[WebSocket] = set()
_broadcast_tasks: set[asyncio.Task] = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    streams.registry.subscribe(_on_stream_change)
    streams.registry.subscribe_failures(_on_stream_failed)
    feeds.monitor.start()
    log.info("Feeds poller started")
    streams.registry.start()
    log.info("Stream watchdogs started")
    yield
    await streams.registry.close()
    await feeds.monitor.stop()
    streams.registry.unsubscribe(_on_stream_change)
    streams.registry.unsubscribe_failures(_on_stream_failed)
    log.info("Shutdown complete")


app = FastAPI(title="Feedwatch Live Feed", lifespan=lifespan)


def _get_stream_or_404(feed_id: str):
    try:
        return streams.registry.get(feed_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown feed: {feed_id}") from None


# -- REST -----------------------------------------------------------------

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/live-feed", response_model=LiveFeedView)
async def live_feed():
    return feeds.monitor.view(streams.registry.feed_ids, streams.registry.statuses())


@app.get("/api/streams/{feed_id}", response_model=StreamStatus)
async def stream_status(feed_id: str):
    return _get_stream_or_404(feed_id).status()


@app.post("/api/streams/{feed_id}/retry", response_model=StreamStatus)
async def retry_stream(feed_id: str):
    stream = _get_stream_or_404(feed_id)
    stream.retry()
    return stream.status()


@app.get("/api/streams/{feed_id}/snapshot")
async def stream_snapshot(feed_id: str):
    frame = _get_stream_or_404(feed_id).latest_frame
    if frame is None:
        raise HTTPException(status_code=404, detail=f"No frame received yet for {feed_id}")
    return Response(content=frame, media_type="image/jpeg", headers={"Cache-Control": "no-cache"})


@app.post("/api/refresh", response_model=LiveFeedView)
async def refresh_all():
    await feeds.monitor.refresh()
    retried = streams.registry.retry_failed()
    if retried:
        log.info("Refresh retried %d failed streams: %s", len(retried), ", ".join(retried))
    return feeds.monitor.view(streams.registry.feed_ids, streams.registry.statuses())


# -- WebSocket ------------------------------------------------------------

def _on_stream_change(status: StreamStatus) -> None:
    _schedule_broadcast(WSMessageType.STREAM_STATUS, status)


def _on_stream_failed(status: StreamStatus) -> None:
    _schedule_broadcast(WSMessageType.STREAM_FAILED, status)


def _schedule_broadcast(msg_type: WSMessageType, status: StreamStatus) -> None:
    if not _clients:
        return
    msg = WSOutgoing(type=msg_type, payload=status.model_dump(mode="json"))
    task = asyncio.ensure_future(_broadcast(msg.model_dump_json()))
    _broadcast_tasks.add(task)
    task.add_done_callback(_broadcast_tasks.discard)


async def _broadcast(raw: str) -> None:
    stale: list[WebSocket] = []
    for ws in list(_clients):
        try:
            await ws.send_text(raw)
        except Exception:
            stale.append(ws)

    for ws in stale:
        _clients.discard(ws)


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    _clients.add(ws)
    log.info("WebSocket client connected")

    try:
        for status in streams.registry.statuses().values():
            await ws.send_text(
                WSOutgoing(
                    type=WSMessageType.STREAM_STATUS,
                    payload=status.model_dump(mode="json"),
                ).model_dump_json()
            )

        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        _clients.discard(ws)
        log.info("WebSocket client disconnected")
