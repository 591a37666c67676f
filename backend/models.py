from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from feed_watchdog.models import StreamStatus


# -- Feed data from the crowd backend (/api/feeds) ------------------------

class AlertLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class FeedLocation(BaseModel):
    lat: float
    lng: float


class FeedData(BaseModel):
    name: str
    current_count: int = 0
    max_capacity: int = 0
    density_percentage: float = 0.0
    alert_level: AlertLevel = AlertLevel.NORMAL
    last_updated: str = ""
    location: FeedLocation | None = None
    area: str = ""


class FeedsResponse(BaseModel):
    feeds: dict[str, FeedData] = Field(default_factory=dict)


# -- Live feed page view --------------------------------------------------

class FeedPanel(BaseModel):
    feed_id: str
    title: str
    area: str
    online: bool
    status_text: str
    badge_variant: str
    alert: bool
    density_percentage: float | None = None
    stream: StreamStatus


class LiveFeedView(BaseModel):
    panels: list[FeedPanel] = Field(default_factory=list)
    system_online: bool = False
    error: str | None = None
    last_update: datetime | None = None


# -- WebSocket message models --------------------------------------------

class WSMessageType(str, Enum):
    STREAM_STATUS = "stream_status"
    STREAM_FAILED = "stream_failed"


class WSOutgoing(BaseModel):
    type: WSMessageType
    payload: dict = Field(default_factory=dict)
