"""Data models for the stream watchdog.

Enums name the states, inputs and failure kinds of a stream session; the
`StreamStatus` snapshot is what panels, the API and the CLI render.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


# ── Enums ────────────────────────────────────────────────────────────────────

class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class EventType(str, Enum):
    LOAD_SUCCESS = "load_success"
    LOAD_ERROR = "load_error"
    FRAME = "frame"
    STALE_TICK = "stale_tick"
    RECONNECT_DUE = "reconnect_due"
    RETRY = "retry"
    TEARDOWN = "teardown"


class FailureKind(str, Enum):
    LOAD_ERROR = "load_error"
    STALENESS = "staleness"
    EXHAUSTED_RETRIES = "exhausted_retries"


# ── Output models ────────────────────────────────────────────────────────────

class StreamStatus(BaseModel):
    """Read-only snapshot of one stream session."""
    feed_id: str
    url: str
    state: ConnectionState
    connected: bool
    attempts: int
    max_attempts: int
    generation: int
    last_activity: datetime | None = None
    last_failure: FailureKind | None = None

    @property
    def label(self) -> str:
        return "LIVE" if self.connected else "OFFLINE"
