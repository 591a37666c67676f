"""Configuration constants for the stream watchdog.

Retry ceiling, backoff unit and staleness window live here so they're easy
to tweak without touching the state machine. Override per stream by passing
a `WatchdogConfig` (snake_case or the camelCase option names both work).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

# ── Reconnect policy ─────────────────────────────────────────────────────────
MAX_ATTEMPTS = 5               # automatic reconnects before giving up
BASE_DELAY_MS = 2000           # backoff unit: delay = base * 2^attempt

# ── Staleness detection ──────────────────────────────────────────────────────
STALE_TIMEOUT_MS = 10000       # no activity for longer than this while live → reconnect
STALE_CHECK_MS = 1000          # how often the staleness tick runs

# ── Endpoint ─────────────────────────────────────────────────────────────────
STREAM_PATH = "/api/video/stream/{feed_id}"
CACHE_TOKEN_PARAM = "t"

# ── Loader ───────────────────────────────────────────────────────────────────
LOAD_TIMEOUT_S = 10.0
MAX_FRAME_BUFFER = 8 * 1024 * 1024   # drop the stream if no frame fits in 8 MiB


class WatchdogConfig(BaseModel):
    """Per-stream thresholds, validated."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    max_attempts: int = Field(MAX_ATTEMPTS, ge=0, alias="maxAttempts")
    base_delay_ms: float = Field(BASE_DELAY_MS, gt=0, alias="baseDelayMs")
    stale_timeout_ms: float = Field(STALE_TIMEOUT_MS, gt=0, alias="staleTimeoutMs")
    stale_check_ms: float = Field(STALE_CHECK_MS, gt=0, alias="staleCheckMs")

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait before reconnect number *attempt* (counted from 0)."""
        return self.base_delay_ms * (2 ** attempt) / 1000.0

    @property
    def stale_timeout(self) -> float:
        return self.stale_timeout_ms / 1000.0

    @property
    def stale_check_interval(self) -> float:
        return self.stale_check_ms / 1000.0


DEFAULT_CONFIG = WatchdogConfig()
