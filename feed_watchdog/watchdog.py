"""Per-feed stream watchdog.

`StreamWatchdog` owns one `StreamSession` and the two timers that compete
for it: the backoff reconnect timer and the periodic staleness tick. It is
created when a feed panel mounts and torn down when it unmounts; every
counter and timer handle is a field on the instance, nothing is global.

The watchdog does not load anything itself. Whoever renders the stream
subscribes to `on_connect(generation, url)` and reports back through
`load_succeeded`, `load_failed` and `frame_received` with the same
generation. Timers go through a scheduler with asyncio's `call_later`
signature, so the running event loop works as-is and tests can drive a
fake one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Protocol
from urllib.parse import quote

from feed_watchdog.config import CACHE_TOKEN_PARAM, DEFAULT_CONFIG, STREAM_PATH, WatchdogConfig
from feed_watchdog.models import ConnectionState, EventType, FailureKind, StreamStatus
from feed_watchdog.state_machine import Outcome, StreamSession, apply_event, open_session

log = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...


def build_stream_url(base_url: str, feed_id: str, token: str) -> str:
    """Return `<base>/api/video/stream/<feed_id>?t=<token>`."""
    path = STREAM_PATH.format(feed_id=quote(feed_id, safe=""))
    return f"{base_url.rstrip('/')}{path}?{CACHE_TOKEN_PARAM}={quote(token, safe='')}"


def cache_token(generation: int) -> str:
    """Millisecond timestamp plus the attempt number, unique per (re)connect."""
    return f"{time.time_ns() // 1_000_000}-{generation}"


class StreamWatchdog:
    """Keeps one stream pointed at a live endpoint, reconnecting with backoff."""

    def __init__(
        self,
        feed_id: str,
        base_url: str,
        config: WatchdogConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_connect: Callable[[int, str], None] | None = None,
        on_failure: Callable[[StreamStatus], None] | None = None,
        on_error: Callable[[StreamStatus, FailureKind], None] | None = None,
        on_change: Callable[[StreamStatus], None] | None = None,
    ):
        self.feed_id = feed_id
        self.base_url = base_url
        self.config = config or DEFAULT_CONFIG
        self._scheduler = scheduler
        self._clock = clock

        self.on_connect = on_connect
        self.on_failure = on_failure
        self.on_error = on_error
        self.on_change = on_change

        self._session: StreamSession | None = None
        self._reconnect_timer: TimerHandle | None = None
        self._stale_timer: TimerHandle | None = None
        self._last_activity_at: datetime | None = None

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self._session is not None:
            return
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()

        self._session = open_session(self.feed_id, self._make_url)
        log.info("Connecting stream %s → %s", self.feed_id, self._session.url)
        self._arm_stale_timer()
        session = self._session
        self._emit("on_change", self.on_change, self.status())
        if not session.closed:
            self._emit("on_connect", self.on_connect, session.generation, session.url)

    def teardown(self) -> None:
        """Cancel every timer; the session accepts no further events."""
        if self._session is None or self._session.closed:
            return
        self._dispatch(EventType.TEARDOWN)
        if self._stale_timer is not None:
            self._stale_timer.cancel()
            self._stale_timer = None
        log.info("Stream %s torn down", self.feed_id)

    # -- event inputs -----------------------------------------------------

    def load_succeeded(self, generation: int) -> None:
        self._dispatch(EventType.LOAD_SUCCESS, generation)

    def load_failed(self, generation: int, exc: BaseException | None = None) -> None:
        if exc is not None and self._is_current(generation):
            log.warning("Stream %s load error: %s", self.feed_id, exc)
        self._dispatch(EventType.LOAD_ERROR, generation)

    def frame_received(self, generation: int) -> None:
        self._dispatch(EventType.FRAME, generation)

    def check_staleness(self) -> None:
        self._dispatch(EventType.STALE_TICK)

    def retry(self) -> None:
        """Manual override: reset the attempt count and reconnect now."""
        if self._session is None:
            self.start()
            return
        log.info("Manual retry for stream %s", self.feed_id)
        self._dispatch(EventType.RETRY)

    # -- read-only view ---------------------------------------------------

    @property
    def url(self) -> str | None:
        return self._session.url if self._session else None

    @property
    def state(self) -> ConnectionState | None:
        return self._session.state if self._session else None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.LIVE

    @property
    def attempts(self) -> int:
        return self._session.attempts if self._session else 0

    @property
    def generation(self) -> int:
        return self._session.generation if self._session else 0

    @property
    def closed(self) -> bool:
        return self._session is not None and self._session.closed

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_timer is not None

    def status(self) -> StreamStatus:
        session = self._session
        return StreamStatus(
            feed_id=self.feed_id,
            url=session.url if session else "",
            state=session.state if session else ConnectionState.CONNECTING,
            connected=self.connected,
            attempts=self.attempts,
            max_attempts=self.config.max_attempts,
            generation=self.generation,
            last_activity=self._last_activity_at,
            last_failure=session.last_failure if session else None,
        )

    # -- internal ---------------------------------------------------------

    def _make_url(self, feed_id: str, generation: int) -> str:
        return build_stream_url(self.base_url, feed_id, cache_token(generation))

    def _is_current(self, generation: int) -> bool:
        return (
            self._session is not None
            and not self._session.closed
            and self._session.generation == generation
        )

    def _dispatch(self, event: EventType, generation: int | None = None) -> None:
        if self._session is None:
            return
        outcome = apply_event(
            self._session,
            event,
            config=self.config,
            now=self._clock(),
            url_factory=self._make_url,
            generation=generation,
        )
        self._carry_out(event, outcome)

    def _carry_out(self, event: EventType, outcome: Outcome) -> None:
        session = self._session
        if session is None:
            return

        if outcome.cancel_reconnect:
            self._cancel_reconnect()
        if outcome.activity:
            self._last_activity_at = datetime.now()

        if session.closed:
            return

        if outcome.failure == FailureKind.STALENESS:
            log.warning(
                "Stream %s appears frozen (no activity for %.0fs)",
                self.feed_id,
                self.config.stale_timeout,
            )
        if outcome.reconnect_in is not None:
            log.warning(
                "Reconnecting %s in %.1fs (attempt %d/%d, %s)",
                self.feed_id,
                outcome.reconnect_in,
                session.attempts + 1,
                self.config.max_attempts,
                outcome.failure.value if outcome.failure else "unknown",
            )
            self._cancel_reconnect()
            self._reconnect_timer = self._scheduler.call_later(
                outcome.reconnect_in, self._on_reconnect_due
            )
        elif event == EventType.LOAD_SUCCESS and outcome.changed:
            log.info("Stream %s live", self.feed_id)

        # Callbacks may tear the session down; stop emitting once they do.
        if outcome.changed:
            self._emit("on_change", self.on_change, self.status())
        if outcome.failure is not None and not session.closed:
            self._emit("on_error", self.on_error, self.status(), outcome.failure)
        if outcome.exhausted and not session.closed:
            log.error(
                "Stream %s unavailable after %d attempts", self.feed_id, session.attempts
            )
            self._emit("on_failure", self.on_failure, self.status())
        if outcome.connect and not session.closed:
            log.info("Connecting stream %s → %s", self.feed_id, session.url)
            self._emit("on_connect", self.on_connect, session.generation, session.url)

    def _on_reconnect_due(self) -> None:
        self._reconnect_timer = None
        self._dispatch(EventType.RECONNECT_DUE)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _arm_stale_timer(self) -> None:
        self._stale_timer = self._scheduler.call_later(
            self.config.stale_check_interval, self._on_stale_tick
        )

    def _on_stale_tick(self) -> None:
        self._stale_timer = None
        if self.closed:
            return
        self.check_staleness()
        if not self.closed:
            self._arm_stale_timer()

    def _emit(self, name: str, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            log.exception("%s callback failed for stream %s", name, self.feed_id)
