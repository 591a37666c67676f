"""Reconnect state machine for a single live stream.

One function, `apply_event`, consumes every input a stream can see (load
results, frames, staleness ticks, reconnect timers, manual retries and
teardown) and mutates the session in place. It never touches timers or the
network; the returned `Outcome` tells the owner what to schedule, cancel or
start next. That keeps every transition testable with a plain clock value.

States:
    connecting ──load_success──▶ live
    connecting/live ──load_error──▶ reconnecting (or failed when out of attempts)
    live ──stale_tick (idle > timeout)──▶ reconnecting (or failed)
    reconnecting ──reconnect_due──▶ connecting
    any ──retry──▶ connecting (attempts reset)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from feed_watchdog.config import WatchdogConfig
from feed_watchdog.models import ConnectionState, EventType, FailureKind

# Builds a fresh cache-busted URL for (feed_id, generation).
UrlFactory = Callable[[str, int], str]


@dataclass
class StreamSession:
    feed_id: str
    url: str
    state: ConnectionState = ConnectionState.CONNECTING
    attempts: int = 0
    generation: int = 1
    last_activity: float | None = None    # clock seconds of the last confirmed load/frame
    last_failure: FailureKind | None = None
    closed: bool = False


@dataclass
class Outcome:
    """Side effects the session owner must carry out after a transition."""
    changed: bool = False
    connect: bool = False                  # start loading session.url now
    reconnect_in: float | None = None      # arm the reconnect timer (seconds)
    cancel_reconnect: bool = False
    activity: bool = False                 # a load or frame was confirmed
    failure: FailureKind | None = None
    exhausted: bool = False


def open_session(feed_id: str, url_factory: UrlFactory) -> StreamSession:
    """Create a session in `connecting` with its first cache-busted URL."""
    return StreamSession(feed_id=feed_id, url=url_factory(feed_id, 1))


def _begin_connect(session: StreamSession, url_factory: UrlFactory, outcome: Outcome) -> None:
    session.generation += 1
    session.url = url_factory(session.feed_id, session.generation)
    session.state = ConnectionState.CONNECTING
    outcome.changed = True
    outcome.connect = True


def _fail(
    session: StreamSession,
    kind: FailureKind,
    config: WatchdogConfig,
    outcome: Outcome,
) -> None:
    outcome.changed = True
    outcome.failure = kind
    if session.attempts < config.max_attempts:
        session.state = ConnectionState.RECONNECTING
        session.last_failure = kind
        outcome.reconnect_in = config.backoff_delay(session.attempts)
    else:
        session.state = ConnectionState.FAILED
        session.last_failure = FailureKind.EXHAUSTED_RETRIES
        outcome.exhausted = True
        outcome.cancel_reconnect = True


def apply_event(
    session: StreamSession,
    event: EventType,
    *,
    config: WatchdogConfig,
    now: float,
    url_factory: UrlFactory,
    generation: int | None = None,
) -> Outcome:
    """Apply *event* to *session* and return the effects to carry out.

    `generation` identifies which connect attempt produced a load result;
    results from a superseded attempt are ignored.
    """
    outcome = Outcome()
    if session.closed:
        return outcome

    if event == EventType.TEARDOWN:
        session.closed = True
        outcome.changed = True
        outcome.cancel_reconnect = True
        return outcome

    if event == EventType.RETRY:
        session.attempts = 0
        session.last_failure = None
        outcome.cancel_reconnect = True
        _begin_connect(session, url_factory, outcome)
        return outcome

    if event in (EventType.LOAD_SUCCESS, EventType.LOAD_ERROR, EventType.FRAME):
        if generation is not None and generation != session.generation:
            return outcome

    state = session.state

    if event == EventType.LOAD_SUCCESS:
        if state in (ConnectionState.CONNECTING, ConnectionState.LIVE):
            session.state = ConnectionState.LIVE
            session.attempts = 0
            session.last_failure = None
            session.last_activity = now
            outcome.changed = state != ConnectionState.LIVE
            outcome.activity = True
            outcome.cancel_reconnect = True

    elif event == EventType.FRAME:
        if state == ConnectionState.LIVE:
            session.last_activity = now
            outcome.activity = True

    elif event == EventType.LOAD_ERROR:
        if state in (ConnectionState.CONNECTING, ConnectionState.LIVE):
            _fail(session, FailureKind.LOAD_ERROR, config, outcome)

    elif event == EventType.STALE_TICK:
        if state == ConnectionState.LIVE:
            idle = now - (session.last_activity if session.last_activity is not None else now)
            if idle > config.stale_timeout:
                _fail(session, FailureKind.STALENESS, config, outcome)

    elif event == EventType.RECONNECT_DUE:
        if state == ConnectionState.RECONNECTING:
            session.attempts += 1
            _begin_connect(session, url_factory, outcome)

    return outcome
