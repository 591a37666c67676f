"""Tests for the stream reconnect state machine."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from feed_watchdog.config import WatchdogConfig
from feed_watchdog.models import ConnectionState, EventType, FailureKind
from feed_watchdog.state_machine import StreamSession, apply_event, open_session


def _url_factory(feed_id: str, generation: int) -> str:
    return f"http://cam/api/video/stream/{feed_id}?t={generation}"


def _make_session(**overrides) -> StreamSession:
    session = open_session("feed_1", _url_factory)
    for key, value in overrides.items():
        setattr(session, key, value)
    return session


def _apply(session, event, now=0.0, generation=None, config=None):
    return apply_event(
        session,
        event,
        config=config or WatchdogConfig(),
        now=now,
        url_factory=_url_factory,
        generation=generation,
    )


class TestWatchdogConfig:
    def test_defaults(self):
        config = WatchdogConfig()
        assert config.max_attempts == 5
        assert config.base_delay_ms == 2000
        assert config.stale_timeout == 10.0

    def test_camel_case_options(self):
        config = WatchdogConfig.model_validate(
            {"maxAttempts": 3, "baseDelayMs": 500, "staleTimeoutMs": 4000}
        )
        assert config.max_attempts == 3
        assert config.backoff_delay(0) == 0.5
        assert config.stale_timeout == 4.0

    def test_backoff_doubles(self):
        config = WatchdogConfig()
        assert [config.backoff_delay(a) for a in range(5)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_rejects_non_positive_delay(self):
        with pytest.raises(ValidationError):
            WatchdogConfig(base_delay_ms=0)


class TestOpenSession:
    def test_starts_connecting_with_first_url(self):
        session = open_session("feed_2", _url_factory)
        assert session.state == ConnectionState.CONNECTING
        assert session.generation == 1
        assert session.attempts == 0
        assert session.url.endswith("feed_2?t=1")


class TestLoadResults:
    def test_success_goes_live_and_resets_attempts(self):
        session = _make_session(attempts=3)
        outcome = _apply(session, EventType.LOAD_SUCCESS, now=7.0, generation=1)
        assert session.state == ConnectionState.LIVE
        assert session.attempts == 0
        assert session.last_activity == 7.0
        assert outcome.changed and outcome.activity and outcome.cancel_reconnect

    def test_error_schedules_backoff(self):
        session = _make_session(attempts=2)
        outcome = _apply(session, EventType.LOAD_ERROR, generation=1)
        assert session.state == ConnectionState.RECONNECTING
        assert outcome.reconnect_in == 8.0
        assert outcome.failure == FailureKind.LOAD_ERROR
        assert not outcome.exhausted

    def test_error_after_max_attempts_fails(self):
        session = _make_session(attempts=5)
        outcome = _apply(session, EventType.LOAD_ERROR, generation=1)
        assert session.state == ConnectionState.FAILED
        assert session.last_failure == FailureKind.EXHAUSTED_RETRIES
        assert outcome.exhausted
        assert outcome.reconnect_in is None

    def test_superseded_success_ignored(self):
        session = _make_session(generation=3)
        outcome = _apply(session, EventType.LOAD_SUCCESS, generation=2)
        assert session.state == ConnectionState.CONNECTING
        assert not outcome.changed

    def test_superseded_error_ignored(self):
        session = _make_session(generation=3)
        _apply(session, EventType.LOAD_ERROR, generation=1)
        assert session.state == ConnectionState.CONNECTING

    def test_error_while_reconnecting_ignored(self):
        session = _make_session(state=ConnectionState.RECONNECTING)
        outcome = _apply(session, EventType.LOAD_ERROR, generation=1)
        assert session.state == ConnectionState.RECONNECTING
        assert outcome.reconnect_in is None

    def test_frame_refreshes_activity_only_when_live(self):
        session = _make_session(state=ConnectionState.LIVE, last_activity=1.0)
        _apply(session, EventType.FRAME, now=5.0, generation=1)
        assert session.last_activity == 5.0

        connecting = _make_session()
        outcome = _apply(connecting, EventType.FRAME, now=5.0, generation=1)
        assert connecting.last_activity is None
        assert not outcome.activity


class TestReconnectCycle:
    def test_reconnect_due_increments_attempt_and_busts_cache(self):
        session = _make_session()
        _apply(session, EventType.LOAD_ERROR, generation=1)
        old_url = session.url
        outcome = _apply(session, EventType.RECONNECT_DUE)
        assert session.state == ConnectionState.CONNECTING
        assert session.attempts == 1
        assert session.generation == 2
        assert session.url != old_url
        assert outcome.connect

    def test_reconnect_due_outside_reconnecting_is_noop(self):
        session = _make_session(state=ConnectionState.LIVE)
        outcome = _apply(session, EventType.RECONNECT_DUE)
        assert session.state == ConnectionState.LIVE
        assert not outcome.connect

    def test_six_consecutive_errors_fail(self):
        session = _make_session()
        delays = []
        for _ in range(5):
            outcome = _apply(session, EventType.LOAD_ERROR, generation=session.generation)
            assert session.state == ConnectionState.RECONNECTING
            delays.append(outcome.reconnect_in)
            _apply(session, EventType.RECONNECT_DUE)
        outcome = _apply(session, EventType.LOAD_ERROR, generation=session.generation)
        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]
        assert session.state == ConnectionState.FAILED
        assert outcome.exhausted

    def test_zero_max_attempts_fails_on_first_error(self):
        session = _make_session()
        _apply(session, EventType.LOAD_ERROR, generation=1, config=WatchdogConfig(max_attempts=0))
        assert session.state == ConnectionState.FAILED


class TestStaleness:
    def test_idle_live_stream_reconnects(self):
        session = _make_session(state=ConnectionState.LIVE, last_activity=0.0)
        outcome = _apply(session, EventType.STALE_TICK, now=10.5)
        assert session.state == ConnectionState.RECONNECTING
        assert outcome.failure == FailureKind.STALENESS
        assert outcome.reconnect_in == 2.0

    def test_at_threshold_is_not_stale(self):
        session = _make_session(state=ConnectionState.LIVE, last_activity=0.0)
        _apply(session, EventType.STALE_TICK, now=10.0)
        assert session.state == ConnectionState.LIVE

    def test_tick_outside_live_is_noop(self):
        for state in (ConnectionState.CONNECTING, ConnectionState.RECONNECTING, ConnectionState.FAILED):
            session = _make_session(state=state, last_activity=0.0)
            outcome = _apply(session, EventType.STALE_TICK, now=100.0)
            assert session.state == state
            assert not outcome.changed


class TestRetryAndTeardown:
    @pytest.mark.parametrize("state", list(ConnectionState))
    def test_retry_from_any_state(self, state):
        session = _make_session(state=state, attempts=4)
        outcome = _apply(session, EventType.RETRY)
        assert session.state == ConnectionState.CONNECTING
        assert session.attempts == 0
        assert session.generation == 2
        assert outcome.connect and outcome.cancel_reconnect

    def test_teardown_blocks_further_events(self):
        session = _make_session()
        _apply(session, EventType.TEARDOWN)
        assert session.closed
        for event in EventType:
            outcome = _apply(session, event, now=100.0, generation=1)
            assert not outcome.changed
            assert not outcome.connect
        assert session.state == ConnectionState.CONNECTING
