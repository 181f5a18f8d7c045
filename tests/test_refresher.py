"""Unit tests for the background token refresh scheduler.

Time is simulated: the injected clock returns a fake "now" and the
injected waiter advances it instead of sleeping. After a configurable
number of waits the waiter parks on the cycle's cancellation event, which
freezes the cycle so the test can inspect it.
"""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import threading
import time

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from desklogin.auth.engine import ProtocolEngine
from desklogin.auth.refresher import RefreshScheduler, TokenSnapshot
from desklogin.config import RefreshSettings
from desklogin.exceptions import ProtocolError, TransportError
from desklogin.types import TokenSet
from tests.constants import EVENT_TIMEOUT, QUIET_PERIOD


START = 1_000_000.0


class FakeTime:
    """Simulated clock and waiter."""

    def __init__(self, park_after: int = 0) -> None:
        self.now = START
        self.park_after = park_after
        self.waits: list[float] = []
        self.parked = threading.Event()
        self._lock = threading.Lock()

    def clock(self) -> float:
        return self.now

    def waiter(self, event: threading.Event, seconds: float) -> bool:
        with self._lock:
            self.waits.append(seconds)
            count = len(self.waits)
        if count > self.park_after:
            self.parked.set()
            event.wait(EVENT_TIMEOUT * 2)
            return True
        self.now += seconds
        return event.is_set()


def wait_until(predicate, timeout: float = EVENT_TIMEOUT) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class Events:
    """Records success and failure notifications."""

    def __init__(self) -> None:
        self.successes: list[TokenSnapshot] = []
        self.failures: list[str] = []

    def on_success(self, snapshot: TokenSnapshot) -> None:
        self.successes.append(snapshot)

    def on_failure(self, reason: str) -> None:
        self.failures.append(reason)


def make_refresh_engine(fake: FakeTime, access_token: str = "AT2", **kwargs: Any) -> MagicMock:
    """Engine whose refresh grant issues tokens relative to fake time."""
    engine = MagicMock(spec=ProtocolEngine)
    kwargs.setdefault("refresh_token", "RT2")
    kwargs.setdefault("expires_in", 3600)

    def issue(_refresh_token: str) -> TokenSet:
        return TokenSet(access_token=access_token, issued_at=fake.now, **kwargs)

    engine.refresh_token = AsyncMock(side_effect=issue)
    return engine


@pytest.fixture
def events() -> Events:
    """Notification recorder."""
    return Events()


def make_scheduler(engine, fake: FakeTime, events: Events) -> RefreshScheduler:
    return RefreshScheduler(
        engine,
        clock=fake.clock,
        waiter=fake.waiter,
        on_refresh_success=events.on_success,
        on_refresh_failure=events.on_failure,
    )


class TestScheduling:
    """When renewals happen."""

    def test_no_renewal_before_window(self, events) -> None:
        """Expiry 10 minutes out: sleep 5 minutes, no renewal before that."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 600)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert fake.waits == [300]
            engine.refresh_token.assert_not_called()
            assert scheduler.is_running
        finally:
            scheduler.stop()
            scheduler.join(EVENT_TIMEOUT)

    def test_renews_when_window_opens(self, events) -> None:
        """After sleeping to 5 minutes before expiry, renewal is immediate."""
        fake = FakeTime(park_after=1)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 600)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            engine.refresh_token.assert_awaited_once_with("RT1")
            # Renewed at T+300, next sleep targets 5 minutes before the new expiry
            assert fake.waits == [300, 3300]
            assert events.successes == [TokenSnapshot("AT2", START + 300 + 3600)]
        finally:
            scheduler.stop()
            scheduler.join(EVENT_TIMEOUT)

    def test_expiry_inside_window_renews_immediately(self, events) -> None:
        """Expiry already within 5 minutes: renew without waiting first."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 120)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            engine.refresh_token.assert_awaited_once_with("RT1")
            assert fake.waits == [3300]
        finally:
            scheduler.stop()
            scheduler.join(EVENT_TIMEOUT)

    def test_already_expired_renews_immediately(self, events) -> None:
        """An expired token is renewed at once."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START - 50)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert engine.refresh_token.await_count == 1
        finally:
            scheduler.stop()

    def test_long_waits_are_chunked(self, events) -> None:
        """A far-away expiry is re-evaluated at least daily."""
        fake = FakeTime(park_after=2)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 10 * 86400)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert fake.waits == [86400, 86400, 86400]
            engine.refresh_token.assert_not_called()
        finally:
            scheduler.stop()

    def test_fresh_token_inside_window_not_renewed_back_to_back(self, events) -> None:
        """A renewed token that is already near expiry waits the retry delay."""
        fake = FakeTime(park_after=1)
        engine = make_refresh_engine(fake, expires_in=120, refresh_token=None)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert fake.waits == [30, 30]
            assert engine.refresh_token.await_count == 2
        finally:
            scheduler.stop()


class TestRenewalResults:
    """What a renewal publishes."""

    def test_snapshot_published_together(self, events) -> None:
        """Access token and expiry change together."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert scheduler.snapshot == TokenSnapshot("AT2", START + 3600)
            assert scheduler.access_token == "AT2"
            assert scheduler.access_token_expiration == START + 3600
        finally:
            scheduler.stop()

    def test_keeps_previous_refresh_token(self, events) -> None:
        """A renewal without a new refresh token keeps using the old one."""
        fake = FakeTime(park_after=1)
        engine = make_refresh_engine(fake, expires_in=120, refresh_token=None)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            calls = [c.args[0] for c in engine.refresh_token.await_args_list]
            assert calls == ["RT1", "RT1"]
        finally:
            scheduler.stop()

    def test_rotated_refresh_token_is_used(self, events) -> None:
        """A renewal that rotates the refresh token uses the new one next."""
        fake = FakeTime(park_after=1)
        engine = make_refresh_engine(fake, expires_in=120, refresh_token="RT2")
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            calls = [c.args[0] for c in engine.refresh_token.await_args_list]
            assert calls == ["RT1", "RT2"]
        finally:
            scheduler.stop()

    def test_no_expiry_in_renewal_ends_cycle(self, events) -> None:
        """A renewed token without lifetime is published; the cycle ends."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake, expires_in=None)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        assert wait_until(lambda: not scheduler.is_running)
        assert events.successes == [TokenSnapshot("AT2", None)]
        assert fake.waits == []

    def test_success_listener_exception_is_contained(self, events) -> None:
        """A raising callback does not stop the cycle."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)
        scheduler.add_success_listener(MagicMock(side_effect=RuntimeError("host bug")))

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert scheduler.is_running
            assert len(events.successes) == 1
        finally:
            scheduler.stop()


class TestFailures:
    """Retry on failure until stopped or successful."""

    def test_retries_every_30_seconds(self, events) -> None:
        """Failures are reported and retried after 30 seconds indefinitely."""
        fake = FakeTime(park_after=3)
        engine = make_refresh_engine(fake)
        engine.refresh_token.side_effect = TransportError("offline")
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert fake.waits == [30, 30, 30, 30]
            assert engine.refresh_token.await_count == 4
            assert events.failures == ["offline"] * 4
            assert events.successes == []
            # The published token is untouched by failures
            assert scheduler.access_token == "AT1"
        finally:
            scheduler.stop()

    def test_protocol_error_message(self, events) -> None:
        """Protocol errors are reported as "<error> - <description>"."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        engine.refresh_token.side_effect = ProtocolError("invalid_grant", "refresh token expired")
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert events.failures == ["invalid_grant - refresh token expired"]
        finally:
            scheduler.stop()

    def test_unexpected_exception_is_reported(self, events) -> None:
        """Any exception becomes a failure notification, never a crash."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        engine.refresh_token.side_effect = ValueError("bad payload")
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert events.failures == ["bad payload"]
            assert scheduler.is_running
        finally:
            scheduler.stop()

    def test_recovers_after_failure(self, events) -> None:
        """A success after failures resumes normal scheduling."""
        fake = FakeTime(park_after=2)
        engine = make_refresh_engine(fake)
        outcomes: list[Any] = [TransportError("offline")]

        def flaky(_rt: str) -> TokenSet:
            if outcomes:
                raise outcomes.pop()
            return TokenSet(access_token="AT2", refresh_token="RT2", expires_in=3600, issued_at=fake.now)

        engine.refresh_token.side_effect = flaky
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            assert events.failures == ["offline"]
            # Back on schedule: renewed again 5 minutes before the new expiry
            assert [s.access_token for s in events.successes] == ["AT2", "AT2"]
            assert fake.waits == [30, 3300, 3300]
        finally:
            scheduler.stop()

    def test_stop_during_retry_wait(self, events) -> None:
        """Stop while waiting to retry: no further attempt, no further event."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        engine.refresh_token.side_effect = TransportError("offline")
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 60)
        assert fake.parked.wait(EVENT_TIMEOUT)
        scheduler.stop()
        scheduler.join(EVENT_TIMEOUT)
        time.sleep(QUIET_PERIOD)

        assert engine.refresh_token.await_count == 1
        assert events.failures == ["offline"]
        assert not scheduler.is_running


class TestLifecycle:
    """start/stop semantics."""

    def test_empty_refresh_token_is_noop(self, events) -> None:
        """Nothing to renew: no cycle, nothing published."""
        fake = FakeTime()
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("", "AT1", START + 60)
        scheduler.start(None, "AT1", START + 60)

        assert not scheduler.is_running
        assert scheduler.snapshot == TokenSnapshot()
        time.sleep(QUIET_PERIOD)
        engine.refresh_token.assert_not_called()

    def test_empty_refresh_token_stops_previous_cycle(self, events) -> None:
        """Starting with nothing to renew still cancels the old cycle."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 600)
        assert fake.parked.wait(EVENT_TIMEOUT)
        scheduler.start("", "", None)

        assert not scheduler.is_running
        assert scheduler.access_token == "AT1"

    def test_no_expiry_publishes_without_cycle(self, events) -> None:
        """Tokens without expiry are published but never renewed."""
        fake = FakeTime()
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", None)

        assert scheduler.snapshot == TokenSnapshot("AT1", None)
        assert not scheduler.is_running

    def test_start_publishes_immediately(self, events) -> None:
        """The given token is readable right after start."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT1", "AT1", START + 600)
        try:
            assert scheduler.access_token == "AT1"
            assert scheduler.access_token_expiration == START + 600
        finally:
            scheduler.stop()

    def test_stop_is_idempotent(self, events) -> None:
        """stop() with nothing running, or twice, is harmless."""
        fake = FakeTime(park_after=0)
        scheduler = make_scheduler(make_refresh_engine(fake), fake, events)

        scheduler.stop()
        scheduler.start("RT1", "AT1", START + 600)
        assert fake.parked.wait(EVENT_TIMEOUT)
        scheduler.stop()
        scheduler.stop()
        scheduler.join(EVENT_TIMEOUT)
        assert not scheduler.is_running

    def test_second_start_supersedes_waiting_cycle(self, events) -> None:
        """Only the second cycle ever notifies."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT-old", "AT-old", START + 600)
        assert fake.parked.wait(EVENT_TIMEOUT)

        fake.waits.clear()
        fake.parked.clear()
        scheduler.start("RT-new", "AT-new", START + 60)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            calls = [c.args[0] for c in engine.refresh_token.await_args_list]
            assert calls == ["RT-new"]
            assert [s.access_token for s in events.successes] == ["AT2"]
        finally:
            scheduler.stop()

    def test_superseded_inflight_renewal_is_discarded(self, events) -> None:
        """A renewal in flight when start() is called never publishes."""
        fake = FakeTime(park_after=0)
        engine = MagicMock(spec=ProtocolEngine)
        gate = threading.Event()
        entered = threading.Event()

        async def refresh(refresh_token: str) -> TokenSet:
            if refresh_token == "RT-old":
                entered.set()
                while not gate.is_set():
                    await asyncio.sleep(0.01)
                return TokenSet(access_token="AT-stale", expires_in=3600, issued_at=fake.now)
            return TokenSet(access_token="AT-fresh", expires_in=3600, issued_at=fake.now)

        engine.refresh_token = AsyncMock(side_effect=refresh)
        scheduler = make_scheduler(engine, fake, events)

        scheduler.start("RT-old", "AT-old", START + 60)
        assert entered.wait(EVENT_TIMEOUT)

        threading.Timer(0.2, gate.set).start()
        scheduler.start("RT-new", "AT-new", START + 600)
        try:
            assert fake.parked.wait(EVENT_TIMEOUT)
            time.sleep(QUIET_PERIOD)
            assert scheduler.access_token == "AT-new"
            assert all(s.access_token != "AT-stale" for s in events.successes)
            assert events.failures == []
        finally:
            scheduler.stop()

    def test_callback_can_restart_scheduler(self, events) -> None:
        """A notification handler may call start() on its own scheduler."""
        fake = FakeTime(park_after=0)
        engine = make_refresh_engine(fake)
        scheduler = make_scheduler(engine, fake, events)
        restarted = threading.Event()

        def restart(snapshot: TokenSnapshot) -> None:
            if not restarted.is_set():
                restarted.set()
                scheduler.start("RT-host", snapshot.access_token, START + 7200)

        scheduler.add_success_listener(restart)
        scheduler.start("RT1", "AT1", START + 60)
        try:
            assert restarted.wait(EVENT_TIMEOUT)
            assert wait_until(lambda: fake.waits[-1:] == [7200 - 300])
        finally:
            scheduler.stop()

    def test_from_settings(self) -> None:
        """Settings provide window, retry delay and timeout."""
        settings = RefreshSettings(window_seconds=120, retry_seconds=5, request_timeout=7)
        scheduler = RefreshScheduler.from_settings(MagicMock(spec=ProtocolEngine), settings)
        assert scheduler.window_seconds == 120
        assert scheduler.retry_seconds == 5
        assert scheduler.request_timeout == 7
