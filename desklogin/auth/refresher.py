"""Background access token renewal.

A RefreshScheduler keeps one access token fresh: it sleeps until the
token enters the renewal window (5 minutes before expiry by default),
redeems the refresh token, publishes the new access token and expiry
together, and starts over. Failed renewals are retried every 30 seconds
until a renewal succeeds or the cycle is cancelled.

Each ``start`` creates a new cycle bound to a fresh cancellation event.
Publication and notifications happen under the scheduler lock after the
cycle re-checks that event, so a superseded or stopped cycle can never
publish or notify.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import logging
import threading
import time

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..exceptions import DeskLoginException
from ..sync_helpers import run_async


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import RefreshSettings
    from .engine import ProtocolEngine


logger = logging.getLogger("desklogin.auth")

# Long sleeps are split so the remaining validity is re-evaluated at least daily.
_MAX_WAIT_SECONDS = 86400.0


@dataclass(frozen=True)
class TokenSnapshot:
    """The access token and expiry published together.

    Attributes
    ----------
    access_token : str
        The current access token (empty before the first start).
    expires_at : float or None
        Unix timestamp when ``access_token`` expires.
    """

    access_token: str = ""
    expires_at: float | None = None


def _wait_on_event(event: threading.Event, seconds: float) -> bool:
    return event.wait(seconds)


def _describe_failure(exc: BaseException) -> str:
    if isinstance(exc, DeskLoginException):
        return exc.message
    return str(exc) or exc.__class__.__name__


class RefreshScheduler:
    """Renews an access token shortly before it expires.

    Parameters
    ----------
    engine : ProtocolEngine
        Engine used for the refresh grant.
    window_seconds : float
        Renew once less than this much validity remains (default 300).
    retry_seconds : float
        Delay between failed renewal attempts (default 30).
    request_timeout : float
        Maximum seconds to wait for one renewal request.
    clock : callable, optional
        Returns the current Unix time. Injectable for tests.
    waiter : callable, optional
        ``waiter(event, seconds) -> bool`` sleeps up to ``seconds`` and
        returns True if ``event`` was set. Injectable for tests.
    on_refresh_success : callable, optional
        Called with the new :class:`TokenSnapshot` after each renewal.
    on_refresh_failure : callable, optional
        Called with a human-readable reason after each failed attempt.
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        *,
        window_seconds: float = 300.0,
        retry_seconds: float = 30.0,
        request_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        waiter: Callable[[threading.Event, float], bool] = _wait_on_event,
        on_refresh_success: Callable[[TokenSnapshot], None] | None = None,
        on_refresh_failure: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize an idle scheduler."""
        self._engine = engine
        self.window_seconds = window_seconds
        self.retry_seconds = retry_seconds
        self.request_timeout = request_timeout
        self._clock = clock
        self._waiter = waiter

        self._lock = threading.RLock()
        self._renew_lock = threading.Lock()
        self._snapshot = TokenSnapshot()
        self._cancel: threading.Event | None = None
        self._worker: threading.Thread | None = None

        self._success_listeners: list[Callable[[TokenSnapshot], None]] = []
        self._failure_listeners: list[Callable[[str], None]] = []
        if on_refresh_success is not None:
            self._success_listeners.append(on_refresh_success)
        if on_refresh_failure is not None:
            self._failure_listeners.append(on_refresh_failure)

    @classmethod
    def from_settings(
        cls, engine: ProtocolEngine, settings: RefreshSettings, **kwargs: object
    ) -> RefreshScheduler:
        """Build a scheduler using the ``[refresh]`` settings section."""
        return cls(
            engine,
            window_seconds=settings.window_seconds,
            retry_seconds=settings.retry_seconds,
            request_timeout=settings.request_timeout,
            **kwargs,  # type: ignore[arg-type]
        )

    # -- Published state ----------------------------------------------------

    @property
    def snapshot(self) -> TokenSnapshot:
        """The latest published access token and expiry."""
        return self._snapshot

    @property
    def access_token(self) -> str:
        """The latest published access token."""
        return self._snapshot.access_token

    @property
    def access_token_expiration(self) -> float | None:
        """Expiry of :attr:`access_token` as a Unix timestamp."""
        return self._snapshot.expires_at

    @property
    def is_running(self) -> bool:
        """Whether a renewal cycle is active."""
        with self._lock:
            cancel = self._cancel
            worker = self._worker
        return cancel is not None and not cancel.is_set() and worker is not None and worker.is_alive()

    def add_success_listener(self, callback: Callable[[TokenSnapshot], None]) -> None:
        """Register another renewal-success callback."""
        with self._lock:
            self._success_listeners.append(callback)

    def add_failure_listener(self, callback: Callable[[str], None]) -> None:
        """Register another renewal-failure callback."""
        with self._lock:
            self._failure_listeners.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    def start(self, refresh_token: str | None, access_token: str, expires_at: float | None) -> None:
        """Cancel any running cycle and start renewing the given tokens.

        Parameters
        ----------
        refresh_token : str or None
            Refresh token to renew with. Empty means nothing to renew: the
            previous cycle is stopped and no new cycle starts.
        access_token : str
            The current access token, published immediately.
        expires_at : float or None
            Expiry of ``access_token``. None publishes the token without
            scheduling any renewal.
        """
        with self._lock:
            self._cancel_current()
            previous = self._worker
        # Joined outside the lock: the old worker may be waiting for it to
        # discard an in-flight result. A callback restarting its own
        # scheduler runs on that worker and skips the join.
        if (
            previous is not None
            and previous.is_alive()
            and previous is not threading.current_thread()
        ):
            previous.join(self.request_timeout)
            if previous.is_alive():
                logger.warning("Previous renewal cycle did not stop within %.0fs", self.request_timeout)

        with self._lock:
            self._cancel_current()
            if not refresh_token:
                return

            self._snapshot = TokenSnapshot(access_token, expires_at)
            if expires_at is None:
                logger.info("Access token has no expiry; no renewal scheduled")
                return

            cancel = threading.Event()
            worker = threading.Thread(
                target=self._run_cycle,
                args=(cancel, refresh_token, expires_at),
                name="desklogin-refresher",
                daemon=True,
            )
            self._cancel = cancel
            self._worker = worker
            worker.start()
        logger.debug("Token renewal cycle started; token expires at %.0f", expires_at)

    def stop(self) -> None:
        """Cancel the active cycle. Idempotent."""
        with self._lock:
            self._cancel_current()

    def join(self, timeout: float | None = None) -> None:
        """Wait for the most recent cycle's worker thread to exit."""
        with self._lock:
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def _cancel_current(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
            self._cancel = None
            logger.debug("Token renewal cycle cancelled")

    # -- Cycle --------------------------------------------------------------

    def _run_cycle(self, cancel: threading.Event, refresh_token: str, expires_at: float) -> None:
        """Wait, renew, repeat until cancelled."""
        renewed = False
        while not cancel.is_set():
            remaining = expires_at - self._clock()
            if remaining > self.window_seconds:
                delay = min(remaining - self.window_seconds, _MAX_WAIT_SECONDS)
                if self._waiter(cancel, delay):
                    return
                renewed = False
                continue

            if renewed:
                # A fresh token that is already inside the window is not
                # renewed again immediately.
                if self._waiter(cancel, self.retry_seconds):
                    return
                renewed = False
                continue

            result = self._attempt_renewal(cancel, refresh_token)
            if result is None:
                if self._waiter(cancel, self.retry_seconds):
                    return
                continue

            new_refresh_token, new_expires_at = result
            if new_refresh_token is None:
                return
            if new_expires_at is None:
                logger.info("Renewed access token has no expiry; renewal cycle ends")
                return
            refresh_token, expires_at = new_refresh_token, new_expires_at
            renewed = True

    def _attempt_renewal(
        self, cancel: threading.Event, refresh_token: str
    ) -> tuple[str | None, float | None] | None:
        """Run one renewal.

        Returns
        -------
        tuple or None
            ``(refresh_token, expires_at)`` to continue with after success,
            ``(None, None)`` if the cycle was cancelled, or None on failure.
        """
        with self._renew_lock:
            if cancel.is_set():
                return None, None
            try:
                tokens = run_async(
                    self._engine.refresh_token(refresh_token),
                    timeout=self.request_timeout,
                )
            except Exception as exc:
                reason = _describe_failure(exc)
                logger.warning("Access token renewal failed: %s", reason)
                with self._lock:
                    if cancel.is_set():
                        return None, None
                    self._emit(self._failure_listeners, reason)
                return None

        snapshot = TokenSnapshot(tokens.access_token, tokens.expires_at)
        # Keep the previous refresh token when the provider did not rotate it.
        next_refresh_token = tokens.refresh_token or refresh_token
        with self._lock:
            if cancel.is_set():
                logger.debug("Discarding renewal result of a cancelled cycle")
                return None, None
            self._snapshot = snapshot
            self._emit(self._success_listeners, snapshot)
        logger.info("Access token renewed; expires at %s", snapshot.expires_at)
        return next_refresh_token, snapshot.expires_at

    def _emit(self, listeners: list[Callable[..., None]], payload: object) -> None:
        for callback in list(listeners):
            try:
                callback(payload)
            except Exception:
                logger.exception("Token refresh callback raised")
