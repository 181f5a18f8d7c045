"""Pytest configuration and fixtures."""

from __future__ import annotations

import http.client
import os
import threading

from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from desklogin.auth.callback_server import RedirectListener
from desklogin.auth.correlation import CorrelationStore
from desklogin.auth.engine import ExchangeResult, PreparedLogin, ProtocolEngine
from desklogin.config import clear_settings
from desklogin.types import PendingLogin, TokenSet
from tests.constants import CLIENT_ID, EVENT_TIMEOUT, HTTP_TIMEOUT, ISSUER


if TYPE_CHECKING:
    from collections.abc import Generator

    from desklogin.types import CallbackOutcome


# =============================================================================
# Configuration isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch) -> Generator[None, None, None]:
    """Keep settings from reading the developer's files or environment."""
    for key in list(os.environ):
        if key.startswith("DESKLOGIN"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


# =============================================================================
# Engine doubles
# =============================================================================


def make_tokens(access_token: str = "AT1", expires_in: int | None = 3600, **kwargs: Any) -> TokenSet:
    """Build a token set as an engine would return it."""
    kwargs.setdefault("refresh_token", "RT1")
    return TokenSet(access_token=access_token, expires_in=expires_in, **kwargs)


def make_engine(
    issuer: str = ISSUER,
    client_id: str = CLIENT_ID,
    tokens: TokenSet | None = None,
    claims: dict[str, Any] | None = None,
) -> MagicMock:
    """Create a protocol engine double with async capabilities.

    ``prepare_login`` returns logins ``login-1``, ``login-2``, ...
    ``process_response`` succeeds with ``tokens`` and ``claims``.
    """
    engine = MagicMock(spec=ProtocolEngine)
    engine.issuer = issuer
    engine.client_id = client_id

    counter = iter(range(1, 1_000_000))

    async def prepare_login(extra_params: dict[str, str] | None = None) -> PreparedLogin:
        n = next(counter)
        query = "&".join(f"{k}={v}" for k, v in (extra_params or {}).items())
        return PreparedLogin(
            correlation_id=f"login-{n}",
            start_url=f"{issuer}/authorize?state=login-{n}&{query}",
            context={"verifier": f"v{n}"},
        )

    engine.prepare_login = AsyncMock(side_effect=prepare_login)
    engine.process_response = AsyncMock(
        return_value=ExchangeResult(
            tokens=tokens if tokens is not None else make_tokens(),
            claims=claims if claims is not None else {"sub": "user-1", "name": "Test User"},
        )
    )
    engine.refresh_token = AsyncMock(return_value=make_tokens("AT2", refresh_token="RT2"))
    engine.close = AsyncMock()
    return engine


def make_pending(correlation_id: str = "abc", created_at: float | None = None) -> PendingLogin:
    """Build a pending login with an opaque engine context."""
    if created_at is None:
        return PendingLogin(correlation_id=correlation_id, start_url="", context={"id": correlation_id})
    return PendingLogin(
        correlation_id=correlation_id,
        start_url="",
        context={"id": correlation_id},
        created_at=created_at,
    )


@pytest.fixture
def engine() -> MagicMock:
    """A successful protocol engine double."""
    return make_engine()


@pytest.fixture
def store() -> CorrelationStore:
    """An empty correlation store."""
    return CorrelationStore()


# =============================================================================
# Listener helpers
# =============================================================================


class OutcomeRecorder:
    """Collects completion notifications delivered on listener threads."""

    def __init__(self) -> None:
        self.outcomes: list[CallbackOutcome] = []
        self._cond = threading.Condition()

    def __call__(self, outcome: CallbackOutcome) -> None:
        with self._cond:
            self.outcomes.append(outcome)
            self._cond.notify_all()

    def wait_for(self, count: int = 1, timeout: float = EVENT_TIMEOUT) -> list[CallbackOutcome]:
        """Block until at least ``count`` outcomes were recorded."""
        with self._cond:
            self._cond.wait_for(lambda: len(self.outcomes) >= count, timeout=timeout)
            return list(self.outcomes)


@pytest.fixture
def recorder() -> OutcomeRecorder:
    """Completion notification recorder."""
    return OutcomeRecorder()


@pytest.fixture
def listener(engine, store, recorder) -> Generator[RedirectListener, None, None]:
    """A listener on an ephemeral loopback port."""
    server = RedirectListener(engine, store, port=0, on_complete=recorder)
    yield server
    server.close()


def send_request(
    listener: RedirectListener,
    method: str = "GET",
    query: str = "",
    body: bytes | None = None,
    headers: dict[str, str] | None = None,
    path: str | None = None,
) -> tuple[int, dict[str, str], str]:
    """Send one HTTP request to the listener.

    Returns
    -------
    tuple
        ``(status, headers, body)`` of the response.
    """
    target = path if path is not None else listener.callback_path
    if query:
        target = f"{target}?{query}"
    conn = http.client.HTTPConnection("127.0.0.1", listener.port, timeout=HTTP_TIMEOUT)
    try:
        conn.request(method, target, body=body, headers=headers or {})
        resp = conn.getresponse()
        payload = resp.read().decode("utf-8", errors="replace")
        return resp.status, {k.lower(): v for k, v in resp.getheaders()}, payload
    finally:
        conn.close()
