"""Browser-delegated login orchestration.

Provides LoginOrchestrator, the façade a desktop host uses: it prepares
authorization requests through the protocol engine, records them in the
correlation store, opens the system browser, and turns redirect listener
outcomes into one LoginResult per login attempt.
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

from __future__ import annotations

import concurrent.futures
import logging
import threading

from typing import TYPE_CHECKING, Any

from ..config import get_settings
from ..exceptions import DisposedError, LoginTimeoutError
from ..sync_helpers import run_async
from ..types import LoginHints, LoginResult, PendingLogin
from .browser import open_system_browser
from .callback_server import RedirectListener
from .correlation import CorrelationStore
from .engine import OIDCEngine
from .known_clients import KnownClientRegistry
from .page_template import HtmlTemplate
from .refresher import RefreshScheduler


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import DeskLoginSettings
    from ..types import CallbackOutcome
    from .engine import ProtocolEngine


logger = logging.getLogger("desklogin.auth")


class LoginHandle:
    """Completion handle for one started login.

    Resolved exactly once: by the matching redirect callback, by expiry
    of the pending login, or by shutdown of the orchestrator.
    """

    def __init__(self, pending: PendingLogin) -> None:
        self.correlation_id = pending.correlation_id
        self.start_url = pending.start_url
        self._future: concurrent.futures.Future[LoginResult] = concurrent.futures.Future()

    def done(self) -> bool:
        """Whether the login has a result."""
        return self._future.done()

    def wait(self, timeout: float | None = None) -> LoginResult:
        """Block until the login completes.

        Parameters
        ----------
        timeout : float, optional
            Maximum seconds to wait (``None`` waits forever).

        Returns
        -------
        LoginResult
            The login's result (check ``is_error``).

        Raises
        ------
        LoginTimeoutError
            If no result arrived within ``timeout``. The login stays
            pending and can still be waited on again.
        """
        try:
            return self._future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            msg = f"No login callback received after {timeout}s"
            raise LoginTimeoutError(
                msg, timeout=timeout or 0.0, correlation_id=self.correlation_id
            ) from exc

    def add_done_callback(self, callback: Callable[[LoginResult], None]) -> None:
        """Call ``callback`` with the result once available."""
        self._future.add_done_callback(lambda future: callback(future.result()))

    def _resolve(self, result: LoginResult) -> bool:
        try:
            self._future.set_result(result)
        except concurrent.futures.InvalidStateError:
            return False
        return True


class LoginOrchestrator:
    """Starts browser logins and delivers their results.

    Parameters
    ----------
    settings : DeskLoginSettings, optional
        Configuration (defaults to :func:`~desklogin.config.get_settings`).
    engine : ProtocolEngine, optional
        Protocol engine; defaults to an :class:`OIDCEngine` built from the
        ``[provider]`` settings and bound to the listener's redirect URI.
    browser : callable, optional
        ``browser(url)`` opening the authorization URL; defaults to
        :func:`~desklogin.auth.browser.open_system_browser`.

    Raises
    ------
    ListenerBindError
        If the redirect listener cannot bind its port.
    """

    def __init__(
        self,
        settings: DeskLoginSettings | None = None,
        *,
        engine: ProtocolEngine | None = None,
        browser: Callable[[str], None] | None = None,
    ) -> None:
        """Bind the redirect listener and prepare the engine."""
        self.settings = settings if settings is not None else get_settings()
        listener_settings = self.settings.listener

        self._owns_engine = engine is None
        self._engine: ProtocolEngine = (
            engine
            if engine is not None
            else OIDCEngine.from_settings(self.settings, listener_settings.redirect_uri)
        )
        self._browser = browser if browser is not None else open_system_browser
        self._store = CorrelationStore()
        self._known_clients = KnownClientRegistry()

        if listener_settings.template_file:
            template = HtmlTemplate.from_file(
                listener_settings.template_file, app_name=listener_settings.app_name
            )
        else:
            template = HtmlTemplate(app_name=listener_settings.app_name)

        self._listener = RedirectListener(
            self._engine,
            self._store,
            callback_path=listener_settings.callback_path,
            port=listener_settings.port,
            bind_address=listener_settings.bind_address,
            redirect_host=listener_settings.redirect_host,
            allow_unsolicited=listener_settings.allow_unsolicited,
            known_clients=self._known_clients,
            html_template=template,
            on_complete=self._on_outcome,
            exchange_timeout=self.settings.refresh.request_timeout,
        )
        if self._owns_engine and isinstance(self._engine, OIDCEngine):
            # The actual port is only known once bound (port 0).
            self._engine.redirect_uri = self._listener.redirect_uri
        self._known_clients.register(self._engine)

        self._handles: dict[str, LoginHandle] = {}
        self._lock = threading.Lock()
        self._login_listeners: list[Callable[[LoginResult], None]] = []
        self._closed = False

        logger.info("Login orchestrator ready; redirect URI %s", self.redirect_uri)

    # -- Properties ---------------------------------------------------------

    @property
    def engine(self) -> ProtocolEngine:
        """The protocol engine."""
        return self._engine

    @property
    def redirect_uri(self) -> str:
        """The redirect URI served by the listener."""
        return self._listener.redirect_uri

    @property
    def html_template(self) -> HtmlTemplate:
        """The page template shown in the browser; mutable by the host."""
        return self._listener.html_template

    @property
    def known_clients(self) -> KnownClientRegistry:
        """Clients accepted for unsolicited responses."""
        return self._known_clients

    @property
    def allow_unsolicited(self) -> bool:
        """Accept responses not started here (insecure; testing only).

        The exchange runs against a new PKCE verifier and nonce, so with
        :class:`OIDCEngine` such responses always end in a token error.
        """
        return self._listener.allow_unsolicited

    @allow_unsolicited.setter
    def allow_unsolicited(self, value: bool) -> None:
        if value:
            logger.warning("Unsolicited auth responses enabled (insecure)")
        self._listener.allow_unsolicited = value

    @property
    def pending_count(self) -> int:
        """Number of logins waiting for their callback."""
        return len(self._store)

    # -- Events -------------------------------------------------------------

    def add_login_listener(self, callback: Callable[[LoginResult], None]) -> None:
        """Subscribe to every login result (tagged with its correlation id).

        Callbacks run on the listener's request thread.
        """
        with self._lock:
            self._login_listeners.append(callback)

    def remove_login_listener(self, callback: Callable[[LoginResult], None]) -> None:
        """Unsubscribe a login result callback."""
        with self._lock:
            if callback in self._login_listeners:
                self._login_listeners.remove(callback)

    # -- Operations ---------------------------------------------------------

    def start_login(
        self,
        hints: LoginHints | None = None,
        *,
        open_browser: Callable[[str], None] | None = None,
    ) -> LoginHandle:
        """Start an interactive login in the browser.

        Parameters
        ----------
        hints : LoginHints, optional
            Tenant code, account hint and force-prompt flag.
        open_browser : callable, optional
            Overrides the browser launcher for this login.

        Returns
        -------
        LoginHandle
            Handle resolved when the redirect for this login is handled.

        Raises
        ------
        DisposedError
            If the orchestrator has been closed.
        """
        self._ensure_open()
        self._expire_stale_logins()

        hints = hints if hints is not None else LoginHints()
        prepared = run_async(
            self._engine.prepare_login(hints.to_extra_params()),
            timeout=self.settings.refresh.request_timeout,
        )
        pending = PendingLogin(
            correlation_id=prepared.correlation_id,
            start_url=prepared.start_url,
            context=prepared.context,
            hints=hints,
        )

        handle = LoginHandle(pending)
        with self._lock:
            self._handles[pending.correlation_id] = handle
        self._store.put(pending.correlation_id, pending)

        launcher = open_browser if open_browser is not None else self._browser
        try:
            launcher(pending.start_url)
        except Exception:
            self._store.take_and_remove(pending.correlation_id)
            with self._lock:
                self._handles.pop(pending.correlation_id, None)
            raise

        logger.info("Login %s started", pending.correlation_id)
        return handle

    def handle_login_response(self, value: str) -> LoginResult:
        """Complete a login from a response received outside HTTP.

        Parameters
        ----------
        value : str
            Query string, form body or full redirect URI.

        Returns
        -------
        LoginResult
            The result also delivered to listeners and the login's handle.
        """
        self._ensure_open()
        return LoginResult.from_outcome(self._listener.handle_login_response(value))

    def get_refresher(self, **kwargs: Any) -> RefreshScheduler:
        """Create a token refresher bound to this orchestrator's engine.

        Parameters
        ----------
        **kwargs : Any
            Extra :class:`RefreshScheduler` arguments (callbacks, clock...).
        """
        self._ensure_open()
        return RefreshScheduler.from_settings(self._engine, self.settings.refresh, **kwargs)

    def close(self) -> None:
        """Release the listener and cancel every pending login. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        self._listener.close()
        for pending in self._store.clear():
            self._complete(
                LoginResult.failed(
                    "login_cancelled", "The login handler was closed.", pending.correlation_id
                )
            )
        if self._owns_engine:
            try:
                run_async(self._engine.close(), timeout=5.0)
            except Exception as exc:
                logger.debug("Engine close failed: %s", exc)
        logger.info("Login orchestrator closed")

    def __enter__(self) -> LoginOrchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Internals ----------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed:
            raise DisposedError("LoginOrchestrator")

    def _expire_stale_logins(self) -> None:
        for pending in self._store.purge_expired(self.settings.pending_login_ttl):
            logger.info("Login %s expired without a callback", pending.correlation_id)
            self._complete(
                LoginResult.failed(
                    "login_expired",
                    "No sign-in response was received in time.",
                    pending.correlation_id,
                )
            )

    def _on_outcome(self, outcome: CallbackOutcome) -> None:
        self._complete(LoginResult.from_outcome(outcome))

    def _complete(self, result: LoginResult) -> None:
        """Resolve the login's handle and broadcast the result."""
        with self._lock:
            handle = self._handles.pop(result.correlation_id, None) if result.correlation_id else None
            listeners = list(self._login_listeners)
        if handle is not None:
            handle._resolve(result)

        for callback in listeners:
            try:
                callback(result)
            except Exception:
                logger.exception("Login listener raised")
