"""Loopback HTTP listener for OAuth2 redirect capture.

Binds a fixed ``http://<host>:<port><path>`` prefix for the lifetime of
the listener, classifies every callback that arrives there, consumes the
matching pending login from the correlation store, completes the code
exchange through the protocol engine, renders a result page and emits
exactly one completion notification per callback.

Classification order (first match wins):

1. method other than GET/POST           -> 405, malformed
2. POST that is not form-url-encoded    -> 415, malformed
   POST body over the size limit        -> 413, malformed
3. empty body / empty query             -> 400, malformed
4. ``error`` parameter present          -> 400, protocol error
5. ``state`` matches a pending login    -> exchange (200 or 400)
   no match, unsolicited allowed + known client -> exchange
   otherwise                            -> 400, unmatched
"""

# pylint: disable=logging-too-many-args,too-many-instance-attributes

# pylint: disable=C0103,W0212

from __future__ import annotations

import concurrent.futures
import logging
import threading

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from ..exceptions import (
    DeskLoginException,
    DisposedError,
    ListenerBindError,
    ProtocolError,
    TransportError,
)
from ..log import redact_sensitive_data
from ..sync_helpers import run_async
from ..types import CallbackOutcome, OutcomeKind
from .known_clients import KnownClientRegistry, derive_client_identity
from .page_template import HtmlTemplate
from .response import AuthorizeResponse


if TYPE_CHECKING:
    from collections.abc import Callable

    from .correlation import CorrelationStore
    from .engine import ProtocolEngine


logger = logging.getLogger("desklogin.auth")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MAX_BODY_BYTES = 64 * 1024
# Largest unconsumed request body drained before replying.
_DRAIN_LIMIT = 1024 * 1024

_SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'",
    "X-Content-Type-Options": "nosniff",
}


def _is_form_content(content_type: str | None) -> bool:
    """Whether a Content-Type header denotes a form-url-encoded body."""
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == FORM_CONTENT_TYPE


def _failure_code(exc: BaseException) -> str:
    """Map a non-protocol engine failure to an error code."""
    if isinstance(exc, (TransportError, concurrent.futures.TimeoutError, OSError)):
        return "transport_error"
    if isinstance(exc, DeskLoginException):
        return "invalid_response"
    return "server_error"


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, DeskLoginException):
        return exc.message
    return str(exc) or exc.__class__.__name__


class RedirectListener:
    """Owns the loopback socket that receives identity provider redirects.

    One listener per port per process: the socket is bound in the
    constructor and released by :meth:`close`.

    Parameters
    ----------
    engine : ProtocolEngine
        Engine used to redeem matched responses.
    store : CorrelationStore
        Store holding the pending logins.
    callback_path : str
        Path prefix of the redirect URI; must start with ``/``.
    port : int
        Local port (``0`` for an ephemeral port).
    bind_address : str
        Address to bind (default ``"127.0.0.1"``).
    redirect_host : str
        Host name used in :attr:`redirect_uri` (default ``"localhost"``).
    allow_unsolicited : bool
        Accept responses whose ``state`` is unknown if a known client
        matches. Insecure; testing only. The response is exchanged with a
        freshly prepared context, so an engine that binds codes to a PKCE
        verifier and nonce, such as :class:`OIDCEngine`, rejects it.
    known_clients : KnownClientRegistry, optional
        Registry consulted for unsolicited responses.
    html_template : HtmlTemplate, optional
        Template for the result page.
    on_complete : callable, optional
        Receives one :class:`~desklogin.types.CallbackOutcome` per callback.
        Called on the request thread.
    exchange_timeout : float
        Maximum seconds to wait for the engine's code exchange.

    Raises
    ------
    ListenerBindError
        If the path is invalid or the address cannot be bound.
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        store: CorrelationStore,
        *,
        callback_path: str = "/signin-oidc/",
        port: int = 18989,
        bind_address: str = "127.0.0.1",
        redirect_host: str = "localhost",
        allow_unsolicited: bool = False,
        known_clients: KnownClientRegistry | None = None,
        html_template: HtmlTemplate | None = None,
        on_complete: Callable[[CallbackOutcome], None] | None = None,
        exchange_timeout: float = 30.0,
    ) -> None:
        """Bind the socket and start accepting callbacks."""
        if not callback_path.startswith("/") or any(c in callback_path for c in "?#"):
            msg = f"Invalid callback path {callback_path!r}: must start with '/'"
            raise ListenerBindError(msg, address=f"{bind_address}:{port}")

        self._engine = engine
        self._store = store
        self._callback_path = callback_path
        self._redirect_host = redirect_host
        self.allow_unsolicited = allow_unsolicited
        self.known_clients = known_clients if known_clients is not None else KnownClientRegistry()
        self.html_template = html_template if html_template is not None else HtmlTemplate()
        self.on_complete = on_complete
        self.exchange_timeout = exchange_timeout

        self._closed = False
        self._close_lock = threading.Lock()

        try:
            self._server = ThreadingHTTPServer((bind_address, port), self._make_handler())
        except OSError as exc:
            msg = f"Cannot bind redirect listener on {bind_address}:{port}: {exc}"
            raise ListenerBindError(msg, address=f"{bind_address}:{port}") from exc
        self._server.daemon_threads = True
        self._actual_port: int = self._server.server_address[1]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name=f"desklogin-listener-{self._actual_port}",
            daemon=True,
        )
        self._thread.start()

        if allow_unsolicited:
            logger.warning("Redirect listener accepts unsolicited responses (insecure)")
        logger.debug("Redirect listener started on %s", self.redirect_uri)

    # -- Properties ---------------------------------------------------------

    @property
    def port(self) -> int:
        """The bound port."""
        return self._actual_port

    @property
    def callback_path(self) -> str:
        """The callback path prefix."""
        return self._callback_path

    @property
    def redirect_uri(self) -> str:
        """The redirect URI to register with the provider.

        Returns
        -------
        str
            e.g. ``http://localhost:18989/signin-oidc/``.
        """
        return f"http://{self._redirect_host}:{self._actual_port}{self._callback_path}"

    @property
    def is_listening(self) -> bool:
        """Whether the socket is still bound."""
        return not self._closed

    # -- Entry points -------------------------------------------------------

    def handle_login_response(self, value: str | None) -> CallbackOutcome:
        """Process a response that arrived without HTTP (e.g. custom URI scheme).

        Runs the same classification as the listener, minus the
        method/content-type checks, and notifies ``on_complete``.

        Parameters
        ----------
        value : str or None
            Query string, form body or full redirect URI.

        Returns
        -------
        CallbackOutcome
            How the response was resolved.

        Raises
        ------
        DisposedError
            If the listener has been closed.
        """
        if self._closed:
            raise DisposedError("RedirectListener")
        outcome = self._safe_process(value)
        self._finish(outcome, None)
        return outcome

    def close(self) -> None:
        """Stop accepting callbacks and release the socket. Idempotent."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._server.shutdown()
        self._server.server_close()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=5)
        logger.debug("Redirect listener on port %d closed", self._actual_port)

    def __enter__(self) -> RedirectListener:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # -- Classification -----------------------------------------------------

    def _matches_path(self, path: str) -> bool:
        base = self._callback_path.rstrip("/")
        return path == base or path.startswith(base + "/")

    def _safe_process(self, value: str | None) -> CallbackOutcome:
        try:
            return self._process(value)
        except Exception as exc:
            logger.exception("Unexpected failure while handling redirect callback")
            return CallbackOutcome.protocol_error(
                "server_error", _failure_message(exc), status_code=500
            )

    def _process(self, value: str | None) -> CallbackOutcome:
        """Resolve a response string to an outcome (steps 3 to 5)."""
        if not value or not value.strip():
            return CallbackOutcome.malformed("No data received.")

        response = AuthorizeResponse.parse(value)
        if response.is_empty:
            return CallbackOutcome.malformed("No data received.")

        logger.debug("Redirect callback params: %s", redact_sensitive_data(response.params))

        if response.is_error:
            # The login is over either way; drop its pending entry so it
            # cannot be matched later and its handle receives this error.
            discarded = self._store.take_and_remove(response.state)
            return CallbackOutcome.protocol_error(
                response.error or "unknown_error",
                response.error_description,
                correlation_id=discarded.correlation_id if discarded else None,
            )

        pending = self._store.take_and_remove(response.state)
        if pending is not None:
            return self._exchange(
                self._engine, response.raw, pending.context, pending.correlation_id
            )

        if self.allow_unsolicited:
            outcome = self._process_unsolicited(response)
            if outcome is not None:
                return outcome

        logger.info("Rejected redirect callback with unknown state")
        return CallbackOutcome.unmatched()

    def _exchange(
        self,
        engine: ProtocolEngine,
        raw: str,
        context: Any,
        correlation_id: str | None,
    ) -> CallbackOutcome:
        try:
            result = run_async(engine.process_response(raw, context), timeout=self.exchange_timeout)
        except ProtocolError as exc:
            logger.info("Login %s failed: %s", correlation_id, exc.message)
            return CallbackOutcome.protocol_error(
                exc.error, exc.error_description, correlation_id=correlation_id
            )
        except Exception as exc:
            logger.warning("Code exchange for login %s failed: %s", correlation_id, exc)
            return CallbackOutcome.protocol_error(
                _failure_code(exc), _failure_message(exc), correlation_id=correlation_id
            )
        logger.info("Login %s completed", correlation_id)
        return CallbackOutcome.success(result.tokens, result.claims, correlation_id=correlation_id)

    def _process_unsolicited(self, response: AuthorizeResponse) -> CallbackOutcome | None:
        """Try to complete a response this process did not start."""
        identity = derive_client_identity(response)
        engine = self.known_clients.resolve(identity)
        if identity is None or engine is None:
            return None

        logger.warning(
            "Accepting unsolicited auth response for client %s at %s (insecure)",
            identity.client_id,
            identity.issuer,
        )
        try:
            prepared = run_async(engine.prepare_login({}), timeout=self.exchange_timeout)
        except Exception as exc:
            logger.warning("Could not prepare login for unsolicited response: %s", exc)
            return None

        restated = response.with_state(prepared.correlation_id)
        return self._exchange(engine, restated.raw, prepared.context, None)

    # -- Completion ---------------------------------------------------------

    def _finish(
        self,
        outcome: CallbackOutcome,
        render: Callable[[CallbackOutcome], None] | None,
    ) -> None:
        """Render the page (best effort) then notify exactly once."""
        if render is not None:
            try:
                render(outcome)
            except OSError as exc:
                logger.debug("Could not write redirect response page: %s", exc)
        self._notify(outcome)

    def _notify(self, outcome: CallbackOutcome) -> None:
        handler = self.on_complete
        if handler is None:
            logger.debug("No completion handler for %s outcome", outcome.kind.value)
            return
        try:
            handler(outcome)
        except Exception:
            logger.exception("Login completion handler raised")

    def _render_page(self, outcome: CallbackOutcome) -> str:
        if outcome.kind is OutcomeKind.SUCCESS:
            return self.html_template.success_page()
        return self.html_template.error_page(
            outcome.error or "unknown_error", outcome.error_description or ""
        )

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        listener = self

        class _RedirectHandler(BaseHTTPRequestHandler):
            """HTTP request handler for redirect callbacks."""

            server_version = "desklogin"
            timeout = 10.0

            def __getattr__(self, name: str) -> Any:
                # Every method reaches the same classifier so that it can
                # answer 405 itself instead of the stdlib's 501.
                if name.startswith("do_"):
                    return self._dispatch
                raise AttributeError(name)

            def _dispatch(self) -> None:
                """Handle one request of any method."""
                self._body_read = False
                parsed = urlsplit(self.path)
                if not listener._matches_path(parsed.path):
                    self.send_error(404)
                    return

                try:
                    outcome = self._classify(parsed.query)
                except Exception as exc:
                    logger.exception("Unexpected failure while handling redirect request")
                    outcome = CallbackOutcome.protocol_error(
                        "server_error", _failure_message(exc), status_code=500
                    )
                self._discard_body()
                listener._finish(outcome, self._send_outcome)

            def _classify(self, query: str) -> CallbackOutcome:
                """Apply the HTTP-level checks, then the shared pipeline."""
                method = self.command
                if method not in ("GET", "POST"):
                    return CallbackOutcome.malformed(
                        f"{method} method is not supported.", status_code=405
                    )
                if method == "GET":
                    return listener._safe_process(query)

                content_type = self.headers.get("Content-Type")
                if not _is_form_content(content_type):
                    return CallbackOutcome.malformed(
                        f"{content_type or 'Missing'} content is not supported.",
                        status_code=415,
                    )
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    return CallbackOutcome.malformed("Invalid Content-Length.")
                if length > MAX_BODY_BYTES:
                    return CallbackOutcome.malformed("Request body too large.", status_code=413)
                if length <= 0:
                    return CallbackOutcome.malformed("No data received.")

                try:
                    body = self.rfile.read(length).decode("utf-8", errors="replace")
                    self._body_read = True
                except OSError as exc:
                    logger.debug("Could not read redirect request body: %s", exc)
                    return CallbackOutcome.malformed("Request body could not be read.")
                return listener._safe_process(body)

            def _discard_body(self) -> None:
                """Drain a request body the classifier did not consume."""
                if self._body_read:
                    return
                try:
                    remaining = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    remaining = 0
                if remaining > _DRAIN_LIMIT:
                    self.close_connection = True
                    return
                try:
                    while remaining > 0:
                        chunk = self.rfile.read(min(remaining, MAX_BODY_BYTES))
                        if not chunk:
                            break
                        remaining -= len(chunk)
                except OSError as exc:
                    logger.debug("Could not drain redirect request body: %s", exc)
                self._body_read = True

            def _send_outcome(self, outcome: CallbackOutcome) -> None:
                """Send the result page with security headers."""
                encoded = listener._render_page(outcome).encode("utf-8")
                self.send_response(outcome.status_code)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                for name, value in _SECURITY_HEADERS.items():
                    self.send_header(name, value)
                if outcome.status_code == 405:
                    self.send_header("Allow", "GET, POST")
                self.end_headers()
                if self.command != "HEAD":
                    self.wfile.write(encoded)
                self.wfile.flush()

            def log_request(self, code: int | str = "-", size: int | str = "-") -> None:
                """Log the request without its query (it carries the code)."""
                path = urlsplit(self.path).path if getattr(self, "path", None) else "-"
                logger.debug(
                    "Redirect listener: %s %s -> %s", getattr(self, "command", "-"), path, code
                )

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the desklogin logger."""
                if args:
                    logger.debug("Redirect listener: %s", args[0] % args[1:])

        return _RedirectHandler
