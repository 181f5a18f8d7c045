"""Browser-delegated OAuth2 / OpenID Connect login for desktop applications.

Provides the correlation store, the loopback redirect listener, the
background token refresher, the protocol engine abstraction and the
login orchestrator tying them together.
"""

from __future__ import annotations

from .browser import open_system_browser
from .callback_server import RedirectListener
from .correlation import CorrelationStore
from .engine import (
    ExchangeResult,
    OIDCEngine,
    OIDCLoginContext,
    PreparedLogin,
    ProtocolEngine,
)
from .flow import LoginHandle, LoginOrchestrator
from .known_clients import ClientIdentity, KnownClientRegistry, derive_client_identity
from .page_template import HtmlTemplate
from .refresher import RefreshScheduler, TokenSnapshot
from .response import AuthorizeResponse


__all__ = [
    "AuthorizeResponse",
    "ClientIdentity",
    "CorrelationStore",
    "ExchangeResult",
    "HtmlTemplate",
    "KnownClientRegistry",
    "LoginHandle",
    "LoginOrchestrator",
    "OIDCEngine",
    "OIDCLoginContext",
    "PreparedLogin",
    "ProtocolEngine",
    "RedirectListener",
    "RefreshScheduler",
    "TokenSnapshot",
    "derive_client_identity",
    "open_system_browser",
]
