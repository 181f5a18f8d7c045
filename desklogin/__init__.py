"""desklogin - browser-based OpenID Connect sign-in for desktop applications.

A loopback redirect listener receives the identity provider's response,
correlates it with the login that started it, completes the code
exchange and keeps the resulting access token fresh in the background.
"""

from __future__ import annotations

from .auth import (
    AuthorizeResponse,
    CorrelationStore,
    HtmlTemplate,
    KnownClientRegistry,
    LoginHandle,
    LoginOrchestrator,
    OIDCEngine,
    ProtocolEngine,
    RedirectListener,
    RefreshScheduler,
    TokenSnapshot,
)
from .config import (
    DeskLoginSettings,
    ListenerSettings,
    LogSettings,
    ProviderSettings,
    RefreshSettings,
    get_settings,
)
from .exceptions import (
    AuthenticationError,
    DeskLoginException,
    DisposedError,
    ListenerBindError,
    ListenerError,
    LoginTimeoutError,
    ProtocolError,
    TokenError,
    TokenRefreshError,
    TransportError,
)
from .types import (
    CallbackOutcome,
    LoginHints,
    LoginResult,
    OutcomeKind,
    PendingLogin,
    TokenSet,
)


__version__ = "0.1.0"

__all__ = [
    "AuthenticationError",
    "AuthorizeResponse",
    "CallbackOutcome",
    "CorrelationStore",
    "DeskLoginException",
    "DeskLoginSettings",
    "DisposedError",
    "HtmlTemplate",
    "KnownClientRegistry",
    "ListenerBindError",
    "ListenerError",
    "ListenerSettings",
    "LogSettings",
    "LoginHandle",
    "LoginHints",
    "LoginOrchestrator",
    "LoginResult",
    "LoginTimeoutError",
    "OIDCEngine",
    "OutcomeKind",
    "PendingLogin",
    "ProtocolEngine",
    "ProtocolError",
    "ProviderSettings",
    "RedirectListener",
    "RefreshScheduler",
    "RefreshSettings",
    "TokenError",
    "TokenRefreshError",
    "TokenSet",
    "TokenSnapshot",
    "TransportError",
    "__version__",
    "get_settings",
]
