"""desklogin exception hierarchy.

All desklogin-specific exceptions inherit from DeskLoginException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class DeskLoginException(Exception):
    """Base exception for all desklogin errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize desklogin exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (correlation_id, address, component, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx})"
        return self.message


class AuthenticationError(DeskLoginException):
    """Base exception for all authentication failures.

    Raised when a login, a code exchange or a token renewal fails.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        correlation_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        provider : str, optional
            The protocol engine / identity provider name.
        correlation_id : str, optional
            The correlation id (``state``) of the login attempt.
        **context : Any
            Additional context.
        """
        super().__init__(message, provider=provider, correlation_id=correlation_id, **context)
        self.provider = provider
        self.correlation_id = correlation_id


class ProtocolError(AuthenticationError):
    """The identity provider or protocol engine reported an error.

    Carries the OAuth2 ``error`` code and ``error_description`` verbatim so
    they can be surfaced to the user unchanged.
    """

    def __init__(
        self,
        error: str,
        error_description: str = "",
        provider: str | None = None,
        correlation_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize protocol error.

        Parameters
        ----------
        error : str
            The OAuth2 error code (e.g. ``invalid_grant``).
        error_description : str
            Human-readable description supplied by the provider.
        provider : str, optional
            The protocol engine / identity provider name.
        correlation_id : str, optional
            The correlation id of the login attempt.
        **context : Any
            Additional context.
        """
        message = f"{error} - {error_description}" if error_description else error
        super().__init__(message, provider=provider, correlation_id=correlation_id, **context)
        self.error = error
        self.error_description = error_description


class TransportError(AuthenticationError):
    """Network or I/O failure while talking to the identity provider."""


class LoginTimeoutError(AuthenticationError):
    """No redirect callback arrived for a login within the wait timeout."""

    def __init__(
        self,
        message: str,
        timeout: float,
        correlation_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        correlation_id : str, optional
            The login that timed out.
        **context : Any
            Additional context.
        """
        super().__init__(message, correlation_id=correlation_id, timeout=timeout, **context)
        self.timeout = timeout


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when token operations (validation, refresh, exchange) fail.
    """


class TokenRefreshError(TokenError):
    """Token refresh failed.

    Raised when attempting to renew an access token using a refresh
    token fails.
    """


class ListenerError(DeskLoginException):
    """Redirect listener failure."""


class ListenerBindError(ListenerError):
    """The redirect listener could not bind its loopback endpoint.

    Raised synchronously at construction time when the port is in use or
    the callback path is invalid.
    """

    def __init__(self, message: str, address: str | None = None, **context: Any) -> None:
        """Initialize bind error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        address : str, optional
            The ``host:port`` or URL that could not be bound.
        **context : Any
            Additional context.
        """
        super().__init__(message, address=address, **context)
        self.address = address


class DisposedError(DeskLoginException):
    """An operation was attempted on a component that has been shut down."""

    def __init__(self, component: str, **context: Any) -> None:
        """Initialize disposed error.

        Parameters
        ----------
        component : str
            Name of the closed component.
        **context : Any
            Additional context.
        """
        super().__init__(f"{component} has been closed", component=component, **context)
        self.component = component
