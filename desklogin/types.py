"""Type definitions for desklogin.

Shared value types passed between the correlation store, the redirect
listener, the refresh scheduler and the login orchestrator.
"""

from __future__ import annotations

import time

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


CorrelationId = str
Claims = dict[str, Any]


@dataclass(frozen=True)
class LoginHints:
    """Caller-supplied hints used only to build the authorization request.

    Attributes
    ----------
    tenant : str
        Initial tenant / client code, sent as ``acr_values=tenant:<code>``.
    account : str
        Initial account (usually an email), sent as ``login_hint``.
    always_prompt : bool
        Force the provider to show its login prompt (``prompt=login``).
    """

    tenant: str = ""
    account: str = ""
    always_prompt: bool = False

    def to_extra_params(self) -> dict[str, str]:
        """Translate the hints into provider-specific extra parameters."""
        params: dict[str, str] = {}
        if self.tenant:
            params["acr_values"] = f"tenant:{self.tenant}"
        if self.account:
            params["login_hint"] = self.account
        if self.always_prompt:
            params["prompt"] = "login"
        return params


@dataclass(frozen=True)
class PendingLogin:
    """A login that was started and is waiting for its redirect callback.

    Attributes
    ----------
    correlation_id : str
        The provider-issued ``state`` value binding request and callback.
    start_url : str
        The authorization URL the browser was sent to.
    context : Any
        Opaque engine-owned material (PKCE verifier, nonce, redirect URI).
    hints : LoginHints
        The hints the authorization request was built from.
    created_at : float
        Unix timestamp when the login was started.
    """

    correlation_id: CorrelationId
    start_url: str
    context: Any
    hints: LoginHints = field(default_factory=LoginHints)
    created_at: float = field(default_factory=time.time)


@dataclass
class TokenSet:
    """OAuth2 token set returned by a provider.

    Attributes
    ----------
    access_token : str
        The access token for API requests.
    token_type : str
        Token type, typically "Bearer".
    refresh_token : str or None
        Optional refresh token for obtaining new access tokens.
    expires_in : int or None
        Token lifetime in seconds from issuance.
    id_token : str or None
        Optional OIDC ID token (JWT).
    scope : str
        Space-separated list of granted scopes.
    raw : dict[str, Any]
        The raw token response from the provider.
    issued_at : float
        Unix timestamp when the token was issued.
    """

    access_token: str
    token_type: str = "Bearer"  # noqa: S105
    refresh_token: str | None = None
    expires_in: int | None = None
    id_token: str | None = None
    scope: str = ""
    raw: dict[str, Any] = field(default_factory=dict)
    issued_at: float = field(default_factory=time.time)

    @property
    def is_expired(self) -> bool:
        """Check if the access token has expired."""
        if self.expires_in is None:
            return False
        return time.time() > (self.issued_at + self.expires_in)

    @property
    def expires_at(self) -> float | None:
        """Get the expiry timestamp, or None if no expiry."""
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in


class OutcomeKind(str, Enum):
    """How a single redirect callback resolved."""

    SUCCESS = "success"
    PROTOCOL_ERROR = "protocol_error"
    UNMATCHED = "unmatched"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of classifying and processing one redirect callback.

    Produced and consumed within a single callback handling; never stored.
    """

    kind: OutcomeKind
    status_code: int
    error: str | None = None
    error_description: str | None = None
    tokens: TokenSet | None = None
    claims: Claims = field(default_factory=dict)
    correlation_id: CorrelationId | None = None

    @property
    def is_error(self) -> bool:
        """Whether the callback did not produce tokens."""
        return self.kind is not OutcomeKind.SUCCESS

    @classmethod
    def success(
        cls,
        tokens: TokenSet,
        claims: Claims | None = None,
        correlation_id: CorrelationId | None = None,
    ) -> CallbackOutcome:
        """Build a 200 outcome carrying tokens and claims."""
        return cls(
            kind=OutcomeKind.SUCCESS,
            status_code=200,
            tokens=tokens,
            claims=dict(claims or {}),
            correlation_id=correlation_id,
        )

    @classmethod
    def protocol_error(
        cls,
        error: str,
        error_description: str | None = None,
        correlation_id: CorrelationId | None = None,
        status_code: int = 400,
    ) -> CallbackOutcome:
        """Build an outcome for a provider or engine reported error."""
        return cls(
            kind=OutcomeKind.PROTOCOL_ERROR,
            status_code=status_code,
            error=error,
            error_description=error_description or "",
            correlation_id=correlation_id,
        )

    @classmethod
    def unmatched(cls) -> CallbackOutcome:
        """Build an outcome for a callback with no pending login."""
        return cls(
            kind=OutcomeKind.UNMATCHED,
            status_code=400,
            error="invalid_request",
            error_description="This auth response cannot be verified.",
        )

    @classmethod
    def malformed(cls, description: str, status_code: int = 400) -> CallbackOutcome:
        """Build an outcome for a request that is not an authorization response."""
        return cls(
            kind=OutcomeKind.MALFORMED,
            status_code=status_code,
            error="bad_request",
            error_description=description,
        )


@dataclass(frozen=True)
class LoginResult:
    """Public result of a login attempt, delivered to the host application.

    Attributes
    ----------
    correlation_id : str or None
        The login this result belongs to, or None when the callback could
        not be tied to any login started by this process.
    error : str or None
        OAuth2 error code when the login failed.
    error_description : str or None
        Human-readable error description.
    access_token, refresh_token, identity_token : str or None
        Tokens issued on success.
    access_token_expiration : float or None
        Unix timestamp when the access token expires.
    claims : dict[str, Any]
        Validated ID-token claims (merged with userinfo when loaded).
    """

    correlation_id: CorrelationId | None = None
    error: str | None = None
    error_description: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    identity_token: str | None = None
    access_token_expiration: float | None = None
    claims: Claims = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        """Whether the login failed."""
        return self.error is not None

    @classmethod
    def from_outcome(cls, outcome: CallbackOutcome) -> LoginResult:
        """Translate a listener outcome into the public result value."""
        if outcome.kind is OutcomeKind.SUCCESS and outcome.tokens is not None:
            tokens = outcome.tokens
            return cls(
                correlation_id=outcome.correlation_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                identity_token=tokens.id_token,
                access_token_expiration=tokens.expires_at,
                claims=dict(outcome.claims),
            )
        return cls(
            correlation_id=outcome.correlation_id,
            error=outcome.error or "unknown_error",
            error_description=outcome.error_description or "",
        )

    @classmethod
    def failed(
        cls,
        error: str,
        error_description: str = "",
        correlation_id: CorrelationId | None = None,
    ) -> LoginResult:
        """Build an error result not backed by a callback (expiry, shutdown)."""
        return cls(
            correlation_id=correlation_id,
            error=error,
            error_description=error_description,
        )
