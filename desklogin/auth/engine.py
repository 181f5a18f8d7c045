"""Protocol engine: the OIDC operations the login core delegates.

Defines the ProtocolEngine ABC the listener, refresher and orchestrator
call, and OIDCEngine, an httpx-based implementation with endpoint
discovery, PKCE (RFC 7636, S256) and ID-token validation via authlib.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import hashlib
import logging
import secrets
import time

from abc import ABC, abstractmethod
from base64 import urlsafe_b64encode
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from authlib.jose import JsonWebKey, JsonWebToken

from ..exceptions import ProtocolError, TokenError, TransportError
from ..types import Claims, TokenSet
from .response import AuthorizeResponse


if TYPE_CHECKING:
    from ..config import DeskLoginSettings


logger = logging.getLogger("desklogin.auth")


@dataclass(frozen=True)
class PreparedLogin:
    """An authorization request ready to be opened in the browser.

    Attributes
    ----------
    correlation_id : str
        The ``state`` value the provider will echo back.
    start_url : str
        The full authorization URL.
    context : Any
        Engine-owned material needed by :meth:`ProtocolEngine.process_response`.
    """

    correlation_id: str
    start_url: str
    context: Any


@dataclass(frozen=True)
class ExchangeResult:
    """Tokens and claims obtained from a completed authorization response."""

    tokens: TokenSet
    claims: Claims = field(default_factory=dict)


class ProtocolEngine(ABC):
    """OIDC operations consumed by the login core.

    Implementations raise :class:`~desklogin.exceptions.ProtocolError` for
    errors reported by the provider and
    :class:`~desklogin.exceptions.TransportError` for network failures.
    """

    @property
    @abstractmethod
    def issuer(self) -> str:
        """The issuer URL this engine talks to."""

    @property
    @abstractmethod
    def client_id(self) -> str:
        """The client identifier this engine authenticates as."""

    @abstractmethod
    async def prepare_login(self, extra_params: dict[str, str] | None = None) -> PreparedLogin:
        """Build an authorization request.

        Parameters
        ----------
        extra_params : dict, optional
            Provider-specific parameters appended to the authorization URL.

        Returns
        -------
        PreparedLogin
            Correlation id, start URL and the context to keep until callback.
        """

    @abstractmethod
    async def process_response(self, raw_response: str, context: Any) -> ExchangeResult:
        """Complete a login from a raw authorization response.

        Parameters
        ----------
        raw_response : str
            The authorization response parameters (query string or form body).
        context : Any
            The context returned by :meth:`prepare_login` for this login.

        Returns
        -------
        ExchangeResult
            The issued tokens and the user's claims.
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Renew the access token with a refresh token.

        The returned set may have no ``refresh_token``; callers keep the
        previous one in that case.
        """

    async def close(self) -> None:  # noqa: B027
        """Release network resources."""


@dataclass(frozen=True)
class OIDCLoginContext:
    """Per-login secrets kept by :class:`OIDCEngine` until the callback.

    Attributes
    ----------
    state : str
        The correlation id sent as ``state``.
    nonce : str
        The nonce the ID token must echo back.
    code_verifier : str
        The PKCE code verifier.
    redirect_uri : str
        The redirect URI used in the authorization request.
    """

    state: str
    nonce: str
    code_verifier: str
    redirect_uri: str

    @classmethod
    def generate(cls, redirect_uri: str) -> OIDCLoginContext:
        """Create fresh random state, nonce and PKCE verifier."""
        return cls(
            state=secrets.token_urlsafe(32),
            nonce=secrets.token_urlsafe(32),
            code_verifier=secrets.token_urlsafe(64),
            redirect_uri=redirect_uri,
        )

    @property
    def code_challenge(self) -> str:
        """The S256 code challenge (base64url SHA-256 of the verifier)."""
        digest = hashlib.sha256(self.code_verifier.encode("ascii")).digest()
        return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OIDCEngine(ProtocolEngine):
    """OpenID Connect engine for a single confidential or public client.

    Parameters
    ----------
    authority : str
        The issuer URL (discovery runs against
        ``<authority>/.well-known/openid-configuration``).
    client_id : str
        The registered client identifier.
    redirect_uri : str
        The loopback redirect URI registered with the provider.
    client_secret : str
        Client secret (empty for public clients).
    scopes : list[str], optional
        Requested scopes.
    load_profile : bool
        Merge userinfo endpoint claims into the result.
    http_client : httpx.AsyncClient, optional
        Client to use instead of a lazily created one.
    """

    def __init__(
        self,
        authority: str,
        client_id: str,
        redirect_uri: str,
        client_secret: str = "",
        scopes: list[str] | None = None,
        *,
        load_profile: bool = True,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the OIDC engine."""
        self.authority = authority.rstrip("/")
        self._client_id = client_id
        self.redirect_uri = redirect_uri
        self.client_secret = client_secret
        self.scopes = scopes or ["openid", "profile", "offline_access"]
        self.load_profile = load_profile

        self.authorize_url = ""
        self.token_url = ""
        self.userinfo_url = ""
        self._jwks_uri = ""
        self._jwks_data: dict[str, Any] | None = None
        self._discovered_issuer = ""
        self._discovered = False
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: DeskLoginSettings, redirect_uri: str) -> OIDCEngine:
        """Build an engine from the ``[provider]`` settings section."""
        provider = settings.provider
        return cls(
            authority=provider.authority,
            client_id=provider.client_id,
            redirect_uri=redirect_uri,
            client_secret=provider.client_secret,
            scopes=provider.scope_list,
            load_profile=provider.load_profile,
        )

    @property
    def issuer(self) -> str:
        """The issuer URL this engine talks to."""
        return self.authority

    @property
    def client_id(self) -> str:
        """The client identifier this engine authenticates as."""
        return self._client_id

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def _discover(self) -> None:
        """Load endpoints from the provider's discovery document."""
        if self._discovered:
            return
        url = f"{self.authority}/.well-known/openid-configuration"
        try:
            client = await self._get_client()
            resp = await client.get(url, timeout=10.0)
            resp.raise_for_status()
            config = resp.json()
        except httpx.HTTPError as exc:
            msg = f"OIDC discovery failed for {self.authority}: {exc}"
            raise TransportError(msg, provider=self.authority) from exc

        discovered_issuer = str(config.get("issuer", ""))
        if discovered_issuer.rstrip("/") != self.authority:
            msg = f"OIDC issuer mismatch: expected '{self.authority}', got '{discovered_issuer}'"
            raise ProtocolError("invalid_issuer", msg, provider=self.authority)

        self.authorize_url = config.get("authorization_endpoint", "")
        self.token_url = config.get("token_endpoint", "")
        self.userinfo_url = config.get("userinfo_endpoint", "")
        self._jwks_uri = config.get("jwks_uri", "")
        # ID tokens carry the issuer exactly as published, trailing slash included.
        self._discovered_issuer = discovered_issuer
        self._discovered = True
        logger.debug("Discovered OIDC endpoints for %s", self.authority)

    async def prepare_login(self, extra_params: dict[str, str] | None = None) -> PreparedLogin:
        """Build an authorization request with state, nonce and PKCE."""
        await self._discover()
        context = OIDCLoginContext.generate(self.redirect_uri)
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": context.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": context.state,
            "nonce": context.nonce,
            "code_challenge": context.code_challenge,
            "code_challenge_method": "S256",
        }
        if extra_params:
            params.update(extra_params)
        start_url = f"{self.authorize_url}?{urlencode(params)}"
        return PreparedLogin(correlation_id=context.state, start_url=start_url, context=context)

    async def process_response(self, raw_response: str, context: Any) -> ExchangeResult:
        """Validate the response against its context and redeem the code."""
        if not isinstance(context, OIDCLoginContext):
            msg = f"Unsupported login context: {type(context).__name__}"
            raise ProtocolError("invalid_request", msg, provider=self.authority)

        response = AuthorizeResponse.parse(raw_response)
        if response.is_error:
            raise ProtocolError(
                response.error or "unknown_error",
                response.error_description,
                provider=self.authority,
                correlation_id=response.state,
            )
        if response.state != context.state:
            raise ProtocolError(
                "invalid_state",
                "State parameter mismatch",
                provider=self.authority,
                correlation_id=context.state,
            )
        if not response.code:
            raise ProtocolError(
                "invalid_request",
                "Missing authorization code",
                provider=self.authority,
                correlation_id=context.state,
            )

        data = {
            "grant_type": "authorization_code",
            "code": response.code,
            "redirect_uri": context.redirect_uri,
            "code_verifier": context.code_verifier,
        }
        tokens = await self._token_request(data)

        claims: Claims = {}
        if tokens.id_token:
            claims = await self.validate_id_token(tokens.id_token, nonce=context.nonce)
        if self.load_profile and self.userinfo_url:
            userinfo = await self.get_userinfo(tokens.access_token)
            claims = {**userinfo, **claims}

        return ExchangeResult(tokens=tokens, claims=claims)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Redeem a refresh token for a new access token."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._token_request(data)

    async def _token_request(self, data: dict[str, str]) -> TokenSet:
        """POST to the token endpoint and parse the token response."""
        await self._discover()
        if not self.token_url:
            raise ProtocolError(
                "invalid_configuration",
                "Provider did not publish a token endpoint",
                provider=self.authority,
            )

        form = {**data, "client_id": self.client_id}
        if self.client_secret:
            form["client_secret"] = self.client_secret

        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Token request failed: {exc}"
            raise TransportError(msg, provider=self.authority) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if not resp.is_success or "error" in payload:
            raise ProtocolError(
                str(payload.get("error") or f"http_{resp.status_code}"),
                str(payload.get("error_description") or resp.reason_phrase),
                provider=self.authority,
            )
        if not payload.get("access_token"):
            raise TokenError("Token response missing access_token", provider=self.authority)

        expires_in = payload.get("expires_in")
        return TokenSet(
            access_token=payload["access_token"],
            token_type=payload.get("token_type", "Bearer"),
            refresh_token=payload.get("refresh_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
            id_token=payload.get("id_token"),
            scope=payload.get("scope", ""),
            raw=payload,
            issued_at=time.time(),
        )

    async def _fetch_jwks(self) -> dict[str, Any]:
        """Fetch the JWKS key set from the provider."""
        if self._jwks_data is not None:
            return self._jwks_data
        if not self._jwks_uri:
            msg = "JWKS URI not available from discovery"
            raise TokenError(msg, provider=self.authority)
        try:
            client = await self._get_client()
            resp = await client.get(self._jwks_uri, timeout=10.0)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"JWKS download failed: {exc}"
            raise TransportError(msg, provider=self.authority) from exc
        self._jwks_data = resp.json()
        return self._jwks_data

    async def validate_id_token(self, id_token: str, nonce: str | None = None) -> Claims:
        """Validate an ID token's signature, issuer, audience, expiry and nonce.

        Parameters
        ----------
        id_token : str
            The raw ID token JWT string.
        nonce : str, optional
            Expected nonce value.

        Returns
        -------
        dict[str, Any]
            The validated claims.

        Raises
        ------
        TokenError
            If validation fails for any reason.
        """
        await self._discover()
        jwks_data = await self._fetch_jwks()

        jwt = JsonWebToken(["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"])
        claims_options: dict[str, Any] = {
            "iss": {"essential": True, "value": self._discovered_issuer or self.authority},
            "aud": {"essential": True, "value": self.client_id},
            "exp": {"essential": True},
        }
        if nonce:
            claims_options["nonce"] = {"essential": True, "value": nonce}

        try:
            key_set = JsonWebKey.import_key_set(jwks_data)
            claims = jwt.decode(id_token, key_set, claims_options=claims_options)
            claims.validate()
        except Exception as exc:
            msg = f"ID token validation failed: {exc}"
            raise TokenError(msg, provider=self.authority) from exc

        return dict(claims)

    async def get_userinfo(self, access_token: str) -> Claims:
        """Fetch the user's profile claims from the userinfo endpoint."""
        try:
            client = await self._get_client()
            resp = await client.get(
                self.userinfo_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=10.0,
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch user info: %s", exc)
            return {}
        return resp.json()  # type: ignore[no-any-return]
