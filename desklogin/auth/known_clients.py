"""Best-effort correlation of unsolicited redirect responses.

When ``allow_unsolicited`` is enabled on the listener, a response whose
``state`` is unknown is matched to a registered client by reading the
issuer and client id out of the response WITHOUT validating anything.
This is insecure and intended for testing only. The code is exchanged with
a newly prepared context, so it only succeeds with engines that do not bind
the code to a PKCE verifier and nonce.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import binascii
import json
import logging
import threading

from base64 import urlsafe_b64decode
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from .engine import ProtocolEngine
    from .response import AuthorizeResponse


logger = logging.getLogger("desklogin.auth")


@dataclass(frozen=True)
class ClientIdentity:
    """The (issuer, client id) pair a response claims to belong to."""

    issuer: str
    client_id: str

    @classmethod
    def of(cls, issuer: str, client_id: str) -> ClientIdentity:
        """Build a normalized identity (trailing slashes ignored)."""
        return cls(issuer=issuer.rstrip("/"), client_id=client_id)


def _unverified_jwt_payload(token: str) -> dict[str, Any]:
    """Decode a JWT payload segment without checking its signature."""
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(urlsafe_b64decode(segment.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def derive_client_identity(response: AuthorizeResponse) -> ClientIdentity | None:
    """Guess which client a response was issued to.

    Uses the ``id_token`` payload (``iss`` and ``azp`` or ``aud``) when the
    response carries one, otherwise the ``iss`` and ``client_id`` response
    parameters (RFC 9207).

    Parameters
    ----------
    response : AuthorizeResponse
        The unsolicited response.

    Returns
    -------
    ClientIdentity or None
        The claimed identity, or None if it cannot be derived.
    """
    id_token = response.params.get("id_token")
    if id_token:
        claims = _unverified_jwt_payload(id_token)
        issuer = claims.get("iss")
        audience = claims.get("azp") or claims.get("aud")
        if isinstance(audience, list):
            audience = audience[0] if len(audience) == 1 else None
        if isinstance(issuer, str) and isinstance(audience, str):
            return ClientIdentity.of(issuer, audience)

    issuer = response.params.get("iss")
    client_id = response.params.get("client_id")
    if issuer and client_id:
        return ClientIdentity.of(issuer, client_id)
    return None


class KnownClientRegistry:
    """Thread-safe mapping of client identities to protocol engines."""

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._engines: dict[ClientIdentity, ProtocolEngine] = {}
        self._lock = threading.Lock()

    def register(self, engine: ProtocolEngine) -> ClientIdentity:
        """Register an engine under its own issuer and client id."""
        identity = ClientIdentity.of(engine.issuer, engine.client_id)
        with self._lock:
            self._engines[identity] = engine
        return identity

    def unregister(self, identity: ClientIdentity) -> None:
        """Forget an engine."""
        with self._lock:
            self._engines.pop(identity, None)

    def resolve(self, identity: ClientIdentity | None) -> ProtocolEngine | None:
        """Find the engine registered for ``identity``."""
        if identity is None:
            return None
        with self._lock:
            engine = self._engines.get(identity)
        if engine is None:
            logger.debug(
                "No known client for issuer=%s client_id=%s", identity.issuer, identity.client_id
            )
        return engine

    def __len__(self) -> int:
        with self._lock:
            return len(self._engines)
