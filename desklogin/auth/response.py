"""Parsing of OAuth2 authorization responses.

A response may arrive as a query string on the loopback listener, as a
form-encoded POST body (``response_mode=form_post``), or as a full URI
handed over by the operating system for a custom scheme.
"""

from __future__ import annotations

import re

from dataclasses import dataclass, field
from urllib.parse import parse_qsl, urlencode


_URI_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*://")


@dataclass(frozen=True)
class AuthorizeResponse:
    """The parameters of a single authorization response.

    Attributes
    ----------
    raw : str
        The parameter string the response was parsed from.
    params : dict[str, str]
        Decoded parameters; the first value wins for repeated keys.
    """

    raw: str
    params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, value: str) -> AuthorizeResponse:
        """Parse a query string, form body or full redirect URI.

        Parameters
        ----------
        value : str
            ``code=..&state=..``, ``?code=..`` or
            ``myapp://callback?code=..#..``.

        Returns
        -------
        AuthorizeResponse
            The parsed response.
        """
        raw = _extract_parameter_string(value)
        params: dict[str, str] = {}
        for key, item in parse_qsl(raw, keep_blank_values=True):
            params.setdefault(key, item)
        return cls(raw=raw, params=params)

    @property
    def code(self) -> str | None:
        """The authorization code."""
        return self.params.get("code") or None

    @property
    def state(self) -> str | None:
        """The correlation id echoed back by the provider."""
        return self.params.get("state") or None

    @property
    def error(self) -> str | None:
        """The OAuth2 error code, if the provider reported one."""
        return self.params.get("error") or None

    @property
    def error_description(self) -> str:
        """The provider's error description (may be empty)."""
        return self.params.get("error_description", "")

    @property
    def is_error(self) -> bool:
        """Whether the response signals a protocol error."""
        return self.error is not None

    @property
    def is_empty(self) -> bool:
        """Whether the response carries no parameters at all."""
        return not self.params

    def with_state(self, state: str) -> AuthorizeResponse:
        """Return a copy whose ``state`` is replaced by ``state``."""
        params = dict(self.params)
        params["state"] = state
        return AuthorizeResponse(raw=urlencode(params), params=params)


def _extract_parameter_string(value: str) -> str:
    """Strip everything but the parameter part of a response string."""
    text = value.strip()
    if _URI_SCHEME_RE.match(text):
        # Full URI: query parameters first, fragment (implicit/hybrid) second
        _, _, rest = text.partition("?")
        query, _, fragment = rest.partition("#")
        if not rest:
            _, _, fragment = text.partition("#")
        if query and fragment:
            return f"{query}&{fragment}"
        return query or fragment
    return text.lstrip("?#")
