"""Logging helpers for desklogin.

Modules log through ``logging.getLogger("desklogin.<area>")``; this module
owns the package root logger and the redaction applied before callback
parameters, token responses or authorization URLs are written to a log.
"""

from __future__ import annotations

import logging
import sys

from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


if TYPE_CHECKING:
    from .config import LogSettings


DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"

REDACTED = "[REDACTED]"

# Parameter names whose values are credentials in OAuth2 / OIDC exchanges.
_SENSITIVE_NAMES = frozenset(
    {
        "code",
        "nonce",
        "password",
        "assertion",
        "session_state",
        "authorization",
    }
)

# Suffixes covering access_token, refresh_token, id_token, client_secret,
# code_verifier and similar.
_SENSITIVE_SUFFIXES = ("token", "secret", "verifier", "password", "_key")


class _LoggerHolder:
    """Holder for the package root logger."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the ``desklogin`` root logger.

    A stderr handler is attached on first use unless the host application
    already configured one.

    Returns
    -------
    logging.Logger
        The ``desklogin`` logger.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("desklogin")
        logger.setLevel(logging.WARNING)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def set_level(level: int | str) -> None:
    """Set the level of the ``desklogin`` logger.

    Parameters
    ----------
    level : int or str
        ``logging.DEBUG`` or a level name such as ``"debug"``.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def enable_debug() -> None:
    """Log listener classification and renewal scheduling decisions."""
    set_level(logging.DEBUG)


def apply_settings(settings: LogSettings) -> None:
    """Apply the ``[log]`` configuration section.

    Parameters
    ----------
    settings : LogSettings
        Level and format to use.
    """
    logger = get_logger()
    logger.setLevel(settings.level)
    formatter = logging.Formatter(settings.format)
    for handler in logger.handlers:
        handler.setFormatter(formatter)


def is_sensitive(name: str) -> bool:
    """Whether values of the parameter ``name`` must never be logged."""
    lowered = name.lower()
    return lowered in _SENSITIVE_NAMES or lowered.endswith(_SENSITIVE_SUFFIXES)


def redact_sensitive_data(
    data: dict[str, Any] | list[Any] | str | None, max_depth: int = 5
) -> dict[str, Any] | list[Any] | str | None:
    """Return a copy of ``data`` safe for logging.

    Dicts and lists are traversed recursively; values stored under
    credential-like keys (``code``, ``*_token``, ``client_secret``...) are
    replaced with ``[REDACTED]``. Strings are returned unchanged.

    Parameters
    ----------
    data : dict or list or str or None
        Callback parameters, a token response or similar.
    max_depth : int, optional
        Nesting level below which values are replaced by ``[MAX_DEPTH]``.

    Returns
    -------
    dict or list or str or None
        The redacted copy.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH]"

    if isinstance(data, dict):
        return {
            k: REDACTED if is_sensitive(str(k)) else redact_sensitive_data(v, max_depth - 1)
            for k, v in data.items()
        }

    if isinstance(data, list):
        return [redact_sensitive_data(item, max_depth - 1) for item in data]

    return data


def redact_url(url: str) -> str:
    """Redact credential parameters in the query and fragment of ``url``."""
    parts = urlsplit(url)

    def _scrub(component: str) -> str:
        if "=" not in component:
            return component
        pairs = parse_qsl(component, keep_blank_values=True)
        return urlencode([(k, REDACTED if is_sensitive(k) else v) for k, v in pairs], safe="[]")

    return urlunsplit(parts._replace(query=_scrub(parts.query), fragment=_scrub(parts.fragment)))
