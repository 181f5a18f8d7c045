"""Opening the system browser for the authorization request."""

from __future__ import annotations

import logging
import subprocess
import sys
import webbrowser

from ..log import redact_url


logger = logging.getLogger("desklogin.auth")


def _platform_command(url: str) -> list[str] | None:
    if sys.platform == "win32":
        # cmd's start treats '&' as a command separator.
        return ["cmd", "/c", "start", "", url.replace("&", "^&")]
    if sys.platform == "darwin":
        return ["open", url]
    if sys.platform.startswith("linux"):
        return ["xdg-open", url]
    return None


def open_system_browser(url: str) -> None:
    """Open ``url`` in the user's default browser (desktop only).

    Falls back to the platform's opener command when :mod:`webbrowser`
    cannot find a browser.

    Parameters
    ----------
    url : str
        The URL to open. Empty strings are ignored.

    Raises
    ------
    OSError
        If no way to open a browser exists on this platform.
    """
    if not url:
        return

    logger.debug("Opening browser at %s", redact_url(url))
    if webbrowser.open(url):
        return

    command = _platform_command(url)
    if command is None:
        msg = f"No browser available on platform {sys.platform!r}"
        raise OSError(msg)

    logger.debug("webbrowser could not open the URL; running %s", command[0])
    subprocess.Popen(  # noqa: S603
        command,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
