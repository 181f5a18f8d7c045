"""Demo: sign in from a console application and keep the token fresh.

Demonstrates the documented patterns:

- ``LoginOrchestrator`` for the browser login and loopback redirect
- ``LoginHandle.wait()`` to block until the redirect arrives
- ``get_refresher()`` to renew the access token in the background

Setup
-----
1. Register a public client with your OpenID Connect provider and add the
   redirect URI ``http://localhost:18989/signin-oidc/``.
2. Export the provider settings::

       export DESKLOGIN_PROVIDER__SERVER="login.example.com"
       export DESKLOGIN_PROVIDER__CLIENT_ID="my-desktop-app"

3. Run::

       python examples/console_login.py
"""

from __future__ import annotations

import sys

from desklogin import LoginHints, LoginOrchestrator, TokenSnapshot, get_settings
from desklogin.exceptions import DeskLoginException
from desklogin.log import apply_settings


def main() -> int:
    settings = get_settings()
    apply_settings(settings.log)

    with LoginOrchestrator(settings) as orchestrator:
        orchestrator.add_login_listener(
            lambda result: print(f"[event] login {result.correlation_id} finished")
        )
        try:
            answer = input("Always show the login prompt? [y/N] ").strip().lower()
            handle = orchestrator.start_login(LoginHints(always_prompt=answer == "y"))
            print(f"Complete the sign-in in your browser ({handle.start_url})")
            result = handle.wait(timeout=300)
        except DeskLoginException as e:
            print(f"Login could not complete: {e}", file=sys.stderr)
            return 1

        if result.is_error:
            print(f"Sign-in failed: {result.error} - {result.error_description}")
            return 1

        print(f"Signed in as {result.claims.get('name') or result.claims.get('sub')}")

        def renewed(snapshot: TokenSnapshot) -> None:
            print(f"Access token renewed, valid until {snapshot.expires_at:.0f}")

        def failed(reason: str) -> None:
            print(f"Renewal failed ({reason}); retrying")

        refresher = orchestrator.get_refresher(
            on_refresh_success=renewed, on_refresh_failure=failed
        )
        refresher.start(
            result.refresh_token, result.access_token or "", result.access_token_expiration
        )
        print("Token refresher running; press Enter to exit.")
        try:
            input()
        finally:
            refresher.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
