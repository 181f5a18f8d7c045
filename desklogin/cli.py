"""Command-line interface for desklogin configuration and interactive login."""

from __future__ import annotations

import argparse
import os
import sys

from pathlib import Path
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from collections.abc import Sequence


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="desklogin",
        description="desklogin configuration and login tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Show or export configuration",
    )
    config_group = config_parser.add_mutually_exclusive_group()
    config_group.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )
    config_group.add_argument(
        "--toml",
        action="store_true",
        help="Export configuration as TOML",
    )
    config_group.add_argument(
        "--env",
        action="store_true",
        help="Export configuration as environment variables",
    )
    config_group.add_argument(
        "--sources",
        action="store_true",
        help="Show configuration file sources",
    )
    config_parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Output file path (default: stdout)",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Initialize a desklogin.toml configuration file",
    )
    init_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Overwrite existing configuration file",
    )
    init_parser.add_argument(
        "--path",
        "-p",
        type=str,
        default="desklogin.toml",
        help="Path for configuration file (default: desklogin.toml)",
    )

    # login command
    login_parser = subparsers.add_parser(
        "login",
        help="Sign in through the system browser and print the result",
    )
    login_parser.add_argument("--tenant", type=str, default="", help="Initial tenant code")
    login_parser.add_argument("--account", type=str, default="", help="Initial account hint")
    login_parser.add_argument(
        "--prompt",
        action="store_true",
        help="Always show the provider's login prompt",
    )
    login_parser.add_argument(
        "--timeout",
        type=float,
        default=300.0,
        help="Seconds to wait for the browser sign-in (default: 300)",
    )
    login_parser.add_argument(
        "--show-tokens",
        action="store_true",
        help="Print the issued tokens (sensitive)",
    )

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the main CLI entry point.

    Returns
    -------
    int
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "config":
        return handle_config(args)
    if args.command == "init":
        return handle_init(args)
    if args.command == "login":
        return handle_login(args)
    parser.print_help()
    return 0


def handle_config(args: argparse.Namespace) -> int:
    """Handle the config command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import DeskLoginSettings

    if args.sources:
        return show_config_sources()

    settings = DeskLoginSettings()
    if args.toml:
        output = settings.to_toml()
    elif args.env:
        output = settings.to_env()
    else:
        output = settings.show()

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Configuration written to {args.output}")
    else:
        print(output)

    return 0


def handle_init(args: argparse.Namespace) -> int:
    """Handle the init command.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code.
    """
    from .config import DeskLoginSettings

    path = Path(args.path)

    if path.exists() and not args.force:
        print(f"Error: {path} already exists. Use --force to overwrite.", file=sys.stderr)
        return 1

    toml_content = DeskLoginSettings().to_toml()

    header = """# desklogin Configuration File
#
# Environment variables can override any setting:
#   DESKLOGIN_PROVIDER__SERVER="login.example.com"
#   DESKLOGIN_PROVIDER__CLIENT_ID="my-desktop-app"
#   DESKLOGIN_LISTENER__PORT=18989
#   DESKLOGIN_REFRESH__WINDOW_SECONDS=300
#
# Use nested keys with __ (double underscore) delimiter.

"""
    path.write_text(header + toml_content, encoding="utf-8")
    print(f"Created {path}")

    return 0


def handle_login(args: argparse.Namespace) -> int:
    """Handle the login command.

    Starts one browser login with the configured provider and blocks
    until the redirect arrives or ``--timeout`` elapses.

    Parameters
    ----------
    args : argparse.Namespace
        Parsed command line arguments.

    Returns
    -------
    int
        Exit code (``0`` on successful sign-in).
    """
    from .auth.flow import LoginOrchestrator
    from .config import get_settings
    from .exceptions import DeskLoginException
    from .log import apply_settings
    from .types import LoginHints

    settings = get_settings()
    apply_settings(settings.log)
    if not settings.provider.server or not settings.provider.client_id:
        print(
            "Error: provider.server and provider.client_id must be configured.",
            file=sys.stderr,
        )
        return 2

    hints = LoginHints(tenant=args.tenant, account=args.account, always_prompt=args.prompt)
    try:
        with LoginOrchestrator(settings) as orchestrator:
            handle = orchestrator.start_login(hints)
            print(f"Waiting for sign-in at {orchestrator.redirect_uri} ...")
            result = handle.wait(timeout=args.timeout)
    except DeskLoginException as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nLogin cancelled.")
        return 130

    if result.is_error:
        print(f"Sign-in failed: {result.error} - {result.error_description}", file=sys.stderr)
        return 1

    print("Sign-in succeeded.")
    for claim in ("sub", "name", "email"):
        if claim in result.claims:
            print(f"  {claim:8} = {result.claims[claim]}")
    if result.access_token_expiration is not None:
        print(f"  {'expires':8} = {result.access_token_expiration:.0f}")
    if args.show_tokens:
        print(f"  access_token  = {result.access_token}")
        print(f"  refresh_token = {result.refresh_token or ''}")
    return 0


def show_config_sources() -> int:
    """Show configuration file sources and their status.

    Returns
    -------
    int
        Exit code.
    """
    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "desklogin" / "config.toml"
    else:
        user_config = Path("~/.config/desklogin/config.toml")

    sources = [
        ("Built-in defaults", "Always loaded", True),
        ("pyproject.toml [tool.desklogin]", "pyproject.toml", None),
        ("./desklogin.toml", "desklogin.toml", None),
        ("User config", str(user_config), None),
        ("DESKLOGIN_CONFIG_FILE", os.environ.get("DESKLOGIN_CONFIG_FILE", ""), None),
        ("Environment variables", "DESKLOGIN_* vars", None),
    ]

    print("Configuration Sources (in order of precedence):\n")
    print(f"{'Source':<40} {'Status':<15} {'Path'}")
    print("-" * 80)

    for name, path_str, forced_status in sources:
        if forced_status is True:
            status = "✓ Active"
            path_display = ""
        elif name == "Environment variables":
            env_vars = [
                k for k in os.environ if k.startswith("DESKLOGIN_") and k != "DESKLOGIN_CONFIG_FILE"
            ]
            if env_vars:
                status = f"✓ {len(env_vars)} vars"
                path_display = ", ".join(env_vars[:3])
                if len(env_vars) > 3:
                    path_display += "..."
            else:
                status = "✗ No vars"
                path_display = ""
        elif not path_str:
            status = "✗ Not set"
            path_display = ""
        else:
            path = Path(path_str).expanduser()
            status = "✓ Found" if path.exists() else "✗ Not found"
            path_display = str(path)

        print(f"{name:<40} {status:<15} {path_display}")

    print("\nNote: Later sources override earlier ones.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
