#!/usr/bin/env python3
"""
authcore - local authentication console.
Sign in with a password, a passkey or an OAuth2 provider from the terminal, or serve the login API.
"""

import argparse
import getpass
import json
import logging
import os
import sys
from typing import Optional
from urllib.parse import parse_qs, urlsplit

# Configure logging
logging.basicConfig(
    level=(os.getenv("LOG_LEVEL", "WARNING") or "WARNING").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep authcore imports lazy (inside functions) so --help and --hash-password
# never load configuration.
#


def _coordinator():
    from authcore.auth.config import load_auth_config
    from authcore.auth.coordinator import build_coordinator

    return build_coordinator(load_auth_config())


def _warn_if_session_is_ephemeral() -> None:
    from authcore.auth.config import load_auth_config

    if not load_auth_config().session.secret:
        print(
            "💡 AUTH_SESSION_SECRET is not set: each run signs sessions with a one-off key "
            "and sessions do not carry over between commands",
            file=sys.stderr,
        )


def list_methods() -> None:
    """Print the configured, usable methods."""
    coordinator = _coordinator()
    methods = coordinator.available_methods()
    if not methods:
        print("No authentication methods are configured (set AUTH_CONFIG_PATH)")
        return
    print(f"\n{len(methods)} method(s):\n")
    for m in methods:
        default = "  (default)" if m.id == coordinator.default_method else ""
        print(f"  {m.id:<16} {m.kind:<9} {m.name}{default}")
    print()


def login(method: str, username: Optional[str] = None) -> None:
    """
    Sign in with `method`.

    Args:
        method: Configured method id
        username: Local username (prompted when omitted)
    """
    coordinator = _coordinator()
    credentials = None
    if coordinator.method_kind(method) == "local":
        username = username or input("Username: ").strip()
        credentials = {"username": username, "password": getpass.getpass("Password: ")}

    result = coordinator.authenticate(method, credentials)
    if result.redirect is not None:
        print("Open this URL in a browser to continue:\n")
        print(f"  {result.redirect.url}\n")
        print("Then run: main.py --callback-url '<the URL you were redirected to>'")
        return
    if result.user is not None:
        print(f"✅ Signed in as {result.user.username} via {result.method}")
        _warn_if_session_is_ephemeral()


def complete_callback(url: str) -> None:
    """Finish an OAuth2 login from the redirect URL the provider sent the browser to."""
    query = parse_qs(urlsplit(url).query)
    result = _coordinator().complete_oauth2(query)
    if result.user is not None:
        print(f"✅ Signed in as {result.user.username} via {result.method}")
        _warn_if_session_is_ephemeral()


def whoami() -> None:
    session = _coordinator().current_session()
    if session is None:
        print("Not signed in")
        _warn_if_session_is_ephemeral()
        return
    print(
        json.dumps(
            {
                "user": session.user.to_dict(),
                "method": session.method,
                "expiresAt": session.expires_at.isoformat(),
            },
            indent=2,
        )
    )


def hash_password_interactive() -> None:
    from authcore.auth.local import hash_password

    password = getpass.getpass("Password: ")
    if not password:
        print("❌ Empty password", file=sys.stderr)
        sys.exit(2)
    if getpass.getpass("Repeat: ") != password:
        print("❌ Passwords do not match", file=sys.stderr)
        sys.exit(2)
    print(hash_password(password))


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Local authentication console (password, passkey, OAuth2)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show configured methods
  python main.py --list-methods

  # Password login
  python main.py --login local --username alice

  # OAuth2 login (two steps around the browser redirect)
  python main.py --login github
  python main.py --callback-url 'http://localhost:8080/auth/callback?code=...&state=...'

  # Serve the login API
  python main.py --serve --port 8080
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the login API server")
    parser.add_argument("--host", default="127.0.0.1", help="API server bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="API server listen port (default: 8080)")
    parser.add_argument("--list-methods", action="store_true", help="List configured authentication methods")
    parser.add_argument("--login", metavar="METHOD", help="Sign in with a configured method id")
    parser.add_argument("--username", help="Username for local login (prompted if omitted)")
    parser.add_argument(
        "--callback-url", metavar="URL", help="Complete an OAuth2 login from the provider redirect URL"
    )
    parser.add_argument("--whoami", action="store_true", help="Show the active session")
    parser.add_argument("--logout", action="store_true", help="End the active session")
    parser.add_argument(
        "--hash-password", action="store_true", help="Print a bcrypt hash for a local user entry"
    )

    args = parser.parse_args()

    from authcore.auth.errors import AuthError

    try:
        if args.hash_password:
            hash_password_interactive()
            return

        if args.serve:
            from authcore.api.server import run

            run(host=args.host, port=args.port)
            return

        if args.list_methods:
            list_methods()
            return

        if args.login:
            login(args.login, args.username)
            return

        if args.callback_url:
            complete_callback(args.callback_url)
            return

        if args.whoami:
            whoami()
            return

        if args.logout:
            _coordinator().logout()
            print("Signed out")
            return

        # No arguments provided
        parser.print_help()
        print("\n💡 Tip: Use `--list-methods` to see what is configured")

    except AuthError as e:
        # Print the kind, not the message; messages may carry internal detail.
        print(f"❌ Authentication failed: {e.kind}", file=sys.stderr)
        if getattr(e, "retry_after", None):
            print(f"   Try again in {e.retry_after}s", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
