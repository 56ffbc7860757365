#!/usr/bin/env python3
"""
Command line tool for enrolling a device and managing its session.

This tool makes it easy to:
- Check that a server is reachable
- Enroll the device (dynamic client registration)
- Log in with the authorization code flow
- Show the current user and the stored registration (safely redacted)
- Logout or reset the device

Usage:
    dcr-device probe <server_url>
    dcr-device enroll <server_url>
    dcr-device callback '<redirect_url>'
    dcr-device login
    dcr-device me
    dcr-device status
    dcr-device logout
    dcr-device reset
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from .client import DeviceOAuthClient
from .config import DeviceClientConfig
from .results import Success, describe


def safe_display_token(token: str, prefix_len: int = 20, suffix_len: int = 6) -> str:
    """Safely display a token with most characters redacted."""
    if len(token) <= prefix_len + suffix_len:
        return f"{token[:10]}..."

    prefix = token[:prefix_len]
    suffix = token[-suffix_len:]
    redacted_len = len(token) - prefix_len - suffix_len

    return f"{prefix}...{'*' * min(redacted_len, 20)}...{suffix}"


def print_header(text: str):
    """Print a formatted header."""
    print("\n" + "=" * 60)
    print(text)
    print("=" * 60)


def _make_client(storage_dir: Optional[Path] = None) -> DeviceOAuthClient:
    return DeviceOAuthClient(DeviceClientConfig.from_env(storage_dir=storage_dir))


async def cmd_probe(server_url: str, storage_dir: Optional[Path] = None) -> int:
    """Check that a server is reachable."""
    print_header(f"Probing {server_url}")
    client = _make_client(storage_dir)

    result = await client.test_server_connection(server_url)
    if isinstance(result, Success):
        print("✅ Server is reachable")
        return 0

    print(f"❌ {describe(result)}")
    return 1


def cmd_enroll(server_url: str, storage_dir: Optional[Path] = None) -> int:
    """Start device enrollment and print the URL to open."""
    print_header(f"Enrolling device with {server_url}")
    client = _make_client(storage_dir)

    if client.is_device_registered():
        print("⚠️  Device is already registered; a new registration will replace it")

    url = client.begin_enrollment(server_url)
    print("\nOpen this URL in a browser and sign in:\n")
    print(f"  {url}\n")
    print("Then pass the redirect URL to:")
    print("  dcr-device callback '<redirect_url>'")
    return 0


def cmd_login(storage_dir: Optional[Path] = None) -> int:
    """Start login and print the authorization URL."""
    print_header("Logging in")
    client = _make_client(storage_dir)

    result = client.begin_login()
    if not isinstance(result, Success):
        print(f"❌ {describe(result)}")
        print("\nTip: Enroll the device first with:")
        print("  dcr-device enroll <server_url>")
        return 1

    print("\nOpen this URL in a browser and sign in:\n")
    print(f"  {result.value}\n")
    print("Then pass the redirect URL to:")
    print("  dcr-device callback '<redirect_url>'")
    return 0


async def cmd_callback(redirect_url: str, storage_dir: Optional[Path] = None) -> int:
    """Process a redirect URL returned by the browser."""
    print_header("Processing callback")
    client = _make_client(storage_dir)

    result = await client.handle_callback(redirect_url)
    if not isinstance(result, Success):
        print(f"❌ {describe(result)}")
        print("\nStart the flow again from the beginning.")
        return 1

    if result.value:
        print(f"✅ Device registered as client {result.value}")
    else:
        print("✅ Logged in")
    return 0


async def cmd_me(storage_dir: Optional[Path] = None) -> int:
    """Show the current user."""
    print_header("Current user")
    client = _make_client(storage_dir)

    result = await client.get_user_info()
    if not isinstance(result, Success):
        print(f"❌ {describe(result)}")
        return 1

    user = result.value
    print(f"ID: {user.id}")
    print(f"Username: {user.username}")
    if user.display_name:
        print(f"Name: {user.display_name}")
    if user.email:
        print(f"Email: {user.email}")
    return 0


def cmd_status(storage_dir: Optional[Path] = None) -> int:
    """Show registration and session status."""
    print_header("Device status")
    client = _make_client(storage_dir)

    registration = client.credential_store.load_registration()
    if registration is None:
        print("❌ Device is not registered")
        return 1

    registered_at = datetime.fromtimestamp(registration.registered_at_epoch_ms / 1000)
    print(f"Server URL: {registration.server_url}")
    print(f"Client ID: {registration.client_id}")
    print(f"Key ID: {registration.key_id}")
    print(f"Registered: {registered_at.isoformat(timespec='seconds')}")

    key_present = client.is_device_registered()
    print(f"Signing key: {'✅ present' if key_present else '❌ MISSING'}")

    tokens = client.load_tokens()
    if tokens is None:
        print("\nSession: logged out")
    else:
        expires_at = datetime.fromtimestamp(tokens.expires_at_epoch_ms / 1000)
        status = "✅ VALID" if client.is_logged_in() else "❌ EXPIRED"
        print(f"\nAccess Token: {safe_display_token(tokens.access_token)}")
        if tokens.refresh_token:
            print(f"Refresh Token: {safe_display_token(tokens.refresh_token)}")
        print(f"Expires: {expires_at.isoformat(timespec='seconds')} ({status})")

    return 0 if key_present else 1


def cmd_logout(storage_dir: Optional[Path] = None) -> int:
    """Clear tokens, keeping the registration."""
    print_header("Logout")
    client = _make_client(storage_dir)
    client.logout()
    print("✅ Tokens cleared (device registration kept)")
    return 0


def cmd_reset(storage_dir: Optional[Path] = None, all_keys: bool = False) -> int:
    """Delete the registration, its key and all tokens."""
    print_header("Reset device")
    client = _make_client(storage_dir)
    client.reset(delete_all_keys=all_keys)
    print("✅ Registration, signing key and tokens removed")
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Device OAuth client (DCR + private_key_jwt + PKCE)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dcr-device probe https://play.dhis2.org/dev
  dcr-device enroll https://play.dhis2.org/dev
  dcr-device callback 'dhis2oauth://oauth?iat=...&state=...'
  dcr-device login
  dcr-device callback 'dhis2oauth://oauth?code=...&state=...'
  dcr-device me
        """,
    )
    parser.add_argument(
        "--storage-dir", type=Path, help="Directory for credentials and keys"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    probe_parser = subparsers.add_parser("probe", help="Check server connectivity")
    probe_parser.add_argument("server_url", help="Server base URL")

    enroll_parser = subparsers.add_parser("enroll", help="Start device enrollment")
    enroll_parser.add_argument("server_url", help="Server base URL")

    callback_parser = subparsers.add_parser(
        "callback", help="Process a redirect URL from the browser"
    )
    callback_parser.add_argument("redirect_url", help="Full redirect URL")

    subparsers.add_parser("login", help="Start the login flow")
    subparsers.add_parser("me", help="Show the current user")
    subparsers.add_parser("status", help="Show registration and session status")
    subparsers.add_parser("logout", help="Clear tokens, keep registration")

    reset_parser = subparsers.add_parser(
        "reset", help="Remove registration, signing key and tokens"
    )
    reset_parser.add_argument(
        "--all-keys", action="store_true", help="Also delete every managed key"
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    storage_dir = args.storage_dir

    try:
        if args.command == "probe":
            return asyncio.run(cmd_probe(args.server_url, storage_dir))
        elif args.command == "enroll":
            return cmd_enroll(args.server_url, storage_dir)
        elif args.command == "callback":
            return asyncio.run(cmd_callback(args.redirect_url, storage_dir))
        elif args.command == "login":
            return cmd_login(storage_dir)
        elif args.command == "me":
            return asyncio.run(cmd_me(storage_dir))
        elif args.command == "status":
            return cmd_status(storage_dir)
        elif args.command == "logout":
            return cmd_logout(storage_dir)
        elif args.command == "reset":
            return cmd_reset(storage_dir, args.all_keys)
        else:  # pragma: no cover
            parser.print_help()
            return 1

    except KeyboardInterrupt:
        print("\n\n❌ Interrupted by user")
        return 130
    except Exception as e:
        print(f"\n❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
