#!/usr/bin/env python3
"""
FIDO2 Enrollment CLI

Enrolls a FIDO2 security key on behalf of a user into Microsoft Entra ID:
- Signs in to Microsoft Graph with delegated admin permissions
- Looks up the user and optionally removes one existing security key
- Generates a PIN and copies it to the clipboard
- Creates a credential on the attached security key
- Registers it with the user's fido2Methods and prints the response

Requires a FIDO2 compatible authenticator (e.g., YubiKey) and an account
allowed to manage authentication methods.

Example:
    fido2-enroll --user alice@example.com --name "YubiKey-12345"
"""

import argparse
import logging
import sys

from .config import Settings
from .directory import AuthenticationError, DirectorySession
from .enrollment import ClipboardOutcome, RemovalOutcome, enroll


def setup_logger(verbosity):
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_args(argv):
    p = argparse.ArgumentParser(
        prog="fido2-enroll",
        description="Enroll a FIDO2 security key for a user in Microsoft Entra ID.",
    )
    p.add_argument(
        "--user",
        required=True,
        help="User principal name of the key's owner",
    )
    p.add_argument(
        "--name",
        required=True,
        help="Base display name for the key; include the serial number",
    )
    p.add_argument("--tenant", help="Tenant id or domain (FIDO2_ENROLL_TENANT)")
    p.add_argument("--client-id", help="Public client id used for sign-in")
    p.add_argument("--graph-host", help="Microsoft Graph host (national clouds)")
    p.add_argument(
        "--access-token",
        help="Use an existing Graph access token instead of signing in",
    )
    p.add_argument("-v", "--verbose", action="count", default=0)
    return p.parse_args(argv)


def prompt_for_removal(methods):
    """List the user's keys and ask which one, if any, to remove."""
    print("\n" + "-" * 50)
    print("EXISTING SECURITY KEYS")
    print("-" * 50)
    for m in methods:
        print(f"  {m.id}  {m.display_name}")
    return input("\nEnter the id of a key to remove (or press Enter to keep all): ")


def announce_pin(display_name, pin, clipboard):
    """Show the display name and PIN before the key is touched."""
    print(f"\nKey display name: {display_name}")
    if clipboard is ClipboardOutcome.COPIED:
        print(f"Generated PIN: {pin} (copied to clipboard)")
    else:
        print(f"Generated PIN: {pin}")


def print_result(result):
    """Report the outcome of an enrollment run."""
    if result.removal is RemovalOutcome.REMOVED:
        print("\nExisting key removed.")
    elif result.removal is RemovalOutcome.NOT_LISTED:
        print("\nThat id is not one of the listed keys. Nothing removed.")
    elif result.removal is RemovalOutcome.FAILED:
        print("\nThe selected key could not be removed.")

    if not result.ok:
        print(f"\nEnrollment failed: {result.message}")
        return

    print("\n" + "=" * 50)
    print("  DIRECTORY RESPONSE")
    print("=" * 50)
    print(f"  Display Name: {result.display_name}")
    print(f"  HTTP Status: {result.response_status}")
    print(result.response_text)


def main(argv=None):
    """Main application entry point."""
    args = parse_args(sys.argv[1:] if argv is None else argv)
    settings = Settings.from_env().override(
        tenant=args.tenant,
        client_id=args.client_id,
        graph_host=args.graph_host,
        access_token=args.access_token,
        verbosity=args.verbose,
    )
    setup_logger(settings.verbosity)

    try:
        session = DirectorySession.connect(settings)
        result = enroll(
            session,
            args.user,
            args.name,
            choose_removal=prompt_for_removal,
            announce=announce_pin,
            origin=settings.origin,
        )
    except AuthenticationError as e:
        print(f"\nCould not sign in to the directory: {e}")
        return 1
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        return 130
    print_result(result)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
