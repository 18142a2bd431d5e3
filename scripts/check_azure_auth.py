#!/usr/bin/env python3
"""
Azure PIM Session Status Checker

This script shows what the OS secret store holds for the Azure PIM
session without touching the network. Secrets are never printed.

Usage:
    python scripts/check_azure_auth.py

    # Verbose output with record details
    python scripts/check_azure_auth.py --verbose
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.azure_auth.exceptions import KeychainError, SecretNotFoundError
from src.azure_auth.graph import UserInfo
from src.azure_auth.keychain import CredentialStore
from src.azure_auth.token_manager import format_duration, time_until_expiry

# Setup logging
logging.basicConfig(
    level=logging.WARNING,  # Quiet by default
    format="%(message)s",
)
logger = logging.getLogger(__name__)


def check_session(verbose: bool = False) -> int:
    """
    Check and display session status.

    Args:
        verbose: Whether to show detailed information

    Returns:
        Exit code (0 if signed in, 1 if not signed in, 2 on error)
    """
    store = CredentialStore()

    print("=" * 70)
    print("AZURE PIM SESSION STATUS")
    print("=" * 70)
    print()

    try:
        if not store.has_tokens():
            print("❌ NOT SIGNED IN")
            print()
            print("To sign in, run:")
            print("  python scripts/azure_sign_in.py")
            print()
            return 1

        try:
            user = UserInfo.from_json(store.get_user_info())
            print(f"✅ SIGNED IN as {user.display_name} ({user.email})")
            print(f"Tenant:      {user.tenant_name}")
        except SecretNotFoundError:
            print("✅ TOKENS STORED (no user info)")

        try:
            expiry = store.get_token_expiry()
        except SecretNotFoundError:
            print("Status:      ⚠️  Expiry unknown, token will be refreshed on next use")
        else:
            remaining = time_until_expiry(expiry)
            if remaining is None:
                print("Status:      ⚠️  Access token expired")
                print("The token will be refreshed when the app starts.")
            else:
                print("Status:      ✅ Active")
                print(f"Expires in:  {format_duration(remaining)}")
            if verbose:
                print(f"Expires at:  {expiry}")

        if verbose:
            print(f"Service:     {store.service}")
            print(f"Backend:     {type(store.backend).__name__}")

        print()
        print("=" * 70)
        return 0

    except KeychainError as e:
        print("❌ SECRET STORE ERROR")
        print()
        print(f"Error: {e}")
        print()
        return 2


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Check the stored Azure PIM session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show detailed record information",
    )

    args = parser.parse_args()

    return check_session(verbose=args.verbose)


if __name__ == "__main__":
    sys.exit(main())
