#!/usr/bin/env python3
"""
Azure PIM Sign-In Script

This script runs the interactive Azure AD sign-in outside the menu-bar
app. It opens the system browser, waits for the redirect on the loopback
callback port and stores the resulting session in the OS secret store,
where the app picks it up on its next start.

Usage:
    python scripts/azure_sign_in.py

    # Print the URL instead of opening a browser
    python scripts/azure_sign_in.py --no-browser

    # Delete the stored session
    python scripts/azure_sign_in.py --sign-out

Prerequisites:
    - Environment variables must be set:
        export AZURE_CLIENT_ID="your_client_id"
        export AZURE_TENANT_ID="your_tenant_id"
    - Port 28491 free on this machine
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.azure_auth.coordinator import AuthCoordinator, SessionObserver
from src.azure_auth.exceptions import (
    AzurePimError,
    CallbackTimeoutError,
    ConfigurationError,
    user_message_for,
)
from src.azure_auth.graph import UserInfo
from src.azure_auth.token_manager import format_duration

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SIGN_IN_TIMEOUT_SECONDS = 300


class ScriptObserver(SessionObserver):
    """Logs session updates and signals when sign-in has finished."""

    def __init__(self):
        self.finished = asyncio.Event()
        self.user_info = None
        self.error = None

    def on_authenticating(self) -> None:
        logger.info("Waiting for browser sign-in...")

    def on_signed_in(self, user_info: UserInfo, expires_at: datetime) -> None:
        self.user_info = user_info
        self.finished.set()

    def on_error(self, message: str) -> None:
        self.error = message
        self.finished.set()


async def sign_in(open_browser: bool) -> int:
    """
    Run the sign-in flow.

    Args:
        open_browser: Whether to automatically open browser

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    observer = ScriptObserver()
    coordinator = AuthCoordinator(observer=observer)
    try:
        auth_url = await coordinator.start_sign_in(open_browser=open_browser)
        if not open_browser:
            print()
            print("Open this URL in a browser to sign in:")
            print(f"  {auth_url}")
            print()

        try:
            await asyncio.wait_for(observer.finished.wait(), SIGN_IN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            await coordinator.cancel_sign_in()
            logger.error("❌ %s", CallbackTimeoutError.user_message)
            return 1

        if observer.error:
            logger.error("❌ %s", observer.error)
            return 1

        user = observer.user_info
        remaining = coordinator.expires_at - datetime.now(coordinator.expires_at.tzinfo)
        logger.info("✅ Signed in as %s (%s)", user.display_name, user.email)
        logger.info("   Tenant: %s", user.tenant_name)
        logger.info("   Token expires in %s", format_duration(remaining))
        return 0
    finally:
        await coordinator.close()


async def sign_out() -> int:
    """
    Delete the stored session.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    coordinator = AuthCoordinator()
    try:
        await coordinator.sign_out()
        logger.info("✅ Signed out. Stored credentials deleted.")
        return 0
    except AzurePimError as e:
        logger.error("❌ %s", user_message_for(e))
        return 1
    finally:
        await coordinator.close()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sign in to Azure AD for Azure PIM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the sign-in URL instead of opening a browser",
    )
    parser.add_argument(
        "--sign-out",
        action="store_true",
        help="Delete the stored session",
    )

    args = parser.parse_args()

    try:
        if args.sign_out:
            return asyncio.run(sign_out())
        return asyncio.run(sign_in(open_browser=not args.no_browser))
    except ConfigurationError as e:
        logger.error("❌ Configuration error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
