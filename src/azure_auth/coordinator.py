"""
Authentication coordinator for the Azure PIM menu-bar app.

This module is the one entry point the UI talks to. It owns the OAuth
client, credential store, Graph client and refresh scheduler, and runs
the session state machine:

    SIGNED_OUT -> AUTHENTICATING -> SIGNED_IN
                        |               |
                        v               v
                      ERROR         SIGNED_OUT (re-authentication needed)

UI updates go through a ``SessionObserver``. Stored credentials are only
deleted by an explicit sign-out or clear-data; a session that can no
longer be refreshed moves to signed-out and keeps its records.
"""

import asyncio
import enum
import logging
import webbrowser
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .callback_server import CallbackStatus, OAuthCallbackServer
from .config import AzureOAuthConfig
from .exceptions import (
    AzurePimError,
    KeychainError,
    SecretNotFoundError,
    requires_reauthentication,
    user_message_for,
)
from .graph import GraphClient, UserInfo
from .keychain import CredentialStore
from .oauth_client import OAuth2Client, parse_callback_url, validate_state
from .pkce import PkceChallenge
from .secure import SecretString
from .token_manager import (
    RefreshOutcome,
    TokenRefresher,
    TokenRefreshScheduler,
    time_until_expiry,
)

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    SIGNED_OUT = "signed_out"
    AUTHENTICATING = "authenticating"
    SIGNED_IN = "signed_in"
    ERROR = "error"


class SessionObserver:
    """
    Receives session updates from the coordinator.

    Every hook is a no-op; UI code overrides the ones it needs. Hooks are
    called on the event loop thread.
    """

    def on_authenticating(self) -> None:
        pass

    def on_signed_in(self, user_info: UserInfo, expires_at: datetime) -> None:
        pass

    def on_token_refreshed(self, expires_at: datetime) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def on_signed_out(self) -> None:
        pass


@dataclass
class _PendingSignIn:
    """In-flight sign-in attempt; discarded when superseded or finished."""

    pkce: PkceChallenge
    state: str


class AuthCoordinator:
    """
    High-level coordinator for Azure AD sign-in and session upkeep.

    Collaborators are injected so tests and the app can share one HTTP
    client, one credential store and one scheduler.

    Example:
        coordinator = AuthCoordinator(observer=menu_bar)
        if await coordinator.restore_session() is None:
            await coordinator.start_sign_in()
    """

    def __init__(
        self,
        config: Optional[AzureOAuthConfig] = None,
        store: Optional[CredentialStore] = None,
        oauth_client: Optional[OAuth2Client] = None,
        graph_client: Optional[GraphClient] = None,
        observer: Optional[SessionObserver] = None,
        browser_opener: Callable[[str], bool] = webbrowser.open,
    ):
        """
        Initialize coordinator.

        Args:
            config: OAuth configuration (loads from environment if not provided)
            store: Credential store (keyring default if not provided)
            oauth_client: OAuth client (creates default if not provided)
            graph_client: Graph client (creates default if not provided)
            observer: Receives session updates
            browser_opener: Opens the authorization URL; returns False on failure
        """
        self.config = config or AzureOAuthConfig.from_env()
        self.store = store or CredentialStore(self.config.keychain_service)
        self.oauth_client = oauth_client or OAuth2Client(self.config)
        self.graph_client = graph_client or GraphClient(
            self.config.graph_base_url,
            timeout=self.config.request_timeout,
            connect_timeout=self.config.connect_timeout,
        )
        self.observer = observer or SessionObserver()
        self.browser_opener = browser_opener

        self.refresher = TokenRefresher(self.oauth_client, self.store)
        self.scheduler = TokenRefreshScheduler(
            self.refresher,
            min_interval_seconds=self.config.min_refresh_interval_seconds,
            on_result=self._on_refresh_result,
        )

        self.state = SessionState.SIGNED_OUT
        self.user_info: Optional[UserInfo] = None
        self.expires_at: Optional[datetime] = None

        self._pending: Optional[_PendingSignIn] = None
        self._server: Optional[OAuthCallbackServer] = None
        self._callback_task: Optional[asyncio.Task] = None

    # Sign-in

    async def start_sign_in(self, open_browser: bool = True) -> str:
        """
        Begin an interactive sign-in.

        Any earlier attempt is cancelled and its listener is released
        before the new listener binds.

        Args:
            open_browser: Whether to open the authorization URL in the browser

        Returns:
            Authorization URL for this attempt
        """
        logger.info("Starting sign-in flow")
        await self._cancel_listener()

        self._set_state(SessionState.AUTHENTICATING)
        self.observer.on_authenticating()

        pkce = PkceChallenge.generate()
        auth_url, state = self.oauth_client.build_authorization_url(pkce)
        self._pending = _PendingSignIn(pkce=pkce, state=state)

        server = OAuthCallbackServer(self.config)
        handoff = server.start()
        self._server = server
        self._callback_task = asyncio.create_task(
            self._await_callback(server, handoff), name="oauth-callback"
        )

        if open_browser and not self._open_browser(auth_url):
            await self._cancel_listener()
            self._pending = None
            self._fail("Failed to open browser")

        return auth_url

    def _open_browser(self, url: str) -> bool:
        try:
            opened = self.browser_opener(url)
        except webbrowser.Error as e:
            logger.error("Failed to open browser: %s", e)
            return False
        if not opened:
            logger.error("Failed to open browser")
        return bool(opened)

    async def cancel_sign_in(self) -> None:
        """Abandon the in-flight sign-in attempt."""
        logger.info("Sign-in cancelled")
        await self._cancel_listener()
        self._pending = None
        self._to_signed_out()

    async def _cancel_listener(self) -> None:
        server, task = self._server, self._callback_task
        self._server = None
        self._callback_task = None

        if server is not None:
            await server.stop()
            # Let the OS finish releasing the port before a new bind
            await asyncio.sleep(self.config.callback_settle_delay)

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _await_callback(self, server: OAuthCallbackServer, handoff: asyncio.Queue) -> None:
        result = await handoff.get()
        if self._server is server:
            self._server = None

        if result.status is CallbackStatus.SUCCESS:
            logger.info("Received OAuth callback from server")
            try:
                await self.handle_callback_url(result.url)
            except AzurePimError:
                # Already reported to the observer
                pass
        elif result.status is CallbackStatus.CANCELLED:
            logger.info("OAuth callback server was cancelled")
            self._pending = None
        else:
            logger.error("Callback server error: %s", result.message)
            self._pending = None
            self._fail(f"Authentication error: {result.message}")

    async def handle_callback_url(self, url: str) -> UserInfo:
        """
        Complete sign-in from a callback URL.

        The URL may come from the loopback listener or from any other
        redirect source. The pending attempt is consumed either way.

        Returns:
            UserInfo of the signed-in user

        Raises:
            OAuthFailedError: Provider reported an error
            InvalidAuthCodeError: No code in the URL
            StateValidationError: No pending attempt or state mismatch
            TokenExchangeError: Code exchange failed
            KeychainError: Credentials could not be stored
            ApiError: Profile lookup failed
        """
        pending, self._pending = self._pending, None

        try:
            code, state = parse_callback_url(url)
            validate_state(pending.state if pending else None, state)

            response = await self.oauth_client.exchange_code(code, pending.pkce.verifier)
            expires_at = self.store.store_token_response(response)

            user_info = await self.graph_client.get_user_info(response.access_token)
            self.store.store_user_info(user_info.to_json())
        except AzurePimError as e:
            logger.error("OAuth callback error: %s", e)
            self._fail(user_message_for(e))
            raise

        logger.info("Sign-in successful: %s", user_info.display_name)
        await self._signed_in(user_info, expires_at, response.expires_in)
        return user_info

    # Session restore and upkeep

    async def restore_session(self) -> Optional[UserInfo]:
        """
        Restore the previous session from the credential store.

        A stored refresh token is always redeemed, so a stale access token
        or a missing expiry record from an interrupted write is repaired
        here.

        A rejected refresh token moves to signed-out. A network or server
        failure moves to ERROR so the UI can offer a retry. Stored records
        are kept in both cases.

        Returns:
            UserInfo if a session was restored, None otherwise
        """
        logger.info("Attempting to restore previous session")

        try:
            self.store.get_refresh_token().clear()
        except KeychainError as e:
            logger.info("No existing session to restore: %s", e)
            return None

        self._set_state(SessionState.AUTHENTICATING)
        self.observer.on_authenticating()

        try:
            outcome = await self.refresher.refresh_and_store()
            with self.store.get_access_token() as access_token:
                user_info = await self.graph_client.get_user_info(access_token)
            self.store.store_user_info(user_info.to_json())
        except AzurePimError as e:
            if self._session_unrecoverable(e):
                logger.info("Stored session is no longer valid: %s", e)
                self._to_signed_out()
            else:
                logger.warning("Could not restore session, will retry: %s", e)
                self._fail(user_message_for(e))
            return None

        await self._signed_in(user_info, outcome.expires_at, outcome.expires_in)
        logger.info("Session restored successfully")
        return user_info

    async def refresh(self) -> Optional[RefreshOutcome]:
        """
        Manual "refresh now".

        Returns:
            None when queued to the running scheduler, otherwise the outcome
            of the inline refresh (also passed to the observer)
        """
        logger.info("Manual token refresh requested")
        return await self.scheduler.refresh_now()

    async def get_valid_access_token(self) -> SecretString:
        """
        Access token that is good for at least the refresh margin.

        Refreshes first when the access token or its expiry record is
        missing, unparsable or close to expiry. The check runs under the
        refresh lock, so concurrent callers share one refresh.

        Raises:
            SecretNotFoundError: Nothing to refresh from (sign-in needed)
            TokenRefreshError: Refresh failed
        """
        try:
            outcome = await self.refresher.refresh_if_needed(self._needs_refresh)
        except AzurePimError as e:
            if requires_reauthentication(e):
                await self._session_lost()
            raise
        if outcome is not None:
            self._token_refreshed(outcome.expires_at)
        return self.store.get_access_token()

    def _needs_refresh(self) -> bool:
        try:
            self.store.get_access_token().clear()
            expiry = self.store.get_token_expiry()
        except SecretNotFoundError as e:
            logger.warning("Incomplete session record (%s), refreshing", e.account)
            return True

        remaining = time_until_expiry(expiry)
        return remaining is None or remaining.total_seconds() <= self.config.refresh_buffer_seconds

    async def get_management_token(self) -> SecretString:
        """
        Access token for the Azure Management API.

        Raises:
            SecretNotFoundError: No refresh token stored
            TokenRefreshError: Provider or network failure
        """
        response = await self.refresher.acquire_resource_token(self.config.management_scope)
        logger.info("Successfully acquired Management API token")
        return SecretString(response.access_token)

    async def _on_refresh_result(self, outcome: RefreshOutcome) -> None:
        if outcome.ok:
            self._token_refreshed(outcome.expires_at)
            return

        error = outcome.error
        if self._session_unrecoverable(error):
            logger.warning("Session can no longer be refreshed, sign-in required")
            await self._session_lost()
        else:
            # Scheduler keeps running; the next tick is the retry
            self.observer.on_error(user_message_for(error))

    @staticmethod
    def _session_unrecoverable(error: BaseException) -> bool:
        return requires_reauthentication(error) or isinstance(error, SecretNotFoundError)

    def _token_refreshed(self, expires_at: datetime) -> None:
        self.expires_at = expires_at
        self.observer.on_token_refreshed(expires_at)

    async def _signed_in(self, user_info: UserInfo, expires_at: datetime, expires_in: int) -> None:
        self.user_info = user_info
        self.expires_at = expires_at
        self._set_state(SessionState.SIGNED_IN)
        await self.scheduler.start(expires_in, self.config.refresh_buffer_seconds)
        self.observer.on_signed_in(user_info, expires_at)

    async def _session_lost(self) -> None:
        await self.scheduler.stop()
        self._to_signed_out()

    # Sign-out

    async def sign_out(self) -> None:
        """
        Sign out and delete the stored session.

        The session is signed out locally even if deletion fails.

        Raises:
            KeychainDeleteError: If a stored entry could not be removed
        """
        logger.info("Signing out")
        await self._cancel_listener()
        self._pending = None
        await self._clear_session()

    async def clear_data(self) -> None:
        """Delete all stored data and reset to signed-out."""
        logger.info("Clearing all data")
        await self._clear_session()

    async def _clear_session(self) -> None:
        await self.scheduler.stop()
        try:
            self.store.delete_all()
        except KeychainError as e:
            logger.error("Failed to clear keychain: %s", e)
            raise
        finally:
            self._to_signed_out()

    async def close(self) -> None:
        """Stop background work and close HTTP clients."""
        await self._cancel_listener()
        await self.scheduler.stop()
        await self.oauth_client.aclose()
        await self.graph_client.aclose()

    # State

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            logger.debug("Session state %s -> %s", self.state.value, state.value)
            self.state = state

    def _fail(self, message: str) -> None:
        self._set_state(SessionState.ERROR)
        self.observer.on_error(message)

    def _to_signed_out(self) -> None:
        self.user_info = None
        self.expires_at = None
        self._set_state(SessionState.SIGNED_OUT)
        self.observer.on_signed_out()
