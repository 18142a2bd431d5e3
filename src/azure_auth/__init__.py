"""
Azure AD authentication core for the Azure PIM menu-bar app.

This module implements the OAuth 2.0 Authorization Code flow with PKCE
against Azure AD, for a desktop app that receives the browser redirect on
a loopback port.

The module follows a desktop deployment model:
- Sign-in opens the system browser; a loopback listener catches the redirect
- Tokens live in the OS secret store (one entry per record)
- A background scheduler refreshes the access token ahead of expiry

Public API:
    AzureOAuthConfig: OAuth configuration management
    PkceChallenge: PKCE verifier/challenge pair
    OAuth2Client: Authorization URL, code exchange, refresh, resource tokens
    OAuthCallbackServer: Single-shot loopback redirect listener
    CredentialStore: Keyring-backed session storage
    SecretString: Zeroizing wrapper for secrets
    TokenRefreshScheduler: Background token refresh
    GraphClient: Microsoft Graph profile lookups
    AuthCoordinator: High-level sign-in/session interface

Exceptions:
    AzurePimError: Base exception
    ConfigurationError: Configuration error
    AuthError: OAuth flow errors
    KeychainError: Secret store errors
    ApiError: Resource API errors
"""

from .callback_server import CallbackResult, CallbackStatus, OAuthCallbackServer
from .config import AzureOAuthConfig
from .coordinator import AuthCoordinator, SessionObserver, SessionState
from .exceptions import (
    ApiError,
    ApiRequestError,
    AuthError,
    AzurePimError,
    CallbackTimeoutError,
    ConfigurationError,
    ForbiddenError,
    InvalidAuthCodeError,
    KeychainDeleteError,
    KeychainError,
    KeychainRetrieveError,
    KeychainStoreError,
    MalformedResponseError,
    OAuthFailedError,
    PkceGenerationError,
    RateLimitedError,
    SecretNotFoundError,
    StateValidationError,
    TokenExchangeError,
    TokenRefreshError,
    UnauthorizedError,
    UserCancelledError,
    requires_reauthentication,
    user_message_for,
)
from .graph import GraphClient, GroupMembership, Organization, UserInfo, UserProfile
from .keychain import CredentialStore
from .oauth_client import OAuth2Client, TokenResponse, parse_callback_url, validate_state
from .pkce import PkceChallenge, generate_state
from .secure import SecretString
from .token_manager import (
    RefreshOutcome,
    TokenRefresher,
    TokenRefreshScheduler,
    compute_refresh_delay,
    format_duration,
    time_until_expiry,
)

__all__ = [
    # Configuration
    "AzureOAuthConfig",
    # PKCE
    "PkceChallenge",
    "generate_state",
    # OAuth Client
    "OAuth2Client",
    "TokenResponse",
    "parse_callback_url",
    "validate_state",
    # Callback Server
    "OAuthCallbackServer",
    "CallbackResult",
    "CallbackStatus",
    # Credential Store
    "CredentialStore",
    "SecretString",
    # Token Refresh
    "TokenRefresher",
    "TokenRefreshScheduler",
    "RefreshOutcome",
    "compute_refresh_delay",
    "format_duration",
    "time_until_expiry",
    # Graph
    "GraphClient",
    "UserProfile",
    "Organization",
    "GroupMembership",
    "UserInfo",
    # Coordinator
    "AuthCoordinator",
    "SessionObserver",
    "SessionState",
    # Exceptions
    "AzurePimError",
    "ConfigurationError",
    "AuthError",
    "OAuthFailedError",
    "InvalidAuthCodeError",
    "TokenExchangeError",
    "TokenRefreshError",
    "PkceGenerationError",
    "StateValidationError",
    "CallbackTimeoutError",
    "UserCancelledError",
    "KeychainError",
    "KeychainStoreError",
    "KeychainRetrieveError",
    "KeychainDeleteError",
    "SecretNotFoundError",
    "ApiError",
    "UnauthorizedError",
    "ForbiddenError",
    "RateLimitedError",
    "MalformedResponseError",
    "ApiRequestError",
    "user_message_for",
    "requires_reauthentication",
]
