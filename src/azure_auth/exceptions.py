"""
Exception classes for Azure AD authentication.

This module defines the exception hierarchy for authentication, secure
credential storage and API errors. Every exception carries a short,
UI-safe ``user_message`` and a ``requires_reauthentication`` flag so the
coordinator can decide between "sign in again" and "try again".

Raw provider error bodies are never placed in exception messages.
"""

from typing import Optional


class AzurePimError(Exception):
    """Base exception for all Azure PIM authentication errors."""

    user_message = "An error occurred. Please try again."
    requires_reauthentication = False


class ConfigurationError(AzurePimError):
    """Configuration error (missing or invalid configuration)."""

    user_message = "Configuration error. Please check settings."


# Authentication errors


class AuthError(AzurePimError):
    """Base class for OAuth flow errors."""

    pass


class OAuthFailedError(AuthError):
    """The identity provider reported an authorization failure."""

    user_message = "Sign-in failed. Please try again."

    def __init__(self, description: str):
        self.description = description
        super().__init__(f"OAuth2 authorization failed: {description}")


class InvalidAuthCodeError(AuthError):
    """Callback did not carry a usable authorization code."""

    user_message = "Sign-in failed. Please try again."

    def __init__(self, message: str = "Invalid authorization code"):
        super().__init__(message)


class TokenExchangeError(AuthError):
    """Failed to exchange authorization code for tokens."""

    user_message = "Sign-in failed. Please try again."

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


# Token endpoint statuses that mean the refresh token itself was rejected
GRANT_REJECTED_STATUSES = (400, 401)


class TokenRefreshError(AuthError):
    """
    Failed to refresh access token using refresh token.

    Only a rejected grant (``invalid_grant`` and friends, HTTP 400/401)
    ends the session. Network errors, timeouts and 5xx responses leave the
    refresh token usable, so the next attempt may succeed.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def requires_reauthentication(self) -> bool:
        return self.status_code in GRANT_REJECTED_STATUSES

    @property
    def user_message(self) -> str:
        if self.requires_reauthentication:
            return "Session expired. Please sign in again."
        if self.status_code is None:
            return "Network error. Check your connection."
        return "Token refresh failed. Please try again."


class PkceGenerationError(AuthError):
    """PKCE challenge could not be generated (no usable CSPRNG)."""

    def __init__(self, message: str = "PKCE generation failed"):
        super().__init__(message)


class StateValidationError(AuthError):
    """Callback state did not match the in-flight attempt (possible CSRF)."""

    user_message = "Security error. Please try signing in again."

    def __init__(self, message: str = "State validation failed (possible CSRF attack)"):
        super().__init__(message)


class CallbackTimeoutError(AuthError):
    """No OAuth callback arrived in time."""

    user_message = "Sign-in timed out. Please try again."

    def __init__(self, message: str = "OAuth callback timeout"):
        super().__init__(message)


class UserCancelledError(AuthError):
    """User cancelled the sign-in attempt."""

    user_message = "Sign-in was cancelled."

    def __init__(self, message: str = "User cancelled authentication"):
        super().__init__(message)


# Secure storage errors


class KeychainError(AzurePimError):
    """Base class for secret store errors."""

    pass


class KeychainStoreError(KeychainError):
    """Secret could not be written."""

    user_message = "Failed to save credentials securely."


class KeychainRetrieveError(KeychainError):
    """Secret store failed while reading an entry."""

    pass


class KeychainDeleteError(KeychainError):
    """A present secret entry could not be removed."""

    pass


class SecretNotFoundError(KeychainError):
    """Requested secret entry does not exist."""

    user_message = "No saved session found."

    def __init__(self, account: str):
        self.account = account
        super().__init__(f"Secret not found in keychain: {account}")


# API errors


class ApiError(AzurePimError):
    """Base class for resource API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UnauthorizedError(ApiError):
    """API returned 401."""

    user_message = "Authentication expired. Sign in again."
    requires_reauthentication = True

    def __init__(self, message: str = "Unauthorized (401): Token may be expired"):
        super().__init__(message, status_code=401)


class ForbiddenError(ApiError):
    """API returned 403."""

    user_message = "Insufficient permissions for this operation."

    def __init__(self, message: str = "Forbidden (403): Insufficient permissions"):
        super().__init__(message, status_code=403)


class RateLimitedError(ApiError):
    """API returned 429."""

    user_message = "Too many requests. Please wait a moment."

    def __init__(self, message: str = "Rate limited (429): Too many requests"):
        super().__init__(message, status_code=429)


class MalformedResponseError(ApiError):
    """API response could not be parsed."""

    pass


class ApiRequestError(ApiError):
    """API request failed (network error or unexpected status)."""

    user_message = "Network error. Check your connection."


def user_message_for(error: BaseException) -> str:
    """
    Get the UI-safe message for an exception.

    Args:
        error: Any exception raised while talking to the core

    Returns:
        Short message suitable for display; never contains provider details
    """
    if isinstance(error, AzurePimError):
        return error.user_message
    return AzurePimError.user_message


def requires_reauthentication(error: BaseException) -> bool:
    """Check whether an error means the session is no longer usable."""
    return isinstance(error, AzurePimError) and error.requires_reauthentication
