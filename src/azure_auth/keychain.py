"""
Secure credential storage for Azure AD tokens.

This module persists the session in the OS secret store through
``keyring`` (macOS Keychain, Windows Credential Locker, Secret Service).
The session is four independent entries under one service identifier:

- access token
- refresh token
- user info JSON
- token expiry (ISO-8601)

Writes are not transactional across entries. Retrieval distinguishes a
missing entry (``SecretNotFoundError``) from a failing backend
(``KeychainRetrieveError``). Tokens are returned wrapped in
``SecretString`` so callers can clear them when done.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import keyring
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError as BackendError

from .exceptions import (
    KeychainDeleteError,
    KeychainRetrieveError,
    KeychainStoreError,
    SecretNotFoundError,
)
from .secure import SecretString

logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "azurepim.desktop"

ACCOUNT_ACCESS_TOKEN = "azure_access_token"
ACCOUNT_REFRESH_TOKEN = "azure_refresh_token"
ACCOUNT_USER_INFO = "azure_user_info"
ACCOUNT_TOKEN_EXPIRY = "azure_token_expiry"

ALL_ACCOUNTS = (
    ACCOUNT_ACCESS_TOKEN,
    ACCOUNT_REFRESH_TOKEN,
    ACCOUNT_USER_INFO,
    ACCOUNT_TOKEN_EXPIRY,
)


class CredentialStore:
    """
    Keyring-backed store for the signed-in session.

    Each operation is independently retryable.
    """

    def __init__(
        self,
        service: str = DEFAULT_SERVICE,
        backend: Optional[KeyringBackend] = None,
    ):
        """
        Initialize credential store.

        Args:
            service: Service identifier shared by all four entries
            backend: Keyring backend (uses the platform default if not provided)
        """
        self.service = service
        self.backend = backend or keyring.get_keyring()

    # Low-level entry access

    def _set(self, account: str, value: str) -> None:
        try:
            self.backend.set_password(self.service, account, value)
        except BackendError as e:
            logger.error("Failed to store %s: %s", account, e)
            raise KeychainStoreError(f"Failed to store {account}: {e}") from e
        logger.debug("Stored %s", account)

    def _get(self, account: str) -> str:
        try:
            value = self.backend.get_password(self.service, account)
        except BackendError as e:
            logger.error("Failed to retrieve %s: %s", account, e)
            raise KeychainRetrieveError(f"Failed to retrieve {account}: {e}") from e
        if value is None:
            raise SecretNotFoundError(account)
        return value

    def _delete(self, account: str) -> bool:
        """
        Delete one entry.

        Returns:
            True if the entry existed and was removed, False if it was absent

        Raises:
            KeychainDeleteError: If a present entry could not be removed
        """
        try:
            present = self.backend.get_password(self.service, account) is not None
        except BackendError as e:
            raise KeychainDeleteError(f"Failed to inspect {account}: {e}") from e
        if not present:
            return False

        try:
            self.backend.delete_password(self.service, account)
        except BackendError as e:
            # Entry may have vanished between the check and the delete
            try:
                still_present = self.backend.get_password(self.service, account) is not None
            except BackendError:
                still_present = True
            if still_present:
                logger.error("Failed to delete %s: %s", account, e)
                raise KeychainDeleteError(f"Failed to delete {account}: {e}") from e
        return True

    # Access token

    def store_access_token(self, token: str) -> None:
        """Store the access token."""
        self._set(ACCOUNT_ACCESS_TOKEN, token)

    def get_access_token(self) -> SecretString:
        """
        Retrieve the access token.

        Returns:
            SecretString that is cleared when it leaves a ``with`` block

        Raises:
            SecretNotFoundError: No access token stored
            KeychainRetrieveError: Backend failure
        """
        return SecretString(self._get(ACCOUNT_ACCESS_TOKEN))

    # Refresh token

    def store_refresh_token(self, token: str) -> None:
        """Store the refresh token."""
        self._set(ACCOUNT_REFRESH_TOKEN, token)

    def get_refresh_token(self) -> SecretString:
        """
        Retrieve the refresh token.

        Raises:
            SecretNotFoundError: No refresh token stored
            KeychainRetrieveError: Backend failure
        """
        return SecretString(self._get(ACCOUNT_REFRESH_TOKEN))

    # Token expiry

    def store_token_expiry(self, expiry: str) -> None:
        """Store the absolute token expiry (ISO-8601 string)."""
        self._set(ACCOUNT_TOKEN_EXPIRY, expiry)

    def get_token_expiry(self) -> str:
        """Retrieve the token expiry as stored (ISO-8601 string)."""
        return self._get(ACCOUNT_TOKEN_EXPIRY)

    # User info

    def store_user_info(self, user_info_json: str) -> None:
        """Store the user info JSON blob."""
        self._set(ACCOUNT_USER_INFO, user_info_json)

    def get_user_info(self) -> str:
        """Retrieve the user info JSON blob."""
        return self._get(ACCOUNT_USER_INFO)

    # Whole session

    def store_token_response(self, response, now: Optional[datetime] = None) -> datetime:
        """
        Persist the result of a code exchange or refresh.

        The refresh token is only overwritten when the provider rotated it.

        Args:
            response: TokenResponse from the OAuth client
            now: Reference time for the expiry (defaults to current UTC time)

        Returns:
            Absolute expiry that was stored
        """
        expires_at = response.expires_at(now or datetime.now(timezone.utc))
        self.store_access_token(response.access_token)
        if response.refresh_token:
            self.store_refresh_token(response.refresh_token)
        self.store_token_expiry(expires_at.isoformat())
        return expires_at

    def delete_all(self) -> None:
        """
        Delete all four session entries.

        Entries that are already absent count as deleted, so sign-out is
        idempotent. Every entry is attempted even if an earlier one fails.

        Raises:
            KeychainDeleteError: If a present entry could not be removed
        """
        failures = []
        for account in ALL_ACCOUNTS:
            try:
                if self._delete(account):
                    logger.debug("Deleted %s", account)
            except KeychainDeleteError as e:
                failures.append(e)

        if failures:
            raise failures[0]
        logger.info("Cleared stored credentials")

    def has_tokens(self) -> bool:
        """Check if an access or refresh token is stored."""
        for account in (ACCOUNT_ACCESS_TOKEN, ACCOUNT_REFRESH_TOKEN):
            try:
                self._get(account)
                return True
            except (SecretNotFoundError, KeychainRetrieveError):
                continue
        return False
