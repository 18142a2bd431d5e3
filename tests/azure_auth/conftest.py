"""Pytest fixtures for Azure authentication tests.

This module provides an in-memory keyring backend so credential store
tests never touch the real OS secret store, plus shared configuration
and token endpoint fixtures.
"""

from typing import Dict, Optional, Set, Tuple

import pytest
from keyring.backend import KeyringBackend
from keyring.errors import KeyringError, PasswordDeleteError, PasswordSetError

from src.azure_auth.config import AzureOAuthConfig
from src.azure_auth.keychain import CredentialStore


class InMemoryKeyring(KeyringBackend):
    """Keyring backend that keeps entries in a dict.

    Accounts listed in ``fail_set``, ``fail_get`` or ``fail_delete`` raise
    a keyring error for that operation, to simulate a broken secret store.
    """

    priority = 1

    def __init__(self):
        super().__init__()
        self.entries: Dict[Tuple[str, str], str] = {}
        self.fail_set: Set[str] = set()
        self.fail_get: Set[str] = set()
        self.fail_delete: Set[str] = set()

    def get_password(self, service: str, username: str) -> Optional[str]:
        if username in self.fail_get:
            raise KeyringError(f"read failed for {username}")
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if username in self.fail_set:
            raise PasswordSetError(f"write failed for {username}")
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if username in self.fail_delete:
            raise PasswordDeleteError(f"delete failed for {username}")
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found")


@pytest.fixture
def config():
    """Create test OAuth config."""
    return AzureOAuthConfig(client_id="test-client-id", tenant="test-tenant")


@pytest.fixture
def listener_config():
    """Create test OAuth config with an ephemeral callback port."""
    return AzureOAuthConfig(
        client_id="test-client-id",
        tenant="test-tenant",
        callback_port=0,
        callback_poll_interval=0.01,
        callback_read_timeout=1.0,
    )


@pytest.fixture
def keyring_backend():
    """Create empty in-memory keyring."""
    return InMemoryKeyring()


@pytest.fixture
def store(keyring_backend):
    """Create credential store backed by the in-memory keyring."""
    return CredentialStore(service="azurepim.test", backend=keyring_backend)


@pytest.fixture
def token_payload():
    """Token endpoint JSON for a successful grant."""
    return {
        "access_token": "new-access-token",
        "refresh_token": "new-refresh-token",
        "token_type": "Bearer",
        "expires_in": 3600,
        "scope": "openid profile email offline_access User.Read",
    }
