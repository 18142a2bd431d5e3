"""
OAuth configuration for Azure AD authentication.

This module provides configuration management for the OAuth 2.0
Authorization Code flow with PKCE against Azure AD v2.0 endpoints.
Configuration can be loaded from environment variables or provided
programmatically.
"""

import os
from dataclasses import dataclass, field
from typing import List

from .exceptions import ConfigurationError

PLACEHOLDER_CLIENT_ID = "YOUR_AZURE_AD_CLIENT_ID"
PLACEHOLDER_TENANT = "YOUR_TENANT_ID"

DEFAULT_SCOPES = ["openid", "profile", "email", "offline_access", "User.Read"]


@dataclass
class AzureOAuthConfig:
    """
    Configuration for Azure AD OAuth 2.0 with PKCE.

    The redirect URI always points at the local loopback callback server,
    so it is derived from the callback host, port and path rather than
    configured separately.

    Attributes:
        client_id: Azure AD application (client) ID
        tenant: Tenant ID or domain
        scopes: Scopes requested at sign-in (space-joined on the wire)
        authority_host: Azure AD login host
        callback_host: Host name used in the redirect URI
        callback_port: Fixed loopback port for the callback server
        callback_path: URL path for the callback
        management_scope: Scope for the Azure Management API audience
        graph_base_url: Microsoft Graph base URL
        refresh_buffer_seconds: Refresh tokens this many seconds before expiry
        min_refresh_interval_seconds: Lower bound for the refresh interval
        connect_timeout: HTTP connect timeout (seconds)
        request_timeout: HTTP total request timeout (seconds)
        callback_read_timeout: Per-connection read timeout of the callback server
        callback_poll_interval: Sleep between accept polls of the callback server
        callback_settle_delay: Pause after cancelling a callback server before rebinding
        keychain_service: Service identifier for the secret store entries
    """

    # Required - from Azure AD app registration
    client_id: str
    tenant: str

    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Azure AD v2.0 endpoints
    authority_host: str = "https://login.microsoftonline.com"

    # Callback configuration (loopback only)
    callback_host: str = "localhost"
    callback_port: int = 28491
    callback_path: str = "/callback"

    # Second API audience
    management_scope: str = "https://management.azure.com/.default offline_access"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"

    # Token refresh settings
    refresh_buffer_seconds: int = 300  # Refresh 5 min before expiry
    min_refresh_interval_seconds: float = 60

    # HTTP timeouts
    connect_timeout: float = 10.0
    request_timeout: float = 30.0

    # Callback server cadence
    callback_read_timeout: float = 5.0
    callback_poll_interval: float = 0.1
    callback_settle_delay: float = 0.05

    keychain_service: str = "azurepim.desktop"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.client_id or self.client_id == PLACEHOLDER_CLIENT_ID:
            raise ConfigurationError(
                "Azure AD client_id not configured. Set AZURE_CLIENT_ID environment variable"
            )

        if not self.tenant or self.tenant == PLACEHOLDER_TENANT:
            raise ConfigurationError(
                "Azure AD tenant not configured. Set AZURE_TENANT_ID environment variable"
            )

        if not self.scopes:
            raise ConfigurationError("scopes cannot be empty")

        # Port 0 asks the OS for an ephemeral port (tests only)
        if not isinstance(self.callback_port, int) or not (
            0 <= self.callback_port <= 65535
        ):
            raise ConfigurationError(
                f"callback_port must be between 0 and 65535, got {self.callback_port}"
            )

        if not self.callback_path.startswith("/"):
            raise ConfigurationError("callback_path must start with '/'")

        if self.refresh_buffer_seconds < 0:
            raise ConfigurationError("refresh_buffer_seconds cannot be negative")

        if self.min_refresh_interval_seconds <= 0:
            raise ConfigurationError("min_refresh_interval_seconds must be positive")

        if self.connect_timeout <= 0 or self.request_timeout <= 0:
            raise ConfigurationError("HTTP timeouts must be positive")

    @property
    def redirect_uri(self) -> str:
        """
        Full redirect URI registered with Azure AD.

        Returns:
            Loopback callback URL (e.g., http://localhost:28491/callback)
        """
        return f"http://{self.callback_host}:{self.callback_port}{self.callback_path}"

    @property
    def authorize_url(self) -> str:
        """Tenant authorize endpoint (browser redirect target)."""
        return f"{self.authority_host}/{self.tenant}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        """Tenant token endpoint."""
        return f"{self.authority_host}/{self.tenant}/oauth2/v2.0/token"

    @property
    def scope_string(self) -> str:
        """Scopes joined the way the token endpoint expects them."""
        return " ".join(self.scopes)

    @classmethod
    def from_env(cls) -> "AzureOAuthConfig":
        """
        Load configuration from environment variables.

        Required environment variables:
            AZURE_CLIENT_ID: Azure AD application (client) ID
            AZURE_TENANT_ID: Tenant ID or domain

        Optional environment variables:
            AZURE_SCOPES: Space-separated scopes
            AZURE_CALLBACK_PORT: Loopback callback port (default: 28491)
            AZURE_REFRESH_BUFFER_SECONDS: Refresh margin (default: 300)

        Returns:
            AzureOAuthConfig instance

        Raises:
            ConfigurationError: If required environment variables are missing
        """
        client_id = os.environ.get("AZURE_CLIENT_ID")
        tenant = os.environ.get("AZURE_TENANT_ID")

        if not client_id or not tenant:
            raise ConfigurationError(
                "Missing Azure AD configuration. Set environment variables:\n"
                "  AZURE_CLIENT_ID=<your-azure-ad-client-id>\n"
                "  AZURE_TENANT_ID=<your-tenant-id>"
            )

        scopes_env = os.environ.get("AZURE_SCOPES")
        scopes = scopes_env.split() if scopes_env else list(DEFAULT_SCOPES)

        try:
            callback_port = int(os.environ.get("AZURE_CALLBACK_PORT", "28491"))
            refresh_buffer = int(os.environ.get("AZURE_REFRESH_BUFFER_SECONDS", "300"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            client_id=client_id,
            tenant=tenant,
            scopes=scopes,
            callback_port=callback_port,
            refresh_buffer_seconds=refresh_buffer,
        )
