"""
OAuth 2.0 protocol client for Azure AD.

This module implements the protocol side of the Authorization Code flow
with PKCE:
- Authorization URL construction with a fresh CSRF state
- Authorization code exchange
- Token refresh
- Resource-scoped token acquisition for a second API audience
- Callback URL parsing and state validation

There is no built-in retry: callers decide retry policy. Provider error
bodies are logged for operators and never returned to callers.
"""

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Union
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx

from .config import AzureOAuthConfig
from .exceptions import (
    InvalidAuthCodeError,
    OAuthFailedError,
    StateValidationError,
    TokenExchangeError,
    TokenRefreshError,
)
from .pkce import PkceChallenge, generate_state
from .secure import SecretString, reveal

logger = logging.getLogger(__name__)


@dataclass
class TokenResponse:
    """
    Token response from the Azure AD token endpoint.

    Attributes:
        access_token: Bearer token for API calls (secret)
        token_type: Token type (typically "Bearer")
        expires_in: Access token lifetime in seconds
        refresh_token: New refresh token, if the provider rotated it (secret)
        scope: Granted scopes
    """

    access_token: str = field(repr=False)
    token_type: str
    expires_in: int
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: str = ""

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        """
        Absolute expiry of the access token.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Timezone-aware UTC datetime
        """
        now = now or datetime.now(timezone.utc)
        return now + timedelta(seconds=self.expires_in)

    @classmethod
    def from_dict(cls, data: dict) -> "TokenResponse":
        """
        Create TokenResponse from the token endpoint JSON.

        Raises:
            KeyError: If access_token or expires_in are missing
            ValueError: If expires_in is not an integer
        """
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(data["expires_in"]),
            refresh_token=data.get("refresh_token"),
            scope=data.get("scope", ""),
        )


class OAuth2Client:
    """
    OAuth 2.0 client for Azure AD v2.0 endpoints.

    The underlying ``httpx.AsyncClient`` uses fixed connect/total timeouts
    and never follows redirects on token endpoints.
    """

    def __init__(
        self,
        config: AzureOAuthConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize OAuth client.

        Args:
            config: OAuth configuration
            http_client: Pre-built client (creates default if not provided)
        """
        self.config = config
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.request_timeout, connect=config.connect_timeout),
            follow_redirects=False,
        )

    async def __aenter__(self) -> "OAuth2Client":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def build_authorization_url(self, pkce: PkceChallenge) -> Tuple[str, str]:
        """
        Generate the authorization URL for browser-based sign-in.

        Args:
            pkce: Challenge for this sign-in attempt

        Returns:
            Tuple of (authorization URL, state); the state must be bound to
            the in-flight attempt and checked when the callback arrives
        """
        state = generate_state()
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "redirect_uri": self.config.redirect_uri,
            "response_mode": "query",
            "scope": self.config.scope_string,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
        }
        url = f"{self.config.authorize_url}?{urlencode(params)}"
        logger.debug("Generated authorization URL for tenant %s", self.config.tenant)
        return url, state

    async def exchange_code(self, code: str, pkce_verifier: str) -> TokenResponse:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback
            pkce_verifier: Verifier of the attempt that produced the code

        Returns:
            TokenResponse with access and (usually) refresh tokens

        Raises:
            TokenExchangeError: On network error, non-2xx status or bad JSON
        """
        logger.info("Exchanging authorization code for tokens")
        data = {
            "client_id": self.config.client_id,
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "code_verifier": pkce_verifier,
            "scope": self.config.scope_string,
        }
        return await self._post_token_request(data, TokenExchangeError, "Token exchange")

    async def refresh_token(self, refresh_token: Union[str, SecretString]) -> TokenResponse:
        """
        Refresh an access token for the default scope set.

        Args:
            refresh_token: Current refresh token

        Returns:
            TokenResponse with a new access token

        Raises:
            TokenRefreshError: On network error, non-2xx status or bad JSON
        """
        logger.info("Refreshing access token")
        return await self._refresh_grant(refresh_token, self.config.scope_string, "Token refresh")

    async def acquire_resource_token(
        self, refresh_token: Union[str, SecretString], resource_scope: str
    ) -> TokenResponse:
        """
        Acquire an access token for a different API audience.

        Azure AD issues audience-bound tokens, so one refresh token can mint
        access tokens for several resources, each with its own round trip.

        Args:
            refresh_token: Current refresh token
            resource_scope: Scope string for the resource, e.g.
                ``https://management.azure.com/.default offline_access``

        Returns:
            TokenResponse for the requested resource

        Raises:
            TokenRefreshError: On network error, non-2xx status or bad JSON
        """
        logger.debug("Requesting resource token")
        return await self._refresh_grant(refresh_token, resource_scope, "Resource token request")

    async def get_management_token(self, refresh_token: Union[str, SecretString]) -> TokenResponse:
        """Acquire an Azure Management API token using the configured scope."""
        response = await self.acquire_resource_token(refresh_token, self.config.management_scope)
        logger.info("Successfully acquired Management API token")
        return response

    async def _refresh_grant(
        self, refresh_token: Union[str, SecretString], scope: str, operation: str
    ) -> TokenResponse:
        data = {
            "client_id": self.config.client_id,
            "grant_type": "refresh_token",
            "refresh_token": reveal(refresh_token),
            "scope": scope,
        }
        return await self._post_token_request(data, TokenRefreshError, operation)

    async def _post_token_request(self, data: dict, error_cls, operation: str) -> TokenResponse:
        try:
            response = await self._client.post(
                self.config.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            # Exception text from httpx never contains the form body
            logger.error("%s failed: network error: %s", operation, e)
            raise error_cls(f"{operation} failed: network error") from e
        finally:
            data.clear()

        if not response.is_success:
            logger.error(
                "%s failed: HTTP %s - %s", operation, response.status_code, response.text
            )
            raise error_cls(
                f"{operation} failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return TokenResponse.from_dict(response.json())
        except (KeyError, TypeError, ValueError) as e:
            logger.error("%s failed: invalid response from token endpoint: %s", operation, e)
            raise error_cls(f"{operation} failed: invalid response") from e


def parse_callback_url(url: str) -> Tuple[str, str]:
    """
    Parse an OAuth callback URL to extract code and state.

    Args:
        url: Full callback URL as captured by the callback server

    Returns:
        Tuple of (code, state)

    Raises:
        OAuthFailedError: If the callback carries an ``error`` parameter
        InvalidAuthCodeError: If the URL is unparsable or has no code
        StateValidationError: If the URL has no state
    """
    try:
        query = urlsplit(url).query
    except ValueError as e:
        raise InvalidAuthCodeError() from e

    params = parse_qs(query, keep_blank_values=True)

    if "error" in params:
        error = params["error"][0]
        description = params.get("error_description", [error])[0]
        raise OAuthFailedError(description)

    code = params.get("code", [""])[0]
    if not code:
        raise InvalidAuthCodeError()

    state = params.get("state", [""])[0]
    if not state:
        raise StateValidationError()

    return code, state


def validate_state(expected: Optional[str], received: str) -> None:
    """
    Check the callback state against the in-flight attempt.

    Raises:
        StateValidationError: If there is no pending attempt or states differ
    """
    if expected is None or not hmac.compare_digest(expected.encode(), received.encode()):
        raise StateValidationError()
