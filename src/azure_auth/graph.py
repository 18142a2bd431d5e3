"""Microsoft Graph client for the signed-in user's profile and organization."""

import logging
from typing import List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import (
    ApiRequestError,
    ForbiddenError,
    MalformedResponseError,
    RateLimitedError,
    UnauthorizedError,
)
from .secure import SecretString, reveal

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GROUP_ODATA_TYPE = "#microsoft.graph.group"


class UserProfile(BaseModel):
    """User profile from the Graph /me endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    given_name: Optional[str] = Field(default=None, alias="givenName")
    surname: Optional[str] = None
    mail: Optional[str] = None
    user_principal_name: Optional[str] = Field(default=None, alias="userPrincipalName")
    job_title: Optional[str] = Field(default=None, alias="jobTitle")
    office_location: Optional[str] = Field(default=None, alias="officeLocation")

    def display_name_or_upn(self) -> str:
        """Best available display name."""
        return self.display_name or self.user_principal_name or "Unknown User"

    def email(self) -> str:
        """Best available email address."""
        return self.mail or self.user_principal_name or "No email"


class VerifiedDomain(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    is_default: Optional[bool] = Field(default=None, alias="isDefault")
    is_initial: Optional[bool] = Field(default=None, alias="isInitial")


class Organization(BaseModel):
    """Organization from the Graph /organization endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    display_name: Optional[str] = Field(default=None, alias="displayName")
    verified_domains: List[VerifiedDomain] = Field(default_factory=list, alias="verifiedDomains")

    def name_or_id(self) -> str:
        return self.display_name or self.id


class GroupMembership(BaseModel):
    """A group the user is a member of."""

    id: str
    display_name: Optional[str] = None


class UserInfo(BaseModel):
    """
    Combined user info shown in the UI and stored in the credential store.

    Attributes:
        user_id: Object ID of the user (principal ID for PIM)
        display_name: Display name or UPN
        email: Mail or UPN
        tenant_id: Tenant ID
        tenant_name: Organization display name or tenant ID
    """

    user_id: str
    display_name: str
    email: str
    tenant_id: str
    tenant_name: str

    @classmethod
    def from_profile_and_org(cls, profile: UserProfile, org: Organization) -> "UserInfo":
        return cls(
            user_id=profile.id,
            display_name=profile.display_name_or_upn(),
            email=profile.email(),
            tenant_id=org.id,
            tenant_name=org.name_or_id(),
        )

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "UserInfo":
        return cls.model_validate_json(data)


class GraphClient:
    """
    HTTP client for the Microsoft Graph directory-profile API.

    Raw error bodies are never surfaced: non-2xx responses map to typed
    errors carrying only the status code.
    """

    def __init__(
        self,
        base_url: str = GRAPH_BASE_URL,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Graph client.

        Args:
            base_url: Graph base URL (default: v1.0 endpoint)
            timeout: Total request timeout in seconds
            connect_timeout: Connect timeout in seconds
            http_client: Pre-built client (creates default if not provided)
        """
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _get_json(self, url: str, access_token: Union[str, SecretString]) -> dict:
        try:
            response = await self._client.get(
                url, headers={"Authorization": f"Bearer {reveal(access_token)}"}
            )
        except httpx.HTTPError as e:
            logger.error("Graph request failed: %s", e)
            raise ApiRequestError(f"Graph API request failed: {type(e).__name__}") from e

        status = response.status_code
        if status == 200:
            try:
                return response.json()
            except ValueError as e:
                raise MalformedResponseError(f"Failed to parse API response: {e}") from e
        if status == 401:
            raise UnauthorizedError()
        if status == 403:
            raise ForbiddenError()
        if status == 429:
            raise RateLimitedError()

        logger.debug("Graph request failed: HTTP %s - %s", status, response.text)
        raise ApiRequestError(f"Graph API request failed: HTTP {status}", status_code=status)

    async def get_user_profile(self, access_token: Union[str, SecretString]) -> UserProfile:
        """
        Fetch the current user's profile.

        Raises:
            UnauthorizedError, ForbiddenError, RateLimitedError: On 401/403/429
            MalformedResponseError: If the body does not match the profile shape
            ApiRequestError: On network error or other status
        """
        data = await self._get_json(f"{self.base_url}/me", access_token)
        try:
            return UserProfile.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(f"Failed to parse user profile: {e}") from e

    async def get_organization(self, access_token: Union[str, SecretString]) -> Organization:
        """Fetch the user's organization (first entry of /organization)."""
        data = await self._get_json(f"{self.base_url}/organization", access_token)
        try:
            first = data["value"][0]
            return Organization.model_validate(first)
        except (KeyError, IndexError, TypeError):
            raise MalformedResponseError("No organization found")
        except ValidationError as e:
            raise MalformedResponseError(f"Failed to parse organization: {e}") from e

    async def get_user_groups(self, access_token: Union[str, SecretString]) -> List[GroupMembership]:
        """
        Fetch the groups the user is a member of.

        Follows ``@odata.nextLink`` pagination and keeps only group objects
        (directory roles and other object types are skipped).
        """
        url: Optional[str] = (
            f"{self.base_url}/me/memberOf?$select=id,displayName"
            f"&$filter=isof('microsoft.graph.group')"
        )
        groups: List[GroupMembership] = []

        while url:
            data = await self._get_json(url, access_token)
            for item in data.get("value", []):
                if item.get("@odata.type") != GROUP_ODATA_TYPE:
                    continue
                groups.append(
                    GroupMembership(id=item["id"], display_name=item.get("displayName"))
                )
            url = data.get("@odata.nextLink")

        logger.info("User is member of %d groups", len(groups))
        return groups

    async def get_user_info(self, access_token: Union[str, SecretString]) -> UserInfo:
        """Fetch profile and organization and combine them."""
        profile = await self.get_user_profile(access_token)
        organization = await self.get_organization(access_token)
        return UserInfo.from_profile_and_org(profile, organization)
