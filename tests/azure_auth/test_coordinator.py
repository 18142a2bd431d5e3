"""Tests for the authentication coordinator."""

import asyncio
import socket
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from pytest_httpx import HTTPXMock

from src.azure_auth.config import AzureOAuthConfig
from src.azure_auth.coordinator import AuthCoordinator, SessionObserver, SessionState
from src.azure_auth.exceptions import (
    KeychainDeleteError,
    KeychainStoreError,
    SecretNotFoundError,
    StateValidationError,
    TokenRefreshError,
)
from src.azure_auth.graph import UserInfo
from src.azure_auth.keychain import ACCOUNT_ACCESS_TOKEN, ACCOUNT_TOKEN_EXPIRY
from src.azure_auth.pkce import compute_challenge

TOKEN_URL = "https://login.microsoftonline.com/test-tenant/oauth2/v2.0/token"
GRAPH = "https://graph.microsoft.com/v1.0"

PROFILE = {
    "id": "user-object-id",
    "displayName": "Ada Lovelace",
    "mail": "ada@contoso.com",
    "userPrincipalName": "ada@contoso.onmicrosoft.com",
}
ORGANIZATION = {"value": [{"id": "tenant-id", "displayName": "Contoso"}]}


class RecordingObserver(SessionObserver):
    """Records session updates in order."""

    def __init__(self):
        self.events = []
        self.settled = asyncio.Event()

    def on_authenticating(self):
        self.events.append(("authenticating",))

    def on_signed_in(self, user_info, expires_at):
        self.events.append(("signed_in", user_info.display_name))
        self.settled.set()

    def on_token_refreshed(self, expires_at):
        self.events.append(("token_refreshed", expires_at))

    def on_error(self, message):
        self.events.append(("error", message))
        self.settled.set()

    def on_signed_out(self):
        self.events.append(("signed_out",))

    @property
    def names(self):
        return [event[0] for event in self.events]


class FakeBrowser:
    """Records authorization URLs instead of opening a browser."""

    def __init__(self, opens: bool = True):
        self.urls = []
        self.opens = opens

    def __call__(self, url):
        self.urls.append(url)
        return self.opens


def send_callback(port: int, query: str) -> bytes:
    """Play the browser's redirect against the loopback listener."""
    request = f"GET /callback?{query} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode()
    with socket.create_connection(("127.0.0.1", port), timeout=5) as conn:
        conn.sendall(request)
        chunks = []
        while True:
            chunk = conn.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


def query_of(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


async def deliver_callback(coordinator: AuthCoordinator, query: str) -> None:
    server = coordinator._server
    assert await asyncio.to_thread(server.wait_until_ready, 5)
    await asyncio.to_thread(send_callback, server.bound_port, query)


def add_sign_in_responses(httpx_mock: HTTPXMock, token_payload: dict) -> None:
    httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
    httpx_mock.add_response(url=f"{GRAPH}/me", json=PROFILE)
    httpx_mock.add_response(url=f"{GRAPH}/organization", json=ORGANIZATION)


def store_session(store, expires_at: datetime) -> None:
    store.store_access_token("stored-access")
    store.store_refresh_token("stored-refresh")
    store.store_token_expiry(expires_at.isoformat())


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def coordinator(listener_config, store, observer, browser):
    """Create coordinator wired to test doubles."""
    return AuthCoordinator(
        config=listener_config, store=store, observer=observer, browser_opener=browser
    )


class TestSignIn:
    """Tests for the interactive sign-in flow."""

    @pytest.mark.asyncio
    async def test_end_to_end_sign_in(
        self, httpx_mock: HTTPXMock, coordinator, observer, browser, store, token_payload
    ):
        """Authorize URL -> callback -> exchange -> stored -> scheduler armed at 3300s."""
        add_sign_in_responses(httpx_mock, token_payload)

        auth_url = await coordinator.start_sign_in()

        assert browser.urls == [auth_url]
        assert coordinator.state is SessionState.AUTHENTICATING
        params = query_of(auth_url)

        await deliver_callback(coordinator, f"code=abc123&state={params['state']}")
        await asyncio.wait_for(observer.settled.wait(), 5)

        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.names == ["authenticating", "signed_in"]
        assert coordinator.user_info.display_name == "Ada Lovelace"

        # PKCE binding: the verifier sent matches the challenge in the URL
        form = query_of("?" + httpx_mock.get_requests()[0].content.decode())
        assert form["code"] == "abc123"
        assert compute_challenge(form["code_verifier"]) == params["code_challenge"]

        # Credentials persisted
        assert store.get_access_token().reveal() == "new-access-token"
        assert store.get_refresh_token().reveal() == "new-refresh-token"
        assert UserInfo.from_json(store.get_user_info()).tenant_name == "Contoso"
        expires_at = datetime.fromisoformat(store.get_token_expiry())
        assert expires_at == coordinator.expires_at

        # First real tick at expires_in - margin
        assert coordinator.scheduler.is_running
        assert coordinator.scheduler.interval == 3300

        await coordinator.close()

    @pytest.mark.asyncio
    async def test_graph_request_uses_new_access_token(
        self, httpx_mock: HTTPXMock, coordinator, observer, token_payload
    ):
        """Profile lookups use the token from the exchange."""
        add_sign_in_responses(httpx_mock, token_payload)

        auth_url = await coordinator.start_sign_in()
        state = query_of(auth_url)["state"]
        await deliver_callback(coordinator, f"code=abc&state={state}")
        await asyncio.wait_for(observer.settled.wait(), 5)

        me_request = httpx_mock.get_requests(url=f"{GRAPH}/me")[0]
        assert me_request.headers["Authorization"] == "Bearer new-access-token"
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_state_mismatch_rejected(self, coordinator, observer, store):
        """A callback with a foreign state never reaches the token endpoint."""
        await coordinator.start_sign_in()

        await deliver_callback(coordinator, "code=abc&state=forged")
        await asyncio.wait_for(observer.settled.wait(), 5)

        assert coordinator.state is SessionState.ERROR
        assert observer.events[-1] == ("error", "Security error. Please try signing in again.")
        assert not store.has_tokens()
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_provider_error_callback(self, coordinator, observer):
        """An error redirect moves the session to ERROR."""
        await coordinator.start_sign_in()

        await deliver_callback(
            coordinator, "error=access_denied&error_description=User%20cancelled"
        )
        await asyncio.wait_for(observer.settled.wait(), 5)

        assert coordinator.state is SessionState.ERROR
        assert observer.events[-1] == ("error", "Sign-in failed. Please try again.")
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_token_exchange_failure(self, httpx_mock: HTTPXMock, coordinator, observer):
        """A failed exchange is reported without provider details."""
        httpx_mock.add_response(
            method="POST",
            url=TOKEN_URL,
            status_code=400,
            json={"error": "invalid_grant", "error_description": "AADSTS54005: code redeemed"},
        )

        auth_url = await coordinator.start_sign_in()
        await deliver_callback(coordinator, f"code=abc&state={query_of(auth_url)['state']}")
        await asyncio.wait_for(observer.settled.wait(), 5)

        assert coordinator.state is SessionState.ERROR
        assert "AADSTS" not in observer.events[-1][1]
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_callback_without_pending_attempt(self, coordinator):
        """A callback URL with no sign-in in flight is rejected."""
        with pytest.raises(StateValidationError):
            await coordinator.handle_callback_url(
                "http://localhost:28491/callback?code=abc&state=xyz"
            )

        assert coordinator.state is SessionState.ERROR

    @pytest.mark.asyncio
    async def test_new_attempt_supersedes_old(self, coordinator, observer):
        """Starting again releases the old listener and discards its state."""
        first_url = await coordinator.start_sign_in()
        first_server = coordinator._server
        assert await asyncio.to_thread(first_server.wait_until_ready, 5)

        second_url = await coordinator.start_sign_in()

        assert not first_server.is_running
        assert coordinator._server is not first_server

        # The first attempt's state no longer validates
        old_state = query_of(first_url)["state"]
        assert old_state != query_of(second_url)["state"]
        await deliver_callback(coordinator, f"code=abc&state={old_state}")
        await asyncio.wait_for(observer.settled.wait(), 5)
        assert coordinator.state is SessionState.ERROR
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_cancel_sign_in(self, coordinator, observer):
        """Cancelling stops the listener and returns to signed-out."""
        await coordinator.start_sign_in()
        server = coordinator._server

        await coordinator.cancel_sign_in()

        assert not server.is_running
        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.names == ["authenticating", "signed_out"]

    @pytest.mark.asyncio
    async def test_browser_failure(self, listener_config, store, observer):
        """If the browser cannot be opened the attempt is abandoned."""
        coordinator = AuthCoordinator(
            config=listener_config,
            store=store,
            observer=observer,
            browser_opener=FakeBrowser(opens=False),
        )

        await coordinator.start_sign_in()

        assert coordinator.state is SessionState.ERROR
        assert observer.events[-1] == ("error", "Failed to open browser")
        assert coordinator._server is None
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_start_without_browser(self, coordinator, browser):
        """open_browser=False only returns the URL."""
        auth_url = await coordinator.start_sign_in(open_browser=False)

        assert browser.urls == []
        assert auth_url.startswith(coordinator.config.authorize_url)
        await coordinator.close()


class TestRestoreSession:
    """Tests for restoring a stored session on startup."""

    @pytest.mark.asyncio
    async def test_restore_session(
        self, httpx_mock: HTTPXMock, coordinator, observer, store, token_payload
    ):
        """A stored refresh token is redeemed and the session resumes."""
        add_sign_in_responses(httpx_mock, token_payload)
        store.store_refresh_token("stored-refresh")

        user_info = await coordinator.restore_session()

        assert user_info.email == "ada@contoso.com"
        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.names == ["authenticating", "signed_in"]
        assert store.get_access_token().reveal() == "new-access-token"
        assert coordinator.scheduler.interval == 3300
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_restore_without_session(self, coordinator, observer):
        """Nothing stored means nothing happens."""
        assert await coordinator.restore_session() is None

        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.events == []

    @pytest.mark.asyncio
    async def test_restore_refresh_failure_keeps_credentials(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """A rejected refresh signs out but does not delete stored records."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400, json={})
        store.store_refresh_token("stored-refresh")

        assert await coordinator.restore_session() is None

        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.names == ["authenticating", "signed_out"]
        assert store.get_refresh_token().reveal() == "stored-refresh"

    @pytest.mark.asyncio
    async def test_restore_network_error_is_retryable(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """Offline at startup shows a retryable error instead of signing out."""
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        store.store_refresh_token("stored-refresh")

        assert await coordinator.restore_session() is None

        assert coordinator.state is SessionState.ERROR
        assert observer.events == [
            ("authenticating",),
            ("error", "Network error. Check your connection."),
        ]
        assert store.get_refresh_token().reveal() == "stored-refresh"


class TestSessionUpkeep:
    """Tests for on-demand tokens and refresh handling."""

    @pytest.mark.asyncio
    async def test_valid_token_without_refresh(self, coordinator, store):
        """A token far from expiry is returned as stored."""
        store_session(store, datetime.now(timezone.utc) + timedelta(hours=1))

        token = await coordinator.get_valid_access_token()

        assert token.reveal() == "stored-access"

    @pytest.mark.asyncio
    async def test_near_expiry_refreshes(
        self, httpx_mock: HTTPXMock, coordinator, observer, store, token_payload
    ):
        """A token inside the refresh margin is refreshed first."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        store_session(store, datetime.now(timezone.utc) + timedelta(minutes=2))

        token = await coordinator.get_valid_access_token()

        assert token.reveal() == "new-access-token"
        assert observer.names == ["token_refreshed"]

    @pytest.mark.asyncio
    async def test_missing_expiry_record_refreshes(
        self, httpx_mock: HTTPXMock, coordinator, store, keyring_backend, token_payload
    ):
        """An interrupted write (token stored, expiry missing) is repaired by a refresh."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        keyring_backend.fail_set.add(ACCOUNT_TOKEN_EXPIRY)
        store.store_refresh_token("stored-refresh")
        store.store_access_token("half-written-access")
        with pytest.raises(KeychainStoreError):
            store.store_token_expiry("2026-01-01T00:00:00+00:00")
        keyring_backend.fail_set.clear()

        with pytest.raises(SecretNotFoundError):
            store.get_token_expiry()

        token = await coordinator.get_valid_access_token()

        assert token.reveal() == "new-access-token"
        assert time_remaining(store.get_token_expiry()) > timedelta(minutes=55)

    @pytest.mark.asyncio
    async def test_missing_access_token_refreshes(
        self, httpx_mock: HTTPXMock, coordinator, store, keyring_backend, token_payload
    ):
        """A missing access token record is also repaired by a refresh."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        store_session(store, datetime.now(timezone.utc) + timedelta(hours=1))
        keyring_backend.delete_password("azurepim.test", ACCOUNT_ACCESS_TOKEN)

        token = await coordinator.get_valid_access_token()

        assert token.reveal() == "new-access-token"

    @pytest.mark.asyncio
    async def test_refresh_rejected_signs_out(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """A rejected refresh requires re-authentication but keeps stored records."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400, json={})
        store_session(store, datetime.now(timezone.utc) - timedelta(minutes=1))

        with pytest.raises(TokenRefreshError):
            await coordinator.get_valid_access_token()

        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.names == ["signed_out"]
        assert store.get_refresh_token().reveal() == "stored-refresh"

    @pytest.mark.asyncio
    async def test_manual_refresh_inline(
        self, httpx_mock: HTTPXMock, coordinator, observer, store, token_payload
    ):
        """Manual refresh with no scheduler runs inline and notifies the observer."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        store.store_refresh_token("stored-refresh")

        outcome = await coordinator.refresh()

        assert outcome.ok
        assert coordinator.expires_at == outcome.expires_at
        assert observer.events == [("token_refreshed", outcome.expires_at)]

    @pytest.mark.asyncio
    async def test_manual_refresh_rejected(self, httpx_mock: HTTPXMock, coordinator, observer, store):
        """A rejected manual refresh moves to signed-out."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=401, json={})
        store.store_refresh_token("stored-refresh")

        outcome = await coordinator.refresh()

        assert isinstance(outcome.error, TokenRefreshError)
        assert coordinator.state is SessionState.SIGNED_OUT
        assert store.has_tokens()

    @pytest.mark.asyncio
    async def test_manual_refresh_storage_failure(
        self, httpx_mock: HTTPXMock, coordinator, observer, store, keyring_backend, token_payload
    ):
        """A secret store failure is surfaced but does not sign out."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        store.store_refresh_token("stored-refresh")
        keyring_backend.fail_set.add(ACCOUNT_ACCESS_TOKEN)
        coordinator.state = SessionState.SIGNED_IN

        outcome = await coordinator.refresh()

        assert not outcome.ok
        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.events == [("error", "Failed to save credentials securely.")]

    @pytest.mark.asyncio
    async def test_get_management_token(
        self, httpx_mock: HTTPXMock, coordinator, store
    ):
        """Management tokens are minted from the stored refresh token."""
        httpx_mock.add_response(
            method="POST", url=TOKEN_URL, json={"access_token": "mgmt", "expires_in": 3600}
        )
        store.store_refresh_token("stored-refresh")

        token = await coordinator.get_management_token()

        assert token.reveal() == "mgmt"
        form = query_of("?" + httpx_mock.get_requests()[0].content.decode())
        assert form["scope"] == "https://management.azure.com/.default offline_access"

    @pytest.mark.asyncio
    async def test_network_error_during_manual_refresh(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """A network failure is a retryable error, not a lost session."""
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        store.store_refresh_token("stored-refresh")
        coordinator.state = SessionState.SIGNED_IN

        outcome = await coordinator.refresh()

        assert isinstance(outcome.error, TokenRefreshError)
        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.events == [("error", "Network error. Check your connection.")]
        assert store.get_refresh_token().reveal() == "stored-refresh"

    @pytest.mark.asyncio
    async def test_scheduled_refresh_survives_network_error(
        self, httpx_mock: HTTPXMock, store, observer, browser
    ):
        """A scheduled tick that cannot reach the token endpoint keeps the loop alive."""
        config = AzureOAuthConfig(
            client_id="test-client-id",
            tenant="test-tenant",
            callback_port=0,
            min_refresh_interval_seconds=0.2,
        )
        coordinator = AuthCoordinator(
            config=config, store=store, observer=observer, browser_opener=browser
        )
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        store.store_refresh_token("stored-refresh")
        coordinator.state = SessionState.SIGNED_IN

        await coordinator.scheduler.start(0.2, 0)
        await asyncio.sleep(0.3)

        assert len(httpx_mock.get_requests()) == 1
        assert coordinator.scheduler.is_running
        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.events == [("error", "Network error. Check your connection.")]
        assert store.get_refresh_token().reveal() == "stored-refresh"
        await coordinator.close()

    @pytest.mark.asyncio
    async def test_server_error_during_refresh(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """A 5xx from the token endpoint does not sign out."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=503, text="busy")
        store.store_refresh_token("stored-refresh")
        coordinator.state = SessionState.SIGNED_IN

        await coordinator.refresh()

        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.events == [("error", "Token refresh failed. Please try again.")]

    @pytest.mark.asyncio
    async def test_valid_token_network_error_keeps_session(
        self, httpx_mock: HTTPXMock, coordinator, observer, store
    ):
        """On-demand refresh propagates a network error without signing out."""
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        store_session(store, datetime.now(timezone.utc) - timedelta(minutes=1))
        coordinator.state = SessionState.SIGNED_IN

        with pytest.raises(TokenRefreshError):
            await coordinator.get_valid_access_token()

        assert coordinator.state is SessionState.SIGNED_IN
        assert observer.events == []

    @pytest.mark.asyncio
    async def test_concurrent_valid_token_requests_share_refresh(
        self, httpx_mock: HTTPXMock, coordinator, observer, store, token_payload
    ):
        """Several callers racing on a stale token cause one token request."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=token_payload)
        store_session(store, datetime.now(timezone.utc) + timedelta(minutes=2))

        tokens = await asyncio.gather(
            *(coordinator.get_valid_access_token() for _ in range(3))
        )

        assert [t.reveal() for t in tokens] == ["new-access-token"] * 3
        assert len(httpx_mock.get_requests()) == 1
        assert observer.names == ["token_refreshed"]


class TestSignOut:
    """Tests for sign-out and clear-data."""

    @pytest.mark.asyncio
    async def test_sign_out(self, coordinator, observer, store):
        """Sign-out stops the scheduler and deletes every record."""
        store_session(store, datetime.now(timezone.utc) + timedelta(hours=1))
        store.store_user_info("{}")
        await coordinator.scheduler.start(3600, 300)

        await coordinator.sign_out()

        assert not coordinator.scheduler.is_running
        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.names == ["signed_out"]
        assert not store.has_tokens()

    @pytest.mark.asyncio
    async def test_sign_out_cancels_pending_sign_in(self, coordinator):
        """Sign-out during sign-in releases the listener."""
        await coordinator.start_sign_in()
        server = coordinator._server

        await coordinator.sign_out()

        assert not server.is_running
        assert coordinator.state is SessionState.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_sign_out_is_idempotent(self, coordinator):
        """Signing out twice succeeds."""
        await coordinator.sign_out()
        await coordinator.sign_out()

    @pytest.mark.asyncio
    async def test_sign_out_delete_failure(self, coordinator, store, keyring_backend):
        """A record that cannot be deleted is reported, but the session still ends."""
        store_session(store, datetime.now(timezone.utc) + timedelta(hours=1))
        keyring_backend.fail_delete.add(ACCOUNT_ACCESS_TOKEN)

        with pytest.raises(KeychainDeleteError):
            await coordinator.sign_out()

        assert coordinator.state is SessionState.SIGNED_OUT

    @pytest.mark.asyncio
    async def test_clear_data(self, coordinator, observer, store):
        """Clear data removes records and resets the session."""
        store_session(store, datetime.now(timezone.utc) + timedelta(hours=1))

        await coordinator.clear_data()

        assert not store.has_tokens()
        assert coordinator.state is SessionState.SIGNED_OUT
        assert observer.names == ["signed_out"]


def time_remaining(expiry_iso: str) -> timedelta:
    return datetime.fromisoformat(expiry_iso) - datetime.now(timezone.utc)
