"""Tests for the OAuth connection manager."""

import base64
import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from credvault_server.core.clock import FrozenClock
from credvault_server.core.config import Environment, settings
from credvault_server.core.encryption import EncryptionService
from credvault_server.core.errors import (
    IntegrationNotConnectedError,
    IntegrationNotFoundError,
    InvalidRedirectUriError,
    OAuthAuthorizationDeniedError,
    OAuthExchangeError,
    OAuthNotConfiguredError,
    OAuthStateInvalidError,
    ProviderNetworkError,
    ReauthorizationRequiredError,
)
from credvault_server.models.integration import IntegrationConnection, IntegrationStatus
from credvault_server.models.user import User
from credvault_server.services.oauth import OAuthConnectionManager, validate_redirect_uri
from credvault_server.services.oauth_state import InMemoryOAuthStateStore
from tests.fixtures.providers import RecordingHandler, mock_client

REDIRECT_URI = "http://localhost:3000/integrations/oauth/callback"


@pytest.fixture(autouse=True)
def oauth_clients(monkeypatch):
    """App-level OAuth credentials for every provider."""
    for integration_id in ("notion", "github", "jira"):
        monkeypatch.setattr(settings, f"{integration_id}_client_id", f"{integration_id}-client")
        monkeypatch.setattr(settings, f"{integration_id}_client_secret", f"{integration_id}-secret")


@pytest.fixture
def state_store(clock: FrozenClock) -> InMemoryOAuthStateStore:
    return InMemoryOAuthStateStore(maxsize=100, ttl_minutes=10, clock=clock)


def _manager(
    session: AsyncSession,
    state_store: InMemoryOAuthStateStore,
    encryption: EncryptionService,
    clock: FrozenClock,
    *replies: httpx.Response | Exception,
) -> tuple[OAuthConnectionManager, RecordingHandler]:
    handler = RecordingHandler(*(replies or (httpx.Response(200, json={}),)))
    manager = OAuthConnectionManager(
        session,
        state_store,
        http_client=mock_client(handler),
        encryption=encryption,
        clock=clock,
        timeout=1.0,
    )
    return manager, handler


async def _connection(session: AsyncSession, user_id: str, integration_id: str = "notion"):
    return await session.scalar(
        select(IntegrationConnection)
        .where(
            IntegrationConnection.user_id == user_id,
            IntegrationConnection.integration_id == integration_id,
        )
        .options(
            undefer(IntegrationConnection.access_token_encrypted),
            undefer(IntegrationConnection.refresh_token_encrypted),
        )
    )


async def _connection_count(session: AsyncSession) -> int:
    return await session.scalar(select(func.count()).select_from(IntegrationConnection))


class TestAuthorizationFlow:
    """Tests for begin_authorization and handle_callback."""

    async def test_notion_end_to_end(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123", "expires_in": 3600}),
        )

        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        connection = await manager.handle_callback("mock-code", auth.state)

        assert connection.is_connected
        assert connection.user_id == test_user.id
        assert encryption.decrypt(connection.access_token_encrypted) == "tok123"
        assert connection.access_token_encrypted != "tok123"
        assert connection.is_token_valid(clock.now())
        clock.advance(seconds=3601)
        assert not connection.is_token_valid(clock.now())

        exchange = handler.last_request
        assert str(exchange.url) == "https://api.notion.com/v1/oauth/token"
        credentials = base64.b64decode(exchange.headers["Authorization"].split()[1]).decode()
        assert credentials == "notion-client:notion-secret"
        assert exchange.headers["Notion-Version"] == "2022-06-28"
        assert json.loads(exchange.content) == {
            "grant_type": "authorization_code",
            "code": "mock-code",
            "redirect_uri": REDIRECT_URI,
        }

    async def test_auth_url(self, async_session, state_store, encryption, clock, test_user: User):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        url = httpx.URL(auth.auth_url)
        assert url.host == "api.notion.com"
        assert url.params["client_id"] == "notion-client"
        assert url.params["redirect_uri"] == REDIRECT_URI
        assert url.params["response_type"] == "code"
        assert url.params["state"] == auth.state
        assert url.params["owner"] == "user"
        assert len(auth.state) == 64
        assert auth.expires_at == clock.now() + timedelta(minutes=settings.oauth_state_ttl_minutes)

    async def test_states_are_unique(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        first = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        second = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        assert first.state != second.state

    async def test_github_sends_credentials_in_form_body(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "gho_abc", "scope": "repo"}),
        )
        auth = await manager.begin_authorization(test_user.id, "github", REDIRECT_URI)

        connection = await manager.handle_callback("gh-code", auth.state)

        body = parse_qs(handler.last_request.content.decode())
        assert body["client_id"] == ["github-client"]
        assert body["client_secret"] == ["github-secret"]
        assert body["code"] == ["gh-code"]
        assert connection.token_expires_at is None
        assert connection.is_token_valid(clock.now())

    async def test_jira_sends_credentials_in_json_body(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(
                200,
                json={"access_token": "jira-at", "refresh_token": "jira-rt", "expires_in": 3600},
            ),
        )
        auth = await manager.begin_authorization(test_user.id, "jira", REDIRECT_URI)
        assert httpx.URL(auth.auth_url).params["audience"] == "api.atlassian.com"

        connection = await manager.handle_callback("jira-code", auth.state)

        body = json.loads(handler.last_request.content)
        assert body["client_id"] == "jira-client"
        assert body["client_secret"] == "jira-secret"
        assert encryption.decrypt(connection.refresh_token_encrypted) == "jira-rt"

    async def test_reconnect_overwrites_existing_connection(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "first"}),
            httpx.Response(200, json={"access_token": "second"}),
        )
        for _ in range(2):
            auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
            await manager.handle_callback("code", auth.state)

        assert await _connection_count(async_session) == 1
        connection = await _connection(async_session, test_user.id)
        assert encryption.decrypt(connection.access_token_encrypted) == "second"

    async def test_workspace_ids_are_recorded(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(
                200, json={"access_token": "tok", "workspace_id": "ws-1", "team": {"id": "t-9"}}
            ),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        connection = await manager.handle_callback("code", auth.state)

        assert connection.workspace_id == "ws-1"
        assert connection.team_id == "t-9"
        assert connection.to_public_dict(clock.now())["capabilities"][0] == "search_pages"


class TestBeginAuthorizationErrors:
    async def test_unknown_integration(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(IntegrationNotFoundError):
            await manager.begin_authorization("user-1", "myspace", REDIRECT_URI)

    async def test_not_configured(self, async_session, state_store, encryption, clock, monkeypatch):
        monkeypatch.setattr(settings, "notion_client_secret", None)
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(OAuthNotConfiguredError):
            await manager.begin_authorization("user-1", "notion", REDIRECT_URI)
        assert len(state_store) == 0

    async def test_bad_redirect_uri(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(InvalidRedirectUriError):
            await manager.begin_authorization("user-1", "notion", "http://evil.example.com/cb")
        assert len(state_store) == 0


class TestCallbackErrors:
    """A callback that fails state checks must never touch connections."""

    async def test_never_issued_state(self, async_session, state_store, encryption, clock):
        manager, handler = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(OAuthStateInvalidError):
            await manager.handle_callback("code", "forged-state")

        assert handler.requests == []
        assert await _connection_count(async_session) == 0

    async def test_consumed_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)

        with pytest.raises(OAuthStateInvalidError):
            await manager.handle_callback("code", auth.state)
        assert len(handler.requests) == 1

    async def test_expired_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(async_session, state_store, encryption, clock)
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        clock.advance(minutes=10, seconds=1)

        with pytest.raises(OAuthStateInvalidError):
            await manager.handle_callback("code", auth.state)

        assert handler.requests == []
        assert await _connection_count(async_session) == 0

    async def test_missing_code(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(OAuthStateInvalidError):
            await manager.handle_callback(None, "state")

    async def test_missing_code_consumes_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(OAuthStateInvalidError, match="Missing"):
            await manager.handle_callback(None, auth.state)
        assert len(state_store) == 0

        with pytest.raises(OAuthStateInvalidError):
            await manager.handle_callback("code", auth.state)
        assert handler.requests == []
        assert await _connection_count(async_session) == 0

    async def test_provider_error_consumes_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(async_session, state_store, encryption, clock)
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(OAuthAuthorizationDeniedError):
            await manager.handle_callback(None, auth.state, error="access_denied")

        assert len(state_store) == 0

    async def test_rejected_code(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(400, json={"error": "invalid_grant"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(OAuthExchangeError, match="invalid_grant"):
            await manager.handle_callback("used-code", auth.state)

        assert await _connection_count(async_session) == 0
        # Codes are single use, so the flow has to start over
        assert len(state_store) == 0

    async def test_github_error_with_200(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(
                200,
                json={"error": "bad_verification_code", "error_description": "The code is incorrect"},
            ),
        )
        auth = await manager.begin_authorization(test_user.id, "github", REDIRECT_URI)

        with pytest.raises(OAuthExchangeError, match="The code is incorrect"):
            await manager.handle_callback("code", auth.state)

    async def test_network_failure_restores_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.ConnectError("connection refused"),
            httpx.Response(200, json={"access_token": "tok123"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(ProviderNetworkError):
            await manager.handle_callback("code", auth.state)
        assert len(state_store) == 1

        connection = await manager.handle_callback("code", auth.state)
        assert connection.is_connected

    async def test_provider_outage_restores_state(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session, state_store, encryption, clock, httpx.Response(502)
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(ProviderNetworkError):
            await manager.handle_callback("code", auth.state)

        assert len(state_store) == 1

    async def test_response_without_access_token(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session, state_store, encryption, clock, httpx.Response(200, json={})
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)

        with pytest.raises(OAuthExchangeError):
            await manager.handle_callback("code", auth.state)
        assert await _connection_count(async_session) == 0


class TestTokenAccess:
    """Tests for get_valid_access_token and refresh."""

    async def _connect(self, manager, user_id, integration_id="jira"):
        auth = await manager.begin_authorization(user_id, integration_id, REDIRECT_URI)
        return await manager.handle_callback("code", auth.state)

    async def test_valid_token_is_returned_without_refresh(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}),
        )
        await self._connect(manager, test_user.id)

        assert await manager.get_valid_access_token(test_user.id, "jira") == "at-1"
        assert len(handler.requests) == 1

    async def test_expired_token_is_refreshed(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 3600}),
            httpx.Response(200, json={"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 3600}),
        )
        await self._connect(manager, test_user.id)
        clock.advance(hours=2)

        assert await manager.get_valid_access_token(test_user.id, "jira") == "at-2"

        refresh = json.loads(handler.last_request.content)
        assert refresh["grant_type"] == "refresh_token"
        assert refresh["refresh_token"] == "rt-1"
        connection = await _connection(async_session, test_user.id, "jira")
        assert encryption.decrypt(connection.refresh_token_encrypted) == "rt-2"
        assert connection.is_token_valid(clock.now())

    async def test_expired_without_refresh_token(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "at-1", "expires_in": 60}),
        )
        await self._connect(manager, test_user.id, "notion")
        clock.advance(minutes=2)

        with pytest.raises(ReauthorizationRequiredError):
            await manager.get_valid_access_token(test_user.id, "notion")

    async def test_rejected_refresh_marks_error(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "at-1", "refresh_token": "rt-1", "expires_in": 60}),
            httpx.Response(400, json={"error": "invalid_grant"}),
        )
        await self._connect(manager, test_user.id)
        clock.advance(minutes=2)

        with pytest.raises(OAuthExchangeError):
            await manager.get_valid_access_token(test_user.id, "jira")

        connection = await _connection(async_session, test_user.id, "jira")
        assert connection.status == IntegrationStatus.ERROR.value
        assert connection.error_count == 1
        assert connection.last_error["code"] == "OAUTH_EXCHANGE_FAILED"
        with pytest.raises(IntegrationNotConnectedError):
            await manager.get_valid_access_token(test_user.id, "jira")

    async def test_not_connected(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(IntegrationNotConnectedError):
            await manager.get_valid_access_token("user-1", "notion")


class TestConnectionManagement:
    """Tests for disconnect, test_connection and listing."""

    async def test_disconnect_forgets_tokens(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)

        await manager.disconnect(test_user.id, "notion")

        connection = await _connection(async_session, test_user.id)
        assert connection.status == IntegrationStatus.DISCONNECTED.value
        assert connection.access_token_encrypted is None
        with pytest.raises(IntegrationNotConnectedError):
            await manager.get_valid_access_token(test_user.id, "notion")

    async def test_disconnected_token_is_not_valid(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123", "expires_in": 3600}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)

        await manager.disconnect(test_user.id, "notion")

        connection = await _connection(async_session, test_user.id)
        assert not connection.is_token_valid(clock.now())
        public = connection.to_public_dict(clock.now())
        assert public["status"] == IntegrationStatus.DISCONNECTED.value
        assert public["is_token_valid"] is False

    async def test_disconnect_unknown(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(IntegrationNotFoundError):
            await manager.disconnect("user-1", "notion")

    async def test_connection_test_success(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, handler = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
            httpx.Response(200, json={"object": "user"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)

        result = await manager.test_connection(test_user.id, "notion")

        assert result.connected
        assert handler.last_request.headers["Authorization"] == "Bearer tok123"
        assert str(handler.last_request.url) == "https://api.notion.com/v1/users/me"

    async def test_connection_test_rejected_token(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
            httpx.Response(401),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)

        result = await manager.test_connection(test_user.id, "notion")

        assert not result.connected
        assert result.message == "Access token was rejected"

    async def test_connection_test_never_raises(self, async_session, state_store, encryption, clock):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        result = await manager.test_connection("user-1", "notion")

        assert not result.connected

    async def test_record_usage_stamps_capability(
        self, async_session, state_store, encryption, clock, test_user: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok123"}),
        )
        auth = await manager.begin_authorization(test_user.id, "notion", REDIRECT_URI)
        await manager.handle_callback("code", auth.state)
        clock.advance(minutes=3)

        await manager.record_usage(test_user.id, "notion", "search_pages")

        connection = await manager.get_connection(test_user.id, "notion")
        assert connection.sync_count == 1
        used = {c["action"]: c["last_used_at"] for c in connection.capabilities}
        assert used["search_pages"] == clock.now().isoformat()
        assert all(
            last_used is None for action, last_used in used.items() if action != "search_pages"
        )

    async def test_record_usage_requires_connection(
        self, async_session, state_store, encryption, clock
    ):
        manager, _ = _manager(async_session, state_store, encryption, clock)

        with pytest.raises(IntegrationNotConnectedError):
            await manager.record_usage("user-1", "notion", "search_pages")

    async def test_list_connections(
        self, async_session, state_store, encryption, clock, test_user: User, test_user_2: User
    ):
        manager, _ = _manager(
            async_session,
            state_store,
            encryption,
            clock,
            httpx.Response(200, json={"access_token": "tok"}),
        )
        for integration_id in ("notion", "github"):
            auth = await manager.begin_authorization(test_user.id, integration_id, REDIRECT_URI)
            await manager.handle_callback("code", auth.state)

        assert [c.integration_id for c in await manager.list_connections(test_user.id)] == [
            "github",
            "notion",
        ]
        assert await manager.list_connections(test_user_2.id) == []


class TestRedirectUriValidation:
    @pytest.mark.parametrize(
        "uri",
        [
            "https://app.example.com/integrations/oauth/callback",
            "http://localhost:3000/cb",
            "http://127.0.0.1:8000/cb",
        ],
    )
    def test_accepted(self, uri: str):
        validate_redirect_uri(uri)

    @pytest.mark.parametrize(
        "uri",
        [
            "",
            "not-a-url",
            "javascript:alert(1)",
            "ftp://example.com/cb",
            "http://example.com/cb",
            "https://example.com/" + "a" * 2050,
        ],
    )
    def test_rejected(self, uri: str):
        with pytest.raises(InvalidRedirectUriError):
            validate_redirect_uri(uri)

    def test_http_localhost_rejected_in_production(self, monkeypatch):
        monkeypatch.setattr(settings, "environment", Environment.PRODUCTION)

        with pytest.raises(InvalidRedirectUriError):
            validate_redirect_uri("http://localhost:3000/cb")
