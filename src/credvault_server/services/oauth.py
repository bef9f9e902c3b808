"""OAuth2 authorization-code flow for third-party integrations.

Flow:
    1. ``begin_authorization`` stores a random state nonce and returns the
       provider's authorization URL.
    2. The provider redirects back with ``code`` and ``state``.
    3. ``handle_callback`` consumes the state, exchanges the code for tokens
       and upserts the user's connection with the tokens encrypted.

Access tokens are refreshed on demand by ``get_valid_access_token``.
"""

import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, NamedTuple
from urllib.parse import urlparse

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from credvault_server.core.clock import Clock, system_clock
from credvault_server.core.config import settings
from credvault_server.core.encryption import EncryptionService, encryption_service
from credvault_server.core.errors import (
    CredvaultError,
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
from credvault_server.models.integration import (
    IntegrationConnection,
    IntegrationStatus,
    IntegrationType,
)
from credvault_server.services.oauth_providers import OAuthProviderConfig, get_provider
from credvault_server.services.oauth_state import OAuthFlowState, OAuthStateStore

logger = structlog.get_logger()

STATE_BYTES = 32
MAX_REDIRECT_URI_LENGTH = 2048


class AuthorizationRequest(NamedTuple):
    """Where to send the user, and the state that will come back."""

    auth_url: str
    state: str
    expires_at: datetime


class ConnectionTestResult(NamedTuple):
    connected: bool
    message: str


def _is_localhost(hostname: str | None) -> bool:
    return (hostname or "").lower() in {"localhost", "127.0.0.1", "::1"}


def validate_redirect_uri(redirect_uri: str) -> None:
    """Check that a redirect URI is well-formed and safe to hand to a provider.

    Raises:
        InvalidRedirectUriError: If the URI is rejected
    """
    if not redirect_uri:
        raise InvalidRedirectUriError("redirect_uri is required")

    # Length check to prevent DoS via extremely long URLs
    if len(redirect_uri) > MAX_REDIRECT_URI_LENGTH:
        raise InvalidRedirectUriError("URL too long (max 2048 characters)")

    parsed = urlparse(redirect_uri)
    if not parsed.scheme or not parsed.netloc:
        raise InvalidRedirectUriError(
            "URL must include scheme and host (e.g., https://example.com/callback)"
        )
    if parsed.scheme not in {"http", "https"}:
        raise InvalidRedirectUriError("Only http and https schemes are allowed")

    if parsed.scheme == "http":
        if settings.is_production():
            raise InvalidRedirectUriError("HTTPS required for redirect URLs in production")
        if not _is_localhost(parsed.hostname):
            raise InvalidRedirectUriError("HTTP only allowed for localhost in development")


def _nested_id(token_response: dict[str, Any], key: str) -> str | None:
    """Read ``<key>_id`` or ``<key>.id`` from a token response."""
    value = token_response.get(f"{key}_id")
    if value is None and isinstance(token_response.get(key), dict):
        value = token_response[key].get("id")
    return str(value) if value is not None else None


class OAuthConnectionManager:
    """Connect users to OAuth integrations and keep their tokens usable."""

    def __init__(
        self,
        session: AsyncSession,
        state_store: OAuthStateStore,
        http_client: httpx.AsyncClient | None = None,
        encryption: EncryptionService | None = None,
        clock: Clock = system_clock,
        timeout: float | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            session: Database session
            state_store: Pending authorization states
            http_client: Client for provider calls (a short-lived one per call if omitted)
            encryption: Encryption service (defaults to the global instance)
            clock: Time source for state and token expiry
            timeout: Provider call timeout in seconds
        """
        self.session = session
        self.state_store = state_store
        self._http = http_client
        self.encryption = encryption or encryption_service
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self.state_ttl = timedelta(minutes=settings.oauth_state_ttl_minutes)

    # -------------------------------------------------------------------------
    # Authorization flow
    # -------------------------------------------------------------------------

    async def begin_authorization(
        self, user_id: str, integration_id: str, redirect_uri: str
    ) -> AuthorizationRequest:
        """Start an authorization and build the provider URL.

        Raises:
            IntegrationNotFoundError: If the integration is unknown
            OAuthNotConfiguredError: If the app has no client credentials for it
            InvalidRedirectUriError: If the redirect URI is rejected
        """
        config = get_provider(integration_id)
        client_id, _ = self._client_credentials(config)
        validate_redirect_uri(redirect_uri)

        now = self.clock.now()
        nonce = secrets.token_hex(STATE_BYTES)
        await self.state_store.put(
            nonce,
            OAuthFlowState(
                user_id=user_id,
                integration_id=integration_id,
                redirect_uri=redirect_uri,
                issued_at=now,
            ),
        )

        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "state": nonce,
            "scope": " ".join(config.scopes),
            **config.extra_authorize_params,
        }
        auth_url = str(httpx.URL(config.authorize_url, params=params))

        logger.info("OAuth authorization started", user_id=user_id, integration_id=integration_id)
        return AuthorizationRequest(auth_url=auth_url, state=nonce, expires_at=now + self.state_ttl)

    async def handle_callback(
        self, code: str | None, state: str | None, error: str | None = None
    ) -> IntegrationConnection:
        """Finish an authorization.

        The state is consumed before anything else happens. It is put back
        only if the exchange could not reach the provider or the connection
        could not be saved, so the user can retry the same callback.

        Raises:
            OAuthAuthorizationDeniedError: If the provider reported an error
            OAuthStateInvalidError: If code or state is missing, unknown, used or expired
            OAuthExchangeError: If the provider rejected the code
            ProviderNetworkError: If the provider could not be reached
        """
        if error:
            if state:
                await self.state_store.take_if_valid(state)
            raise OAuthAuthorizationDeniedError(error)

        if not code or not state:
            if state:
                await self.state_store.take_if_valid(state)
            raise OAuthStateInvalidError("Missing authorization code or state parameter")

        flow = await self.state_store.take_if_valid(state)
        if flow is None:
            logger.warning("OAuth callback with invalid state", state_prefix=state[:8])
            raise OAuthStateInvalidError()

        log = logger.bind(user_id=flow.user_id, integration_id=flow.integration_id)
        config = get_provider(flow.integration_id)

        try:
            token_data = await self._exchange(
                config,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": flow.redirect_uri,
                },
            )
        except ProviderNetworkError:
            await self.state_store.put(state, flow)
            log.error("OAuth code exchange failed, provider unreachable; state restored")
            raise

        try:
            connection = await self.upsert_connection(flow.user_id, flow.integration_id, token_data)
        except SQLAlchemyError:
            await self.session.rollback()
            await self.state_store.put(state, flow)
            log.error("Saving OAuth connection failed; state restored", exc_info=True)
            raise

        log.info("OAuth connection established")
        return connection

    async def upsert_connection(
        self, user_id: str, integration_id: str, token_response: dict[str, Any]
    ) -> IntegrationConnection:
        """Create or overwrite the user's connection from a token response.

        Raises:
            IntegrationNotFoundError: If the integration is unknown
            OAuthExchangeError: If the response has no access token
        """
        config = get_provider(integration_id)
        access_token = token_response.get("access_token")
        if not access_token:
            raise OAuthExchangeError(f"No access token received from {config.name}")

        now = self.clock.now()
        connection = await self._get_connection(user_id, integration_id)
        if connection is None:
            connection = IntegrationConnection(user_id=user_id, integration_id=integration_id)
            self.session.add(connection)

        refresh_token = token_response.get("refresh_token")
        connection.integration_type = IntegrationType.MCP_SERVER.value
        connection.integration_name = config.name
        connection.status = IntegrationStatus.CONNECTED.value
        connection.access_token_encrypted = self.encryption.encrypt(access_token)
        connection.refresh_token_encrypted = (
            self.encryption.encrypt(refresh_token) if refresh_token else None
        )
        connection.token_expires_at = self._expiry(now, token_response.get("expires_in"))
        connection.workspace_id = _nested_id(token_response, "workspace")
        connection.organization_id = _nested_id(token_response, "organization")
        connection.team_id = _nested_id(token_response, "team")
        connection.capabilities = [
            {"action": action, "enabled": True, "last_used_at": None}
            for action in config.capabilities
        ]
        connection.version = config.version
        connection.last_sync_at = now
        connection.sync_count = 0
        connection.error_count = 0
        connection.last_error = None

        await self.session.commit()
        return connection

    # -------------------------------------------------------------------------
    # Token access
    # -------------------------------------------------------------------------

    async def get_valid_access_token(self, user_id: str, integration_id: str) -> str:
        """Decrypted access token, refreshed first if it has expired.

        Raises:
            IntegrationNotConnectedError: If the user has no live connection
            ReauthorizationRequiredError: If the token expired and cannot be refreshed
            OAuthExchangeError: If the provider rejected the refresh
            ProviderNetworkError: If the provider could not be reached
        """
        get_provider(integration_id)
        connection = await self._get_connection(user_id, integration_id, with_tokens=True)
        if connection is None or not connection.is_connected:
            raise IntegrationNotConnectedError(integration_id)

        if connection.is_token_valid(self.clock.now()):
            access_token = self.encryption.decrypt(connection.access_token_encrypted)
            if access_token:
                return access_token

        refresh_token = self.encryption.decrypt(connection.refresh_token_encrypted)
        if not refresh_token:
            raise ReauthorizationRequiredError(integration_id)

        return await self.refresh_access_token(connection, refresh_token)

    async def refresh_access_token(
        self, connection: IntegrationConnection, refresh_token: str
    ) -> str:
        """Run the refresh grant and store the new tokens.

        A rejected refresh puts the connection into the error state.

        Returns:
            The new access token
        """
        config = get_provider(connection.integration_id)
        log = logger.bind(user_id=connection.user_id, integration_id=connection.integration_id)

        try:
            token_data = await self._exchange(
                config, {"grant_type": "refresh_token", "refresh_token": refresh_token}
            )
            access_token = token_data.get("access_token")
            if not access_token:
                raise OAuthExchangeError(f"No access token received from {config.name}")
        except OAuthExchangeError as e:
            connection.mark_error(e, self.clock.now())
            await self.session.commit()
            log.warning("OAuth token refresh rejected", error=e.message)
            raise

        now = self.clock.now()
        connection.access_token_encrypted = self.encryption.encrypt(access_token)
        if token_data.get("refresh_token"):
            connection.refresh_token_encrypted = self.encryption.encrypt(token_data["refresh_token"])
        connection.token_expires_at = self._expiry(now, token_data.get("expires_in"))
        connection.status = IntegrationStatus.CONNECTED.value
        connection.last_sync_at = now
        await self.session.commit()

        log.info("OAuth access token refreshed")
        return access_token

    # -------------------------------------------------------------------------
    # Connection management
    # -------------------------------------------------------------------------

    async def disconnect(self, user_id: str, integration_id: str) -> IntegrationConnection:
        """Mark the connection disconnected and forget its tokens.

        Raises:
            IntegrationNotFoundError: If the user has no connection for the integration
        """
        connection = await self._get_connection(user_id, integration_id)
        if connection is None:
            raise IntegrationNotFoundError(integration_id)

        connection.status = IntegrationStatus.DISCONNECTED.value
        connection.access_token_encrypted = None
        connection.refresh_token_encrypted = None
        connection.token_expires_at = None
        await self.session.commit()

        logger.info("Integration disconnected", user_id=user_id, integration_id=integration_id)
        return connection

    async def test_connection(self, user_id: str, integration_id: str) -> ConnectionTestResult:
        """Check the stored token against the provider.

        Failures are reported in the result rather than raised.
        """
        try:
            access_token = await self.get_valid_access_token(user_id, integration_id)
            config = get_provider(integration_id)
            if config.test_url is None:
                return ConnectionTestResult(connected=True, message="Token available")

            async with self._client() as client:
                try:
                    response = await client.get(
                        config.test_url,
                        headers={"Authorization": f"Bearer {access_token}", **config.test_headers},
                        timeout=self.timeout,
                    )
                except httpx.HTTPError as e:
                    raise ProviderNetworkError(f"Could not reach {config.name}") from e
        except CredvaultError as e:
            return ConnectionTestResult(connected=False, message=e.message)

        if response.status_code in (401, 403):
            return ConnectionTestResult(connected=False, message="Access token was rejected")
        if not response.is_success:
            return ConnectionTestResult(
                connected=False, message=f"{config.name} returned HTTP {response.status_code}"
            )
        return ConnectionTestResult(connected=True, message=f"Connected to {config.name}")

    async def record_usage(self, user_id: str, integration_id: str, action: str) -> None:
        """Note that a capability was used through the connection.

        Raises:
            IntegrationNotConnectedError: If the user has no live connection
        """
        connection = await self._get_connection(user_id, integration_id)
        if connection is None or not connection.is_connected:
            raise IntegrationNotConnectedError(integration_id)
        connection.record_usage(action, self.clock.now())
        await self.session.commit()

    async def list_connections(self, user_id: str) -> list[IntegrationConnection]:
        """All of a user's connections, any status."""
        result = await self.session.scalars(
            select(IntegrationConnection)
            .where(IntegrationConnection.user_id == user_id)
            .order_by(IntegrationConnection.integration_id)
        )
        return list(result.all())

    async def get_connection(self, user_id: str, integration_id: str) -> IntegrationConnection:
        """Get a user's connection.

        Raises:
            IntegrationNotFoundError: If there is none
        """
        connection = await self._get_connection(user_id, integration_id)
        if connection is None:
            raise IntegrationNotFoundError(integration_id)
        return connection

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _get_connection(
        self, user_id: str, integration_id: str, *, with_tokens: bool = False
    ) -> IntegrationConnection | None:
        query = select(IntegrationConnection).where(
            IntegrationConnection.user_id == user_id,
            IntegrationConnection.integration_id == integration_id,
        )
        if with_tokens:
            query = query.options(
                undefer(IntegrationConnection.access_token_encrypted),
                undefer(IntegrationConnection.refresh_token_encrypted),
            )
        return await self.session.scalar(query)

    def _client_credentials(self, config: OAuthProviderConfig) -> tuple[str, str]:
        credentials = settings.get_oauth_client(config.integration_id)
        if credentials is None:
            raise OAuthNotConfiguredError(config.integration_id)
        return credentials

    async def _exchange(self, config: OAuthProviderConfig, grant: dict[str, str]) -> dict[str, Any]:
        """POST a grant to the token endpoint and return the JSON body."""
        client_id, client_secret = self._client_credentials(config)
        request_kwargs = config.token_request(client_id, client_secret, grant)

        async with self._client() as client:
            try:
                response = await client.post(config.token_url, timeout=self.timeout, **request_kwargs)
            except httpx.TimeoutException as e:
                raise ProviderNetworkError(f"{config.name} did not respond in time") from e
            except httpx.TransportError as e:
                raise ProviderNetworkError(f"Could not reach {config.name}") from e

        if response.status_code >= 500:
            raise ProviderNetworkError(f"{config.name} is unavailable (HTTP {response.status_code})")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        # GitHub reports grant errors with a 200 and an "error" field
        if not response.is_success or data.get("error"):
            reason = data.get("error_description") or data.get("error") or f"HTTP {response.status_code}"
            raise OAuthExchangeError(f"Failed to exchange authorization with {config.name}: {reason}")

        return data

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    @staticmethod
    def _expiry(now: datetime, expires_in: Any) -> datetime | None:
        if not expires_in:
            return None
        return now + timedelta(seconds=int(expires_in))
