"""Dependency providers for API route handlers."""

from litestar import Request
from litestar.datastructures import State
from sqlalchemy.ext.asyncio import AsyncSession

from credvault_server.core.auth import current_user
from credvault_server.models.user import User
from credvault_server.services.accounts import AccountService
from credvault_server.services.oauth import OAuthConnectionManager
from credvault_server.services.tokens import RequestContext, TokenService
from credvault_server.services.vault import CredentialVault
from credvault_server.services.verifiers import ProviderVerifier


async def provide_token_service(session: AsyncSession, state: State) -> TokenService:
    return TokenService(session, state.clock)


async def provide_account_service(session: AsyncSession, state: State) -> AccountService:
    return AccountService(session, state.clock)


async def provide_vault(session: AsyncSession, state: State) -> CredentialVault:
    return CredentialVault(
        session,
        verifier=ProviderVerifier(http_client=state.http_client),
        clock=state.clock,
    )


async def provide_oauth_manager(session: AsyncSession, state: State) -> OAuthConnectionManager:
    return OAuthConnectionManager(
        session,
        state.oauth_state_store,
        http_client=state.http_client,
        clock=state.clock,
    )


async def provide_user(request: Request) -> User:
    return current_user(request)


def request_context(request: Request) -> RequestContext:
    """Client address and user agent, stored alongside refresh tokens."""
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
