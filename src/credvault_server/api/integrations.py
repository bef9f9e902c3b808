"""OAuth integration endpoints."""

from typing import Annotated, Any

from litestar import Request, Router, delete, get, post
from litestar.di import Provide
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK, HTTP_204_NO_CONTENT
from pydantic import BaseModel, Field

from credvault_server.api.deps import provide_oauth_manager, provide_user
from credvault_server.core.auth import access_token_guard
from credvault_server.core.config import settings
from credvault_server.core.errors import IntegrationNotFoundError
from credvault_server.models.user import User
from credvault_server.services.oauth import OAuthConnectionManager
from credvault_server.services.oauth_providers import PROVIDERS, get_provider


class AuthorizeRequest(BaseModel):
    redirect_uri: str = Field(
        max_length=2048,
        description="Where the provider sends the user back (must reach /integrations/oauth/callback)",
    )


@get("/", status_code=HTTP_200_OK)
async def list_integrations(
    oauth: OAuthConnectionManager, user: User, request: Request
) -> dict[str, Any]:
    """Available integrations with the user's connection status for each."""
    now = request.app.state.clock.now()
    connections = {c.integration_id: c for c in await oauth.list_connections(user.id)}

    integrations = []
    for integration_id, config in PROVIDERS.items():
        connection = connections.get(integration_id)
        integrations.append(
            {
                "id": integration_id,
                "name": config.name,
                "configured": settings.get_oauth_client(integration_id) is not None,
                "capabilities": list(config.capabilities),
                "connection": connection.to_public_dict(now) if connection else None,
            }
        )
    return {"integrations": integrations}


@post("/{integration_id:str}/authorize", status_code=HTTP_200_OK)
async def authorize_integration(
    integration_id: str,
    data: AuthorizeRequest,
    oauth: OAuthConnectionManager,
    user: User,
) -> dict[str, Any]:
    """Start the OAuth flow. The client should send the user to ``auth_url``."""
    auth = await oauth.begin_authorization(user.id, integration_id, data.redirect_uri)
    return {
        "auth_url": auth.auth_url,
        "state": auth.state,
        "expires_at": auth.expires_at.isoformat(),
    }


@get("/{integration_id:str}/status", status_code=HTTP_200_OK)
async def integration_status(
    integration_id: str,
    oauth: OAuthConnectionManager,
    user: User,
    request: Request,
) -> dict[str, Any]:
    get_provider(integration_id)
    connection = await oauth.get_connection(user.id, integration_id)
    return connection.to_public_dict(request.app.state.clock.now())


@post("/{integration_id:str}/test", status_code=HTTP_200_OK)
async def test_integration(
    integration_id: str, oauth: OAuthConnectionManager, user: User
) -> dict[str, Any]:
    """Check the stored token against the provider."""
    get_provider(integration_id)
    result = await oauth.test_connection(user.id, integration_id)
    return {"connected": result.connected, "message": result.message}


@delete("/{integration_id:str}", status_code=HTTP_204_NO_CONTENT)
async def disconnect_integration(
    integration_id: str, oauth: OAuthConnectionManager, user: User
) -> None:
    """Disconnect and forget the stored tokens."""
    if integration_id not in PROVIDERS:
        raise IntegrationNotFoundError(integration_id)
    await oauth.disconnect(user.id, integration_id)


@get("/oauth/callback", status_code=HTTP_200_OK)
async def oauth_callback(
    oauth: OAuthConnectionManager,
    request: Request,
    code: str | None = None,
    oauth_state: Annotated[str | None, Parameter(query="state")] = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Provider redirect target.

    Unauthenticated: the state nonce identifies the user who started the flow.
    """
    connection = await oauth.handle_callback(code, oauth_state, error)
    return {
        "status": "connected",
        "integration": connection.to_public_dict(request.app.state.clock.now()),
    }


_dependencies = {"oauth": Provide(provide_oauth_manager)}

# Callback is reached by the provider's redirect, without a bearer token
oauth_callback_router = Router(
    path="/integrations",
    route_handlers=[oauth_callback],
    dependencies=_dependencies,
    tags=["integrations"],
)

integrations_router = Router(
    path="/integrations",
    route_handlers=[
        list_integrations,
        authorize_integration,
        integration_status,
        test_integration,
        disconnect_integration,
    ],
    guards=[access_token_guard],
    dependencies={**_dependencies, "user": Provide(provide_user)},
    tags=["integrations"],
)
