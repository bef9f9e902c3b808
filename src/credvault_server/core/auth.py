"""Bearer access token authentication for API routes."""

import logging
from typing import Any

from litestar.connection import ASGIConnection
from litestar.exceptions import NotAuthorizedException
from litestar.handlers import BaseRouteHandler

from credvault_server.models.user import User
from credvault_server.services.tokens import TokenService

logger = logging.getLogger(__name__)

# Connection state key for the authenticated user
USER_STATE_KEY = "user"


def _extract_bearer_token(connection: ASGIConnection[Any, Any, Any, Any]) -> str | None:
    """Extract the access token from the Authorization header.

    Args:
        connection: The ASGI connection

    Returns:
        The token string or None if not found
    """
    auth_header = connection.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def access_token_guard(
    connection: ASGIConnection[Any, Any, Any, Any], _: BaseRouteHandler
) -> None:
    """Litestar guard that resolves the caller from their access token.

    On success the user is stored on connection state under USER_STATE_KEY.
    Token problems surface as the token service's own errors so clients can
    tell "expired, refresh" apart from "revoked, log in again".

    Args:
        connection: The ASGI connection
        _: The route handler (unused)

    Raises:
        NotAuthorizedException: If no bearer token was sent
        TokenExpiredError: If the token has expired
        TokenInvalidError: If the token is invalid or revoked
    """
    token = _extract_bearer_token(connection)
    if not token:
        logger.debug("API request without bearer token")
        raise NotAuthorizedException("Missing access token. Use Authorization: Bearer <token>.")

    app_state = connection.app.state
    async with app_state.session_maker() as session:
        user = await TokenService(session, app_state.clock).authenticate_access_token(token)

    connection.state[USER_STATE_KEY] = user


def current_user(connection: ASGIConnection[Any, Any, Any, Any]) -> User:
    """Get the user stored by access_token_guard.

    Raises:
        NotAuthorizedException: If the route is not guarded
    """
    user = connection.state.get(USER_STATE_KEY)
    if user is None:
        raise NotAuthorizedException("Not authenticated")
    return user
