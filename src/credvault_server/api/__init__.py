"""API routes."""

from litestar import Router

from credvault_server.api.auth import auth_router
from credvault_server.api.credentials import credentials_router
from credvault_server.api.health import health_router
from credvault_server.api.integrations import integrations_router, oauth_callback_router
from credvault_server.core.config import settings

# Versioned API routers
# These get the /api/v1 prefix
_v1_routers = [
    auth_router,  # Registration, login, token refresh
    credentials_router,  # AI provider API keys
    integrations_router,  # OAuth integrations (authenticated)
    oauth_callback_router,  # OAuth provider redirect target (state-authenticated)
]

api_v1_router = Router(path=settings.api_prefix, route_handlers=_v1_routers)

# Export: health (root), v1 (prefixed)
api_routers = [health_router, api_v1_router]

__all__ = ["api_routers"]
