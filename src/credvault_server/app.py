"""Litestar application factory."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import structlog
from advanced_alchemy.config.asyncio import AsyncSessionConfig
from advanced_alchemy.extensions.litestar import SQLAlchemyAsyncConfig, SQLAlchemyPlugin
from litestar import Litestar, Request, Response
from litestar.datastructures import State
from litestar.openapi import OpenAPIConfig
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from credvault_server import __version__
from credvault_server.api import api_routers
from credvault_server.core.clock import Clock, system_clock
from credvault_server.core.config import settings
from credvault_server.core.database import close_database, engine, init_database
from credvault_server.core.errors import CredvaultError
from credvault_server.services.oauth_state import (
    InMemoryOAuthStateStore,
    OAuthStateStore,
)

# Configure structured logging
logging.basicConfig(format="%(message)s", level=getattr(logging, settings.log_level))
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def credvault_exception_handler(request: Request, exc: CredvaultError) -> Response[dict[str, str]]:
    """Translate domain errors into the JSON error envelope."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, code=exc.code)
    return Response(content=exc.to_response(), status_code=exc.status_code)


def create_app(
    db_engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
    clock: Clock = system_clock,
    oauth_state_store: OAuthStateStore | None = None,
) -> Litestar:
    """Create Litestar application.

    Args:
        db_engine: Database engine (defaults to the one built from DATABASE_URL)
        http_client: Client for provider calls (one is opened for the app's lifetime if omitted)
        clock: Time source shared by all services
        oauth_state_store: Pending OAuth states (in-memory if omitted)

    Returns:
        Configured Litestar app instance
    """
    db_engine = db_engine or engine
    owns_http_client = http_client is None
    app_state = State(
        {
            "clock": clock,
            "http_client": http_client,
            "session_maker": async_sessionmaker(
                db_engine, class_=AsyncSession, expire_on_commit=False
            ),
            "oauth_state_store": oauth_state_store or InMemoryOAuthStateStore(clock=clock),
        }
    )

    @asynccontextmanager
    async def lifespan(app: Litestar) -> AsyncIterator[None]:
        """Application lifespan manager.

        Handles startup and shutdown tasks:
        - Verify database on startup
        - Open the shared provider HTTP client
        - Close both on shutdown
        """
        logger.info(
            "Starting credvault-server",
            version=__version__,
            environment=settings.environment.value,
        )

        await init_database(db_engine)

        if owns_http_client:
            app.state.http_client = httpx.AsyncClient(timeout=settings.provider_timeout_seconds)

        yield

        if owns_http_client:
            await app.state.http_client.aclose()

        await close_database(db_engine)
        logger.info("Shutdown complete")

    return Litestar(
        route_handlers=[*api_routers],
        lifespan=[lifespan],
        state=app_state,
        openapi_config=OpenAPIConfig(
            title="credvault-server API",
            version=__version__,
            description="Token lifecycle and encrypted credential vault for third-party services",
        ),
        plugins=[
            SQLAlchemyPlugin(
                config=SQLAlchemyAsyncConfig(
                    engine_instance=db_engine,
                    session_dependency_key="session",
                    session_config=AsyncSessionConfig(expire_on_commit=False),
                ),
            ),
        ],
        exception_handlers={CredvaultError: credvault_exception_handler},
        debug=settings.log_level == "DEBUG",
    )


# Application instance
app = create_app()
