"""Health check endpoint."""

from litestar import Response, Router, get
from litestar.status_codes import HTTP_200_OK, HTTP_503_SERVICE_UNAVAILABLE
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from credvault_server import __version__


@get("/health", status_code=HTTP_200_OK)
async def health_check(session: AsyncSession) -> Response[dict[str, str]]:
    """Health check endpoint.

    Returns:
        Status, version and database reachability; 503 if the database is down
    """
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        database = "unavailable"

    healthy = database == "ok"
    return Response(
        content={
            "status": "ok" if healthy else "degraded",
            "version": __version__,
            "database": database,
        },
        status_code=HTTP_200_OK if healthy else HTTP_503_SERVICE_UNAVAILABLE,
    )


health_router = Router(path="/", route_handlers=[health_check])
