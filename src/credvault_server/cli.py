"""CLI entry point for credvault-server."""

import asyncio
import secrets

import typer
import uvicorn
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from credvault_server import __version__
from credvault_server.core.config import settings
from credvault_server.core.database import async_session_maker, close_database
from credvault_server.core.encryption import EncryptionService
from credvault_server.models import ApiCredential, IntegrationConnection

app = typer.Typer(
    name="credvault-server",
    help="Token lifecycle and encrypted credential vault for third-party services",
    no_args_is_help=True,
)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind to (overrides config)"),
    port: int = typer.Option(None, help="Port to bind to (overrides config)"),
    reload: bool = typer.Option(False, help="Enable auto-reload for development"),
) -> None:
    """Start the API server.

    Example:
        credvault-server serve
        credvault-server serve --host 0.0.0.0 --port 8080 --reload
    """
    uvicorn.run(
        "credvault_server.app:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"credvault-server v{__version__}")


@app.command("generate-key")
def generate_key() -> None:
    """Print a random secret for ENCRYPTION_KEY, JWT_SECRET or JWT_REFRESH_SECRET."""
    typer.echo(secrets.token_urlsafe(32))


async def reencrypt_stored_secrets(
    session: AsyncSession, encryption: EncryptionService, dry_run: bool = False
) -> int:
    """Rewrite every stored secret that is not in the current blob format.

    Covers legacy plaintext, the unversioned GCM JSON form and CBC API keys.

    Returns:
        Number of values rewritten
    """
    rewritten = 0

    credentials = await session.scalars(
        select(ApiCredential).options(undefer(ApiCredential.encrypted_key))
    )
    for credential in credentials:
        if not encryption.is_encrypted(credential.encrypted_key):
            credential.encrypted_key = encryption.reencrypt(credential.encrypted_key)
            rewritten += 1

    connections = await session.scalars(
        select(IntegrationConnection).options(
            undefer(IntegrationConnection.access_token_encrypted),
            undefer(IntegrationConnection.refresh_token_encrypted),
        )
    )
    for connection in connections:
        for column in ("access_token_encrypted", "refresh_token_encrypted"):
            value = getattr(connection, column)
            if value and not encryption.is_encrypted(value):
                setattr(connection, column, encryption.reencrypt(value))
                rewritten += 1

    if dry_run:
        await session.rollback()
    else:
        await session.commit()
    return rewritten


@app.command("reencrypt-secrets")
def reencrypt_secrets(
    dry_run: bool = typer.Option(False, help="Count values to rewrite without saving"),
) -> None:
    """Migrate stored API keys and OAuth tokens to the current encryption format."""

    async def _run() -> int:
        try:
            async with async_session_maker() as session:
                return await reencrypt_stored_secrets(session, EncryptionService(), dry_run)
        finally:
            await close_database()

    count = asyncio.run(_run())
    action = "Would rewrite" if dry_run else "Rewrote"
    typer.echo(f"{action} {count} stored secret(s)")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
