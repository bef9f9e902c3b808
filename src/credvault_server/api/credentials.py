"""API key vault endpoints.

Keys are write-only over HTTP: responses carry the masked prefix and
verification metadata, never the key itself.
"""

from typing import Any

from litestar import Router, delete, get, post
from litestar.di import Provide
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED, HTTP_204_NO_CONTENT
from pydantic import BaseModel, Field

from credvault_server.api.deps import provide_user, provide_vault
from credvault_server.core.auth import access_token_guard
from credvault_server.core.errors import CredentialNotFoundError
from credvault_server.models.user import User
from credvault_server.services.vault import CredentialVault

# ==============================================================================
# Request/Response Models
# ==============================================================================


class SaveApiKeyRequest(BaseModel):
    provider: str = Field(description="Provider id: openai, anthropic, google-ai, mistral, cohere")
    api_key: str = Field(min_length=1, description="The provider API key")
    key_name: str | None = Field(default=None, max_length=100, description="Optional label")


class ValidateApiKeyRequest(BaseModel):
    provider: str = Field(description="Provider id")
    api_key: str = Field(min_length=1, description="The provider API key")


class ApiKeyTestResponse(BaseModel):
    """Outcome of a live check against the provider."""

    valid: bool = Field(description="Whether the provider accepted the key")
    message: str = Field(description="Human-readable outcome")
    models: list[str] = Field(default_factory=list, description="Models the key can use")


# ==============================================================================
# Endpoints
# ==============================================================================


@get("/", status_code=HTTP_200_OK)
async def list_api_keys(vault: CredentialVault, user: User) -> dict[str, Any]:
    """List the user's active keys (masked)."""
    credentials = await vault.list_credentials(user.id)
    return {"api_keys": [c.model_dump(mode="json") for c in credentials]}


@post("/", status_code=HTTP_201_CREATED)
async def save_api_key(
    data: SaveApiKeyRequest, vault: CredentialVault, user: User
) -> dict[str, Any]:
    """Verify a key with its provider and store it, replacing any active key."""
    saved = await vault.save(user.id, data.provider, data.api_key, data.key_name)
    return {
        "api_key": saved.credential.model_dump(mode="json"),
        "verification": {
            "models": saved.verification.models,
            "permissions": saved.verification.permissions,
        },
    }


@post("/validate", status_code=HTTP_200_OK)
async def validate_api_key(data: ValidateApiKeyRequest, vault: CredentialVault) -> ApiKeyTestResponse:
    """Check a key without storing it."""
    result = await vault.validate(data.provider, data.api_key)
    return ApiKeyTestResponse(valid=result.valid, message=result.message, models=result.models)


@post("/{provider:str}/test", status_code=HTTP_200_OK)
async def test_api_key(provider: str, vault: CredentialVault, user: User) -> ApiKeyTestResponse:
    """Re-verify the stored key for a provider."""
    result = await vault.test(user.id, provider)
    return ApiKeyTestResponse(valid=result.valid, message=result.message, models=result.models)


@delete("/{provider:str}", status_code=HTTP_204_NO_CONTENT)
async def delete_api_key(provider: str, vault: CredentialVault, user: User) -> None:
    """Deactivate the stored key for a provider."""
    if not await vault.delete(user.id, provider):
        raise CredentialNotFoundError(provider)


credentials_router = Router(
    path="/api-keys",
    route_handlers=[
        list_api_keys,
        save_api_key,
        validate_api_key,
        test_api_key,
        delete_api_key,
    ],
    guards=[access_token_guard],
    dependencies={
        "vault": Provide(provide_vault),
        "user": Provide(provide_user),
    },
    tags=["api-keys"],
)
