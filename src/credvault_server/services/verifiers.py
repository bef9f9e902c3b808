"""Live verification of AI provider API keys.

Each provider gets one cheap authenticated request. The response status is
classified so callers can tell a bad key apart from a provider that is slow,
down or rate limiting us:

    INVALID_KEY         401 (and provider-specific equivalents)
    INSUFFICIENT_SCOPE  403
    RATE_LIMITED        429
    NETWORK_ERROR       timeouts, transport errors, 5xx
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, NamedTuple

import httpx
import structlog

from credvault_server.core.config import settings
from credvault_server.core.errors import (
    ProviderVerificationError,
    UnsupportedProviderError,
    VerificationErrorKind,
)
from credvault_server.models.credential import Provider

logger = structlog.get_logger()

OPENAI_MODELS_URL = "https://api.openai.com/v1/models"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_VERIFY_MODEL = "claude-3-haiku-20240307"
GOOGLE_AI_MODELS_URL = "https://generativelanguage.googleapis.com/v1beta/models"
MISTRAL_MODELS_URL = "https://api.mistral.ai/v1/models"
COHERE_MODELS_URL = "https://api.cohere.ai/v1/models"

# Anthropic has no models listing for plain keys
ANTHROPIC_MODELS = [
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
]

# Substring of an OpenAI model id -> capability it grants
OPENAI_PERMISSION_MARKERS = [
    ("gpt", ("chat", "completion")),
    ("dall-e", ("image-generation",)),
    ("whisper", ("audio-transcription",)),
    ("tts", ("text-to-speech",)),
    ("embedding", ("embeddings",)),
]


class VerificationResult(NamedTuple):
    """What a provider told us about a working key."""

    valid: bool
    models: list[str]
    permissions: list[str]
    organization_id: str | None = None


VerifyFn = Callable[[httpx.AsyncClient, str], Awaitable[VerificationResult]]


def parse_provider(provider: str) -> Provider:
    """Resolve a provider name.

    Raises:
        UnsupportedProviderError: If the provider is not supported
    """
    try:
        return Provider(provider)
    except ValueError:
        raise UnsupportedProviderError(provider) from None


def openai_permissions(model_ids: list[str]) -> list[str]:
    """Derive capabilities from the model ids an OpenAI key can see."""
    permissions: list[str] = []
    for marker, granted in OPENAI_PERMISSION_MARKERS:
        if any(marker in model_id for model_id in model_ids):
            permissions.extend(granted)
    return permissions


class ProviderVerifier:
    """Verify API keys against provider APIs.

    Pass an ``httpx.AsyncClient`` to share a connection pool (or a mock
    transport in tests); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._http = http_client
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._verifiers: dict[Provider, VerifyFn] = {
            Provider.OPENAI: self._verify_openai,
            Provider.ANTHROPIC: self._verify_anthropic,
            Provider.GOOGLE_AI: self._verify_google_ai,
            Provider.MISTRAL: self._verify_mistral,
            Provider.COHERE: self._verify_cohere,
        }

    async def verify(self, provider: str, api_key: str) -> VerificationResult:
        """Verify a key against its provider.

        Args:
            provider: Provider name (e.g. "openai")
            api_key: Plain text key

        Returns:
            VerificationResult for a working key

        Raises:
            UnsupportedProviderError: If the provider is not supported
            ProviderVerificationError: If the key was rejected or could not be checked
        """
        resolved = parse_provider(provider)
        log = logger.bind(provider=resolved.value)

        try:
            async with self._client() as client:
                result = await self._verifiers[resolved](client, api_key)
        except ProviderVerificationError as e:
            log.info("API key verification failed", kind=e.kind.value)
            raise

        log.info("API key verified", models=len(result.models))
        return result

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    # -------------------------------------------------------------------------
    # Providers
    # -------------------------------------------------------------------------

    async def _verify_openai(self, client: httpx.AsyncClient, api_key: str) -> VerificationResult:
        response = await self._send(
            client,
            Provider.OPENAI,
            "GET",
            OPENAI_MODELS_URL,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._raise_for_status(Provider.OPENAI, response)

        model_ids = [m.get("id", "") for m in _json(response).get("data", [])]
        return VerificationResult(
            valid=True,
            models=[m for m in model_ids if "gpt" in m],
            permissions=openai_permissions(model_ids),
            organization_id=response.headers.get("openai-organization"),
        )

    async def _verify_anthropic(self, client: httpx.AsyncClient, api_key: str) -> VerificationResult:
        response = await self._send(
            client,
            Provider.ANTHROPIC,
            "POST",
            ANTHROPIC_MESSAGES_URL,
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            json={
                "model": ANTHROPIC_VERIFY_MODEL,
                "messages": [{"role": "user", "content": "Test"}],
                "max_tokens": 1,
            },
        )
        # 400 means the key authenticated but the verification request was refused
        if response.status_code != 400:
            self._raise_for_status(Provider.ANTHROPIC, response)

        return VerificationResult(
            valid=True,
            models=list(ANTHROPIC_MODELS),
            permissions=["chat", "completion"],
        )

    async def _verify_google_ai(self, client: httpx.AsyncClient, api_key: str) -> VerificationResult:
        response = await self._send(
            client,
            Provider.GOOGLE_AI,
            "GET",
            GOOGLE_AI_MODELS_URL,
            params={"key": api_key},
        )
        # Google answers a bad key with 400
        self._raise_for_status(Provider.GOOGLE_AI, response, invalid_statuses=(400, 401))

        names = [m.get("name", "") for m in _json(response).get("models", [])]
        return VerificationResult(
            valid=True,
            models=[n for n in names if "gemini" in n],
            permissions=["chat", "completion"],
        )

    async def _verify_mistral(self, client: httpx.AsyncClient, api_key: str) -> VerificationResult:
        response = await self._send(
            client,
            Provider.MISTRAL,
            "GET",
            MISTRAL_MODELS_URL,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._raise_for_status(Provider.MISTRAL, response)

        return VerificationResult(
            valid=True,
            models=[m.get("id", "") for m in _json(response).get("data", [])],
            permissions=["chat", "completion"],
        )

    async def _verify_cohere(self, client: httpx.AsyncClient, api_key: str) -> VerificationResult:
        response = await self._send(
            client,
            Provider.COHERE,
            "GET",
            COHERE_MODELS_URL,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        self._raise_for_status(Provider.COHERE, response)

        return VerificationResult(
            valid=True,
            models=[m.get("name", "") for m in _json(response).get("models", [])],
            permissions=["chat", "completion", "embed"],
        )

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    async def _send(
        self,
        client: httpx.AsyncClient,
        provider: Provider,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderVerificationError(
                VerificationErrorKind.NETWORK_ERROR,
                f"{provider.display_name} did not respond in time. Please try again.",
                provider=provider.value,
            ) from e
        except httpx.TransportError as e:
            raise ProviderVerificationError(
                VerificationErrorKind.NETWORK_ERROR,
                f"Could not reach {provider.display_name}. Please try again.",
                provider=provider.value,
            ) from e

    def _raise_for_status(
        self,
        provider: Provider,
        response: httpx.Response,
        invalid_statuses: tuple[int, ...] = (401,),
    ) -> None:
        status = response.status_code
        if response.is_success:
            return

        name = provider.display_name
        if status in invalid_statuses:
            kind, message = VerificationErrorKind.INVALID_KEY, f"Invalid {name} API key"
        elif status == 403:
            kind = VerificationErrorKind.INSUFFICIENT_SCOPE
            message = f"{name} API key lacks the required permissions"
        elif status == 429:
            kind = VerificationErrorKind.RATE_LIMITED
            message = "Rate limit exceeded. Please try again later."
        elif status >= 500:
            kind = VerificationErrorKind.NETWORK_ERROR
            message = f"{name} is unavailable. Please try again."
        else:
            kind, message = VerificationErrorKind.INVALID_KEY, f"Failed to verify {name} API key"

        raise ProviderVerificationError(kind, message, provider=provider.value)


def _json(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
