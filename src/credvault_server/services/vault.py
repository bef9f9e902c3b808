"""Credential vault for user-supplied AI provider API keys.

Keys are verified live before they are stored, encrypted at rest, and only
ever returned to clients as a masked prefix. Each user has at most one active
key per provider.
"""

from datetime import datetime
from typing import NamedTuple

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import undefer

from credvault_server.core.clock import Clock, ensure_aware, system_clock
from credvault_server.core.encryption import EncryptionService, encryption_service
from credvault_server.core.errors import (
    CredentialNotFoundError,
    ProviderVerificationError,
    VerificationErrorKind,
)
from credvault_server.models.credential import ApiCredential, Provider
from credvault_server.services.verifiers import (
    ProviderVerifier,
    VerificationResult,
    parse_provider,
)

logger = structlog.get_logger()

KEY_PREFIX_LENGTH = 7
# Concurrent saves for the same provider can collide on the active-key index
MAX_SAVE_ATTEMPTS = 3


class CredentialSummary(BaseModel):
    """Masked view of a stored key, safe to return to clients."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    provider: str
    key_name: str
    key_prefix: str
    is_verified: bool
    verified_at: datetime | None = None
    verification_error: str | None = None
    usage_count: int = 0
    last_used_at: datetime | None = None
    organization_id: str | None = None
    models: list[str] = []
    permissions: list[str] = []
    created_at: datetime | None = None


class SavedCredential(NamedTuple):
    credential: CredentialSummary
    verification: VerificationResult


class CredentialTestResult(NamedTuple):
    valid: bool
    message: str
    models: list[str]


def mask_key(api_key: str) -> str:
    """Identifying prefix shown in place of the key."""
    return f"{api_key[:KEY_PREFIX_LENGTH]}..."


class CredentialVault:
    """Store, verify and hand out users' provider API keys."""

    def __init__(
        self,
        session: AsyncSession,
        verifier: ProviderVerifier | None = None,
        encryption: EncryptionService | None = None,
        clock: Clock = system_clock,
    ) -> None:
        """Initialize the vault.

        Args:
            session: Database session
            verifier: Live key verifier (a default one is created if omitted)
            encryption: Encryption service (defaults to the global instance)
            clock: Time source for verification and usage stamps
        """
        self.session = session
        self.verifier = verifier or ProviderVerifier()
        self.encryption = encryption or encryption_service
        self.clock = clock

    async def save(
        self,
        user_id: str,
        provider: str,
        api_key: str,
        key_name: str | None = None,
    ) -> SavedCredential:
        """Verify and store a key, replacing the user's active key for the provider.

        Nothing is written unless the provider accepts the key. Deactivating
        the old key and inserting the new one happen in one transaction.

        Args:
            user_id: Owner
            provider: Provider name
            api_key: Plain text key
            key_name: Label (defaults to "<Provider> API Key")

        Returns:
            SavedCredential with the masked record and what verification found

        Raises:
            UnsupportedProviderError: If the provider is not supported
            ProviderVerificationError: If the provider rejected the key or could not be reached
        """
        resolved = parse_provider(provider)
        log = logger.bind(user_id=user_id, provider=resolved.value)

        if not api_key or not api_key.strip():
            raise ProviderVerificationError(
                VerificationErrorKind.INVALID_KEY, "API key is required", provider=resolved.value
            )
        api_key = api_key.strip()

        verification = await self.verifier.verify(resolved.value, api_key)
        encrypted_key = self.encryption.encrypt(api_key)

        for attempt in range(1, MAX_SAVE_ATTEMPTS + 1):
            now = self.clock.now()
            try:
                await self.session.execute(
                    update(ApiCredential)
                    .where(
                        ApiCredential.user_id == user_id,
                        ApiCredential.provider == resolved.value,
                        ApiCredential.is_active.is_(True),
                    )
                    .values(is_active=False)
                )
                record = ApiCredential(
                    user_id=user_id,
                    provider=resolved.value,
                    key_name=key_name or f"{resolved.display_name} API Key",
                    encrypted_key=encrypted_key,
                    key_prefix=mask_key(api_key),
                    is_active=True,
                    is_verified=True,
                    verified_at=now,
                    organization_id=verification.organization_id,
                    models=list(verification.models),
                    permissions=list(verification.permissions),
                    validation_errors=[],
                )
                self.session.add(record)
                await self.session.commit()
                break
            except IntegrityError:
                await self.session.rollback()
                if attempt == MAX_SAVE_ATTEMPTS:
                    raise
                log.warning("Concurrent API key save detected, retrying", attempt=attempt)

        log.info("API key saved", key_prefix=record.key_prefix)
        return SavedCredential(
            credential=CredentialSummary.model_validate(record),
            verification=verification,
        )

    async def test(self, user_id: str, provider: str) -> CredentialTestResult:
        """Re-verify the stored key and record the outcome.

        Provider failures are reported in the result rather than raised.
        Only a definite rejection clears ``is_verified``; timeouts and rate
        limits leave it as it was.

        Raises:
            UnsupportedProviderError: If the provider is not supported
            CredentialNotFoundError: If there is no active key
        """
        resolved = parse_provider(provider)
        record = await self._get_active(user_id, resolved, with_key=True)
        api_key = self.encryption.decrypt(record.encrypted_key)
        now = self.clock.now()

        try:
            verification = await self.verifier.verify(resolved.value, api_key or "")
        except ProviderVerificationError as e:
            if not e.is_retryable:
                record.is_verified = False
            record.verification_error = e.message
            record.record_validation_error(e.message, now)
            await self.session.commit()
            return CredentialTestResult(valid=False, message=e.message, models=[])

        record.is_verified = True
        record.verified_at = now
        record.verification_error = None
        record.models = list(verification.models)
        record.permissions = list(verification.permissions)
        record.usage_count += 1
        record.last_used_at = now
        await self.session.commit()

        return CredentialTestResult(
            valid=True,
            message="API key is working correctly",
            models=list(verification.models),
        )

    async def list_credentials(self, user_id: str) -> list[CredentialSummary]:
        """Active keys for a user, masked."""
        result = await self.session.scalars(
            select(ApiCredential)
            .where(ApiCredential.user_id == user_id, ApiCredential.is_active.is_(True))
            .order_by(ApiCredential.provider)
        )
        return [CredentialSummary.model_validate(record) for record in result.all()]

    async def get_decrypted(self, user_id: str, provider: str) -> str:
        """Plain text key for internal callers. Never expose this over the API.

        Raises:
            UnsupportedProviderError: If the provider is not supported
            CredentialNotFoundError: If there is no active, unexpired key
        """
        resolved = parse_provider(provider)
        record = await self._get_active(user_id, resolved, with_key=True)
        now = self.clock.now()

        if record.expires_at is not None and ensure_aware(record.expires_at) <= now:
            logger.info("Stored API key has expired", user_id=user_id, provider=resolved.value)
            raise CredentialNotFoundError(resolved.value)

        api_key = self.encryption.decrypt(record.encrypted_key)
        if not api_key:
            raise CredentialNotFoundError(resolved.value)

        record.usage_count += 1
        record.last_used_at = now
        await self.session.commit()
        return api_key

    async def delete(self, user_id: str, provider: str) -> bool:
        """Deactivate the active key. The row is kept.

        Returns:
            True if a key was deactivated
        """
        resolved = parse_provider(provider)
        result = await self.session.execute(
            update(ApiCredential)
            .where(
                ApiCredential.user_id == user_id,
                ApiCredential.provider == resolved.value,
                ApiCredential.is_active.is_(True),
            )
            .values(is_active=False)
        )
        await self.session.commit()

        deleted = bool(result.rowcount)
        if deleted:
            logger.info("API key deleted", user_id=user_id, provider=resolved.value)
        return deleted

    async def validate(self, provider: str, api_key: str) -> CredentialTestResult:
        """Check a key without storing it.

        Raises:
            UnsupportedProviderError: If the provider is not supported
        """
        resolved = parse_provider(provider)
        try:
            verification = await self.verifier.verify(resolved.value, api_key)
        except ProviderVerificationError as e:
            return CredentialTestResult(valid=False, message=e.message, models=[])

        return CredentialTestResult(
            valid=True,
            message=f"{resolved.display_name} API key is valid",
            models=list(verification.models),
        )

    async def _get_active(
        self, user_id: str, provider: Provider, *, with_key: bool = False
    ) -> ApiCredential:
        query = select(ApiCredential).where(
            ApiCredential.user_id == user_id,
            ApiCredential.provider == provider.value,
            ApiCredential.is_active.is_(True),
        )
        if with_key:
            query = query.options(undefer(ApiCredential.encrypted_key))

        record = await self.session.scalar(query)
        if record is None:
            raise CredentialNotFoundError(provider.value)
        return record
