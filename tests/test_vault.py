"""Tests for the API key credential vault."""

import asyncio
from contextlib import AsyncExitStack
from datetime import timedelta
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import undefer

from credvault_server.core.clock import FrozenClock
from credvault_server.core.encryption import EncryptionService
from credvault_server.core.errors import (
    CredentialNotFoundError,
    ProviderVerificationError,
    UnsupportedProviderError,
    VerificationErrorKind,
)
from credvault_server.models.credential import MAX_VALIDATION_ERRORS, ApiCredential
from credvault_server.models.user import User
from credvault_server.services.vault import CredentialVault, mask_key
from credvault_server.services.verifiers import ProviderVerifier
from tests.fixtures.providers import OPENAI_MODELS, RecordingHandler, mock_client


def _vault(
    session: AsyncSession,
    encryption: EncryptionService,
    clock: FrozenClock,
    *replies: httpx.Response | Exception,
) -> tuple[CredentialVault, RecordingHandler]:
    handler = RecordingHandler(*(replies or (httpx.Response(200, json=OPENAI_MODELS),)))
    verifier = ProviderVerifier(http_client=mock_client(handler), timeout=1.0)
    return CredentialVault(session, verifier=verifier, encryption=encryption, clock=clock), handler


async def _active_count(session: AsyncSession, user_id: str, provider: str = "openai") -> int:
    return await session.scalar(
        select(func.count())
        .select_from(ApiCredential)
        .where(
            ApiCredential.user_id == user_id,
            ApiCredential.provider == provider,
            ApiCredential.is_active.is_(True),
        )
    )


@pytest.fixture
def vault(async_session, encryption, clock) -> CredentialVault:
    return _vault(async_session, encryption, clock)[0]


class TestSave:
    """Tests for saving keys."""

    async def test_save_persists_one_active_encrypted_record(
        self,
        vault: CredentialVault,
        test_user: User,
        async_session: AsyncSession,
        encryption: EncryptionService,
    ):
        saved = await vault.save(test_user.id, "openai", "sk-validtestkey1234567890")

        assert saved.credential.key_prefix == "sk-vali..."
        assert saved.credential.key_name == "OpenAI API Key"
        assert saved.credential.is_verified
        assert saved.verification.models == ["gpt-4o", "gpt-4o-mini"]
        assert await _active_count(async_session, test_user.id) == 1

        record = await async_session.scalar(
            select(ApiCredential).options(undefer(ApiCredential.encrypted_key))
        )
        assert "sk-validtestkey" not in record.encrypted_key
        assert encryption.decrypt(record.encrypted_key) == "sk-validtestkey1234567890"

    async def test_second_save_deactivates_first(
        self, vault: CredentialVault, test_user: User, async_session: AsyncSession
    ):
        first = await vault.save(test_user.id, "openai", "sk-validtestkey-first")
        second = await vault.save(test_user.id, "openai", "sk-validtestkey-second", "Work key")

        assert await _active_count(async_session, test_user.id) == 1
        total = await async_session.scalar(select(func.count()).select_from(ApiCredential))
        assert total == 2

        active = await vault.list_credentials(test_user.id)
        assert [c.id for c in active] == [second.credential.id]
        assert active[0].key_name == "Work key"
        assert first.credential.id != second.credential.id
        assert await vault.get_decrypted(test_user.id, "openai") == "sk-validtestkey-second"

    async def test_rejected_key_is_never_stored(
        self, async_session, encryption, clock, test_user: User
    ):
        vault, _ = _vault(async_session, encryption, clock, httpx.Response(401))

        with pytest.raises(ProviderVerificationError) as exc_info:
            await vault.save(test_user.id, "openai", "sk-invalid")

        assert exc_info.value.kind is VerificationErrorKind.INVALID_KEY
        assert await async_session.scalar(select(func.count()).select_from(ApiCredential)) == 0

    async def test_rejected_key_keeps_existing_active_key(
        self, async_session, encryption, clock, test_user: User
    ):
        vault, handler = _vault(
            async_session,
            encryption,
            clock,
            httpx.Response(200, json=OPENAI_MODELS),
            httpx.Response(401),
        )
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        with pytest.raises(ProviderVerificationError):
            await vault.save(test_user.id, "openai", "sk-invalid")

        assert await vault.get_decrypted(test_user.id, "openai") == "sk-validtestkey"

    async def test_empty_key(self, vault: CredentialVault, test_user: User):
        with pytest.raises(ProviderVerificationError) as exc_info:
            await vault.save(test_user.id, "openai", "   ")

        assert exc_info.value.kind is VerificationErrorKind.INVALID_KEY

    async def test_unsupported_provider(self, vault: CredentialVault, test_user: User):
        with pytest.raises(UnsupportedProviderError):
            await vault.save(test_user.id, "acme-ai", "key")

    async def test_providers_are_independent(
        self, async_session, encryption, clock, test_user: User
    ):
        vault, _ = _vault(
            async_session,
            encryption,
            clock,
            httpx.Response(200, json=OPENAI_MODELS),
            httpx.Response(200, json={"data": [{"id": "mistral-large-latest"}]}),
        )
        await vault.save(test_user.id, "openai", "sk-validtestkey")
        await vault.save(test_user.id, "mistral", "mistral-key")

        assert [c.provider for c in await vault.list_credentials(test_user.id)] == ["mistral", "openai"]

    async def test_users_are_isolated(
        self, vault: CredentialVault, test_user: User, test_user_2: User
    ):
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        assert await vault.list_credentials(test_user_2.id) == []
        with pytest.raises(CredentialNotFoundError):
            await vault.get_decrypted(test_user_2.id, "openai")


class TestSingleActiveKey:
    """At most one active key per user and provider."""

    async def test_index_rejects_two_active_rows(
        self, async_session: AsyncSession, test_user: User
    ):
        for prefix in ("sk-aaaa...", "sk-bbbb..."):
            async_session.add(
                ApiCredential(
                    user_id=test_user.id,
                    provider="openai",
                    key_name="OpenAI API Key",
                    encrypted_key="{}",
                    key_prefix=prefix,
                    is_active=True,
                )
            )

        with pytest.raises(IntegrityError):
            await async_session.commit()

    async def test_index_allows_many_inactive_rows(
        self, async_session: AsyncSession, test_user: User
    ):
        for prefix in ("sk-aaaa...", "sk-bbbb...", "sk-cccc..."):
            async_session.add(
                ApiCredential(
                    user_id=test_user.id,
                    provider="openai",
                    key_name="OpenAI API Key",
                    encrypted_key="{}",
                    key_prefix=prefix,
                    is_active=False,
                )
            )
        await async_session.commit()

        assert await _active_count(async_session, test_user.id) == 0

    async def test_save_retries_after_conflicting_insert(
        self, vault: CredentialVault, test_user: User, async_session: AsyncSession
    ):
        real_commit = async_session.commit
        calls = 0

        async def commit_conflicting_once():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
            await real_commit()

        with patch.object(async_session, "commit", side_effect=commit_conflicting_once):
            await vault.save(test_user.id, "openai", "sk-validtestkey")

        assert calls == 2
        assert await _active_count(async_session, test_user.id) == 1

    async def test_many_sequential_saves_leave_one_active(
        self, vault: CredentialVault, test_user: User, async_session: AsyncSession
    ):
        for i in range(5):
            await vault.save(test_user.id, "openai", f"sk-validtestkey-{i}")
            assert await _active_count(async_session, test_user.id) == 1

        await vault.delete(test_user.id, "openai")
        assert await _active_count(async_session, test_user.id) == 0

    async def test_concurrent_saves_leave_one_active(
        self,
        file_session_maker: async_sessionmaker[AsyncSession],
        shared_user: User,
        encryption: EncryptionService,
        clock: FrozenClock,
    ):
        async with AsyncExitStack() as stack:
            sessions = [
                await stack.enter_async_context(file_session_maker()) for _ in range(5)
            ]
            saved = await asyncio.gather(
                *(
                    _vault(session, encryption, clock)[0].save(
                        shared_user.id, "openai", f"sk-validtestkey-{i}"
                    )
                    for i, session in enumerate(sessions)
                )
            )

        assert len(saved) == 5
        async with file_session_maker() as session:
            assert await _active_count(session, shared_user.id) == 1
            total = await session.scalar(select(func.count()).select_from(ApiCredential))
            assert total == 5


class TestTestAndValidate:
    """Tests for re-verifying stored keys and checking unsaved ones."""

    async def test_successful_retest_updates_metadata(
        self, async_session, encryption, clock: FrozenClock, test_user: User
    ):
        vault, handler = _vault(async_session, encryption, clock)
        await vault.save(test_user.id, "openai", "sk-validtestkey")
        clock.advance(hours=1)

        result = await vault.test(test_user.id, "openai")

        assert result.valid
        assert result.models == ["gpt-4o", "gpt-4o-mini"]
        record = await async_session.scalar(select(ApiCredential))
        assert record.usage_count == 1
        assert record.verified_at == clock.now()
        assert handler.last_request.headers["Authorization"] == "Bearer sk-validtestkey"

    async def test_rejected_retest_clears_verified(
        self, async_session, encryption, clock, test_user: User
    ):
        vault, _ = _vault(
            async_session,
            encryption,
            clock,
            httpx.Response(200, json=OPENAI_MODELS),
            httpx.Response(401),
        )
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        result = await vault.test(test_user.id, "openai")

        assert not result.valid
        record = await async_session.scalar(select(ApiCredential))
        assert record.is_verified is False
        assert record.verification_error == result.message
        assert len(record.validation_errors) == 1

    async def test_timeout_keeps_verified(self, async_session, encryption, clock, test_user: User):
        vault, _ = _vault(
            async_session,
            encryption,
            clock,
            httpx.Response(200, json=OPENAI_MODELS),
            httpx.ReadTimeout("timed out"),
        )
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        result = await vault.test(test_user.id, "openai")

        assert not result.valid
        record = await async_session.scalar(select(ApiCredential))
        assert record.is_verified is True
        assert record.verification_error == result.message

    async def test_validation_history_is_bounded(
        self, async_session, encryption, clock, test_user: User
    ):
        vault, _ = _vault(
            async_session,
            encryption,
            clock,
            httpx.Response(200, json=OPENAI_MODELS),
            httpx.Response(429),
        )
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        for _ in range(MAX_VALIDATION_ERRORS + 3):
            await vault.test(test_user.id, "openai")

        record = await async_session.scalar(select(ApiCredential))
        assert len(record.validation_errors) == MAX_VALIDATION_ERRORS

    async def test_test_without_key(self, vault: CredentialVault, test_user: User):
        with pytest.raises(CredentialNotFoundError):
            await vault.test(test_user.id, "openai")

    async def test_validate_does_not_store(
        self, vault: CredentialVault, async_session: AsyncSession
    ):
        result = await vault.validate("openai", "sk-validtestkey")

        assert result.valid
        assert result.message == "OpenAI API key is valid"
        assert await async_session.scalar(select(func.count()).select_from(ApiCredential)) == 0

    async def test_validate_reports_rejection(self, async_session, encryption, clock):
        vault, _ = _vault(async_session, encryption, clock, httpx.Response(403))

        result = await vault.validate("openai", "sk-limited")

        assert not result.valid
        assert "permissions" in result.message


class TestRetrieval:
    """Tests for decrypted access and soft deletion."""

    async def test_get_decrypted_counts_usage(
        self, vault: CredentialVault, test_user: User, async_session: AsyncSession
    ):
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        assert await vault.get_decrypted(test_user.id, "openai") == "sk-validtestkey"
        assert await vault.get_decrypted(test_user.id, "openai") == "sk-validtestkey"

        record = await async_session.scalar(select(ApiCredential))
        assert record.usage_count == 2

    async def test_expired_key_is_not_returned(
        self,
        vault: CredentialVault,
        test_user: User,
        async_session: AsyncSession,
        clock: FrozenClock,
    ):
        await vault.save(test_user.id, "openai", "sk-validtestkey")
        record = await async_session.scalar(select(ApiCredential))
        record.expires_at = clock.now() + timedelta(days=1)
        await async_session.commit()
        clock.advance(days=2)

        with pytest.raises(CredentialNotFoundError):
            await vault.get_decrypted(test_user.id, "openai")

    async def test_delete_is_soft(
        self, vault: CredentialVault, test_user: User, async_session: AsyncSession
    ):
        await vault.save(test_user.id, "openai", "sk-validtestkey")

        assert await vault.delete(test_user.id, "openai") is True
        assert await vault.delete(test_user.id, "openai") is False
        assert await vault.list_credentials(test_user.id) == []
        assert await async_session.scalar(select(func.count()).select_from(ApiCredential)) == 1


def test_mask_key():
    assert mask_key("sk-proj-abcdef123456") == "sk-proj..."
    assert mask_key("abc") == "abc..."
