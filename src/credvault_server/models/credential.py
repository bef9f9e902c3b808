"""Third-party API key model."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from credvault_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid


class Provider(str, Enum):
    """AI providers whose keys can be stored."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE_AI = "google-ai"
    MISTRAL = "mistral"
    COHERE = "cohere"

    @property
    def display_name(self) -> str:
        """Human-readable provider name."""
        return {
            Provider.OPENAI: "OpenAI",
            Provider.ANTHROPIC: "Anthropic",
            Provider.GOOGLE_AI: "Google AI",
            Provider.MISTRAL: "Mistral",
            Provider.COHERE: "Cohere",
        }[self]


# Validation history kept per credential
MAX_VALIDATION_ERRORS = 5


class ApiCredential(Base, TimestampMixin, UserScopedMixin):
    """A user's API key for an AI provider, encrypted at rest.

    At most one active key per (user, provider); saving a new key deactivates
    the previous one. The partial unique index enforces this at the database
    level so two concurrent saves cannot both leave an active row.
    """

    __tablename__ = "api_credentials"
    __table_args__ = (
        Index(
            "uq_api_credentials_active_provider",
            "user_id",
            "provider",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    key_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Never loaded unless explicitly asked for
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False, deferred=True)
    key_prefix: Mapped[str] = mapped_column(String(16), nullable=False)

    is_active: Mapped[bool] = mapped_column(default=True, nullable=False, index=True)
    is_verified: Mapped[bool] = mapped_column(default=False, nullable=False)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    verification_error: Mapped[str | None] = mapped_column(Text)

    # Usage
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Provider metadata from verification
    organization_id: Mapped[str | None] = mapped_column(String(255))
    permissions: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    models: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    rate_limit: Mapped[int | None] = mapped_column(Integer)
    quota_limit: Mapped[int | None] = mapped_column(Integer)

    # Last few failed checks: [{"error": ..., "timestamp": ...}]
    validation_errors: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, default=list, nullable=False
    )

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def record_validation_error(self, message: str, at: datetime) -> None:
        """Append a failed check, keeping only the most recent few."""
        history = [*(self.validation_errors or []), {"error": message, "timestamp": at.isoformat()}]
        self.validation_errors = history[-MAX_VALIDATION_ERRORS:]

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<ApiCredential(user_id={self.user_id}, provider={self.provider}, "
            f"prefix={self.key_prefix}, is_active={self.is_active})>"
        )
