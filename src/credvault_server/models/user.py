"""User account and refresh token models."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from credvault_server.core.clock import ensure_aware
from credvault_server.models.base import Base, TimestampMixin, generate_uuid


class UserRole(str, Enum):
    """Account role."""

    USER = "user"
    ADMIN = "admin"


class User(Base, TimestampMixin):
    """Application user.

    Holds the account security state: the token version stamped into every
    access token, failed-login counter and lockout window, and the hashes of
    outstanding email-verification and password-reset links.

    Attributes:
        id: UUID primary key
        email: Login email, lower-cased and stripped
        password_hash: Argon2 hash (None for accounts without a password)
        token_version: Bumped to invalidate every outstanding access token
        login_attempts: Consecutive failed logins
        lock_until: End of the current lockout window, if any
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=generate_uuid,
    )

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password_hash: Mapped[str | None] = mapped_column(String(255))
    name: Mapped[str | None] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(20), default=UserRole.USER.value, nullable=False)

    # Session revocation
    token_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Lockout
    login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lock_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Account status
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    is_email_verified: Mapped[bool] = mapped_column(default=False, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Single-use links (SHA-256 of the raw token)
    email_verification_token_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    email_verification_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    password_reset_token_hash: Mapped[str | None] = mapped_column(String(64), index=True)
    password_reset_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def is_locked(self, now: datetime) -> bool:
        """Check if the lockout window is still open at ``now``."""
        return self.lock_until is not None and ensure_aware(self.lock_until) > now

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API responses. Never includes secrets or lock state."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "is_active": self.is_active,
            "is_email_verified": self.is_email_verified,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        """String representation."""
        return f"<User(id={self.id}, email={self.email}, is_active={self.is_active})>"


class RefreshToken(Base):
    """A refresh token that is still allowed to rotate.

    Only the SHA-256 hash is stored. The autoincrement id orders a user's
    tokens oldest first, which is the eviction order when the cap is hit.
    """

    __tablename__ = "refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ip: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(512))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<RefreshToken(id={self.id}, user_id={self.user_id})>"
