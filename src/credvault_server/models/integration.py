"""OAuth integration connection model."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from credvault_server.core.clock import ensure_aware
from credvault_server.models.base import Base, TimestampMixin, UserScopedMixin, generate_uuid


class IntegrationType(str, Enum):
    MCP_SERVER = "mcp_server"
    API_PROVIDER = "api_provider"


class IntegrationStatus(str, Enum):
    """Connection lifecycle."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"
    PENDING = "pending"


class IntegrationConnection(Base, TimestampMixin, UserScopedMixin):
    """A user's OAuth connection to a third-party integration.

    One row per (user, integration). Reconnecting overwrites the tokens in
    place. Token columns hold encrypted blobs only.
    """

    __tablename__ = "integration_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "integration_id", name="uq_integration_user_integration"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    integration_type: Mapped[str] = mapped_column(
        String(32), default=IntegrationType.MCP_SERVER.value, nullable=False
    )
    integration_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    integration_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=IntegrationStatus.PENDING.value, nullable=False, index=True
    )

    # OAuth tokens (encrypted at rest)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, deferred=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, deferred=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Provider account identifiers
    workspace_id: Mapped[str | None] = mapped_column(String(255))
    organization_id: Mapped[str | None] = mapped_column(String(255))
    team_id: Mapped[str | None] = mapped_column(String(255))

    # [{"action": ..., "enabled": ..., "last_used_at": ...}]
    capabilities: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    # Sync metadata
    version: Mapped[str | None] = mapped_column(String(32))
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    @property
    def is_connected(self) -> bool:
        return self.status == IntegrationStatus.CONNECTED.value

    def is_token_valid(self, now: datetime) -> bool:
        """Whether a live connection holds an unexpired token.

        Only a connected connection qualifies. A token without an expiry is
        treated as valid.
        """
        if not self.is_connected:
            return False
        if self.token_expires_at is None:
            return True
        return now < ensure_aware(self.token_expires_at)

    def mark_error(self, error: Exception, now: datetime) -> None:
        """Put the connection into the error state and record why."""
        self.status = IntegrationStatus.ERROR.value
        self.error_count = (self.error_count or 0) + 1
        self.last_error = {
            "message": str(error),
            "code": getattr(error, "code", None) or "UNKNOWN_ERROR",
            "timestamp": now.isoformat(),
        }

    def record_usage(self, action: str, now: datetime) -> None:
        """Stamp the capability used and bump the sync counter."""
        capabilities = []
        for capability in self.capabilities or []:
            if capability.get("action") == action:
                capability = {**capability, "last_used_at": now.isoformat()}
            capabilities.append(capability)
        self.capabilities = capabilities
        self.sync_count = (self.sync_count or 0) + 1

    def to_public_dict(self, now: datetime) -> dict[str, Any]:
        """Serialize for API responses. Token columns are never included."""
        return {
            "integration_id": self.integration_id,
            "integration_name": self.integration_name,
            "integration_type": self.integration_type,
            "status": self.status,
            "is_connected": self.is_connected,
            "is_token_valid": self.is_token_valid(now),
            "workspace_id": self.workspace_id,
            "capabilities": [c.get("action") for c in self.capabilities or [] if c.get("enabled")],
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "sync_count": self.sync_count,
            "error_count": self.error_count,
        }

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<IntegrationConnection(user_id={self.user_id}, "
            f"integration_id={self.integration_id}, status={self.status})>"
        )
