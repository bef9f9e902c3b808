"""Database models."""

from credvault_server.models.base import Base
from credvault_server.models.credential import ApiCredential, Provider
from credvault_server.models.integration import (
    IntegrationConnection,
    IntegrationStatus,
    IntegrationType,
)
from credvault_server.models.user import RefreshToken, User, UserRole

__all__ = [
    "Base",
    "ApiCredential",
    "IntegrationConnection",
    "IntegrationStatus",
    "IntegrationType",
    "Provider",
    "RefreshToken",
    "User",
    "UserRole",
]
