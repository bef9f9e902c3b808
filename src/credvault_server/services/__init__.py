"""Application services."""

from credvault_server.services.accounts import AccountService
from credvault_server.services.oauth import OAuthConnectionManager
from credvault_server.services.tokens import TokenService
from credvault_server.services.vault import CredentialVault
from credvault_server.services.verifiers import ProviderVerifier

__all__ = [
    "AccountService",
    "CredentialVault",
    "OAuthConnectionManager",
    "ProviderVerifier",
    "TokenService",
]
