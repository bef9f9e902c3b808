"""Domain errors.

Every error carries an HTTP status and a stable machine-readable code so the
API layer can translate it without knowing where it came from. Messages are
safe to show to clients: they never contain token or key material.
"""

from enum import Enum
from typing import Any

from litestar.status_codes import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_423_LOCKED,
    HTTP_429_TOO_MANY_REQUESTS,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_502_BAD_GATEWAY,
    HTTP_503_SERVICE_UNAVAILABLE,
)


class CredvaultError(Exception):
    """Base exception for all credvault errors."""

    status_code: int = HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        """Client-facing error body."""
        return {"status": "error", "code": self.code, "message": self.message}


# =============================================================================
# Authentication
# =============================================================================


class InvalidCredentialsError(CredvaultError):
    """Wrong password or unknown user. Same message for both."""

    status_code = HTTP_401_UNAUTHORIZED
    code = "INVALID_CREDENTIALS"

    def __init__(self) -> None:
        super().__init__("Invalid email or password")


class AccountLockedError(CredvaultError):
    """Lockout window is active."""

    status_code = HTTP_423_LOCKED
    code = "ACCOUNT_LOCKED"

    def __init__(self) -> None:
        super().__init__(
            "Account temporarily locked due to too many failed login attempts. "
            "Please try again later."
        )


class AccountInactiveError(CredvaultError):
    status_code = HTTP_401_UNAUTHORIZED
    code = "ACCOUNT_INACTIVE"

    def __init__(self) -> None:
        super().__init__("Account has been deactivated. Please contact support.")


class TokenExpiredError(CredvaultError):
    """Signature is fine but the token is past its expiry. Client should refresh."""

    status_code = HTTP_401_UNAUTHORIZED
    code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "Token has expired") -> None:
        super().__init__(message)


class TokenInvalidError(CredvaultError):
    """Malformed, tampered, revoked or wrong-type token. Client must log in again."""

    status_code = HTTP_401_UNAUTHORIZED
    code = "INVALID_TOKEN"

    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message)


class RefreshTokenReuseError(CredvaultError):
    """A rotated refresh token was presented again. All sessions were revoked."""

    status_code = HTTP_401_UNAUTHORIZED
    code = "REFRESH_TOKEN_REUSE"

    def __init__(self) -> None:
        super().__init__("Refresh token reuse detected. All sessions revoked.")


class VerificationTokenInvalidError(CredvaultError):
    status_code = HTTP_400_BAD_REQUEST
    code = "INVALID_VERIFICATION_TOKEN"

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message)


class EmailAlreadyRegisteredError(CredvaultError):
    status_code = HTTP_409_CONFLICT
    code = "EMAIL_TAKEN"

    def __init__(self) -> None:
        super().__init__("User already exists with this email address")


class PasswordPolicyError(CredvaultError):
    status_code = HTTP_400_BAD_REQUEST
    code = "WEAK_PASSWORD"


class UserNotFoundError(CredvaultError):
    status_code = HTTP_404_NOT_FOUND
    code = "USER_NOT_FOUND"

    def __init__(self) -> None:
        super().__init__("User not found")


# =============================================================================
# Encryption
# =============================================================================


class EncryptionError(CredvaultError):
    code = "ENCRYPTION_FAILURE"

    def __init__(self, message: str = "Failed to encrypt data") -> None:
        super().__init__(message)


class DecryptionError(CredvaultError):
    """Authentication tag did not verify: tampered blob or wrong key."""

    code = "DECRYPTION_FAILURE"

    def __init__(self, message: str = "Failed to decrypt data") -> None:
        super().__init__(message)


# =============================================================================
# Credential vault
# =============================================================================


class VerificationErrorKind(str, Enum):
    """Why a provider rejected (or could not check) a key."""

    INVALID_KEY = "invalid_key"
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    NETWORK_ERROR = "network_error"


_KIND_STATUS = {
    VerificationErrorKind.INVALID_KEY: HTTP_400_BAD_REQUEST,
    VerificationErrorKind.RATE_LIMITED: HTTP_429_TOO_MANY_REQUESTS,
    VerificationErrorKind.INSUFFICIENT_SCOPE: HTTP_403_FORBIDDEN,
    VerificationErrorKind.NETWORK_ERROR: HTTP_503_SERVICE_UNAVAILABLE,
}


class ProviderVerificationError(CredvaultError):
    """Live verification against the provider failed."""

    def __init__(self, kind: VerificationErrorKind, message: str, *, provider: str) -> None:
        super().__init__(message, details={"provider": provider, "kind": kind.value})
        self.kind = kind
        self.provider = provider
        self.status_code = _KIND_STATUS[kind]
        self.code = f"PROVIDER_{kind.value.upper()}"

    @property
    def is_retryable(self) -> bool:
        """Timeouts and rate limits say nothing about whether the key is good."""
        return self.kind in (VerificationErrorKind.NETWORK_ERROR, VerificationErrorKind.RATE_LIMITED)


class UnsupportedProviderError(CredvaultError):
    status_code = HTTP_400_BAD_REQUEST
    code = "UNSUPPORTED_PROVIDER"

    def __init__(self, provider: str) -> None:
        super().__init__(f"Unsupported provider: {provider}")


class CredentialNotFoundError(CredvaultError):
    status_code = HTTP_404_NOT_FOUND
    code = "CREDENTIAL_NOT_FOUND"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No API key found for provider {provider}")


# =============================================================================
# OAuth integrations
# =============================================================================


class OAuthStateInvalidError(CredvaultError):
    """Missing, unknown, consumed or expired state. The flow must be restarted."""

    status_code = HTTP_400_BAD_REQUEST
    code = "OAUTH_STATE_INVALID"

    def __init__(self, message: str = "Invalid or expired state parameter") -> None:
        super().__init__(message)


class OAuthAuthorizationDeniedError(CredvaultError):
    status_code = HTTP_400_BAD_REQUEST
    code = "OAUTH_DENIED"

    def __init__(self, reason: str) -> None:
        super().__init__(f"OAuth error: {reason}", details={"reason": reason})


class OAuthExchangeError(CredvaultError):
    """Token endpoint rejected the code or refresh grant."""

    status_code = HTTP_502_BAD_GATEWAY
    code = "OAUTH_EXCHANGE_FAILED"


class ProviderNetworkError(CredvaultError):
    """Provider unreachable or timed out. Safe to retry."""

    status_code = HTTP_503_SERVICE_UNAVAILABLE
    code = "PROVIDER_UNAVAILABLE"


class OAuthNotConfiguredError(CredvaultError):
    status_code = HTTP_503_SERVICE_UNAVAILABLE
    code = "OAUTH_NOT_CONFIGURED"

    def __init__(self, integration_id: str) -> None:
        super().__init__(f"OAuth credentials not configured for {integration_id}")


class IntegrationNotFoundError(CredvaultError):
    status_code = HTTP_404_NOT_FOUND
    code = "INTEGRATION_NOT_FOUND"

    def __init__(self, integration_id: str) -> None:
        super().__init__(f"Integration not found: {integration_id}")


class IntegrationNotConnectedError(CredvaultError):
    status_code = HTTP_409_CONFLICT
    code = "INTEGRATION_NOT_CONNECTED"

    def __init__(self, integration_id: str) -> None:
        super().__init__(f"Integration not connected: {integration_id}")


class ReauthorizationRequiredError(CredvaultError):
    """Access token expired and there is no refresh token to renew it."""

    status_code = HTTP_401_UNAUTHORIZED
    code = "REAUTHORIZATION_REQUIRED"

    def __init__(self, integration_id: str) -> None:
        super().__init__(
            f"Access token for {integration_id} expired and no refresh token is available. "
            "Please reconnect."
        )


class InvalidRedirectUriError(CredvaultError):
    status_code = HTTP_400_BAD_REQUEST
    code = "INVALID_REDIRECT_URI"
