"""Access/refresh token lifecycle and single-use verification tokens.

Access tokens are short-lived JWTs stamped with the user's ``token_version``;
bumping the version revokes all of them at once. Refresh tokens are
long-lived JWTs signed with a separate secret. Only their SHA-256 hashes are
stored, and each one may be rotated exactly once: presenting a token that is
no longer in the stored list is treated as theft and revokes every session.
"""

import hashlib
import secrets
from datetime import timedelta
from enum import Enum
from typing import Any, NamedTuple, NoReturn

import jwt
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from credvault_server.core.clock import Clock, ensure_aware, system_clock
from credvault_server.core.config import settings
from credvault_server.core.errors import (
    AccountInactiveError,
    AccountLockedError,
    RefreshTokenReuseError,
    TokenExpiredError,
    TokenInvalidError,
    VerificationTokenInvalidError,
)
from credvault_server.models.user import RefreshToken, User

logger = structlog.get_logger()

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
VERIFICATION_TOKEN_BYTES = 32


class VerificationKind(str, Enum):
    """Purpose of a single-use emailed link."""

    EMAIL = "email"
    PASSWORD_RESET = "password_reset"


class RequestContext(NamedTuple):
    """Where a token request came from, stored next to the refresh token."""

    ip: str | None = None
    user_agent: str | None = None


class IssuedRefreshToken(NamedTuple):
    token: str
    jti: str


class TokenPair(NamedTuple):
    """Access and refresh tokens handed to the client together."""

    access_token: str
    refresh_token: str
    expires_in: int  # Access token lifetime in seconds


class AccessClaims(NamedTuple):
    user_id: str
    token_version: int
    issued_at: int
    expires_at: int


class RefreshClaims(NamedTuple):
    user_id: str
    jti: str
    issued_at: int
    expires_at: int


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used to store tokens without keeping them."""
    return hashlib.sha256(raw.encode()).hexdigest()


class TokenService:
    """Issue, verify, rotate and revoke tokens for users.

    Issuing, rotation and revocation commit their own transaction, so a
    revocation is durable even when the caller goes on to raise. Consuming a
    verification token only flushes; the caller commits along with whatever
    the token unlocked.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = system_clock,
        *,
        access_secret: str | None = None,
        refresh_secret: str | None = None,
    ) -> None:
        """Initialize token service.

        Args:
            session: Database session
            clock: Time source for issuing and checking expiry
            access_secret: Access token signing secret (defaults to JWT_SECRET)
            refresh_secret: Refresh token signing secret (defaults to JWT_REFRESH_SECRET)
        """
        self.session = session
        self.clock = clock
        self.access_secret = access_secret or settings.get_jwt_secret()
        self.refresh_secret = refresh_secret or settings.get_jwt_refresh_secret()
        self.algorithm = settings.jwt_algorithm
        self.access_ttl = timedelta(minutes=settings.access_token_expiry_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_expiry_days)
        self.max_refresh_tokens = settings.max_refresh_tokens
        self.logger = logger.bind(service="tokens")

    # -------------------------------------------------------------------------
    # Issuing
    # -------------------------------------------------------------------------

    def issue_access_token(self, user: User) -> str:
        """Sign an access token carrying the user's current token version."""
        now = self.clock.now()
        payload = {
            "sub": user.id,
            "token_version": user.token_version,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self.access_secret, algorithm=self.algorithm)

    def issue_refresh_token(self, user: User) -> IssuedRefreshToken:
        """Sign a refresh token. The random jti makes every token unique."""
        now = self.clock.now()
        jti = secrets.token_hex(16)
        payload = {
            "sub": user.id,
            "type": REFRESH_TOKEN_TYPE,
            "jti": jti,
            "iat": now,
            "exp": now + self.refresh_ttl,
        }
        token = jwt.encode(payload, self.refresh_secret, algorithm=self.algorithm)
        return IssuedRefreshToken(token=token, jti=jti)

    async def issue_token_pair(
        self, user: User, context: RequestContext | None = None
    ) -> TokenPair:
        """Issue an access/refresh pair and remember the refresh token.

        The user's stored list is trimmed to the newest ``max_refresh_tokens``
        entries, oldest evicted first.
        """
        context = context or RequestContext()
        access_token = self.issue_access_token(user)
        refresh = self.issue_refresh_token(user)

        self.session.add(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_token(refresh.token),
                ip=context.ip,
                user_agent=context.user_agent,
                created_at=self.clock.now(),
            )
        )
        await self.session.flush()
        await self._trim_refresh_tokens(user.id)
        await self.session.commit()

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=int(self.access_ttl.total_seconds()),
        )

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_access_token(self, token: str) -> AccessClaims:
        """Check signature, type and expiry of an access token.

        Raises:
            TokenExpiredError: If the token is past its expiry
            TokenInvalidError: If the token is malformed, tampered or not an access token
        """
        claims = self._decode(token, self.access_secret, ACCESS_TOKEN_TYPE, "token_version")
        return AccessClaims(
            user_id=claims["sub"],
            token_version=claims["token_version"],
            issued_at=claims["iat"],
            expires_at=claims["exp"],
        )

    def verify_refresh_token(self, token: str) -> RefreshClaims:
        """Check signature, type and expiry of a refresh token.

        Raises:
            TokenExpiredError: If the token is past its expiry
            TokenInvalidError: If the token is malformed, tampered or not a refresh token
        """
        claims = self._decode(token, self.refresh_secret, REFRESH_TOKEN_TYPE, "jti")
        return RefreshClaims(
            user_id=claims["sub"],
            jti=claims["jti"],
            issued_at=claims["iat"],
            expires_at=claims["exp"],
        )

    async def authenticate_access_token(self, token: str) -> User:
        """Resolve an access token to a user who may still use it.

        Raises:
            TokenExpiredError: If the token is past its expiry
            TokenInvalidError: If the token is bad, the user is gone, or the
                token version has been bumped since it was issued
            AccountInactiveError: If the account was deactivated
            AccountLockedError: If the account is inside a lockout window
        """
        claims = self.verify_access_token(token)

        user = await self.session.get(User, claims.user_id)
        if user is None:
            raise TokenInvalidError("User not found")
        if claims.token_version != user.token_version:
            raise TokenInvalidError("Token has been revoked")
        if not user.is_active:
            raise AccountInactiveError()
        if user.is_locked(self.clock.now()):
            raise AccountLockedError()

        return user

    # -------------------------------------------------------------------------
    # Rotation and revocation
    # -------------------------------------------------------------------------

    async def rotate_refresh_token(
        self, token: str, context: RequestContext | None = None
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, consuming the old one.

        A token with a valid signature that is no longer stored has already
        been rotated (or revoked). That is treated as a stolen token: every
        stored refresh token is deleted and the token version is bumped before
        the error is raised.

        Raises:
            TokenExpiredError: If the refresh token is past its expiry
            TokenInvalidError: If the token is bad or the user is gone or inactive
            RefreshTokenReuseError: If the token was already used
        """
        claims = self.verify_refresh_token(token)

        user = await self.session.get(User, claims.user_id)
        if user is None or not user.is_active:
            raise TokenInvalidError("User not found or inactive")

        stored = await self.session.scalar(
            select(RefreshToken).where(
                RefreshToken.user_id == user.id,
                RefreshToken.token_hash == hash_token(token),
            )
        )
        if stored is None:
            await self._reject_reused_token(user, claims.jti)

        # A concurrent rotation of the same token may have removed it since the lookup
        removed = await self.session.execute(
            delete(RefreshToken).where(RefreshToken.id == stored.id)
        )
        if removed.rowcount == 0:
            await self._reject_reused_token(user, claims.jti)

        return await self.issue_token_pair(user, context)

    async def revoke(self, user_id: str, refresh_token: str) -> bool:
        """Forget a single refresh token.

        Returns:
            True if a stored token was removed
        """
        result = await self.session.execute(
            delete(RefreshToken).where(
                RefreshToken.user_id == user_id,
                RefreshToken.token_hash == hash_token(refresh_token),
            )
        )
        await self.session.commit()
        return bool(result.rowcount)

    async def revoke_all(self, user_id: str) -> None:
        """Delete every refresh token and invalidate every access token."""
        user = await self.session.get(User, user_id)
        if user is None:
            return
        await self._revoke_everything(user)
        await self.session.commit()
        self.logger.info("All sessions revoked", user_id=user_id, token_version=user.token_version)

    async def _reject_reused_token(self, user: User, jti: str) -> NoReturn:
        await self._revoke_everything(user)
        await self.session.commit()
        self.logger.warning(
            "Refresh token reuse detected, all sessions revoked",
            security_event="refresh_token_reuse",
            user_id=user.id,
            jti=jti,
            token_version=user.token_version,
        )
        raise RefreshTokenReuseError()

    async def _revoke_everything(self, user: User) -> None:
        await self.session.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
        user.token_version += 1

    async def _trim_refresh_tokens(self, user_id: str) -> None:
        ids = (
            await self.session.scalars(
                select(RefreshToken.id)
                .where(RefreshToken.user_id == user_id)
                .order_by(RefreshToken.id)
            )
        ).all()
        excess = len(ids) - self.max_refresh_tokens
        if excess > 0:
            await self.session.execute(delete(RefreshToken).where(RefreshToken.id.in_(ids[:excess])))

    # -------------------------------------------------------------------------
    # Email verification and password reset links
    # -------------------------------------------------------------------------

    async def create_verification_token(self, user: User, kind: VerificationKind) -> str:
        """Create a single-use link token, replacing any outstanding one.

        Only the hash and expiry are stored on the user.

        Returns:
            The raw token, to be emailed and never stored
        """
        raw = secrets.token_hex(VERIFICATION_TOKEN_BYTES)
        expires_at = self.clock.now() + _verification_ttl(kind)

        if kind is VerificationKind.EMAIL:
            user.email_verification_token_hash = hash_token(raw)
            user.email_verification_expires_at = expires_at
        else:
            user.password_reset_token_hash = hash_token(raw)
            user.password_reset_expires_at = expires_at

        await self.session.commit()
        return raw

    async def verify_verification_token(self, kind: VerificationKind, raw: str) -> User:
        """Consume a link token.

        Raises:
            VerificationTokenInvalidError: If no unexpired token matches
        """
        if not raw:
            raise VerificationTokenInvalidError()

        hash_column = (
            User.email_verification_token_hash
            if kind is VerificationKind.EMAIL
            else User.password_reset_token_hash
        )
        user = await self.session.scalar(select(User).where(hash_column == hash_token(raw)))
        if user is None:
            raise VerificationTokenInvalidError()

        expires_at = (
            user.email_verification_expires_at
            if kind is VerificationKind.EMAIL
            else user.password_reset_expires_at
        )
        if expires_at is None or ensure_aware(expires_at) <= self.clock.now():
            raise VerificationTokenInvalidError()

        if kind is VerificationKind.EMAIL:
            user.email_verification_token_hash = None
            user.email_verification_expires_at = None
        else:
            user.password_reset_token_hash = None
            user.password_reset_expires_at = None
        await self.session.flush()
        return user

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _decode(self, token: str, secret: str, expected_type: str, *required: str) -> dict[str, Any]:
        # Expiry is checked against the injected clock, not PyJWT's wall clock
        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "type", "iat", "exp", *required],
                },
            )
        except jwt.InvalidTokenError as e:
            raise TokenInvalidError() from e

        if claims.get("type") != expected_type:
            raise TokenInvalidError("Invalid token type")
        if claims["exp"] <= self.clock.now().timestamp():
            raise TokenExpiredError()
        return claims


def _verification_ttl(kind: VerificationKind) -> timedelta:
    if kind is VerificationKind.EMAIL:
        return timedelta(hours=settings.email_verification_hours)
    return timedelta(minutes=settings.password_reset_minutes)

