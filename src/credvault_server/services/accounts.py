"""Account security: login with lockout, registration, password lifecycle."""

from datetime import timedelta
from typing import NamedTuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credvault_server.core.clock import Clock, system_clock
from credvault_server.core.config import settings
from credvault_server.core.errors import (
    AccountInactiveError,
    AccountLockedError,
    EmailAlreadyRegisteredError,
    InvalidCredentialsError,
    PasswordPolicyError,
    UserNotFoundError,
)
from credvault_server.core.password import burn_password_check, hash_password, verify_password
from credvault_server.models.user import User
from credvault_server.services.tokens import (
    RequestContext,
    TokenPair,
    TokenService,
    VerificationKind,
)

logger = structlog.get_logger()


class LoginResult(NamedTuple):
    user: User
    tokens: TokenPair


class RegistrationResult(NamedTuple):
    """New account plus the raw email-verification token to send."""

    user: User
    tokens: TokenPair
    verification_token: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AccountService:
    """Login state machine and password lifecycle for users.

    Lockout: each wrong password increments ``login_attempts``; reaching
    ``max_login_attempts`` opens a lockout window of ``lockout_minutes``.
    While the window is open, login fails before the password is looked at.
    Once it has passed, the counter starts again from zero.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock = system_clock,
        tokens: TokenService | None = None,
    ) -> None:
        """Initialize account service.

        Args:
            session: Database session
            clock: Time source for lockout windows
            tokens: Token service (built on the same session if omitted)
        """
        self.session = session
        self.clock = clock
        self.tokens = tokens or TokenService(session, clock)
        self.max_login_attempts = settings.max_login_attempts
        self.lockout_duration = timedelta(minutes=settings.lockout_minutes)
        self.logger = logger.bind(service="accounts")

    async def authenticate(
        self,
        email: str | None,
        password: str | None,
        context: RequestContext | None = None,
    ) -> LoginResult:
        """Log a user in.

        Args:
            email: Login email (any case)
            password: Plain text password
            context: Client IP and user agent, stored with the refresh token

        Returns:
            LoginResult with the user and a fresh token pair

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountLockedError: Lockout window is open
            AccountInactiveError: Correct password on a deactivated account
        """
        user = None
        if email and password:
            user = await self._find_by_email(email)

        if user is None or not user.password_hash or not password:
            # Same cost as a real comparison so unknown emails are not revealed by timing
            burn_password_check(password)
            raise InvalidCredentialsError()

        now = self.clock.now()
        if user.is_locked(now):
            self.logger.info("Login rejected, account locked", user_id=user.id)
            raise AccountLockedError()

        if user.lock_until is not None:
            # Window has passed
            user.lock_until = None
            user.login_attempts = 0

        if not verify_password(password, user.password_hash):
            await self._record_failed_attempt(user)
            raise InvalidCredentialsError()

        if not user.is_active:
            await self.session.commit()
            raise AccountInactiveError()

        user.login_attempts = 0
        user.lock_until = None
        user.last_login_at = now
        tokens = await self.tokens.issue_token_pair(user, context)

        self.logger.info("User logged in", user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def register(
        self,
        email: str,
        password: str,
        name: str | None = None,
        context: RequestContext | None = None,
    ) -> RegistrationResult:
        """Create an account and log it in.

        Raises:
            EmailAlreadyRegisteredError: If the email is taken
            PasswordPolicyError: If the password is too short
        """
        email = normalize_email(email)
        self._check_password_policy(password)

        if await self._find_by_email(email) is not None:
            raise EmailAlreadyRegisteredError()

        user = User(email=email, password_hash=hash_password(password), name=name)
        self.session.add(user)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise EmailAlreadyRegisteredError() from e

        verification_token = await self.tokens.create_verification_token(
            user, VerificationKind.EMAIL
        )
        tokens = await self.tokens.issue_token_pair(user, context)

        self.logger.info("User registered", user_id=user.id)
        return RegistrationResult(user=user, tokens=tokens, verification_token=verification_token)

    async def verify_email(self, raw_token: str) -> User:
        """Mark the email verified.

        Raises:
            VerificationTokenInvalidError: If the token is unknown, used or expired
        """
        user = await self.tokens.verify_verification_token(VerificationKind.EMAIL, raw_token)
        user.is_email_verified = True
        await self.session.commit()
        self.logger.info("Email verified", user_id=user.id)
        return user

    async def request_password_reset(self, email: str) -> str | None:
        """Create a password reset token.

        Returns:
            The raw token to email, or None if there is no active account for
            the address. Callers must respond the same way in both cases.
        """
        user = await self._find_by_email(email)
        if user is None or not user.is_active:
            return None
        return await self.tokens.create_verification_token(user, VerificationKind.PASSWORD_RESET)

    async def reset_password(self, raw_token: str, new_password: str) -> User:
        """Set a new password from a reset link and sign out everywhere.

        Raises:
            PasswordPolicyError: If the new password is too short
            VerificationTokenInvalidError: If the token is unknown, used or expired
        """
        self._check_password_policy(new_password)
        user = await self.tokens.verify_verification_token(
            VerificationKind.PASSWORD_RESET, raw_token
        )
        user.password_hash = hash_password(new_password)
        user.login_attempts = 0
        user.lock_until = None
        await self.tokens.revoke_all(user.id)
        self.logger.info("Password reset", user_id=user.id)
        return user

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        """Change password after checking the current one.

        Raises:
            UserNotFoundError: If the user does not exist
            InvalidCredentialsError: If the current password is wrong
            PasswordPolicyError: If the new password is too short
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError()
        if not user.password_hash or not verify_password(current_password, user.password_hash):
            raise InvalidCredentialsError()
        self._check_password_policy(new_password)

        user.password_hash = hash_password(new_password)
        await self.tokens.revoke_all(user.id)
        self.logger.info("Password changed", user_id=user.id)

    async def logout(self, user_id: str, refresh_token: str | None) -> None:
        """End one session."""
        if refresh_token:
            await self.tokens.revoke(user_id, refresh_token)

    async def logout_all(self, user_id: str) -> None:
        """End every session for the user."""
        await self.tokens.revoke_all(user_id)

    async def deactivate(self, user_id: str) -> None:
        """Soft-deactivate an account and revoke all its sessions.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise UserNotFoundError()
        user.is_active = False
        await self.tokens.revoke_all(user.id)
        self.logger.info("Account deactivated", user_id=user.id)

    async def _find_by_email(self, email: str) -> User | None:
        return await self.session.scalar(select(User).where(User.email == normalize_email(email)))

    async def _record_failed_attempt(self, user: User) -> None:
        user.login_attempts += 1
        if user.login_attempts >= self.max_login_attempts:
            user.lock_until = self.clock.now() + self.lockout_duration
            self.logger.warning(
                "Account locked after repeated failed logins",
                security_event="account_locked",
                user_id=user.id,
                attempts=user.login_attempts,
            )
        await self.session.commit()

    def _check_password_policy(self, password: str | None) -> None:
        if not password or len(password) < settings.min_password_length:
            raise PasswordPolicyError(
                f"Password must be at least {settings.min_password_length} characters"
            )
