"""Account endpoints: registration, login, token refresh, password lifecycle."""

from typing import Annotated, Any

from litestar import Request, Response, Router, get, post
from litestar.datastructures import Cookie
from litestar.di import Provide
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED
from pydantic import BaseModel, Field

from credvault_server.api.deps import (
    provide_account_service,
    provide_token_service,
    provide_user,
    request_context,
)
from credvault_server.core.auth import access_token_guard
from credvault_server.core.config import settings
from credvault_server.core.errors import TokenInvalidError
from credvault_server.models.user import User
from credvault_server.services.accounts import AccountService
from credvault_server.services.tokens import TokenPair, TokenService

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = f"{settings.api_prefix}/auth"

# ==============================================================================
# Request Models
# ==============================================================================


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255, description="Login email")
    password: str = Field(description="Plain text password (min 8 characters)")
    name: str | None = Field(default=None, max_length=255, description="Display name")


class LoginRequest(BaseModel):
    email: str = Field(description="Login email")
    password: str = Field(description="Plain text password")


class RefreshRequest(BaseModel):
    """Refresh token may come in the body or the HttpOnly cookie."""

    refresh_token: str | None = Field(default=None, description="Refresh token")


class TokenRequest(BaseModel):
    token: str = Field(description="Token from the emailed link")


class ForgotPasswordRequest(BaseModel):
    email: str = Field(description="Account email")


class ResetPasswordRequest(BaseModel):
    token: str = Field(description="Token from the password reset link")
    password: str = Field(description="New password")


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(description="Current password")
    new_password: str = Field(description="New password")


# ==============================================================================
# Helpers
# ==============================================================================


def _refresh_cookie(value: str, max_age: int) -> Cookie:
    return Cookie(
        key=REFRESH_COOKIE,
        value=value,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="strict",
        max_age=max_age,
    )


def _token_response(
    user: User, tokens: TokenPair, status_code: int = HTTP_200_OK
) -> Response[dict[str, Any]]:
    """Access token in the body, refresh token only in the HttpOnly cookie."""
    return Response(
        content={
            "user": user.to_public_dict(),
            "access_token": tokens.access_token,
            "token_type": "Bearer",
            "expires_in": tokens.expires_in,
        },
        status_code=status_code,
        cookies=[
            _refresh_cookie(tokens.refresh_token, settings.refresh_token_expiry_days * 86400)
        ],
    )


# ==============================================================================
# Endpoints
# ==============================================================================


@post("/register", status_code=HTTP_201_CREATED)
async def register(
    data: RegisterRequest,
    accounts: AccountService,
    request: Request,
) -> Response[dict[str, Any]]:
    """Create an account and log it in.

    The email verification token is created here; delivering it is left to
    the mail integration.
    """
    result = await accounts.register(
        data.email, data.password, data.name, request_context(request)
    )
    return _token_response(result.user, result.tokens, status_code=HTTP_201_CREATED)


@post("/login", status_code=HTTP_200_OK)
async def login(
    data: LoginRequest,
    accounts: AccountService,
    request: Request,
) -> Response[dict[str, Any]]:
    """Log in with email and password."""
    result = await accounts.authenticate(data.email, data.password, request_context(request))
    return _token_response(result.user, result.tokens)


@post("/refresh", status_code=HTTP_200_OK)
async def refresh(
    tokens: TokenService,
    request: Request,
    refresh_cookie: Annotated[str | None, Parameter(cookie=REFRESH_COOKIE)] = None,
    data: RefreshRequest | None = None,
) -> Response[dict[str, Any]]:
    """Rotate a refresh token into a new pair.

    Presenting a refresh token that was already rotated revokes every
    session for the user.
    """
    raw = (data.refresh_token if data else None) or refresh_cookie
    if not raw:
        raise TokenInvalidError("Refresh token required")

    pair = await tokens.rotate_refresh_token(raw, request_context(request))
    return Response(
        content={
            "access_token": pair.access_token,
            "token_type": "Bearer",
            "expires_in": pair.expires_in,
        },
        cookies=[_refresh_cookie(pair.refresh_token, settings.refresh_token_expiry_days * 86400)],
    )


@post("/logout", status_code=HTTP_200_OK, guards=[access_token_guard])
async def logout(
    accounts: AccountService,
    user: User,
    refresh_cookie: Annotated[str | None, Parameter(cookie=REFRESH_COOKIE)] = None,
    data: RefreshRequest | None = None,
) -> Response[dict[str, str]]:
    """End the current session."""
    await accounts.logout(user.id, (data.refresh_token if data else None) or refresh_cookie)
    return Response(
        content={"message": "Logged out successfully"},
        cookies=[_refresh_cookie("", 0)],
    )


@post("/logout-all", status_code=HTTP_200_OK, guards=[access_token_guard])
async def logout_all(accounts: AccountService, user: User) -> Response[dict[str, str]]:
    """End every session for the current user."""
    await accounts.logout_all(user.id)
    return Response(
        content={"message": "Logged out from all devices"},
        cookies=[_refresh_cookie("", 0)],
    )


@post("/verify-email", status_code=HTTP_200_OK)
async def verify_email(data: TokenRequest, accounts: AccountService) -> dict[str, str]:
    await accounts.verify_email(data.token)
    return {"message": "Email verified successfully"}


@post("/forgot-password", status_code=HTTP_200_OK)
async def forgot_password(data: ForgotPasswordRequest, accounts: AccountService) -> dict[str, str]:
    """Start a password reset. The response never reveals whether the email exists."""
    await accounts.request_password_reset(data.email)
    return {"message": "If an account exists for this email, a reset link has been sent"}


@post("/reset-password", status_code=HTTP_200_OK)
async def reset_password(data: ResetPasswordRequest, accounts: AccountService) -> dict[str, str]:
    await accounts.reset_password(data.token, data.password)
    return {"message": "Password reset successfully. Please log in again."}


@post("/change-password", status_code=HTTP_200_OK, guards=[access_token_guard])
async def change_password(
    data: ChangePasswordRequest,
    accounts: AccountService,
    user: User,
) -> dict[str, str]:
    await accounts.change_password(user.id, data.current_password, data.new_password)
    return {"message": "Password changed successfully. Please log in again."}


@get("/me", status_code=HTTP_200_OK, guards=[access_token_guard])
async def me(user: User) -> dict[str, Any]:
    """Current user's profile."""
    return {"user": user.to_public_dict()}


auth_router = Router(
    path="/auth",
    route_handlers=[
        register,
        login,
        refresh,
        logout,
        logout_all,
        verify_email,
        forgot_password,
        reset_password,
        change_password,
        me,
    ],
    dependencies={
        "accounts": Provide(provide_account_service),
        "tokens": Provide(provide_token_service),
        "user": Provide(provide_user),
    },
    tags=["auth"],
)
