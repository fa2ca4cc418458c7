from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from huddle.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenPairResponse,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    UserSummary,
    VerifyEmailRequest,
    VerifyTwoFactorRequest,
)
from huddle.logging import bind_principal, get_logger
from huddle.service.auth import AuthContext
from huddle.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = get_runtime().auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    bind_principal(ctx.user_id)
    return ctx


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and email a verification link.

    Raises:
        409: If the email or username is already taken; ``details.field``
            names which one.
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        date_of_birth=body.date_of_birth.isoformat(),
    )
    user = result.user
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=user.id,
            username=user.username,
            email=user.email,
            discriminator=user.discriminator,
            verification_email_sent=result.verification_email_sent,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: For an unknown email or a wrong password, indistinguishably.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        device_info=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    user = result.user
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            user=UserSummary(
                id=user.id,
                username=user.username,
                discriminator=user.discriminator,
                email=user.email,
                email_verified=user.email_verified,
            ),
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Rotate a refresh token; the presented token stops working."""
    pair = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token),
    )


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    """Revoke every session of the caller, on all devices."""
    revoked = await get_runtime().auth.logout(principal.user_id)
    logger.info("user_logged_out", sessions_revoked=revoked)
    return Response(status_code=204)


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(principal: AuthContext = Depends(get_user)):
    sent = await get_runtime().auth.resend_email_verification(principal)
    return Envelope(status="ok", data={"status": "sent" if sent else "failed"})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data=MessageResponse(message="Email verified successfully"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Start a password reset.

    The response is identical whether or not an account exists.
    """
    message = await get_runtime().auth.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    """Set a new password with a reset token and sign out every session."""
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="Password reset successfully"))


@router.post("/auth/enable-2fa", response_model=Envelope, tags=["auth"])
async def enable_two_factor(principal: AuthContext = Depends(get_user)):
    """Generate TOTP material; 2FA stays off until ``/auth/verify-2fa`` succeeds."""
    setup = await get_runtime().auth.begin_two_factor(principal)
    return Envelope(
        status="ok",
        data=TwoFactorSetupResponse(
            secret=setup.secret,
            otpauth_uri=setup.otpauth_uri,
            qr_code=setup.qr_code,
            backup_codes=setup.backup_codes,
        ),
    )


@router.post("/auth/verify-2fa", response_model=Envelope, tags=["auth"])
async def verify_two_factor(
    body: VerifyTwoFactorRequest, principal: AuthContext = Depends(get_user)
):
    await get_runtime().auth.confirm_two_factor(principal, body.code)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(enabled=True, message="2FA enabled successfully"),
    )


@router.get("/users/@me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_user)):
    profile = await get_runtime().auth.get_profile(principal)
    return Envelope(status="ok", data=ProfileResponse(**profile))
