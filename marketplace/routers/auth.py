from fastapi import APIRouter, Depends, Request

from marketplace.deps import get_auth_service
from marketplace.rate_limit import limiter
from marketplace.schemas import (
    AuthTokens,
    IssueEmailOtpIn,
    IssueOtpIn,
    LoginIn,
    OtpIssuedOut,
    RefreshTokenIn,
    RegisterIn,
    RegisterOut,
    ResetPasswordIn,
    StatusOut,
    VerifyEmailOtpIn,
    VerifyOtpIn,
)
from marketplace.security import get_current_user
from marketplace.services.auth_service import AuthService
from marketplace.utils.logger import get_logger

logger = get_logger("auth_router")

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/otp/issue", response_model=OtpIssuedOut)
@limiter.limit("5/minute")
async def route_issue_otp(
    request: Request,
    payload: IssueOtpIn,
    auth: AuthService = Depends(get_auth_service),
):
    """Send a 4-digit code by SMS to the phone number (E.164).
    Rate limit: 5 requests per minute per IP, plus the per-phone OTP ceiling.
    """
    return await auth.issue_otp(payload.phoneE164)


@router.post("/otp/verify", response_model=AuthTokens)
@limiter.limit("10/minute")
async def route_verify_otp(
    request: Request,
    payload: VerifyOtpIn,
    auth: AuthService = Depends(get_auth_service),
):
    """Verify the phone code; creates the user on first verification and returns tokens."""
    return await auth.verify_otp(payload.phoneE164, payload.code)


@router.post("/otp/email/issue", response_model=OtpIssuedOut)
@limiter.limit("5/minute")
async def route_issue_email_otp(
    request: Request,
    payload: IssueEmailOtpIn,
    auth: AuthService = Depends(get_auth_service),
):
    return await auth.issue_email_otp(payload.email)


@router.post("/otp/email/verify", response_model=AuthTokens)
@limiter.limit("10/minute")
async def route_verify_email_otp(
    request: Request,
    payload: VerifyEmailOtpIn,
    auth: AuthService = Depends(get_auth_service),
):
    return await auth.verify_email_otp(payload.email, payload.code)


@router.post("/register", response_model=RegisterOut)
@limiter.limit("5/minute")
async def route_register(
    request: Request,
    payload: RegisterIn,
    auth: AuthService = Depends(get_auth_service),
):
    """Register phone + password, then send the phone verification OTP.
    A failed OTP send is reported in ``otp`` and does not fail the registration.
    """
    return await auth.register(payload.phoneE164, payload.password, email=payload.email)


@router.post("/login", response_model=AuthTokens)
@limiter.limit("10/minute")
async def route_login(
    request: Request,
    payload: LoginIn,
    auth: AuthService = Depends(get_auth_service),
):
    return await auth.login_with_password(payload.phoneE164, payload.password)


@router.post("/refresh", response_model=AuthTokens)
async def route_refresh(payload: RefreshTokenIn, auth: AuthService = Depends(get_auth_service)):
    """Exchange the current refresh token for a new pair; the old one stops working."""
    return await auth.refresh_tokens(payload.refreshToken)


@router.post("/logout", response_model=StatusOut, response_model_exclude_none=True)
async def route_logout(payload: RefreshTokenIn, auth: AuthService = Depends(get_auth_service)):
    return await auth.logout(payload.refreshToken)


@router.post("/reset-password", response_model=StatusOut)
async def route_reset_password(
    payload: ResetPasswordIn,
    current=Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
):
    """Set a new password for the logged-in user; the stored refresh token is revoked."""
    logger.info(f"Password reset requested by user {current.id}")
    return await auth.reset_password(str(current.id), payload.password)
