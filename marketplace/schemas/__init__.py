import re
from datetime import datetime
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict

from marketplace.constants import (
    EMAIL_PATTERN,
    OTP_CODE_PATTERN,
    PHONE_E164_PATTERN,
    RegistrationType,
    Role,
    UserStatus,
)

_PHONE_RE = re.compile(PHONE_E164_PATTERN)
_EMAIL_RE = re.compile(EMAIL_PATTERN)
_CODE_RE = re.compile(OTP_CODE_PATTERN)


def _check_phone(value: str) -> str:
    value = (value or "").strip()
    if not _PHONE_RE.match(value):
        raise ValueError("phone must be in E.164 format (eg. +15551234567)")
    return value


def _check_email(value: str) -> str:
    value = (value or "").strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("email must be a valid email address")
    return value


# -------------------- Auth Schemas --------------------


class IssueOtpIn(BaseModel):
    phoneE164: str = Field(..., examples=["+15551234567"])

    @field_validator("phoneE164")
    @classmethod
    def check_phone(cls, value: str) -> str:
        return _check_phone(value)


class VerifyOtpIn(IssueOtpIn):
    code: str = Field(..., description="OTP code (numeric, 4 digits)", examples=["1234"])

    @field_validator("code")
    @classmethod
    def check_code(cls, value: str) -> str:
        value = (value or "").strip()
        if not _CODE_RE.match(value):
            raise ValueError("code must be a 4-digit number")
        return value


class IssueEmailOtpIn(BaseModel):
    email: str = Field(..., examples=["user@mail.com"])

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        return _check_email(value)


class VerifyEmailOtpIn(IssueEmailOtpIn):
    code: str = Field(..., min_length=1)


class RegisterIn(BaseModel):
    phoneE164: str
    password: str = Field(..., min_length=8, description="at least 8 characters")
    email: Optional[str] = None

    @field_validator("phoneE164")
    @classmethod
    def check_phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_email(value)


class LoginIn(BaseModel):
    phoneE164: str
    password: str = Field(..., min_length=8)

    @field_validator("phoneE164")
    @classmethod
    def check_phone(cls, value: str) -> str:
        return _check_phone(value)


class RefreshTokenIn(BaseModel):
    refreshToken: str = Field(..., min_length=1)


class ResetPasswordIn(BaseModel):
    password: str = Field(..., min_length=8, description="the new password")


class AuthTokens(BaseModel):
    accessToken: str
    refreshToken: str
    expiresIn: int = Field(..., description="Access token expiry in seconds")


class OtpIssuedOut(BaseModel):
    success: bool = True
    ttl: int


class OtpDeliveryOut(BaseModel):
    """Outcome of the OTP sent as part of registration (delivery is optional)."""

    sent: bool
    ttl: Optional[int] = None
    error: Optional[str] = None


class RegisterOut(BaseModel):
    success: bool
    message: str
    otp: Optional[OtpDeliveryOut] = None


class StatusOut(BaseModel):
    success: bool
    message: Optional[str] = None


# -------------------- User Schemas --------------------


class UserCreateIn(BaseModel):
    phoneE164: str
    email: Optional[str] = None
    roles: Optional[List[Role]] = Field(None, min_length=1)
    registrationType: Optional[RegistrationType] = None
    metadata: Optional[Dict[str, str]] = None

    @field_validator("phoneE164")
    @classmethod
    def check_phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_email(value)


class UserUpdateIn(BaseModel):
    email: Optional[str] = None
    roles: Optional[List[Role]] = Field(None, min_length=1)
    registrationType: Optional[RegistrationType] = None
    metadata: Optional[Dict[str, str]] = None

    @field_validator("email")
    @classmethod
    def check_email(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _check_email(value)


class UserOut(BaseModel):
    id: str
    phoneE164: Optional[str] = None
    email: Optional[str] = None
    roles: List[Role]
    status: UserStatus
    lastLoginAt: Optional[datetime] = None
    registrationType: Optional[RegistrationType] = None
    metadata: Optional[Dict[str, str]] = None

    class Config:
        from_attributes = True


# -------------------- Mail Schemas --------------------


class SendMailIn(BaseModel):
    to: List[str] = Field(..., description="Recipient email(s); a single string is accepted")
    subject: str = Field(..., min_length=1)
    text: Optional[str] = None
    html: Optional[str] = None
    from_address: Optional[str] = Field(None, alias="from")

    model_config = {"populate_by_name": True}

    @field_validator("to", mode="before")
    @classmethod
    def to_list(cls, value):
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("to")
    @classmethod
    def check_recipients(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one recipient is required")
        return [_check_email(v) for v in value]
