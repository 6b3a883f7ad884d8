import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError
from passlib.context import CryptContext

from marketplace.config import Settings, get_settings
from marketplace.constants import Role
from marketplace.deps import get_users_service

# tokenUrl is only used by the docs UI; clients log in via /auth/login or /auth/otp/verify
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

# ------------------------ Password hashing helpers ------------------------


def password_context(rounds: int = 12) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def hash_password(password: str, context: CryptContext) -> str:
    """Hash a password with bcrypt."""
    return context.hash(password)


def verify_password(plain_password: str, hashed_password: str | None, context: CryptContext) -> bool:
    """Verify a password; False when no hash is stored."""
    if not hashed_password:
        return False
    try:
        return context.verify(plain_password, hashed_password)
    except ValueError:
        # malformed hash in the store
        return False


# ------------------------ JWT helpers ------------------------


def _encode(data: dict, settings: Settings, token_type: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    to_encode = data.copy()
    to_encode.update(
        {
            "iat": now,
            "exp": now + expires_delta,
            "type": token_type,
            # makes tokens minted in the same second for the same user distinct
            "jti": uuid.uuid4().hex,
        }
    )
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token (short-lived - 15 minutes by default)."""
    return _encode(
        data,
        settings,
        "access",
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT refresh token (long-lived - 7 days by default)."""
    return _encode(
        data,
        settings,
        "refresh",
        expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
    )


def decode_token(token: str, settings: Settings, token_type: str = "access") -> dict:
    """Decode JWT token and verify signature, expiry and type.

    Any failure is reported as the same 401 so callers cannot tell which check failed.
    """
    invalid = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid refresh token" if token_type == "refresh" else "Invalid or expired token",
    )
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise invalid
    if payload.get("type") != token_type or not payload.get("sub"):
        raise invalid
    return payload


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    settings: Settings = Depends(get_settings),
    users=Depends(get_users_service),
):
    """Decode the Bearer access token and load the user it names.
    Raises 401 if the token is invalid, expired, a refresh token, or the user is gone.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(token, settings, token_type="access")
    except HTTPException:
        raise credentials_exception

    user = await users.find_by_id(payload["sub"])
    if not user:
        raise credentials_exception
    return user


async def get_optional_user(
    token: Optional[str] = Depends(optional_oauth2_scheme),
    settings: Settings = Depends(get_settings),
    users=Depends(get_users_service),
):
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    if not token:
        return None
    return await get_current_user(token, settings, users)


# ------------------------ RBAC helpers ------------------------


def require_roles(allowed: List[Role]) -> Callable:
    """FastAPI dependency factory to enforce role-based access.
    A user passes when any of its roles is allowed.
    Usage: Depends(require_roles([Role.ADMIN]))
    """

    async def checker(current_user=Depends(get_current_user)):
        if not any(role in allowed for role in current_user.roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return current_user

    return checker


require_admin = require_roles([Role.ADMIN])
