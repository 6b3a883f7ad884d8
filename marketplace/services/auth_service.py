"""Authentication flows: OTP issuance/verification, tokens, password login.

Session contract: each user has exactly one live refresh token, stored in the
cache under ``refresh:<user_id>``. Every issuance (OTP verify, login, refresh)
overwrites that slot, so a newer token silently revokes the older one. Two
concurrent refreshes for the same user race and the last write wins; the
other caller is rejected at its next refresh. Multiple parallel sessions per
user are not supported.
"""

import re
import secrets
from typing import Any, Awaitable, List, Optional, Protocol

from fastapi import HTTPException, status
from pymongo.errors import PyMongoError

from marketplace.config import Settings
from marketplace.constants import EMAIL_PATTERN, PHONE_E164_PATTERN, Role, UserStatus
from marketplace.schemas import AuthTokens
from marketplace.security import (
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    password_context,
    verify_password,
)
from marketplace.services.cache import RedisCache
from marketplace.services.mail import MailDeliveryError, MailService
from marketplace.services.sms import SmsService
from marketplace.utils.logger import get_logger, mask

logger = get_logger("auth_service")

_PHONE_RE = re.compile(PHONE_E164_PATTERN)
_EMAIL_RE = re.compile(EMAIL_PATTERN)


class UserStore(Protocol):
    async def find_by_id(self, user_id: str) -> Any: ...

    async def find_by_phone(self, phone_e164: str) -> Any: ...

    async def find_by_email(self, email: str) -> Any: ...

    async def create(self, phone_e164: str, **kwargs: Any) -> Any: ...

    async def create_by_email(self, email: str) -> Any: ...

    async def create_with_password(self, phone_e164: str, password_hash: str, email: Optional[str] = None) -> Any: ...

    async def set_password_hash(self, user_id: str, password_hash: str) -> Any: ...

    async def update(self, user_id: str, fields: dict) -> Any: ...

    async def mark_phone_verified(self, user_id: str) -> None: ...

    async def mark_email_verified(self, user_id: str) -> None: ...

    async def set_last_login(self, user_id: str) -> None: ...

    async def activate_if_client(self, user_id: str) -> None: ...


def otp_key(identity: str) -> str:
    return f"otp:{identity}"


def otp_rate_key(identity: str) -> str:
    return f"otp:rate:{identity}"


def refresh_key(user_id: str) -> str:
    return f"refresh:{user_id}"


def generate_otp_code() -> str:
    # 4-digit numeric, 1000..9999
    return str(1000 + secrets.randbelow(9000))


class AuthService:
    def __init__(
        self,
        *,
        users: UserStore,
        cache: RedisCache,
        sms: SmsService,
        mail: MailService,
        settings: Settings,
    ) -> None:
        self.users = users
        self.cache = cache
        self.sms = sms
        self.mail = mail
        self.settings = settings
        self.pwd_context = password_context(settings.BCRYPT_ROUNDS)

    # ---------------- OTP ----------------

    async def _consume_rate(self, identity: str) -> None:
        key = otp_rate_key(identity)
        current = await self.cache.incr(key)
        if current == 1:
            await self.cache.expire(key, self.settings.OTP_RATE_WINDOW_SECONDS)
        if current > self.settings.OTP_RATE_LIMIT:
            logger.warning(f"OTP rate limit hit for {mask(identity, 4)} ({current})")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Exceeded max OTP requests. Try later.",
            )

    async def _store_code(self, identity: str) -> str:
        code = generate_otp_code()
        await self.cache.set(otp_key(identity), code, self.settings.OTP_TTL_SECONDS)
        return code

    def _otp_text(self, code: str) -> str:
        minutes = self.settings.OTP_TTL_SECONDS // 60
        return f"Your verification code is {code}. It will expire in {minutes} minutes."

    async def issue_otp(self, phone_e164: str) -> dict:
        """Rate-limit, store a fresh code with TTL, and send it by SMS.

        A failed send is reported as 502; the stored code stays valid until its TTL.
        """
        phone = (phone_e164 or "").strip()
        if not _PHONE_RE.match(phone):
            raise HTTPException(status_code=400, detail="Invalid phone number")

        await self._consume_rate(phone)
        code = await self._store_code(phone)

        result = await self.sms.send_sms(phone, self._otp_text(code))
        if not result.success:
            logger.warning(f"Failed to send OTP SMS: status={result.status} error={result.error}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to send OTP")

        return {"success": True, "ttl": self.settings.OTP_TTL_SECONDS}

    async def issue_email_otp(self, email: str) -> dict:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized):
            raise HTTPException(status_code=400, detail="Invalid email address")

        await self._consume_rate(normalized)
        code = await self._store_code(normalized)

        minutes = self.settings.OTP_TTL_SECONDS // 60
        html = (
            f"<p>Your verification code is <b>{code}</b>.<br/>"
            f"It will expire in {minutes} minutes.</p>"
        )
        try:
            await self.mail.send_mail(
                to=normalized,
                subject="Your verification code",
                text=self._otp_text(code),
                html=html,
            )
        except MailDeliveryError as e:
            logger.warning(f"Failed to send OTP email: {e}")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to send OTP") from e

        return {"success": True, "ttl": self.settings.OTP_TTL_SECONDS}

    async def _check_code(self, identity: str, code: str) -> None:
        """Validate and consume the cached code. Absent → 400, mismatch → 401."""
        cached = await self.cache.get(otp_key(identity))
        if not cached:
            raise HTTPException(status_code=400, detail="OTP expired or not found")
        if not secrets.compare_digest(cached.encode(), (code or "").strip().encode()):
            raise HTTPException(status_code=401, detail="Invalid OTP code")
        # single use
        await self.cache.delete(otp_key(identity))

    async def _best_effort(self, step: str, awaitable: Awaitable) -> None:
        """Run a secondary update; log and drop its failure."""
        try:
            await awaitable
        except Exception as e:
            logger.warning(f"{step} failed: {e}")

    async def verify_otp(self, phone_e164: str, code: str) -> AuthTokens:
        phone = (phone_e164 or "").strip()
        await self._check_code(phone, code)

        # find or create (create is idempotent by phone)
        user = await self.users.create(phone)
        user_id = str(user.id)
        tokens = await self.issue_tokens(user_id, list(user.roles or [Role.CLIENT]))

        await self._best_effort("mark_phone_verified", self.users.mark_phone_verified(user_id))
        await self._best_effort("set_last_login", self.users.set_last_login(user_id))
        await self._best_effort("activate_if_client", self.users.activate_if_client(user_id))
        return tokens

    async def verify_email_otp(self, email: str, code: str) -> AuthTokens:
        normalized = (email or "").strip().lower()
        await self._check_code(normalized, code)

        user = await self.users.find_by_email(normalized)
        if not user:
            user = await self.users.create_by_email(normalized)
        user_id = str(user.id)
        tokens = await self.issue_tokens(user_id, list(user.roles or [Role.CLIENT]))

        await self._best_effort("mark_email_verified", self.users.mark_email_verified(user_id))
        await self._best_effort("set_last_login", self.users.set_last_login(user_id))
        await self._best_effort("activate_if_client", self.users.activate_if_client(user_id))
        return tokens

    # ---------------- Tokens ----------------

    async def issue_tokens(self, user_id: str, roles: List[Any]) -> AuthTokens:
        """Mint an access/refresh pair and make the refresh token the user's only live one."""
        payload = {"sub": str(user_id), "roles": [getattr(r, "value", r) for r in roles]}
        access_token = create_access_token(payload, self.settings)
        refresh_token = create_refresh_token(payload, self.settings)

        await self.cache.set(
            refresh_key(str(user_id)),
            refresh_token,
            self.settings.refresh_token_ttl_seconds,
        )
        return AuthTokens(
            accessToken=access_token,
            refreshToken=refresh_token,
            expiresIn=self.settings.access_token_ttl_seconds,
        )

    async def refresh_tokens(self, refresh_token: str) -> AuthTokens:
        payload = decode_token(refresh_token, self.settings, token_type="refresh")
        user_id = payload["sub"]

        stored = await self.cache.get(refresh_key(user_id))
        if not stored or not secrets.compare_digest(stored.encode(), refresh_token.encode()):
            raise HTTPException(status_code=401, detail="Refresh token revoked or mismatched")

        return await self.issue_tokens(user_id, payload.get("roles") or [])

    async def revoke_refresh(self, user_id: str) -> dict:
        await self.cache.delete(refresh_key(str(user_id)))
        return {"success": True}

    async def logout(self, refresh_token: str) -> dict:
        try:
            payload = decode_token(refresh_token, self.settings, token_type="refresh")
        except HTTPException:
            return {"success": False}
        return await self.revoke_refresh(payload["sub"])

    # ---------------- Password auth ----------------

    async def register_with_password(
        self, phone_e164: str, password: str, email: Optional[str] = None
    ) -> dict:
        """Attach a password to a phone identity.

        - existing user with a password → 409
        - existing user without one → set hash (and email if given)
        - no user → create one with the hash
        Tokens are not issued here; the phone still has to be verified by OTP.
        """
        existing = await self.users.find_by_phone(phone_e164)
        if existing and existing.password_hash:
            raise HTTPException(
                status_code=409,
                detail="User already registered. Use login or reset password.",
            )

        password_hash = hash_password(password, self.pwd_context)

        if existing:
            user_id = str(existing.id)
            await self.users.set_password_hash(user_id, password_hash)
            if email:
                await self.users.update(user_id, {"email": email.lower()})
            return {"success": True, "message": "Password set. Please verify phone before login."}

        await self.users.create_with_password(phone_e164, password_hash, email=email)
        return {"success": True, "message": "Registered. Please verify phone before login."}

    async def register(
        self,
        phone_e164: str,
        password: str,
        email: Optional[str] = None,
        send_otp: bool = True,
    ) -> dict:
        """Register, then optionally send the phone OTP.

        OTP delivery is optional: a failure there is reported in ``otp`` and does
        not fail the registration.
        """
        result = await self.register_with_password(phone_e164, password, email=email)
        if not send_otp:
            return result
        try:
            issued = await self.issue_otp(phone_e164)
            otp = {"sent": True, "ttl": issued["ttl"]}
        except HTTPException as e:
            otp = {"sent": False, "error": str(e.detail) or "Failed to send OTP"}
        return {**result, "otp": otp}

    async def login_with_password(self, phone_e164: str, password: str) -> AuthTokens:
        user = await self.users.find_by_phone(phone_e164)
        if not user or not user.password_hash:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        if user.status != UserStatus.ACTIVE:
            raise HTTPException(status_code=403, detail="User is not active")

        if not user.phone_verified_at:
            raise HTTPException(status_code=403, detail="Phone number not verified")

        if not verify_password(password, user.password_hash, self.pwd_context):
            raise HTTPException(status_code=401, detail="Invalid credentials")

        user_id = str(user.id)
        tokens = await self.issue_tokens(user_id, list(user.roles or [Role.CLIENT]))
        await self._best_effort("set_last_login", self.users.set_last_login(user_id))
        return tokens

    async def reset_password(self, user_id: str, password: str) -> dict:
        """Set a new password for the authenticated user and end the other session."""
        if not password:
            raise HTTPException(status_code=400, detail="New password is required")

        user = await self.users.find_by_id(user_id)
        if not user:
            raise HTTPException(status_code=401, detail="User not found")

        password_hash = hash_password(password, self.pwd_context)
        try:
            await self.users.set_password_hash(str(user.id), password_hash)
        except HTTPException as e:
            return {"success": False, "message": str(e.detail) or "Failed to set password"}
        except PyMongoError as e:
            logger.error(f"Failed to store new password for user {user.id}: {e}")
            return {"success": False, "message": "Failed to set password"}

        await self._best_effort("revoke_refresh", self.revoke_refresh(str(user.id)))
        return {"success": True, "message": "Password updated successfully."}
