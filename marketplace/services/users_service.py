from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from beanie import PydanticObjectId as OID
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError
from fastapi import HTTPException

from marketplace.constants import RegistrationType, Role, UserStatus
from marketplace.models.user import User
from marketplace.schemas import UserOut
from marketplace.utils.logger import get_logger

logger = get_logger("users_service")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_public(user: Any) -> UserOut:
    """Public projection of a user record; never includes the password hash."""
    return UserOut(
        id=str(user.id),
        phoneE164=user.phone_e164,
        email=user.email,
        roles=list(user.roles),
        status=user.status,
        lastLoginAt=user.last_login_at,
        registrationType=user.registration_type,
        metadata=dict(user.metadata or {}),
    )


class UsersService:
    """Credential store backed by the Beanie ``User`` document."""

    async def _write(self, user: User, insert: bool = False) -> User:
        """Insert or save; a unique-index clash on phone or email becomes 409."""
        try:
            if insert:
                await user.insert()
            else:
                await user.save()
        except DuplicateKeyError as e:
            logger.warning("Rejected user write: phone or email already taken")
            raise HTTPException(status_code=409, detail="Phone number or email already in use") from e
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        try:
            oid = OID(str(user_id))
        except (InvalidId, TypeError):
            return None
        return await User.get(oid)

    async def get_or_404(self, user_id: str) -> User:
        user = await self.find_by_id(user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    async def find_by_phone(self, phone_e164: str) -> Optional[User]:
        return await User.find_one(User.phone_e164 == phone_e164)

    async def find_by_email(self, email: str) -> Optional[User]:
        return await User.find_one(User.email == (email or "").lower())

    async def create(
        self,
        phone_e164: str,
        email: Optional[str] = None,
        roles: Optional[List[Role]] = None,
        metadata: Optional[Dict[str, str]] = None,
        registration_type: Optional[RegistrationType] = None,
    ) -> User:
        """Create a user by phone. Idempotent: an existing user with the phone is returned as is."""
        if not phone_e164:
            raise HTTPException(status_code=400, detail="phoneE164 is required")

        existing = await self.find_by_phone(phone_e164)
        if existing:
            return existing

        user = User(
            phone_e164=phone_e164,
            email=email.lower() if email else None,
            metadata=metadata or {},
        )
        if roles:
            user.roles = list(roles)
        if registration_type:
            user.registration_type = registration_type
        await self._write(user, insert=True)
        logger.info(f"Created user {user.id} (phone=...{phone_e164[-4:]})")
        return user

    async def create_by_email(self, email: str) -> User:
        """Create a user by email. Idempotent like ``create``."""
        normalized = (email or "").lower()
        if not normalized:
            raise HTTPException(status_code=400, detail="email is required")

        existing = await self.find_by_email(normalized)
        if existing:
            return existing

        user = User(email=normalized, registration_type=RegistrationType.EMAIL)
        await self._write(user, insert=True)
        logger.info(f"Created user {user.id} by email")
        return user

    async def create_with_password(
        self, phone_e164: str, password_hash: str, email: Optional[str] = None
    ) -> User:
        user = User(
            phone_e164=phone_e164,
            email=email.lower() if email else None,
            password_hash=password_hash,
        )
        await self._write(user, insert=True)
        logger.info(f"Created user {user.id} with password")
        return user

    async def set_password_hash(self, user_id: str, password_hash: str) -> User:
        user = await self.get_or_404(user_id)
        user.password_hash = password_hash
        user.updated_at = _now()
        await self._write(user)
        return user

    async def update(self, user_id: str, fields: Dict[str, Any]) -> User:
        """Set the given model fields (snake_case names) on the user."""
        user = await self.get_or_404(user_id)
        for key, value in fields.items():
            setattr(user, key, value)
        user.updated_at = _now()
        await self._write(user)
        return user

    async def mark_phone_verified(self, user_id: str) -> None:
        await self.update(
            user_id, {"phone_verified_at": _now(), "status": UserStatus.ACTIVE}
        )

    async def mark_email_verified(self, user_id: str) -> None:
        await self.update(
            user_id, {"email_verified_at": _now(), "status": UserStatus.ACTIVE}
        )

    async def set_last_login(self, user_id: str) -> None:
        await self.update(user_id, {"last_login_at": _now()})

    async def activate_if_client(self, user_id: str) -> None:
        user = await self.find_by_id(user_id)
        if not user:
            return
        if Role.CLIENT in user.roles and user.status != UserStatus.ACTIVE:
            await self.update(user_id, {"status": UserStatus.ACTIVE})

    async def block_user(self, user_id: str) -> User:
        return await self.update(user_id, {"status": UserStatus.BLOCKED})
