import asyncio
import inspect
import os
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("SMS_PROVIDER", "dummy")
os.environ["MAIL_USER"] = ""

import fakeredis  # noqa: E402
import pytest  # noqa: E402
from fastapi import HTTPException  # noqa: E402
from pymongo.errors import PyMongoError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from marketplace.config import get_settings  # noqa: E402
from marketplace.constants import RegistrationType, Role, UserStatus  # noqa: E402
from marketplace.services.auth_service import AuthService  # noqa: E402
from marketplace.services.cache import RedisCache  # noqa: E402
from marketplace.services.mail import MailService  # noqa: E402
from marketplace.services.sms import SmsResult, SmsService  # noqa: E402


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    id: str
    phone_e164: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    roles: List[Role] = field(default_factory=lambda: [Role.CLIENT])
    status: UserStatus = UserStatus.PENDING
    phone_verified_at: Optional[datetime] = None
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    registration_type: RegistrationType = RegistrationType.PHONE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


class MemoryUserStore:
    """In-memory stand-in for UsersService with the same method surface.

    Method names listed in ``failing`` raise PyMongoError, to exercise
    best-effort and store-failure paths.
    """

    def __init__(self):
        self.records: Dict[str, UserRecord] = {}
        self.failing: set = set()

    def _maybe_fail(self, name: str) -> None:
        if name in self.failing:
            raise PyMongoError(f"{name} unavailable")

    def add(self, **fields) -> UserRecord:
        record = UserRecord(id=uuid.uuid4().hex[:24], **fields)
        self.records[record.id] = record
        return record

    async def find_by_id(self, user_id):
        return self.records.get(str(user_id))

    async def get_or_404(self, user_id):
        user = await self.find_by_id(user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return user

    async def find_by_phone(self, phone_e164):
        return next((u for u in self.records.values() if u.phone_e164 == phone_e164), None)

    async def find_by_email(self, email):
        email = (email or "").lower()
        return next((u for u in self.records.values() if u.email == email), None)

    async def create(self, phone_e164, email=None, roles=None, metadata=None, registration_type=None):
        existing = await self.find_by_phone(phone_e164)
        if existing:
            return existing
        record = self.add(phone_e164=phone_e164, email=email, metadata=metadata or {})
        if roles:
            record.roles = list(roles)
        if registration_type:
            record.registration_type = registration_type
        return record

    async def create_by_email(self, email):
        existing = await self.find_by_email(email)
        if existing:
            return existing
        return self.add(email=email.lower(), registration_type=RegistrationType.EMAIL)

    async def create_with_password(self, phone_e164, password_hash, email=None):
        return self.add(phone_e164=phone_e164, password_hash=password_hash, email=email)

    async def set_password_hash(self, user_id, password_hash):
        self._maybe_fail("set_password_hash")
        return await self.update(user_id, {"password_hash": password_hash})

    async def update(self, user_id, fields):
        user = await self.get_or_404(user_id)
        for key, value in fields.items():
            setattr(user, key, value)
        user.updated_at = _now()
        return user

    async def mark_phone_verified(self, user_id):
        self._maybe_fail("mark_phone_verified")
        await self.update(user_id, {"phone_verified_at": _now(), "status": UserStatus.ACTIVE})

    async def mark_email_verified(self, user_id):
        self._maybe_fail("mark_email_verified")
        await self.update(user_id, {"email_verified_at": _now(), "status": UserStatus.ACTIVE})

    async def set_last_login(self, user_id):
        self._maybe_fail("set_last_login")
        await self.update(user_id, {"last_login_at": _now()})

    async def activate_if_client(self, user_id):
        self._maybe_fail("activate_if_client")
        user = await self.find_by_id(user_id)
        if user and Role.CLIENT in user.roles and user.status != UserStatus.ACTIVE:
            user.status = UserStatus.ACTIVE

    async def block_user(self, user_id):
        return await self.update(user_id, {"status": UserStatus.BLOCKED})


class FailingSms(SmsService):
    async def send_sms(self, numbers, message):
        return SmsResult(success=False, status=500, error="gateway down")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store():
    return MemoryUserStore()


@pytest.fixture
def cache():
    return RedisCache(fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True))


@pytest.fixture
def sms(settings):
    return SmsService(settings)


@pytest.fixture
def mail(settings):
    return MailService(settings)


@pytest.fixture
def failing_sms(settings):
    return FailingSms(settings)


@pytest.fixture
def make_auth(store, cache, sms, mail, settings):
    """Build an AuthService; keyword overrides replace collaborators or settings fields."""

    def _make(sms_service=None, mail_service=None, **setting_overrides):
        cfg = settings.model_copy(update=setting_overrides) if setting_overrides else settings
        return AuthService(
            users=store,
            cache=cache,
            sms=sms_service or sms,
            mail=mail_service or mail,
            settings=cfg,
        )

    return _make


@pytest.fixture
def auth(make_auth):
    return make_auth()
