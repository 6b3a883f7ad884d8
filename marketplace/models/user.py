from beanie import Document
from pydantic import Field
from pymongo import ASCENDING, IndexModel
from datetime import datetime, timezone
from typing import Dict, List

from marketplace.constants import Role, UserStatus, RegistrationType


class User(Document):
    """Identity record of the marketplace (client/vendor/admin).

    Notes:
    - A user is created on first OTP verification, on password registration or
      by an explicit create call; it is never hard-deleted (blocking only).
    - ``password_hash`` is internal and never serialised by the API (see UserOut).
    """

    roles: List[Role] = Field(default_factory=lambda: [Role.CLIENT])

    phone_e164: str | None = None
    phone_verified_at: datetime | None = None

    email: str | None = None  # stored lower-cased
    email_verified_at: datetime | None = None

    password_hash: str | None = None

    status: UserStatus = UserStatus.PENDING
    last_login_at: datetime | None = None

    metadata: Dict[str, str] = Field(default_factory=dict)
    registration_type: RegistrationType = RegistrationType.PHONE

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Settings:
        name = "users"
        # phone/email are optional: unique only among documents that carry them
        indexes = [
            IndexModel(
                [("phone_e164", ASCENDING)],
                name="phone_e164_unique",
                unique=True,
                partialFilterExpression={"phone_e164": {"$type": "string"}},
            ),
            IndexModel(
                [("email", ASCENDING)],
                name="email_unique",
                unique=True,
                partialFilterExpression={"email": {"$type": "string"}},
            ),
            IndexModel([("roles", ASCENDING), ("status", ASCENDING)]),
        ]
