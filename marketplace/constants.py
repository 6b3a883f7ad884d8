from enum import Enum


class Role(str, Enum):
    """System roles for RBAC. A user may hold several."""
    CLIENT = "client"
    VENDOR = "vendor"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    PENDING = "pending"


class RegistrationType(str, Enum):
    GOOGLE = "google"
    FACEBOOK = "facebook"
    APPLE = "apple"
    EMAIL = "email"
    PHONE = "phone"


PHONE_E164_PATTERN = r"^\+[1-9]\d{1,14}$"
EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
OTP_CODE_PATTERN = r"^\d{4}$"
