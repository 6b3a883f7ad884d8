from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List
import os


class Settings(BaseSettings):
    """Global app settings loaded from environment.
    - Keep defaults light for dev.
    - Override via .env or real env vars.
    """

    APP_NAME: str = "marketplace_api"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = True

    MONGODB_URI: str = "mongodb://localhost:27017/marketplace"
    REDIS_URL: str = "redis://localhost:6379/0"

    # JWT settings
    JWT_SECRET: str = "marketplace_dev_secret"
    JWT_ALGORITHM: str = "HS256"
    # Access token is short-lived; the refresh token is stored in Redis (one per user)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # OTP settings
    OTP_TTL_SECONDS: int = 300
    OTP_RATE_LIMIT: int = 5  # max issuances per identity per window
    OTP_RATE_WINDOW_SECONDS: int = 3600

    BCRYPT_ROUNDS: int = 12

    # Raw CORS string from env (comma-separated); parsed via cors_origins property
    CORS_ORIGINS: str | None = None

    # SMS provider config (dummy | smsbox)
    SMS_PROVIDER: str = "dummy"
    SMS_BASE_URL: str = "http://smsbox.com/SMSGateway/Services/Messaging.asmx/Http_SendSMS"
    SMS_STATUS_URL: str = "http://smsbox.com/SMSGateway/Services/Messaging.asmx/Http_GetSmsStatus"
    SMS_USERNAME: str | None = None
    SMS_PASSWORD: str | None = None
    SMS_CUSTOMER_ID: str | None = None
    SMS_SENDER: str | None = None
    SMS_TIMEOUT_SECONDS: float = 15.0

    # Mail (SMTP) config; without MAIL_USER messages are only logged
    MAIL_HOST: str = "smtp.gmail.com"
    MAIL_PORT: int = 465
    MAIL_USER: str | None = None
    MAIL_PASS: str | None = None
    MAIL_FROM: str | None = None
    MAIL_USE_SSL: bool = True

    LOG_DIR: str = "logs"
    LOG_TO_FILE: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def cors_origins(self) -> List[str]:
        """Return CORS origins as a list, parsing comma-separated env string."""
        raw = self.CORS_ORIGINS or os.getenv("CORS_ORIGINS", "") or ""
        return [o.strip() for o in raw.split(",") if o.strip()]

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.REFRESH_TOKEN_EXPIRE_DAYS * 86400


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
