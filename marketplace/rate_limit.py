from slowapi import Limiter
from slowapi.util import get_remote_address

# Global per-IP limiter reused across the app; the per-identity OTP ceiling lives in AuthService
limiter = Limiter(key_func=get_remote_address)
