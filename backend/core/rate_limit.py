"""
Per-client-IP request limits for the auth endpoints (slowapi).

These sit in front of the per-phone OTP limits kept in the database:
they stop one client hammering many phone numbers, which the OTP table
cannot see.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
    enabled=settings.RATE_LIMIT_ENABLED,
)

SEND_OTP = settings.RATE_LIMIT_SEND_OTP
VERIFY_OTP = settings.RATE_LIMIT_VERIFY_OTP
SIGNUP = settings.RATE_LIMIT_SIGNUP
LOGIN = settings.RATE_LIMIT_LOGIN
