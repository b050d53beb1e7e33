import uuid
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi.security import HTTPBearer
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# PIN hashing (OTP hashing uses its own context, see services.otp_service)
pin_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.PIN_HASH_ROUNDS)

# Bearer scheme for patient endpoints; auto_error is off so we can answer with our own 401 body
bearer_scheme = HTTPBearer(auto_error=False)

TOKEN_TYPE_PATIENT = "patient"


def verify_pin(plain_pin: str, hashed_pin: str) -> bool:
    """Verify a PIN against its hash"""
    try:
        return pin_context.verify(plain_pin, hashed_pin)
    except (ValueError, TypeError):
        return False


def get_pin_hash(pin: str) -> str:
    """Generate PIN hash"""
    return pin_context.hash(pin)


def create_access_token(patient: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token for a patient.

    ``patient`` must carry ``id``, ``phone``, ``full_name`` and ``account_type``.
    """
    expire = datetime.utcnow() + (expires_delta or timedelta(days=settings.ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode = {
        "sub": patient["id"],
        "phone": patient["phone"],
        "fullName": patient["full_name"],
        "accountType": patient["account_type"],
        "type": TOKEN_TYPE_PATIENT,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.ALGORITHM)


def create_refresh_token(patient_id: str) -> str:
    """Create JWT refresh token"""
    expire = datetime.utcnow() + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    to_encode = {
        "sub": patient_id,
        "type": TOKEN_TYPE_PATIENT,
        "exp": expire,
        # jti keeps two tokens minted in the same second distinct
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, settings.JWT_REFRESH_SECRET, algorithm=settings.ALGORITHM)


def create_token_pair(patient: dict) -> dict:
    return {
        "accessToken": create_access_token(patient),
        "refreshToken": create_refresh_token(patient["id"]),
    }


def verify_token(token: str) -> Optional[dict]:
    """Verify and decode an access token"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.ALGORITHM])
        if payload.get("sub") is None:
            return None
        return payload
    except JWTError as e:
        logger.warning(f"JWT decode failed: {e}")
        return None


def decode_refresh_token(token: str) -> dict:
    """Decode a refresh token.

    Raises ExpiredSignatureError / JWTError so callers can tell an expired
    session apart from a forged one.
    """
    return jwt.decode(token, settings.JWT_REFRESH_SECRET, algorithms=[settings.ALGORITHM])

