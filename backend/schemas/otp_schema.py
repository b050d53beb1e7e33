import re
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator

# ASCII digits only
PHONE_PATTERN = re.compile(r"[6-9][0-9]{9}")
NON_DIGITS = re.compile(r"[^0-9]")


def normalize_phone(value: str) -> str:
    """Strip formatting and check for a 10-digit Indian mobile number."""
    digits = NON_DIGITS.sub("", value or "")
    if not PHONE_PATTERN.fullmatch(digits):
        raise ValueError("Invalid phone number format")
    return digits


def validate_otp_code(value: str) -> str:
    """Trim only; the expected length depends on the OTP policy and is checked by OtpService."""
    value = (value or "").strip()
    if not value:
        raise ValueError("OTP is required")
    return value


class OtpFailureReason(str, Enum):
    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    LOCKED = "locked"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    MISMATCH = "mismatch"
    DELIVERY_FAILURE = "delivery_failure"


class OtpResult(BaseModel):
    """Outcome of a send or verify call. Failures are values, not exceptions."""
    success: bool
    message: str
    reason: Optional[OtpFailureReason] = None
    locked_until: Optional[datetime] = None
    remaining_attempts: Optional[int] = None

    @classmethod
    def ok(cls, message: str) -> "OtpResult":
        return cls(success=True, message=message)

    @classmethod
    def fail(cls, reason: OtpFailureReason, message: str, **extra) -> "OtpResult":
        return cls(success=False, message=message, reason=reason, **extra)

    def to_response(self) -> dict:
        body = {"success": self.success, "message": self.message}
        if self.locked_until is not None:
            body["lockedUntil"] = self.locked_until.isoformat() + "Z"
        return body


class SendOtpRequest(BaseModel):
    phone: str = Field(..., description="10-digit mobile number")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return normalize_phone(v)


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., description="10-digit mobile number")
    otp: str = Field(..., max_length=16, description="OTP code as received by SMS")

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return normalize_phone(v)

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, v):
        return validate_otp_code(v)
