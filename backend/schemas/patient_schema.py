import re
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from schemas.otp_schema import normalize_phone, validate_otp_code

PIN_PATTERN = re.compile(r"[0-9]{6}")


def validate_pin(value: str, label: str = "PIN") -> str:
    if not PIN_PATTERN.fullmatch(value or ""):
        raise ValueError(f"{label} must be exactly 6 digits")
    return value


class PatientSignup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone: str
    otp: str = Field(..., max_length=16)
    full_name: str = Field(..., alias="fullName", min_length=1, max_length=255)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = Field(None, max_length=20)
    pin: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return normalize_phone(v)

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, v):
        return validate_otp_code(v)

    @field_validator("full_name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Full name is required")
        return v

    @field_validator("pin")
    @classmethod
    def check_pin(cls, v):
        return validate_pin(v)


class PatientLogin(BaseModel):
    phone: str
    pin: str

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v):
        return normalize_phone(v)

    @field_validator("pin")
    @classmethod
    def check_pin(cls, v):
        return validate_pin(v)


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class PatientUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = Field(None, alias="fullName", min_length=1, max_length=255)
    age: Optional[int] = Field(None, ge=0, le=150)
    gender: Optional[str] = Field(None, max_length=20)


class ChangePinRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_pin: str = Field(..., alias="currentPin", min_length=1)
    new_pin: str = Field(..., alias="newPin")

    @field_validator("new_pin")
    @classmethod
    def validate_new_pin(cls, v):
        return validate_pin(v, label="New PIN")


class CurrentPatient(BaseModel):
    """Identity resolved from a bearer access token."""
    id: str
    phone: str
    full_name: str
    account_type: str
