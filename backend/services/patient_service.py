from datetime import datetime
import logging
from fastapi import HTTPException
from jose import ExpiredSignatureError, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.security import (
    TOKEN_TYPE_PATIENT,
    create_token_pair,
    decode_refresh_token,
    get_pin_hash,
    verify_pin,
)
from db.models.patient import Patient
from db.session import get_or_use_session
from schemas.patient_schema import ChangePinRequest, PatientLogin, PatientSignup, PatientUpdate
from services.otp_service import OtpService
from utils.db import safe_commit
from utils.timing import timeit, utcnow

logger = logging.getLogger(__name__)

ACCOUNT_TYPE_APP = "APP_ACCOUNT"


async def get_patient_by_phone(phone: str, db: AsyncSession):
    result = await db.execute(
        select(Patient).where(Patient.phone == phone, Patient.account_type == ACCOUNT_TYPE_APP)
    )
    return result.scalars().first()


async def get_patient_by_id(patient_id: str, db: AsyncSession):
    result = await db.execute(select(Patient).where(Patient.id == patient_id).execution_options(populate_existing=True))
    return result.scalars().first()


async def _issue_session(patient: Patient, db: AsyncSession, now: datetime) -> dict:
    """Mint a token pair and store the refresh token (one live session per patient)."""
    tokens = create_token_pair(patient.token_claims())
    patient.refresh_token = tokens["refreshToken"]
    patient.last_login_at = now
    await safe_commit(db, client_error_message="Invalid login request")
    return tokens


@timeit("signup_patient")
async def signup_patient(payload: PatientSignup, otp_service: OtpService, db: AsyncSession = None) -> dict:
    """Create an app account for a phone that has just passed OTP verification."""
    try:
        async with get_or_use_session(db) as _db:
            gate = await otp_service.check_signup_otp(payload.phone, payload.otp, db=_db)
            if not gate.success:
                logger.warning(f"Signup rejected for {payload.phone}: {gate.reason.value}")
                raise HTTPException(status_code=400, detail=gate.message)

            if await get_patient_by_phone(payload.phone, _db) is not None:
                raise HTTPException(
                    status_code=409,
                    detail="An account with this phone number already exists. Please login instead.",
                )

            patient = Patient(
                phone=payload.phone,
                full_name=payload.full_name,
                age=payload.age,
                gender=payload.gender or None,
                hashed_pin=get_pin_hash(payload.pin),
                phone_verified=True,
                account_type=ACCOUNT_TYPE_APP,
                created_via="SELF_REGISTERED",
                status="ACTIVE",
            )
            _db.add(patient)
            # A concurrent signup for the same phone loses on the unique index
            await safe_commit(_db, client_error_message="An account with this phone number already exists. Please login instead.")

            tokens = await _issue_session(patient, _db, utcnow())
            logger.info(f"Patient {patient.id} signed up")
            return {
                "success": True,
                "message": "Account created successfully",
                "patient": patient.to_public(),
                **tokens,
            }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating patient account: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create account")


@timeit("login_patient")
async def login_patient(payload: PatientLogin, db: AsyncSession = None) -> dict:
    """Phone + PIN login."""
    try:
        async with get_or_use_session(db) as _db:
            patient = await get_patient_by_phone(payload.phone, _db)
            if patient is None:
                raise HTTPException(status_code=404, detail="Account not found. Please sign up first.")
            if not patient.hashed_pin:
                raise HTTPException(status_code=400, detail="Account not properly set up. Please contact support.")
            if not verify_pin(payload.pin, patient.hashed_pin):
                logger.warning(f"Wrong PIN for patient {patient.id}")
                raise HTTPException(status_code=401, detail="Invalid PIN")

            tokens = await _issue_session(patient, _db, utcnow())
            return {
                "success": True,
                "message": "Login successful",
                "patient": patient.to_public(),
                **tokens,
            }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error logging in patient: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Login failed")


async def refresh_patient_tokens(refresh_token: str, db: AsyncSession = None) -> dict:
    """Rotate the session: the presented token must be the one we last issued."""
    try:
        claims = decode_refresh_token(refresh_token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Refresh token expired. Please login again.")
    except JWTError as e:
        logger.warning(f"Refresh token rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    if claims.get("type") != TOKEN_TYPE_PATIENT:
        raise HTTPException(status_code=403, detail="Invalid token type")

    try:
        async with get_or_use_session(db) as _db:
            patient = await get_patient_by_id(claims.get("sub", ""), _db)
            if patient is None or patient.refresh_token != refresh_token:
                raise HTTPException(status_code=401, detail="Invalid refresh token")

            tokens = create_token_pair(patient.token_claims())
            patient.refresh_token = tokens["refreshToken"]
            await safe_commit(_db)
            return {"success": True, "message": "Token refreshed successfully", **tokens}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error refreshing patient token: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to refresh token")


async def get_patient_profile(patient_id: str, db: AsyncSession = None) -> dict:
    async with get_or_use_session(db) as _db:
        patient = await get_patient_by_id(patient_id, _db)
        if patient is None:
            raise HTTPException(status_code=404, detail="Patient not found")
        profile = patient.to_public()
        profile.update({
            "phoneVerified": patient.phone_verified,
            "status": patient.status,
            "createdAt": patient.created_at.isoformat() if patient.created_at else None,
            "lastLoginAt": patient.last_login_at.isoformat() if patient.last_login_at else None,
        })
        return {"success": True, "patient": profile}


async def update_patient_profile(patient_id: str, changes: PatientUpdate, db: AsyncSession = None) -> dict:
    async with get_or_use_session(db) as _db:
        patient = await get_patient_by_id(patient_id, _db)
        if patient is None:
            raise HTTPException(status_code=404, detail="Patient not found")
        if changes.full_name:
            patient.full_name = changes.full_name.strip()
        if changes.age is not None:
            patient.age = changes.age
        if changes.gender:
            patient.gender = changes.gender
        await safe_commit(_db, client_error_message="Invalid profile data")
        return {"success": True, "message": "Profile updated successfully", "patient": patient.to_public()}


async def change_patient_pin(patient_id: str, request: ChangePinRequest, db: AsyncSession = None) -> dict:
    async with get_or_use_session(db) as _db:
        patient = await get_patient_by_id(patient_id, _db)
        if patient is None or not patient.hashed_pin:
            raise HTTPException(status_code=404, detail="Patient not found")
        if not verify_pin(request.current_pin, patient.hashed_pin):
            raise HTTPException(status_code=401, detail="Current PIN is incorrect")
        patient.hashed_pin = get_pin_hash(request.new_pin)
        await safe_commit(_db)
        logger.info(f"PIN changed for patient {patient.id}")
        return {"success": True, "message": "PIN changed successfully"}
