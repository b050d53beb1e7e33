from functools import lru_cache
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials
from core.config import settings
from core.security import TOKEN_TYPE_PATIENT, bearer_scheme, verify_token
from schemas.patient_schema import CurrentPatient
from services.otp_service import OtpPolicy, OtpService
from utils.sms import SmsDeliveryAdapter, build_sms_adapter
import logging

logger = logging.getLogger(__name__)


@lru_cache
def get_sms_adapter() -> SmsDeliveryAdapter:
    """Delivery adapter chosen once per process from ENVIRONMENT."""
    return build_sms_adapter(settings)


@lru_cache
def get_otp_policy() -> OtpPolicy:
    return OtpPolicy.from_settings(settings)


def get_otp_service(
    sms_adapter: SmsDeliveryAdapter = Depends(get_sms_adapter),
    policy: OtpPolicy = Depends(get_otp_policy),
) -> OtpService:
    return OtpService(sms_adapter=sms_adapter, policy=policy)


async def get_current_patient(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentPatient:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(credentials.credentials)
    if not payload or payload.get("type") != TOKEN_TYPE_PATIENT:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentPatient(
        id=payload["sub"],
        phone=payload.get("phone", ""),
        full_name=payload.get("fullName", ""),
        account_type=payload.get("accountType", ""),
    )
