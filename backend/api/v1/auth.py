from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_otp_service
from core.rate_limit import LOGIN, SEND_OTP, SIGNUP, VERIFY_OTP, limiter
from db.session import get_db_session
from schemas.otp_schema import OtpFailureReason, SendOtpRequest, VerifyOtpRequest
from schemas.patient_schema import PatientLogin, PatientSignup, RefreshTokenRequest
from services.otp_service import OtpService
from services.patient_service import login_patient, refresh_patient_tokens, signup_patient
from utils.responses import no_store_json
from utils.timing import timeit

router = APIRouter()

# Throttling reasons answer 429, everything else is a client error
_THROTTLED = {OtpFailureReason.RATE_LIMITED, OtpFailureReason.LOCKED}


@router.post("/send-otp")
@limiter.limit(SEND_OTP)
@timeit("POST /send-otp")
async def send_otp(
    request: Request,
    payload: SendOtpRequest,
    otp_service: OtpService = Depends(get_otp_service),
    db: AsyncSession = Depends(get_db_session),
):
    result = await otp_service.send_otp(payload.phone, db=db)
    if not result.success:
        return no_store_json(result.to_response(), status_code=429 if result.reason in _THROTTLED else 400)
    return no_store_json({"success": True, "message": "OTP sent successfully to your phone"})


@router.post("/verify-otp")
@limiter.limit(VERIFY_OTP)
@timeit("POST /verify-otp")
async def verify_otp(
    request: Request,
    payload: VerifyOtpRequest,
    otp_service: OtpService = Depends(get_otp_service),
    db: AsyncSession = Depends(get_db_session),
):
    result = await otp_service.verify_otp(payload.phone, payload.otp, db=db)
    return no_store_json(result.to_response(), status_code=200 if result.success else 400)


@router.post("/signup")
@limiter.limit(SIGNUP)
@timeit("POST /signup")
async def signup(
    request: Request,
    payload: PatientSignup,
    otp_service: OtpService = Depends(get_otp_service),
    db: AsyncSession = Depends(get_db_session),
):
    return no_store_json(await signup_patient(payload, otp_service, db=db), status_code=201)


@router.post("/login")
@limiter.limit(LOGIN)
@timeit("POST /login")
async def login(request: Request, payload: PatientLogin, db: AsyncSession = Depends(get_db_session)):
    return no_store_json(await login_patient(payload, db=db))


@router.post("/refresh-token")
async def refresh_token(payload: RefreshTokenRequest, db: AsyncSession = Depends(get_db_session)):
    return no_store_json(await refresh_patient_tokens(payload.refresh_token, db=db))
