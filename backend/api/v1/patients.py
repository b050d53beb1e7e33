from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_current_patient
from db.session import get_db_session
from schemas.patient_schema import ChangePinRequest, CurrentPatient, PatientUpdate
from services.patient_service import change_patient_pin, get_patient_profile, update_patient_profile
from utils.responses import no_store_json

router = APIRouter()


@router.get("/profile")
async def read_profile(
    current_patient: CurrentPatient = Depends(get_current_patient),
    db: AsyncSession = Depends(get_db_session),
):
    return no_store_json(await get_patient_profile(current_patient.id, db=db))


@router.put("/profile")
async def update_profile(
    changes: PatientUpdate,
    current_patient: CurrentPatient = Depends(get_current_patient),
    db: AsyncSession = Depends(get_db_session),
):
    return no_store_json(await update_patient_profile(current_patient.id, changes, db=db))


@router.put("/change-pin")
async def change_pin(
    request: ChangePinRequest,
    current_patient: CurrentPatient = Depends(get_current_patient),
    db: AsyncSession = Depends(get_db_session),
):
    return no_store_json(await change_patient_pin(current_patient.id, request, db=db))
