import uuid
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Index
from sqlalchemy.sql import func
from db.session import Base


def _new_patient_id() -> str:
    return str(uuid.uuid4())


class Patient(Base):
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=_new_patient_id)
    phone = Column(String(15), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String(20), nullable=True)
    hashed_pin = Column(String(255), nullable=True)
    phone_verified = Column(Boolean, default=False, nullable=False)
    account_type = Column(String(30), default="APP_ACCOUNT", nullable=False)
    created_via = Column(String(30), default="SELF_REGISTERED", nullable=False)
    status = Column(String(20), default="ACTIVE", nullable=False)
    # Refresh tokens are ~250 chars; one live token per patient
    refresh_token = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    last_login_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_patients_phone_account_type", "phone", "account_type"),
    )

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "fullName": self.full_name,
            "age": self.age,
            "gender": self.gender,
            "accountType": self.account_type,
        }

    def token_claims(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "full_name": self.full_name,
            "account_type": self.account_type,
        }
