from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index
from db.session import Base


class OtpRecord(Base):
    """One row per OTP issued to a phone. The code itself is only stored hashed."""

    __tablename__ = "otp_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(15), index=True, nullable=False)
    hashed_otp = Column(String(255), nullable=False)
    # Set by the service clock, not the server, so rate windows line up with expires_at
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    verified = Column(Boolean, default=False, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_otp_records_phone_created", "phone", "created_at"),
    )
