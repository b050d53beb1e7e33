"""Phone OTP issuance and verification.

Every decision (rate limit, lockout, attempt budget) is derived from the
``otp_records`` table on each call; the service itself holds no per-phone
state, so any number of workers can share one database.
"""
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from passlib.context import CryptContext
from sqlalchemy import select, update, delete, desc, or_
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings
from db.models.otp_record import OtpRecord
from db.session import get_or_use_session
from schemas.otp_schema import OtpFailureReason, OtpResult
from utils.db import safe_commit
from utils.sms import SmsDeliveryAdapter
from utils.timing import timeit, utcnow

logger = logging.getLogger(__name__)

LOCKOUT_SCOPES = ("latest", "window")


@dataclass(frozen=True)
class OtpPolicy:
    """Limits applied by OtpService. Defaults match the production policy."""
    otp_length: int = 6
    otp_expiry: timedelta = timedelta(minutes=10)
    rate_window: timedelta = timedelta(hours=1)
    max_sends_per_window: int = 3
    max_verify_attempts: int = 5
    lockout_duration: timedelta = timedelta(minutes=30)
    signup_freshness: timedelta = timedelta(minutes=10)
    retention: timedelta = timedelta(hours=24)
    hash_rounds: int = 10
    # "latest": lock on the newest record's attempts only.
    # "window": lock on the sum of attempts over every record in rate_window.
    lockout_scope: str = "latest"
    # Expire a phone's outstanding codes whenever a new one is issued
    single_active_record: bool = False

    def __post_init__(self):
        if self.lockout_scope not in LOCKOUT_SCOPES:
            raise ValueError(f"lockout_scope must be one of {LOCKOUT_SCOPES}")
        if self.otp_length < 4:
            raise ValueError("otp_length must be at least 4")

    @classmethod
    def from_settings(cls, config: Settings) -> "OtpPolicy":
        return cls(
            otp_length=config.OTP_LENGTH,
            otp_expiry=timedelta(minutes=config.OTP_EXPIRY_MINUTES),
            rate_window=timedelta(minutes=config.OTP_RATE_WINDOW_MINUTES),
            max_sends_per_window=config.OTP_MAX_SENDS_PER_WINDOW,
            max_verify_attempts=config.OTP_MAX_VERIFY_ATTEMPTS,
            lockout_duration=timedelta(minutes=config.OTP_LOCKOUT_MINUTES),
            signup_freshness=timedelta(minutes=config.OTP_SIGNUP_FRESHNESS_MINUTES),
            retention=timedelta(hours=config.OTP_RETENTION_HOURS),
            hash_rounds=config.OTP_HASH_ROUNDS,
            lockout_scope=config.OTP_LOCKOUT_SCOPE,
            single_active_record=config.OTP_SINGLE_ACTIVE_RECORD,
        )


class OtpService:
    """
    Issues, verifies and expires phone OTPs:
    - send_otp: lockout + hourly cap, then generate/hash/store/deliver
    - verify_otp: newest live record only, attempts tracked per record
    - check_signup_otp: verified + fresh + same code, for account creation
    - cleanup_expired: housekeeping for the cron job
    """

    def __init__(
        self,
        sms_adapter: SmsDeliveryAdapter,
        policy: Optional[OtpPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sms_adapter = sms_adapter
        self.policy = policy or OtpPolicy()
        self.clock = clock
        self._hasher = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=self.policy.hash_rounds)
        self._code_pattern = re.compile(f"[0-9]{{{self.policy.otp_length}}}")

    # -- code generation / hashing -------------------------------------------------

    def generate_otp(self) -> str:
        """Uniform random code, e.g. 100000-999999 for six digits."""
        low = 10 ** (self.policy.otp_length - 1)
        high = 10 ** self.policy.otp_length
        return str(low + secrets.randbelow(high - low))

    def is_well_formed(self, otp: str) -> bool:
        """Exactly otp_length ASCII digits."""
        return bool(otp) and self._code_pattern.fullmatch(otp) is not None

    def _malformed(self) -> OtpResult:
        return OtpResult.fail(
            OtpFailureReason.VALIDATION_ERROR,
            f"OTP must be exactly {self.policy.otp_length} digits",
        )

    def hash_otp(self, otp: str) -> str:
        return self._hasher.hash(otp)

    def check_otp(self, otp: str, hashed_otp: str) -> bool:
        try:
            return self._hasher.verify(otp, hashed_otp)
        except (ValueError, TypeError):
            logger.warning("Stored OTP hash could not be parsed")
            return False

    # -- rate limit / lockout ------------------------------------------------------

    async def _recent_records(self, db: AsyncSession, phone: str, now: datetime) -> List[OtpRecord]:
        result = await db.execute(
            select(OtpRecord)
            .where(OtpRecord.phone == phone, OtpRecord.created_at >= now - self.policy.rate_window)
            .order_by(desc(OtpRecord.created_at), desc(OtpRecord.id))
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def locked_until(self, records: List[OtpRecord], now: datetime) -> Optional[datetime]:
        """Lock expiry for a phone given its records in the window (newest first), or None."""
        if not records:
            return None
        limit = self.policy.max_verify_attempts
        if self.policy.lockout_scope == "latest":
            anchor = records[0] if records[0].attempts >= limit else None
        else:
            total = sum(r.attempts for r in records)
            anchor = next((r for r in records if r.attempts > 0), None) if total >= limit else None
        if anchor is None:
            return None
        until = anchor.created_at + self.policy.lockout_duration
        return until if until > now else None

    # -- operations ----------------------------------------------------------------

    @timeit("otp_service.send_otp")
    async def send_otp(self, phone: str, db: AsyncSession = None) -> OtpResult:
        """Issue a new code to ``phone`` unless it is locked or over its hourly cap."""
        now = self.clock()
        async with get_or_use_session(db) as _db:
            records = await self._recent_records(_db, phone, now)

            locked_until = self.locked_until(records, now)
            if locked_until is not None:
                logger.warning(f"send_otp locked | phone={phone} until={locked_until.isoformat()}")
                return OtpResult.fail(
                    OtpFailureReason.LOCKED,
                    f"Too many attempts. Please try again after {locked_until.strftime('%H:%M:%S')} UTC",
                    locked_until=locked_until,
                )

            if len(records) >= self.policy.max_sends_per_window:
                logger.warning(f"send_otp rate limited | phone={phone} count={len(records)}")
                return OtpResult.fail(
                    OtpFailureReason.RATE_LIMITED,
                    f"Maximum {self.policy.max_sends_per_window} OTP requests per hour. Please try again later.",
                )

            otp = self.generate_otp()

            if self.policy.single_active_record:
                await _db.execute(
                    update(OtpRecord)
                    .where(OtpRecord.phone == phone, OtpRecord.verified.is_(False), OtpRecord.expires_at >= now)
                    .values(expires_at=now - timedelta(seconds=1))
                    .execution_options(synchronize_session=False)
                )

            _db.add(OtpRecord(
                phone=phone,
                hashed_otp=self.hash_otp(otp),
                created_at=now,
                expires_at=now + self.policy.otp_expiry,
                verified=False,
                attempts=0,
            ))
            await safe_commit(_db, client_error_message="Failed to store OTP", server_error_message="Failed to store OTP")
            logger.info(f"send_otp stored | phone={phone}")

        # The record exists either way, so delivery problems are not the caller's
        try:
            delivered = await self.sms_adapter.send_otp(phone, otp)
        except Exception as e:
            logger.error(f"send_otp delivery raised | phone={phone} error={e}", exc_info=True)
            delivered = False
        if not delivered:
            logger.error(f"send_otp {OtpFailureReason.DELIVERY_FAILURE.value} | phone={phone}")

        return OtpResult.ok("OTP sent successfully")

    @timeit("otp_service.verify_otp")
    async def verify_otp(self, phone: str, otp: str, db: AsyncSession = None) -> OtpResult:
        """Check ``otp`` against the newest unexpired, unverified record for ``phone``."""
        if not self.is_well_formed(otp):
            return self._malformed()
        now = self.clock()
        limit = self.policy.max_verify_attempts
        async with get_or_use_session(db) as _db:
            result = await _db.execute(
                select(OtpRecord)
                .where(OtpRecord.phone == phone, OtpRecord.expires_at >= now, OtpRecord.verified.is_(False))
                .order_by(desc(OtpRecord.created_at), desc(OtpRecord.id))
                .limit(1)
                .execution_options(populate_existing=True)
            )
            record = result.scalars().first()
            if record is None:
                logger.info(f"verify_otp no live record | phone={phone}")
                return OtpResult.fail(OtpFailureReason.EXPIRED, "OTP expired or not found. Please request a new OTP.")

            if record.attempts >= limit:
                logger.warning(f"verify_otp attempts exhausted | phone={phone} record={record.id}")
                return OtpResult.fail(
                    OtpFailureReason.TOO_MANY_ATTEMPTS,
                    "Too many incorrect attempts. Please request a new OTP.",
                    remaining_attempts=0,
                )

            # Both writes are guarded so concurrent verifies cannot lose an increment
            # or resurrect a consumed record.
            guard = (
                OtpRecord.id == record.id,
                OtpRecord.verified.is_(False),
                OtpRecord.attempts < limit,
            )

            if not self.check_otp(otp, record.hashed_otp):
                await _db.execute(
                    update(OtpRecord).where(*guard)
                    .values(attempts=OtpRecord.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                await safe_commit(_db)
                remaining = max(limit - record.attempts - 1, 0)
                logger.warning(f"verify_otp mismatch | phone={phone} record={record.id} remaining={remaining}")
                return OtpResult.fail(
                    OtpFailureReason.MISMATCH,
                    f"Invalid OTP. {remaining} attempts remaining.",
                    remaining_attempts=remaining,
                )

            updated = await _db.execute(
                update(OtpRecord).where(*guard)
                .values(verified=True)
                .execution_options(synchronize_session=False)
            )
            await safe_commit(_db)
            if updated.rowcount == 0:
                logger.warning(f"verify_otp lost race | phone={phone} record={record.id}")
                return OtpResult.fail(OtpFailureReason.EXPIRED, "OTP expired or not found. Please request a new OTP.")

        logger.info(f"verify_otp success | phone={phone}")
        return OtpResult.ok("OTP verified successfully")

    async def check_signup_otp(self, phone: str, otp: str, db: AsyncSession = None) -> OtpResult:
        """Gate for account creation: a verified record created within signup_freshness
        whose hash still matches the resubmitted code."""
        if not self.is_well_formed(otp):
            return self._malformed()
        now = self.clock()
        async with get_or_use_session(db) as _db:
            result = await _db.execute(
                select(OtpRecord)
                .where(
                    OtpRecord.phone == phone,
                    OtpRecord.verified.is_(True),
                    OtpRecord.created_at >= now - self.policy.signup_freshness,
                )
                .order_by(desc(OtpRecord.created_at), desc(OtpRecord.id))
                .limit(1)
                .execution_options(populate_existing=True)
            )
            record = result.scalars().first()

        if record is None:
            return OtpResult.fail(OtpFailureReason.EXPIRED, "OTP verification expired. Please verify OTP again.")
        if not self.check_otp(otp, record.hashed_otp):
            return OtpResult.fail(OtpFailureReason.MISMATCH, "Invalid OTP. Please try again.")
        return OtpResult.ok("OTP verified")

    async def cleanup_expired(self, db: AsyncSession = None) -> int:
        """Delete expired records and anything older than the retention period.

        Returns the number of rows removed; errors are logged and reported as 0.
        """
        now = self.clock()
        try:
            async with get_or_use_session(db) as _db:
                result = await _db.execute(
                    delete(OtpRecord)
                    .where(or_(
                        OtpRecord.expires_at < now,
                        OtpRecord.created_at < now - self.policy.retention,
                    ))
                    .execution_options(synchronize_session=False)
                )
                await _db.commit()
                deleted = result.rowcount or 0
            logger.info(f"cleanup_expired removed {deleted} OTP records")
            return deleted
        except Exception as e:
            logger.error(f"Error cleaning up expired OTPs: {e}", exc_info=True)
            return 0
