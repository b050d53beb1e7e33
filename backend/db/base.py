from db.session import Base, engine
from db.models.otp_record import OtpRecord  # noqa: F401  (registers table)
from db.models.patient import Patient  # noqa: F401
import logging
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

async def initialize_database(bind: AsyncEngine = None):
    """Create tables only. Schema changes beyond that are done by hand."""
    target = bind or engine
    try:
        assert isinstance(target, AsyncEngine)
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise e
