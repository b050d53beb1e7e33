import logging
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, DBAPIError

logger = logging.getLogger(__name__)


async def safe_commit(session, client_error_message: str = "Invalid request", server_error_message: str = "Internal server error"):
    """Commit, rolling back and mapping driver errors to HTTP errors.

    Constraint violations (duplicate phone, over-long values) come back as 400,
    anything else as 500.
    """
    try:
        await session.commit()
    except (IntegrityError, DBAPIError) as e:
        logger.warning(f"Commit rejected by database: {e.__class__.__name__}")
        await session.rollback()
        raise HTTPException(status_code=400, detail=client_error_message) from e
    except Exception as e:
        logger.error(f"Commit failed: {e}")
        await session.rollback()
        raise HTTPException(status_code=500, detail=server_error_message) from e
