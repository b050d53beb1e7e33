from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException
from api.v1 import auth, patients
from core.config import settings
from core.rate_limit import limiter
from db.base import initialize_database
from db.session import engine, SessionLocal
from utils.logging_config import configure_logging, RequestContextMiddleware
from utils.responses import error_json

# Configure logging with date-based files and TTL retention
logger = configure_logging("bhishak_auth")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await initialize_database()
        logger.info("SQL database initialized")
    except Exception as e:
        logger.warning(f"SQL init skipped or failed: {e}")
    logger.info("Application startup complete")
    yield
    try:
        await engine.dispose()
        logger.info("Disposed SQL engine")
    except Exception as e:
        logger.warning(f"Engine dispose failed: {e}")
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)
app.state.limiter = limiter


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_json(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    # pydantic prefixes ValueError messages raised by validators
    message = message.removeprefix("Value error, ")
    logger.info(f"Validation failed at {request.url.path}: {message}")
    return error_json(message, status_code=400)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(f"IP rate limit hit at {request.url.path}: {exc.detail}")
    return error_json("Too many requests from this IP. Please try again later.", status_code=429)


# Global exception handler to ensure 500s for unexpected errors
@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error at {request.url.path}: {exc}", exc_info=True)
    return error_json("Internal server error", status_code=500)


app.add_middleware(SlowAPIMiddleware)

# Add GZip compression for larger JSON payloads
app.add_middleware(GZipMiddleware, minimum_size=500)

# Add logging context middleware to capture patient_id and API path
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix=settings.API_PREFIX, tags=["Patient Auth"])
app.include_router(patients.router, prefix=settings.API_PREFIX, tags=["Patient Profile"])


@app.get("/")
async def root():
    return {"message": settings.APP_NAME, "version": settings.VERSION}


@app.get("/health")
@limiter.exempt
async def health_check():
    # Actively check DB connectivity
    try:
        async with SessionLocal() as db:
            await db.execute(text("SELECT 1"))
        db_status = "sql_connected"
    except Exception as e:
        logger.warning(f"Health SQL check failed: {e}")
        db_status = "sql_unavailable"
    return {"status": "healthy", "database": db_status}
