"""
Logging for the patient auth service.

Every record carries the request id, the patient id (from the bearer token,
when there is one) and the endpoint being served. Files rotate at midnight
UTC and are kept for LOG_TTL_DAYS:

    app.log     everything at LOG_LEVEL
    error.log   WARNING and above
    access.log  uvicorn access lines
"""
import contextvars
import logging
import logging.handlers
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from core.config import settings
from core.security import verify_token

LOG_FORMAT = "%(levelname)s - %(asctime)s - %(request_id)s - %(patient_id)s - %(api)s - %(name)s - %(message)s"
REQUEST_ID_HEADER = "X-Request-ID"

request_id_var = contextvars.ContextVar("request_id", default="-")
patient_id_var = contextvars.ContextVar("patient_id", default="-")
api_var = contextvars.ContextVar("api", default="-")


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.patient_id = patient_id_var.get()
        record.api = api_var.get()
        return True


def map_log_level(level_name: str) -> int:
    level = logging.getLevelName((level_name or "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _daily_file(log_dir: Path, filename: str, level: int) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(log_dir / filename),
        when="midnight",
        backupCount=max(int(settings.LOG_TTL_DAYS), 0),
        encoding="utf-8",
        utc=True,
    )
    handler.suffix = "%Y-%m-%d"
    handler.setLevel(level)
    return handler


def _attach(target: logging.Logger, handlers: List[logging.Handler], level: int, propagate: bool) -> None:
    for existing in list(target.handlers):
        target.removeHandler(existing)
    for handler in handlers:
        target.addHandler(handler)
    target.setLevel(level)
    target.propagate = propagate


def configure_logging(app_logger_name: Optional[str] = None) -> logging.Logger:
    """Install file and console handlers; safe to call more than once."""
    log_dir = Path(settings.LOG_DIR)
    log_dir.mkdir(parents=True, exist_ok=True)
    level = map_log_level(settings.LOG_LEVEL)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    handlers: Dict[str, logging.Handler] = {
        "app": _daily_file(log_dir, "app.log", level),
        "error": _daily_file(log_dir, "error.log", logging.WARNING),
        "access": _daily_file(log_dir, "access.log", level),
        "console": logging.StreamHandler(),
    }
    handlers["console"].setLevel(level)
    context_filter = ContextFilter()
    for handler in handlers.values():
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    service = [handlers["app"], handlers["error"], handlers["console"]]
    app_logger = logging.getLogger(app_logger_name or "bhishak_auth")

    # Module loggers (services.otp_service, utils.sms, ...) reach these through root
    _attach(logging.getLogger(), service, level, propagate=True)
    _attach(app_logger, service, level, propagate=False)
    for name in ("uvicorn", "uvicorn.error", "fastapi"):
        _attach(logging.getLogger(name), service, level, propagate=False)
    _attach(logging.getLogger("uvicorn.access"), [handlers["access"], handlers["console"]], level, propagate=False)

    return app_logger


def patient_id_from_headers(authorization: Optional[str]) -> str:
    """Subject of a valid bearer token, or "-"."""
    if not authorization or not authorization.startswith("Bearer "):
        return "-"
    payload = verify_token(authorization.split(" ", 1)[1])
    return (payload or {}).get("sub") or "-"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds request id, patient id and endpoint to the logging context."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        tokens = (
            (request_id_var, request_id_var.set(request_id)),
            (patient_id_var, patient_id_var.set(patient_id_from_headers(request.headers.get("authorization")))),
            (api_var, api_var.set(f"{request.method} {request.url.path}")),
        )
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            for var, token in tokens:
                var.reset(token)
