from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    # App settings
    APP_NAME: str = "Bhishak Med Patient Auth API"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Security settings
    JWT_SECRET: str
    JWT_REFRESH_SECRET: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    REFRESH_TOKEN_EXPIRE_DAYS: int = 30
    PIN_HASH_ROUNDS: int = 10

    # Database settings
    DATABASE_URL: str
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE: int = 300
    DB_POOL_TIMEOUT: int = 10
    DB_PRE_PING: bool = True
    DB_CONNECT_TIMEOUT: int = 10

    # OTP policy
    OTP_LENGTH: int = 6
    OTP_EXPIRY_MINUTES: int = 10
    OTP_RATE_WINDOW_MINUTES: int = 60
    OTP_MAX_SENDS_PER_WINDOW: int = 3
    OTP_MAX_VERIFY_ATTEMPTS: int = 5
    OTP_LOCKOUT_MINUTES: int = 30
    OTP_SIGNUP_FRESHNESS_MINUTES: int = 10
    OTP_RETENTION_HOURS: int = 24
    OTP_HASH_ROUNDS: int = 10
    OTP_LOCKOUT_SCOPE: str = "latest"  # latest | window
    OTP_SINGLE_ACTIVE_RECORD: bool = False

    # SMS gateway (MSG91)
    MSG91_AUTH_KEY: Optional[str] = None
    MSG91_SENDER_ID: str = "BHISHK"
    MSG91_TEMPLATE_ID: Optional[str] = None
    MSG91_OTP_URL: str = "https://control.msg91.com/api/v5/otp"
    MSG91_FLOW_URL: str = "https://control.msg91.com/api/v5/flow/"
    MSG91_TIMEOUT: int = 10
    SMS_COUNTRY_CODE: str = "91"

    # Per-IP request limits
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "100/15minutes"
    RATE_LIMIT_SEND_OTP: str = "5/15minutes"
    RATE_LIMIT_VERIFY_OTP: str = "10/15minutes"
    RATE_LIMIT_SIGNUP: str = "3/hour"
    RATE_LIMIT_LOGIN: str = "5/15minutes"

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "https://bhishakmed.com",
        "https://www.bhishakmed.com",
    ]

    # API settings
    API_PREFIX: str = "/api/patient-auth"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TTL_DAYS: int = 7

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

# Create settings instance
settings = Settings()

# Validate required settings
if not settings.JWT_SECRET:
    raise ValueError("JWT_SECRET environment variable is required")

if not settings.JWT_REFRESH_SECRET:
    raise ValueError("JWT_REFRESH_SECRET environment variable is required")

if not settings.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

if settings.OTP_LOCKOUT_SCOPE not in ("latest", "window"):
    raise ValueError("OTP_LOCKOUT_SCOPE must be 'latest' or 'window'")
