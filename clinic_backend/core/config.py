import os

from dotenv import load_dotenv

load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.split(",") if item.strip()]


APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic.db")
CORS_ORIGINS = _get_list(os.getenv("CORS_ORIGINS", "http://localhost:5173"))

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))

# Emails that always act as the doctor, whatever the token says.
ADMIN_EMAILS = _get_list(os.getenv("ADMIN_EMAILS"))

BOOKING_INITIAL_STATUS = os.getenv("BOOKING_INITIAL_STATUS", "confirmed").strip().lower()
DEFAULT_SLOT_MINUTES = int(os.getenv("DEFAULT_SLOT_MINUTES", "30"))
DEFAULT_MIN_ADVANCE_HOURS = float(os.getenv("DEFAULT_MIN_ADVANCE_HOURS", "2"))
DEFAULT_MAX_ADVANCE_DAYS = int(os.getenv("DEFAULT_MAX_ADVANCE_DAYS", "90"))
MAX_LISTING_DAYS = int(os.getenv("MAX_LISTING_DAYS", "92"))
RESCHEDULE_ROLLBACK_ATTEMPTS = int(os.getenv("RESCHEDULE_ROLLBACK_ATTEMPTS", "3"))
LIVE_VIEW_POLL_SECONDS = float(os.getenv("LIVE_VIEW_POLL_SECONDS", "1.0"))

SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_USE_TLS = _get_bool(os.getenv("SMTP_USE_TLS"), default=True)
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", SMTP_USERNAME)
CLINIC_NAME = os.getenv("CLINIC_NAME", "Clinic")

WHATSAPP_API_URL = os.getenv("WHATSAPP_API_URL", "")
WHATSAPP_API_TOKEN = os.getenv("WHATSAPP_API_TOKEN", "")
WHATSAPP_HTTP_TIMEOUT = float(os.getenv("WHATSAPP_HTTP_TIMEOUT", "10"))

VALID_INITIAL_STATUSES = {"pending", "confirmed"}


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if BOOKING_INITIAL_STATUS not in VALID_INITIAL_STATUSES:
        raise RuntimeError("BOOKING_INITIAL_STATUS must be 'pending' or 'confirmed'.")
    if RESCHEDULE_ROLLBACK_ATTEMPTS < 1:
        raise RuntimeError("RESCHEDULE_ROLLBACK_ATTEMPTS must be at least 1.")
