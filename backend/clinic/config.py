# backend/clinic/config.py
import os
import warnings

from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))

APP_NAME = os.getenv("APP_NAME", "Clinic Appointments API")
APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")

# --- database ---
ASYNC_DB_URL = os.getenv("ASYNC_DATABASE_URL", "sqlite+aiosqlite:///./clinic.db")
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"

# --- auth ---
_DEV_SECRET = "dev-secret-change-me"
SECRET_KEY = os.getenv("SECRET_KEY") or _DEV_SECRET
if SECRET_KEY == _DEV_SECRET:
    warnings.warn(
        "SECRET_KEY is not set; falling back to an insecure development key.",
        RuntimeWarning,
        stacklevel=2,
    )
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "480"))
ACTIVATION_TOKEN_EXPIRE_HOURS = int(os.getenv("ACTIVATION_TOKEN_EXPIRE_HOURS", "10"))
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session_token")

# --- audit ---
AUDIT_BACKEND = os.getenv("AUDIT_BACKEND", "database")  # "database" | "kafka"
AUDIT_TOPIC = os.getenv("AUDIT_TOPIC", "clinic.audit.access")
KAFKA_BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "redpanda:9092")

# --- email ---
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
EMAIL_FROM = os.getenv("EMAIL_FROM", "Clinic <no-reply@clinic.local>")
EMAIL_MAX_ATTEMPTS = int(os.getenv("EMAIL_MAX_ATTEMPTS", "3"))
EMAIL_RETRY_DELAY_SECONDS = float(os.getenv("EMAIL_RETRY_DELAY_SECONDS", "1.0"))

CLINIC_ADDRESS = os.getenv("CLINIC_ADDRESS", "Main clinic address")
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "UTC")

# --- cron ---
CRON_API_KEY = os.getenv("CRON_API_KEY")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]
