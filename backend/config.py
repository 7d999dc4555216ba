import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("GYMPASS_DB_PATH", BASE_DIR / "database" / "gympass.db"))
ADMIN_USERNAME = os.getenv("GYMPASS_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("GYMPASS_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("GYMPASS_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
LOG_LEVEL = os.getenv("GYMPASS_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int | None = None) -> int:
    try:
        parsed = int((value or "").strip())
    except ValueError:
        parsed = fallback
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


AUTH_TOKEN_TTL_SECONDS = _parse_int(os.getenv("GYMPASS_AUTH_TOKEN_TTL_SECONDS"), 43200, minimum=60)
DB_TIMEOUT_SECONDS = _parse_int(os.getenv("GYMPASS_DB_TIMEOUT_SECONDS"), 10, minimum=1)

CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("GYMPASS_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("GYMPASS_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("GYMPASS_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("GYMPASS_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("GYMPASS_ENABLE_DEBUG_ENDPOINTS"), False)

# Attendance policy
MAX_DWELL_MINUTES = _parse_int(os.getenv("GYMPASS_MAX_DWELL_MINUTES"), 180, minimum=1)
# Gym-local calendar day; defaults to IST (UTC+05:30).
DAY_UTC_OFFSET_MINUTES = _parse_int(os.getenv("GYMPASS_DAY_UTC_OFFSET_MINUTES"), 330)
SWEEP_INTERVAL_SECONDS = _parse_int(os.getenv("GYMPASS_SWEEP_INTERVAL_SECONDS"), 300, minimum=0)
HISTORY_DEFAULT_DAYS = _parse_int(os.getenv("GYMPASS_HISTORY_DEFAULT_DAYS"), 30, minimum=1)
HISTORY_MAX_DAYS = _parse_int(os.getenv("GYMPASS_HISTORY_MAX_DAYS"), 365, minimum=1)
CHECK_IN_CONFLICT_RETRIES = _parse_int(os.getenv("GYMPASS_CHECK_IN_CONFLICT_RETRIES"), 3, minimum=1)

QR_PAYLOAD_TYPE = "gym_attendance"
QR_RENDER_SCALE = _parse_int(os.getenv("GYMPASS_QR_RENDER_SCALE"), 8, minimum=1)
