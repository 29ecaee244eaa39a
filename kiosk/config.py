import os
import secrets
from datetime import time
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("KIOSK_DB_PATH", BASE_DIR / "kiosk_db" / "kiosk.db"))
TIMEZONE = os.getenv("KIOSK_TIMEZONE", "Asia/Manila").strip() or "Asia/Manila"
ADMIN_USERNAME = os.getenv("KIOSK_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("KIOSK_ADMIN_PASSWORD", "admin123").strip() or "admin123"
ADMIN_EMAIL = os.getenv("KIOSK_ADMIN_EMAIL", "").strip() or None
SIGNING_KEY = os.getenv("KIOSK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("KIOSK_AUTH_TOKEN_TTL_SECONDS", "43200"))


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


def _parse_time(value: str | None, fallback: time) -> time:
    if not value:
        return fallback
    parts = value.split(":")
    try:
        hh = int(parts[0])
        mm = int(parts[1]) if len(parts) > 1 else 0
        ss = int(parts[2]) if len(parts) > 2 else 0
        return time(hh, mm, ss)
    except (ValueError, IndexError):
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Device-Id"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("KIOSK_CORS_ALLOW_CREDENTIALS"), True)

LOG_FILE = os.getenv("KIOSK_LOG_FILE", "").strip() or None
LOG_LEVEL = os.getenv("KIOSK_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Session windows (organization local time)
MORNING_START = _parse_time(os.getenv("KIOSK_MORNING_START"), time(7, 0))
MORNING_END = _parse_time(os.getenv("KIOSK_MORNING_END"), time(12, 0))
AFTERNOON_START = _parse_time(os.getenv("KIOSK_AFTERNOON_START"), time(13, 0))
AFTERNOON_END = _parse_time(os.getenv("KIOSK_AFTERNOON_END"), time(19, 0))
GRACE_MINUTES = max(0, int(os.getenv("KIOSK_GRACE_MINUTES", "10")))
STANDARD_WORK_HOURS = float(os.getenv("KIOSK_STANDARD_WORK_HOURS", "8"))

# Biometric matching (face_recognition descriptors; 0.6 is its default tolerance)
MATCH_THRESHOLD = float(os.getenv("KIOSK_MATCH_THRESHOLD", "0.6"))
MATCH_MAX_ATTEMPTS = max(1, int(os.getenv("KIOSK_MATCH_MAX_ATTEMPTS", "10")))
MATCH_ATTEMPT_DELAY_SECONDS = max(0.0, float(os.getenv("KIOSK_MATCH_ATTEMPT_DELAY_SECONDS", "0.5")))
CAMERA_INDEX = int(os.getenv("KIOSK_CAMERA_INDEX", "0"))

# Recognition gates (reduce false positives)
MAX_FACES = int(os.getenv("KIOSK_MAX_FACES", "1"))
MIN_FACE_SIZE = int(os.getenv("KIOSK_MIN_FACE_SIZE", "120"))
FACE_CENTER_MAX_OFFSET_RATIO = float(os.getenv("KIOSK_FACE_CENTER_MAX_OFFSET_RATIO", "0.35"))
ENCODING_JITTERS = max(1, int(os.getenv("KIOSK_ENCODING_JITTERS", "1")))
BLUR_THRESHOLD = float(os.getenv("KIOSK_BLUR_THRESHOLD", "40"))
BRIGHTNESS_MIN = float(os.getenv("KIOSK_BRIGHTNESS_MIN", "40"))
BRIGHTNESS_MAX = float(os.getenv("KIOSK_BRIGHTNESS_MAX", "200"))

# Device registration
ALLOW_SELF_REGISTRATION = _parse_bool(os.getenv("KIOSK_ALLOW_SELF_REGISTRATION"), True)
OTP_LENGTH = max(4, int(os.getenv("KIOSK_OTP_LENGTH", "6")))
OTP_EXPIRY_MINUTES = max(1, int(os.getenv("KIOSK_OTP_EXPIRY_MINUTES", "10")))
OTP_ECHO_CODE = _parse_bool(os.getenv("KIOSK_OTP_ECHO_CODE"), False)
REGISTRATION_POLL_SECONDS = max(0.0, float(os.getenv("KIOSK_REGISTRATION_POLL_SECONDS", "3")))
REGISTRATION_MAX_POLLS = max(1, int(os.getenv("KIOSK_REGISTRATION_MAX_POLLS", "100")))
GEOLOCATION_TIMEOUT_SECONDS = float(os.getenv("KIOSK_GEOLOCATION_TIMEOUT_SECONDS", "10"))
DEFAULT_PIN_CACHE_MINUTES = max(1, int(os.getenv("KIOSK_DEFAULT_PIN_CACHE_MINUTES", "480")))

# Terminal display durations before returning to idle
SUCCESS_DISPLAY_SECONDS = float(os.getenv("KIOSK_SUCCESS_DISPLAY_SECONDS", "3"))
ERROR_DISPLAY_SECONDS = float(os.getenv("KIOSK_ERROR_DISPLAY_SECONDS", "5"))
# Idle, unauthorized terminals are dropped from the hub after this long
TERMINAL_IDLE_TTL_SECONDS = max(0.0, float(os.getenv("KIOSK_TERMINAL_IDLE_TTL_SECONDS", "900")))
