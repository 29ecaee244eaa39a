from fastapi import APIRouter

from kiosk.config import (
    AFTERNOON_END,
    AFTERNOON_START,
    ALLOW_SELF_REGISTRATION,
    BLUR_THRESHOLD,
    BRIGHTNESS_MAX,
    BRIGHTNESS_MIN,
    ERROR_DISPLAY_SECONDS,
    FACE_CENTER_MAX_OFFSET_RATIO,
    GRACE_MINUTES,
    MATCH_ATTEMPT_DELAY_SECONDS,
    MATCH_MAX_ATTEMPTS,
    MATCH_THRESHOLD,
    MAX_FACES,
    MIN_FACE_SIZE,
    MORNING_END,
    MORNING_START,
    OTP_EXPIRY_MINUTES,
    OTP_LENGTH,
    REGISTRATION_MAX_POLLS,
    REGISTRATION_POLL_SECONDS,
    STANDARD_WORK_HOURS,
    SUCCESS_DISPLAY_SECONDS,
    TIMEZONE,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/kiosk")
def kiosk_config():
    return {
        "timezone": TIMEZONE,
        "morning_start": MORNING_START.strftime("%H:%M:%S"),
        "morning_end": MORNING_END.strftime("%H:%M:%S"),
        "afternoon_start": AFTERNOON_START.strftime("%H:%M:%S"),
        "afternoon_end": AFTERNOON_END.strftime("%H:%M:%S"),
        "grace_minutes": GRACE_MINUTES,
        "standard_work_hours": STANDARD_WORK_HOURS,
        "match_threshold": MATCH_THRESHOLD,
        "match_max_attempts": MATCH_MAX_ATTEMPTS,
        "match_attempt_delay_seconds": MATCH_ATTEMPT_DELAY_SECONDS,
        "max_faces": MAX_FACES,
        "min_face_size": MIN_FACE_SIZE,
        "face_center_max_offset_ratio": FACE_CENTER_MAX_OFFSET_RATIO,
        "blur_threshold": BLUR_THRESHOLD,
        "brightness_min": BRIGHTNESS_MIN,
        "brightness_max": BRIGHTNESS_MAX,
        "otp_length": OTP_LENGTH,
        "otp_expiry_minutes": OTP_EXPIRY_MINUTES,
        "registration_poll_seconds": REGISTRATION_POLL_SECONDS,
        "registration_max_polls": REGISTRATION_MAX_POLLS,
        "allow_self_registration": ALLOW_SELF_REGISTRATION,
        "success_display_seconds": SUCCESS_DISPLAY_SECONDS,
        "error_display_seconds": ERROR_DISPLAY_SECONDS,
    }
