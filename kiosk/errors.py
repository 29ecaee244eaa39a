"""
Typed failures raised by the kiosk engine.

Each error carries a stable ``code`` for clients, a user-facing ``message``
and actionable ``guidance``. Routers turn them into JSON responses with
``status_code`` (see ``kiosk.main``).
"""


class KioskError(Exception):
    code = "kiosk_error"
    status_code = 400
    default_message = "Attendance terminal error."
    default_guidance = ""

    def __init__(self, message: str | None = None, *, guidance: str | None = None):
        self.message = message or self.default_message
        self.guidance = self.default_guidance if guidance is None else guidance
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, "guidance": self.guidance}


# -----------------------------
# Trust gate
# -----------------------------
class DeviceUnauthorized(KioskError):
    code = "device_unauthorized"
    status_code = 403
    default_message = "This device is not authorized for attendance."
    default_guidance = "Ask an administrator to register this terminal."


class LocationOutOfRange(KioskError):
    code = "location_out_of_range"
    status_code = 403
    default_message = "This terminal is outside the allowed branch area."
    default_guidance = "Use the terminal inside the branch premises."


class LocationUnavailable(KioskError):
    code = "location_unavailable"
    status_code = 422
    default_message = "Unable to determine the terminal location."
    default_guidance = "Allow location access for this page and try again."


class PinRequired(KioskError):
    code = "pin_required"
    status_code = 401
    default_message = "A branch PIN is required before using this terminal."
    default_guidance = "Enter the branch PIN provided by your manager."


class PinInvalid(KioskError):
    code = "pin_invalid"
    status_code = 400
    default_message = "Incorrect branch PIN."
    default_guidance = "Check the PIN with your branch manager and try again."


class BranchNotFound(KioskError):
    code = "branch_not_found"
    status_code = 404
    default_message = "Branch not found."
    default_guidance = "Select an active branch."


# -----------------------------
# Device registration
# -----------------------------
class OTPInvalidOrExpired(KioskError):
    code = "otp_invalid_or_expired"
    status_code = 400
    default_message = "Invalid or expired OTP code."
    default_guidance = "Request a new code and enter it within the validity window."


class RegistrationTimeout(KioskError):
    code = "registration_timeout"
    status_code = 504
    default_message = "Device registration was not completed in time."
    default_guidance = "Ask an administrator to register the device, then request a new code."


# -----------------------------
# Biometrics + capture
# -----------------------------
class NoFaceDetected(KioskError):
    code = "no_face_detected"
    status_code = 422
    default_message = "No face detected."
    default_guidance = "Make sure your face is clearly visible and centered in the camera."


class NoMatchFound(KioskError):
    code = "no_match_found"
    status_code = 422
    default_message = "Face not recognized."
    default_guidance = "Make sure you are registered in the system, or contact HR."


class CameraPermissionDenied(KioskError):
    code = "camera_permission_denied"
    status_code = 503
    default_message = "Camera access was denied."
    default_guidance = "Allow camera access for this terminal, then try again."


class CameraUnavailable(KioskError):
    code = "camera_unavailable"
    status_code = 503
    default_message = "Camera is not accessible."
    default_guidance = "Ensure a camera is connected and not in use by another application."


class TerminalBusy(KioskError):
    code = "terminal_busy"
    status_code = 409
    default_message = "The terminal is already processing an action."
    default_guidance = "Wait for the current action to finish."


class TerminalFailure(KioskError):
    code = "terminal_failure"
    status_code = 500
    default_message = "The terminal could not complete the action."
    default_guidance = "Please try again. Contact an administrator if it keeps happening."


# -----------------------------
# Sessions + store
# -----------------------------
class SessionUnavailable(KioskError):
    code = "session_unavailable"
    status_code = 422
    default_message = "Attendance is not available right now."


class SessionAlreadyRecorded(KioskError):
    code = "session_already_recorded"
    status_code = 409
    default_message = "This attendance entry was already recorded."
    default_guidance = "No further action is needed for this session."


class StoreConflict(KioskError):
    code = "store_conflict"
    status_code = 409
    default_message = "The record was changed by another request."
    default_guidance = "Refresh and try again."
