"""
Terminal orchestrator.

One ``KioskTerminal`` per physical kiosk. It sequences the trust gate, the
OTP registration flow, session resolution, biometric matching and the
attendance commit, and owns the camera for the duration of a clock action.

State machine::

    idle -> checking_trust -> idle | awaiting_registration | error
    idle -> detecting -> recording -> success | error
    success | error -> idle   (after the display duration)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

from kiosk.capture import CameraSource, CaptureSource, Coordinates, GeolocationSource, acquire_location, capture_session
from kiosk.config import ERROR_DISPLAY_SECONDS, SUCCESS_DISPLAY_SECONDS
from kiosk.errors import (
    BranchNotFound,
    DeviceUnauthorized,
    KioskError,
    NoFaceDetected,
    NoMatchFound,
    OTPInvalidOrExpired,
    PinRequired,
    RegistrationTimeout,
    SessionAlreadyRecorded,
    SessionUnavailable,
    TerminalBusy,
    TerminalFailure,
)
from kiosk.services.matcher import BiometricMatcher, Exhausted
from kiosk.services.recorder import AttendanceRecorder
from kiosk.services.registration import OTPIssued, OTPRegistrationFlow, RegistrationWatcher, Verified
from kiosk.services.sessions import Action, SessionWindows, resolve
from kiosk.services.trust import (
    ActivityLogger,
    Authorized,
    DeviceTrustGate,
    Denied,
    GateOutcome,
    NeedsPin,
    NeedsRegistration,
    PinVerification,
    PinVerifier,
)
from kiosk.utils import iso, local_now
from kiosk_db import db

logger = logging.getLogger(__name__)

ACTION_LABELS = {"time_in": "time in", "time_out": "time out"}


class TerminalState(str, Enum):
    IDLE = "idle"
    CHECKING_TRUST = "checking_trust"
    AWAITING_REGISTRATION = "awaiting_registration"
    DETECTING = "detecting"
    RECORDING = "recording"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class TerminalContext:
    """Per-terminal session state. The PIN verification carries its own expiry."""

    device_uuid: str | None
    branch_hint: int | None = None
    decision: GateOutcome | None = None
    location: Coordinates | None = None
    pin: PinVerification | None = None
    otp: OTPIssued | None = None
    verified: Verified | None = None
    watcher: RegistrationWatcher | None = None
    last_result: dict | None = None
    last_error: KioskError | None = None

    def pin_token_for(self, branch_id: int, now: datetime) -> str | None:
        if self.pin is not None and self.pin.is_valid_for(branch_id, now):
            return self.pin.token
        return None

    @property
    def branch(self) -> db.BranchRow | None:
        return getattr(self.decision, "branch", None)


class KioskTerminal:
    def __init__(
        self,
        device_uuid: str | None,
        *,
        gate: DeviceTrustGate | None = None,
        pin_verifier: PinVerifier | None = None,
        otp_flow: OTPRegistrationFlow | None = None,
        matcher: BiometricMatcher | None = None,
        recorder: AttendanceRecorder | None = None,
        audit: ActivityLogger | None = None,
        capture_source: CaptureSource | None = None,
        geolocation: GeolocationSource | None = None,
        windows: SessionWindows | None = None,
        success_display_seconds: float = SUCCESS_DISPLAY_SECONDS,
        error_display_seconds: float = ERROR_DISPLAY_SECONDS,
        clock: Callable[[], datetime] = local_now,
        gallery_loader: Callable[[], list] | None = None,
    ):
        self.audit = audit or ActivityLogger()
        self.gate = gate or DeviceTrustGate(audit=self.audit)
        self.pin_verifier = pin_verifier or PinVerifier(audit=self.audit)
        self.otp_flow = otp_flow or OTPRegistrationFlow()
        self.matcher = matcher or BiometricMatcher()
        self.windows = windows or SessionWindows()
        self.recorder = recorder or AttendanceRecorder(windows=self.windows)
        self.capture_source = capture_source
        self.geolocation = geolocation
        self.success_display_seconds = success_display_seconds
        self.error_display_seconds = error_display_seconds
        self.clock = clock
        self.gallery_loader = gallery_loader or db.load_embedding_gallery

        self.state = TerminalState.IDLE
        self.context = TerminalContext(device_uuid=device_uuid)
        self._lock = asyncio.Lock()
        self._reset_handle: asyncio.TimerHandle | None = None
        self._active_task: asyncio.Task | None = None

    @property
    def device_uuid(self) -> str | None:
        return self.context.device_uuid

    # -----------------------------
    # State helpers
    # -----------------------------
    def _set_state(self, state: TerminalState) -> None:
        if state != self.state:
            logger.debug("Terminal %s: %s -> %s", self.device_uuid, self.state.value, state.value)
        self.state = state

    def _cancel_reset(self) -> None:
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

    def _schedule_reset(self, delay: float) -> None:
        self._cancel_reset()
        self._reset_handle = asyncio.get_running_loop().call_later(max(0.0, delay), self.reset)

    def reset(self) -> None:
        """Return a finished terminal to idle."""
        self._reset_handle = None
        if self.state in (TerminalState.SUCCESS, TerminalState.ERROR):
            self._set_state(TerminalState.IDLE)

    @asynccontextmanager
    async def _exclusive(self):
        if self._lock.locked():
            raise TerminalBusy()
        async with self._lock:
            self._cancel_reset()
            yield

    def _fail(self, exc: KioskError, *, staff_id: int | None = None, session_data: dict | None = None) -> None:
        branch = self.context.branch
        self.audit.log(
            "access_denied",
            "failed",
            branch=branch,
            device_uuid=self.device_uuid,
            staff_id=staff_id,
            reason=exc.message,
            session_data={"code": exc.code, **(session_data or {})},
        )
        self.context.last_error = exc
        self._set_state(TerminalState.ERROR)
        self._schedule_reset(self.error_display_seconds)

    # -----------------------------
    # Trust
    # -----------------------------
    async def _authorize(self, branch_hint: int | None) -> GateOutcome:
        self._set_state(TerminalState.CHECKING_TRUST)
        ctx = self.context
        if branch_hint is not None:
            ctx.branch_hint = branch_hint

        location = await acquire_location(self.geolocation)
        ctx.location = location
        now = self.clock()
        hint = ctx.branch_hint
        pin_token = ctx.pin_token_for(hint, now) if hint is not None else (ctx.pin.token if ctx.pin else None)

        outcome = await asyncio.to_thread(
            self.gate.authorize,
            ctx.device_uuid,
            location,
            branch_hint=hint,
            pin_token=pin_token,
            now=now,
        )
        ctx.decision = outcome

        if isinstance(outcome, NeedsRegistration):
            self._set_state(TerminalState.AWAITING_REGISTRATION)
        elif isinstance(outcome, Denied):
            ctx.last_error = outcome.error()
            self._set_state(TerminalState.ERROR)
            self._schedule_reset(self.error_display_seconds)
        else:
            self._set_state(TerminalState.IDLE)
        return outcome

    async def check_authorization(self, branch_hint: int | None = None) -> GateOutcome:
        async with self._exclusive():
            return await self._authorize(branch_hint)

    async def verify_pin(self, pin: str, branch_id: int | None = None) -> GateOutcome:
        async with self._exclusive():
            branch = self.context.branch
            target = branch_id if branch_id is not None else (branch["id"] if branch else None)
            if target is None:
                raise DeviceUnauthorized()

            verification = await asyncio.to_thread(
                self.pin_verifier.verify_pin,
                target,
                pin,
                device_uuid=self.device_uuid,
                now=self.clock(),
            )
            self.context.pin = verification
            return await self._authorize(target)

    # -----------------------------
    # Registration
    # -----------------------------
    async def request_registration(self, branch_id: int | None = None, metadata: dict | None = None) -> OTPIssued:
        async with self._exclusive():
            branch = self.context.branch
            target = branch_id if branch_id is not None else (branch["id"] if branch else self.context.branch_hint)
            if target is None:
                raise BranchNotFound("Select the branch this terminal belongs to.")

            issued = await asyncio.to_thread(
                self.otp_flow.request,
                target,
                self.device_uuid,
                metadata,
                now=self.clock(),
            )
            self.context.otp = issued
            self.context.branch_hint = target
            self._set_state(TerminalState.AWAITING_REGISTRATION)
            return issued

    async def submit_otp(self, code: str, branch_id: int | None = None) -> Verified:
        async with self._exclusive():
            target = branch_id
            if target is None and self.context.otp is not None:
                target = self.context.otp.branch_id
            if target is None:
                target = self.context.branch_hint
            if target is None:
                raise OTPInvalidOrExpired()

            result = await asyncio.to_thread(self.otp_flow.verify, code, target, now=self.clock())
            if not isinstance(result, Verified):
                raise OTPInvalidOrExpired()

            self.context.verified = result
            self.context.branch_hint = target
            self._start_watcher(target)
            return result

    def _start_watcher(self, branch_id: int) -> RegistrationWatcher:
        if self.context.watcher is not None:
            self.context.watcher.cancel()

        async def on_registered(device: db.DeviceRow) -> None:
            logger.info("Terminal %s registered as device %s", self.device_uuid, device["id"])
            async with self._lock:
                await self._authorize(branch_id)

        watcher = self.otp_flow.await_registration(self.device_uuid, branch_id, on_registered)
        watcher.add_done_callback(self._registration_finished)
        self.context.watcher = watcher
        self._set_state(TerminalState.AWAITING_REGISTRATION)
        return watcher

    def _registration_finished(self, watcher: RegistrationWatcher) -> None:
        if watcher is not self.context.watcher:
            return
        if watcher.status == "timeout":
            self.context.last_error = RegistrationTimeout()
            self._set_state(TerminalState.ERROR)
            self._schedule_reset(self.error_display_seconds)

    def cancel_registration(self) -> bool:
        watcher = self.context.watcher
        if watcher is None:
            return False
        cancelled = watcher.cancel()
        if self.state == TerminalState.AWAITING_REGISTRATION:
            self._set_state(TerminalState.IDLE)
        return cancelled

    # -----------------------------
    # Clock action
    # -----------------------------
    def _require_authorized(self, now: datetime) -> Authorized:
        decision = self.context.decision
        if isinstance(decision, NeedsPin):
            raise PinRequired()
        if isinstance(decision, Denied):
            raise decision.error()
        if not isinstance(decision, Authorized):
            raise DeviceUnauthorized()

        branch = decision.branch
        if branch["require_pin"] and self.context.pin_token_for(branch["id"], now) is None:
            self.context.decision = NeedsPin(branch, decision.device)
            raise PinRequired("PIN verification expired. Enter the branch PIN again.")
        return decision

    async def _clock_action(
        self,
        requested: Action | None,
        source: CaptureSource | None,
        max_attempts: int | None,
        delay: float | None,
    ) -> dict:
        started = self.clock()
        decision = self._require_authorized(started)
        branch = decision.branch

        window = resolve(started, None, self.windows)
        if not window.valid and window.reason == "outside_window":
            raise SessionUnavailable(window.message)

        self._set_state(TerminalState.DETECTING)
        gallery = await asyncio.to_thread(self.gallery_loader)
        async with capture_session(source or self.capture_source or CameraSource()) as stream:
            outcome = await self.matcher.match(stream, gallery, max_attempts=max_attempts, delay=delay)

        if isinstance(outcome, Exhausted):
            if outcome.last_reason == "no_face":
                raise NoFaceDetected()
            raise NoMatchFound()

        staff = await asyncio.to_thread(db.get_staff, outcome.staff_id)
        if staff is None or not staff["is_active"]:
            raise NoMatchFound()

        self._set_state(TerminalState.RECORDING)
        now = self.clock()
        date = now.date().isoformat()
        record = await asyncio.to_thread(db.get_attendance_record, staff["id"], date)
        resolution = resolve(now, record, self.windows)
        if not resolution.valid:
            if resolution.reason in ("morning_complete", "day_complete"):
                raise SessionAlreadyRecorded(resolution.message)
            raise SessionUnavailable(resolution.message)

        if requested is not None and requested != resolution.action:
            if requested == "time_in":
                raise SessionAlreadyRecorded(
                    f"You have already timed in for the {resolution.session} session.",
                    guidance="Use time out instead.",
                )
            raise SessionUnavailable(
                f"You need to time in for the {resolution.session} session first.",
                guidance="Use time in instead.",
            )

        updated = await asyncio.to_thread(
            self.recorder.commit,
            staff["id"],
            date,
            resolution.session,
            resolution.action,
            now,
            branch_id=branch["id"],
        )

        self.audit.log(
            resolution.action,
            "success",
            branch=branch,
            device=decision.device,
            device_uuid=self.device_uuid,
            staff_id=staff["id"],
            location=self.context.location,
            session_data={
                "session": resolution.session,
                "action": resolution.action,
                "confidence": outcome.confidence,
                "distance": round(outcome.distance, 4),
            },
            at=now,
        )

        return {
            "status": "success",
            "staff": {
                "id": staff["id"],
                "full_name": staff["full_name"],
                "employee_id": staff["employee_id"],
                "role": staff["role"],
            },
            "session": resolution.session,
            "action": resolution.action,
            "message": f"{staff['full_name']}: {resolution.session} {ACTION_LABELS[resolution.action]} recorded.",
            "recorded_at": iso(now),
            "confidence": outcome.confidence,
            "record": updated,
        }

    async def attempt_clock_action(
        self,
        requested: Action | None = None,
        source: CaptureSource | None = None,
        *,
        max_attempts: int | None = None,
        delay: float | None = None,
    ) -> dict:
        """
        Identify the person at the camera and record their next transition.

        Raises a ``KioskError`` subclass on every failure; the terminal moves
        to ``error`` and returns to idle after the display duration.
        """
        async with self._exclusive():
            self._active_task = asyncio.current_task()
            try:
                result = await self._clock_action(requested, source, max_attempts, delay)
            except asyncio.CancelledError:
                self.audit.log(
                    "access_denied",
                    "warning",
                    branch=self.context.branch,
                    device_uuid=self.device_uuid,
                    reason="Clock action cancelled",
                )
                self._set_state(TerminalState.IDLE)
                raise
            except KioskError as exc:
                self._fail(exc)
                raise
            except Exception as exc:
                logger.exception("Clock action failed on terminal %s", self.device_uuid)
                failure = TerminalFailure()
                self._fail(failure, session_data={"error": type(exc).__name__})
                raise failure from exc
            finally:
                self._active_task = None

            self.context.last_result = result
            self.context.last_error = None
            self._set_state(TerminalState.SUCCESS)
            self._schedule_reset(self.success_display_seconds)
            return result

    def cancel(self) -> bool:
        """Abort the running clock action, if any."""
        task = self._active_task
        if task is None or task.done():
            return False
        return task.cancel()

    @property
    def evictable(self) -> bool:
        """Nothing running, no trust granted and no registration being watched."""
        ctx = self.context
        return (
            self.state in (TerminalState.IDLE, TerminalState.AWAITING_REGISTRATION)
            and not self._lock.locked()
            and ctx.watcher is None
            and not isinstance(ctx.decision, Authorized)
        )

    def shutdown(self) -> None:
        self._cancel_reset()
        self.cancel()
        self.cancel_registration()
        self._set_state(TerminalState.IDLE)

    def snapshot(self) -> dict:
        ctx = self.context
        return {
            "device_uuid": ctx.device_uuid,
            "state": self.state.value,
            "authorization": ctx.decision.kind if ctx.decision else None,
            "branch_id": ctx.branch["id"] if ctx.branch else ctx.branch_hint,
            "pin_expires_at": iso(ctx.pin.expires_at) if ctx.pin else None,
            "registration": ctx.watcher.to_dict() if ctx.watcher else None,
            "last_error": ctx.last_error.to_dict() if ctx.last_error else None,
        }
