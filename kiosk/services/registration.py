import asyncio
import logging
import secrets
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from kiosk.config import (
    OTP_ECHO_CODE,
    OTP_EXPIRY_MINUTES,
    OTP_LENGTH,
    REGISTRATION_MAX_POLLS,
    REGISTRATION_POLL_SECONDS,
)
from kiosk.errors import BranchNotFound, RegistrationTimeout
from kiosk.utils import derive_fingerprint, iso, local_now, to_local
from kiosk_db import db

logger = logging.getLogger(__name__)


# -----------------------------
# Notification channel
# -----------------------------
class Notifier(Protocol):
    def deliver(self, recipients: list[str], code: str, context: dict) -> bool:
        ...


class LogNotifier:
    """Development channel: writes the code to the application log."""

    def deliver(self, recipients: list[str], code: str, context: dict) -> bool:
        if not recipients:
            logger.warning("No admin recipients for OTP; branch=%s", context.get("branch_code"))
        logger.info(
            "[DEV] Terminal OTP %s for %s (%s) -> %s",
            code,
            context.get("branch_name"),
            context.get("branch_code"),
            ", ".join(recipients) or "-",
        )
        return True


def _notification_message(branch: db.BranchRow, metadata: dict) -> str:
    device_text = f"Device: {metadata.get('device_name') or 'Unknown'}"
    lat, lon = metadata.get("latitude"), metadata.get("longitude")
    location_text = f"\nLocation: {lat:.6f}, {lon:.6f}" if lat is not None and lon is not None else ""
    return (
        f"An OTP code has been requested for attendance terminal registration at "
        f"{branch['name']} ({branch['code']}).\n\n{device_text}{location_text}\n\n"
        "Please provide this code to the user to verify and register their device."
    )


# -----------------------------
# Results
# -----------------------------
@dataclass(frozen=True)
class OTPIssued:
    request_id: int
    branch_id: int
    expires_at: datetime
    recipients: int
    delivered: bool
    code: str | None = None

    def to_dict(self) -> dict:
        out = {
            "request_id": self.request_id,
            "branch_id": self.branch_id,
            "expires_at": iso(self.expires_at),
            "recipients": self.recipients,
            "delivered": self.delivered,
        }
        if self.code is not None:
            out["otp_code"] = self.code
        return out


@dataclass(frozen=True)
class Verified:
    request_id: int
    branch_id: int
    verified_at: datetime
    device_uuid: str | None = None
    device_fingerprint: str | None = None
    device_name: str | None = None
    device_type: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    browser_info: dict | None = field(default=None, compare=False)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "branch_id": self.branch_id,
            "verified_at": iso(self.verified_at),
            "device_uuid": self.device_uuid,
            "device_fingerprint": self.device_fingerprint,
            "device_name": self.device_name,
            "device_type": self.device_type,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class Invalid:
    reason: str


# -----------------------------
# Registration watcher
# -----------------------------
class RegistrationWatcher:
    """
    Handle over the background poll for an administrator-registered device.

    ``status`` is one of waiting, registered, timeout, cancelled, failed.
    """

    def __init__(self, device_uuid: str, branch_id: int):
        self.device_uuid = device_uuid
        self.branch_id = branch_id
        self.polls = 0
        self.device: db.DeviceRow | None = None
        self.error: BaseException | None = None
        self._task: asyncio.Task | None = None

    def _attach(self, task: asyncio.Task) -> None:
        self._task = task
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Registration watcher cancelled for device %s", self.device_uuid)
            return
        exc = task.exception()
        if exc is not None:
            self.error = exc
            logger.warning("Registration watcher stopped for device %s: %s", self.device_uuid, exc)

    @property
    def status(self) -> str:
        if self._task is None or not self._task.done():
            return "waiting"
        if self._task.cancelled():
            return "cancelled"
        if isinstance(self.error, RegistrationTimeout):
            return "timeout"
        if self.error is not None:
            return "failed"
        return "registered"

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def add_done_callback(self, callback: Callable[["RegistrationWatcher"], None]) -> None:
        self._task.add_done_callback(lambda _task: callback(self))

    def cancel(self) -> bool:
        if self._task is None or self._task.done():
            return False
        return self._task.cancel()

    async def wait(self) -> db.DeviceRow:
        """Result of the poll; raises RegistrationTimeout or CancelledError."""
        return await self._task

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "device_uuid": self.device_uuid,
            "branch_id": self.branch_id,
            "polls": self.polls,
            "device_id": self.device["id"] if self.device else None,
        }


OnRegistered = Callable[[db.DeviceRow], Awaitable[None] | None]


# -----------------------------
# OTP flow
# -----------------------------
class OTPRegistrationFlow:
    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        code_length: int = OTP_LENGTH,
        expiry_minutes: int = OTP_EXPIRY_MINUTES,
        echo_code: bool = OTP_ECHO_CODE,
        poll_seconds: float = REGISTRATION_POLL_SECONDS,
        max_polls: int = REGISTRATION_MAX_POLLS,
        code_factory: Callable[[], str] | None = None,
    ):
        self.notifier = notifier or LogNotifier()
        self.code_length = code_length
        self.expiry_minutes = expiry_minutes
        self.echo_code = echo_code
        self.poll_seconds = poll_seconds
        self.max_polls = max_polls
        self.code_factory = code_factory or self.generate_code

    def generate_code(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.code_length))

    def request(
        self,
        branch_id: int,
        device_uuid: str | None,
        metadata: dict | None = None,
        *,
        now: datetime | None = None,
    ) -> OTPIssued:
        branch = db.get_branch(branch_id)
        if not branch or not branch["is_active"]:
            raise BranchNotFound()

        meta = dict(metadata or {})
        browser_info = meta.get("browser_info") or None
        device_uuid = device_uuid or (browser_info or {}).get("device_uuid")
        if not device_uuid:
            logger.warning("OTP requested without a device identifier; branch=%s", branch_id)

        fingerprint = meta.get("device_fingerprint") or derive_fingerprint(meta.get("user_agent"), browser_info)

        created_at = to_local(now) if now else local_now()
        expires_at = created_at + timedelta(minutes=self.expiry_minutes)
        code = self.code_factory()

        request_id = db.insert_otp_request(
            branch_id=branch_id,
            otp_code=code,
            created_at=created_at,
            expires_at=expires_at,
            device_uuid=device_uuid,
            device_fingerprint=fingerprint,
            device_name=meta.get("device_name"),
            device_type=meta.get("device_type"),
            latitude=meta.get("latitude"),
            longitude=meta.get("longitude"),
            user_agent=meta.get("user_agent"),
            browser_info=browser_info,
        )

        recipients = db.get_admin_emails()
        context = {
            "branch_id": branch_id,
            "branch_name": branch["name"],
            "branch_code": branch["code"],
            "expiry_minutes": self.expiry_minutes,
            "message": _notification_message(branch, meta),
        }
        try:
            delivered = bool(self.notifier.deliver(recipients, code, context))
        except Exception as exc:  # delivery is best-effort
            logger.error("OTP delivery failed for branch %s: %s", branch_id, exc)
            delivered = False

        logger.info("OTP request %s issued for branch %s (delivered=%s)", request_id, branch_id, delivered)
        return OTPIssued(
            request_id=request_id,
            branch_id=branch_id,
            expires_at=expires_at,
            recipients=len(recipients),
            delivered=delivered,
            code=code if self.echo_code else None,
        )

    def verify(self, code: str, branch_id: int, *, now: datetime | None = None) -> Verified | Invalid:
        current = to_local(now) if now else local_now()
        clean = (code or "").strip()
        if not clean:
            return Invalid("empty code")

        pending = db.find_pending_otp(clean, branch_id, current)
        if pending is None:
            logger.info("OTP verification failed for branch %s", branch_id)
            return Invalid("invalid or expired")

        if not db.mark_otp_verified(pending["id"], current):
            return Invalid("already used")

        logger.info("OTP request %s verified for branch %s", pending["id"], branch_id)
        return Verified(
            request_id=pending["id"],
            branch_id=branch_id,
            verified_at=current,
            device_uuid=pending["device_uuid"],
            device_fingerprint=pending["device_fingerprint"],
            device_name=pending["device_name"],
            device_type=pending["device_type"],
            latitude=pending["latitude"],
            longitude=pending["longitude"],
            browser_info=pending["browser_info"],
        )

    async def _poll(self, watcher: RegistrationWatcher, on_registered: OnRegistered | None) -> db.DeviceRow:
        for attempt in range(1, self.max_polls + 1):
            watcher.polls = attempt
            try:
                device = await asyncio.to_thread(db.find_active_device, watcher.branch_id, watcher.device_uuid)
            except sqlite3.Error as exc:
                logger.warning("Registration poll %s failed: %s", attempt, exc)
                device = None

            if device is not None:
                watcher.device = device
                logger.info("Device %s registered for branch %s", watcher.device_uuid, watcher.branch_id)
                if on_registered is not None:
                    result = on_registered(device)
                    if asyncio.iscoroutine(result):
                        await result
                return device

            if attempt < self.max_polls:
                await asyncio.sleep(self.poll_seconds)

        raise RegistrationTimeout()

    def await_registration(
        self,
        device_uuid: str,
        branch_id: int,
        on_registered: OnRegistered | None = None,
    ) -> RegistrationWatcher:
        """Start polling on the running loop and return the cancellable handle."""
        watcher = RegistrationWatcher(device_uuid, branch_id)
        watcher._attach(asyncio.get_running_loop().create_task(self._poll(watcher, on_registered)))
        return watcher

    def expire_stale(self, *, now: datetime | None = None) -> int:
        current = to_local(now) if now else local_now()
        count = db.expire_stale_otp_requests(current)
        if count:
            logger.info("Expired %s stale OTP requests", count)
        return count
