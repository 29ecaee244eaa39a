import hmac
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from kiosk.capture import Coordinates
from kiosk.config import ALLOW_SELF_REGISTRATION
from kiosk.errors import (
    BranchNotFound,
    DeviceUnauthorized,
    KioskError,
    LocationOutOfRange,
    LocationUnavailable,
    PinInvalid,
)
from kiosk.security import decode_token, issue_token
from kiosk.utils import haversine, iso, local_now, to_local
from kiosk_db import db

logger = logging.getLogger(__name__)

PIN_SCOPE = "branch_pin"


# -----------------------------
# Audit log
# -----------------------------
class ActivityLogger:
    """Append-only audit writer. A failed write is logged and dropped."""

    def log(
        self,
        action_type: db.ActivityAction,
        status: db.ActivityStatus,
        *,
        branch: db.BranchRow | None = None,
        branch_id: int | None = None,
        device: db.DeviceRow | None = None,
        device_uuid: str | None = None,
        staff_id: int | None = None,
        reason: str | None = None,
        location: Coordinates | None = None,
        distance_m: float | None = None,
        session_data: dict | None = None,
        at: datetime | None = None,
    ) -> None:
        if branch is not None and not branch["log_activity"]:
            return

        try:
            db.insert_activity_log(
                action_type=action_type,
                status=status,
                created_at=at or local_now(),
                branch_id=branch["id"] if branch else branch_id,
                device_id=device["id"] if device else None,
                staff_id=staff_id,
                device_uuid=device_uuid or (device["device_uuid"] if device else None),
                status_reason=reason,
                latitude=location.latitude if location else None,
                longitude=location.longitude if location else None,
                distance_from_branch_m=distance_m,
                session_data=session_data,
            )
        except (sqlite3.Error, OSError, ValueError, TypeError) as exc:
            logger.warning("Activity log write failed (%s/%s): %s", action_type, status, exc)


# -----------------------------
# Branch PIN
# -----------------------------
@dataclass(frozen=True)
class PinVerification:
    branch_id: int
    token: str
    expires_at: datetime

    def is_valid_for(self, branch_id: int, now: datetime | None = None) -> bool:
        return self.branch_id == branch_id and (now or local_now()) < self.expires_at

    def to_dict(self) -> dict:
        return {"branch_id": self.branch_id, "token": self.token, "expires_at": iso(self.expires_at)}


class PinVerifier:
    def __init__(self, audit: ActivityLogger | None = None):
        self.audit = audit or ActivityLogger()

    def verify_pin(
        self,
        branch_id: int,
        pin: str,
        *,
        device_uuid: str | None = None,
        now: datetime | None = None,
    ) -> PinVerification:
        branch = db.get_branch(branch_id)
        if not branch or not branch["is_active"]:
            raise BranchNotFound()

        current = to_local(now) if now else local_now()
        expected = branch["pin"] or ""
        if not expected or not hmac.compare_digest(str(pin).strip().encode("utf-8"), expected.encode("utf-8")):
            self.audit.log("pin_failed", "failed", branch=branch, device_uuid=device_uuid, reason="Incorrect PIN", at=current)
            raise PinInvalid()

        ttl_seconds = branch["pin_cache_minutes"] * 60
        token, payload = issue_token(
            f"branch:{branch_id}",
            scope=PIN_SCOPE,
            ttl_seconds=ttl_seconds,
            now=int(current.timestamp()),
            branch_id=branch_id,
        )
        self.audit.log("pin_verified", "success", branch=branch, device_uuid=device_uuid, at=current)
        return PinVerification(
            branch_id=branch_id,
            token=token,
            expires_at=current + timedelta(seconds=ttl_seconds),
        )

    @staticmethod
    def token_valid(token: str | None, branch_id: int, now: datetime | None = None) -> bool:
        if not token:
            return False
        current = to_local(now) if now else local_now()
        payload = decode_token(token, scope=PIN_SCOPE, now=int(current.timestamp()))
        return bool(payload) and payload.get("branch_id") == branch_id


# -----------------------------
# Gate outcomes
# -----------------------------
@dataclass(frozen=True)
class Authorized:
    branch: db.BranchRow
    device: db.DeviceRow | None
    distance_m: float | None = None
    kind: str = "authorized"

    def to_dict(self) -> dict:
        return {
            "status": self.kind,
            "branch": _branch_view(self.branch),
            "device_id": self.device["id"] if self.device else None,
            "distance_m": self.distance_m,
        }


@dataclass(frozen=True)
class NeedsPin:
    branch: db.BranchRow
    device: db.DeviceRow | None = None
    kind: str = "needs_pin"

    def to_dict(self) -> dict:
        return {"status": self.kind, "branch": _branch_view(self.branch)}


@dataclass(frozen=True)
class NeedsRegistration:
    branch: db.BranchRow | None = None
    kind: str = "needs_registration"

    def to_dict(self) -> dict:
        return {"status": self.kind, "branch": _branch_view(self.branch) if self.branch else None}


@dataclass(frozen=True)
class Denied:
    reason: str
    branch: db.BranchRow | None = None
    distance_m: float | None = None
    kind: str = "denied"

    def error(self) -> KioskError:
        if self.reason == "out of range":
            message = None
            if self.distance_m is not None and self.branch is not None:
                message = (
                    f"You are {round(self.distance_m)}m away from the branch "
                    f"(allowed radius {round(self.branch['geofence_radius_m'])}m)."
                )
            return LocationOutOfRange(message)
        if self.reason == "location unavailable":
            return LocationUnavailable()
        return DeviceUnauthorized()

    def to_dict(self) -> dict:
        err = self.error()
        return {
            "status": self.kind,
            "reason": self.reason,
            "branch": _branch_view(self.branch) if self.branch else None,
            "distance_m": self.distance_m,
            **err.to_dict(),
        }


GateOutcome = Authorized | NeedsPin | NeedsRegistration | Denied


def _branch_view(branch: db.BranchRow) -> dict[str, Any]:
    return {
        "id": branch["id"],
        "name": branch["name"],
        "code": branch["code"],
        "require_pin": branch["require_pin"],
        "require_geolocation": branch["require_geolocation"],
    }


class DeviceTrustGate:
    """
    Device -> branch resolution followed by the branch's location and PIN
    checks. Each decision is audited; audit failures never change it.
    """

    def __init__(
        self,
        *,
        audit: ActivityLogger | None = None,
        allow_self_registration: bool = ALLOW_SELF_REGISTRATION,
    ):
        self.audit = audit or ActivityLogger()
        self.allow_self_registration = allow_self_registration

    def _resolve_device(
        self,
        device_uuid: str | None,
        branch_hint: int | None,
    ) -> tuple[db.BranchRow | None, db.DeviceRow | None, db.BranchRow | None]:
        branches = db.get_branches(active_only=True)
        hinted = next((b for b in branches if b["id"] == branch_hint), None) if branch_hint is not None else None

        ordered = branches
        if hinted is not None:
            ordered = [hinted, *[b for b in branches if b["id"] != hinted["id"]]]

        if device_uuid:
            for branch in ordered:
                device = db.find_active_device(branch["id"], device_uuid)
                if device:
                    return branch, device, hinted

        if hinted is not None and not hinted["require_device_verification"]:
            return hinted, None, hinted

        return None, None, hinted

    def _check_location(
        self,
        branch: db.BranchRow,
        device: db.DeviceRow | None,
        device_uuid: str | None,
        location: Coordinates | None,
        now: datetime,
    ) -> tuple[Denied | None, float | None]:
        if branch["latitude"] is None or branch["longitude"] is None:
            self.audit.log(
                "location_verified",
                "warning",
                branch=branch,
                device=device,
                device_uuid=device_uuid,
                reason="Branch has no coordinates; location check skipped",
                location=location,
                at=now,
            )
            return None, None

        if location is None:
            self.audit.log(
                "location_failed",
                "failed",
                branch=branch,
                device=device,
                device_uuid=device_uuid,
                reason="location unavailable",
                at=now,
            )
            return Denied("location unavailable", branch=branch), None

        dist = haversine(location.latitude, location.longitude, branch["latitude"], branch["longitude"])
        if dist > branch["geofence_radius_m"]:
            self.audit.log(
                "location_failed",
                "failed",
                branch=branch,
                device=device,
                device_uuid=device_uuid,
                reason=f"Outside geofence ({round(dist)}m > {round(branch['geofence_radius_m'])}m)",
                location=location,
                distance_m=dist,
                at=now,
            )
            return Denied("out of range", branch=branch, distance_m=dist), dist

        self.audit.log(
            "location_verified",
            "success",
            branch=branch,
            device=device,
            device_uuid=device_uuid,
            location=location,
            distance_m=dist,
            at=now,
        )
        return None, dist

    def authorize(
        self,
        device_uuid: str | None,
        captured_location: Coordinates | None = None,
        *,
        branch_hint: int | None = None,
        pin_token: str | None = None,
        now: datetime | None = None,
    ) -> GateOutcome:
        current = to_local(now) if now else local_now()
        branch, device, hinted = self._resolve_device(device_uuid, branch_hint)

        if branch is None:
            if not self.allow_self_registration:
                self.audit.log(
                    "device_blocked",
                    "blocked",
                    branch=hinted,
                    device_uuid=device_uuid,
                    reason="unauthorized device",
                    at=current,
                )
                return Denied("unauthorized device", branch=hinted)

            self.audit.log(
                "device_blocked",
                "blocked",
                branch=hinted,
                device_uuid=device_uuid,
                reason="Device not registered; registration required",
                at=current,
            )
            return NeedsRegistration(hinted)

        if device is not None:
            self.audit.log("device_verified", "success", branch=branch, device=device, at=current)
        else:
            self.audit.log(
                "device_verified",
                "warning",
                branch=branch,
                device_uuid=device_uuid,
                reason="Device verification disabled for branch",
                at=current,
            )

        distance_m = None
        if branch["require_geolocation"]:
            denied, distance_m = self._check_location(branch, device, device_uuid, captured_location, current)
            if denied is not None:
                return denied

        if branch["require_pin"] and not PinVerifier.token_valid(pin_token, branch["id"], current):
            self.audit.log(
                "access_denied",
                "warning",
                branch=branch,
                device=device,
                device_uuid=device_uuid,
                reason="PIN verification required",
                at=current,
            )
            return NeedsPin(branch, device)

        if device is not None:
            try:
                db.touch_device_last_used(device["id"], current)
            except sqlite3.Error as exc:
                logger.warning("Could not update last_used_at for device %s: %s", device["id"], exc)

        return Authorized(branch, device, distance_m)
