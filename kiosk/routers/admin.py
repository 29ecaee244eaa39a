import sqlite3

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from kiosk.config import DEFAULT_PIN_CACHE_MINUTES
from kiosk.errors import BranchNotFound, StoreConflict
from kiosk.security import require_session
from kiosk.services.hub import terminal_hub
from kiosk.utils import local_now
from kiosk_db.db import (
    create_branch,
    deactivate_device,
    find_device_by_fingerprint,
    get_activity_logs,
    get_branch,
    get_branches,
    get_device,
    list_devices,
    list_otp_requests,
    register_device,
    update_device,
)

router = APIRouter(prefix="/admin", dependencies=[Depends(require_session)])

ALLOWED_ACTION_TYPES: set[str] = {
    "device_verified",
    "device_blocked",
    "location_verified",
    "location_failed",
    "pin_verified",
    "pin_failed",
    "time_in",
    "time_out",
    "access_denied",
}
ALLOWED_STATUSES: set[str] = {"success", "failed", "blocked", "warning"}


class BranchCreate(BaseModel):
    name: str
    code: str
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    pin: str | None = None
    require_device_verification: bool = True
    require_geolocation: bool = False
    geofence_radius_m: float = Field(default=100.0, gt=0)
    require_pin: bool = False
    pin_cache_minutes: int = Field(default=DEFAULT_PIN_CACHE_MINUTES, ge=1)
    log_activity: bool = True


def _branch_public(branch: dict) -> dict:
    out = {k: v for k, v in branch.items() if k != "pin"}
    out["has_pin"] = bool(branch.get("pin"))
    return out


class DeviceCreate(BaseModel):
    branch_id: int
    device_uuid: str
    device_name: str
    device_type: str | None = None
    device_fingerprint: str | None = None


class DeviceUpdate(BaseModel):
    device_name: str | None = None
    device_type: str | None = None
    branch_id: int | None = None
    is_active: bool | None = None


# -----------------------------
# Branches
# -----------------------------
@router.get("/branches")
def branches(include_inactive: bool = False):
    return [_branch_public(b) for b in get_branches(active_only=not include_inactive)]


@router.post("/branches")
def add_branch(payload: BranchCreate):
    name = payload.name.strip()
    code = payload.code.strip()
    if not name or not code:
        raise HTTPException(status_code=400, detail="Branch name and code are required.")
    if payload.require_pin and not (payload.pin or "").strip():
        raise HTTPException(status_code=400, detail="A PIN is required when the branch requires PIN entry.")

    try:
        branch_id = create_branch(
            name,
            code,
            latitude=payload.latitude,
            longitude=payload.longitude,
            pin=(payload.pin or "").strip() or None,
            require_device_verification=payload.require_device_verification,
            require_geolocation=payload.require_geolocation,
            geofence_radius_m=payload.geofence_radius_m,
            require_pin=payload.require_pin,
            pin_cache_minutes=payload.pin_cache_minutes,
            log_activity=payload.log_activity,
        )
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Branch code already exists.")
    return _branch_public(get_branch(branch_id))


# -----------------------------
# Devices
# -----------------------------
@router.get("/devices")
def devices(branch_id: int | None = None):
    return list_devices(branch_id)


@router.post("/devices")
def add_device(payload: DeviceCreate, session: dict = Depends(require_session)):
    device_uuid = payload.device_uuid.strip()
    device_name = payload.device_name.strip()
    if not device_uuid or not device_name:
        raise HTTPException(status_code=400, detail="Device identifier and name are required.")

    branch = get_branch(payload.branch_id)
    if not branch or not branch["is_active"]:
        raise BranchNotFound()

    fingerprint = (payload.device_fingerprint or "").strip() or None
    if fingerprint and find_device_by_fingerprint(payload.branch_id, fingerprint):
        raise StoreConflict("A device with this fingerprint is already registered for the branch.")

    try:
        device_id = register_device(
            branch_id=payload.branch_id,
            device_uuid=device_uuid,
            device_name=device_name,
            device_type=payload.device_type,
            device_fingerprint=fingerprint,
            registered_by=session.get("sub"),
            registered_at=local_now(),
        )
    except sqlite3.IntegrityError:
        raise StoreConflict("This device is already registered for the branch.")
    return get_device(device_id)


@router.post("/devices/{device_id}/deactivate")
def revoke_device(device_id: int):
    device = get_device(device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found.")
    changed = deactivate_device(device_id)
    return {"ok": True, "changed": changed, "device": get_device(device_id)}


@router.patch("/devices/{device_id}")
def edit_device(device_id: int, payload: DeviceUpdate):
    if not get_device(device_id):
        raise HTTPException(status_code=404, detail="Device not found.")
    if payload.device_name is not None and not payload.device_name.strip():
        raise HTTPException(status_code=400, detail="Device name cannot be empty.")
    if payload.branch_id is not None:
        branch = get_branch(payload.branch_id)
        if not branch or not branch["is_active"]:
            raise BranchNotFound()

    try:
        return update_device(
            device_id,
            device_name=payload.device_name,
            device_type=payload.device_type,
            branch_id=payload.branch_id,
            is_active=payload.is_active,
        )
    except sqlite3.IntegrityError:
        raise StoreConflict("The branch already has an active device with this identifier.")


# -----------------------------
# Audit + OTP logs
# -----------------------------
@router.get("/activity-logs")
def activity_logs(
    branch_id: int | None = None,
    device_id: int | None = None,
    staff_id: int | None = None,
    action_type: str | None = None,
    status: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    clean_action = action_type.strip() if action_type else None
    if clean_action and clean_action not in ALLOWED_ACTION_TYPES:
        raise HTTPException(status_code=400, detail="Invalid action_type filter.")
    clean_status = status.strip() if status else None
    if clean_status and clean_status not in ALLOWED_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter.")

    rows, total = get_activity_logs(
        branch_id=branch_id,
        device_id=device_id,
        staff_id=staff_id,
        action_type=clean_action,
        status=clean_status,
        limit=limit,
        offset=offset,
    )
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.get("/otp-requests")
def otp_requests(
    branch_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    rows, total = list_otp_requests(branch_id, limit=limit, offset=offset)
    return {"rows": rows, "total": total, "limit": limit, "offset": offset}


@router.post("/maintenance")
def run_maintenance():
    expired = terminal_hub.otp_flow.expire_stale()
    return {
        "ok": True,
        "message": "Maintenance completed.",
        "expired_otp_requests": expired,
    }
