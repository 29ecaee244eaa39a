import base64
import math
from datetime import datetime
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo

from kiosk.config import TIMEZONE

EARTH_RADIUS_M = 6371000


# --- Geography ---
def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Great-circle distance in meters between two points given in decimal degrees.
    """
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


# --- Time ---
@lru_cache(maxsize=8)
def org_timezone(name: str = TIMEZONE) -> ZoneInfo:
    return ZoneInfo(name)


def local_now() -> datetime:
    """Current instant in the organization's civil time."""
    return datetime.now(org_timezone())


def to_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=org_timezone())
    return value.astimezone(org_timezone())


def iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="seconds")


def parse_instant(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return to_local(datetime.fromisoformat(str(value)))
    except ValueError:
        return None


# --- Devices ---
def derive_fingerprint(user_agent: str | None, browser_info: dict | None) -> str | None:
    """
    Best-effort device descriptor for audit metadata. Never a trust anchor.
    """
    info = browser_info or {}
    if info.get("fingerprint"):
        return str(info["fingerprint"])
    raw = "".join(
        str(part or "")
        for part in (
            user_agent,
            info.get("language"),
            info.get("screen_resolution"),
            info.get("timezone"),
            info.get("platform"),
        )
    )
    if not raw:
        return None
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")[:64]
