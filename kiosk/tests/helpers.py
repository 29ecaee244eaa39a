from datetime import datetime

import numpy as np

from kiosk.utils import org_timezone
from kiosk_db import db

DAY = "2026-03-02"
EMBEDDING_DIM = 128


def at(hh: int, mm: int = 0, ss: int = 0, date: str = DAY) -> datetime:
    d = datetime.fromisoformat(date)
    return datetime(d.year, d.month, d.day, hh, mm, ss, tzinfo=org_timezone())


def unit(index: int) -> np.ndarray:
    vector = np.zeros(EMBEDDING_DIM, dtype=np.float32)
    vector[index] = 1.0
    return vector


def near(index: int, offset: float) -> np.ndarray:
    """A vector at euclidean distance ``offset`` from ``unit(index)``."""
    vector = unit(index)
    vector[(index + 1) % EMBEDDING_DIM] = offset
    return vector


class VectorExtractor:
    """Frames are already embeddings; None or a string means no usable face."""

    def __init__(self):
        self.calls = 0

    def extract(self, frame):
        self.calls += 1
        if frame is None or isinstance(frame, str):
            return None, frame or "no_face"
        return np.asarray(frame, dtype=np.float32), None


class RecordingNotifier:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[list[str], str, dict]] = []

    def deliver(self, recipients, code, context):
        if self.fail:
            raise ConnectionError("smtp unavailable")
        self.sent.append((list(recipients), code, context))
        return True


def make_branch(code: str = "B1", **overrides) -> db.BranchRow:
    options = {
        "require_device_verification": True,
        "require_geolocation": False,
        "require_pin": False,
    }
    options.update(overrides)
    branch_id = db.create_branch(f"Branch {code}", code, **options)
    return db.get_branch(branch_id)


def make_device(branch_id: int, device_uuid: str = "X", name: str = "Front desk") -> db.DeviceRow:
    device_id = db.register_device(
        branch_id=branch_id,
        device_uuid=device_uuid,
        device_name=name,
        registered_at=at(6, 0),
        registered_by="admin",
    )
    return db.get_device(device_id)


def make_staff(index: int, name: str = "Ana Cruz", employee_id: str | None = None) -> int:
    staff_id = db.add_staff(name, employee_id or f"EMP-{index:03d}", "Cashier")
    db.add_face_embedding(staff_id, unit(index))
    return staff_id


def activity(action_type: str | None = None) -> list[dict]:
    rows, _total = db.get_activity_logs(action_type=action_type, limit=500)
    return rows
