import hashlib
import hmac
import json
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Literal, TypedDict

import numpy as np

from kiosk.config import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DEFAULT_PIN_CACHE_MINUTES,
)
from kiosk.utils import iso, parse_instant


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
SCHEMA_FILE = Path(__file__).resolve().parent / "migrations" / "001_kiosk.sql"

AttendanceField = Literal["morning_in", "morning_out", "afternoon_in", "afternoon_out"]
ATTENDANCE_FIELDS: tuple[AttendanceField, ...] = ("morning_in", "morning_out", "afternoon_in", "afternoon_out")

OTPStatus = Literal["pending", "verified", "expired", "failed"]
ActivityAction = Literal[
    "device_verified",
    "device_blocked",
    "location_verified",
    "location_failed",
    "pin_verified",
    "pin_failed",
    "time_in",
    "time_out",
    "access_denied",
]
ActivityStatus = Literal["success", "failed", "blocked", "warning"]


class BranchRow(TypedDict):
    id: int
    name: str
    code: str
    is_active: bool
    latitude: float | None
    longitude: float | None
    pin: str | None
    require_device_verification: bool
    require_geolocation: bool
    geofence_radius_m: float
    require_pin: bool
    pin_cache_minutes: int
    log_activity: bool


class DeviceRow(TypedDict):
    id: int
    branch_id: int
    device_uuid: str
    device_fingerprint: str | None
    device_name: str
    device_type: str | None
    is_active: bool
    last_used_at: str | None
    registered_by: str | None
    registered_at: str


class OTPRequestRow(TypedDict):
    id: int
    branch_id: int
    otp_code: str
    device_uuid: str | None
    device_fingerprint: str | None
    device_name: str | None
    device_type: str | None
    latitude: float | None
    longitude: float | None
    user_agent: str | None
    browser_info: dict | None
    status: OTPStatus
    created_at: str
    expires_at: str
    verified_at: str | None


class StaffRow(TypedDict):
    id: int
    full_name: str
    employee_id: str
    role: str | None
    is_active: bool


class AttendanceRecordRow(TypedDict):
    id: int
    staff_id: int
    date: str
    morning_in: str | None
    morning_out: str | None
    afternoon_in: str | None
    afternoon_out: str | None
    total_hours: float | None
    overtime_hours: float | None
    status: str | None
    late_minutes: int
    branch_id: int | None


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db() -> sqlite3.Connection:
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def _transaction() -> Iterator[sqlite3.Connection]:
    """Commit on success, roll back on error, always close."""
    conn = connect_db()
    try:
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash, email)
        VALUES (?, ?, ?)
        """,
        (username, _hash_password(password), ADMIN_EMAIL),
    )


def create_tables() -> None:
    with _transaction() as conn:
        conn.executescript(SCHEMA_FILE.read_text(encoding="utf-8"))
        _ensure_columns(conn)
        _ensure_default_admin(conn.cursor())


def _ensure_columns(conn: sqlite3.Connection) -> None:
    """Add columns introduced after a database was first created."""
    cur = conn.cursor()
    added: list[tuple[str, str, str]] = [
        ("admin_users", "last_login_at", "TEXT"),
        ("face_embeddings", "is_active", "INTEGER NOT NULL DEFAULT 1"),
        ("face_embeddings", "is_primary", "INTEGER NOT NULL DEFAULT 0"),
    ]
    for table, col_name, col_def in added:
        cur.execute(f"PRAGMA table_info({table})")
        cols = {str(row[1]) for row in cur.fetchall()}
        if col_name in cols:
            continue
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_def}")


# -----------------------------
# Admin users
# -----------------------------
def create_admin_user(username: str, password: str, email: str | None = None) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO admin_users (username, password_hash, email)
            VALUES (?, ?, ?)
            """,
            (clean_username, _hash_password(clean_password), (email or "").strip() or None),
        )
        admin_id = int(cur.lastrowid)
    return admin_id


def _admin_from_row(row: sqlite3.Row) -> dict:
    return {
        "id": int(row["id"]),
        "username": str(row["username"]),
        "email": row["email"],
        "last_login_at": row["last_login_at"],
    }


def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, email, last_login_at, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE AND is_active = 1
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None
    if not _verify_password(clean_password, row["password_hash"]):
        return None

    return _admin_from_row(row)


def get_admin_user(username: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, email, last_login_at
        FROM admin_users
        WHERE username = ? COLLATE NOCASE AND is_active = 1
        """,
        (username.strip(),),
    )
    row = cur.fetchone()
    conn.close()
    return _admin_from_row(row) if row else None


def record_admin_login(admin_id: int, at: datetime) -> None:
    with _transaction() as conn:
        conn.execute("UPDATE admin_users SET last_login_at = ? WHERE id = ?", (iso(at), admin_id))


def get_admin_emails() -> list[str]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT email
        FROM admin_users
        WHERE is_active = 1 AND email IS NOT NULL AND email <> ''
        ORDER BY id ASC
        """
    )
    rows = cur.fetchall()
    conn.close()
    return [str(r["email"]) for r in rows]


# -----------------------------
# Branches
# -----------------------------
def _branch_from_row(row: sqlite3.Row) -> BranchRow:
    return {
        "id": int(row["id"]),
        "name": str(row["name"]),
        "code": str(row["code"]),
        "is_active": bool(row["is_active"]),
        "latitude": float(row["latitude"]) if row["latitude"] is not None else None,
        "longitude": float(row["longitude"]) if row["longitude"] is not None else None,
        "pin": str(row["pin"]) if row["pin"] is not None else None,
        "require_device_verification": bool(row["require_device_verification"]),
        "require_geolocation": bool(row["require_geolocation"]),
        "geofence_radius_m": float(row["geofence_radius_m"]),
        "require_pin": bool(row["require_pin"]),
        "pin_cache_minutes": int(row["pin_cache_minutes"]),
        "log_activity": bool(row["log_activity"]),
    }


def create_branch(
    name: str,
    code: str,
    *,
    latitude: float | None = None,
    longitude: float | None = None,
    pin: str | None = None,
    require_device_verification: bool = True,
    require_geolocation: bool = False,
    geofence_radius_m: float = 100.0,
    require_pin: bool = False,
    pin_cache_minutes: int = DEFAULT_PIN_CACHE_MINUTES,
    log_activity: bool = True,
    is_active: bool = True,
) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO branches (
                name, code, is_active, latitude, longitude, pin,
                require_device_verification, require_geolocation, geofence_radius_m,
                require_pin, pin_cache_minutes, log_activity
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                name.strip(),
                code.strip(),
                1 if is_active else 0,
                latitude,
                longitude,
                pin,
                1 if require_device_verification else 0,
                1 if require_geolocation else 0,
                float(geofence_radius_m),
                1 if require_pin else 0,
                int(pin_cache_minutes),
                1 if log_activity else 0,
            ),
        )
        branch_id = int(cur.lastrowid)
    return branch_id


def get_branch(branch_id: int) -> BranchRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM branches WHERE id = ?", (branch_id,))
    row = cur.fetchone()
    conn.close()
    return _branch_from_row(row) if row else None


def get_branches(*, active_only: bool = True) -> list[BranchRow]:
    conn = connect_db()
    cur = conn.cursor()
    if active_only:
        cur.execute("SELECT * FROM branches WHERE is_active = 1 ORDER BY id ASC")
    else:
        cur.execute("SELECT * FROM branches ORDER BY id ASC")
    rows = cur.fetchall()
    conn.close()
    return [_branch_from_row(r) for r in rows]


# -----------------------------
# Kiosk devices
# -----------------------------
def _device_from_row(row: sqlite3.Row) -> DeviceRow:
    return {
        "id": int(row["id"]),
        "branch_id": int(row["branch_id"]),
        "device_uuid": str(row["device_uuid"]),
        "device_fingerprint": row["device_fingerprint"],
        "device_name": str(row["device_name"]),
        "device_type": row["device_type"],
        "is_active": bool(row["is_active"]),
        "last_used_at": row["last_used_at"],
        "registered_by": row["registered_by"],
        "registered_at": str(row["registered_at"]),
    }


def register_device(
    *,
    branch_id: int,
    device_uuid: str,
    device_name: str,
    registered_at: datetime,
    device_fingerprint: str | None = None,
    device_type: str | None = None,
    registered_by: str | None = None,
) -> int:
    """
    Insert an active device. Raises ``sqlite3.IntegrityError`` when the branch
    already has an active device with the same identifier or fingerprint.
    """
    with _transaction() as conn:
        cur = conn.cursor()
        if device_fingerprint:
            existing = _active_by_fingerprint(cur, branch_id, device_fingerprint)
            if existing is not None:
                raise sqlite3.IntegrityError(
                    f"Device already registered for this branch (device {existing['id']})"
                )
        cur.execute(
            """
            INSERT INTO kiosk_devices (
                branch_id, device_uuid, device_fingerprint, device_name,
                device_type, is_active, registered_by, registered_at
            )
            VALUES (?, ?, ?, ?, ?, 1, ?, ?)
            """,
            (
                branch_id,
                device_uuid.strip(),
                device_fingerprint,
                device_name.strip(),
                device_type,
                registered_by,
                iso(registered_at),
            ),
        )
        device_id = int(cur.lastrowid)
    return device_id


def _active_by_fingerprint(cur: sqlite3.Cursor, branch_id: int, fingerprint: str) -> sqlite3.Row | None:
    cur.execute(
        """
        SELECT *
        FROM kiosk_devices
        WHERE branch_id = ? AND device_fingerprint = ? AND is_active = 1
        ORDER BY id DESC
        LIMIT 1
        """,
        (branch_id, fingerprint),
    )
    return cur.fetchone()


def find_device_by_fingerprint(branch_id: int, fingerprint: str) -> DeviceRow | None:
    """Legacy lookup for kiosks registered before stable identifiers existed."""
    conn = connect_db()
    row = _active_by_fingerprint(conn.cursor(), branch_id, fingerprint)
    conn.close()
    return _device_from_row(row) if row else None


def update_device(
    device_id: int,
    *,
    device_name: str | None = None,
    device_type: str | None = None,
    branch_id: int | None = None,
    is_active: bool | None = None,
) -> DeviceRow | None:
    """
    Rename, move or (re)activate a device. Fields left as None are unchanged.
    Raises ``sqlite3.IntegrityError`` when the result would give the branch a
    second active device with the same identifier or fingerprint.
    """
    fields: dict[str, Any] = {}
    if device_name is not None:
        clean = device_name.strip()
        if not clean:
            raise ValueError("Device name cannot be empty.")
        fields["device_name"] = clean
    if device_type is not None:
        fields["device_type"] = device_type.strip() or None
    if branch_id is not None:
        fields["branch_id"] = branch_id
    if is_active is not None:
        fields["is_active"] = 1 if is_active else 0

    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("SELECT * FROM kiosk_devices WHERE id = ?", (device_id,))
        current = cur.fetchone()
        if current is None:
            return None

        target_branch = fields.get("branch_id", current["branch_id"])
        target_active = fields.get("is_active", current["is_active"])
        fingerprint = current["device_fingerprint"]
        if target_active and fingerprint:
            clash = _active_by_fingerprint(cur, target_branch, fingerprint)
            if clash is not None and clash["id"] != device_id:
                raise sqlite3.IntegrityError(
                    f"Device already registered for this branch (device {clash['id']})"
                )

        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            cur.execute(
                f"UPDATE kiosk_devices SET {assignments} WHERE id = ?",
                (*fields.values(), device_id),
            )
        cur.execute("SELECT * FROM kiosk_devices WHERE id = ?", (device_id,))
        row = cur.fetchone()
    return _device_from_row(row) if row else None


def get_device(device_id: int) -> DeviceRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM kiosk_devices WHERE id = ?", (device_id,))
    row = cur.fetchone()
    conn.close()
    return _device_from_row(row) if row else None


def find_active_device(branch_id: int, device_uuid: str) -> DeviceRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT *
        FROM kiosk_devices
        WHERE branch_id = ? AND device_uuid = ? AND is_active = 1
        LIMIT 1
        """,
        (branch_id, device_uuid),
    )
    row = cur.fetchone()
    conn.close()
    return _device_from_row(row) if row else None


def list_devices(branch_id: int | None = None) -> list[DeviceRow]:
    conn = connect_db()
    cur = conn.cursor()
    if branch_id is None:
        cur.execute("SELECT * FROM kiosk_devices ORDER BY registered_at DESC, id DESC")
    else:
        cur.execute(
            "SELECT * FROM kiosk_devices WHERE branch_id = ? ORDER BY registered_at DESC, id DESC",
            (branch_id,),
        )
    rows = cur.fetchall()
    conn.close()
    return [_device_from_row(r) for r in rows]


def deactivate_device(device_id: int) -> bool:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE kiosk_devices SET is_active = 0 WHERE id = ? AND is_active = 1", (device_id,))
        changed = cur.rowcount > 0
    return changed


def touch_device_last_used(device_id: int, at: datetime) -> None:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE kiosk_devices SET last_used_at = ? WHERE id = ?", (iso(at), device_id))


# -----------------------------
# OTP requests
# -----------------------------
def _otp_from_row(row: sqlite3.Row) -> OTPRequestRow:
    browser_info = None
    if row["browser_info"]:
        try:
            browser_info = json.loads(row["browser_info"])
        except ValueError:
            browser_info = None
    return {
        "id": int(row["id"]),
        "branch_id": int(row["branch_id"]),
        "otp_code": str(row["otp_code"]),
        "device_uuid": row["device_uuid"],
        "device_fingerprint": row["device_fingerprint"],
        "device_name": row["device_name"],
        "device_type": row["device_type"],
        "latitude": row["latitude"],
        "longitude": row["longitude"],
        "user_agent": row["user_agent"],
        "browser_info": browser_info,
        "status": row["status"],
        "created_at": str(row["created_at"]),
        "expires_at": str(row["expires_at"]),
        "verified_at": row["verified_at"],
    }


def insert_otp_request(
    *,
    branch_id: int,
    otp_code: str,
    created_at: datetime,
    expires_at: datetime,
    device_uuid: str | None = None,
    device_fingerprint: str | None = None,
    device_name: str | None = None,
    device_type: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    user_agent: str | None = None,
    browser_info: dict | None = None,
) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO otp_requests (
                branch_id, otp_code, device_uuid, device_fingerprint, device_name,
                device_type, latitude, longitude, user_agent, browser_info,
                status, created_at, expires_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)
            """,
            (
                branch_id,
                otp_code,
                device_uuid,
                device_fingerprint,
                device_name,
                device_type,
                latitude,
                longitude,
                user_agent,
                json.dumps(browser_info) if browser_info else None,
                iso(created_at),
                iso(expires_at),
            ),
        )
        otp_id = int(cur.lastrowid)
    return otp_id


def get_otp_request(otp_id: int) -> OTPRequestRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM otp_requests WHERE id = ?", (otp_id,))
    row = cur.fetchone()
    conn.close()
    return _otp_from_row(row) if row else None


def find_pending_otp(otp_code: str, branch_id: int, now: datetime) -> OTPRequestRow | None:
    """Newest pending, unexpired request for (code, branch)."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT *
        FROM otp_requests
        WHERE otp_code = ? AND branch_id = ? AND status = 'pending'
        ORDER BY id DESC
        """,
        (otp_code, branch_id),
    )
    rows = cur.fetchall()
    conn.close()

    for row in rows:
        expires_at = parse_instant(row["expires_at"])
        if expires_at is not None and now < expires_at:
            return _otp_from_row(row)
    return None


def mark_otp_verified(otp_id: int, verified_at: datetime) -> bool:
    """Conditional pending -> verified transition. False if already consumed."""
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE otp_requests
            SET status = 'verified',
                verified_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (iso(verified_at), otp_id),
        )
        changed = cur.rowcount == 1
    return changed


def expire_stale_otp_requests(now: datetime) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("SELECT id, expires_at FROM otp_requests WHERE status = 'pending'")
        stale = []
        for row in cur.fetchall():
            expires_at = parse_instant(row["expires_at"])
            if expires_at is None or expires_at <= now:
                stale.append(int(row["id"]))

        for otp_id in stale:
            cur.execute(
                "UPDATE otp_requests SET status = 'expired' WHERE id = ? AND status = 'pending'",
                (otp_id,),
            )
    return len(stale)


def list_otp_requests(
    branch_id: int | None = None,
    *,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[OTPRequestRow], int]:
    conn = connect_db()
    cur = conn.cursor()
    where = ""
    params: list[Any] = []
    if branch_id is not None:
        where = "WHERE branch_id = ?"
        params.append(branch_id)

    cur.execute(f"SELECT COUNT(1) FROM otp_requests {where}", params)
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"SELECT * FROM otp_requests {where} ORDER BY id DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    )
    rows = [_otp_from_row(r) for r in cur.fetchall()]
    conn.close()
    return rows, total


# -----------------------------
# Staff + embeddings
# -----------------------------
def _staff_from_row(row: sqlite3.Row) -> StaffRow:
    return {
        "id": int(row["id"]),
        "full_name": str(row["full_name"]),
        "employee_id": str(row["employee_id"]),
        "role": row["role"],
        "is_active": bool(row["is_active"]),
    }


def add_staff(full_name: str, employee_id: str, role: str | None = None) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO staff (full_name, employee_id, role)
            VALUES (?, ?, ?)
            """,
            (full_name, employee_id, role),
        )
        staff_id = int(cur.lastrowid)
    return staff_id


def get_staff(staff_id: int) -> StaffRow | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM staff WHERE id = ?", (staff_id,))
    row = cur.fetchone()
    conn.close()
    return _staff_from_row(row) if row else None


def get_all_staff() -> list[StaffRow]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT * FROM staff ORDER BY full_name")
    rows = cur.fetchall()
    conn.close()
    return [_staff_from_row(r) for r in rows]


def deactivate_staff(staff_id: int) -> bool:
    """Retire a staff member; their embeddings drop out of the gallery."""
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("UPDATE staff SET is_active = 0 WHERE id = ? AND is_active = 1", (staff_id,))
        changed = cur.rowcount > 0
    return changed


def _embedding_from_row(row: sqlite3.Row) -> dict:
    return {
        "id": int(row["id"]),
        "staff_id": int(row["staff_id"]),
        "is_active": bool(row["is_active"]),
        "is_primary": bool(row["is_primary"]),
        "created_at": str(row["created_at"]),
    }


def add_face_embedding(staff_id: int, vector: np.ndarray, *, primary: bool | None = None) -> int:
    """
    Store an embedding. The first active embedding of a staff member becomes
    primary unless ``primary`` says otherwise.
    """
    blob = np.asarray(vector, dtype=np.float32).tobytes()
    with _transaction() as conn:
        cur = conn.cursor()
        if primary is None:
            cur.execute(
                "SELECT 1 FROM face_embeddings WHERE staff_id = ? AND is_active = 1 AND is_primary = 1",
                (staff_id,),
            )
            primary = cur.fetchone() is None
        if primary:
            cur.execute("UPDATE face_embeddings SET is_primary = 0 WHERE staff_id = ?", (staff_id,))
        cur.execute(
            "INSERT INTO face_embeddings (staff_id, vector, is_primary) VALUES (?, ?, ?)",
            (staff_id, blob, 1 if primary else 0),
        )
        embedding_id = int(cur.lastrowid)
    return embedding_id


def list_face_embeddings(staff_id: int) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, staff_id, is_active, is_primary, created_at
        FROM face_embeddings
        WHERE staff_id = ?
        ORDER BY is_primary DESC, id ASC
        """,
        (staff_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_embedding_from_row(r) for r in rows]


def get_face_embedding(embedding_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        "SELECT id, staff_id, is_active, is_primary, created_at FROM face_embeddings WHERE id = ?",
        (embedding_id,),
    )
    row = cur.fetchone()
    conn.close()
    return _embedding_from_row(row) if row else None


def deactivate_face_embedding(embedding_id: int) -> bool:
    """
    Withdraw an embedding from matching. When it was the primary one, the
    oldest remaining active embedding of the same staff member takes over.
    """
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT staff_id, is_primary FROM face_embeddings WHERE id = ? AND is_active = 1",
            (embedding_id,),
        )
        row = cur.fetchone()
        if row is None:
            return False

        cur.execute(
            "UPDATE face_embeddings SET is_active = 0, is_primary = 0 WHERE id = ?",
            (embedding_id,),
        )
        if row["is_primary"]:
            cur.execute(
                """
                UPDATE face_embeddings
                SET is_primary = 1
                WHERE id = (
                    SELECT id FROM face_embeddings
                    WHERE staff_id = ? AND is_active = 1
                    ORDER BY id ASC
                    LIMIT 1
                )
                """,
                (row["staff_id"],),
            )
    return True


def set_primary_embedding(embedding_id: int) -> dict | None:
    """Make an active embedding its staff member's only primary one."""
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT staff_id FROM face_embeddings WHERE id = ? AND is_active = 1",
            (embedding_id,),
        )
        row = cur.fetchone()
        if row is None:
            return None
        cur.execute(
            "UPDATE face_embeddings SET is_primary = CASE WHEN id = ? THEN 1 ELSE 0 END WHERE staff_id = ?",
            (embedding_id, row["staff_id"]),
        )
    return get_face_embedding(embedding_id)


def load_embedding_gallery() -> list[tuple[int, np.ndarray]]:
    """Every active embedding of active staff as (staff_id, vector)."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT fe.staff_id, fe.vector
        FROM face_embeddings fe
        JOIN staff s ON s.id = fe.staff_id
        WHERE s.is_active = 1 AND fe.is_active = 1
        ORDER BY fe.id ASC
        """
    )
    rows = cur.fetchall()
    conn.close()
    return [(int(r["staff_id"]), np.frombuffer(r["vector"], dtype=np.float32)) for r in rows]


# -----------------------------
# Attendance records
# -----------------------------
def _record_from_row(row: sqlite3.Row) -> AttendanceRecordRow:
    return {
        "id": int(row["id"]),
        "staff_id": int(row["staff_id"]),
        "date": str(row["date"]),
        "morning_in": row["morning_in"],
        "morning_out": row["morning_out"],
        "afternoon_in": row["afternoon_in"],
        "afternoon_out": row["afternoon_out"],
        "total_hours": float(row["total_hours"]) if row["total_hours"] is not None else None,
        "overtime_hours": float(row["overtime_hours"]) if row["overtime_hours"] is not None else None,
        "status": row["status"],
        "late_minutes": int(row["late_minutes"] or 0),
        "branch_id": int(row["branch_id"]) if row["branch_id"] is not None else None,
    }


def get_attendance_record(
    staff_id: int,
    date: str,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRecordRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            "SELECT * FROM attendance_records WHERE staff_id = ? AND date = ?",
            (staff_id, date),
        )
        row = cur.fetchone()
        return _record_from_row(row) if row else None
    finally:
        if owns_conn:
            active_conn.close()


def set_attendance_field(
    *,
    staff_id: int,
    date: str,
    field: AttendanceField,
    value: datetime,
    extra: dict[str, Any] | None = None,
    branch_id: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """
    Compare-and-set one transition field.

    The row for (staff_id, date) is created if missing. The update only
    applies while ``field`` is NULL and every earlier field is set; returns
    False when another writer got there first.
    """
    if field not in ATTENDANCE_FIELDS:
        raise ValueError(f"Unexpected attendance field: {field}")

    allowed_extra = {"total_hours", "overtime_hours", "status", "late_minutes"}
    extra = dict(extra or {})
    unknown = set(extra) - allowed_extra
    if unknown:
        raise ValueError(f"Unexpected attendance columns: {sorted(unknown)}")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    stamp = iso(value)
    try:
        cur.execute(
            """
            INSERT OR IGNORE INTO attendance_records (staff_id, date, branch_id, updated_at)
            VALUES (?, ?, ?, ?)
            """,
            (staff_id, date, branch_id, stamp),
        )

        prior = ATTENDANCE_FIELDS[: ATTENDANCE_FIELDS.index(field)]
        assignments = [f"{field} = ?", "updated_at = ?"]
        params: list[Any] = [stamp, stamp]
        for column, column_value in extra.items():
            assignments.append(f"{column} = ?")
            params.append(column_value)

        conditions = ["staff_id = ?", "date = ?", f"{field} IS NULL"]
        conditions.extend(f"{p} IS NOT NULL" for p in prior)
        params.extend([staff_id, date])

        cur.execute(
            f"""
            UPDATE attendance_records
            SET {", ".join(assignments)}
            WHERE {" AND ".join(conditions)}
            """,
            params,
        )
        changed = cur.rowcount == 1
        active_conn.commit()
        return changed
    except Exception:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def get_attendance_records(date: str | None = None) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    where = ""
    params: list[Any] = []
    if date:
        where = "WHERE ar.date = ?"
        params.append(date)

    cur.execute(
        f"""
        SELECT
            ar.*,
            s.full_name,
            s.employee_id
        FROM attendance_records ar
        JOIN staff s ON s.id = ar.staff_id
        {where}
        ORDER BY ar.date DESC, COALESCE(ar.morning_in, ar.afternoon_in, '') ASC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            **_record_from_row(r),
            "full_name": str(r["full_name"]),
            "employee_id": str(r["employee_id"]),
        }
        for r in rows
    ]


def get_staff_attendance_month(staff_id: int, month: str) -> list[AttendanceRecordRow]:
    """
    month = "YYYY-MM"
    """
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT *
        FROM attendance_records
        WHERE staff_id = ? AND date LIKE ?
        ORDER BY date ASC
        """,
        (staff_id, f"{month}-%"),
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]


# -----------------------------
# Activity log (append-only)
# -----------------------------
def insert_activity_log(
    *,
    action_type: ActivityAction,
    status: ActivityStatus,
    created_at: datetime,
    branch_id: int | None = None,
    device_id: int | None = None,
    staff_id: int | None = None,
    device_uuid: str | None = None,
    status_reason: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    distance_from_branch_m: float | None = None,
    session_data: dict | None = None,
) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO activity_logs (
                branch_id, device_id, staff_id, device_uuid, action_type, status,
                status_reason, latitude, longitude, distance_from_branch_m,
                session_data, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                branch_id,
                device_id,
                staff_id,
                device_uuid,
                action_type,
                status,
                status_reason,
                latitude,
                longitude,
                distance_from_branch_m,
                json.dumps(session_data) if session_data else None,
                iso(created_at),
            ),
        )
        log_id = int(cur.lastrowid)
    return log_id


def _activity_filters(
    *,
    branch_id: int | None,
    device_id: int | None,
    staff_id: int | None,
    action_type: str | None,
    status: str | None,
) -> tuple[str, list[Any]]:
    where: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("branch_id", branch_id),
        ("device_id", device_id),
        ("staff_id", staff_id),
        ("action_type", action_type),
        ("status", status),
    ):
        if value is not None:
            where.append(f"{column} = ?")
            params.append(value)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    return clause, params


def get_activity_logs(
    *,
    branch_id: int | None = None,
    device_id: int | None = None,
    staff_id: int | None = None,
    action_type: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[dict], int]:
    clause, params = _activity_filters(
        branch_id=branch_id,
        device_id=device_id,
        staff_id=staff_id,
        action_type=action_type,
        status=status,
    )
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM activity_logs {clause}", params)
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"SELECT * FROM activity_logs {clause} ORDER BY id DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    )
    rows = cur.fetchall()
    conn.close()

    out: list[dict] = []
    for r in rows:
        entry = dict(r)
        entry["session_data"] = json.loads(r["session_data"]) if r["session_data"] else None
        out.append(entry)
    return out, total

