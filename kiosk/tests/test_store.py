import sqlite3

import pytest

import kiosk.config as config
from kiosk.tests.helpers import at, make_branch, make_device, make_staff, unit
from kiosk_db import db


def test_failed_insert_does_not_lock_later_writes(store):
    make_branch("B1")

    with pytest.raises(sqlite3.IntegrityError):
        make_branch("B1")

    staff_id = db.add_staff("Ana Cruz", "EMP-001", "Cashier")
    with pytest.raises(sqlite3.IntegrityError):
        db.add_staff("Ben Reyes", "EMP-001", "Guard")

    log_id = db.insert_activity_log(action_type="time_in", status="success", created_at=at(8, 0), staff_id=staff_id)
    assert log_id > 0
    assert db.set_attendance_field(staff_id=staff_id, date="2026-03-02", field="morning_in", value=at(8, 0))


def test_failed_device_insert_rolls_back(store):
    b1 = make_branch("B1")
    make_device(b1["id"], "X")

    with pytest.raises(sqlite3.IntegrityError):
        make_device(b1["id"], "X")

    assert make_device(b1["id"], "Y")["device_uuid"] == "Y"
    assert len(db.list_devices(b1["id"])) == 2


def test_embedding_for_unknown_staff_is_rejected(store):
    with pytest.raises(sqlite3.IntegrityError):
        db.add_face_embedding(404, [0.0] * 128)

    assert make_staff(0) > 0


def _fingerprinted(branch_id: int, device_uuid: str, fingerprint: str) -> int:
    return db.register_device(
        branch_id=branch_id,
        device_uuid=device_uuid,
        device_name="Lobby",
        registered_at=at(6, 0),
        device_fingerprint=fingerprint,
    )


def test_fingerprint_lookup_finds_active_device_only(store):
    b1 = make_branch("B1")
    b2 = make_branch("B2")
    device_id = _fingerprinted(b1["id"], "X", "fp-1")

    assert db.find_device_by_fingerprint(b1["id"], "fp-1")["id"] == device_id
    assert db.find_device_by_fingerprint(b2["id"], "fp-1") is None

    db.deactivate_device(device_id)
    assert db.find_device_by_fingerprint(b1["id"], "fp-1") is None


def test_duplicate_fingerprint_is_rejected_per_branch(store):
    b1 = make_branch("B1")
    b2 = make_branch("B2")
    _fingerprinted(b1["id"], "X", "fp-1")

    with pytest.raises(sqlite3.IntegrityError):
        _fingerprinted(b1["id"], "Y", "fp-1")

    assert _fingerprinted(b2["id"], "Y", "fp-1") > 0


def test_update_device_renames_moves_and_reactivates(store):
    b1 = make_branch("B1")
    b2 = make_branch("B2")
    device = make_device(b1["id"], "X")

    renamed = db.update_device(device["id"], device_name="  Back door ", device_type="tablet")
    assert (renamed["device_name"], renamed["device_type"]) == ("Back door", "tablet")

    moved = db.update_device(device["id"], branch_id=b2["id"])
    assert moved["branch_id"] == b2["id"]
    assert db.find_active_device(b1["id"], "X") is None

    db.deactivate_device(device["id"])
    assert db.update_device(device["id"], is_active=True)["is_active"] is True
    assert db.update_device(999, device_name="Ghost") is None


def test_reactivation_respects_one_active_device_per_identifier(store):
    b1 = make_branch("B1")
    old = make_device(b1["id"], "X")
    db.deactivate_device(old["id"])
    make_device(b1["id"], "X")

    with pytest.raises(sqlite3.IntegrityError):
        db.update_device(old["id"], is_active=True)

    assert db.get_device(old["id"])["is_active"] is False


def test_first_embedding_is_primary(store):
    staff_id = make_staff(0)
    second = db.add_face_embedding(staff_id, unit(1))

    embeddings = db.list_face_embeddings(staff_id)
    assert [e["is_primary"] for e in embeddings] == [True, False]
    assert embeddings[1]["id"] == second

    db.set_primary_embedding(second)
    primaries = [e["id"] for e in db.list_face_embeddings(staff_id) if e["is_primary"]]
    assert primaries == [second]


def test_deactivated_embedding_leaves_gallery(store):
    staff_id = make_staff(0)
    first = db.list_face_embeddings(staff_id)[0]["id"]
    second = db.add_face_embedding(staff_id, unit(1))

    assert db.deactivate_face_embedding(first) is True
    assert db.deactivate_face_embedding(first) is False

    gallery = db.load_embedding_gallery()
    assert len(gallery) == 1
    assert gallery[0][1][1] == 1.0
    assert db.get_face_embedding(second)["is_primary"] is True
    assert db.set_primary_embedding(first) is None


def test_deactivated_staff_leaves_gallery(store):
    kept = make_staff(0)
    retired = make_staff(1, employee_id="EMP-900")

    assert db.deactivate_staff(retired) is True
    assert db.deactivate_staff(retired) is False
    assert [staff_id for staff_id, _ in db.load_embedding_gallery()] == [kept]


def test_admin_login_time_is_recorded(store):
    admin = db.verify_admin_credentials(config.ADMIN_USERNAME, config.ADMIN_PASSWORD)
    assert admin["last_login_at"] is None

    db.record_admin_login(admin["id"], at(9, 0))

    assert db.get_admin_user(config.ADMIN_USERNAME)["last_login_at"] == at(9, 0).isoformat(timespec="seconds")


def test_older_database_gains_new_columns(store):
    conn = sqlite3.connect(str(store))
    conn.executescript(
        """
        DROP TABLE face_embeddings;
        CREATE TABLE face_embeddings (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            staff_id INTEGER NOT NULL,
            vector BLOB NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );
        """
    )
    conn.close()

    db.create_tables()

    staff_id = make_staff(0)
    assert db.list_face_embeddings(staff_id)[0]["is_active"] is True
