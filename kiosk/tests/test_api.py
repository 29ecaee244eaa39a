import time

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import kiosk.config as config
import kiosk.main as main
from kiosk.capture import FrameSource
from kiosk.services.hub import terminal_hub
from kiosk.services.registration import OTPRegistrationFlow
from kiosk.tests.helpers import EMBEDDING_DIM, at, make_branch, make_device, make_staff, unit
from kiosk_db import db

NOW = at(8, 0)


class PixelExtractor:
    """Test images carry their embedding in the first row of the blue channel."""

    def extract(self, frame):
        vector = frame[0, :, 0].astype(np.float32) / 255.0
        if not vector.any():
            return None, "no_face"
        return vector, None


def _frame(index: int | None = None) -> np.ndarray:
    img = np.zeros((1, EMBEDDING_DIM, 3), dtype=np.uint8)
    if index is not None:
        img[0, index] = 255
    return img


def _png(index: int | None = None) -> bytes:
    ok, buf = cv2.imencode(".png", _frame(index))
    assert ok
    return buf.tobytes()


@pytest.fixture()
def client(tmp_path, monkeypatch):
    test_db = tmp_path / "kiosk_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    monkeypatch.setattr(terminal_hub, "terminals", {})
    monkeypatch.setattr(terminal_hub, "last_seen", {})
    monkeypatch.setattr(terminal_hub, "extractor_factory", PixelExtractor)
    monkeypatch.setattr(terminal_hub, "source_factory", lambda: FrameSource([_frame(0)]))
    monkeypatch.setattr(
        terminal_hub,
        "terminal_options",
        {"clock": lambda: NOW, "success_display_seconds": 0, "error_display_seconds": 0},
    )
    monkeypatch.setattr(
        terminal_hub,
        "otp_flow",
        OTPRegistrationFlow(echo_code=True, code_factory=lambda: "482913", poll_seconds=0.01, max_polls=500),
    )

    db.create_tables()

    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def _device(uuid: str = "kiosk-1") -> dict:
    return {"X-Device-Id": uuid}


def _recognize(client, *images, action=None, uuid="kiosk-1"):
    files = [("files", (f"frame_{i}.png", data, "image/png")) for i, data in enumerate(images)]
    data = {"action": action} if action else {}
    return client.post("/attendance/recognize", files=files, data=data, headers=_device(uuid))


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_login_rejects_invalid_credentials(client):
    res = client.post("/auth/login", json={"username": config.ADMIN_USERNAME, "password": "wrong"})
    assert res.status_code == 401


def test_admin_routes_require_session(client):
    assert client.get("/admin/branches").status_code == 401
    assert client.get("/staff").status_code == 401


def test_terminal_requires_device_header(client):
    res = client.post("/terminal/authorize", json={})
    assert res.status_code == 400
    assert res.json()["detail"] == "X-Device-Id header is required."


def test_registered_device_is_authorized(client):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")

    res = client.post("/terminal/authorize", json={}, headers=_device())

    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "authorized"
    assert body["branch"]["code"] == "B1"
    assert body["state"] == "idle"


def test_out_of_range_is_reported_with_guidance(client):
    b1 = make_branch("B1", latitude=14.0, longitude=121.0, require_geolocation=True, geofence_radius_m=50)
    make_device(b1["id"], "kiosk-1")

    res = client.post("/terminal/authorize", json={"latitude": 14.01, "longitude": 121.0}, headers=_device())

    body = res.json()
    assert body["status"] == "denied"
    assert body["code"] == "location_out_of_range"
    assert body["guidance"]
    assert body["distance_m"] > 50


def test_otp_registration_over_http(client, auth_headers):
    b1 = make_branch("B1")

    res = client.post("/terminal/authorize", json={"branch_id": b1["id"]}, headers=_device())
    assert res.json()["status"] == "needs_registration"
    assert res.json()["state"] == "awaiting_registration"

    res = client.post("/terminal/otp/request", json={"branch_id": b1["id"], "device_name": "Lobby"}, headers=_device())
    assert res.status_code == 200
    assert res.json()["otp_code"] == "482913"

    res = client.post("/terminal/otp/verify", json={"code": "000000"}, headers=_device())
    assert res.status_code == 400
    assert res.json()["code"] == "otp_invalid_or_expired"

    res = client.post("/terminal/otp/verify", json={"code": "482913"}, headers=_device())
    assert res.status_code == 200
    assert res.json()["device"]["device_name"] == "Lobby"
    assert res.json()["registration"]["status"] == "waiting"

    res = client.post(
        "/admin/devices",
        json={"branch_id": b1["id"], "device_uuid": "kiosk-1", "device_name": "Lobby"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["registered_by"] == config.ADMIN_USERNAME

    status = None
    for _ in range(200):
        status = client.get("/terminal/registration", headers=_device()).json()
        if status["authorization"] == "authorized":
            break
        time.sleep(0.01)

    assert status["status"] == "registered"
    assert status["authorization"] == "authorized"


def test_registration_status_without_watcher(client):
    assert client.get("/terminal/registration", headers=_device()).status_code == 404


def test_read_only_terminal_routes_do_not_attach(client):
    for index in range(5):
        headers = _device(f"spoofed-{index}")
        state = client.get("/terminal/state", headers=headers)
        assert state.status_code == 200
        assert state.json()["attached"] is False
        assert client.get("/terminal/registration", headers=headers).status_code == 404
        assert client.post("/terminal/cancel", headers=headers).json() == {"cancelled": False, "state": "idle"}

    assert terminal_hub.terminals == {}

    client.post("/terminal/authorize", json={}, headers=_device())
    assert client.get("/terminal/state", headers=_device()).json()["attached"] is True


def test_clock_from_uploaded_frames(client):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    staff_id = make_staff(0)
    client.post("/terminal/authorize", json={}, headers=_device())

    res = _recognize(client, _png(), _png(0))

    assert res.status_code == 200
    body = res.json()
    assert body["staff"]["id"] == staff_id
    assert (body["session"], body["action"]) == ("morning", "time_in")
    assert body["record"]["morning_in"] == NOW.isoformat(timespec="seconds")

    again = _recognize(client, _png(0), action="time_in")
    assert again.status_code == 409
    assert again.json()["code"] == "session_already_recorded"


def test_clock_with_terminal_camera(client):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    make_staff(0)
    client.post("/terminal/authorize", json={}, headers=_device())

    res = client.post("/terminal/clock", json={"action": "time_in"}, headers=_device())

    assert res.status_code == 200
    assert res.json()["action"] == "time_in"


def test_clock_before_authorization_is_forbidden(client):
    make_staff(0)

    res = _recognize(client, _png(0))

    assert res.status_code == 403
    assert res.json()["code"] == "device_unauthorized"


def test_no_face_is_reported(client):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    make_staff(0)
    client.post("/terminal/authorize", json={}, headers=_device())

    res = _recognize(client, _png(), _png())

    assert res.status_code == 422
    body = res.json()
    assert body["code"] == "no_face_detected"
    assert body["detail"]
    assert body["guidance"]


def test_recognize_rejects_non_images(client):
    files = [("files", ("note.txt", b"hello", "text/plain"))]
    res = client.post("/attendance/recognize", files=files, headers=_device())
    assert res.status_code == 400


def test_pin_gate_over_http(client):
    b1 = make_branch("B1", require_pin=True, pin="4321")
    make_device(b1["id"], "kiosk-1")
    make_staff(0)

    assert client.post("/terminal/authorize", json={}, headers=_device()).json()["status"] == "needs_pin"
    assert _recognize(client, _png(0)).status_code == 401

    wrong = client.post("/terminal/pin", json={"pin": "0000"}, headers=_device())
    assert wrong.status_code == 400
    assert wrong.json()["code"] == "pin_invalid"

    ok = client.post("/terminal/pin", json={"pin": "4321"}, headers=_device())
    assert ok.status_code == 200
    assert ok.json()["status"] == "authorized"
    assert ok.json()["pin"]["branch_id"] == b1["id"]

    assert _recognize(client, _png(0)).status_code == 200


def test_admin_branch_and_device_lifecycle(client, auth_headers):
    res = client.post("/admin/branches", json={"name": "Main", "code": "MAIN", "require_pin": True}, headers=auth_headers)
    assert res.status_code == 400

    res = client.post("/admin/branches", json={"name": "Main", "code": "MAIN", "pin": "1234"}, headers=auth_headers)
    assert res.status_code == 200
    branch = res.json()
    assert "pin" not in branch
    assert branch["has_pin"] is True

    dup = client.post("/admin/branches", json={"name": "Other", "code": "MAIN"}, headers=auth_headers)
    assert dup.status_code == 409

    payload = {"branch_id": branch["id"], "device_uuid": "kiosk-9", "device_name": "Gate"}
    device = client.post("/admin/devices", json=payload, headers=auth_headers).json()
    conflict = client.post("/admin/devices", json=payload, headers=auth_headers)
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "store_conflict"

    res = client.post(f"/admin/devices/{device['id']}/deactivate", headers=auth_headers)
    assert res.json()["changed"] is True
    assert res.json()["device"]["is_active"] is False

    listed = client.get("/admin/devices", params={"branch_id": branch["id"]}, headers=auth_headers).json()
    assert [d["device_uuid"] for d in listed] == ["kiosk-9"]


def test_device_for_unknown_branch(client, auth_headers):
    res = client.post(
        "/admin/devices",
        json={"branch_id": 404, "device_uuid": "kiosk-9", "device_name": "Gate"},
        headers=auth_headers,
    )
    assert res.status_code == 404
    assert res.json()["code"] == "branch_not_found"


def test_admin_updates_and_reactivates_device(client, auth_headers):
    b1 = make_branch("B1")
    b2 = make_branch("B2")
    device = make_device(b1["id"], "kiosk-1")

    res = client.patch(f"/admin/devices/{device['id']}", json={"device_name": "Side gate"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["device_name"] == "Side gate"

    assert client.patch(f"/admin/devices/{device['id']}", json={"device_name": " "}, headers=auth_headers).status_code == 400
    assert client.patch(f"/admin/devices/{device['id']}", json={"branch_id": 404}, headers=auth_headers).status_code == 404
    assert client.patch("/admin/devices/999", json={"device_name": "Ghost"}, headers=auth_headers).status_code == 404

    moved = client.patch(f"/admin/devices/{device['id']}", json={"branch_id": b2["id"]}, headers=auth_headers).json()
    assert moved["branch_id"] == b2["id"]
    assert client.post("/terminal/authorize", json={}, headers=_device()).json()["branch"]["code"] == "B2"

    client.post(f"/admin/devices/{device['id']}/deactivate", headers=auth_headers)
    make_device(b2["id"], "kiosk-1", name="Replacement")
    conflict = client.patch(f"/admin/devices/{device['id']}", json={"is_active": True}, headers=auth_headers)
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "store_conflict"


def test_admin_rejects_known_fingerprint(client, auth_headers):
    b1 = make_branch("B1")
    payload = {"branch_id": b1["id"], "device_uuid": "kiosk-1", "device_name": "Lobby", "device_fingerprint": "fp-1"}
    assert client.post("/admin/devices", json=payload, headers=auth_headers).status_code == 200

    res = client.post("/admin/devices", json={**payload, "device_uuid": "kiosk-2"}, headers=auth_headers)

    assert res.status_code == 409
    assert "fingerprint" in res.json()["detail"]


def test_activity_log_filters(client, auth_headers):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    client.post("/terminal/authorize", json={}, headers=_device())

    assert client.get("/admin/activity-logs", params={"action_type": "drop_table"}, headers=auth_headers).status_code == 400
    assert client.get("/admin/activity-logs", params={"status": "maybe"}, headers=auth_headers).status_code == 400

    res = client.get("/admin/activity-logs", params={"action_type": "device_verified"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["total"] == 1
    assert res.json()["rows"][0]["device_uuid"] == "kiosk-1"


def test_otp_requests_log_and_maintenance(client, auth_headers):
    b1 = make_branch("B1")
    client.post("/terminal/otp/request", json={"branch_id": b1["id"]}, headers=_device())

    res = client.get("/admin/otp-requests", headers=auth_headers)
    assert res.json()["total"] == 1

    res = client.post("/admin/maintenance", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["ok"] is True


def test_enroll_staff(client, auth_headers):
    files = [
        ("files", ("face.png", _png(3), "image/png")),
        ("files", ("blank.png", _png(), "image/png")),
    ]
    data = {"full_name": "Ana Cruz", "employee_id": "EMP-100", "role": "Cashier"}

    res = client.post("/staff/enroll", data=data, files=files, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["embeddings"] == 1
    assert res.json()["rejected"] == {"blank.png": "no_face"}

    dup = client.post("/staff/enroll", data=data, files=files, headers=auth_headers)
    assert dup.status_code == 409

    staff = client.get("/staff", headers=auth_headers).json()
    assert [s["employee_id"] for s in staff] == ["EMP-100"]


def test_enroll_without_usable_face(client, auth_headers):
    files = [("files", ("blank.png", _png(), "image/png"))]
    data = {"full_name": "Ana Cruz", "employee_id": "EMP-100"}

    res = client.post("/staff/enroll", data=data, files=files, headers=auth_headers)

    assert res.status_code == 422
    assert res.json()["detail"]["rejected"] == {"blank.png": "no_face"}
    assert db.get_all_staff() == []


def test_retired_staff_is_not_recognized(client, auth_headers):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    staff_id = make_staff(0)
    client.post("/terminal/authorize", json={}, headers=_device())

    res = client.post(f"/staff/{staff_id}/deactivate", headers=auth_headers)
    assert res.json()["changed"] is True
    assert res.json()["staff"]["is_active"] is False
    assert client.post("/staff/404/deactivate", headers=auth_headers).status_code == 404

    res = _recognize(client, _png(0))
    assert res.status_code == 422
    assert res.json()["code"] == "no_match_found"


def test_embedding_management(client, auth_headers):
    b1 = make_branch("B1")
    make_device(b1["id"], "kiosk-1")
    staff_id = make_staff(0)
    second = db.add_face_embedding(staff_id, unit(1))
    client.post("/terminal/authorize", json={}, headers=_device())

    listed = client.get(f"/staff/{staff_id}/embeddings", headers=auth_headers).json()
    first = listed[0]["id"]
    assert [(e["id"], e["is_primary"]) for e in listed] == [(first, True), (second, False)]

    res = client.post(f"/staff/embeddings/{second}/primary", headers=auth_headers)
    assert res.json()["is_primary"] is True

    res = client.post(f"/staff/embeddings/{first}/deactivate", headers=auth_headers)
    assert res.json()["changed"] is True
    assert res.json()["embedding"]["is_active"] is False
    assert client.post(f"/staff/embeddings/{first}/primary", headers=auth_headers).status_code == 409
    assert client.post("/staff/embeddings/999/deactivate", headers=auth_headers).status_code == 404

    assert _recognize(client, _png(0)).json()["code"] == "no_match_found"
    assert _recognize(client, _png(1)).json()["staff"]["id"] == staff_id


def test_login_records_last_sign_in(client):
    credentials = {"username": config.ADMIN_USERNAME, "password": config.ADMIN_PASSWORD}

    first = client.post("/auth/login", json=credentials).json()
    assert first["previous_login_at"] is None
    assert first["expires_in"] > 0

    second = client.post("/auth/login", json=credentials).json()
    assert second["previous_login_at"] is not None

    me = client.get("/auth/me", headers={"Authorization": f"Bearer {second['access_token']}"}).json()
    assert me["username"] == config.ADMIN_USERNAME
    assert me["last_login_at"] >= second["previous_login_at"]


def test_session_for_disabled_admin_is_refused(client, auth_headers):
    conn = db.connect_db()
    conn.execute("UPDATE admin_users SET is_active = 0")
    conn.commit()
    conn.close()

    assert client.get("/auth/me", headers=auth_headers).status_code == 401


def test_login_requires_both_fields(client):
    res = client.post("/auth/login", json={"username": " ", "password": "x"})
    assert res.status_code == 400


def test_kiosk_config_exposes_windows(client):
    res = client.get("/config/kiosk")
    assert res.status_code == 200
    assert res.json()["morning_start"] == "07:00:00"
