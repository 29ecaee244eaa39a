import sqlite3

import pytest

from kiosk.capture import Coordinates
from kiosk.errors import BranchNotFound, DeviceUnauthorized, LocationOutOfRange, LocationUnavailable, PinInvalid
from kiosk.services.trust import (
    ActivityLogger,
    Authorized,
    Denied,
    DeviceTrustGate,
    NeedsPin,
    NeedsRegistration,
    PinVerifier,
)
from kiosk.tests.helpers import activity, at, make_branch, make_device
from kiosk.utils import haversine
from kiosk_db import db


def test_device_found_in_second_branch(store):
    make_branch("B0")
    b1 = make_branch("B1")
    make_device(b1["id"], "X")

    outcome = DeviceTrustGate().authorize("X", now=at(8, 0))

    assert isinstance(outcome, Authorized)
    assert outcome.branch["code"] == "B1"
    assert outcome.device["device_uuid"] == "X"
    assert activity("device_verified")[0]["status"] == "success"


def test_hint_is_checked_first_but_not_exclusive(store):
    b0 = make_branch("B0")
    b1 = make_branch("B1")
    make_device(b1["id"], "X")

    outcome = DeviceTrustGate().authorize("X", branch_hint=b0["id"], now=at(8, 0))

    assert isinstance(outcome, Authorized)
    assert outcome.branch["id"] == b1["id"]


def test_unknown_device_needs_registration(store):
    b1 = make_branch("B1")

    outcome = DeviceTrustGate().authorize("Y", branch_hint=b1["id"], now=at(8, 0))

    assert isinstance(outcome, NeedsRegistration)
    assert outcome.branch["id"] == b1["id"]
    assert activity("device_blocked")[0]["device_uuid"] == "Y"


def test_unknown_device_denied_without_self_registration(store):
    make_branch("B1")

    outcome = DeviceTrustGate(allow_self_registration=False).authorize("Y", now=at(8, 0))

    assert isinstance(outcome, Denied)
    assert outcome.reason == "unauthorized device"
    assert isinstance(outcome.error(), DeviceUnauthorized)


def test_inactive_device_is_not_trusted(store):
    b1 = make_branch("B1")
    device = make_device(b1["id"], "X")
    db.deactivate_device(device["id"])

    assert isinstance(DeviceTrustGate().authorize("X", now=at(8, 0)), NeedsRegistration)


def test_inactive_branch_is_skipped(store):
    b1 = make_branch("B1", is_active=False)
    make_device(b1["id"], "X")

    assert isinstance(DeviceTrustGate().authorize("X", now=at(8, 0)), NeedsRegistration)


def test_hinted_branch_without_device_verification(store):
    b1 = make_branch("B1", require_device_verification=False)

    outcome = DeviceTrustGate().authorize("unknown", branch_hint=b1["id"], now=at(8, 0))

    assert isinstance(outcome, Authorized)
    assert outcome.device is None


def test_geofence_boundary(store):
    radius = haversine(14.0, 121.0, 14.0, 121.001)
    b1 = make_branch("B1", latitude=14.0, longitude=121.0, require_geolocation=True, geofence_radius_m=radius)
    make_device(b1["id"], "X")
    gate = DeviceTrustGate()

    at_branch = gate.authorize("X", Coordinates(14.0, 121.0), now=at(8, 0))
    assert isinstance(at_branch, Authorized)
    assert at_branch.distance_m == 0

    on_edge = gate.authorize("X", Coordinates(14.0, 121.001), now=at(8, 0))
    assert isinstance(on_edge, Authorized)

    beyond = gate.authorize("X", Coordinates(14.0, 121.00101), now=at(8, 0))
    assert isinstance(beyond, Denied)
    assert beyond.reason == "out of range"
    assert isinstance(beyond.error(), LocationOutOfRange)
    assert activity("location_failed")[0]["distance_from_branch_m"] > radius


def test_missing_location_is_denied(store):
    b1 = make_branch("B1", latitude=14.0, longitude=121.0, require_geolocation=True)
    make_device(b1["id"], "X")

    outcome = DeviceTrustGate().authorize("X", None, now=at(8, 0))

    assert isinstance(outcome, Denied)
    assert isinstance(outcome.error(), LocationUnavailable)


def test_branch_without_coordinates_skips_distance_check(store):
    b1 = make_branch("B1", require_geolocation=True)
    make_device(b1["id"], "X")

    outcome = DeviceTrustGate().authorize("X", None, now=at(8, 0))

    assert isinstance(outcome, Authorized)
    assert activity("location_verified")[0]["status"] == "warning"


def test_pin_required_then_cached(store):
    b1 = make_branch("B1", require_pin=True, pin="4321", pin_cache_minutes=30)
    make_device(b1["id"], "X")
    gate = DeviceTrustGate()

    assert isinstance(gate.authorize("X", now=at(8, 0)), NeedsPin)

    verification = PinVerifier().verify_pin(b1["id"], "4321", device_uuid="X", now=at(8, 0))
    assert verification.expires_at == at(8, 30)

    outcome = gate.authorize("X", pin_token=verification.token, now=at(8, 29))
    assert isinstance(outcome, Authorized)

    expired = gate.authorize("X", pin_token=verification.token, now=at(8, 30))
    assert isinstance(expired, NeedsPin)


def test_pin_token_is_branch_scoped(store):
    b0 = make_branch("B0", require_pin=True, pin="1111")
    b1 = make_branch("B1", require_pin=True, pin="2222")
    make_device(b1["id"], "X")

    other = PinVerifier().verify_pin(b0["id"], "1111", now=at(8, 0))

    assert isinstance(DeviceTrustGate().authorize("X", pin_token=other.token, now=at(8, 1)), NeedsPin)


def test_wrong_pin_is_rejected_and_audited(store):
    b1 = make_branch("B1", require_pin=True, pin="4321")

    with pytest.raises(PinInvalid):
        PinVerifier().verify_pin(b1["id"], "0000", device_uuid="X", now=at(8, 0))

    assert activity("pin_failed")[0]["device_uuid"] == "X"


@pytest.mark.parametrize("pin", ["12é4", "４３２１", "\u0000"])
def test_non_ascii_pin_is_rejected_not_crashed(store, pin):
    b1 = make_branch("B1", require_pin=True, pin="4321")

    with pytest.raises(PinInvalid):
        PinVerifier().verify_pin(b1["id"], pin, device_uuid="X", now=at(8, 0))

    assert len(activity("pin_failed")) == 1


def test_pin_for_unknown_branch(store):
    with pytest.raises(BranchNotFound):
        PinVerifier().verify_pin(999, "0000")


def test_audit_failure_does_not_change_outcome(store, monkeypatch):
    b1 = make_branch("B1")
    make_device(b1["id"], "X")

    def broken_insert(**_kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "insert_activity_log", broken_insert)

    assert isinstance(DeviceTrustGate().authorize("X", now=at(8, 0)), Authorized)
    assert isinstance(DeviceTrustGate().authorize("Y", now=at(8, 0)), NeedsRegistration)


def test_branch_policy_can_disable_audit(store):
    b1 = make_branch("B1", log_activity=False)
    make_device(b1["id"], "X")

    DeviceTrustGate(audit=ActivityLogger()).authorize("X", now=at(8, 0))

    assert activity() == []


def test_authorized_device_last_used_is_refreshed(store):
    b1 = make_branch("B1")
    device = make_device(b1["id"], "X")
    assert device["last_used_at"] is None

    DeviceTrustGate().authorize("X", now=at(8, 0))

    assert db.get_device(device["id"])["last_used_at"] == at(8, 0).isoformat(timespec="seconds")


def test_one_active_device_per_branch_identifier(store):
    b1 = make_branch("B1")
    device = make_device(b1["id"], "X")

    with pytest.raises(sqlite3.IntegrityError):
        make_device(b1["id"], "X")

    db.deactivate_device(device["id"])
    assert make_device(b1["id"], "X")["is_active"]
