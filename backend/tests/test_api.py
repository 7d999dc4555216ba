import sqlite3

import cv2 # type: ignore
import numpy as np # type: ignore
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.attendance as attendance_router
import backend.routers.core as core


@pytest.fixture()
def client(store, monkeypatch):
    # The sweeper is exercised directly in the auto-checkout tests.
    monkeypatch.setattr(main.AUTO_CHECKOUT_WORKER, "interval_seconds", 0)

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


def _create_gym(client, headers, name: str = "Iron Temple") -> int:
    res = client.post("/gyms", json={"name": name}, headers=headers)
    assert res.status_code == 200
    return res.json()["id"]


def _create_member(client, headers, gym_id: int, *, email: str, password: str = "lift-heavy") -> dict:
    res = client.post(
        f"/gyms/{gym_id}/members",
        json={"full_name": "Asha Rao", "email": email, "password": password},
        headers=headers,
    )
    assert res.status_code == 200
    return res.json()


def _member_headers(client, email: str, password: str = "lift-heavy") -> dict:
    res = client.post("/auth/member-login", json={"email": email, "password": password})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def _qr_data(client, headers, gym_id: int) -> str:
    res = client.get(f"/gyms/{gym_id}/qr", headers=headers)
    assert res.status_code == 200
    return res.json()["qr_data"]


@pytest.fixture()
def gym_member(client, auth_headers):
    gym_id = _create_gym(client, auth_headers)
    member = _create_member(client, auth_headers, gym_id, email="asha@example.com")
    return {
        "gym_id": gym_id,
        "member": member,
        "headers": _member_headers(client, "asha@example.com"),
        "qr_data": _qr_data(client, auth_headers, gym_id),
    }


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_attendance_config_reports_defaults(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    payload = res.json()
    assert payload["max_dwell_minutes"] == 180
    assert payload["day_utc_offset_minutes"] == 330
    assert payload["history_max_days"] == 365


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid staff credentials."

    res = client.post("/auth/member-login", json={"email": "nobody@example.com", "password": "x"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid member credentials."


def test_endpoints_require_session(client):
    for method, path in [
        ("get", "/gyms"),
        ("get", "/member/attendance/today"),
        ("post", "/member/attendance/checkout"),
        ("get", "/gyms/1/attendance/today"),
    ]:
        res = getattr(client, method)(path)
        assert res.status_code == 401
        assert res.json()["detail"] == "Missing bearer token."


def test_roles_are_kept_apart(client, auth_headers, gym_member):
    res = client.get("/gyms", headers=gym_member["headers"])
    assert res.status_code == 403
    assert res.json()["detail"] == "Staff session required."

    res = client.post(
        "/member/attendance/scan",
        json={"qr_data": gym_member["qr_data"]},
        headers=auth_headers,
    )
    assert res.status_code == 403
    assert res.json()["detail"] == "Member session required."


def test_member_me(client, gym_member):
    res = client.get("/auth/me", headers=gym_member["headers"])
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "member"
    assert body["member_id"] == gym_member["member"]["id"]
    assert body["gym_id"] == gym_member["gym_id"]


def test_duplicate_member_email_is_rejected(client, auth_headers, gym_member):
    res = client.post(
        f"/gyms/{gym_member['gym_id']}/members",
        json={"full_name": "Someone Else", "email": "ASHA@example.com"},
        headers=auth_headers,
    )
    assert res.status_code == 409
    assert res.json()["detail"] == "Email already registered."


def test_scan_check_in_and_check_out_flow(client, gym_member):
    headers = gym_member["headers"]

    res = client.get("/member/attendance/today", headers=headers)
    assert res.json()["status"] == "not_checked_in_today"

    res = client.post("/member/attendance/scan", json={"qr_data": gym_member["qr_data"]}, headers=headers)
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "checked_in"
    assert body["code"] == "CHECKED_IN"
    assert body["record"]["status"] == "in_gym"
    record_id = body["record"]["id"]

    res = client.post("/member/attendance/scan", json={"qr_data": gym_member["qr_data"]}, headers=headers)
    assert res.status_code == 409
    assert res.json()["code"] == "ALREADY_IN_GYM"
    assert res.json()["record"]["id"] == record_id

    res = client.get("/member/attendance/today", headers=headers)
    assert res.json()["status"] == "in_gym"
    assert res.json()["message"] == "You're currently in the gym"

    res = client.post("/member/attendance/checkout", headers=headers)
    assert res.status_code == 200
    assert res.json()["code"] == "CHECKED_OUT"
    assert res.json()["record"]["exit_type"] == "manual"

    res = client.post("/member/attendance/checkout", headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "NOT_IN_GYM"

    res = client.get("/member/attendance/today", headers=headers)
    assert res.json()["status"] == "checked_out"
    assert res.json()["auto_closed"] is False

    res = client.get("/member/attendance/history", params={"days": 7}, headers=headers)
    assert res.status_code == 200
    assert [r["id"] for r in res.json()] == [record_id]


def test_invalid_qr_is_reported(client, gym_member):
    res = client.post(
        "/member/attendance/scan",
        json={"qr_data": "https://example.com/not-a-gym"},
        headers=gym_member["headers"],
    )
    assert res.status_code == 400
    body = res.json()
    assert body["code"] == "INVALID_CODE"
    assert body["status"] == "error"
    assert body["record"] is None


def test_rotated_and_disabled_codes(client, auth_headers, gym_member):
    gym_id = gym_member["gym_id"]
    headers = gym_member["headers"]

    res = client.post(f"/gyms/{gym_id}/qr/rotate", headers=auth_headers)
    assert res.status_code == 200
    fresh = res.json()["qr_data"]
    assert fresh != gym_member["qr_data"]

    res = client.post("/member/attendance/scan", json={"qr_data": gym_member["qr_data"]}, headers=headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid QR code. The code may have been updated."

    res = client.post(f"/gyms/{gym_id}/qr/toggle", json={"is_enabled": False}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["is_enabled"] is False
    assert "qr_data" not in res.json()

    res = client.post("/member/attendance/scan", json={"qr_data": fresh}, headers=headers)
    assert res.status_code == 400
    assert res.json()["message"] == "QR attendance is currently disabled for this gym."


def test_inactive_member_gets_not_eligible(client, auth_headers, gym_member):
    gym_id = gym_member["gym_id"]
    member_id = gym_member["member"]["id"]

    res = client.patch(f"/gyms/{gym_id}/members/{member_id}", json={"status": "inactive"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "inactive"

    res = client.post(
        "/member/attendance/scan",
        json={"qr_data": gym_member["qr_data"]},
        headers=gym_member["headers"],
    )
    assert res.status_code == 403
    assert res.json()["code"] == "NOT_ELIGIBLE"


def test_qr_png_is_served(client, auth_headers, gym_member):
    res = client.get(f"/gyms/{gym_member['gym_id']}/qr.png", headers=auth_headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"
    assert res.content.startswith(b"\x89PNG")


def test_scan_frame_rejects_bad_uploads(client, gym_member):
    headers = gym_member["headers"]

    res = client.post(
        "/member/attendance/scan-frame",
        files={"file": ("frame.gif", b"GIF89a", "image/gif")},
        headers=headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Upload JPG/PNG only."

    res = client.post(
        "/member/attendance/scan-frame",
        files={"file": ("frame.jpg", b"not-an-image", "image/jpeg")},
        headers=headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid image data."

    res = client.post(
        "/member/attendance/scan-frame",
        files={"file": ("frame.jpg", b"", "image/jpeg")},
        headers=headers,
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid image data."


def test_scan_frame_without_code(client, gym_member):
    ok, encoded = cv2.imencode(".png", np.full((160, 160, 3), 255, dtype=np.uint8))
    assert ok

    res = client.post(
        "/member/attendance/scan-frame",
        files={"file": ("frame.png", encoded.tobytes(), "image/png")},
        headers=gym_member["headers"],
    )
    assert res.status_code == 400
    assert res.json()["code"] == "INVALID_CODE"
    assert res.json()["message"] == "No QR code found in image."


def test_history_range_is_validated(client, gym_member):
    res = client.get("/member/attendance/history", params={"days": 0}, headers=gym_member["headers"])
    assert res.status_code == 422

    res = client.get("/member/attendance/history", params={"days": 366}, headers=gym_member["headers"])
    assert res.status_code == 422


def test_staff_manual_attendance_and_gym_views(client, auth_headers, gym_member):
    gym_id = gym_member["gym_id"]
    member_id = gym_member["member"]["id"]

    res = client.post(
        f"/gyms/{gym_id}/attendance/manual",
        json={"member_id": member_id, "action": "check_out"},
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert res.json()["code"] == "NOT_IN_GYM"

    res = client.post(
        f"/gyms/{gym_id}/attendance/manual",
        json={"member_id": member_id, "action": "check_in"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["record"]["source"] == "manual_entry"

    res = client.get(f"/gyms/{gym_id}/attendance/today", headers=auth_headers)
    assert res.status_code == 200
    rows = res.json()
    assert len(rows) == 1
    assert rows[0]["member_name"] == "Asha Rao"

    res = client.get(f"/gyms/{gym_id}/attendance/stats", params={"period": "today"}, headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["currently_in_gym"] == 1

    res = client.get(f"/gyms/{gym_id}/attendance/stats", params={"period": "decade"}, headers=auth_headers)
    assert res.status_code == 422

    res = client.post(
        f"/gyms/{gym_id}/attendance/manual",
        json={"member_id": 9999, "action": "check_out"},
        headers=auth_headers,
    )
    assert res.status_code == 404


def test_scoped_trainer_only_sees_own_gym(client, auth_headers):
    own_gym = _create_gym(client, auth_headers, "Own Gym")
    other_gym = _create_gym(client, auth_headers, "Other Gym")

    res = client.post(
        "/admin/staff",
        json={"username": "coach", "password": "coach-pass", "role": "trainer", "gym_id": own_gym},
        headers=auth_headers,
    )
    assert res.status_code == 200

    res = client.post("/auth/login", json={"username": "coach", "password": "coach-pass"})
    assert res.status_code == 200
    trainer_headers = {"Authorization": f"Bearer {res.json()['access_token']}"}

    res = client.get("/gyms", headers=trainer_headers)
    assert [g["id"] for g in res.json()] == [own_gym]

    res = client.get(f"/gyms/{other_gym}/attendance/today", headers=trainer_headers)
    assert res.status_code == 403

    res = client.get(f"/gyms/{own_gym}/qr", headers=trainer_headers)
    assert res.status_code == 403

    res = client.post("/admin/attendance/sweep", headers=trainer_headers)
    assert res.status_code == 403


def test_admin_sweep_endpoint(client, auth_headers):
    res = client.post("/admin/attendance/sweep", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"ok": True, "message": "Auto-checkout sweep completed.", "auto_closed": 0}

    res = client.get("/admin/attendance/sweep", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["last_closed"] == 0


def test_store_failure_maps_to_503(client, gym_member, monkeypatch):
    def broken(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(attendance_router, "submit_check_in", broken)

    res = client.post(
        "/member/attendance/scan",
        json={"qr_data": gym_member["qr_data"]},
        headers=gym_member["headers"],
    )
    assert res.status_code == 503
    assert res.json()["detail"] == "Attendance store unavailable. Please retry."
