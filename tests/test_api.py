from datetime import timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from smartattend.auth import totp
from smartattend.main import create_app
from smartattend.identity_matcher import MockMatcher

from conftest import image_b64


@pytest.fixture
def client(db, clock, notifier):
    app = create_app(
        db_manager=db,
        matcher=MockMatcher(),
        notifier=notifier,
        clock=clock,
        expose_codes=True
    )
    with TestClient(app) as test_client:
        yield test_client


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name="Ada Student", email="a@x.com", role="STUDENT"):
    response = client.post("/auth/register", json={"name": name, "email": email, "role": role})
    assert response.status_code == 200
    return response.json()["userId"]


def passwordless_login(client, email="a@x.com"):
    initiated = client.post("/auth/login", json={"method": "passwordless", "email": email})
    assert initiated.status_code == 200
    verified = client.post("/auth/login", json={
        "method": "passwordless", "email": email, "code": initiated.json()["code"]
    })
    assert verified.status_code == 200
    return verified.json()["token"]


def test_health(client):
    response = client.get("/")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "online"
    assert body["matcher"] == "mock"
    assert body["database"]["initialized"] is True


# ============== Auth ==============

def test_register_duplicate_email_conflicts(client):
    register(client)

    response = client.post("/auth/register", json={"name": "Ada Again", "email": "A@x.com"})

    assert response.status_code == 409
    assert response.json() == {"error": "User with this email already exists"}


def test_register_requires_name_and_email(client):
    response = client.post("/auth/register", json={"email": "a@x.com"})

    assert response.status_code == 400
    assert response.json()["error"] == "Name and email are required"


def test_register_rejects_non_json_body(client):
    response = client.post("/auth/register", content=b"not json", headers={"Content-Type": "application/json"})

    assert response.status_code == 400


def test_login_with_unknown_method(client):
    response = client.post("/auth/login", json={"method": "password", "password": "hunter2"})

    assert response.status_code == 400
    assert response.json()["supportedMethods"] == ["face", "voice", "passwordless", "mfa"]


def test_login_without_body(client):
    response = client.post("/auth/login")

    assert response.status_code == 400


def test_voice_login_is_unauthorized(client):
    response = client.post("/auth/login", json={"method": "voice", "audio": "UklGRg=="})

    assert response.status_code == 401
    assert response.json()["error"] == "Voice authentication not yet implemented"


def test_wrong_passwordless_code(client):
    register(client)
    client.post("/auth/login", json={"method": "passwordless", "email": "a@x.com"})

    response = client.post("/auth/login", json={"method": "passwordless", "email": "a@x.com", "code": "12"})

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid code format"}


def test_session_status(client, clock):
    user_id = register(client)
    token = passwordless_login(client)

    assert client.get("/auth/login").json() == {"authenticated": False, "message": "No token provided"}
    status = client.get("/auth/login", headers=bearer(token)).json()
    assert status["authenticated"] is True
    assert status["user"]["id"] == user_id
    assert client.get("/auth/login", headers=bearer("f" * 64)).json() == {
        "authenticated": False, "error": "Invalid session"
    }

    clock.advance(hours=24)
    assert client.get("/auth/login", headers=bearer(token)).json() == {
        "authenticated": False, "error": "Session expired"
    }


def test_logout_revokes_the_session(client):
    register(client)
    token = passwordless_login(client)

    assert client.post("/auth/logout", headers=bearer(token)).json() == {"success": True}
    assert client.get("/auth/login", headers=bearer(token)).json()["error"] == "Invalid session"
    assert client.post("/auth/logout").status_code == 401


def test_mfa_enrollment_then_login(client, clock):
    user_id = register(client)
    token = passwordless_login(client)

    assert client.post("/auth/mfa/enable").status_code == 401
    enabled = client.post("/auth/mfa/enable", headers=bearer(token))
    assert enabled.status_code == 200
    secret = enabled.json()["secret"]
    assert "otpauth://totp/" in enabled.json()["qrCodeUrl"]

    at = clock.now.replace(tzinfo=timezone.utc).timestamp()
    response = client.post("/auth/login", json={
        "method": "mfa", "userId": user_id, "mfaCode": totp.generate_totp(secret, at=at)
    })

    assert response.status_code == 200
    assert response.json()["method"] == "mfa"
    assert client.get("/auth/login", headers=bearer(response.json()["token"])).json()["user"]["mfaEnabled"] is True


# ============== Face ==============

def test_face_enrollment_then_face_login(client):
    user_id = register(client)

    enrolled = client.post("/ai/face", json={"image": image_b64("ada"), "action": "register", "userId": user_id})
    assert enrolled.status_code == 200
    assert enrolled.json()["message"] == "Face registered successfully"

    identified = client.post("/ai/face", json={"image": image_b64("ada")})
    assert identified.json()["user"]["id"] == user_id

    login = client.post("/auth/login", json={"method": "face", "image": image_b64("ada")})
    assert login.status_code == 200
    assert login.json()["userId"] == user_id

    stranger = client.post("/auth/login", json={"method": "face", "image": image_b64("eve")})
    assert stranger.status_code == 401
    assert stranger.json()["error"] == "User not found"


def test_face_endpoint_validation(client):
    assert client.post("/ai/face", json={}).json() == {"error": "Image data is required"}
    assert client.post("/ai/face", json={"image": image_b64("ada"), "action": "register"}).status_code == 400
    assert client.post(
        "/ai/face", json={"image": image_b64("ada"), "action": "register", "userId": "missing"}
    ).status_code == 404


# ============== Attendance ==============

def test_manual_attendance_then_duplicate(client, notifier):
    register(client)
    token = passwordless_login(client)
    payload = {"recognizedBy": "MANUAL", "course": "CS101", "location": "Room 4"}

    first = client.post("/attendance", json=payload, headers=bearer(token))
    second = client.post("/attendance", json=payload, headers=bearer(token))

    assert first.status_code == 201
    attendance = first.json()["attendance"]
    assert attendance["type"] == "PRESENT"
    assert attendance["metadata"] == {"course": "CS101"}

    assert second.status_code == 409
    body = second.json()
    assert body["isDuplicate"] is True
    assert body["existingAttendance"]["id"] == attendance["id"]
    assert [event for event, _ in notifier.events] == ["attendance.created"]


def test_attendance_requires_authentication(client):
    response = client.post("/attendance", json={"recognizedBy": "FACE"})

    assert response.status_code == 401
    assert response.json()["error"] == "Authentication required"


def test_attendance_validation(client):
    register(client)
    token = passwordless_login(client)

    missing = client.post("/attendance", json={}, headers=bearer(token))
    not_object = client.post("/attendance", json=["FACE"], headers=bearer(token))

    assert missing.status_code == 400
    assert "FACE, VOICE, or MANUAL" in missing.json()["error"]
    assert not_object.status_code == 400


def test_list_attendance(client, clock):
    register(client)
    token = passwordless_login(client)
    client.post("/attendance", json={"recognizedBy": "FACE", "course": "CS101"}, headers=bearer(token))
    clock.advance(minutes=5)
    client.post("/attendance", json={"recognizedBy": "FACE", "course": "CS102"}, headers=bearer(token))

    response = client.get("/attendance", headers=bearer(token))
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 2
    assert body["attendances"][0]["metadata"]["course"] == "CS102"

    limited = client.get("/attendance", params={"limit": 1}, headers=bearer(token)).json()
    assert limited["count"] == 1

    start = (clock.now - timedelta(minutes=1)).isoformat() + "Z"
    end = clock.now.isoformat() + "Z"
    ranged = client.get(
        "/attendance", params={"startDate": start, "endDate": end}, headers=bearer(token)
    ).json()
    assert [a["metadata"]["course"] for a in ranged["attendances"]] == ["CS102"]


def test_list_attendance_errors(client):
    register(client)
    token = passwordless_login(client)

    assert client.get("/attendance").status_code == 401
    bad_date = client.get("/attendance", params={"startDate": "yesterday"}, headers=bearer(token))
    assert bad_date.status_code == 400
    assert bad_date.json() == {"error": "Invalid date format. Use ISO-8601"}


def test_non_text_attendance_fields_are_bad_requests(client, db):
    register(client)
    token = passwordless_login(client)

    location = client.post(
        "/attendance", json={"recognizedBy": "MANUAL", "location": {"room": 4}}, headers=bearer(token)
    )
    notes = client.post("/attendance", json={"recognizedBy": "MANUAL", "notes": ["a"]}, headers=bearer(token))

    assert location.status_code == 400
    assert location.json() == {"success": False, "error": "location must be a string"}
    assert notes.status_code == 400
    assert client.get("/attendance", headers=bearer(token)).json()["count"] == 0


def test_attendance_timestamps_are_utc_marked(client, clock):
    register(client)
    token = passwordless_login(client)

    created = client.post("/attendance", json={"recognizedBy": "FACE"}, headers=bearer(token)).json()
    duplicate = client.post("/attendance", json={"recognizedBy": "FACE"}, headers=bearer(token)).json()

    assert created["attendance"]["timestamp"] == "2026-03-02T09:00:00Z"
    assert duplicate["existingAttendance"]["timestamp"] == "2026-03-02T09:00:00Z"


def test_mfa_reset_requires_current_code(client, clock):
    register(client)
    token = passwordless_login(client)
    old = client.post("/auth/mfa/enable", headers=bearer(token)).json()["secret"]

    refused = client.post("/auth/mfa/enable", headers=bearer(token))
    at = clock.now.replace(tzinfo=timezone.utc).timestamp()
    reset = client.post(
        "/auth/mfa/enable", json={"mfaCode": totp.generate_totp(old, at=at)}, headers=bearer(token)
    )

    assert refused.status_code == 409
    assert reset.status_code == 200
    assert reset.json()["secret"] != old
