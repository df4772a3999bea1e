import asyncio
from datetime import timedelta, timezone

import pytest

from smartattend.auth import Authenticator, SUPPORTED_METHODS, totp
from smartattend.auth.requests import (
    FaceLogin, MfaLogin, PasswordlessInitiate, PasswordlessVerify, InvalidLoginRequest,
    parse_login_request
)
from smartattend.database import AuthSession, ErrorKind
from smartattend.identity_matcher import MockMatcher

from conftest import image_b64


def login(authenticator, **payload):
    return asyncio.run(authenticator.authenticate(payload))


def _session(db, token):
    with db.get_session() as session:
        return session.get(AuthSession, token)


# ============== Request parsing ==============

def test_payloads_parse_into_their_variant():
    assert isinstance(parse_login_request({"method": "face", "image": "abc"}), FaceLogin)
    assert isinstance(parse_login_request({"method": "passwordless", "email": "a@x.com"}), PasswordlessInitiate)
    assert isinstance(
        parse_login_request({"method": "passwordless", "email": "a@x.com", "code": "123456"}),
        PasswordlessVerify
    )
    mfa = parse_login_request({"method": "mfa", "userId": "u1", "mfaCode": "123456"})
    assert isinstance(mfa, MfaLogin)
    assert mfa.user_id == "u1"


def test_empty_code_means_initiate():
    assert isinstance(
        parse_login_request({"method": "passwordless", "email": "a@x.com", "code": ""}),
        PasswordlessInitiate
    )


@pytest.mark.parametrize("payload", [
    {},
    {"method": "password", "email": "a@x.com"},
    {"method": "face"},
    {"method": "face", "image": ""},
    {"method": "voice"},
    {"method": "passwordless"},
    {"method": "mfa", "userId": "u1"},
    {"method": "mfa", "mfaCode": "123456"},
    ["face"],
])
def test_incomplete_payloads_are_rejected(payload):
    with pytest.raises(InvalidLoginRequest):
        parse_login_request(payload)


def test_invalid_request_lists_supported_methods(authenticator):
    result = login(authenticator, method="retina")

    assert not result.success
    assert result.error_kind == ErrorKind.VALIDATION
    assert result.to_dict() == {
        "error": "Invalid authentication method or missing parameters",
        "supportedMethods": SUPPORTED_METHODS,
    }


# ============== Face ==============

def test_enrolled_face_logs_in_for_24_hours(authenticator, student, db, clock):
    enrolled = asyncio.run(authenticator.enroll_face(student.id, image_b64("ada")))
    assert enrolled.success

    result = login(authenticator, method="face", image=image_b64("ada"))

    assert result.success
    assert result.user_id == student.id
    assert result.method == "face"
    stored = _session(db, result.token)
    assert stored.type == "FACE"
    assert stored.expires_at == clock.now + timedelta(hours=24)


def test_unenrolled_face_is_user_not_found(authenticator, student):
    asyncio.run(authenticator.enroll_face(student.id, image_b64("ada")))

    result = login(authenticator, method="face", image=image_b64("stranger"))

    assert result.error == "User not found"
    assert result.error_kind == ErrorKind.AUTHENTICATION


def test_matcher_failure_is_face_recognition_failed(db, sessions, users, codes, student):
    auth = Authenticator(db, sessions, MockMatcher(allow=False), users=users, codes=codes)

    result = login(auth, method="face", image=image_b64("ada"))

    assert result.error == "Face recognition failed"
    assert result.token is None


def test_face_already_enrolled_elsewhere_conflicts(authenticator, users, student):
    other = users.register("Bob", "bob@x.com").user
    asyncio.run(authenticator.enroll_face(student.id, image_b64("ada")))

    result = asyncio.run(authenticator.enroll_face(other.id, image_b64("ada")))

    assert result.error_kind == ErrorKind.CONFLICT
    assert users.get_by_id(other.id).face_id is None


def test_enroll_unknown_user(authenticator):
    result = asyncio.run(authenticator.enroll_face("missing", image_b64("ada")))

    assert result.error_kind == ErrorKind.NOT_FOUND


def test_identify_face_without_session(authenticator, student, db):
    asyncio.run(authenticator.enroll_face(student.id, image_b64("ada")))

    result = asyncio.run(authenticator.identify_face(image_b64("ada")))

    assert result.success
    assert result.token is None
    assert result.to_dict()["user"]["email"] == "a@x.com"
    with db.get_session() as session:
        assert session.query(AuthSession).count() == 0


# ============== Voice ==============

def test_voice_is_not_implemented(authenticator, student):
    result = login(authenticator, method="voice", audio="UklGRg==")

    assert not result.success
    assert result.error == "Voice authentication not yet implemented"


# ============== Passwordless ==============

def test_passwordless_code_logs_in_once(authenticator, student, db):
    initiated = login(authenticator, method="passwordless", email="a@x.com")
    assert initiated.success
    assert len(initiated.code) == 6
    assert 100000 <= int(initiated.code) <= 999999

    result = login(authenticator, method="passwordless", email="a@x.com", code=initiated.code)
    replay = login(authenticator, method="passwordless", email="a@x.com", code=initiated.code)

    assert result.success
    assert result.user_id == student.id
    assert _session(db, result.token).type == "PASSWORDLESS"
    assert replay.error == "Invalid code"


def test_email_lookup_ignores_case(authenticator, student):
    initiated = login(authenticator, method="passwordless", email="A@X.com")

    result = login(authenticator, method="passwordless", email="a@x.COM", code=initiated.code)

    assert result.success


def test_unknown_email_gets_no_usable_code(authenticator):
    initiated = login(authenticator, method="passwordless", email="nobody@x.com")

    assert initiated.success
    assert initiated.to_dict()["message"] == "Authentication code sent"

    for code in (initiated.code, "123456"):
        result = login(authenticator, method="passwordless", email="nobody@x.com", code=code)
        assert result.error == "Invalid code"


def test_code_without_initiation_is_invalid(authenticator, student):
    result = login(authenticator, method="passwordless", email="a@x.com", code="123456")

    assert result.error == "Invalid code"


@pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "one-two"])
def test_malformed_code(authenticator, student, code):
    result = login(authenticator, method="passwordless", email="a@x.com", code=code)

    assert result.error == "Invalid code format"


def test_expired_code_is_invalid(authenticator, student, clock):
    initiated = login(authenticator, method="passwordless", email="a@x.com")
    clock.advance(minutes=10)

    result = login(authenticator, method="passwordless", email="a@x.com", code=initiated.code)

    assert result.error == "Invalid code"


def test_code_is_burnt_after_too_many_failures(authenticator, student):
    initiated = login(authenticator, method="passwordless", email="a@x.com")
    wrong = "000000" if initiated.code != "000000" else "111111"

    for _ in range(5):
        login(authenticator, method="passwordless", email="a@x.com", code=wrong)
    result = login(authenticator, method="passwordless", email="a@x.com", code=initiated.code)

    assert result.error == "Invalid code"


def test_reinitiating_replaces_the_code(authenticator, student):
    first = login(authenticator, method="passwordless", email="a@x.com")
    second = login(authenticator, method="passwordless", email="a@x.com")

    if first.code != second.code:
        stale = login(authenticator, method="passwordless", email="a@x.com", code=first.code)
        assert stale.error == "Invalid code"
    assert login(authenticator, method="passwordless", email="a@x.com", code=second.code).success


def test_codes_are_hidden_when_exposure_is_off(db, sessions, matcher, users, codes, student):
    auth = Authenticator(db, sessions, matcher, users=users, codes=codes, expose_codes=False)

    result = login(auth, method="passwordless", email="a@x.com")

    assert result.success
    assert result.code is None
    assert "code" not in result.to_dict()


# ============== MFA ==============

def _now(clock):
    return clock.now.replace(tzinfo=timezone.utc).timestamp()


def test_mfa_login_with_current_code(authenticator, student, db, clock):
    enabled = authenticator.enable_mfa(student.id)
    secret = enabled.to_dict()["secret"]

    result = login(authenticator, method="mfa", userId=student.id,
                   mfaCode=totp.generate_totp(secret, at=_now(clock)))

    assert result.success
    assert _session(db, result.token).type == "MFA"
    assert enabled.to_dict()["qrCodeUrl"].startswith("otpauth://totp/SmartAttend:a@x.com?secret=")


def test_mfa_tolerates_one_step_of_clock_skew(authenticator, student, clock):
    secret = authenticator.enable_mfa(student.id).to_dict()["secret"]
    code = totp.generate_totp(secret, at=_now(clock) - 30)

    assert login(authenticator, method="mfa", userId=student.id, mfaCode=code).success


def test_wrong_mfa_code(authenticator, student, clock):
    secret = authenticator.enable_mfa(student.id).to_dict()["secret"]
    stale = totp.generate_totp(secret, at=_now(clock) - 300)
    current = {totp.generate_totp(secret, at=_now(clock) + 30 * step) for step in (-1, 0, 1)}
    if stale in current:
        pytest.skip("stale code collides with a live one")

    result = login(authenticator, method="mfa", userId=student.id, mfaCode=stale)

    assert result.error == "Invalid MFA code"


def test_mfa_not_enabled(authenticator, student):
    result = login(authenticator, method="mfa", userId=student.id, mfaCode="123456")
    missing = login(authenticator, method="mfa", userId="nobody", mfaCode="123456")

    assert result.error == "MFA not enabled for this user"
    assert missing.error == "MFA not enabled for this user"


def test_enable_mfa_unknown_user(authenticator):
    assert authenticator.enable_mfa("nobody").error_kind == ErrorKind.NOT_FOUND


def test_enabled_mfa_is_not_replaced_without_a_code(authenticator, users, student):
    secret = authenticator.enable_mfa(student.id).to_dict()["secret"]

    result = authenticator.enable_mfa(student.id)

    assert result.error_kind == ErrorKind.CONFLICT
    assert users.get_by_id(student.id).mfa_secret == secret


def test_enabled_mfa_is_not_replaced_with_a_wrong_code(authenticator, users, student, clock):
    secret = authenticator.enable_mfa(student.id).to_dict()["secret"]
    stale = totp.generate_totp(secret, at=_now(clock) - 300)
    current = {totp.generate_totp(secret, at=_now(clock) + 30 * step) for step in (-1, 0, 1)}
    if stale in current:
        pytest.skip("stale code collides with a live one")

    result = authenticator.enable_mfa(student.id, stale)

    assert result.error == "Invalid MFA code"
    assert users.get_by_id(student.id).mfa_secret == secret


def test_enabled_mfa_is_reset_with_a_current_code(authenticator, users, student, clock):
    old = authenticator.enable_mfa(student.id).to_dict()["secret"]

    result = authenticator.enable_mfa(student.id, totp.generate_totp(old, at=_now(clock)))

    assert result.success
    new = result.to_dict()["secret"]
    assert new != old
    assert users.get_by_id(student.id).mfa_secret == new


def test_store_only_strategies_run_off_the_event_loop(authenticator, student, monkeypatch):
    original = authenticator.users.get_by_email
    loops = []

    def get_by_email(email):
        try:
            asyncio.get_running_loop()
            loops.append("event loop")
        except RuntimeError:
            loops.append("worker thread")
        return original(email)

    monkeypatch.setattr(authenticator.users, "get_by_email", get_by_email)

    assert login(authenticator, method="passwordless", email="a@x.com").success
    assert loops == ["worker thread"]


# ============== Failures ==============

def test_unexpected_error_is_internal(authenticator, student, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("database gone")

    monkeypatch.setattr(authenticator.users, "get_by_email", explode)

    result = login(authenticator, method="passwordless", email="a@x.com")

    assert result.error_kind == ErrorKind.INTERNAL
    assert result.error == "Authentication failed"
