import base64
from datetime import datetime, timedelta

import pytest

from smartattend.database import (
    DatabaseManager, SessionService, UserService, DuplicateGuard, AttendanceService,
    PendingCodeStore
)
from smartattend.auth import Authenticator
from smartattend.identity_matcher import MockMatcher


class FrozenClock:
    """Controllable stand-in for utcnow()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Notifier fake that keeps dispatched events in memory."""

    configured = True

    def __init__(self):
        self.events = []

    def dispatch(self, event, data):
        self.events.append((event, data))

    async def close(self):
        pass


class BrokenNotifier(RecordingNotifier):
    def dispatch(self, event, data):
        raise ConnectionError("webhook unreachable")


def image_b64(label: str) -> str:
    """Stand-in photo payload, base64 encoded like a camera upload."""
    return base64.b64encode(f"jpeg-bytes-of-{label}".encode()).decode()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0))


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite://")
    assert manager.initialize()
    yield manager
    manager.close()


@pytest.fixture
def users(db):
    return UserService(db)


@pytest.fixture
def sessions(db, clock):
    return SessionService(db, clock=clock)


@pytest.fixture
def codes(db, clock):
    return PendingCodeStore(db, clock=clock)


@pytest.fixture
def guard(db, clock):
    return DuplicateGuard(db, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def attendance_service(db, sessions, guard, notifier, clock):
    return AttendanceService(db, sessions, guard=guard, notifier=notifier, clock=clock)


@pytest.fixture
def matcher():
    return MockMatcher()


@pytest.fixture
def authenticator(db, sessions, matcher, users, codes, clock):
    return Authenticator(
        db, sessions, matcher,
        users=users,
        codes=codes,
        expose_codes=True,
        clock=clock
    )


@pytest.fixture
def student(users):
    result = users.register("Ada Student", "a@x.com", "STUDENT")
    assert result.success
    return result.user
