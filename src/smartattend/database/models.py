"""
Database Models for SmartAttend
===============================
SQLAlchemy ORM models for authentication and attendance tracking.

Tables:
- users: Enrolled people (face/voice identifiers, MFA secret)
- sessions: Bearer tokens issued by a successful login
- pending_codes: Passwordless one-time codes awaiting verification
- attendance: Immutable presence events
- system_config: Configurable system parameters
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, JSON, ForeignKey
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 text for a stored naive-UTC datetime, marked with Z."""
    if value is None:
        return None
    return value.isoformat() + "Z"


def _new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    """Role of an enrolled user."""
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"


class SessionType(str, Enum):
    """How a session was established."""
    FACE = "FACE"
    VOICE = "VOICE"
    MFA = "MFA"
    PASSWORDLESS = "PASSWORDLESS"


class AttendanceType(str, Enum):
    """Kind of presence event."""
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    EXCUSED = "EXCUSED"


class RecognitionType(str, Enum):
    """Provenance of an attendance record."""
    FACE = "FACE"
    VOICE = "VOICE"
    MANUAL = "MANUAL"


class ErrorKind(str, Enum):
    """Failure category of a service result. The API maps each to a status code."""
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INTERNAL = "INTERNAL"


class User(Base):
    """
    Enrolled users table.
    face_id and voice_id map 1:1 onto external identity tokens.
    """
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    role = Column(String(20), default=Role.STUDENT.value, nullable=False)
    face_id = Column(String(100), unique=True, nullable=True)
    voice_id = Column(String(100), unique=True, nullable=True)
    mfa_secret = Column(String(64), nullable=True)
    mfa_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

    def to_dict(self) -> dict:
        """Public view of the user for API responses."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "mfaEnabled": self.mfa_enabled,
        }


class AuthSession(Base):
    """
    Bearer token proof of authentication.
    The token is the primary key so verification is a direct lookup.
    """
    __tablename__ = 'sessions'

    token = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # FACE, VOICE, MFA, PASSWORDLESS
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<AuthSession(user={self.user_id}, type={self.type}, expires={self.expires_at})>"


class PendingCode(Base):
    """
    Passwordless one-time code awaiting verification.
    Only a SHA-256 digest of the code is kept.
    """
    __tablename__ = 'pending_codes'

    email = Column(String(255), primary_key=True)
    code_hash = Column(String(64), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<PendingCode(email={self.email}, expires={self.expires_at}, attempts={self.attempts})>"


class Attendance(Base):
    """
    Immutable presence event.
    timestamp is set once at creation; metadata may carry a 'course' key.
    """
    __tablename__ = 'attendance'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey('users.id'), nullable=False, index=True)
    student_id = Column(String(50), nullable=True)
    type = Column(String(20), default=AttendanceType.PRESENT.value, nullable=False)
    recognized_by = Column(String(20), nullable=False)  # FACE, VOICE, MANUAL
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    location = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    # 'metadata' is reserved on declarative classes
    meta = Column('metadata', JSON, nullable=True)

    def __repr__(self):
        return f"<Attendance(id={self.id}, user={self.user_id}, type={self.type}, at={self.timestamp})>"

    @property
    def course(self):
        if isinstance(self.meta, dict):
            return self.meta.get("course")
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "studentId": self.student_id,
            "type": self.type,
            "recognizedBy": self.recognized_by,
            "timestamp": isoformat_utc(self.timestamp),
            "location": self.location,
            "notes": self.notes,
            "metadata": self.meta or {},
        }


class SystemConfig(Base):
    """
    System configuration parameters.
    Allows runtime configuration without code changes.
    """
    __tablename__ = 'system_config'

    key = Column(String(100), primary_key=True)
    value = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SystemConfig(key={self.key}, value={self.value})>"


# Default configuration values
DEFAULT_CONFIG = {
    "session_ttl_hours": ("24", "Lifetime of an issued session"),
    "duplicate_window_minutes": ("60", "Repeat PRESENT records inside this window are duplicates"),
    "otp_ttl_minutes": ("10", "Lifetime of a passwordless one-time code"),
    "otp_max_attempts": ("5", "Failed verifications before a pending code is discarded"),
    "totp_skew_windows": ("1", "Adjacent 30-second TOTP windows accepted for clock skew"),
    "session_sweep_interval_seconds": ("3600", "Period of the expired-session sweep"),
}
