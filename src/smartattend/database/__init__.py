"""
Database Module for SmartAttend
===============================
SQLAlchemy-backed store and the services built on it:
- Users and enrollment (face id, MFA secret)
- Bearer sessions with lazy expiry and sweep
- Passwordless one-time codes
- Attendance recording with duplicate-window detection
"""

from .models import (
    User, AuthSession, PendingCode, Attendance, SystemConfig,
    Role, SessionType, AttendanceType, RecognitionType, ErrorKind, isoformat_utc, utcnow
)
from .db_manager import DatabaseManager
from .session_service import SessionService, SessionCheck
from .otp_service import PendingCodeStore, generate_code
from .user_service import UserService, UserResult
from .attendance_service import AttendanceService, AttendanceResult, DuplicateGuard, DuplicateCheck

__all__ = [
    'User',
    'AuthSession',
    'PendingCode',
    'Attendance',
    'SystemConfig',
    'Role',
    'SessionType',
    'AttendanceType',
    'RecognitionType',
    'ErrorKind',
    'isoformat_utc',
    'utcnow',
    'DatabaseManager',
    'SessionService',
    'SessionCheck',
    'PendingCodeStore',
    'generate_code',
    'UserService',
    'UserResult',
    'AttendanceService',
    'AttendanceResult',
    'DuplicateGuard',
    'DuplicateCheck'
]
