"""
Attendance Service for SmartAttend
==================================
Core business logic for attendance tracking.

Features:
- Session-authenticated recording of presence events
- Sliding-window duplicate detection, optionally scoped by course
- Fire-and-forget notification of every created record
- Per-user and date-range queries

Duplicate detection is a read-only check, not a lock: two concurrent requests
for the same user can both pass it and both be recorded.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, List

from .models import (
    Attendance, AttendanceType, RecognitionType, ErrorKind, isoformat_utc, utcnow
)
from .db_manager import DatabaseManager
from .session_service import SessionService

# Configure logging
logger = logging.getLogger(__name__)

ATTENDANCE_CREATED_EVENT = "attendance.created"
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 500
TEXT_FIELDS = ("studentId", "location", "notes", "course")


class AttendanceResult:
    """
    Result of an attendance operation.
    Provides a structured response for API endpoints.
    """

    def __init__(
        self,
        success: bool,
        attendance: Optional[Attendance] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        is_duplicate: bool = False,
        existing_attendance: Optional[Attendance] = None
    ):
        self.success = success
        self.attendance = attendance
        self.error = error
        self.error_kind = error_kind
        self.is_duplicate = is_duplicate
        self.existing_attendance = existing_attendance

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "AttendanceResult":
        return cls(success=False, error=error, error_kind=kind)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        if self.success:
            return {"success": True, "attendance": self.attendance.to_dict()}

        result = {"success": False, "error": self.error}
        if self.is_duplicate and self.existing_attendance is not None:
            existing = self.existing_attendance
            result["isDuplicate"] = True
            result["message"] = "Attendance already recorded within the duplicate window"
            result["existingAttendance"] = {
                "id": existing.id,
                "timestamp": isoformat_utc(existing.timestamp),
                "location": existing.location,
            }
        return result


class DuplicateCheck:
    """Outcome of a duplicate-window lookup."""

    def __init__(self, is_duplicate: bool, existing_attendance: Optional[Attendance] = None):
        self.is_duplicate = is_duplicate
        self.existing_attendance = existing_attendance

    def __repr__(self):
        existing = self.existing_attendance.id if self.existing_attendance else None
        return f"<DuplicateCheck(is_duplicate={self.is_duplicate}, existing={existing})>"


class DuplicateGuard:
    """
    Finds a PRESENT record for the same user inside [now - window, now].
    """

    def __init__(self, db_manager: DatabaseManager, clock: Callable[[], datetime] = utcnow):
        self.db = db_manager
        self.clock = clock
        self._cache_config()

    def _cache_config(self):
        self.window_minutes = self.db.get_config_int("duplicate_window_minutes", 60)

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    def check_duplicate(
        self,
        user_id: str,
        course: Optional[str] = None,
        window_minutes: Optional[int] = None
    ) -> DuplicateCheck:
        """
        Look for a redundant PRESENT record.

        With a course, the newest record in the window for that course is the
        candidate; without one, the newest record in the window regardless of
        course.
        """
        if window_minutes is None:
            window_minutes = self.window_minutes
        now = self.clock()
        window_start = now - timedelta(minutes=window_minutes)

        with self.db.get_session() as session:
            recent = session.query(Attendance).filter(
                Attendance.user_id == user_id,
                Attendance.type == AttendanceType.PRESENT.value,
                Attendance.timestamp >= window_start,
                Attendance.timestamp <= now
            ).order_by(Attendance.timestamp.desc()).all()

        if course:
            existing = next((att for att in recent if att.course == course), None)
        else:
            existing = recent[0] if recent else None

        if existing is not None:
            logger.debug(f"Duplicate found for user {user_id}: {existing.id} at {existing.timestamp}")
        return DuplicateCheck(existing is not None, existing)


class AttendanceService:
    """
    Main service for handling attendance operations.

    Usage:
        service = AttendanceService(db, sessions, notifier=notifier)
        result = await service.record(token, {"recognizedBy": "FACE", "course": "CS101"})
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        sessions: SessionService,
        guard: Optional[DuplicateGuard] = None,
        notifier=None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize attendance service.

        Args:
            db_manager: Store handle shared by every service
            sessions: Session service used to authenticate callers
            guard: Duplicate guard. Built from db_manager if not provided.
            notifier: Object with dispatch(event, data); None disables notifications
            clock: Source of the current time (naive UTC)
        """
        self.db = db_manager
        self.sessions = sessions
        self.clock = clock
        self.guard = guard or DuplicateGuard(db_manager, clock=clock)
        self.notifier = notifier

    async def record(self, token: Optional[str], payload: Dict[str, Any]) -> AttendanceResult:
        """
        Record a presence event for the session's user.

        This is the main entry point for attendance logging.

        Args:
            token: Bearer token of the caller
            payload: recognizedBy, type, studentId, location, notes, metadata,
                course, skipDuplicateCheck

        Returns:
            AttendanceResult with the created record, a duplicate conflict or an error
        """
        result = await asyncio.to_thread(self._record_sync, token, payload)

        # Step 5: Notify, without waiting for delivery
        if result.success:
            self._notify_created(result.attendance)

        return result

    def _record_sync(self, token: Optional[str], payload: Dict[str, Any]) -> AttendanceResult:
        # Step 1: Authenticate
        if not token:
            return AttendanceResult.failure(ErrorKind.AUTHENTICATION, "Authentication required")

        check = self.sessions.verify(token)
        if not check.valid:
            return AttendanceResult.failure(ErrorKind.AUTHENTICATION, check.reason or "Invalid session")
        user_id = check.user_id

        # Step 2: Validate payload
        recognized_by = payload.get("recognizedBy")
        if recognized_by not in [r.value for r in RecognitionType]:
            return AttendanceResult.failure(
                ErrorKind.VALIDATION,
                "Valid recognition type is required (FACE, VOICE, or MANUAL)"
            )

        attendance_type = payload.get("type") or AttendanceType.PRESENT.value
        if attendance_type not in [t.value for t in AttendanceType]:
            return AttendanceResult.failure(
                ErrorKind.VALIDATION,
                "Invalid attendance type (PRESENT, ABSENT, LATE, or EXCUSED)"
            )

        for field in TEXT_FIELDS:
            value = payload.get(field)
            if value is not None and not isinstance(value, str):
                return AttendanceResult.failure(ErrorKind.VALIDATION, f"{field} must be a string")

        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            return AttendanceResult.failure(ErrorKind.VALIDATION, "metadata must be an object")

        course = payload.get("course") or metadata.get("course")

        try:
            # Step 3: Duplicate window
            if not payload.get("skipDuplicateCheck") and attendance_type == AttendanceType.PRESENT.value:
                duplicate = self.guard.check_duplicate(user_id, course)
                if duplicate.is_duplicate:
                    logger.info(
                        f"[ATTENDANCE] DUPLICATE: user {user_id} already recorded "
                        f"at {duplicate.existing_attendance.timestamp}"
                    )
                    return AttendanceResult(
                        success=False,
                        error="Duplicate attendance",
                        error_kind=ErrorKind.CONFLICT,
                        is_duplicate=True,
                        existing_attendance=duplicate.existing_attendance
                    )

            # Step 4: Persist
            if payload.get("course"):
                metadata = {**metadata, "course": payload["course"]}
            attendance = self._create_attendance(
                user_id=user_id,
                student_id=payload.get("studentId") or None,
                attendance_type=attendance_type,
                recognized_by=recognized_by,
                location=payload.get("location") or None,
                notes=payload.get("notes") or None,
                metadata=metadata
            )

        except Exception as e:
            logger.error(f"[ATTENDANCE] ERROR: {e}", exc_info=True)
            return AttendanceResult.failure(ErrorKind.INTERNAL, "Internal server error")

        logger.info(f"[ATTENDANCE] SUCCESS: {attendance_type} recorded for user {user_id} via {recognized_by}")
        return AttendanceResult(success=True, attendance=attendance)

    def _create_attendance(
        self,
        user_id: str,
        student_id: Optional[str],
        attendance_type: str,
        recognized_by: str,
        location: Optional[str],
        notes: Optional[str],
        metadata: Dict[str, Any]
    ) -> Attendance:
        """Create and persist an attendance record."""
        with self.db.get_session() as session:
            attendance = Attendance(
                user_id=user_id,
                student_id=student_id,
                type=attendance_type,
                recognized_by=recognized_by,
                timestamp=self.clock(),
                location=location,
                notes=notes,
                meta=metadata
            )
            session.add(attendance)
            session.commit()
            session.refresh(attendance)

            logger.debug(f"Created attendance: id={attendance.id}, type={attendance_type}")
            return attendance

    def _notify_created(self, attendance: Attendance):
        if self.notifier is None:
            return
        try:
            self.notifier.dispatch(ATTENDANCE_CREATED_EVENT, {
                "attendanceId": attendance.id,
                "userId": attendance.user_id,
                "studentId": attendance.student_id,
                "type": attendance.type,
                "timestamp": isoformat_utc(attendance.timestamp),
            })
        except Exception as e:
            logger.error(f"[ATTENDANCE] Notification dispatch failed: {e}")

    # ============== Query Methods ==============

    def get_user_attendance(self, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[Attendance]:
        """Most recent attendance records of a user."""
        with self.db.get_session() as session:
            return session.query(Attendance).filter(
                Attendance.user_id == user_id
            ).order_by(Attendance.timestamp.desc()).limit(limit).all()

    def get_attendance_by_date_range(self, start: datetime, end: datetime) -> List[Attendance]:
        """All attendance records with start <= timestamp <= end."""
        with self.db.get_session() as session:
            return session.query(Attendance).filter(
                Attendance.timestamp >= start,
                Attendance.timestamp <= end
            ).order_by(Attendance.timestamp.desc()).all()

    def list_attendance(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Attendance]:
        """Date-range query when both bounds are given, else the user's latest records."""
        if start is not None and end is not None:
            return self.get_attendance_by_date_range(start, end)
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        return self.get_user_attendance(user_id, limit)
