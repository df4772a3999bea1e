"""
User Service for SmartAttend
============================
Registration and lookups of enrolled users, plus the enrollment steps that
attach a face id or an MFA secret after registration.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from .models import User, Role, ErrorKind
from .db_manager import DatabaseManager

logger = logging.getLogger(__name__)


class UserResult:
    """Result of a user mutation."""

    def __init__(
        self,
        success: bool,
        user: Optional[User] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None
    ):
        self.success = success
        self.user = user
        self.error = error
        self.error_kind = error_kind

    @classmethod
    def failure(cls, kind: ErrorKind, error: str) -> "UserResult":
        return cls(success=False, error=error, error_kind=kind)


class UserService:
    """
    Usage:
        users = UserService(db)
        result = users.register("Ada", "ada@example.com", "STUDENT")
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    @staticmethod
    def normalize_email(email: str) -> str:
        return email.strip().lower()

    def get_by_id(self, user_id: str) -> Optional[User]:
        with self.db.get_session() as session:
            return session.get(User, user_id)

    def get_by_email(self, email: str) -> Optional[User]:
        with self.db.get_session() as session:
            return session.query(User).filter_by(email=self.normalize_email(email)).first()

    def get_by_face_id(self, face_id: str) -> Optional[User]:
        with self.db.get_session() as session:
            return session.query(User).filter_by(face_id=face_id).first()

    def register(self, name: str, email: str, role: Optional[str] = None) -> UserResult:
        """
        Create a user. Email addresses are unique (case-insensitive).
        """
        name = (name or "").strip()
        email = self.normalize_email(email or "")
        if not name or not email:
            return UserResult.failure(ErrorKind.VALIDATION, "Name and email are required")

        role = role or Role.STUDENT.value
        if role not in [r.value for r in Role]:
            return UserResult.failure(ErrorKind.VALIDATION, "Invalid role (ADMIN, TEACHER, or STUDENT)")

        with self.db.get_session() as session:
            if session.query(User).filter_by(email=email).first():
                return UserResult.failure(ErrorKind.CONFLICT, "User with this email already exists")

            user = User(name=name, email=email, role=role)
            session.add(user)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return UserResult.failure(ErrorKind.CONFLICT, "User with this email already exists")
            session.refresh(user)

        logger.info(f"Registered user {user.id} ({role})")
        return UserResult(success=True, user=user)

    def attach_face_id(self, user_id: str, face_id: str) -> UserResult:
        """Bind an external face id to a user. A face id belongs to one user only."""
        with self.db.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                return UserResult.failure(ErrorKind.NOT_FOUND, "User not found")

            owner = session.query(User).filter_by(face_id=face_id).first()
            if owner is not None and owner.id != user_id:
                return UserResult.failure(ErrorKind.CONFLICT, "Face already enrolled for another user")

            user.face_id = face_id
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return UserResult.failure(ErrorKind.CONFLICT, "Face already enrolled for another user")
            session.refresh(user)

        logger.info(f"Face enrolled for user {user_id}")
        return UserResult(success=True, user=user)

    def set_mfa_secret(self, user_id: str, secret: str) -> UserResult:
        """Store a TOTP secret and switch MFA on."""
        with self.db.get_session() as session:
            user = session.get(User, user_id)
            if user is None:
                return UserResult.failure(ErrorKind.NOT_FOUND, "User not found")
            user.mfa_secret = secret
            user.mfa_enabled = True
            session.commit()
            session.refresh(user)

        logger.info(f"MFA enabled for user {user_id}")
        return UserResult(success=True, user=user)
