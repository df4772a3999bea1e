"""
Session Service for SmartAttend
===============================
Issues, validates and expires opaque bearer tokens.

Validity is checked on every authenticated request. Expired sessions are
removed lazily when discovered and in bulk by a periodic sweep; neither is
atomic with issue/verify.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from .models import AuthSession, SessionType, utcnow
from .db_manager import DatabaseManager

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


class SessionCheck:
    """Outcome of a session verification."""

    def __init__(self, valid: bool, user_id: Optional[str] = None, reason: Optional[str] = None):
        self.valid = valid
        self.user_id = user_id
        self.reason = reason

    def __bool__(self):
        return self.valid

    def __repr__(self):
        return f"<SessionCheck(valid={self.valid}, user={self.user_id}, reason={self.reason})>"


class SessionService:
    """
    Bearer token lifecycle.

    Usage:
        sessions = SessionService(db)
        token = sessions.issue(user.id, SessionType.FACE)
        check = sessions.verify(token)
    """

    def __init__(self, db_manager: DatabaseManager, clock: Callable[[], datetime] = utcnow):
        self.db = db_manager
        self.clock = clock
        self._cache_config()

    def _cache_config(self):
        self.ttl = timedelta(hours=self.db.get_config_int("session_ttl_hours", 24))

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    def issue(self, user_id: str, session_type: SessionType) -> str:
        """Create a session for user_id and return its token."""
        token = secrets.token_hex(TOKEN_BYTES)
        now = self.clock()

        with self.db.get_session() as session:
            session.add(AuthSession(
                token=token,
                user_id=user_id,
                type=SessionType(session_type).value,
                expires_at=now + self.ttl,
                created_at=now
            ))
            session.commit()

        logger.info(f"[SESSION] Issued {SessionType(session_type).value} session for user {user_id}")
        return token

    def verify(self, token: Optional[str]) -> SessionCheck:
        """Check a token. Expired sessions are deleted on discovery."""
        if not token:
            return SessionCheck(False, reason="Invalid session")

        with self.db.get_session() as session:
            auth_session = session.get(AuthSession, token)

            if auth_session is None:
                return SessionCheck(False, reason="Invalid session")

            if auth_session.expires_at <= self.clock():
                session.delete(auth_session)
                session.commit()
                logger.info(f"[SESSION] Expired session removed for user {auth_session.user_id}")
                return SessionCheck(False, reason="Session expired")

            return SessionCheck(True, user_id=auth_session.user_id)

    def revoke(self, token: Optional[str]) -> bool:
        """Delete a session. Revoking an unknown token is not an error."""
        if not token:
            return False

        with self.db.get_session() as session:
            removed = session.query(AuthSession).filter(
                AuthSession.token == token
            ).delete(synchronize_session=False)
            session.commit()

        if removed:
            logger.info("[SESSION] Session revoked")
        return bool(removed)

    def sweep_expired(self) -> int:
        """Bulk-delete every session past its expiry. Returns the count removed."""
        with self.db.get_session() as session:
            removed = session.query(AuthSession).filter(
                AuthSession.expires_at < self.clock()
            ).delete(synchronize_session=False)
            session.commit()

        if removed:
            logger.info(f"[SESSION] Swept {removed} expired sessions")
        return removed
