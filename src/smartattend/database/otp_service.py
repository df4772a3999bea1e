"""
One-time code storage for passwordless login.

Codes are kept as SHA-256 digests with an expiry and a failed-attempt
counter. A code is consumed by the first successful verification.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable

from .models import PendingCode, utcnow
from .db_manager import DatabaseManager

logger = logging.getLogger(__name__)


def generate_code() -> str:
    """Uniform 6-digit code in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class PendingCodeStore:
    """Pending passwordless codes, one per email."""

    def __init__(self, db_manager: DatabaseManager, clock: Callable[[], datetime] = utcnow):
        self.db = db_manager
        self.clock = clock
        self._cache_config()

    def _cache_config(self):
        self.ttl = timedelta(minutes=self.db.get_config_int("otp_ttl_minutes", 10))
        self.max_attempts = self.db.get_config_int("otp_max_attempts", 5)

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    def put(self, email: str, code: str):
        """Store a code for email, replacing any earlier one."""
        now = self.clock()
        with self.db.get_session() as session:
            pending = session.get(PendingCode, email)
            if pending is None:
                pending = PendingCode(email=email)
                session.add(pending)
            pending.code_hash = _digest(code)
            pending.expires_at = now + self.ttl
            pending.attempts = 0
            pending.created_at = now
            session.commit()

    def consume(self, email: str, code: str) -> bool:
        """
        Verify and burn a code.

        Returns True only for a live, matching code. Expired codes and codes
        that reach the attempt limit are deleted.
        """
        with self.db.get_session() as session:
            pending = session.get(PendingCode, email)
            if pending is None:
                return False

            if pending.expires_at <= self.clock():
                session.delete(pending)
                session.commit()
                logger.info("[AUTH] Expired passwordless code discarded")
                return False

            if hmac.compare_digest(pending.code_hash, _digest(code)):
                session.delete(pending)
                session.commit()
                return True

            pending.attempts += 1
            if pending.attempts >= self.max_attempts:
                session.delete(pending)
                logger.warning(f"[AUTH] Passwordless code discarded after {pending.attempts} failed attempts")
            session.commit()
            return False

    def purge_expired(self) -> int:
        """Delete every expired code. Returns the count removed."""
        with self.db.get_session() as session:
            removed = session.query(PendingCode).filter(
                PendingCode.expires_at <= self.clock()
            ).delete(synchronize_session=False)
            session.commit()
        return removed
