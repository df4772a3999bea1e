"""
Multi-Method Authenticator
==========================
Turns a login request into a session.

Strategies:
- face: identity matcher lookup, then the user owning the returned face id
- voice: not implemented, always fails
- passwordless: emailed 6-digit code, initiate then verify
- mfa: RFC 6238 TOTP against the user's shared secret

Failure messages never reveal whether an account exists for passwordless
login.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..database.models import ErrorKind, SessionType, utcnow
from ..database.db_manager import DatabaseManager
from ..database.otp_service import PendingCodeStore, generate_code
from ..database.session_service import SessionService
from ..database.user_service import UserService
from ..identity_matcher import IdentityMatcher
from . import totp
from .requests import (
    FaceLogin, VoiceLogin, PasswordlessInitiate, PasswordlessVerify, MfaLogin,
    InvalidLoginRequest, parse_login_request
)

logger = logging.getLogger(__name__)


class AuthResult:
    """
    Result of an authentication operation.
    Provides a structured response for API endpoints.
    """

    def __init__(
        self,
        success: bool,
        method: Optional[str] = None,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        message: Optional[str] = None,
        code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ):
        self.success = success
        self.method = method
        self.token = token
        self.user_id = user_id
        self.error = error
        self.error_kind = error_kind
        self.message = message
        self.code = code
        self.extra = extra or {}

    @classmethod
    def failure(cls, kind: ErrorKind, error: str, method: Optional[str] = None, **extra) -> "AuthResult":
        return cls(success=False, method=method, error=error, error_kind=kind, extra=extra)

    def to_dict(self) -> dict:
        """Convert to dictionary for API response."""
        if not self.success:
            return {"error": self.error, **self.extra}

        result = {"success": True}
        if self.token:
            result["token"] = self.token
        if self.user_id:
            result["userId"] = self.user_id
        if self.method:
            result["method"] = self.method
        if self.message:
            result["message"] = self.message
        if self.code:
            result["code"] = self.code
        result.update(self.extra)
        return result


class Authenticator:
    """
    Dispatches login requests to their strategy and issues sessions.

    Usage:
        auth = Authenticator(db, sessions, matcher)
        result = await auth.authenticate({"method": "mfa", "userId": uid, "mfaCode": "123456"})
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        sessions: SessionService,
        matcher: IdentityMatcher,
        users: Optional[UserService] = None,
        codes: Optional[PendingCodeStore] = None,
        expose_codes: bool = False,
        issuer: str = "SmartAttend",
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            db_manager: Store handle shared by every service
            sessions: Session service that issues tokens
            matcher: Face identity matcher
            users: User service. Built from db_manager if not provided.
            codes: Passwordless code store. Built from db_manager if not provided.
            expose_codes: Return passwordless codes to the caller (never in production)
            issuer: Issuer name shown by authenticator apps
            clock: Source of the current time (naive UTC)
        """
        self.db = db_manager
        self.sessions = sessions
        self.matcher = matcher
        self.users = users or UserService(db_manager)
        self.codes = codes or PendingCodeStore(db_manager, clock=clock)
        self.expose_codes = expose_codes
        self.issuer = issuer
        self.clock = clock
        self._strategies = {
            FaceLogin: self._authenticate_face,
            VoiceLogin: self._authenticate_voice,
            PasswordlessInitiate: self._initiate_passwordless,
            PasswordlessVerify: self._verify_passwordless,
            MfaLogin: self._authenticate_mfa,
        }
        self._cache_config()

    def _cache_config(self):
        self.totp_window = self.db.get_config_int("totp_skew_windows", 1)

    def refresh_config(self):
        """Refresh cached configuration from database."""
        self._cache_config()

    async def authenticate(self, request: Any) -> AuthResult:
        """
        Authenticate a login request.

        Args:
            request: Raw JSON body or an already parsed login variant

        Returns:
            AuthResult with a session token on success
        """
        try:
            login = request if type(request) in self._strategies else parse_login_request(request)
        except InvalidLoginRequest as e:
            logger.info(f"[AUTH] Rejected login request: {e.detail}")
            return AuthResult.failure(ErrorKind.VALIDATION, e.message, supportedMethods=e.to_dict()["supportedMethods"])

        strategy = self._strategies[type(login)]
        try:
            if asyncio.iscoroutinefunction(strategy):
                return await strategy(login)
            # Store-only strategies run off the event loop
            return await asyncio.to_thread(strategy, login)
        except Exception as e:
            logger.error(f"[AUTH] {login.method} authentication error: {e}", exc_info=True)
            return AuthResult.failure(ErrorKind.INTERNAL, "Authentication failed", method=login.method)

    def _issue(self, user_id: str, session_type: SessionType, method: str) -> AuthResult:
        token = self.sessions.issue(user_id, session_type)
        return AuthResult(success=True, method=method, token=token, user_id=user_id)

    def _timestamp(self) -> float:
        """Unix time of the injected clock, for TOTP counters."""
        return self.clock().replace(tzinfo=timezone.utc).timestamp()

    # ============== Strategies ==============

    async def _authenticate_face(self, login: FaceLogin) -> AuthResult:
        match = await self.matcher.recognize(login.image)
        if not match.success or not match.face_id:
            logger.info(f"[AUTH] Face recognition failed: {match.error}")
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Face recognition failed", method="face")

        user = await asyncio.to_thread(self.users.get_by_face_id, match.face_id)
        if user is None:
            logger.info("[AUTH] Recognized face is not enrolled to any user")
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "User not found", method="face")

        logger.info(f"[AUTH] Face login for user {user.id} (confidence {match.confidence})")
        return await asyncio.to_thread(self._issue, user.id, SessionType.FACE, "face")

    def _authenticate_voice(self, login: VoiceLogin) -> AuthResult:
        return AuthResult.failure(
            ErrorKind.AUTHENTICATION, "Voice authentication not yet implemented", method="voice"
        )

    def _initiate_passwordless(self, login: PasswordlessInitiate) -> AuthResult:
        code = generate_code()
        user = self.users.get_by_email(login.email)

        if user is not None:
            self.codes.put(UserService.normalize_email(login.email), code)
            # TODO: deliver the code by email once an outbound mail transport is configured
            logger.info(f"[AUTH] Passwordless code issued for user {user.id}")
        else:
            # Same response shape for unknown emails; this code is never stored
            logger.info("[AUTH] Passwordless initiation for unknown email")

        return AuthResult(
            success=True,
            method="passwordless",
            message="Authentication code sent",
            code=code if self.expose_codes else None
        )

    def _verify_passwordless(self, login: PasswordlessVerify) -> AuthResult:
        if not totp.CODE_PATTERN.fullmatch(login.code):
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Invalid code format", method="passwordless")

        user = self.users.get_by_email(login.email)
        if user is None or not self.codes.consume(user.email, login.code):
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Invalid code", method="passwordless")

        logger.info(f"[AUTH] Passwordless login for user {user.id}")
        return self._issue(user.id, SessionType.PASSWORDLESS, "passwordless")

    def _authenticate_mfa(self, login: MfaLogin) -> AuthResult:
        user = self.users.get_by_id(login.user_id)
        if user is None or not user.mfa_enabled or not user.mfa_secret:
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "MFA not enabled for this user", method="mfa")

        if not totp.verify_totp(user.mfa_secret, login.mfa_code, at=self._timestamp(), window=self.totp_window):
            logger.info(f"[AUTH] Invalid MFA code for user {user.id}")
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Invalid MFA code", method="mfa")

        logger.info(f"[AUTH] MFA login for user {user.id}")
        return self._issue(user.id, SessionType.MFA, "mfa")

    # ============== Enrollment ==============

    def enable_mfa(self, user_id: str, mfa_code: Optional[str] = None) -> AuthResult:
        """
        Generate and store a TOTP secret; returns it with an otpauth:// URI.

        Replacing the secret of a user who already has MFA on requires a
        current code from the old secret.
        """
        user = self.users.get_by_id(user_id)
        if user is None:
            return AuthResult.failure(ErrorKind.NOT_FOUND, "User not found")

        if user.mfa_enabled and user.mfa_secret:
            if not mfa_code:
                return AuthResult.failure(
                    ErrorKind.CONFLICT, "MFA already enabled; a current MFA code is required to reset it"
                )
            if not totp.verify_totp(user.mfa_secret, mfa_code, at=self._timestamp(), window=self.totp_window):
                logger.info(f"[AUTH] MFA reset refused for user {user_id}: invalid code")
                return AuthResult.failure(ErrorKind.AUTHENTICATION, "Invalid MFA code")

        secret = totp.generate_secret()
        result = self.users.set_mfa_secret(user_id, secret)
        if not result.success:
            return AuthResult.failure(result.error_kind, result.error)

        return AuthResult(
            success=True,
            user_id=user_id,
            extra={
                "secret": secret,
                "qrCodeUrl": totp.provisioning_uri(secret, result.user.email, self.issuer),
            }
        )

    async def enroll_face(self, user_id: str, image: str) -> AuthResult:
        """Register a face with the matcher and bind the returned id to the user."""
        user = await asyncio.to_thread(self.users.get_by_id, user_id)
        if user is None:
            return AuthResult.failure(ErrorKind.NOT_FOUND, "User not found")

        match = await self.matcher.register(user_id, image, name=user.name)
        if not match.success or not match.face_id:
            logger.error(f"[AUTH] Face registration failed for user {user_id}: {match.error}")
            return AuthResult.failure(ErrorKind.INTERNAL, "Face registration failed")

        result = await asyncio.to_thread(self.users.attach_face_id, user_id, match.face_id)
        if not result.success:
            return AuthResult.failure(result.error_kind, result.error)

        return AuthResult(
            success=True,
            user_id=user_id,
            message="Face registered successfully",
            extra={"faceId": match.face_id}
        )

    async def identify_face(self, image: str) -> AuthResult:
        """Resolve a photo to an enrolled user without issuing a session."""
        match = await self.matcher.recognize(image)
        if not match.success or not match.face_id:
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Face not recognized")

        user = await asyncio.to_thread(self.users.get_by_face_id, match.face_id)
        if user is None:
            return AuthResult.failure(ErrorKind.AUTHENTICATION, "Face not recognized", confidence=match.confidence)

        return AuthResult(
            success=True,
            user_id=user.id,
            extra={"user": user.to_dict(), "confidence": match.confidence, "faceId": match.face_id}
        )
