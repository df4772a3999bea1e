"""
SmartAttend Backend API
=======================
Flow:
1. Client logs in with face, passwordless code or TOTP (voice is stubbed)
2. A 24h bearer session is issued
3. Each authenticated request verifies the session
4. Attendance is recorded unless a PRESENT record already exists in the
   duplicate window
5. An attendance.created event is sent to the automation webhook in the
   background
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Callable

from fastapi import FastAPI, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__, config
from .auth import Authenticator
from .database import (
    DatabaseManager, SessionService, PendingCodeStore, UserService,
    AttendanceService, DuplicateGuard, ErrorKind, utcnow
)
from .identity_matcher import IdentityMatcher, build_matcher
from .notifier import WebhookNotifier

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_NAME = "SmartAttend API"

STATUS_CODES = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.AUTHENTICATION: 401,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INTERNAL: 500,
}


# ============== Request Models ==============
class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    role: Optional[str] = None


class FaceRequest(BaseModel):
    image: Optional[str] = None
    action: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")


class MfaEnableRequest(BaseModel):
    mfa_code: Optional[str] = Field(None, alias="mfaCode")


# ============== Service Wiring ==============
class Services:
    """Every component of one running app, sharing a single store handle."""

    def __init__(
        self,
        db: DatabaseManager,
        matcher: IdentityMatcher,
        notifier: WebhookNotifier,
        clock: Callable[[], datetime] = utcnow,
        expose_codes: bool = False
    ):
        self.db = db
        self.matcher = matcher
        self.notifier = notifier
        self.users = UserService(db)
        self.sessions = SessionService(db, clock=clock)
        self.codes = PendingCodeStore(db, clock=clock)
        self.auth = Authenticator(
            db, self.sessions, matcher,
            users=self.users,
            codes=self.codes,
            expose_codes=expose_codes,
            issuer=config.TOTP_ISSUER,
            clock=clock
        )
        self.attendance = AttendanceService(
            db, self.sessions,
            guard=DuplicateGuard(db, clock=clock),
            notifier=notifier,
            clock=clock
        )


async def sweep_expired_loop(services: Services, interval: float):
    """Periodically delete expired sessions and passwordless codes."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(services.sessions.sweep_expired)
            await asyncio.to_thread(services.codes.purge_expired)
        except Exception as e:
            logger.error(f"Expired session sweep failed: {e}")


def error_response(kind: ErrorKind, body: dict) -> JSONResponse:
    return JSONResponse(status_code=STATUS_CODES[kind], content=body)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an 'Authorization: Bearer <token>' header."""
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def parse_datetime(value: str) -> datetime:
    """ISO-8601 date or datetime as naive UTC."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


async def read_json_object(request: Request) -> Optional[dict]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    db_manager: Optional[DatabaseManager] = None,
    matcher: Optional[IdentityMatcher] = None,
    notifier: Optional[WebhookNotifier] = None,
    clock: Callable[[], datetime] = utcnow,
    expose_codes: Optional[bool] = None,
    sweep_interval: Optional[float] = None
) -> FastAPI:
    """
    Build the API. Components not supplied are created from config at startup.
    """

    app = FastAPI(
        title=SERVICE_NAME,
        description="Multi-method authentication and attendance tracking",
        version=__version__
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Open the store and wire every service."""
        logger.info("=" * 60)
        logger.info("Starting SmartAttend Backend")
        logger.info("=" * 60)

        db = db_manager or DatabaseManager(config.DATABASE_URL, echo=config.DATABASE_ECHO)
        if not db.initialize():
            raise RuntimeError("Database initialization failed")

        services = Services(
            db,
            matcher or build_matcher(
                config.LUXAND_API_TOKEN,
                base_url=config.LUXAND_API_URL,
                collection=config.LUXAND_COLLECTION,
                timeout=config.MATCHER_TIMEOUT_SECONDS,
                production=config.IS_PRODUCTION
            ),
            notifier or WebhookNotifier(
                config.WEBHOOK_URL,
                secret=config.WEBHOOK_SECRET,
                timeout=config.WEBHOOK_TIMEOUT_SECONDS
            ),
            clock=clock,
            expose_codes=config.EXPOSE_OTP_CODES if expose_codes is None else expose_codes
        )
        app.state.services = services

        interval = sweep_interval or db.get_config_int("session_sweep_interval_seconds", 3600)
        app.state.sweeper = asyncio.create_task(sweep_expired_loop(services, interval))

        db_stats = db.get_stats()
        logger.info("-" * 60)
        logger.info(f"Environment: {config.APP_ENV}")
        logger.info(f"Database: ✓ Initialized ({db_stats['total_users']} users, {db_stats['total_attendance']} attendance records)")
        logger.info(f"Identity Matcher: {'MOCK' if services.matcher.mock else '✓ Luxand'}")
        logger.info(f"Webhook: {'✓ Configured' if services.notifier.configured else '✗ Disabled'}")
        logger.info("=" * 60)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweeper and release outbound clients."""
        services: Services = app.state.services
        app.state.sweeper.cancel()
        try:
            await app.state.sweeper
        except asyncio.CancelledError:
            pass
        await services.notifier.close()
        await services.matcher.close()
        if db_manager is None:
            services.db.close()
        logger.info("SmartAttend Backend stopped")

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())})

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/")
    def root(request: Request):
        """Health check endpoint."""
        services: Services = request.app.state.services
        return {
            "status": "online",
            "service": SERVICE_NAME,
            "matcher": "mock" if services.matcher.mock else "luxand",
            "notifier": services.notifier.configured,
            "database": services.db.get_stats()
        }

    # ============== Auth Endpoints ==============

    @app.post("/auth/login")
    async def login(request: Request):
        """Authenticate with face, voice, passwordless code or MFA."""
        services: Services = request.app.state.services
        body = await read_json_object(request)
        if body is None:
            body = {}

        result = await services.auth.authenticate(body)
        if not result.success:
            return error_response(result.error_kind, result.to_dict())
        return result.to_dict()

    @app.get("/auth/login")
    def auth_status(request: Request, authorization: Optional[str] = Header(None)):
        """Report whether the bearer token is a live session."""
        services: Services = request.app.state.services
        token = bearer_token(authorization)
        if not token:
            return {"authenticated": False, "message": "No token provided"}

        check = services.sessions.verify(token)
        if not check.valid:
            return {"authenticated": False, "error": check.reason}

        user = services.users.get_by_id(check.user_id)
        return {"authenticated": True, "user": user.to_dict() if user else None}

    @app.post("/auth/logout")
    def logout(request: Request, authorization: Optional[str] = Header(None)):
        """Revoke the bearer token."""
        services: Services = request.app.state.services
        token = bearer_token(authorization)
        if not token:
            return error_response(ErrorKind.AUTHENTICATION, {"error": "Authentication required"})
        services.sessions.revoke(token)
        return {"success": True}

    @app.post("/auth/register")
    def register(payload: RegisterRequest, request: Request):
        """Register a new user."""
        services: Services = request.app.state.services
        result = services.users.register(payload.name, payload.email, payload.role)
        if not result.success:
            return error_response(result.error_kind, {"error": result.error})
        return {"success": True, "userId": result.user.id, "user": result.user.to_dict()}

    @app.post("/auth/mfa/enable")
    def enable_mfa(
        request: Request,
        payload: Optional[MfaEnableRequest] = None,
        authorization: Optional[str] = Header(None)
    ):
        """Turn on TOTP MFA for the session's user, or reset it with a current code."""
        services: Services = request.app.state.services
        token = bearer_token(authorization)
        if not token:
            return error_response(ErrorKind.AUTHENTICATION, {"error": "Authentication required"})
        check = services.sessions.verify(token)
        if not check.valid:
            return error_response(ErrorKind.AUTHENTICATION, {"error": check.reason})

        result = services.auth.enable_mfa(check.user_id, payload.mfa_code if payload else None)
        if not result.success:
            return error_response(result.error_kind, result.to_dict())
        return result.to_dict()

    # ============== Face Endpoints ==============

    @app.post("/ai/face")
    async def face(payload: FaceRequest, request: Request):
        """Enroll a face (action=register) or identify one."""
        services: Services = request.app.state.services
        if not payload.image:
            return error_response(ErrorKind.VALIDATION, {"error": "Image data is required"})

        if payload.action == "register":
            if not payload.user_id:
                return error_response(ErrorKind.VALIDATION, {"error": "userId is required for registration"})
            result = await services.auth.enroll_face(payload.user_id, payload.image)
        else:
            result = await services.auth.identify_face(payload.image)

        if not result.success:
            return error_response(result.error_kind, {"success": False, **result.to_dict()})
        return result.to_dict()

    # ============== Attendance Endpoints ==============

    @app.post("/attendance", status_code=201)
    async def record_attendance(request: Request, authorization: Optional[str] = Header(None)):
        """Record attendance for the session's user."""
        services: Services = request.app.state.services
        token = bearer_token(authorization)
        body = await read_json_object(request)
        if token and body is None:
            return error_response(ErrorKind.VALIDATION, {"error": "Request body must be a JSON object"})

        result = await services.attendance.record(token, body or {})
        if not result.success:
            return error_response(result.error_kind, result.to_dict())
        return result.to_dict()

    @app.get("/attendance")
    def list_attendance(
        request: Request,
        authorization: Optional[str] = Header(None),
        userId: Optional[str] = None,
        startDate: Optional[str] = None,
        endDate: Optional[str] = None,
        limit: Optional[str] = None
    ):
        """Get attendance records."""
        services: Services = request.app.state.services
        token = bearer_token(authorization)
        if not token:
            return error_response(ErrorKind.AUTHENTICATION, {"error": "Authentication required"})
        check = services.sessions.verify(token)
        if not check.valid:
            return error_response(ErrorKind.AUTHENTICATION, {"error": check.reason})

        try:
            start = parse_datetime(startDate) if startDate else None
            end = parse_datetime(endDate) if endDate else None
        except ValueError:
            return error_response(ErrorKind.VALIDATION, {"error": "Invalid date format. Use ISO-8601"})

        try:
            max_rows = int(limit) if limit else 50
        except ValueError:
            return error_response(ErrorKind.VALIDATION, {"error": "limit must be an integer"})

        attendances = services.attendance.list_attendance(
            userId or check.user_id, start=start, end=end, limit=max_rows
        )
        return {
            "success": True,
            "count": len(attendances),
            "attendances": [a.to_dict() for a in attendances]
        }

    return app


app = create_app()


def run():
    """Console entry point."""
    import uvicorn
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
