"""
USAFFE Backend - Main FastAPI Application
"""

import logging
import os
import re
import secrets
import sqlite3
from typing import Any, Dict, List, Optional, Union
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends, Body
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from audit import log_action, get_audit_logs, get_audit_log_count
from auth import AdminSession, admin_auth, list_admin_keys, parse_bearer_token, get_session_member
from config import config
from database import init_db
from errors import USAFFEError, InvalidInput, NotFound, StorageError, Unauthorized, UpstreamUnavailable
from members import resolve_member, adjust_counters, set_rank, list_members, parse_counter_deltas, counters_of
from roblox_client import RobloxAPIError, lookup_username, fetch_avatar_url
from roster import create_training, add_attendees, award_medal, get_member_profile, get_command_stats
from verification import start_verification, check_verification

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SensitiveDataFilter(logging.Filter):
    """Filter to redact keys and bearer tokens from log messages."""

    SENSITIVE_PATTERNS = [
        (re.compile(r'([?&]key=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'(Bearer\s+)[A-Za-z0-9_\-\.]+', re.IGNORECASE), r'\1[REDACTED]'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            msg = str(record.msg)
            for pattern, replacement in self.SENSITIVE_PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


# Apply filter to httpx logger and our own
logging.getLogger("httpx").addFilter(SensitiveDataFilter())
logger.addFilter(SensitiveDataFilter())


# Rate limiter - disabled in test mode
def get_rate_limit_key(request: Request) -> str:
    """Get rate limit key, return empty string in test mode to disable."""
    if config.TESTING:
        return ""
    return get_remote_address(request)

limiter = Limiter(key_func=get_rate_limit_key, enabled=not config.TESTING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    init_db()
    if config.ALLOW_OPEN_ADMIN_KEY_CREATION:
        logger.warning(
            "ALLOW_OPEN_ADMIN_KEY_CREATION is enabled: anyone can mint admin keys via "
            "POST /api/admin-keys/create. This is a known weakness kept for compatibility."
        )
    yield
    admin_auth.sessions.clear()


# Initialize app
app = FastAPI(
    title="USAFFE Backend",
    description="""
Roster and management backend for USAFFE.

## Features
- **Roster**: members keyed by Roblox account, ranks and score counters
- **Trainings & Medals**: attendance and award history
- **Verification**: prove control of a Roblox account with a one-time code in the profile description
- **Admin**: single-use admin keys exchanged for bearer sessions

## Authentication
- Admin endpoints require `Authorization: Bearer <token>` from `/api/admin/login`
- Admin key issuance requires an admin session or the `X-Admin-Key` bootstrap header
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "public", "description": "Public endpoints (no auth required)"},
        {"name": "roster", "description": "Members, trainings and medals"},
        {"name": "verification", "description": "Roblox account verification"},
        {"name": "admin", "description": "Admin keys, sessions and management"},
    ],
)

# Add rate limiter to app
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", "X-Admin-Key"],
)


# ============================================================
# ERROR HANDLERS
# ============================================================

@app.exception_handler(USAFFEError)
async def usaffe_error_handler(request: Request, exc: USAFFEError):
    """Turn domain errors into JSON with a machine-readable reason."""
    if exc.status_code >= 500:
        logger.error(f"{exc.reason} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": exc.reason}
    )


@app.exception_handler(sqlite3.Error)
async def storage_error_handler(request: Request, exc: sqlite3.Error):
    """Storage failures are logged and surfaced without internals."""
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=True)
    error = StorageError()
    return JSONResponse(
        status_code=error.status_code,
        content={"detail": error.message, "reason": error.reason}
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Report body validation failures as 400 invalid_input."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        errors.append({"field": field, "message": error["msg"]})
    detail = "; ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors)
    return JSONResponse(
        status_code=400,
        content={"detail": detail or "Invalid request body", "reason": "invalid_input", "errors": errors}
    )


# ============================================================
# REQUEST MODELS
# ============================================================

def _id_to_str(v):
    """Roblox ids arrive as JSON numbers or strings."""
    if v is None:
        return None
    if isinstance(v, bool):
        raise ValueError("must be a string or integer id")
    if isinstance(v, int):
        return str(v)
    return v


class PromoteRequest(BaseModel):
    newRank: Optional[str] = None


class TrainingCreate(BaseModel):
    type: Optional[str] = None
    date: Optional[str] = None
    host_id: Optional[str] = None

    @field_validator("host_id", mode="before")
    @classmethod
    def coerce_host_id(cls, v):
        return _id_to_str(v)


class AttendeesRequest(BaseModel):
    attendees: Optional[List[Any]] = None


class MedalAward(BaseModel):
    medal_id: Optional[Union[int, str]] = None
    user_id: Optional[str] = None
    user_roblox_id: Optional[str] = None
    awarded_by: Optional[str] = None
    awarded_by_roblox_id: Optional[str] = None
    reason: Optional[str] = None

    @field_validator("user_id", "user_roblox_id", "awarded_by", "awarded_by_roblox_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _id_to_str(v)


class AdminLogin(BaseModel):
    key: Optional[str] = None


class RobloxLookup(BaseModel):
    username: Optional[str] = None


class VerificationRequest(BaseModel):
    roblox_id: Optional[str] = None
    external_id: Optional[str] = None

    @field_validator("roblox_id", "external_id", mode="before")
    @classmethod
    def coerce_ids(cls, v):
        return _id_to_str(v)

    def target(self) -> str:
        target = self.roblox_id or self.external_id
        if not target or not target.strip():
            raise InvalidInput("roblox_id is required")
        return target.strip()


# ============================================================
# AUTH DEPENDENCIES
# ============================================================

def require_admin(request: Request) -> AdminSession:
    """Require a live admin session bearer token."""
    token = parse_bearer_token(request.headers.get("Authorization"))
    return admin_auth.authorize(token)


def verify_key_issuer(request: Request) -> str:
    """
    Gate admin key issuance. Returns the audit actor.

    Accepts the X-Admin-Key bootstrap header or an admin session, unless open
    issuance is explicitly enabled.
    """
    if config.ALLOW_OPEN_ADMIN_KEY_CREATION:
        return "anonymous"

    admin_key = request.headers.get("X-Admin-Key")
    if admin_key and secrets.compare_digest(admin_key, config.ADMIN_KEY):
        return "bootstrap"

    token = parse_bearer_token(request.headers.get("Authorization"))
    if token:
        session = admin_auth.authorize(token)
        return f"admin:{session.key_id}"

    raise Unauthorized("Admin key creation requires authorization")


def get_actor(request: Request) -> str:
    """Audit actor for endpoints that do not require auth."""
    token = parse_bearer_token(request.headers.get("Authorization"))
    if token:
        session = admin_auth.sessions.get(token)
        if session:
            return f"admin:{session.key_id}"
    return "anonymous"


def get_client_ip(request: Request) -> Optional[str]:
    """Get real client IP, handling proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # The first entry is the original client
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


# ============================================================
# PUBLIC ENDPOINTS
# ============================================================

@app.get("/", response_class=PlainTextResponse, tags=["public"])
async def root():
    return "USAFFE backend is running and accepting requests."


@app.get("/health", tags=["public"])
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/avatar/{roblox_id}", tags=["public"])
async def avatar_proxy(roblox_id: str):
    """Headshot URL for a Roblox account. Never fails; imageUrl is null when unavailable."""
    image_url = await fetch_avatar_url(roblox_id)
    return {"imageUrl": image_url}


# ============================================================
# MEMBERS
# ============================================================

@app.get("/api/users/{identifier}", tags=["roster"])
async def get_user(identifier: str):
    """Member by internal or Roblox id, with medals and trainings."""
    return await get_member_profile(identifier)


@app.post("/api/users/{identifier}/adjust", tags=["roster"])
async def adjust_user(request: Request, identifier: str, body: Dict[str, Any] = Body(...)):
    """Apply counter deltas, e.g. {"pointsDelta": 5}."""
    deltas = parse_counter_deltas(body)
    member = resolve_member(identifier)
    member = adjust_counters(member["id"], deltas)

    log_action(
        actor=get_actor(request),
        action="counters_adjusted",
        target_type="member",
        target_id=member["roblox_id"],
        details=", ".join(f"{name}{delta:+d}" for name, delta in deltas.items()),
        ip_address=get_client_ip(request)
    )
    return {"success": True, "member_id": member["id"], **counters_of(member)}


@app.post("/api/users/{identifier}/promote", tags=["roster"])
async def promote_user(request: Request, identifier: str, promote: PromoteRequest):
    """Set a member's rank."""
    if not promote.newRank or not promote.newRank.strip():
        raise InvalidInput("newRank is required")
    member = resolve_member(identifier)
    member = set_rank(member["id"], promote.newRank)

    log_action(
        actor=get_actor(request),
        action="member_promoted",
        target_type="member",
        target_id=member["roblox_id"],
        details=member["rank"],
        ip_address=get_client_ip(request)
    )
    return {"success": True, "rank": member["rank"]}


# ============================================================
# TRAININGS AND MEDALS
# ============================================================

@app.post("/api/trainings/create", tags=["roster"])
async def create_training_endpoint(request: Request, training: TrainingCreate):
    """Record a training."""
    result = create_training(training.type, training.date, training.host_id)

    log_action(
        actor=get_actor(request),
        action="training_created",
        target_type="training",
        target_id=str(result["training_id"]),
        details=result["type"],
        ip_address=get_client_ip(request)
    )
    return result


@app.post("/api/trainings/{training_id}/attendees", tags=["roster"])
async def add_training_attendees(training_id: int, attendance: AttendeesRequest):
    """Record attendees. Unresolvable entries are reported, not fatal."""
    result = add_attendees(training_id, attendance.attendees)
    return {"success": True, **result}


@app.post("/api/medals/award", tags=["roster"])
async def award_medal_endpoint(request: Request, award: MedalAward):
    """Record a medal award."""
    user_id = award.user_id or award.user_roblox_id
    awarded_by = award.awarded_by or award.awarded_by_roblox_id
    record_id = award_medal(award.medal_id, user_id, awarded_by, award.reason)

    log_action(
        actor=get_actor(request),
        action="medal_awarded",
        target_type="member",
        target_id=str(user_id),
        details=f"medal {award.medal_id} by {awarded_by}",
        ip_address=get_client_ip(request)
    )
    return {"success": True, "medal_record_id": record_id}


@app.get("/api/admin/stats", tags=["public"])
async def command_stats():
    """Roster-wide counters."""
    return await get_command_stats()


# ============================================================
# ADMIN KEYS AND SESSIONS
# ============================================================

@app.post("/api/admin-keys/create", tags=["admin"])
@limiter.limit(config.RATE_LIMIT_ADMIN_LOGIN)
async def create_admin_key(request: Request, actor: str = Depends(verify_key_issuer)):
    """Create a single-use admin key."""
    created = admin_auth.create_key()

    log_action(
        actor=actor,
        action="admin_key_created",
        target_type="admin_key",
        target_id=str(created["id"]),
        ip_address=get_client_ip(request)
    )
    return {"key": created["key"], "expires_at": created["expires_at"]}


@app.post("/api/admin/login", tags=["admin"])
@limiter.limit(config.RATE_LIMIT_ADMIN_LOGIN)
async def admin_login(request: Request, login: AdminLogin):
    """Exchange an admin key for a bearer session token."""
    if not login.key:
        raise InvalidInput("Key is required")

    session = admin_auth.exchange(login.key)

    log_action(
        actor=f"admin:{session.key_id}",
        action="admin_login",
        target_type="admin_key",
        target_id=str(session.key_id),
        ip_address=get_client_ip(request)
    )
    return {"token": session.token, "expires_at": session.expires_at.isoformat()}


@app.post("/api/admin/logout", tags=["admin"])
async def admin_logout(request: Request, session: AdminSession = Depends(require_admin)):
    """End an admin session."""
    admin_auth.logout(session.token)

    log_action(
        actor=f"admin:{session.key_id}",
        action="admin_logout",
        target_type="admin_key",
        target_id=str(session.key_id),
        ip_address=get_client_ip(request)
    )
    return {"success": True}


@app.get("/api/admin/users", tags=["admin"])
async def admin_list_users(session: AdminSession = Depends(require_admin)):
    """All members."""
    return list_members()


@app.get("/api/admin/keys", tags=["admin"])
async def admin_list_keys(session: AdminSession = Depends(require_admin)):
    """All admin keys, newest first."""
    return list_admin_keys()


@app.get("/api/admin/audit", tags=["admin"])
async def admin_audit_log(
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    actor: Optional[str] = None,
    target_type: Optional[str] = None,
    session: AdminSession = Depends(require_admin)
):
    """Audit log entries, newest first."""
    limit = max(1, min(limit, 500))
    offset = max(0, offset)
    return {
        "entries": get_audit_logs(limit=limit, offset=offset, action=action, actor=actor, target_type=target_type),
        "total": get_audit_log_count(action=action, actor=actor, target_type=target_type),
    }


# ============================================================
# ROBLOX VERIFICATION
# ============================================================

@app.post("/api/roblox/lookup", tags=["verification"])
@limiter.limit(config.RATE_LIMIT_LOOKUP)
async def roblox_lookup(request: Request, lookup: RobloxLookup):
    """Look up a Roblox account by username."""
    if not lookup.username or not lookup.username.strip():
        raise InvalidInput("Username is required")

    try:
        user = await lookup_username(lookup.username.strip())
    except RobloxAPIError as e:
        logger.error(f"Roblox lookup failed: {e}")
        raise UpstreamUnavailable("Roblox lookup failed")

    if not user:
        raise NotFound("Roblox user not found")

    return {
        "roblox_id": user.id,
        "external_id": user.id,
        "username": user.name,
        "display_name": user.display_name,
    }


@app.post("/api/roblox/start-verification", tags=["verification"])
@limiter.limit(config.RATE_LIMIT_VERIFICATION)
async def roblox_start_verification(request: Request, verification: VerificationRequest):
    """Issue a one-time code to put in the Roblox profile description."""
    return start_verification(verification.target())


@app.post("/api/roblox/check", tags=["verification"])
@limiter.limit(config.RATE_LIMIT_VERIFICATION)
async def roblox_check(request: Request, verification: VerificationRequest):
    """Check the profile description for the code and sign the member in."""
    result = await check_verification(verification.target())
    member = result.member

    log_action(
        actor=member["roblox_id"],
        action="member_verified",
        target_type="member",
        target_id=member["roblox_id"],
        ip_address=get_client_ip(request)
    )
    return {
        "token": result.token,
        "roblox_id": member["roblox_id"],
        "member_id": member["id"],
        "username": member["username"],
        "display_name": member["display_name"],
        "rank": member["rank"],
    }


@app.get("/api/me", tags=["verification"])
async def current_member(request: Request):
    """Member signed in with a verification session token."""
    token = parse_bearer_token(request.headers.get("Authorization"))
    member = get_session_member(token)
    if not member:
        raise Unauthorized("Invalid or expired session")
    return member


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 4000))
    uvicorn.run(app, host="0.0.0.0", port=port)
