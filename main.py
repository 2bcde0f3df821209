"""
Scavenger Hunt API - Main FastAPI Application
"""

import asyncio
import json
import logging
import os
import re
import sqlite3
import uuid
from typing import Any, List, Optional
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request, HTTPException, Depends, UploadFile, File, Form
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from audit import get_audit_logs, get_audit_log_count, log_lock_operation, log_verification_attempt, log_write_rejection
from cache import CacheKeys, clear_cache, get_cache_stats, periodic_cleanup, with_cache
from cloudinary_client import CloudinaryError
from config import config
from database import init_db, utc_now_iso
from errors import (
    APIError, InvalidRequestError, InvalidTokenError, NotFoundError, PayloadTooLargeError,
    RateLimitedError, TeamCodeInvalidError, TeamLockConflictError, TeamLockExpiredError,
    TeamMismatchError, ValidationFailedError, classify_exception, error_response,
)
from hunt_settings import get_settings, initialize_settings, save_settings
from leaderboard import build_leaderboard, build_rankings
from locations import get_hunt_info, get_hunt_locations, get_organization_info
from photos import OrchestratedUpload, create_collage, orchestrate_photo_upload, upload_photo
from progress import (
    StopProgressUpdate, get_progress_history, get_progress_updates, get_team_progress, parse_progress_payload,
    patch_stop, set_team_progress,
)
from sponsors import empty_sponsors, get_sponsors
from team_lock import (
    LOCK_TOKEN_HEADER, generate_device_hint, generate_lock_token, is_lock_token_expired, verify_lock_token,
)
from teams import (
    check_device_lock_conflict, cleanup_expired_locks, get_team_by_team_id, normalize_team_code,
    store_device_lock, verify_team_code,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class SensitiveDataFilter(logging.Filter):
    """Filter to redact sensitive data from log messages."""

    # Patterns for sensitive query/form parameters
    SENSITIVE_PATTERNS = [
        (re.compile(r'([?&]api_key=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]signature=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
        (re.compile(r'([?&]token=)[^&\s"]+', re.IGNORECASE), r'\1[REDACTED]'),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            msg = str(record.msg)
            for pattern, replacement in self.SENSITIVE_PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


# Redact credentials from outbound request URLs logged by the image service SDK
for _logger_name in ("cloudinary", "urllib3"):
    logging.getLogger(_logger_name).addFilter(SensitiveDataFilter())


def _traces_sample_rate() -> float:
    try:
        return float(config.SENTRY_TRACES_SAMPLE_RATE)
    except ValueError:
        logger.warning(f"Invalid SENTRY_TRACES_SAMPLE_RATE {config.SENTRY_TRACES_SAMPLE_RATE!r}, tracing disabled")
        return 0.0


def init_sentry() -> None:
    """Start the Sentry SDK. Without a DSN the SDK stays inert."""
    sentry_sdk.init(
        dsn=config.SENTRY_DSN or None,
        environment=config.SENTRY_ENVIRONMENT or config.ENVIRONMENT,
        release=config.SENTRY_RELEASE or None,
        traces_sample_rate=_traces_sample_rate(),
        send_default_pii=config.SENTRY_SEND_DEFAULT_PII,
    )


init_sentry()


def get_client_ip(request: Request) -> Optional[str]:
    """Get real client IP, handling proxy headers."""
    # X-Forwarded-For can contain multiple IPs: "client, proxy1, proxy2"
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else None


def get_forwarded_ip(request: Request) -> str:
    """First X-Forwarded-For address, or "unknown" when the header is missing."""
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    return forwarded_for.split(",")[0].strip() or "unknown"


def get_rate_limit_key(request: Request) -> str:
    return get_client_ip(request) or get_remote_address(request)


# Rate limiter - disabled in test mode
limiter = Limiter(key_func=get_rate_limit_key, enabled=not config.TESTING)

# Background task handle
_cache_cleanup_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global _cache_cleanup_task
    init_db()
    if not config.cloudinary_configured():
        logger.warning("Cloudinary is not configured; photo uploads will fail")
    _cache_cleanup_task = asyncio.create_task(periodic_cleanup())
    yield
    if _cache_cleanup_task:
        _cache_cleanup_task.cancel()
        try:
            await _cache_cleanup_task
        except asyncio.CancelledError:
            pass


# Initialize app
app = FastAPI(
    title="Scavenger Hunt API",
    description="""
Backend for the scavenger hunt web app.

## Features
- **Teams**: Join a team with a code and receive a lock token
- **Progress**: Track completed stops per team
- **Photos**: Upload stop photos and build collages
- **Leaderboard**: Teams ranked by completed stops and time

## Authentication
- Team write endpoints accept an `X-Team-Lock` header
- Admin endpoints require `X-Admin-Key` header
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "public", "description": "Public endpoints (no auth required)"},
        {"name": "team", "description": "Team verification and lock tokens"},
        {"name": "progress", "description": "Team progress and settings"},
        {"name": "photos", "description": "Photo uploads and collages"},
        {"name": "admin", "description": "Admin management endpoints"},
    ],
    docs_url="/docs",
    redoc_url="/redoc",
)

# Add rate limiter to app
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials="*" not in config.ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", LOCK_TOKEN_HEADER, "X-Request-ID", "X-Admin-Key"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Propagate or generate a request id and echo it in the response."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)

    # Prevent MIME type sniffing
    response.headers["X-Content-Type-Options"] = "nosniff"

    # Prevent clickjacking
    response.headers["X-Frame-Options"] = "DENY"

    # Control referrer information
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    # API responses carry per-team data
    if request.url.path.startswith("/api/") and "Cache-Control" not in response.headers:
        response.headers["Cache-Control"] = "no-store"

    return response


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


# ============================================================
# ERROR HANDLERS
# ============================================================

@app.exception_handler(APIError)
async def api_error_handler(request: Request, exc: APIError):
    """Render domain errors as the standard error envelope."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message} ({exc.details})")
        sentry_sdk.capture_exception(exc)
    return error_response(exc, get_request_id(request))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    error = APIError(str(exc.detail) if exc.detail else "An error occurred")
    error.status_code = exc.status_code
    error.code = "HTTP_ERROR"
    response = error_response(error, get_request_id(request))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    return error_response(ValidationFailedError(details=exc.errors()), get_request_id(request))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Handle slowapi rate limit errors."""
    logger.warning(f"Rate limit exceeded for {get_client_ip(request)} on {request.url.path}")
    error = RateLimitedError(details=str(exc.detail), retry_after=config.RATE_LIMIT_RETRY_AFTER)
    return error_response(error, get_request_id(request))


@app.exception_handler(sqlite3.Error)
@app.exception_handler(CloudinaryError)
@app.exception_handler(ValidationError)
async def classified_error_handler(request: Request, exc: Exception):
    """Map storage, upstream and model errors onto the taxonomy."""
    error = classify_exception(exc)
    logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}",
                 exc_info=error.status_code >= 500)
    if error.status_code >= 500:
        sentry_sdk.capture_exception(exc)
    return error_response(error, get_request_id(request))


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Internal server error: {exc}", exc_info=True)
    sentry_sdk.capture_exception(exc)
    return error_response(classify_exception(exc), get_request_id(request))


# ============================================================
# AUTH HELPERS
# ============================================================

def verify_admin(request: Request):
    """Verify admin access via key header."""
    admin_key = request.headers.get("X-Admin-Key")
    if admin_key and admin_key == config.ADMIN_KEY:
        return True
    raise HTTPException(status_code=403, detail="Admin access required")


def require_team_access(request: Request, team_id: str, endpoint: str) -> None:
    """
    Check the X-Team-Lock header against the team being written.

    Without a header the write is allowed unless REQUIRE_TEAM_LOCK is set.
    """
    token = request.headers.get(LOCK_TOKEN_HEADER)
    if not token:
        if config.REQUIRE_TEAM_LOCK:
            log_write_rejection(endpoint, "missing_lock", team_id)
            raise InvalidTokenError("Team lock token required")
        return

    claims = verify_lock_token(token)
    if claims is None:
        log_write_rejection(endpoint, "invalid_lock", team_id)
        if is_lock_token_expired(token):
            raise TeamLockExpiredError()
        raise InvalidTokenError()

    if claims.team_id.lower() != team_id.lower():
        log_write_rejection(endpoint, "team_mismatch", team_id)
        raise TeamMismatchError()


def team_from_lock_header(request: Request):
    """Resolve the team named by the X-Team-Lock header."""
    token = request.headers.get(LOCK_TOKEN_HEADER)
    if not token:
        raise InvalidTokenError("Missing team lock token")

    claims = verify_lock_token(token)
    if claims is None:
        if is_lock_token_expired(token):
            raise TeamLockExpiredError()
        raise InvalidTokenError()

    team = get_team_by_team_id(claims.team_id)
    if not team:
        raise NotFoundError("Team not found")
    return team, claims


# ============================================================
# REQUEST MODELS
# ============================================================

class TeamVerifyRequest(BaseModel):
    code: Optional[str] = None


class ProgressSaveRequest(BaseModel):
    progress: Optional[Any] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None


class ProgressPatchRequest(BaseModel):
    update: Optional[dict] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None


class SettingsSaveRequest(BaseModel):
    settings: Optional[dict] = None
    sessionId: Optional[str] = None
    timestamp: Optional[str] = None


class SponsorsRequest(BaseModel):
    organizationId: Optional[str] = None
    huntId: Optional[str] = None


class LoginInitializeRequest(BaseModel):
    orgId: Optional[str] = None
    huntId: Optional[str] = None
    teamCode: Optional[str] = None
    lockToken: Optional[str] = None
    sessionId: Optional[str] = None


# ============================================================
# PUBLIC ENDPOINTS
# ============================================================

@app.get("/health", tags=["public"])
async def health_check():
    """Health check endpoint."""
    warnings = []
    if not config.cloudinary_configured():
        warnings.append("Cloudinary credentials are not configured")
    if warnings:
        return {"status": "degraded", "warnings": warnings, "timestamp": utc_now_iso()}
    return {"status": "ok", "timestamp": utc_now_iso()}


@app.get("/api/config", tags=["public"])
async def public_config():
    """Client-safe configuration."""
    return with_cache(CacheKeys.public_config(), config.PUBLIC_CONFIG_CACHE_TTL, config.get_public_config)


@app.get("/api/locations/{org_id}/{hunt_id}", tags=["public"])
async def hunt_locations(org_id: str, hunt_id: str):
    """Stops of a hunt."""
    return get_hunt_locations(org_id, hunt_id)


@app.get("/api/leaderboard", tags=["public"])
async def leaderboard(orgId: Optional[str] = None, huntId: Optional[str] = None):
    """Ranked teams of a hunt."""
    if not orgId or not huntId:
        raise InvalidRequestError("orgId and huntId are required")
    return build_leaderboard(orgId, huntId)


@app.get("/api/sponsors", tags=["public"])
async def sponsors_get(organizationId: Optional[str] = None, huntId: Optional[str] = None):
    """Sponsor cards for a hunt."""
    if not organizationId or not huntId:
        raise InvalidRequestError("organizationId and huntId are required")
    return get_sponsors(organizationId, huntId)


@app.post("/api/sponsors", tags=["public"])
async def sponsors_post(payload: SponsorsRequest):
    """Sponsor cards for a hunt (JSON body variant)."""
    if not payload.organizationId or not payload.huntId:
        raise InvalidRequestError("organizationId and huntId are required")
    return get_sponsors(payload.organizationId, payload.huntId)


# ============================================================
# TEAM ENDPOINTS
# ============================================================

@app.post("/api/team/verify", tags=["team"])
@limiter.limit(config.RATE_LIMIT_TEAM_VERIFY)
async def team_verify(request: Request, payload: TeamVerifyRequest):
    """Exchange a team code for a lock token."""
    if not payload.code or not payload.code.strip():
        raise InvalidRequestError("Team code is required")

    code = normalize_team_code(payload.code)
    ip = get_forwarded_ip(request)
    device_hint = generate_device_hint(request.headers.get("User-Agent", ""), ip)

    team = verify_team_code(code)
    if not team:
        log_verification_attempt(code, "invalid_code", ip_address=ip)
        raise TeamCodeInvalidError()

    conflict = check_device_lock_conflict(device_hint, team.team_id)
    if conflict:
        log_verification_attempt(code, "lock_conflict", team.team_id,
                                 {"lockedTeam": conflict.team_id}, ip_address=ip)
        raise TeamLockConflictError(conflict.remaining_ttl_seconds)

    token, expires_at = generate_lock_token(team.team_id)
    try:
        store_device_lock(device_hint, team.team_id, expires_at)
    except sqlite3.Error as e:
        # A missing device lock only weakens conflict detection
        logger.error(f"Failed to store device lock for team {team.team_id}: {e}")

    log_verification_attempt(code, "success", team.team_id, ip_address=ip)
    log_lock_operation("issued", team.team_id, {"expiresAt": expires_at})

    return {
        **team.to_dict(),
        "lockToken": token,
        "ttlSeconds": config.TEAM_LOCK_TTL_SECONDS,
    }


@app.get("/api/team/current", tags=["team"])
async def team_current(request: Request):
    """Team named by the caller's lock token."""
    team, claims = team_from_lock_header(request)
    return {"teamId": team.team_id, "teamName": team.display_name, "expiresAt": claims.exp}


@app.post("/api/login/initialize", tags=["team"])
async def login_initialize(payload: LoginInitializeRequest, request: Request):
    """Everything the client needs on first load, in one round trip."""
    if not payload.orgId or not payload.huntId:
        raise InvalidRequestError("Missing required fields: orgId, huntId")

    org_id, hunt_id = payload.orgId, payload.huntId
    response = {
        "config": config.get_public_config(),
        "organization": get_organization_info(org_id),
        "hunt": get_hunt_info(org_id, hunt_id),
        "features": {
            "sponsorCard": config.ENABLE_SPONSOR_CARD,
            "photoUpload": config.cloudinary_configured(),
            "leaderboard": True,
        },
    }

    active_team = None
    if payload.lockToken and not payload.teamCode:
        claims = verify_lock_token(payload.lockToken)
        team = get_team_by_team_id(claims.team_id, org_id, hunt_id) if claims else None
        if team:
            response["currentTeam"] = {"teamId": team.team_id, "teamName": team.display_name, "lockValid": True}
            active_team = team

    if payload.teamCode:
        team = verify_team_code(payload.teamCode, org_id, hunt_id)
        if team:
            token, _ = generate_lock_token(team.team_id)
            response["teamVerification"] = {
                "success": True,
                "teamId": team.team_id,
                "teamName": team.display_name,
                "lockToken": token,
            }
            log_verification_attempt(payload.teamCode, "success", team.team_id,
                                     ip_address=get_client_ip(request))
            active_team = team
        else:
            response["teamVerification"] = {"success": False, "error": TeamCodeInvalidError.default_message}
            log_verification_attempt(payload.teamCode, "invalid_code", ip_address=get_client_ip(request))

    if active_team:
        settings = get_settings(org_id, active_team.team_id, hunt_id)
        if settings is None:
            settings = initialize_settings(org_id, active_team.team_id, hunt_id, {
                "teamName": active_team.display_name,
                "teamId": active_team.team_id,
                "sessionId": payload.sessionId or "system",
                "eventName": "",
                "organizationId": org_id,
                "huntId": hunt_id,
            })
        response["activeData"] = {
            "settings": settings,
            "progress": get_team_progress(org_id, active_team.team_id, hunt_id),
            "sponsors": get_sponsors(org_id, hunt_id),
        }

    return response


# ============================================================
# PROGRESS & SETTINGS
# ============================================================

@app.get("/api/progress/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def progress_get(org_id: str, team_id: str, hunt_id: str):
    """Completed stops of a team."""
    return get_team_progress(org_id, team_id, hunt_id)


@app.post("/api/progress/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def progress_set(org_id: str, team_id: str, hunt_id: str, payload: ProgressSaveRequest, request: Request):
    """Replace the progress of the listed stops."""
    if payload.progress is None:
        raise InvalidRequestError("Missing required fields", details="progress is required")
    require_team_access(request, team_id, "progress-set")

    progress = parse_progress_payload(payload.progress)
    updated = set_team_progress(org_id, team_id, hunt_id, progress)
    return {"success": True, "updatedStops": updated, "timestamp": utc_now_iso()}


@app.patch("/api/progress/{org_id}/{team_id}/{hunt_id}/stop/{stop_id}", tags=["progress"])
async def progress_patch(org_id: str, team_id: str, hunt_id: str, stop_id: str,
                         payload: ProgressPatchRequest, request: Request):
    """Update a single stop."""
    if not payload.update:
        raise InvalidRequestError("Update data required")
    require_team_access(request, team_id, "progress-patch")

    try:
        update = StopProgressUpdate.model_validate(payload.update)
    except ValidationError as e:
        raise InvalidRequestError("Invalid progress payload", details=e.errors(include_url=False))

    stop = patch_stop(org_id, team_id, hunt_id, stop_id, update)
    return {"success": True, "stopId": stop_id, "stop": stop, "timestamp": utc_now_iso()}


@app.get("/api/settings/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def settings_get(org_id: str, team_id: str, hunt_id: str):
    """Stored settings of a team, or null."""
    return get_settings(org_id, team_id, hunt_id)


@app.post("/api/settings/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def settings_set(org_id: str, team_id: str, hunt_id: str, payload: SettingsSaveRequest, request: Request):
    """Save the settings of a team."""
    if payload.settings is None:
        raise InvalidRequestError("Settings data required")
    require_team_access(request, team_id, "settings-set")

    saved = save_settings(org_id, team_id, hunt_id, payload.settings,
                          payload.sessionId or "unknown", payload.timestamp)
    return {"success": True, "settings": saved, "timestamp": utc_now_iso()}


@app.get("/api/consolidated/active/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def consolidated_active(org_id: str, team_id: str, hunt_id: str):
    """Settings, progress, sponsors, config and locations in one response."""
    try:
        sponsors = get_sponsors(org_id, hunt_id)
    except sqlite3.Error as e:
        logger.warning(f"Sponsors unavailable for {org_id}/{hunt_id}: {e}")
        sponsors = empty_sponsors()

    return {
        "orgId": org_id,
        "teamId": team_id,
        "huntId": hunt_id,
        "settings": get_settings(org_id, team_id, hunt_id),
        "progress": get_team_progress(org_id, team_id, hunt_id),
        "sponsors": sponsors,
        "config": config.get_public_config(),
        "locations": get_hunt_locations(org_id, hunt_id),
        "lastUpdated": utc_now_iso(),
    }


@app.get("/api/consolidated/history/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def consolidated_history(org_id: str, team_id: str, hunt_id: str):
    """Settings and the team's completed stops, newest first."""
    return {
        "orgId": org_id,
        "teamId": team_id,
        "huntId": hunt_id,
        "settings": get_settings(org_id, team_id, hunt_id),
        "history": get_progress_history(org_id, team_id, hunt_id),
        "config": config.get_public_config(),
        "lastUpdated": utc_now_iso(),
    }


@app.get("/api/consolidated/updates/{org_id}/{team_id}/{hunt_id}", tags=["progress"])
async def consolidated_updates(org_id: str, team_id: str, hunt_id: str):
    """Settings and the team's recent activity feed."""
    return {
        "orgId": org_id,
        "teamId": team_id,
        "huntId": hunt_id,
        "settings": get_settings(org_id, team_id, hunt_id),
        "updates": get_progress_updates(org_id, team_id, hunt_id),
        "config": config.get_public_config(),
        "lastUpdated": utc_now_iso(),
    }


@app.get("/api/consolidated/rankings", tags=["public"])
async def consolidated_rankings(orgId: Optional[str] = None, huntId: Optional[str] = None):
    """Team standings with public config. Defaults to the configured hunt."""
    rankings = build_rankings(orgId or config.DEFAULT_ORG_ID, huntId or config.DEFAULT_HUNT_ID)
    return {**rankings, "config": config.get_public_config(), "lastUpdated": utc_now_iso()}


# ============================================================
# PHOTOS
# ============================================================

async def read_upload(upload: UploadFile, hard_limit: int) -> bytes:
    """Read an uploaded file, enforcing the configured size limit."""
    data = await upload.read()
    limit = hard_limit if config.ALLOW_LARGE_UPLOADS else min(config.MAX_UPLOAD_BYTES, hard_limit)
    if len(data) > limit:
        raise PayloadTooLargeError(
            f"File too large. Maximum size is {limit // (1024 * 1024)} MB",
            details={"size": len(data), "limit": limit},
        )
    if not data:
        raise InvalidRequestError("Uploaded file is empty")
    return data


@app.post("/api/photo-upload", tags=["photos"])
@limiter.limit(config.RATE_LIMIT_UPLOAD)
async def photo_upload(
    request: Request,
    photo: Optional[UploadFile] = File(None),
    locationTitle: Optional[str] = Form(None),
    sessionId: Optional[str] = Form(None),
    teamName: Optional[str] = Form(None),
    locationName: Optional[str] = Form(None),
    eventName: Optional[str] = Form(None),
):
    """Upload a photo for a stop."""
    if photo is None:
        raise InvalidRequestError("No photo provided")
    if not locationTitle or not sessionId:
        raise InvalidRequestError("locationTitle and sessionId are required")

    data = await read_upload(photo, config.MAX_ORCHESTRATED_UPLOAD_BYTES)
    return await upload_photo(
        data, locationTitle, sessionId,
        filename=photo.filename or "photo.jpg",
        team_name=teamName,
        location_name=locationName,
        event_name=eventName,
    )


@app.post("/api/photo-upload-orchestrated", tags=["photos"])
@limiter.limit(config.RATE_LIMIT_UPLOAD)
async def photo_upload_orchestrated(
    request: Request,
    photo: Optional[UploadFile] = File(None),
    locationTitle: Optional[str] = Form(None),
    sessionId: Optional[str] = Form(None),
    teamName: Optional[str] = Form(None),
    locationName: Optional[str] = Form(None),
    eventName: Optional[str] = Form(None),
    idempotencyKey: Optional[str] = Form(None),
    orgId: Optional[str] = Form(None),
    huntId: Optional[str] = Form(None),
    teamId: Optional[str] = Form(None),
    locationId: Optional[str] = Form(None),
):
    """Upload a stop photo and mark the stop done."""
    if photo is None:
        raise InvalidRequestError("No photo provided")
    if not locationTitle or not sessionId:
        raise InvalidRequestError("locationTitle and sessionId are required")

    if request.headers.get(LOCK_TOKEN_HEADER):
        team, _ = team_from_lock_header(request)
        if teamId and teamId.lower() != team.team_id.lower():
            log_write_rejection("photo-upload-orchestrated", "team_mismatch", teamId)
            raise TeamMismatchError()
        teamId = team.team_id
    if not teamId:
        raise InvalidRequestError("Team context required")

    data = await read_upload(photo, config.MAX_ORCHESTRATED_UPLOAD_BYTES)
    return await orchestrate_photo_upload(OrchestratedUpload(
        data=data,
        filename=photo.filename or "photo.jpg",
        location_title=locationTitle,
        session_id=sessionId,
        team_id=teamId,
        organization_id=orgId,
        hunt_id=huntId,
        location_id=locationId,
        idempotency_key=idempotencyKey,
        team_name=teamName,
        location_name=locationName,
        event_name=eventName,
    ))


@app.post("/api/collage", tags=["photos"])
@limiter.limit(config.RATE_LIMIT_UPLOAD)
async def collage(
    request: Request,
    photos: Optional[List[UploadFile]] = File(None),
    titles: Optional[str] = Form(None),
):
    """Upload several photos and return a collage URL."""
    if not photos:
        raise InvalidRequestError("No photos provided")
    if not titles:
        raise InvalidRequestError("Titles are required")

    try:
        title_list = json.loads(titles)
    except json.JSONDecodeError:
        raise InvalidRequestError("Titles must be a JSON array")
    if not isinstance(title_list, list):
        raise InvalidRequestError("Titles must be a JSON array")
    if len(title_list) != len(photos):
        raise InvalidRequestError(
            "Number of titles must match number of photos",
            details={"photos": len(photos), "titles": len(title_list)},
        )

    items = []
    for upload, title in zip(photos, title_list):
        data = await read_upload(upload, config.MAX_ORCHESTRATED_UPLOAD_BYTES)
        items.append((data, upload.filename or "photo.jpg", str(title)))

    return await create_collage(items)


# ============================================================
# ADMIN ENDPOINTS
# ============================================================

@app.get("/admin/cache/stats", tags=["admin"])
async def admin_cache_stats(_: bool = Depends(verify_admin)):
    """Cache hit/miss statistics."""
    return get_cache_stats()


@app.post("/admin/cache/clear", tags=["admin"])
async def admin_cache_clear(_: bool = Depends(verify_admin)):
    """Drop every cached entry."""
    clear_cache()
    return {"success": True}


@app.get("/admin/audit-log", tags=["admin"])
async def admin_audit_log(
    limit: int = 100,
    offset: int = 0,
    action: Optional[str] = None,
    team_id: Optional[str] = None,
    outcome: Optional[str] = None,
    _: bool = Depends(verify_admin),
):
    """Audit log entries, newest first."""
    limit = max(1, min(limit, 500))
    return {
        "entries": get_audit_logs(limit, offset, action, team_id, outcome),
        "total": get_audit_log_count(action, team_id, outcome),
    }


@app.post("/admin/locks/cleanup", tags=["admin"])
async def admin_cleanup_locks(_: bool = Depends(verify_admin)):
    """Delete expired device locks."""
    return {"removed": cleanup_expired_locks()}


# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
