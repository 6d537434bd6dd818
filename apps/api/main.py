"""
Rhythm diagnosis API - FastAPI application entry point.
"""
from __future__ import annotations

import logging
import os
import sys
import time
import uuid
from collections import deque

# Add project root to path
sys.path.append(os.getcwd())

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware

from apps.api.authz import hipaa_enforcement_enabled
from packages.db.database import DATABASE_URL, init_db
from packages.shared.env import parse_bool_env, parse_csv_env, parse_int_env

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger("rhythm")

API_VERSION = "0.1.0"

app = FastAPI(
    title="Rhythm Diagnosis API",
    description="Queued clinical diagnosis drafts with rule-based and LLM safety review gates",
    version=API_VERSION,
)

# Security/runtime settings
cors_allow_origins = parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
)
cors_allow_credentials = parse_bool_env("CORS_ALLOW_CREDENTIALS", True)
audit_logging_enabled = parse_bool_env("HIPAA_AUDIT_LOGGING", True)
rate_limit_enabled = parse_bool_env("RATE_LIMIT_ENABLED", True)
rate_limit_rpm = parse_int_env("RATE_LIMIT_RPM", 180)
max_request_bytes = parse_int_env("MAX_REQUEST_BYTES", 1024 * 1024)
allowed_hosts = parse_csv_env("ALLOWED_HOSTS", ["*"])
security_headers_enabled = parse_bool_env("SECURITY_HEADERS_ENABLED", True)
RATE_WINDOW_SECONDS = 60.0
RATE_WINDOW_SWEEP_AT = 1024
# Keyed by client IP only; idle entries are swept once the map grows.
_rate_windows: dict[str, deque[float]] = {}


def _validate_hipaa_runtime() -> None:
    """Fail fast on unsafe defaults when HIPAA enforcement is enabled."""
    if not hipaa_enforcement_enabled():
        return

    if DATABASE_URL.startswith("sqlite"):
        raise RuntimeError(
            "HIPAA_ENFORCEMENT=true requires a managed database. "
            "Set DATABASE_URL to Postgres (sqlite is not allowed)."
        )

    if "*" in cors_allow_origins:
        raise RuntimeError("HIPAA_ENFORCEMENT=true does not allow wildcard CORS origins.")

    if "*" in allowed_hosts:
        raise RuntimeError("HIPAA_ENFORCEMENT=true does not allow wildcard ALLOWED_HOSTS.")

    auth_mode = os.getenv("API_INTERNAL_AUTH_MODE", "jwt").strip().lower()
    if auth_mode not in {"jwt", "static", "either"}:
        raise RuntimeError("API_INTERNAL_AUTH_MODE must be one of: jwt, static, either.")
    if auth_mode in {"jwt", "either"}:
        jwt_secret = os.getenv("API_INTERNAL_JWT_SECRET", "").strip()
        if len(jwt_secret) < 32:
            raise RuntimeError(
                "HIPAA_ENFORCEMENT=true with JWT auth requires API_INTERNAL_JWT_SECRET >= 32 chars."
            )
    if auth_mode in {"static", "either"}:
        internal_token = os.getenv("API_INTERNAL_TOKEN", "").strip()
        if len(internal_token) < 24:
            raise RuntimeError(
                "HIPAA_ENFORCEMENT=true with static auth requires API_INTERNAL_TOKEN >= 24 chars."
            )


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allow_origins,
    allow_credentials=cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-User-Id",
        "X-Org-Id",
        "X-User-Role",
        "X-Internal-Token",
        "X-Internal-Auth",
        "X-Request-Id",
    ],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)


def _request_ip(request: Request) -> str:
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _sweep_idle_windows(now: float) -> None:
    idle = [key for key, window in _rate_windows.items() if not window or (now - window[-1]) > RATE_WINDOW_SECONDS]
    for key in idle:
        del _rate_windows[key]


def _is_rate_limited(request: Request) -> bool:
    now = time.time()
    if len(_rate_windows) >= RATE_WINDOW_SWEEP_AT:
        _sweep_idle_windows(now)
    window = _rate_windows.setdefault(_request_ip(request), deque())
    while window and (now - window[0]) > RATE_WINDOW_SECONDS:
        window.popleft()
    if len(window) >= rate_limit_rpm:
        return True
    window.append(now)
    return False


@app.middleware("http")
async def request_security_and_audit_middleware(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    user_id = request.headers.get("X-User-Id", "anonymous")
    org_id = request.headers.get("X-Org-Id", "unknown")

    if request.url.path != "/health":
        content_length = request.headers.get("Content-Length")
        if content_length and content_length.isdigit() and int(content_length) > max_request_bytes:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request entity too large"},
            )

        if rate_limit_enabled and _is_rate_limited(request):
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers={"Retry-After": "60", "X-Request-Id": request_id},
            )

    response = await call_next(request)
    response.headers["X-Request-Id"] = request_id

    if security_headers_enabled:
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault(
            "Strict-Transport-Security",
            "max-age=31536000; includeSubDomains",
        )

    if audit_logging_enabled:
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "request_audit request_id=%s method=%s path=%s status=%s duration_ms=%s user_id=%s org_id=%s",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            user_id,
            org_id,
        )

    return response


@app.on_event("startup")
def startup():
    """Initialize database tables on startup."""
    _validate_hipaa_runtime()
    logger.info("Initializing database...")
    init_db()
    logger.info("Database initialized")


# Register routes
from apps.api.routes.diagnosis_runs import router as diagnosis_runs_router  # noqa: E402
from apps.api.routes.reconcile import router as reconcile_router  # noqa: E402

app.include_router(diagnosis_runs_router)
app.include_router(reconcile_router)


@app.get("/health")
def health():
    return {"status": "ok", "version": API_VERSION}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000, reload=True)
