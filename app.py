#!/usr/bin/env python3
"""Agapefy onboarding service - step order, progress and admin console API.

Usage:
    python app.py                  # Start on port 8600
    python app.py --port 3333      # Custom port
"""

import argparse
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request

# Load .env before importing auth (reads secrets at import time)
_dir = Path(__file__).parent
load_dotenv(_dir / ".env", override=True)

APP_VERSION = os.getenv("APP_VERSION", "dev")

import auth  # noqa: E402
import db  # noqa: E402
from routers import all_routers  # noqa: E402
from routers.helpers import has_service_role  # noqa: E402


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

# Structured fields copied from extra={...} into the JSON line
_LOG_EXTRA_FIELDS = (
    "user_id", "method", "path", "status", "duration_ms", "endpoint",
    "error", "details", "hint", "code", "next_step", "pending_count",
)


class _JSONFormatter(logging.Formatter):
    """JSON log formatter for Docker stdout (machine-parseable)."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "time": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in _LOG_EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, default=str)


def configure_logging() -> None:
    """Set up application-wide logging.

    Reads LOG_LEVEL from env (default: 'warning').
    Uses JSON format for Docker stdout compatibility.
    """
    level_name = os.environ.get("LOG_LEVEL", "warning").upper()
    level = getattr(logging, level_name, logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)

    # Remove any existing handlers to avoid duplicates on reload
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root.addHandler(handler)

    # Align uvicorn loggers with our level
    for uv_logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(uv_logger_name)
        uv_logger.setLevel(level)

    # Quiet noisy third-party loggers unless explicitly debugging
    if level > logging.DEBUG:
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# Configure logging BEFORE anything else runs (import-time side effects)
configure_logging()

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app_instance):
    """Initialize database on startup."""
    logger.info("Agapefy onboarding service starting (version=%s)", APP_VERSION)
    await db.init_db()
    if not has_service_role():
        logger.warning("Service role key not set: onboarding status/checklist will report pending")
    yield


app = FastAPI(title="Agapefy Onboarding", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Request Logging Middleware
# ---------------------------------------------------------------------------
from starlette.middleware.base import BaseHTTPMiddleware  # noqa: E402
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

# Paths to skip logging (noisy/health endpoints)
_SKIP_LOG_PATHS = frozenset({"/healthz", "/favicon.ico"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with method, path, status, duration, and user_id."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path in _SKIP_LOG_PATHS:
            return await call_next(request)

        request_id = uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        # Best-effort user id: status calls carry x-user-id, the rest a bearer JWT
        user_id = request.headers.get("x-user-id") or None
        token = auth.get_bearer_token(request)
        if not user_id and token:
            try:
                from jose import jwt as _jwt
                payload = _jwt.decode(
                    token,
                    auth.JWT_SECRET,
                    algorithms=[auth.JWT_ALGORITHM],
                    options={"verify_exp": False, "verify_aud": False},
                )
                user_id = payload.get("sub")
            except Exception:
                pass

        method = request.method
        logger.info(
            "REQ %s %s %s",
            request_id, method, path,
            extra={"method": method, "path": path, "user_id": user_id},
        )

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000)

        status = response.status_code
        log_level = logging.INFO
        if 400 <= status < 500:
            log_level = logging.WARNING
        elif status >= 500:
            log_level = logging.ERROR

        logger.log(
            log_level,
            "RES %s %d %dms",
            request_id, status, duration_ms,
            extra={"method": method, "path": path, "status": status, "duration_ms": duration_ms, "user_id": user_id},
        )

        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestLoggingMiddleware)

# CORS configuration (only enabled when CORS_ORIGINS is set)
_cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
if _cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "x-user-id", "x-api-key", "x-admin-key"],
    )

for _router in all_routers:
    app.include_router(_router)


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "version": APP_VERSION}


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    if not os.environ.get("SUPABASE_JWT_SECRET"):
        logger.warning("SUPABASE_JWT_SECRET not set. Tokens from the auth provider will be rejected.")

    parser = argparse.ArgumentParser(description="Agapefy onboarding service")
    parser.add_argument("--port", type=int, default=8600, help="Port (default: 8600)")
    parser.add_argument("--host", default="0.0.0.0", help="Host (default: 0.0.0.0)")
    args = parser.parse_args()

    logger.info("Agapefy onboarding service starting on http://localhost:%d", args.port)
    log_level = os.environ.get("LOG_LEVEL", "warning").lower()
    uvicorn.run(app, host=args.host, port=args.port, log_level=log_level)
