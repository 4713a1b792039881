"""Authentication module for the Agapefy onboarding service.

Users sign in against the hosted auth provider; this service only verifies
the access tokens it issues:
- HS256 JWT signed with the project's JWT secret, audience "authenticated"
- `sub` is the user id, `email` is carried along when present
- python-jose for decoding

Admin routes additionally accept the ADMIN_API_KEY in an x-api-key /
x-admin-key header (or as the bearer token) for server-to-server calls.
"""

import hmac
import logging
import os
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

from fastapi import Request, HTTPException
from jose import jwt, JWTError, ExpiredSignatureError

import db


# --- Config ---
JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "CHANGE-ME-IN-PRODUCTION-" + os.urandom(16).hex())
JWT_ALGORITHM = "HS256"
JWT_AUDIENCE = "authenticated"
ACCESS_TOKEN_EXPIRE_MINUTES = 60
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")
ADMIN_HEADER_NAMES = ("x-api-key", "x-admin-key")


# --- Token helpers ---

def create_access_token(user_id: str, email: str | None = None, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    """Create an access token shaped like the auth provider's (used by scripts and tests)."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {
        "sub": user_id,
        "aud": JWT_AUDIENCE,
        "role": "authenticated",
        "exp": expire,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises JWTError/ExpiredSignatureError."""
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM], audience=JWT_AUDIENCE)


def get_bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return ""


# --- FastAPI dependency: require auth ---

async def get_current_user(request: Request) -> dict:
    """FastAPI dependency that extracts the user from the Authorization header.

    Returns dict with keys: id, email
    Raises HTTPException 401 if token is missing/invalid/expired.
    """
    token = get_bearer_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")

    try:
        payload = decode_token(token)
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="invalid_token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return {"id": user_id, "email": payload.get("email")}


def _matches_admin_key(request: Request) -> bool:
    if not ADMIN_API_KEY:
        return False
    presented = ""
    for name in ADMIN_HEADER_NAMES:
        value = request.headers.get(name)
        if value:
            presented = value.strip()
            break
    presented = presented or get_bearer_token(request)
    return bool(presented) and hmac.compare_digest(presented, ADMIN_API_KEY)


async def require_admin(request: Request) -> dict:
    """FastAPI dependency: admin API key, or a user whose profile role is admin."""
    if _matches_admin_key(request):
        return {"id": "api_key", "email": None, "role": "admin"}

    user = await get_current_user(request)
    try:
        profile = await db.get_profile(user["id"])
    except db.QueryError as e:
        logger.error("Admin role lookup failed", extra={"user_id": user["id"], **e.as_log_fields()})
        raise HTTPException(status_code=500, detail="role_lookup_failed")

    if not profile or profile.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return {**user, "role": "admin"}
