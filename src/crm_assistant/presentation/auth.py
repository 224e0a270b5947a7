"""Bearer-token authentication for the assistant API.

The CRM issues JWTs; this module only verifies them and exposes the caller
as an ``AuthenticatedUser``. With ``AUTH_ENABLED=false`` every request runs
as a fixed development user.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from fastapi import HTTPException, Request
from loguru import logger

from crm_assistant.config import Settings

ALGORITHM = "HS256"

DEV_USER_ID = "dev-user"


@dataclass
class AuthenticatedUser:
    """The caller identified by a verified token."""

    user_id: str
    email: str = ""


def create_token(settings: Settings, user_id: str, email: str = "") -> str:
    """Issue a signed token (used by operators and tests)."""
    now = datetime.now(UTC)
    payload = {
        "sub": user_id,
        "email": email,
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expiry_hours),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGORITHM)


def decode_token(settings: Settings, token: str) -> dict:
    """Verify a token. Raises ``jwt.InvalidTokenError`` subclasses on failure."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[ALGORITHM])


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the token's user, or the dev user when auth is off."""
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthenticatedUser(user_id=DEV_USER_ID, email="dev@example.com")

    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    try:
        claims = decode_token(settings, header.removeprefix("Bearer "))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        logger.warning("Rejected invalid bearer token")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return AuthenticatedUser(user_id=claims["sub"], email=claims.get("email", ""))
