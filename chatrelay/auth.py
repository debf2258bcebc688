"""Access-token handling.

Tokens are issued elsewhere; this service only needs to turn a credential
into a user id.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from chatrelay.config import ADMIN_API_KEY, JWT_ALGORITHM, JWT_SECRET
from chatrelay.errors import Unauthenticated


def resolve_user_id(credential: Optional[str]) -> str:
    """Return the user id carried by ``credential`` or raise Unauthenticated."""
    if not credential:
        raise Unauthenticated("Missing access token")

    try:
        claims = jwt.decode(credential, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Access token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid access token")

    user_id = claims.get("sub")
    if not user_id:
        raise Unauthenticated("Access token has no subject")
    return str(user_id)


def create_access_token(user_id: str, expires_in: timedelta = timedelta(hours=1)) -> str:
    """Issue a token for ``user_id``. Used by tests and local tooling."""
    now = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency reading ``Authorization: Bearer <token>``."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("Missing bearer token")
    return resolve_user_id(authorization[7:].strip())


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """FastAPI dependency guarding the cleanup endpoints."""
    if not ADMIN_API_KEY:
        raise HTTPException(status_code=404, detail="Not found")
    if x_admin_key != ADMIN_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid admin key")
