"""Bearer-token authentication — verifies access tokens issued by the account service."""
from __future__ import annotations

import logging
import time
from typing import Optional

import jwt as pyjwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config.settings import settings

logger = logging.getLogger(__name__)

_JWT_ALGO = "HS256"
_ACCESS_TTL = 3600 * 24 * 7  # 7 days

_bearer = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, ttl: int = _ACCESS_TTL) -> str:
    """Mint an access token (used by tests and internal tooling)."""
    now = int(time.time())
    payload = {"sub": user_id, "type": "access", "iat": now, "exp": now + ttl}
    return pyjwt.encode(payload, settings.JWT_SECRET, algorithm=_JWT_ALGO)


def decode_token(token: str) -> Optional[dict]:
    try:
        return pyjwt.decode(token, settings.JWT_SECRET, algorithms=[_JWT_ALGO])
    except pyjwt.PyJWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None


async def get_current_user_id(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(_bearer),
) -> Optional[str]:
    """Return the user id if a valid token is present, otherwise None."""
    if not creds:
        return None
    payload = decode_token(creds.credentials)
    if not payload or payload.get("type", "access") != "access":
        return None
    return payload.get("sub")


async def require_user_id(user_id: Optional[str] = Depends(get_current_user_id)) -> str:
    """Require authentication — raises 401 if not logged in."""
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
