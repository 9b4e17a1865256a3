import os
from dataclasses import dataclass

import jwt
from fastapi import Header, HTTPException

from finchat.config import settings

LOCAL_USER_ID = "local-user"


@dataclass
class AuthContext:
    user_id: str
    auth_mode: str


def _decode_bearer(auth_header: str) -> dict:
    if not auth_header or not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing Authorization Bearer token")
    token = auth_header.split(" ", 1)[1].strip()
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise HTTPException(status_code=500, detail="JWT_SECRET is not configured")
    try:
        return jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid JWT token")


def require_auth(
    authorization: str | None = Header(default=None),
) -> AuthContext:
    mode = settings.auth_mode
    if mode == "none":
        return AuthContext(user_id=LOCAL_USER_ID, auth_mode=mode)
    if mode != "jwt":
        raise HTTPException(status_code=500, detail="AUTH_MODE must be one of: none, jwt")
    payload = _decode_bearer(authorization or "")
    user_id = str(payload.get("user_id") or payload.get("sub") or "")
    if not user_id:
        raise HTTPException(status_code=401, detail="JWT missing user_id/sub")
    return AuthContext(user_id=user_id, auth_mode=mode)

