import time
from typing import Optional

import jwt
from fastapi import Request

from clipsync.config import ServerConfig
from clipsync.errors import ValidationFailed
from clipsync.models.devices import Identity

SESSION_ALGORITHM = "HS256"
SESSION_TTL_SECONDS = 30 * 24 * 60 * 60


def issue_session_token(secret: str, owner_id: str, device_id: str, ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    now = int(time.time())
    payload = {
        "sub": owner_id,
        "device": device_id,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    return jwt.encode(payload, secret, algorithm=SESSION_ALGORITHM)


def decode_session_token(secret: str, token: str) -> Identity:
    try:
        payload = jwt.decode(token, secret, algorithms=[SESSION_ALGORITHM], options={"require": ["sub", "exp"]})
    except jwt.InvalidTokenError as e:
        raise ValidationFailed("INVALID_SESSION", f"session token rejected: {e}", status=401) from e

    owner_id = payload.get("sub")
    device_id = payload.get("device")
    if not isinstance(owner_id, str) or not owner_id:
        raise ValidationFailed("INVALID_SESSION", "session token has no subject", status=401)
    if not isinstance(device_id, str) or not device_id:
        raise ValidationFailed("INVALID_SESSION", "session token has no device", status=401)
    return Identity(owner_id=owner_id, device_id=device_id)


def _header(request: Request, name: str) -> Optional[str]:
    value = (request.headers.get(name) or "").strip()
    return value or None


def resolve_identity(request: Request, config: ServerConfig) -> Identity:
    """Owner and device of a request: a Bearer session first, then the header fallback."""
    auth_header = _header(request, "authorization")
    if auth_header and auth_header.lower().startswith("bearer "):
        if not config.jwt_secret:
            raise ValidationFailed("INVALID_SESSION", "sessions are not enabled on this server", status=401)
        return decode_session_token(config.jwt_secret, auth_header[7:].strip())

    if config.allow_header_identity:
        owner_id = _header(request, "x-user-id")
        device_id = _header(request, "x-device-id")
        if owner_id and device_id:
            return Identity(owner_id=owner_id, device_id=device_id)

    raise ValidationFailed("IDENTITY_REQUIRED", "a session or x-user-id/x-device-id headers are required", status=401)
