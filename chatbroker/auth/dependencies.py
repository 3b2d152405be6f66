"""FastAPI dependencies for authentication.

Account management, login and token issuance live in another service.
This service only validates the bearer JWT it is handed:

- HS256, signed with JWT_SECRET
- aud must equal JWT_AUDIENCE
- sub is the user's UUID, which must exist in the ChatStore
"""

from __future__ import annotations

import uuid

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status

from chatbroker.api.deps import get_store
from chatbroker.config import Settings, get_settings
from chatbroker.core.errors import NotFoundError
from chatbroker.models.user import User
from chatbroker.services.store import ChatStore
from chatbroker.telemetry import bind_user_context

log = structlog.get_logger(__name__)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, settings: Settings) -> uuid.UUID:
    """Validate token and return the user id from its sub claim.

    Raises:
        HTTPException: 401 for any invalid, expired or malformed token
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={"require": ["sub", "exp"]},
        )
    except jwt.PyJWTError as exc:
        log.info("auth.token_rejected", reason=type(exc).__name__)
        raise _unauthorized("Invalid or expired authentication token") from exc

    try:
        return uuid.UUID(str(claims["sub"]))
    except ValueError as exc:
        raise _unauthorized("Invalid subject claim") from exc


async def get_current_user(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: ChatStore = Depends(get_store),
) -> User:
    """Resolve the Bearer token to a User.

    Raises HTTP 401 if the header is missing or the token is invalid, and
    NotFoundError (404) if the token names a user that does not exist.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise _unauthorized("Missing or invalid Authorization header")

    user_id = decode_token(auth_header.removeprefix("Bearer ").strip(), settings)
    user = await store.get_user(user_id)
    if user is None:
        log.info("auth.unknown_user", user_id=str(user_id))
        raise NotFoundError("User not found")

    bind_user_context(user.id)
    return user
