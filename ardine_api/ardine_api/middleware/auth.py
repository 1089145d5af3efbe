"""Authentication middleware that decodes session JWTs.

The token is read from the ``auth_token`` cookie first and then from
``Authorization: Bearer <token>``.  A valid token populates
``request.state`` with ``user_id`` and ``instance_role``; the active
team comes from the ``X-Team-ID`` header and is stored as ``team_id``.

Requests without a valid token continue anonymously with ``user_id``
unset.  Operations that need an identity raise ``UnauthorizedError``
themselves.

The team role is *not* trusted from the token.  It is looked up per
request from ``team_memberships`` when the request context is built
(see :func:`ardine_api.dependencies.get_request_context`).
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ardine_api.config import APISettings

logger = logging.getLogger(__name__)

TEAM_HEADER = "x-team-id"

# Paths that never look at credentials.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)


def _is_public_path(path: str) -> bool:
    return path in _PUBLIC_PATHS or path.startswith("/docs")


def _extract_token(request: Request, cookie_name: str) -> str | None:
    token = request.cookies.get(cookie_name)
    if token:
        return token
    auth_header = request.headers.get("authorization")
    if not auth_header:
        return None
    parts = auth_header.split(None, 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip() or None
    return None


def decode_session_token(token: str, secret: str, algorithm: str = "HS256") -> dict[str, Any]:
    """Verify *token* and return its claims.

    Raises
    ------
    jwt.InvalidTokenError
        If the signature, expiry, or required claims are invalid.
    """
    claims = jwt.decode(token, secret, algorithms=[algorithm])
    user_id = claims.get("userId") or claims.get("sub")
    if not user_id:
        raise jwt.InvalidTokenError("Token has no user identity")
    claims["userId"] = str(user_id)
    return claims


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state`` with the caller's identity, if any."""

    def __init__(self, app: Any, settings: APISettings) -> None:
        super().__init__(app)
        self._secret = settings.jwt_secret.get_secret_value()
        self._algorithm = settings.jwt_algorithm
        self._cookie_name = settings.auth_cookie_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.user_id = None
        request.state.instance_role = None
        request.state.team_id = request.headers.get(TEAM_HEADER) or None

        if _is_public_path(request.url.path):
            return await call_next(request)

        token = _extract_token(request, self._cookie_name)
        if token is None:
            return await call_next(request)

        try:
            claims = decode_session_token(token, self._secret, self._algorithm)
        except jwt.InvalidTokenError as exc:
            logger.info("Ignoring invalid token on %s: %s", request.url.path, exc)
            return await call_next(request)

        request.state.user_id = claims["userId"]
        request.state.instance_role = claims.get("instanceRole") or "USER"
        return await call_next(request)
