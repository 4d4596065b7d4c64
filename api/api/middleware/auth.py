"""Authentication middleware.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
with :class:`~api.security.TokenManager`, and populates ``request.state``
with ``tenant_id`` (the agency id), ``sub`` (user id) and ``role``.

Endpoints listed in ``_PUBLIC_PATHS`` bypass authentication; the billing
webhook authenticates with the processor's signature instead.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import Any

from pydantic import SecretStr
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from api.security import TokenConfig, TokenManager

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
        "/api/v1/billing/plans",
        "/metrics",
    }
)

_PUBLIC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc")


def _build_token_config() -> TokenConfig:
    """Read the verification secret from ``JWT_SECRET``.

    Outside production a random per-process secret is generated when the
    variable is unset.
    """
    secret = os.environ.get("JWT_SECRET", "")
    if not secret:
        if os.environ.get("API_PLATFORM_ENV", "dev").lower() == "production":
            raise RuntimeError("JWT_SECRET must be set in production")
        secret = f"dev-{secrets.token_hex(32)}"
        logger.warning("JWT_SECRET not set; generated a random per-process secret")
    return TokenConfig(secret=SecretStr(secret))


def _is_public_path(path: str) -> bool:
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication."""

    def __init__(self, app: Any) -> None:
        super().__init__(app)
        self._token_manager = TokenManager(_build_token_config())

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            if "expired" in str(exc).lower():
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {exc}"})

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role or "member"

        return await call_next(request)
