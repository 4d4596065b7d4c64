"""Bearer-token verification.

Tokens are HMAC-SHA256 signed JSON payloads of the form
``rdev.<urlsafe-b64 payload>.<hex signature>``.  Issuing tokens is the
job of the surrounding identity service; this module only verifies them
and exposes the claims the billing API needs.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any

from pydantic import BaseModel, SecretStr, ValidationError

TOKEN_PREFIX = "rdev."


class TokenConfig(BaseModel):
    """Verification parameters."""

    secret: SecretStr
    issuer: str = "agency-billing"
    leeway_seconds: int = 30


class TokenClaims(BaseModel):
    """Claims carried by an access token."""

    sub: str
    tenant_id: str
    role: str | None = None
    iss: str | None = None
    iat: float | None = None
    exp: float
    jti: str | None = None


class TokenManager:
    """Sign and verify HMAC access tokens."""

    def __init__(self, config: TokenConfig) -> None:
        self._config = config

    def _sign(self, payload_json: str) -> str:
        return hmac.new(
            self._config.secret.get_secret_value().encode("utf-8"),
            payload_json.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def issue_token(self, *, sub: str, tenant_id: str, role: str, ttl_seconds: int = 3600) -> str:
        """Create a signed token.  Used by tooling and tests."""
        now = time.time()
        payload: dict[str, Any] = {
            "sub": sub,
            "tenant_id": tenant_id,
            "role": role,
            "iss": self._config.issuer,
            "iat": now,
            "exp": now + ttl_seconds,
        }
        payload_json = json.dumps(payload)
        encoded = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
        return f"{TOKEN_PREFIX}{encoded}.{self._sign(payload_json)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify signature and expiry and return the claims.

        Raises
        ------
        PermissionError
            If the token is malformed, badly signed, or expired.
        """
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("unsupported token format")
        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeDecodeError):
            raise PermissionError("malformed token") from None

        if not hmac.compare_digest(self._sign(payload_json), signature):
            raise PermissionError("bad signature")

        try:
            claims = TokenClaims.model_validate_json(payload_json)
        except ValidationError:
            raise PermissionError("malformed claims") from None

        if claims.exp + self._config.leeway_seconds < time.time():
            raise PermissionError("token expired")
        return claims
