import logging
from typing import Any, Dict, Optional

from fastapi import Header, Request
from jwt import (
    InvalidTokenError,
    PyJWKClient,
    PyJWKClientError,
    decode as jwt_decode,
    get_unverified_header,
)

from enhancer.core.config import Settings
from enhancer.core.errors import Unauthenticated
from enhancer.services.entitlements import Identity

log = logging.getLogger("auth")


class TokenVerifier:
    """Identity-provider bearer tokens: RS256 via JWKS or HS256 via a shared secret."""

    def __init__(self, settings: Settings):
        self.secret = settings.AUTH_JWT_SECRET
        self.issuer = settings.AUTH_ISSUER
        self._jwk_client: Optional[PyJWKClient] = (
            PyJWKClient(settings.AUTH_JWKS_URL) if settings.AUTH_JWKS_URL else None
        )
        if not (self._jwk_client or self.secret):
            log.warning("AUTH_JWKS_URL / AUTH_JWT_SECRET not set; authenticated routes will return 401.")

    def _decode(self, token: str, key: Any, alg: str) -> Dict[str, Any]:
        options = {"verify_aud": False, "require": ["sub", "exp"]}
        if self.issuer:
            return jwt_decode(token, key, algorithms=[alg], issuer=self.issuer, options=options)
        return jwt_decode(token, key, algorithms=[alg], options=options)

    def verify(self, authorization: Optional[str]) -> Dict[str, Any]:
        if not authorization or not authorization.startswith("Bearer "):
            raise InvalidTokenError("Missing bearer token")
        token = authorization.split(" ", 1)[1].strip()
        try:
            header = get_unverified_header(token)
        except InvalidTokenError as e:
            raise InvalidTokenError("Invalid JWT header") from e

        alg = header.get("alg")
        if alg == "RS256":
            if not self._jwk_client:
                raise InvalidTokenError("JWKS client not configured")
            signing_key = self._jwk_client.get_signing_key_from_jwt(token).key
            return self._decode(token, signing_key, "RS256")
        if alg == "HS256":
            if not self.secret:
                raise InvalidTokenError("HS256 token but AUTH_JWT_SECRET not set")
            return self._decode(token, self.secret, "HS256")
        raise InvalidTokenError(f"Unsupported alg: {alg}")

    def identity(self, authorization: Optional[str]) -> Identity:
        try:
            claims = self.verify(authorization)
        except (InvalidTokenError, PyJWKClientError) as e:
            log.info("auth.rejected err=%s", type(e).__name__)
            raise Unauthenticated() from e
        sub = claims.get("sub")
        if not sub:
            raise Unauthenticated()
        return Identity(user_id=str(sub), email=claims.get("email"))


def get_current_user(request: Request, authorization: str | None = Header(None)) -> Identity:
    """Verified identity or 401."""
    return request.app.state.services.auth.identity(authorization)


def get_optional_user(
    request: Request, authorization: str | None = Header(None)
) -> Optional[Identity]:
    """None for guests. A token that is present but invalid is still a 401."""
    if not authorization:
        return None
    return request.app.state.services.auth.identity(authorization)
