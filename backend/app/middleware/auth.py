"""Authentication middleware — verifies Auth0 access tokens (JWT).

Rules:
1. Public paths skip auth entirely: /health, /docs, /openapi.json
2. Optional-auth paths (/api/me) attach identity when a token is present
   but let anonymous requests through
3. Every other path requires a Bearer JWT
4. On success: attach user_sub, email, name, roles, is_admin to request.state
5. Roles are read only from the namespaced roles claim of the access token
"""

import logging
from typing import Any, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from app.config import get_settings

logger = logging.getLogger(__name__)

# Auth0 JWKS client, cached. Fetches public keys to verify JWT signatures.
_jwks_client: PyJWKClient | None = None


def _get_jwks_client() -> PyJWKClient | None:
    """Lazily initialise the JWKS client from the Auth0 tenant domain."""
    global _jwks_client
    if _jwks_client is not None:
        return _jwks_client
    jwks_url = get_settings().jwks_url
    if not jwks_url:
        return None
    _jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)
    logger.info("JWKS client initialised: %s", jwks_url)
    return _jwks_client


def reset_jwks_client() -> None:
    """Drop the cached JWKS client. Used in tests."""
    global _jwks_client
    _jwks_client = None


PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
)

OPTIONAL_AUTH_PATHS = ("/api/me",)


class TokenError(Exception):
    """Raised when a bearer token cannot be verified."""


def decode_access_token(token: str) -> dict[str, Any]:
    """Verify and decode an Auth0 access token.

    Without a JWKS endpoint configured, debug mode decodes the payload
    unverified; otherwise the token is rejected.
    """
    settings = get_settings()
    try:
        jwks = _get_jwks_client()
        if jwks:
            signing_key = jwks.get_signing_key_from_jwt(token)
            options = {"verify_aud": bool(settings.auth0_audience)}
            issuer = None
            if settings.auth0_domain:
                domain = settings.auth0_domain.removeprefix("https://").rstrip("/")
                issuer = f"https://{domain}/"
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=settings.auth0_audience,
                issuer=issuer,
                options=options,
            )
        if settings.debug:
            logger.warning("JWKS not configured — skipping JWT signature verification")
            return jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise TokenError(str(e)) from e
    raise TokenError("Token verification is not configured")


def roles_from_claims(claims: dict[str, Any], roles_claim: str) -> list[str]:
    """Read roles from the namespaced custom claim; anything else means none."""
    value = claims.get(roles_claim)
    if isinstance(value, list):
        return [r for r in value if isinstance(r, str)]
    return []


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"ok": False, "error": message, "code": code},
        status_code=status_code,
    )


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate requests via Auth0 bearer access tokens."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        request.state.user_sub = None
        request.state.roles = []
        request.state.is_admin = False
        request.state.email = None
        request.state.name = None

        # Skip auth for public paths and CORS preflight
        if request.method == "OPTIONS" or any(path.startswith(p) for p in PUBLIC_PATH_PREFIXES):
            return await call_next(request)

        optional = path in OPTIONAL_AUTH_PATHS
        auth_header = request.headers.get("Authorization", "")

        if not auth_header:
            if optional:
                return await call_next(request)
            logger.info("Missing credentials", extra={"event": "unauthorized", "path": path})
            return _error(401, "auth_required", "Unauthorized")

        if not auth_header.startswith("Bearer "):
            return _error(401, "invalid_auth", "Invalid authorization header")

        token = auth_header.removeprefix("Bearer ").strip()
        try:
            claims = decode_access_token(token)
        except TokenError as e:
            logger.warning(
                "JWT verification failed: %s", e, extra={"event": "unauthorized", "path": path}
            )
            return _error(401, "invalid_token", "Invalid or expired token")

        subject: Optional[str] = claims.get("sub")
        if not subject:
            return _error(401, "invalid_token", "Token missing subject")

        settings = get_settings()
        roles = roles_from_claims(claims, settings.roles_claim)

        request.state.user_sub = subject
        request.state.email = claims.get("email") or claims.get(settings.email_claim)
        request.state.name = claims.get("name")
        request.state.roles = roles
        request.state.is_admin = settings.admin_role in roles

        return await call_next(request)
