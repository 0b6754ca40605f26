"""
Auth0 JWT validation OR dev-mode bypass. Controlled by FF_USE_AUTH0 flag.

Only identity is resolved here: who is uploading and which tenant they act
for. Role checks belong to the surrounding platform.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from jose import jwt, JWTError

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    user_id: str
    tenant_id: str = ""
    school_id: str = ""
    email: str = ""
    roles: list[str] = field(default_factory=list)


# Dev-mode user, returned when FF_USE_AUTH0=false
DEV_USER = AuthenticatedUser(
    user_id="dev-user",
    tenant_id="dev-tenant",
    school_id="dev-school",
    email="dev@local",
    roles=["admin"],
)


class JWKSCache:
    """Fetches and caches the tenant's signing keys."""

    def __init__(self, ttl_seconds: int = 600):
        self._jwks: Optional[dict] = None
        self._fetched_at: float = 0
        self._ttl = ttl_seconds

    async def keys(self, domain: str) -> dict:
        now = time.time()
        if self._jwks and (now - self._fetched_at) < self._ttl:
            return self._jwks

        url = f"https://{domain}/.well-known/jwks.json"
        async with httpx.AsyncClient() as client:
            resp = await client.get(url, timeout=10)
            resp.raise_for_status()
        self._jwks = resp.json()
        self._fetched_at = now
        return self._jwks


_jwks_cache = JWKSCache()


def _signing_key(jwks: dict, kid: Optional[str]) -> dict:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return {k: key[k] for k in ("kty", "kid", "use", "n", "e") if k in key}
    raise JWTError("Unable to find matching key in JWKS")


async def verify_token(token: str) -> AuthenticatedUser:
    settings = get_settings()
    ns = settings.auth0_claims_namespace

    jwks = await _jwks_cache.keys(settings.auth0_domain)
    header = jwt.get_unverified_header(token)
    payload = jwt.decode(
        token,
        _signing_key(jwks, header.get("kid")),
        algorithms=[settings.auth0_algorithm],
        audience=settings.auth0_audience,
        issuer=f"https://{settings.auth0_domain}/",
    )

    return AuthenticatedUser(
        user_id=payload.get("sub", ""),
        tenant_id=payload.get(f"{ns}tenant_id", ""),
        school_id=payload.get(f"{ns}school_id", ""),
        email=payload.get("email", payload.get(f"{ns}email", "")),
        roles=payload.get(f"{ns}roles", []),
    )


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """
    Resolve the current user from the Authorization header.
    If FF_USE_AUTH0 is false, returns a dev user.
    """
    flags = get_flags()

    if not flags.use_auth0:
        return DEV_USER

    if not authorization:
        raise PermissionError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise PermissionError("Invalid Authorization header. Use: Bearer <token>")

    try:
        user = await verify_token(token)
    except JWTError as e:
        raise PermissionError(f"Invalid token: {e}")

    if not user.tenant_id:
        raise PermissionError("Token missing tenant_id claim")

    return user
