"""
Auth0 JWT validation OR dev-mode bypass. Controlled by FF_USE_AUTH0 flag.

Chat accepts anonymous users, so there are two entry points:
  - get_current_user(): a user is required
  - get_optional_user(): no Authorization header → None (anonymous)
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

ROLES_CLAIM = "https://microbial.ai/roles"
ADMIN_ROLE = "admin"


@dataclass
class AuthenticatedUser:
    user_id: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


# Dev-mode user, returned when FF_USE_AUTH0=false
DEV_USER = AuthenticatedUser(user_id="dev-user", roles=[ADMIN_ROLE])


class Auth0Client:
    """Validates Auth0 access tokens against the tenant's signing keys."""

    def __init__(self, jwks_ttl: int = 600):
        self._keys: dict[str, dict] = {}
        self._fetched_at: float = 0
        self._jwks_ttl = jwks_ttl

    async def _signing_key(self, domain: str, kid: Optional[str]) -> dict:
        stale = (time.time() - self._fetched_at) >= self._jwks_ttl
        if stale or kid not in self._keys:
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"https://{domain}/.well-known/jwks.json", timeout=10)
                resp.raise_for_status()
            self._keys = {key["kid"]: key for key in resp.json().get("keys", []) if "kid" in key}
            self._fetched_at = time.time()

        key = self._keys.get(kid)
        if key is None:
            raise JWTError("Unable to find matching key in JWKS")
        return key

    async def verify_token(self, token: str) -> AuthenticatedUser:
        settings = get_settings()
        kid = jwt.get_unverified_header(token).get("kid")
        key = await self._signing_key(settings.auth0_domain, kid)

        payload = jwt.decode(
            token,
            key,
            algorithms=[settings.auth0_algorithm],
            audience=settings.auth0_audience,
            issuer=f"https://{settings.auth0_domain}/",
        )
        return AuthenticatedUser(
            user_id=payload.get("sub", ""),
            roles=list(payload.get(ROLES_CLAIM, [])),
        )


# Singleton
_auth0_client = Auth0Client()


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """
    Resolve the current user from the Authorization header.
    If FF_USE_AUTH0 is false, returns a dev user.
    """
    if not get_flags().use_auth0:
        return DEV_USER

    if not authorization:
        raise PermissionError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise PermissionError("Invalid Authorization header. Use: Bearer <token>")

    try:
        user = await _auth0_client.verify_token(token)
    except JWTError as e:
        raise PermissionError(f"Invalid token: {e}")
    except httpx.HTTPError as e:
        logger.error("Could not fetch JWKS: %s", e)
        raise PermissionError("Token could not be verified")

    if not user.user_id:
        raise PermissionError("Token missing sub claim")
    return user


async def get_optional_user(authorization: str = "") -> Optional[AuthenticatedUser]:
    """Like get_current_user, but an absent header means an anonymous caller."""
    if not authorization:
        return None
    return await get_current_user(authorization)
