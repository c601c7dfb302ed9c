# storefront/core/auth.py
import logging
import uuid
from typing import Any, Protocol

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from storefront.core.config import get_settings
from storefront.schemas.cart import CartSession

logger = logging.getLogger(__name__)

# HTTP Bearer scheme:
# - auto_error=False => missing Authorization header will NOT raise immediately
#   so we can support "guest" mode (unauthenticated).
bearer_scheme = HTTPBearer(auto_error=False)


class IdentityProvider(Protocol):
    """
    Tells the cart engine whether the caller is anonymous or authenticated.
    """

    async def get_current_session(self) -> CartSession: ...


def decode_access_token(token: str) -> dict[str, Any]:
    """
    Decode and verify a Supabase access token (JWT).

    Verification:
      - signature (HS256 using SUPABASE_JWT_SECRET)
      - expiration time (exp)
      - audience is NOT verified (Supabase 'aud' may vary)

    Args:
        token: raw JWT from the Authorization header.

    Returns:
        Decoded JWT claims.

    Raises:
        HTTPException(401): if token is invalid/expired.
    """
    settings = get_settings()
    try:
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.SUPABASE_JWT_ALG],
            options={"verify_aud": False},
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def session_from_token(token: str | None) -> CartSession:
    """
    Resolve a CartSession from a raw Supabase JWT.

    Flow:
      1. No token => guest session.
      2. Decode JWT => extract 'sub' (auth user id).
      3. Convert 'sub' to UUID; this is the only user id the cart trusts.

    Raises:
        HTTPException(401): if token is malformed or missing 'sub'.
    """
    if not token:
        return CartSession(authenticated=False)

    payload = decode_access_token(token)
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing sub",
        )

    # Supabase provides sub as a string; enforce UUID
    try:
        user_id = uuid.UUID(sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid sub in token",
        )

    return CartSession(authenticated=True, user_id=user_id)


class TokenIdentityProvider:
    """
    Identity provider backed by the request's bearer token.

    The token is verified once, on first use, and the session is cached
    for the lifetime of the provider (one request).
    """

    def __init__(self, token: str | None, session: CartSession | None = None):
        self._token = token
        self._session = session

    async def get_current_session(self) -> CartSession:
        if self._session is None:
            self._session = session_from_token(self._token)
        return self._session


class StaticIdentityProvider:
    """Identity provider returning a fixed session."""

    def __init__(self, session: CartSession):
        self.session = session

    async def get_current_session(self) -> CartSession:
        return self.session


def get_identity_provider(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> TokenIdentityProvider:
    """
    FastAPI dependency building the per-request identity provider.

    The token is verified eagerly so bad tokens fail with 401 before any
    cart work starts; guests (no Authorization header) pass through.
    """
    token = credentials.credentials if credentials else None
    session = session_from_token(token)
    if session.authenticated:
        logger.debug("Cart request for user %s", session.user_id)
    return TokenIdentityProvider(token, session=session)
