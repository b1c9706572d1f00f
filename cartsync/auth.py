"""
Supabase Auth verification for the cart API.

Login switches a cart session to a user's server cart, so the user ID comes
only from a verified Supabase access token (Authorization: Bearer <jwt>),
never from the request body.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Header, HTTPException
from supabase import AuthError

from cartsync.db import get_supabase
from cartsync.errors import ERROR_CART_ACCESS_DENIED, ERROR_CART_UNAVAILABLE
from cartsync.logging import get_logger, sanitize_id_for_logging

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def verify_supabase_auth(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> AuthenticatedUser:
    """
    Resolve the caller from a Supabase access token.

    Raises:
        HTTPException 401: missing, malformed or rejected token
        HTTPException 503: auth backend not configured or unreachable
    """
    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail=ERROR_CART_ACCESS_DENIED)

    try:
        client = await get_supabase()
    except ValueError as e:
        logger.error("Cannot verify access token: %s", e)
        raise HTTPException(status_code=503, detail=ERROR_CART_UNAVAILABLE)

    try:
        response = await client.auth.get_user(token)
    except AuthError as e:
        logger.warning("Access token rejected: %s", type(e).__name__)
        raise HTTPException(status_code=401, detail=ERROR_CART_ACCESS_DENIED)
    except httpx.HTTPError as e:
        logger.error("Auth backend unreachable: %s", type(e).__name__)
        raise HTTPException(status_code=503, detail=ERROR_CART_UNAVAILABLE)

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise HTTPException(status_code=401, detail=ERROR_CART_ACCESS_DENIED)

    logger.debug("Verified user %s", sanitize_id_for_logging(str(user.id)))
    return AuthenticatedUser(id=str(user.id), email=getattr(user, "email", None))
