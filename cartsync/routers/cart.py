"""
WebApp Cart Router

Exposes one CartSession per browser to the front end (cart panel, header
badge, progress bar). The browser is identified by the X-Cart-Session header,
which is echoed back on every response.

Sync failures never fail a request: mutations are applied optimistically and
the response reports `sync_failures` for the UI to surface.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response

from cartsync.auth import AuthenticatedUser, verify_supabase_auth
from cartsync.cart import CartSession, CartSessionRegistry, get_cart_registry
from cartsync.cart.models import InventoryExceeded
from cartsync.errors import CartSyncError, ERROR_CART_UNAVAILABLE, ERROR_PRODUCT_NOT_FOUND
from cartsync.logging import get_logger
from .models import AddToCartRequest, CartResponse, UpdateCartItemRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webapp/cart", tags=["webapp-cart"])

SESSION_HEADER = "X-Cart-Session"


async def get_session(
    response: Response,
    x_cart_session: Optional[str] = Header(default=None),
    registry: CartSessionRegistry = Depends(get_cart_registry),
) -> CartSession:
    """Resolve (or open) the caller's cart session."""
    try:
        browser_id, session = await registry.get_or_create(x_cart_session)
    except ValueError as e:
        # Backend clients not configured
        logger.error("Cannot open cart session: %s", e)
        raise HTTPException(status_code=503, detail=ERROR_CART_UNAVAILABLE)
    response.headers[SESSION_HEADER] = browser_id
    return session


def _cart_response(session: CartSession, clamped: Optional[InventoryExceeded] = None) -> dict:
    payload = {"session_id": session.browser_id, **session.summary()}
    if clamped is not None:
        payload["clamped"] = {
            "product_id": clamped.product_id,
            "requested": clamped.requested,
            "granted": clamped.granted,
        }
    return payload


@router.get("", response_model=CartResponse)
async def get_cart(session: CartSession = Depends(get_session)):
    """Get the current cart with derived totals and gift progress."""
    return _cart_response(session)


@router.post("/items", response_model=CartResponse)
async def add_to_cart(request: AddToCartRequest, session: CartSession = Depends(get_session)):
    """Add a product (quantity clamped to inventory); opens the cart panel."""
    try:
        products = await session.catalog.get_products([request.product_id])
    except CartSyncError as e:
        logger.error("Catalog lookup failed: %s", e)
        raise HTTPException(status_code=503, detail=ERROR_CART_UNAVAILABLE)

    product = products.get(request.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail=ERROR_PRODUCT_NOT_FOUND)

    try:
        clamped = session.add_item(product, request.quantity)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve))
    return _cart_response(session, clamped)


@router.patch("/items/{product_id}", response_model=CartResponse)
async def update_cart_item(
    product_id: str,
    request: UpdateCartItemRequest,
    session: CartSession = Depends(get_session),
):
    """Set a line's quantity (0 removes it)."""
    try:
        clamped = session.update_quantity(product_id, request.quantity)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve))
    return _cart_response(session, clamped)


@router.delete("/items/{product_id}", response_model=CartResponse)
async def remove_cart_item(product_id: str, session: CartSession = Depends(get_session)):
    """Remove a line; unknown products are ignored."""
    session.remove_item(product_id)
    return _cart_response(session)


@router.delete("", response_model=CartResponse)
async def clear_cart(session: CartSession = Depends(get_session)):
    """Empty the cart (after checkout)."""
    session.clear()
    return _cart_response(session)


@router.post("/open", response_model=CartResponse)
async def open_cart(session: CartSession = Depends(get_session)):
    session.open_cart()
    return _cart_response(session)


@router.post("/close", response_model=CartResponse)
async def close_cart(session: CartSession = Depends(get_session)):
    session.close_cart()
    return _cart_response(session)


@router.post("/login", response_model=CartResponse)
async def login(
    user: AuthenticatedUser = Depends(verify_supabase_auth),
    session: CartSession = Depends(get_session),
):
    """Auth-state event: user signed in. Merges the anonymous cart."""
    await session.login(user.id)
    return _cart_response(session)


@router.post("/logout", response_model=CartResponse)
async def logout(session: CartSession = Depends(get_session)):
    """Auth-state event: user signed out. Starts a fresh anonymous cart."""
    await session.logout()
    return _cart_response(session)
