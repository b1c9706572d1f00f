"""Cart and product repositories on top of the async Supabase client.

All methods use async/await with supabase-py v2. Every cart query is filtered
by the owner column of the calling identity, so a session token can only
reach its own cart and a user ID only the user's cart.
"""

from typing import Iterable

import httpx
from postgrest.exceptions import APIError
from supabase._async.client import AsyncClient

from cartsync.db import Tables
from cartsync.errors import CartAccessDenied, OwnerConflict, TransientNetworkFailure
from cartsync.logging import get_logger, sanitize_id_for_logging
from .models import CartLine, OwnerIdentity, Product, SessionIdentity, UserIdentity

logger = get_logger(__name__)

DUPLICATE_KEY_CODES = {"23505", "409"}
FOREIGN_KEY_CODES = {"23503"}
ACCESS_DENIED_CODES = {"42501", "PGRST301", "401", "403"}


def owner_filter(identity: OwnerIdentity) -> tuple[str, str]:
    """Column/value pair that scopes a cart query to its owner."""
    match identity:
        case SessionIdentity(token=token):
            return "owner_session_id", token
        case UserIdentity(user_id=user_id):
            return "owner_user_id", user_id


def _is_duplicate_key_error(exception: APIError) -> bool:
    code = str(getattr(exception, "code", "") or "")
    if code in DUPLICATE_KEY_CODES:
        return True
    message = str(getattr(exception, "message", "") or exception).lower()
    return "duplicate key" in message or "unique constraint" in message


def _translate_api_error(exception: APIError, operation: str) -> Exception:
    code = str(getattr(exception, "code", "") or "")
    if _is_duplicate_key_error(exception):
        return OwnerConflict(f"{operation}: duplicate key")
    if code in ACCESS_DENIED_CODES:
        return CartAccessDenied(f"{operation}: access denied ({code})")
    return TransientNetworkFailure(f"{operation}: backend error ({code or 'unknown'})")


class BaseRepository:
    """Base class for repositories sharing one AsyncClient."""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client

    async def _execute(self, query, operation: str):
        """Run a PostgREST query, mapping failures onto the cart error taxonomy."""
        try:
            return await query.execute()
        except APIError as e:
            raise _translate_api_error(e, operation) from e
        except httpx.HTTPError as e:
            raise TransientNetworkFailure(f"{operation}: {type(e).__name__}") from e


class CartRepository(BaseRepository):
    """Remote cart persistence (cart + cart_line tables)."""

    def __init__(self, client: AsyncClient) -> None:
        super().__init__(client)
        self._cart_ids: dict[OwnerIdentity, str] = {}

    async def get_cart_id(self, identity: OwnerIdentity) -> str | None:
        """Find the identity's cart without creating one."""
        if identity in self._cart_ids:
            return self._cart_ids[identity]

        column, value = owner_filter(identity)
        result = await self._execute(
            self.client.table(Tables.CART).select("id").eq(column, value).limit(1),
            "get_cart_id",
        )
        if not result.data:
            return None
        cart_id = result.data[0]["id"]
        self._cart_ids[identity] = cart_id
        return cart_id

    async def ensure_cart(self, identity: OwnerIdentity) -> str:
        """
        Return the identity's cart ID, creating the cart if absent.

        Idempotent: if a concurrent caller (another tab) creates the cart
        between our lookup and insert, the unique owner constraint fires and
        the existing row is read back instead.
        """
        cart_id = await self.get_cart_id(identity)
        if cart_id:
            return cart_id

        column, value = owner_filter(identity)
        try:
            result = await self._execute(
                self.client.table(Tables.CART).insert({column: value}),
                "ensure_cart",
            )
            cart_id = result.data[0]["id"]
        except OwnerConflict:
            logger.info("Cart for %s created concurrently, reusing it", sanitize_id_for_logging(value))
            cart_id = await self.get_cart_id(identity)
            if not cart_id:
                raise TransientNetworkFailure("ensure_cart: cart vanished after conflict")

        self._cart_ids[identity] = cart_id
        return cart_id

    async def fetch_cart(self, identity: OwnerIdentity) -> list[CartLine]:
        """Load the identity's lines with current product name and price. Empty if no cart."""
        cart_id = await self.get_cart_id(identity)
        if not cart_id:
            return []

        result = await self._execute(
            self.client.table(Tables.CART_LINE)
            .select("product_id,quantity,created_at,products(name,price)")
            .eq("cart_id", cart_id)
            .order("created_at"),
            "fetch_cart",
        )

        lines = []
        for row in result.data or []:
            quantity = int(row.get("quantity") or 0)
            if quantity < 1:
                continue
            product = row.get("products") or {}
            lines.append(
                CartLine(
                    product_id=row["product_id"],
                    quantity=quantity,
                    unit_price=product.get("price", 0),
                    added_at=row.get("created_at") or "",
                    name=product.get("name", ""),
                )
            )
        return lines

    async def upsert_line(self, identity: OwnerIdentity, product_id: str, quantity: int) -> None:
        """Set a line's quantity (insert or update on (cart_id, product_id))."""
        if quantity < 1:
            raise ValueError("upsert_line requires quantity >= 1; use delete_line")

        cart_id = await self.ensure_cart(identity)
        try:
            await self._execute(
                self.client.table(Tables.CART_LINE).upsert(
                    {"cart_id": cart_id, "product_id": product_id, "quantity": quantity},
                    on_conflict="cart_id,product_id",
                ),
                "upsert_line",
            )
        except TransientNetworkFailure as e:
            # Cart row may have been discarded by another tab's merge
            if isinstance(e.__cause__, APIError) and str(e.__cause__.code) in FOREIGN_KEY_CODES:
                self._cart_ids.pop(identity, None)
            raise

    async def delete_line(self, identity: OwnerIdentity, product_id: str) -> None:
        """Delete a line. No cart means nothing to delete."""
        cart_id = await self.get_cart_id(identity)
        if not cart_id:
            return
        await self._execute(
            self.client.table(Tables.CART_LINE)
            .delete()
            .eq("cart_id", cart_id)
            .eq("product_id", product_id),
            "delete_line",
        )

    async def discard_cart(self, identity: OwnerIdentity) -> None:
        """Delete the identity's cart and its lines (anonymous cart after merge)."""
        cart_id = await self.get_cart_id(identity)
        if not cart_id:
            return
        await self._execute(
            self.client.table(Tables.CART_LINE).delete().eq("cart_id", cart_id),
            "discard_cart_lines",
        )
        column, value = owner_filter(identity)
        await self._execute(
            self.client.table(Tables.CART).delete().eq("id", cart_id).eq(column, value),
            "discard_cart",
        )
        self._cart_ids.pop(identity, None)


class ProductRepository(BaseRepository):
    """Read-only product catalog lookups."""

    async def get_by_id(self, product_id: str) -> Product | None:
        result = await self._execute(
            self.client.table(Tables.PRODUCTS).select("id,name,price,inventory").eq("id", product_id),
            "get_product",
        )
        return Product(**result.data[0]) if result.data else None

    async def get_products(self, product_ids: Iterable[str]) -> dict[str, Product]:
        """Batch lookup keyed by product ID. Missing products are simply absent."""
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        result = await self._execute(
            self.client.table(Tables.PRODUCTS).select("id,name,price,inventory").in_("id", ids),
            "get_products",
        )
        return {row["id"]: Product(**row) for row in result.data or []}
