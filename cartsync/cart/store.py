"""
Cart Store - optimistic in-memory cart with local persistence.

Every mutation is synchronous: lines change immediately, derived fields
(item_count, subtotal, gifts) are recomputed, the snapshot is written to
local storage and subscribers are notified. Network writes are the sync
engine's job (it subscribes like any other observer).

Inventory policy: the last known inventory of each product is kept, and
lines are re-clamped to it on every recomputation, not only at add time.
"""
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Iterable, Optional

from cartsync.errors import ERROR_INVALID_QUANTITY
from cartsync.db import RedisKeys
from cartsync.logging import get_logger
from cartsync.money import round_money
from .gifts import GIFT_THRESHOLDS, compute_gifts, gift_progress
from .models import (
    CartEvent,
    CartEventKind,
    CartLine,
    Gift,
    GiftProgress,
    InventoryExceeded,
    OwnerIdentity,
    Product,
    identity_from_dict,
    identity_to_dict,
)
from .storage import LocalStorage, load_json, save_json

logger = get_logger(__name__)

Listener = Callable[["CartStore", CartEvent], None]


def _validate_quantity(quantity, minimum: Optional[int] = None) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValueError(ERROR_INVALID_QUANTITY)
    if minimum is not None and quantity < minimum:
        raise ValueError(ERROR_INVALID_QUANTITY)


class CartStore:
    """
    Client-held cart state.

    Features:
    - add/remove/update/clear with inventory clamping
    - derived item_count, subtotal and gift unlocks
    - UI open/closed flag (never persisted)
    - observer subscriptions
    """

    def __init__(
        self,
        storage: Optional[LocalStorage] = None,
        thresholds: Iterable[Gift] = GIFT_THRESHOLDS,
    ):
        self._storage = storage
        self._thresholds = tuple(thresholds)
        self._lines: dict[str, CartLine] = {}
        self._inventory: dict[str, int] = {}
        self._listeners: list[Listener] = []

        self.owner: Optional[OwnerIdentity] = None
        self.is_open = False
        self.item_count = 0
        self.subtotal = Decimal("0.00")
        self.gifts: list[Gift] = compute_gifts(self.subtotal, self._thresholds)

    # ==================== QUERIES ====================

    @property
    def items(self) -> list[CartLine]:
        """Copies of the current lines, in insertion order."""
        return [replace(line) for line in self._lines.values()]

    @property
    def thresholds(self) -> tuple[Gift, ...]:
        return self._thresholds

    @property
    def progress(self) -> GiftProgress:
        return gift_progress(self.subtotal, self._thresholds)

    def get_line(self, product_id: str) -> Optional[CartLine]:
        line = self._lines.get(product_id)
        return replace(line) if line else None

    def is_in_cart(self, product_id: str) -> bool:
        return product_id in self._lines

    def get_item_quantity(self, product_id: str) -> int:
        line = self._lines.get(product_id)
        return line.quantity if line else 0

    def quantities(self) -> dict[str, int]:
        return {pid: line.quantity for pid, line in self._lines.items()}

    def known_inventory(self, product_id: str) -> Optional[int]:
        return self._inventory.get(product_id)

    # ==================== MUTATIONS ====================

    def add_item(self, product: Product, quantity: int = 1) -> Optional[InventoryExceeded]:
        """
        Add a product, or increase its quantity if already in the cart.

        The unit price is snapshotted from the product for new lines only.
        Opens the cart panel.

        Returns:
            InventoryExceeded if the quantity had to be clamped, else None
        """
        _validate_quantity(quantity, 1)
        self._inventory[product.id] = max(0, product.inventory)

        existing = self._lines.get(product.id)
        requested = existing.quantity + quantity if existing else quantity
        granted = min(requested, self._inventory[product.id])
        clamped = (
            InventoryExceeded(product_id=product.id, requested=requested, granted=granted)
            if granted < requested
            else None
        )

        if granted <= 0:
            self._lines.pop(product.id, None)
        elif existing:
            existing.quantity = granted
        else:
            self._lines[product.id] = CartLine(
                product_id=product.id,
                quantity=granted,
                unit_price=product.price,
                name=product.name,
            )

        self.is_open = True
        self._commit(CartEventKind.LINE_CHANGED, (product.id,), (clamped,) if clamped else ())
        return clamped

    def remove_item(self, product_id: str) -> None:
        """Delete a line. Unknown product IDs are ignored."""
        if self._lines.pop(product_id, None) is None:
            return
        self._commit(CartEventKind.LINE_REMOVED, (product_id,))

    def update_quantity(self, product_id: str, quantity: int) -> Optional[InventoryExceeded]:
        """Set a line's quantity; zero or less removes the line."""
        _validate_quantity(quantity)
        if quantity <= 0:
            self.remove_item(product_id)
            return None

        line = self._lines.get(product_id)
        if line is None:
            return None

        available = self._inventory.get(product_id)
        granted = quantity if available is None else min(quantity, available)
        clamped = (
            InventoryExceeded(product_id=product_id, requested=quantity, granted=granted)
            if granted < quantity
            else None
        )

        if granted <= 0:
            del self._lines[product_id]
            self._commit(CartEventKind.LINE_REMOVED, (product_id,), (clamped,))
            return clamped

        line.quantity = granted
        self._commit(CartEventKind.LINE_CHANGED, (product_id,), (clamped,) if clamped else ())
        return clamped

    def clear(self) -> None:
        """Remove every line (used after a successful checkout)."""
        removed = tuple(self._lines)
        self._lines.clear()
        self._commit(CartEventKind.CLEARED, removed)

    def set_inventory(self, products: Iterable[Product]) -> list[InventoryExceeded]:
        """Record current stock levels and re-clamp lines that now exceed them."""
        for product in products:
            self._inventory[product.id] = max(0, product.inventory)
        clamped = self._reclamp()
        if clamped:
            self._commit(
                CartEventKind.LINE_CHANGED,
                tuple(c.product_id for c in clamped),
                tuple(clamped),
            )
        return clamped

    def replace_lines(
        self,
        lines: Iterable[CartLine],
        owner: Optional[OwnerIdentity] = None,
        products: Iterable[Product] = (),
    ) -> None:
        """Adopt a line set from the server or a merge. Emits REPLACED, not a write."""
        for product in products:
            self._inventory[product.id] = max(0, product.inventory)
        self._lines = {line.product_id: replace(line) for line in lines if line.quantity >= 1}
        if owner is not None:
            self.owner = owner
        self._commit(CartEventKind.REPLACED, tuple(self._lines))

    def open_cart(self) -> None:
        self._set_open(True)

    def close_cart(self) -> None:
        self._set_open(False)

    def toggle_cart(self) -> None:
        self._set_open(not self.is_open)

    def _set_open(self, value: bool) -> None:
        self.is_open = value
        self._notify(CartEvent(kind=CartEventKind.PANEL_TOGGLED))

    # ==================== PERSISTENCE ====================

    def hydrate(self) -> bool:
        """Restore lines and owner from local storage. Returns True if a snapshot was found."""
        if self._storage is None:
            return False
        data = load_json(self._storage, RedisKeys.CART_SNAPSHOT)
        if not data:
            return False
        try:
            lines = [CartLine.from_dict(item) for item in data.get("items", [])]
            owner = identity_from_dict(data["owner"]) if data.get("owner") else None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cart snapshot: %s", e)
            self._storage.delete(RedisKeys.CART_SNAPSHOT)
            return False
        self._lines = {line.product_id: line for line in lines if line.quantity >= 1}
        self.owner = owner
        self._recompute()
        self._notify(CartEvent(kind=CartEventKind.REPLACED, product_ids=tuple(self._lines)))
        return True

    def _persist(self) -> None:
        if self._storage is None:
            return
        snapshot = {
            "owner": identity_to_dict(self.owner) if self.owner else None,
            "items": [line.to_dict() for line in self._lines.values()],
        }
        try:
            save_json(self._storage, RedisKeys.CART_SNAPSHOT, snapshot)
        except Exception as e:
            # Local snapshot is a convenience; the in-memory cart stays correct
            logger.warning("Failed to persist cart snapshot: %s", type(e).__name__)

    # ==================== OBSERVERS ====================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: CartEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(self, event)
            except Exception:
                logger.error("Cart listener failed for %s", event.kind.value, exc_info=True)

    # ==================== DERIVED STATE ====================

    def _reclamp(self) -> list[InventoryExceeded]:
        clamped = []
        for product_id, line in list(self._lines.items()):
            available = self._inventory.get(product_id)
            if available is None or line.quantity <= available:
                continue
            clamped.append(
                InventoryExceeded(product_id=product_id, requested=line.quantity, granted=available)
            )
            if available <= 0:
                del self._lines[product_id]
            else:
                line.quantity = available
        return clamped

    def _recompute(self) -> None:
        self.item_count = sum(line.quantity for line in self._lines.values())
        self.subtotal = round_money(
            sum((line.unit_price * line.quantity for line in self._lines.values()), Decimal("0"))
        )
        self.gifts = compute_gifts(self.subtotal, self._thresholds)

    def _commit(self, kind: CartEventKind, product_ids: tuple = (), clamped: tuple = ()) -> None:
        reclamped = self._reclamp()
        ids = tuple(dict.fromkeys([*product_ids, *(c.product_id for c in reclamped)]))
        self._recompute()
        self._persist()
        self._notify(CartEvent(kind=kind, product_ids=ids, clamped=tuple(clamped) + tuple(reclamped)))
