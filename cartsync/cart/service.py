"""Cart session facade and per-browser session registry."""
import asyncio
import os
import time
from collections import OrderedDict
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Optional

from cartsync.db import UPSTASH_REDIS_REST_URL, RedisKeys, get_supabase
from cartsync.errors import PersistentSyncFailure
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.money import to_float
from .gifts import GIFT_THRESHOLDS, describe_progress
from .identity import IdentityResolver, IdentityTransition, mint_session_token
from .models import CartLine, Gift, GiftProgress, InventoryExceeded, OwnerIdentity, Product
from .repository import CartRepository, ProductRepository
from .storage import LocalStorage, MemoryStorage, RedisStorage
from .store import CartStore
from .sync import DEBOUNCE_SECONDS, CartSyncEngine, PersistenceAdapter, ProductCatalog, RetryPolicy

logger = get_logger(__name__)

SESSION_IDLE_SECONDS = float(os.environ.get("CART_SESSION_IDLE_SECONDS", 30 * 60))
MAX_SESSIONS = int(os.environ.get("CART_MAX_SESSIONS", 10_000))


class CartSession:
    """
    One browser tab's cart: store, identity and sync engine wired together.

    This is the surface UI collaborators use (cart panel, header badge,
    progress indicator).
    """

    def __init__(
        self,
        storage: LocalStorage,
        adapter: PersistenceAdapter,
        catalog: ProductCatalog,
        thresholds: Iterable[Gift] = GIFT_THRESHOLDS,
        retry_policy: Optional[RetryPolicy] = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        token_factory: Callable[[], str] = mint_session_token,
    ):
        self.catalog = catalog
        self.browser_id: Optional[str] = None
        self.store = CartStore(storage, thresholds)
        self.store.hydrate()
        self.identity = IdentityResolver(storage, token_factory)
        self.engine = CartSyncEngine(
            self.store,
            self.identity,
            adapter,
            catalog,
            retry_policy=retry_policy,
            debounce_seconds=debounce_seconds,
        )

    # ==================== STATE ====================

    @property
    def items(self) -> list[CartLine]:
        return self.store.items

    @property
    def item_count(self) -> int:
        return self.store.item_count

    @property
    def subtotal(self) -> Decimal:
        return self.store.subtotal

    @property
    def gifts(self) -> list[Gift]:
        return self.store.gifts

    @property
    def progress(self) -> GiftProgress:
        return self.store.progress

    @property
    def is_open(self) -> bool:
        return self.store.is_open

    @property
    def owner(self) -> OwnerIdentity:
        return self.identity.current

    @property
    def failures(self) -> list[PersistentSyncFailure]:
        return self.engine.failures

    # ==================== ACTIONS ====================

    def add_item(self, product: Product, quantity: int = 1) -> Optional[InventoryExceeded]:
        return self.store.add_item(product, quantity)

    def remove_item(self, product_id: str) -> None:
        self.store.remove_item(product_id)

    def update_quantity(self, product_id: str, quantity: int) -> Optional[InventoryExceeded]:
        return self.store.update_quantity(product_id, quantity)

    def clear(self) -> None:
        self.store.clear()

    def open_cart(self) -> None:
        self.store.open_cart()

    def close_cart(self) -> None:
        self.store.close_cart()

    def toggle_cart(self) -> None:
        self.store.toggle_cart()

    async def start(self) -> list[CartLine]:
        return await self.engine.start()

    async def login(self, user_id: str) -> Optional[IdentityTransition]:
        return await self.engine.login(user_id)

    async def logout(self) -> Optional[IdentityTransition]:
        return await self.engine.logout()

    async def flush(self) -> None:
        await self.engine.flush()

    def close(self) -> None:
        self.engine.close()

    def summary(self) -> dict:
        """Plain-dict view of the cart for API responses."""
        progress = self.progress
        return {
            "items": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "unit_price": to_float(line.unit_price),
                    "total_price": to_float(line.total_price),
                    "added_at": line.added_at,
                }
                for line in self.items
            ],
            "item_count": self.item_count,
            "subtotal": to_float(self.subtotal),
            "gifts": [
                {
                    "id": gift.id,
                    "name": gift.name,
                    "threshold": to_float(gift.threshold),
                    "unlocked": gift.unlocked,
                }
                for gift in self.gifts
            ],
            "progress": {
                "next_gift_id": progress.next_gift.id if progress.next_gift else None,
                "remaining": to_float(progress.remaining),
                "percent": to_float(progress.percent),
                "message": describe_progress(self.subtotal, self.store.thresholds),
            },
            "is_open": self.is_open,
            "authenticated": self.identity.is_authenticated,
            "sync_failures": len(self.failures),
        }


SessionFactory = Callable[[str], Awaitable[CartSession]]


async def default_session_factory(browser_id: str) -> CartSession:
    """Build a session backed by Supabase, with Redis local storage when configured."""
    client = await get_supabase()
    storage: LocalStorage = RedisStorage(browser_id) if UPSTASH_REDIS_REST_URL else MemoryStorage()
    if storage.get(RedisKeys.SESSION_TOKEN) is None:
        storage.set(RedisKeys.SESSION_TOKEN, browser_id)
    return CartSession(storage, CartRepository(client), ProductRepository(client))


class CartSessionRegistry:
    """
    Live CartSessions keyed by browser ID (the X-Cart-Session header).

    Sessions idle for longer than `idle_seconds` are closed and dropped, and
    the least recently used one goes once `max_sessions` is exceeded. Opening
    a session (backend fetch with retries) runs outside any registry-wide
    lock; concurrent requests for the same ID share one opening task.
    """

    def __init__(
        self,
        factory: SessionFactory = default_session_factory,
        idle_seconds: float = SESSION_IDLE_SECONDS,
        max_sessions: int = MAX_SESSIONS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = factory
        self.idle_seconds = idle_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        # browser_id -> (session, last seen), least recently used first
        self._sessions: OrderedDict[str, tuple[CartSession, float]] = OrderedDict()
        self._opening: dict[str, asyncio.Task] = {}

    async def get_or_create(self, browser_id: Optional[str]) -> tuple[str, CartSession]:
        """Return (browser_id, session); unknown or missing IDs get a fresh session."""
        self.evict_idle()
        browser_id = browser_id or mint_session_token()

        entry = self._sessions.get(browser_id)
        if entry is not None:
            self._touch(browser_id, entry[0])
            return browser_id, entry[0]

        opening = self._opening.get(browser_id)
        if opening is None:
            opening = asyncio.get_running_loop().create_task(self._open(browser_id))
            self._opening[browser_id] = opening
            opening.add_done_callback(lambda _: self._opening.pop(browser_id, None))
        # A cancelled request must not cancel the open shared with other requests
        session = await asyncio.shield(opening)
        return browser_id, session

    async def _open(self, browser_id: str) -> CartSession:
        session = await self._factory(browser_id)
        session.browser_id = browser_id
        await session.start()
        self._touch(browser_id, session)
        logger.info("Opened cart session %s", sanitize_id_for_logging(browser_id))

        while len(self._sessions) > self.max_sessions:
            oldest, (evicted, _) = self._sessions.popitem(last=False)
            logger.info("Evicting cart session %s: registry full", sanitize_id_for_logging(oldest))
            evicted.close()
        return session

    def _touch(self, browser_id: str, session: CartSession) -> None:
        self._sessions[browser_id] = (session, self._clock())
        self._sessions.move_to_end(browser_id)

    def evict_idle(self) -> int:
        """Close sessions not used within idle_seconds. Returns how many were dropped."""
        cutoff = self._clock() - self.idle_seconds
        evicted = 0
        while self._sessions:
            browser_id, (session, last_seen) = next(iter(self._sessions.items()))
            if last_seen > cutoff:
                break
            del self._sessions[browser_id]
            session.close()
            evicted += 1
        if evicted:
            logger.info("Evicted %d idle cart sessions", evicted)
        return evicted

    def close(self, browser_id: str) -> None:
        entry = self._sessions.pop(browser_id, None)
        if entry is not None:
            entry[0].close()

    def __len__(self) -> int:
        return len(self._sessions)


_registry: Optional[CartSessionRegistry] = None


def get_cart_registry() -> CartSessionRegistry:
    """Get CartSessionRegistry singleton."""
    global _registry
    if _registry is None:
        _registry = CartSessionRegistry()
    return _registry
