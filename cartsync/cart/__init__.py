"""Cart package: models, store, identity, persistence and sync engine."""
from .gifts import GIFT_THRESHOLDS, compute_gifts, describe_progress, gift_progress
from .identity import IdentityResolver, IdentityTransition
from .models import (
    CartEvent,
    CartEventKind,
    CartLine,
    Gift,
    GiftProgress,
    InventoryExceeded,
    OwnerIdentity,
    Product,
    SessionIdentity,
    UserIdentity,
)
from .repository import CartRepository, ProductRepository
from .service import CartSession, CartSessionRegistry, get_cart_registry
from .storage import MemoryStorage, RedisStorage
from .store import CartStore
from .sync import CartSyncEngine, RetryPolicy, WriteCommand, merge_lines

__all__ = [
    "GIFT_THRESHOLDS",
    "compute_gifts",
    "describe_progress",
    "gift_progress",
    "IdentityResolver",
    "IdentityTransition",
    "CartEvent",
    "CartEventKind",
    "CartLine",
    "Gift",
    "GiftProgress",
    "InventoryExceeded",
    "OwnerIdentity",
    "Product",
    "SessionIdentity",
    "UserIdentity",
    "CartRepository",
    "ProductRepository",
    "CartSession",
    "CartSessionRegistry",
    "get_cart_registry",
    "MemoryStorage",
    "RedisStorage",
    "CartStore",
    "CartSyncEngine",
    "RetryPolicy",
    "WriteCommand",
    "merge_lines",
]
