"""Cart models: owner identities, lines, products and gifts."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator

from cartsync.money import to_decimal, round_money, multiply


@dataclass(frozen=True)
class SessionIdentity:
    """Anonymous owner: an opaque per-browser session token."""
    token: str


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated owner."""
    user_id: str


OwnerIdentity = Union[SessionIdentity, UserIdentity]


def identity_to_dict(identity: OwnerIdentity) -> dict:
    match identity:
        case SessionIdentity(token=token):
            return {"kind": "session", "id": token}
        case UserIdentity(user_id=user_id):
            return {"kind": "user", "id": user_id}


def identity_from_dict(data: dict) -> OwnerIdentity:
    match data:
        case {"kind": "session", "id": token}:
            return SessionIdentity(token=token)
        case {"kind": "user", "id": user_id}:
            return UserIdentity(user_id=user_id)
    raise ValueError(f"Unknown owner identity: {data!r}")


class Product(BaseModel):
    """Catalog row used for pricing and inventory clamping."""
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    price: Decimal
    inventory: int = 0

    @field_validator("price", mode="before")
    @classmethod
    def convert_to_decimal(cls, v):
        return to_decimal(v)


@dataclass
class CartLine:
    """Single product line in the cart."""
    product_id: str
    quantity: int
    unit_price: Decimal
    added_at: str = ""
    name: str = ""

    def __post_init__(self):
        if not self.added_at:
            self.added_at = datetime.now(timezone.utc).isoformat()
        self.unit_price = to_decimal(self.unit_price)

    @property
    def total_price(self) -> Decimal:
        return round_money(multiply(self.unit_price, self.quantity))

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "added_at": self.added_at,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        return cls(
            product_id=data["product_id"],
            quantity=int(data["quantity"]),
            unit_price=to_decimal(data["unit_price"]),
            added_at=data.get("added_at", ""),
            name=data.get("name", ""),
        )


@dataclass(frozen=True)
class Gift:
    """Perk unlocked once the subtotal reaches its threshold."""
    id: str
    name: str
    threshold: Decimal
    unlocked: bool = False


@dataclass(frozen=True)
class GiftProgress:
    """Progress-bar data: next locked gift and how far away it is."""
    next_gift: Optional[Gift]
    remaining: Decimal
    percent: Decimal


@dataclass(frozen=True)
class InventoryExceeded:
    """Inline signal: the requested quantity was clamped to available stock."""
    product_id: str
    requested: int
    granted: int


class CartEventKind(str, Enum):
    LINE_CHANGED = "line_changed"
    LINE_REMOVED = "line_removed"
    CLEARED = "cleared"
    REPLACED = "replaced"
    PANEL_TOGGLED = "panel_toggled"


@dataclass(frozen=True)
class CartEvent:
    """Notification delivered to CartStore subscribers after each change."""
    kind: CartEventKind
    product_ids: tuple = ()
    clamped: tuple = field(default_factory=tuple)
