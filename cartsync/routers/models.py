"""
WebApp Cart API Pydantic Models
"""
from pydantic import BaseModel, Field


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int


class ClampedResponse(BaseModel):
    product_id: str
    requested: int
    granted: int


class CartLineResponse(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: float
    total_price: float
    added_at: str


class GiftResponse(BaseModel):
    id: str
    name: str
    threshold: float
    unlocked: bool


class ProgressResponse(BaseModel):
    next_gift_id: str | None = None
    remaining: float
    percent: float
    message: str


class CartResponse(BaseModel):
    session_id: str
    items: list[CartLineResponse]
    item_count: int
    subtotal: float
    gifts: list[GiftResponse]
    progress: ProgressResponse
    is_open: bool
    authenticated: bool
    sync_failures: int
    clamped: ClampedResponse | None = None
