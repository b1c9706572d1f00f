"""Pytest configuration and fixtures"""
import asyncio
import itertools
import os
from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

# Set test environment variables
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test_key")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from cartsync.cart.identity import IdentityResolver  # noqa: E402
from cartsync.cart.models import CartLine, Product  # noqa: E402
from cartsync.cart.storage import MemoryStorage  # noqa: E402
from cartsync.cart.store import CartStore  # noqa: E402
from cartsync.cart.sync import CartSyncEngine, RetryPolicy  # noqa: E402


class FakeCatalog:
    """In-memory product catalog with failure injection."""

    def __init__(self, products):
        self.products = {p.id: p for p in products}
        self.calls = 0
        self.errors: list[Exception] = []

    async def get_products(self, product_ids):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return {pid: self.products[pid] for pid in product_ids if pid in self.products}


class FakeCartBackend:
    """
    In-memory remote cart store.

    Lines are keyed by owner identity. Reads join the catalog for current
    name and price, like the PostgREST embed does.
    """

    def __init__(self, catalog: FakeCatalog):
        self.catalog = catalog
        self.carts: dict = {}
        self.writes: list[tuple] = []
        self.discarded: list = []
        self.delay = 0.0
        self._errors: dict[str, list[Exception]] = {}
        self._broken: dict[str, Exception] = {}

    def fail(self, operation: str, *errors: Exception) -> None:
        """Queue errors for the next calls of an operation."""
        self._errors.setdefault(operation, []).extend(errors)

    def break_operation(self, operation: str, error: Exception) -> None:
        """Make every call of an operation fail."""
        self._broken[operation] = error

    def repair(self) -> None:
        self._broken.clear()
        self._errors.clear()

    def seed(self, identity, **quantities: int) -> None:
        cart = self.carts.setdefault(identity, {})
        for product_id, quantity in quantities.items():
            product = self.catalog.products[product_id]
            cart[product_id] = CartLine(product_id, quantity, product.price, name=product.name)

    def quantities(self, identity) -> dict[str, int]:
        return {pid: line.quantity for pid, line in self.carts.get(identity, {}).items()}

    async def _call(self, operation: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if operation in self._broken:
            raise self._broken[operation]
        queued = self._errors.get(operation)
        if queued:
            raise queued.pop(0)

    async def fetch_cart(self, identity):
        await self._call("fetch_cart")
        lines = []
        for line in self.carts.get(identity, {}).values():
            product = self.catalog.products.get(line.product_id)
            if product is not None:
                line = replace(line, unit_price=product.price, name=product.name)
            lines.append(replace(line))
        return lines

    async def upsert_line(self, identity, product_id, quantity):
        await self._call("upsert_line")
        self.writes.append(("upsert", identity, product_id, quantity))
        cart = self.carts.setdefault(identity, {})
        if product_id in cart:
            cart[product_id].quantity = quantity
        else:
            product = self.catalog.products.get(product_id)
            price = product.price if product else Decimal("0")
            cart[product_id] = CartLine(product_id, quantity, price)

    async def delete_line(self, identity, product_id):
        await self._call("delete_line")
        self.writes.append(("delete", identity, product_id, 0))
        self.carts.get(identity, {}).pop(product_id, None)

    async def ensure_cart(self, identity):
        await self._call("ensure_cart")
        self.carts.setdefault(identity, {})
        return f"cart-{id(self.carts[identity])}"

    async def discard_cart(self, identity):
        await self._call("discard_cart")
        self.discarded.append(identity)
        self.carts.pop(identity, None)


@pytest.fixture
def product_a():
    """$25 product, plenty of stock"""
    return Product(id="prod-a", name="Salmon Fillet", price="25.00", inventory=10)


@pytest.fixture
def product_b():
    """$20 product"""
    return Product(id="prod-b", name="Shrimp Box", price="20.00", inventory=5)


@pytest.fixture
def product_low():
    """Low-stock product"""
    return Product(id="prod-low", name="Caviar Tin", price="50.00", inventory=2)


@pytest.fixture
def catalog(product_a, product_b, product_low):
    return FakeCatalog([product_a, product_b, product_low])


@pytest.fixture
def backend(catalog):
    return FakeCartBackend(catalog)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def token_factory():
    """Deterministic session tokens: token-1, token-2, ..."""
    counter = itertools.count(1)
    return lambda: f"token-{next(counter)}"


@pytest.fixture
def store(storage):
    return CartStore(storage)


@pytest.fixture
def resolver(storage, token_factory):
    return IdentityResolver(storage, token_factory)


@pytest.fixture
def fast_retry():
    """No backoff so retry tests run instantly"""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0, timeout=1.0)


@pytest.fixture
def engine(store, resolver, backend, catalog, fast_retry):
    return CartSyncEngine(
        store,
        resolver,
        backend,
        catalog,
        retry_policy=fast_retry,
        debounce_seconds=0.01,
    )


@pytest.fixture
def mock_supabase_client():
    """Mock async Supabase client; set `client.query.execute.return_value` per test"""
    client = Mock()

    query = Mock()
    for method in ("select", "insert", "upsert", "delete", "eq", "in_", "limit", "order"):
        getattr(query, method).return_value = query
    query.execute = AsyncMock(return_value=Mock(data=[]))

    client.table.return_value = query
    client.query = query
    return client
