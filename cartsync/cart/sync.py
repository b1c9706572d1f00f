"""
Cart Sync Engine - reconciles the local cart with the remote cart store.

Responsibilities:
- Debounced write-through: store events become WriteCommands in a queue
  keyed by (identity, product_id); later commands for a key replace earlier
  ones, and the queue is flushed once the debounce window passes quietly
- Retry policy: each attempt is bounded by a timeout, transient failures are
  retried with exponential backoff (tenacity), exhaustion produces a
  PersistentSyncFailure signal while the local change stays applied
- Startup reconciliation: server truth replaces stale local lines
- Login merge: anonymous + authenticated quantities are summed, clamped and
  re-priced, then written back under the user

Tabs do not coordinate. Two engines writing the same line race, and the last
upsert to land wins for that line.
"""
import asyncio
import os
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Optional, Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cartsync.errors import CartSyncError, PersistentSyncFailure, TransientNetworkFailure
from cartsync.logging import get_logger
from .identity import IdentityResolver, IdentityTransition, describe_identity
from .models import (
    CartEvent,
    CartEventKind,
    CartLine,
    OwnerIdentity,
    Product,
    SessionIdentity,
    UserIdentity,
)
from .store import CartStore

logger = get_logger(__name__)

DEBOUNCE_SECONDS = int(os.environ.get("CART_SYNC_DEBOUNCE_MS", 500)) / 1000
MAX_ATTEMPTS = int(os.environ.get("CART_SYNC_MAX_ATTEMPTS", 3))
WRITE_TIMEOUT_SECONDS = float(os.environ.get("CART_SYNC_TIMEOUT_SECONDS", 5))


class PersistenceAdapter(Protocol):
    async def fetch_cart(self, identity: OwnerIdentity) -> list[CartLine]: ...

    async def upsert_line(self, identity: OwnerIdentity, product_id: str, quantity: int) -> None: ...

    async def delete_line(self, identity: OwnerIdentity, product_id: str) -> None: ...

    async def ensure_cart(self, identity: OwnerIdentity) -> str: ...

    async def discard_cart(self, identity: OwnerIdentity) -> None: ...


class ProductCatalog(Protocol):
    async def get_products(self, product_ids: Iterable[str]) -> dict[str, Product]: ...


@dataclass
class RetryPolicy:
    """Bounded retry settings for backend calls."""
    max_attempts: int = MAX_ATTEMPTS
    base_delay: float = 0.3
    max_delay: float = 3.0
    timeout: float = WRITE_TIMEOUT_SECONDS

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(TransientNetworkFailure),
        )


@dataclass
class WriteCommand:
    """Latest desired state of one line. Quantity 0 means delete."""
    identity: OwnerIdentity
    product_id: str
    quantity: int
    attempts: int = 0

    @property
    def key(self) -> tuple[OwnerIdentity, str]:
        return (self.identity, self.product_id)

    @property
    def is_delete(self) -> bool:
        return self.quantity <= 0


FailureListener = Callable[[PersistentSyncFailure], None]


def merge_lines(
    anonymous: Iterable[CartLine],
    authenticated: Iterable[CartLine],
    catalog: Mapping[str, Product],
) -> list[CartLine]:
    """
    Fold an anonymous cart into an authenticated one.

    Quantities of the same product are summed and clamped to current
    inventory. Unit prices come from the catalog, not from either source.
    Products missing from the catalog or out of stock are dropped.

    Returns:
        Merged lines, authenticated cart order first
    """
    totals: dict[str, int] = {}
    added_at: dict[str, str] = {}
    for line in [*authenticated, *anonymous]:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
        first_seen = added_at.get(line.product_id)
        if not first_seen or (line.added_at and line.added_at < first_seen):
            added_at[line.product_id] = line.added_at

    merged = []
    for product_id, quantity in totals.items():
        product = catalog.get(product_id)
        if product is None:
            logger.warning("Dropping %s from merge: no longer in catalog", product_id)
            continue
        granted = min(quantity, max(0, product.inventory))
        if granted < 1:
            logger.info("Dropping %s from merge: out of stock", product_id)
            continue
        merged.append(
            CartLine(
                product_id=product_id,
                quantity=granted,
                unit_price=product.price,
                added_at=added_at.get(product_id, ""),
                name=product.name,
            )
        )
    return merged


class CartSyncEngine:
    """Keeps one CartStore in step with the remote cart of the current identity."""

    def __init__(
        self,
        store: CartStore,
        identity: IdentityResolver,
        adapter: PersistenceAdapter,
        catalog: ProductCatalog,
        retry_policy: Optional[RetryPolicy] = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
    ):
        self.store = store
        self.identity = identity
        self.adapter = adapter
        self.catalog = catalog
        self.retry_policy = retry_policy or RetryPolicy()
        self.debounce_seconds = debounce_seconds

        self.pending: dict[tuple, WriteCommand] = {}
        self.in_flight: dict[tuple, WriteCommand] = {}
        self.failures: list[PersistentSyncFailure] = []

        self._failure_listeners: list[FailureListener] = []
        self._debounce_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._flush_lock = asyncio.Lock()
        self._merge_locks: dict[str, asyncio.Lock] = {}
        self._merged_pairs: set[tuple[str, str]] = set()
        # user_id -> anonymous identity whose merge failed and must be retried
        self.pending_merges: dict[str, SessionIdentity] = {}
        self._unsubscribe = store.subscribe(self._on_cart_event)

    # ==================== LIFECYCLE ====================

    async def start(self) -> list[CartLine]:
        """
        Adopt the server cart of the resolved identity.

        Lines with writes still queued or in flight keep their local quantity;
        other local lines are stale and dropped. A merge that failed earlier
        for the current user is retried instead, so the anonymous lines still
        held locally are folded in rather than overwritten.
        """
        identity = self.identity.current
        if isinstance(identity, UserIdentity) and identity.user_id in self.pending_merges:
            return await self.merge(self.pending_merges[identity.user_id], identity)

        try:
            server_lines = await self._with_retry(self.adapter.fetch_cart, identity)
        except CartSyncError as e:
            logger.warning("Startup fetch failed, keeping local cart: %s", e)
            self._report(PersistentSyncFailure(cause=e, operation="fetch_cart"))
            return self.store.items

        unsynced = {pid for ident, pid in [*self.pending, *self.in_flight] if ident == identity}
        local = {line.product_id: line for line in self.store.items}
        lines = [line for line in server_lines if line.product_id not in unsynced]
        lines += [local[pid] for pid in unsynced if pid in local]

        products = await self._load_products(line.product_id for line in lines)
        self.store.replace_lines(lines, owner=identity, products=products.values())
        logger.info(
            "Adopted server cart for %s: %d lines (%d kept local)",
            describe_identity(identity),
            len(lines),
            len(unsynced),
        )
        return self.store.items

    async def login(self, user_id: str) -> Optional[IdentityTransition]:
        """
        Consume a login event: switch identity and merge the anonymous cart.

        A repeated login for the current user returns None, after retrying a
        merge that failed earlier or waiting for one still running.
        """
        current = self.identity.current
        if isinstance(current, UserIdentity) and current.user_id != user_id:
            # Account switch: leave the previous user's cart behind first
            await self.logout()

        transition = self.identity.login(user_id)
        if transition is None:
            pending = self.pending_merges.get(user_id)
            if pending is not None:
                await self.merge(pending, self.identity.current)
            elif user_id in self._merge_locks:
                # A merge in progress is awaited, not re-entered
                async with self._merge_locks[user_id]:
                    pass
            return None

        # Anonymous cart left over from an earlier session whose merge failed
        stale = self.pending_merges.get(user_id)
        failures_before = len(self.failures)
        await self.merge(transition.previous, transition.current)
        if stale is not None and stale != transition.previous and len(self.failures) == failures_before:
            await self.merge(stale, transition.current)
        return transition

    async def logout(self) -> Optional[IdentityTransition]:
        """
        Consume a logout event.

        Pending writes for the user are flushed, a new session token is minted
        and the local cart is emptied without touching the user's server cart.
        """
        if not self.identity.is_authenticated:
            return None
        await self.flush()
        transition = self.identity.logout()
        if transition is not None:
            self.store.replace_lines([], owner=transition.current)
        return transition

    def close(self) -> None:
        """
        Detach from the store (view teardown).

        Queued writes are flushed in the background; nothing is raised into
        the caller once detached.
        """
        self._unsubscribe()
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
            self._debounce_task = None
        if not self.pending:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Closed without an event loop, %d cart writes dropped", len(self.pending))
            return
        self._spawn(self.flush())

    async def drain(self) -> None:
        """Wait until the debounce timer and all background flushes are done."""
        while True:
            tasks = [t for t in [self._debounce_task, *self._background] if t and not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def on_failure(self, listener: FailureListener) -> Callable[[], None]:
        """Subscribe to PersistentSyncFailure signals."""
        self._failure_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._failure_listeners:
                self._failure_listeners.remove(listener)

        return unsubscribe

    # ==================== WRITE-THROUGH ====================

    def _on_cart_event(self, store: CartStore, event: CartEvent) -> None:
        match event.kind:
            case CartEventKind.PANEL_TOGGLED:
                return
            case CartEventKind.REPLACED:
                # Adopted state is already on the server, except for re-clamped lines
                product_ids = tuple(c.product_id for c in event.clamped)
            case _:
                product_ids = event.product_ids

        if not product_ids:
            return

        identity = self._write_identity()
        for product_id in product_ids:
            self._enqueue(WriteCommand(identity, product_id, store.get_item_quantity(product_id)))

        delay = 0 if event.kind is CartEventKind.CLEARED else self.debounce_seconds
        self._schedule_flush(delay)

    def _write_identity(self) -> OwnerIdentity:
        """Owner that local edits are written under."""
        identity = self.identity.current
        if isinstance(identity, UserIdentity):
            unmerged = self.pending_merges.get(identity.user_id)
            if unmerged is not None and self.store.owner == unmerged:
                # Local lines are still the anonymous cart until the merge lands
                return unmerged
        return identity

    def _enqueue(self, command: WriteCommand) -> None:
        self.pending[command.key] = command

    def _schedule_flush(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (synchronous use): the caller flushes explicitly
            return
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = loop.create_task(self._flush_after(delay))

    async def _flush_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._debounce_task = None
        self._spawn(self.flush())

    async def flush(self) -> None:
        """Write every queued command now, one write per line."""
        if self._debounce_task and not self._debounce_task.done():
            self._debounce_task.cancel()
            self._debounce_task = None

        async with self._flush_lock:
            while self.pending:
                batch = list(self.pending.values())
                self.pending.clear()
                for command in batch:
                    self.in_flight[command.key] = command
                await asyncio.gather(*(self._write(command) for command in batch))

    async def _write(self, command: WriteCommand) -> None:
        try:
            await self._with_retry(self._apply, command)
            logger.debug(
                "Synced %s=%d for %s in %d attempt(s)",
                command.product_id,
                command.quantity,
                describe_identity(command.identity),
                command.attempts,
            )
        except CartSyncError as e:
            self._report(PersistentSyncFailure(command, cause=e))
        except Exception as e:
            logger.error("Unexpected error writing cart line %s", command.product_id, exc_info=True)
            self._report(PersistentSyncFailure(command, cause=e))
        finally:
            if self.in_flight.get(command.key) is command:
                del self.in_flight[command.key]

    async def _apply(self, command: WriteCommand) -> None:
        command.attempts += 1
        if command.is_delete:
            await self.adapter.delete_line(command.identity, command.product_id)
        else:
            await self.adapter.upsert_line(command.identity, command.product_id, command.quantity)

    async def _with_retry(self, operation, *args):
        """Run a backend call with per-attempt timeout and bounded exponential backoff."""
        timeout = self.retry_policy.timeout
        async for attempt in self.retry_policy.retrying():
            with attempt:
                try:
                    return await asyncio.wait_for(operation(*args), timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise TransientNetworkFailure(f"timed out after {timeout}s") from e

    def _report(self, failure: PersistentSyncFailure) -> None:
        self.failures.append(failure)
        logger.error("%s (%s)", failure, type(failure.cause).__name__ if failure.cause else "n/a")
        for listener in list(self._failure_listeners):
            try:
                listener(failure)
            except Exception:
                logger.error("Failure listener raised", exc_info=True)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background cart sync failed", exc_info=task.exception())

    # ==================== MERGE ====================

    async def merge(self, session: SessionIdentity, user: UserIdentity) -> list[CartLine]:
        """
        Fold the anonymous cart into the user's cart.

        Merges for one user are serialized, and a (session, user) pair is
        merged at most once, so a repeated login event cannot double-sum.
        """
        lock = self._merge_locks.setdefault(user.user_id, asyncio.Lock())
        async with lock:
            pair = (session.token, user.user_id)
            if pair in self._merged_pairs:
                logger.info("Merge for %s already applied, skipping", describe_identity(user))
                return self.store.items

            await self.flush()
            owned_by_session = self.store.owner in (None, session)
            local = self.store.items if owned_by_session else []

            try:
                results = await asyncio.gather(
                    self._with_retry(self.adapter.fetch_cart, session),
                    self._with_retry(self.adapter.fetch_cart, user),
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, BaseException):
                        raise result
                anonymous_server, authenticated = results
                anonymous = {line.product_id: line for line in anonymous_server}
                # Local optimistic state is authoritative for the anonymous side
                anonymous.update({line.product_id: line for line in local})
                product_ids = set(anonymous) | {line.product_id for line in authenticated}
                products = await self._load_products(product_ids, strict=True)
            except CartSyncError as e:
                logger.error("Merge into %s failed, keeping local cart: %s", describe_identity(user), e)
                self._report(PersistentSyncFailure(cause=e, operation="merge"))
                self.pending_merges[user.user_id] = session
                return self.store.items

            self._merged_pairs.add(pair)
            self.pending_merges.pop(user.user_id, None)
            merged = merge_lines(anonymous.values(), authenticated, products)
            self.store.replace_lines(merged, owner=user, products=products.values())

            merged_ids = {line.product_id for line in merged}
            for line in merged:
                self._enqueue(WriteCommand(user, line.product_id, line.quantity))
            for line in authenticated:
                if line.product_id not in merged_ids:
                    self._enqueue(WriteCommand(user, line.product_id, 0))

            failures_before = len(self.failures)
            await self.flush()
            if len(self.failures) == failures_before:
                try:
                    await self._with_retry(self.adapter.discard_cart, session)
                except CartSyncError as e:
                    logger.warning("Could not discard anonymous cart: %s", e)
            else:
                logger.warning("Keeping anonymous cart %s: merge write-back incomplete", describe_identity(session))

            logger.info(
                "Merged %d anonymous + %d user lines into %d for %s",
                len(anonymous),
                len(authenticated),
                len(merged),
                describe_identity(user),
            )
            return self.store.items

    async def _load_products(self, product_ids: Iterable[str], strict: bool = False) -> dict[str, Product]:
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}
        try:
            return await self._with_retry(self.catalog.get_products, ids)
        except CartSyncError as e:
            if strict:
                raise
            logger.warning("Catalog lookup failed, inventory not refreshed: %s", e)
            return {}

