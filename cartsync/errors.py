"""
Cart sync error taxonomy and shared error messages.

Only PersistentSyncFailure (as a signal) and InventoryExceeded (an inline
result, see cartsync.cart.models) are meant to reach the UI layer. Everything
else is handled inside the sync engine or the persistence adapter.
"""

# Messages
ERROR_PRODUCT_NOT_FOUND = "Product not found"
ERROR_INVALID_QUANTITY = "quantity must be a positive integer"
ERROR_CART_UNAVAILABLE = "Cart service unavailable"
ERROR_CART_ACCESS_DENIED = "Not authorized to access this cart"
ERROR_SYNC_EXHAUSTED = "Cart changes could not be saved"


class CartSyncError(Exception):
    """Base class for cart synchronization errors."""


class TransientNetworkFailure(CartSyncError):
    """Backend call failed in a way worth retrying (timeout, 5xx, transport)."""


class OwnerConflict(CartSyncError):
    """Insert hit the unique owner constraint: another writer created the cart first."""


class CartAccessDenied(CartSyncError):
    """Row-level security rejected the request. Retrying will not help."""


class PersistentSyncFailure(CartSyncError):
    """
    A write was abandoned after the retry budget ran out.

    Never raised out of a cart mutation: instances are handed to failure
    listeners so the UI can show a non-blocking notice. The local cart keeps
    the change.
    """

    def __init__(self, command=None, cause: BaseException | None = None, operation: str = "write"):
        self.command = command
        self.cause = cause
        self.operation = operation
        if command is not None:
            detail = f"{command.product_id} after {command.attempts} attempts"
        else:
            detail = operation
        super().__init__(f"{ERROR_SYNC_EXHAUSTED}: {detail}")
