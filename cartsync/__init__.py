"""cartsync - client-held shopping cart reconciliation engine."""

__version__ = "0.1.0"
