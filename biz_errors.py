"""User-facing errors raised by the sales and payment services."""
from typing import Any, Dict, List, Optional


class SaleError(Exception):
    """Base for errors whose message is safe to show to a user."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(SaleError):
    """Missing or inconsistent input; raised before any write."""


class NoItemsSelected(ValidationError):
    def __init__(self):
        super().__init__("No items selected for purchase")


class NotFound(SaleError):
    pass


class StockUnavailable(SaleError):
    """One or more products do not have enough stock in the pool."""
    def __init__(self, pool: str, items: List[Dict[str, Any]], message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        if message is None:
            parts = []
            for it in items:
                parts.append(f"{it['product_id']} (requested: {it['requested']}, available: {it['available']})")
            message = f"Insufficient {pool} stock for: {', '.join(parts)}"
        super().__init__(message, details={**(details or {}), 'pool': pool, 'items': items})
        self.pool = pool
        self.items = items


class RemoteWriteFailure(SaleError):
    """A remote call failed; the message never carries the raw remote body."""
