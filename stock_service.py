"""
Stock pools (factory / godown) on the remote store.

Snapshots are advisory. Every mutation is a compare-and-swap on the pool row
(update ... where product_id = X and quantity = <seen>), re-read and retried
when another writer got there first, so a decrement can never take a pool
below zero.
"""
import logging
from typing import Dict, Tuple

from biz_errors import RemoteWriteFailure, StockUnavailable, ValidationError
from store_client import RemoteError, RemoteTimeout

logger = logging.getLogger(__name__)

POOL_FACTORY = 'factory'
POOL_GODOWN = 'godown'
POOL_TABLES = {
    POOL_FACTORY: 'factory_stock',
    POOL_GODOWN: 'godown_stock',
}
CAS_ATTEMPTS = 5


def pool_table(pool: str) -> str:
    try:
        return POOL_TABLES[pool]
    except KeyError:
        raise ValidationError(f"Unknown stock pool: {pool}") from None


def pool_for_sale_type(sale_type: str) -> str:
    """Distributors buy from the factory; everyone else from the godown."""
    return POOL_FACTORY if sale_type == 'distributor' else POOL_GODOWN


def _as_qty(value) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def read_snapshot(store, pool: str) -> Dict[str, int]:
    rows = store.read(pool_table(pool), columns='product_id,quantity')
    return {str(r['product_id']): _as_qty(r.get('quantity')) for r in rows if r.get('product_id') is not None}


class InventorySnapshotProvider:
    def __init__(self, store):
        self.store = store

    def read(self, pool: str) -> Dict[str, int]:
        return read_snapshot(self.store, pool)


def read_quantity(store, pool: str, product_id: str) -> int:
    rows = store.read(pool_table(pool), {'product_id': product_id}, columns='product_id,quantity', limit=1)
    return _as_qty(rows[0].get('quantity')) if rows else 0


def _compare_and_swap(store, pool: str, product_id: str, delta: int) -> Tuple[int, int]:
    table = pool_table(pool)
    for attempt in range(1, CAS_ATTEMPTS + 1):
        rows = store.read(table, {'product_id': product_id}, columns='product_id,quantity', limit=1)
        if not rows:
            if delta < 0:
                raise StockUnavailable(pool, [{'product_id': product_id, 'requested': -delta, 'available': 0}])
            store.insert(table, {'product_id': product_id, 'quantity': delta})
            return 0, delta
        seen = _as_qty(rows[0].get('quantity'))
        after = seen + delta
        if after < 0:
            raise StockUnavailable(pool, [{'product_id': product_id, 'requested': -delta, 'available': seen}])
        try:
            changed = store.update(table, {'product_id': product_id, 'quantity': seen}, {'quantity': after})
        except RemoteTimeout:
            # the update may have landed after the local timeout fired
            if read_quantity(store, pool, product_id) == after:
                logger.warning("Stock update %s/%s timed out but landed (%d -> %d)",
                               table, product_id, seen, after)
                return seen, after
            raise
        if changed:
            return seen, after
        logger.info("Stock row %s/%s changed underneath us (attempt %d); re-reading",
                    table, product_id, attempt)
    raise RemoteWriteFailure(f"Stock for {product_id} is changing too quickly; try again",
                             details={'product_id': product_id, 'pool': pool})


def decrement_stock(store, pool: str, product_id: str, quantity: int) -> Tuple[int, int]:
    """Take `quantity` from the pool only if that much is there. Returns (before, after)."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    try:
        return _compare_and_swap(store, pool, product_id, -int(quantity))
    except RemoteError as exc:
        logger.warning("Stock decrement failed for %s: %s (%s)", product_id, exc, exc.detail)
        raise RemoteWriteFailure(f"Failed to update stock for {product_id}") from exc


def restore_stock(store, pool: str, product_id: str, quantity: int) -> Tuple[int, int]:
    """Put back a previously taken quantity. Raises RemoteError on store failure."""
    if quantity <= 0:
        raise ValidationError("Quantity must be positive")
    return _compare_and_swap(store, pool, product_id, int(quantity))
