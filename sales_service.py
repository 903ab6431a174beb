"""
Sale creation against a remote store that has no multi-table transactions.

A sale touches customers, sales, sale_items and one stock pool. SaleSaga runs
every read and validation first, then the writes one by one; each write that
lands pushes an undo onto a compensation stack, and a failure unwinds that
stack in reverse before the error goes back to the caller.

    sale = {
      'sale_type': 'customer',              # customer | distributor | quick
      'customer_id': None,                  # existing customer, used as-is
      'customer': {'name': 'Asha', 'phone': '98...', 'address': '...'},
      'persist_customer': False,            # create a customers row for walk-ins
      'discount_customer': False,
      'payment_method': 'upi',
      'delivery': False,
      'delivery_date': None,
      'lines': [{'product_id': 'P1', 'quantity': 2, 'unit_price': 120.0}],
      'total_amount': 240.0,                # optional; must match the lines
    }
"""
import datetime as dt
import logging
import math
import uuid
from typing import Any, Callable, Dict, List, Optional

import biz_config
import stock_service
from biz_errors import (
    NoItemsSelected,
    NotFound,
    RemoteWriteFailure,
    SaleError,
    StockUnavailable,
    ValidationError,
)
from store_client import RemoteError, RemoteTimeout, iso_now

logger = logging.getLogger(__name__)

SALE_TYPE_CUSTOMER = 'customer'
SALE_TYPE_DISTRIBUTOR = 'distributor'
SALE_TYPE_QUICK = 'quick'
SALE_TYPES = (SALE_TYPE_CUSTOMER, SALE_TYPE_DISTRIBUTOR, SALE_TYPE_QUICK)

STATUS_PENDING = 'pending'
STATUS_DELIVERED = 'delivered'
STATUS_PAID = 'paid'
STATUS_COMPLETED = 'completed'
# status only moves up this ladder
STATUS_RANK = {
    STATUS_PENDING: 0,
    STATUS_DELIVERED: 1,
    STATUS_PAID: 2,
    STATUS_COMPLETED: 2,
}

METHOD_CASH = 'cash'
METHOD_CREDIT = 'credit'
# collected by the driver on delivery
DELIVERY_PAYMENT_METHOD = METHOD_CASH

WALK_IN_NAME = 'Walk-in Customer'
DISTRIBUTOR_CREDIT_LIMIT = 50000
CUSTOMER_CREDIT_LIMIT = 10000
INVOICE_ATTEMPTS = 3
MONEY_EPSILON = 0.005


def _money(value: Any) -> float:
    return round(float(value or 0), 2)


def _truthy(value: Any) -> bool:
    return value in (1, "1", True, "true", "True", "yes", "Yes", "t")


def get_sale(store, sale_id: str) -> Dict[str, Any]:
    try:
        rows = store.read('sales', {'id': sale_id}, limit=1)
    except RemoteError as exc:
        logger.warning("Reading sale %s failed: %s (%s)", sale_id, exc, exc.detail)
        raise RemoteWriteFailure("Unable to load the sale; check the connection and try again") from exc
    if not rows:
        raise NotFound(f"Sale {sale_id} not found")
    return rows[0]


# ---------- INVOICE NUMBERS ----------
def _month_bounds(when: dt.datetime):
    start = dt.datetime(when.year, when.month, 1)
    if when.month == 12:
        end = dt.datetime(when.year + 1, 1, 1)
    else:
        end = dt.datetime(when.year, when.month + 1, 1)
    return start.isoformat() + "Z", end.isoformat() + "Z"


class InvoiceSequencer:
    """INV/<tag>-<MM>-<NNN>, NNN = sales created this calendar month + 1.

    Count based, not reserved: two devices numbering in the same month can
    collide. The sales.invoice_number unique constraint turns that into an
    insert conflict, which SaleSaga answers by asking for the next number.
    """

    def __init__(self, store, tag: Optional[str] = None):
        self.store = store
        self.tag = tag

    def next(self, month: Optional[dt.datetime] = None, offset: int = 0) -> str:
        when = month or dt.datetime.utcnow()
        start, end = _month_bounds(when)
        try:
            count = self.store.count('sales', {'created_at': [('gte', start), ('lt', end)]})
        except RemoteError as exc:
            logger.warning("Monthly sales count failed: %s (%s)", exc, exc.detail)
            raise RemoteWriteFailure("Could not allocate an invoice number; try again") from exc
        tag = self.tag or biz_config.invoice_tag(when)
        return f"INV/{tag}-{when.month:02d}-{count + 1 + offset:03d}"


# ---------- CUSTOMERS ----------
class CustomerResolver:
    """Pick the customer a sale is booked against.

    An explicit id is used as-is. Quick sales never get a customer. Otherwise
    a customers row is created when asked to, and always for distributors;
    plain walk-ins stay inline on the sale.
    """

    def __init__(self, store):
        self.store = store

    def resolve(self, selected_id: Optional[str], inline: Dict[str, Any], persist: bool,
                sale_type: str = SALE_TYPE_CUSTOMER, discount_customer: bool = False) -> Optional[str]:
        if sale_type == SALE_TYPE_QUICK:
            return None
        if selected_id:
            return selected_id
        if not (persist or sale_type == SALE_TYPE_DISTRIBUTOR):
            return None
        is_distributor = sale_type == SALE_TYPE_DISTRIBUTOR
        row = {
            # client-side id: an insert that times out may still have landed
            'id': str(uuid.uuid4()),
            'name': inline.get('name') or WALK_IN_NAME,
            'phone': inline.get('phone') or '',
            'address': inline.get('address') or '',
            'type': SALE_TYPE_DISTRIBUTOR if is_distributor else SALE_TYPE_CUSTOMER,
            'is_distributor': is_distributor,
            'is_active': True,
            'is_discount_customer': bool(discount_customer),
            'current_balance': 0,
            'credit_limit': DISTRIBUTOR_CREDIT_LIMIT if is_distributor else CUSTOMER_CREDIT_LIMIT,
            'notes': f"Added via sales form on {iso_now()}",
        }
        try:
            created = self.store.insert('customers', row)
        except RemoteError as exc:
            logger.warning("Customer insert failed: %s (%s)", exc, exc.detail)
            details = {'customer_id': row['id']} if exc.transient else {}
            raise RemoteWriteFailure("Failed to create customer", details=details) from exc
        return created['id']


# ---------- REQUEST NORMALIZATION ----------
def _normalize_line(raw: Dict[str, Any]) -> Dict[str, Any]:
    product_id = raw.get('product_id') or raw.get('item_id')
    if not product_id:
        raise ValidationError("Every line needs a product_id")
    qty_raw = raw.get('quantity', raw.get('qty', 0))
    try:
        qty_f = float(qty_raw or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid quantity for {product_id}: {qty_raw!r}") from None
    if not math.isfinite(qty_f) or qty_f != int(qty_f):
        raise ValidationError(f"Quantity for {product_id} must be a whole number")
    price = raw.get('unit_price', raw.get('price'))
    if price is not None:
        try:
            price = _money(price)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid price for {product_id}: {price!r}") from None
        if price < 0:
            raise ValidationError(f"Price for {product_id} cannot be negative")
    return {'product_id': str(product_id), 'quantity': int(qty_f), 'unit_price': price}


def normalize_sale_request(sale: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(sale, dict):
        raise ValidationError("Sale payload must be an object")
    sale_type = str(sale.get('sale_type') or sale.get('type') or SALE_TYPE_CUSTOMER).strip().lower()
    if sale_type not in SALE_TYPES:
        raise ValidationError(f"Unknown sale type: {sale_type}")
    customer = sale.get('customer') or {}
    if not isinstance(customer, dict):
        raise ValidationError("customer must be an object")
    lines_raw = sale.get('lines') or sale.get('items') or []
    if not isinstance(lines_raw, list):
        raise ValidationError("lines must be a list")
    delivery = _truthy(sale.get('delivery'))
    delivery_date = sale.get('delivery_date')
    if delivery and not delivery_date:
        delivery_date = dt.date.today().isoformat()
    total = sale.get('total_amount')
    method = sale.get('payment_method')
    if method is not None and not isinstance(method, str):
        raise ValidationError(f"Invalid payment method: {method!r}")
    return {
        'sale_type': sale_type,
        'customer_id': sale.get('customer_id') or None,
        'customer': {
            'name': str(customer.get('name') or '').strip() or WALK_IN_NAME,
            'phone': str(customer.get('phone') or '').strip(),
            'address': str(customer.get('address') or '').strip(),
        },
        'persist_customer': _truthy(sale.get('persist_customer') or sale.get('save_customer')),
        'discount_customer': _truthy(sale.get('discount_customer')),
        'payment_method': str(method).strip().lower() if method else None,
        'delivery': delivery,
        'delivery_date': delivery_date if delivery else None,
        'lines': [_normalize_line(l) for l in lines_raw if isinstance(l, dict)],
        'total_amount': _money(total) if total is not None else None,
    }


def effective_payment_method(sale_type: str, delivery: bool, selected: Optional[str]) -> str:
    if sale_type == SALE_TYPE_QUICK:
        return METHOD_CASH
    if delivery:
        return DELIVERY_PAYMENT_METHOD
    if sale_type == SALE_TYPE_DISTRIBUTOR:
        return METHOD_CREDIT
    return selected or METHOD_CASH


def unit_price_for(product: Dict[str, Any], sale_type: str, delivery: bool,
                   discount_customer: bool) -> Optional[float]:
    if discount_customer and product.get('discount_price') is not None:
        return _money(product['discount_price'])
    if sale_type == SALE_TYPE_DISTRIBUTOR:
        price = product.get('factory_price')
    elif delivery:
        price = product.get('delivery_price')
        if price is None:
            price = product.get('godown_price')
    else:
        price = product.get('godown_price')
    return _money(price) if price is not None else None


# ---------- SAGA ----------
class CompensationStack:
    """Undo actions for writes that landed, run newest first."""

    def __init__(self, label: str):
        self.label = label
        self._undo: List[tuple] = []

    def push(self, name: str, fn: Callable, *args):
        self._undo.append((name, fn, args))

    def __len__(self):
        return len(self._undo)

    def unwind(self) -> List[str]:
        failed = []
        while self._undo:
            name, fn, args = self._undo.pop()
            try:
                fn(*args)
                logger.info("[%s] compensated: %s", self.label, name)
            except (RemoteError, SaleError) as exc:
                logger.warning("[%s] compensation '%s' failed: %s", self.label, name, exc)
                failed.append(name)
        return failed


class SaleSaga:
    def __init__(self, store, sequencer: Optional[InvoiceSequencer] = None,
                 resolver: Optional[CustomerResolver] = None,
                 snapshots: Optional[stock_service.InventorySnapshotProvider] = None,
                 restore_stock: Optional[bool] = None):
        self.store = store
        self.sequencer = sequencer or InvoiceSequencer(store)
        self.resolver = resolver or CustomerResolver(store)
        self.snapshots = snapshots or stock_service.InventorySnapshotProvider(store)
        self.restore_stock = biz_config.RESTORE_STOCK if restore_stock is None else restore_stock

    def create(self, sale: Dict[str, Any], now: Optional[dt.datetime] = None) -> str:
        """Create the sale and return its id. Raises SaleError subclasses."""
        req = normalize_sale_request(sale)
        lines = [l for l in req['lines'] if l['quantity'] > 0]
        if not lines:
            raise NoItemsSelected()

        sale_type = req['sale_type']
        delivery = req['delivery']
        method = effective_payment_method(sale_type, delivery, req['payment_method'])
        pool = stock_service.pool_for_sale_type(sale_type)
        lines = self._price_lines(lines, sale_type, delivery, req['discount_customer'])
        total = _money(sum(l['total_price'] for l in lines))
        if req['total_amount'] is not None and abs(req['total_amount'] - total) > MONEY_EPSILON:
            raise ValidationError(
                f"Sale total {req['total_amount']:.2f} does not match line total {total:.2f}",
                details={'total_amount': req['total_amount'], 'line_total': total},
            )
        invoice_number = self.sequencer.next(now)
        verified = (not delivery) and method == METHOD_CASH
        self._precheck_stock(pool, lines)

        undo = CompensationStack(invoice_number)
        try:
            sale_id = self._commit(req, lines, pool, method, total, verified, invoice_number, now, undo)
        except SaleError as exc:
            failed = undo.unwind()
            if failed:
                logger.warning("Sale %s left partial state after compensation: %s", invoice_number, failed)
            logger.warning("Sale %s failed: %s", invoice_number, exc.message)
            raise
        logger.info("Sale %s committed (%d line(s), total %.2f, pool %s)",
                    sale_id, len(lines), total, pool)
        return sale_id

    def _price_lines(self, lines: List[Dict[str, Any]], sale_type: str, delivery: bool,
                     discount_customer: bool) -> List[Dict[str, Any]]:
        missing = sorted({l['product_id'] for l in lines if l['unit_price'] is None})
        products: Dict[str, Dict[str, Any]] = {}
        for product_id in missing:
            try:
                rows = self.store.read('products', {'id': product_id}, limit=1)
            except RemoteError as exc:
                logger.warning("Product lookup %s failed: %s (%s)", product_id, exc, exc.detail)
                raise RemoteWriteFailure("Failed to load product prices") from exc
            if not rows:
                raise ValidationError(f"Unknown product: {product_id}")
            products[product_id] = rows[0]
        priced = []
        for l in lines:
            price = l['unit_price']
            if price is None:
                price = unit_price_for(products[l['product_id']], sale_type, delivery, discount_customer)
                if price is None:
                    raise ValidationError(f"Product {l['product_id']} has no price for this sale")
            priced.append({**l, 'unit_price': price, 'total_price': _money(price * l['quantity'])})
        return priced

    def _precheck_stock(self, pool: str, lines: List[Dict[str, Any]]):
        try:
            available = self.snapshots.read(pool)
        except RemoteError as exc:
            logger.warning("Stock snapshot for %s failed: %s (%s)", pool, exc, exc.detail)
            raise RemoteWriteFailure(f"Failed to verify current {pool} stock levels") from exc
        requested: Dict[str, int] = {}
        for l in lines:
            requested[l['product_id']] = requested.get(l['product_id'], 0) + l['quantity']
        short = [
            {'product_id': pid, 'requested': qty, 'available': available.get(pid, 0)}
            for pid, qty in requested.items()
            if available.get(pid, 0) < qty
        ]
        if short:
            raise StockUnavailable(pool, short)

    def _commit(self, req, lines, pool, method, total, verified, invoice_number, now, undo) -> str:
        selected = req['customer_id']
        try:
            customer_id = self.resolver.resolve(selected, req['customer'], req['persist_customer'],
                                                req['sale_type'], req['discount_customer'])
        except RemoteWriteFailure as exc:
            maybe_created = exc.details.get('customer_id')
            if maybe_created:
                undo.push(f"delete customer {maybe_created}", self.store.delete, 'customers', {'id': maybe_created})
            raise
        if customer_id and not selected:
            undo.push(f"delete customer {customer_id}", self.store.delete, 'customers', {'id': customer_id})

        if req['delivery']:
            status = STATUS_PENDING
        elif verified:
            status = STATUS_COMPLETED
        else:
            status = STATUS_PENDING
        sale_id = str(uuid.uuid4())
        row = {
            'id': sale_id,
            'customer_id': customer_id,
            'customer_name': req['customer']['name'],
            'customer_phone': req['customer']['phone'],
            'customer_address': req['customer']['address'],
            'type': req['sale_type'],
            'payment_method': method,
            'total_amount': total,
            'paid_amount': total if verified else 0,
            'status': status,
            'verified': verified,
            'delivery': req['delivery'],
            'delivery_date': req['delivery_date'],
        }
        # pushed before the insert: a timed-out insert may still land remotely
        undo.push(f"delete sale {sale_id}", self._delete_sale, sale_id)
        invoice_number = self._insert_sale(row, invoice_number, now)

        failures = []
        short = []
        for line in lines:
            try:
                self._commit_line(sale_id, invoice_number, pool, line, undo)
            except StockUnavailable as exc:
                item = exc.items[0]
                short.append(item)
                failures.append({'product_id': line['product_id'], 'kind': 'stock',
                                 'reason': f"Insufficient stock (needed: {item['requested']}, "
                                           f"available: {item['available']})"})
                break
            except SaleError as exc:
                failures.append({'product_id': line['product_id'], 'kind': 'remote', 'reason': exc.message})
                break
        if failures:
            summary = ', '.join(f"{f['product_id']} ({f['reason']})" for f in failures)
            message = f"Sale failed: {summary}"
            if short:
                raise StockUnavailable(pool, short, message=message, details={'failures': failures})
            raise SaleError(message, details={'failures': failures})
        return sale_id

    def _insert_sale(self, row: Dict[str, Any], invoice_number: str, now) -> str:
        """Insert the sale row; returns the invoice number it was stored under."""
        for attempt in range(INVOICE_ATTEMPTS):
            try:
                self.store.insert('sales', {**row, 'invoice_number': invoice_number})
                return invoice_number
            except RemoteTimeout as exc:
                logger.warning("Sale insert for %s timed out; it may still land: %s", row['id'], exc)
                raise RemoteWriteFailure("Failed to create sale record") from exc
            except RemoteError as exc:
                if exc.status == 409 and attempt + 1 < INVOICE_ATTEMPTS:
                    logger.info("Invoice number %s already taken; allocating the next one", invoice_number)
                    invoice_number = self.sequencer.next(now, offset=attempt + 1)
                    continue
                logger.warning("Sale insert failed: %s (%s)", exc, exc.detail)
                raise RemoteWriteFailure("Failed to create sale record") from exc
        raise RemoteWriteFailure("Failed to create sale record")

    def _commit_line(self, sale_id: str, invoice_number: str, pool: str, line: Dict[str, Any],
                     undo: CompensationStack):
        product_id = line['product_id']
        qty = line['quantity']
        try:
            live = stock_service.read_quantity(self.store, pool, product_id)
        except RemoteError as exc:
            raise RemoteWriteFailure(f"Failed to get current stock for {product_id}") from exc
        if live < qty:
            raise StockUnavailable(pool, [{'product_id': product_id, 'requested': qty, 'available': live}])
        try:
            self.store.insert('sale_items', {
                'sale_id': sale_id,
                'product_id': product_id,
                'quantity': qty,
                'unit_price': line['unit_price'],
                'total_price': line['total_price'],
                'invoice_number': invoice_number,
            })
        except RemoteError as exc:
            logger.warning("Sale item insert failed for %s: %s (%s)", product_id, exc, exc.detail)
            raise RemoteWriteFailure(f"Failed to add {product_id} to the sale") from exc
        stock_service.decrement_stock(self.store, pool, product_id, qty)
        if self.restore_stock:
            undo.push(f"restore {qty} x {product_id} to {pool}",
                      stock_service.restore_stock, self.store, pool, product_id, qty)

    def _delete_sale(self, sale_id: str):
        self.store.delete('sale_items', {'sale_id': sale_id})
        self.store.delete('sales', {'id': sale_id})


# ---------- DELIVERIES ----------
def mark_delivered(store, sale_id: str) -> Dict[str, Any]:
    """pending -> delivered for delivery sales; leaves `verified` alone."""
    sale = get_sale(store, sale_id)
    if not _truthy(sale.get('delivery')):
        raise ValidationError("Only delivery sales can be marked delivered")
    if sale.get('status') != STATUS_PENDING:
        return sale
    try:
        rows = store.update('sales', {'id': sale_id, 'status': STATUS_PENDING}, {'status': STATUS_DELIVERED})
    except RemoteError as exc:
        logger.warning("Marking %s delivered failed: %s (%s)", sale_id, exc, exc.detail)
        raise RemoteWriteFailure("Failed to update delivery status") from exc
    if rows:
        logger.info("Sale %s marked delivered", sale_id)
        return rows[0]
    return get_sale(store, sale_id)
