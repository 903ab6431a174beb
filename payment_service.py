"""
Payments against existing sales.

PaymentLedger.apply adds an amount to a sale's paid_amount (always re-read
from the store, never taken from the caller) and moves status/verified along
this table in a single update:

    delivery  already delivered  full   -> status     verified
    yes       no                 any       delivered  no
    yes       yes                yes       delivered  yes
    yes       yes                no        delivered  no
    no        -                  yes       paid       yes
    no        -                  no        pending    no

A status never moves down (pending < delivered < paid = completed).

The payments table is a supplementary ledger: its insert is best effort and
its failure is reported back in the outcome, not raised.
"""
import datetime as dt
import logging
import math
from typing import Any, Callable, Dict, Optional

import biz_config
from biz_errors import RemoteWriteFailure, ValidationError
from sales_service import (
    MONEY_EPSILON,
    STATUS_COMPLETED,
    STATUS_DELIVERED,
    STATUS_PAID,
    STATUS_PENDING,
    STATUS_RANK,
    _money,
    _truthy,
    get_sale,
)
from store_client import RemoteError, iso_now

logger = logging.getLogger(__name__)

REFRESH_PATCH = 'patch'
REFRESH_DEFERRED = 'deferred'
RELOAD_DELAY = 0.5
CAS_ATTEMPTS = 3


def payment_transition(delivery: bool, already_delivered: bool, is_full: bool):
    """Return (status, verified) for a payment on a sale."""
    if delivery:
        if not already_delivered:
            return STATUS_DELIVERED, False
        return STATUS_DELIVERED, is_full
    if is_full:
        return STATUS_PAID, True
    return STATUS_PENDING, False


def _never_downgrade(current: Optional[str], proposed: str) -> str:
    """Keep `current` unless `proposed` ranks strictly higher; paid and completed are both terminal."""
    current = current or STATUS_PENDING
    if STATUS_RANK.get(current, 0) >= STATUS_RANK.get(proposed, 0):
        return current
    return proposed


class PaymentLedger:
    def __init__(self, store, queue=None,
                 on_patch: Optional[Callable[[str, Dict[str, Any]], None]] = None,
                 on_reload: Optional[Callable[[float], None]] = None,
                 reload_delay: float = RELOAD_DELAY):
        self.store = store
        self.queue = queue
        self.on_patch = on_patch
        self.on_reload = on_reload
        self.reload_delay = reload_delay

    def _reload(self, delay: float):
        if self.on_reload:
            self.on_reload(delay)

    def apply(self, sale_id: str, amount: Any, payment_method: Optional[str] = None) -> Dict[str, Any]:
        try:
            amount = _money(amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid payment amount: {amount!r}") from None
        if not math.isfinite(amount) or amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if payment_method is not None and not isinstance(payment_method, str):
            raise ValidationError(f"Invalid payment method: {payment_method!r}")

        for attempt in range(1, CAS_ATTEMPTS + 1):
            sale = get_sale(self.store, sale_id)
            stored_paid_raw = sale.get('paid_amount')
            stored_paid = _money(stored_paid_raw)
            total = _money(sale.get('total_amount'))
            remaining = _money(total - stored_paid)
            if remaining <= MONEY_EPSILON:
                raise ValidationError("Sale has no remaining balance due")
            if amount > remaining + MONEY_EPSILON:
                raise ValidationError(
                    f"Payment of {amount:.2f} exceeds the remaining balance of {remaining:.2f}",
                    details={'remaining': remaining},
                )
            new_paid = min(_money(stored_paid + amount), total)
            is_full = new_paid >= total - MONEY_EPSILON
            delivery = _truthy(sale.get('delivery'))
            status, verified = payment_transition(delivery, sale.get('status') == STATUS_DELIVERED, is_full)
            status = _never_downgrade(sale.get('status'), status)
            method = str(payment_method or sale.get('payment_method') or 'cash').strip().lower()
            patch = {
                'verified': verified,
                'status': status,
                'paid_amount': new_paid,
                'payment_method': method,
            }
            try:
                # paid_amount in the filter: a concurrent payment makes this match nothing
                rows = self.store.update('sales', {'id': sale_id, 'paid_amount': stored_paid_raw}, patch)
            except RemoteError as exc:
                logger.warning("Payment update for %s failed: %s (%s)", sale_id, exc, exc.detail)
                self._reload(0)
                raise RemoteWriteFailure("Failed to process payment. Please try again.") from exc
            if rows:
                break
            logger.info("Sale %s changed while applying payment (attempt %d); re-reading", sale_id, attempt)
        else:
            self._reload(0)
            raise RemoteWriteFailure("The sale is being updated elsewhere; try again")

        ledger_error = self._record_payment(sale_id, amount, method)
        outcome = {
            'sale_id': sale_id,
            'status': status,
            'verified': verified,
            'paid_amount': new_paid,
            'remaining': _money(max(0.0, total - new_paid)),
            'is_full': is_full,
            'payment_method': method,
            'refresh': REFRESH_DEFERRED if is_full else REFRESH_PATCH,
            'ledger_error': ledger_error,
        }
        logger.info("Payment %.2f on %s: paid %.2f/%.2f, status=%s verified=%s",
                    amount, sale_id, new_paid, total, status, verified)
        if is_full:
            self._reload(self.reload_delay)
        elif self.on_patch:
            self.on_patch(sale_id, {**patch, 'remaining': outcome['remaining']})
        return outcome

    def _record_payment(self, sale_id: str, amount: float, method: str) -> Optional[str]:
        try:
            self.store.insert('payments', {
                'sale_id': sale_id,
                'amount': amount,
                'payment_method': method,
                'payment_date': iso_now(),
            })
        except RemoteError as exc:
            logger.warning("Could not record payment entry for %s: %s (%s)", sale_id, exc, exc.detail)
            return str(exc)
        return None

    def verify(self, sale_id: str) -> Dict[str, Any]:
        """Confirm a settled sale as verified; queue the call when the store is unreachable."""
        sale = get_sale(self.store, sale_id)
        delivery = _truthy(sale.get('delivery'))
        current = sale.get('status') or STATUS_PENDING
        if delivery and current == STATUS_PENDING:
            raise ValidationError("Mark the delivery as delivered before verifying its payment")
        remaining = _money(_money(sale.get('total_amount')) - _money(sale.get('paid_amount')))
        if remaining > MONEY_EPSILON:
            raise ValidationError(f"Sale still has {remaining:.2f} outstanding",
                                  details={'remaining': remaining})
        status = _never_downgrade(current, STATUS_DELIVERED if delivery else STATUS_PAID)
        result = {'sale_id': sale_id, 'status': status, 'verified': True, 'queued': False}
        if _truthy(sale.get('verified')) and status == current:
            return result
        try:
            self.store.rpc('update_sales_payment_status',
                           {'p_sale_id': sale_id, 'p_status': status, 'p_verified': True})
        except RemoteError as exc:
            if self.queue is None:
                raise RemoteWriteFailure("Failed to verify payment. Please try again.") from exc
            logger.warning("Verification of %s failed (%s); queued for retry", sale_id, exc)
            self.queue.enqueue_verification(sale_id, status, True)
            result['queued'] = True
            return result
        self._reload(0)
        return result


def _parse_ts(value: Any) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _is_paid(sale: Dict[str, Any]) -> bool:
    return sale.get('status') in (STATUS_PAID, STATUS_COMPLETED) or _truthy(sale.get('verified'))


def _needs_payment(sale: Dict[str, Any]) -> bool:
    total = _money(sale.get('total_amount'))
    paid = _money(sale.get('paid_amount'))
    if MONEY_EPSILON < paid < total - MONEY_EPSILON:
        return True
    if _is_paid(sale):
        return False
    # deliveries only become collectable once delivered
    if _truthy(sale.get('delivery')) and sale.get('status') != STATUS_DELIVERED:
        return False
    return True


def payment_summary(store, now: Optional[dt.datetime] = None,
                    overdue_hours: Optional[float] = None) -> Dict[str, Any]:
    """Due/overdue/paid counters, recomputed from the sales rows on every call."""
    now = now or dt.datetime.now(dt.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)
    hours = biz_config.OVERDUE_HOURS if overdue_hours is None else overdue_hours
    cutoff = now - dt.timedelta(hours=hours)
    try:
        sales = store.read('sales', columns='id,status,verified,delivery,total_amount,paid_amount,created_at')
    except RemoteError as exc:
        logger.warning("Loading sales for summary failed: %s (%s)", exc, exc.detail)
        raise RemoteWriteFailure("Unable to load payments; check the connection and try again") from exc

    summary = {
        'paid_count': 0,
        'due_count': 0,
        'due_amount': 0.0,
        'overdue_count': 0,
        'overdue_amount': 0.0,
    }
    for sale in sales:
        if _needs_payment(sale):
            outstanding = max(0.0, _money(sale.get('total_amount')) - _money(sale.get('paid_amount')))
            created = _parse_ts(sale.get('created_at'))
            if created is not None and created < cutoff:
                summary['overdue_count'] += 1
                summary['overdue_amount'] += outstanding
            else:
                summary['due_count'] += 1
                summary['due_amount'] += outstanding
        elif _is_paid(sale):
            summary['paid_count'] += 1
    summary['due_amount'] = _money(summary['due_amount'])
    summary['overdue_amount'] = _money(summary['overdue_amount'])
    summary['total_due'] = _money(summary['due_amount'] + summary['overdue_amount'])
    return summary
