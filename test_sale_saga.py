import datetime as dt
import unittest

import stock_service
import sales_service as ss
from biz_errors import NoItemsSelected, NotFound, RemoteWriteFailure, SaleError, StockUnavailable, ValidationError
from store_client import MemoryStore, RemoteError, RemoteTimeout


PRODUCTS = [
    {"id": "P1", "name": "Tea 1kg", "godown_price": 100.0, "factory_price": 80.0,
     "delivery_price": 110.0, "discount_price": 90.0},
    {"id": "P2", "name": "Sugar 1kg", "godown_price": 50.0, "factory_price": 40.0},
]


def _seed(store, godown=None, factory=None):
    store.seed("products", PRODUCTS)
    godown = {"P1": 10, "P2": 5} if godown is None else godown
    factory = {"P1": 100, "P2": 50} if factory is None else factory
    store.seed("godown_stock", [{"product_id": k, "quantity": v} for k, v in godown.items()])
    store.seed("factory_stock", [{"product_id": k, "quantity": v} for k, v in factory.items()])
    return store


class FlakyStore(MemoryStore):
    """Rejects sale_items inserts for one product."""
    fail_item = None

    def insert(self, table, row):
        if table == "sale_items" and row.get("product_id") == self.fail_item:
            raise RemoteError("boom", status=500, transient=True, detail="upstream down")
        return super().insert(table, row)


class LateWriteStore(FlakyStore):
    """Writes land, but the caller sees a timeout."""
    late_inserts = ()
    late_updates = 0
    lost_updates = 0

    def insert(self, table, row):
        created = super().insert(table, row)
        if table in self.late_inserts:
            raise RemoteTimeout(f"Remote store timed out: POST {table}")
        return created

    def update(self, table, filters, patch):
        if table == "godown_stock" and self.lost_updates:
            self.lost_updates -= 1
            raise RemoteTimeout(f"Remote store timed out: PATCH {table}")
        changed = super().update(table, filters, patch)
        if table == "godown_stock" and self.late_updates:
            self.late_updates -= 1
            raise RemoteTimeout(f"Remote store timed out: PATCH {table}")
        return changed


class RestockingStore(MemoryStore):
    """Another writer adds a unit to the godown row right before each of our updates."""
    races = 0

    def update(self, table, filters, patch):
        if table == "godown_stock" and self.races:
            self.races -= 1
            with self._lock:
                for r in self.tables[table]:
                    if r["product_id"] == filters["product_id"]:
                        r["quantity"] += 1
        return super().update(table, filters, patch)


class StaleSnapshots:
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def read(self, pool):
        return dict(self.snapshot)


class SaleSagaTest(unittest.TestCase):
    def setUp(self):
        self.store = _seed(MemoryStore())
        self.saga = ss.SaleSaga(self.store, sequencer=ss.InvoiceSequencer(self.store, tag="TEST"))

    def _qty(self, pool, product_id):
        return stock_service.read_quantity(self.store, pool, product_id)

    def _sale(self, **extra):
        base = {
            "sale_type": "customer",
            "customer": {"name": "Asha", "phone": "9800000000", "address": "MG Road"},
            "payment_method": "upi",
            "lines": [
                {"product_id": "P1", "quantity": 2},
                {"product_id": "P2", "quantity": 1},
            ],
        }
        base.update(extra)
        return base

    def test_customer_sale_commits_items_and_takes_godown_stock(self):
        sale_id = self.saga.create(self._sale())
        sale = ss.get_sale(self.store, sale_id)
        items = self.store.read("sale_items", {"sale_id": sale_id})

        self.assertEqual(sale["total_amount"], 250.0)
        self.assertEqual(sum(i["total_price"] for i in items), sale["total_amount"])
        self.assertEqual(len(items), 2)
        self.assertEqual(sale["status"], "pending")
        self.assertFalse(sale["verified"])
        self.assertEqual(sale["paid_amount"], 0)
        self.assertEqual(sale["payment_method"], "upi")
        self.assertIsNone(sale["customer_id"])
        self.assertEqual(sale["customer_name"], "Asha")
        self.assertTrue(sale["invoice_number"].startswith("INV/TEST-"))
        self.assertEqual(self._qty("godown", "P1"), 8)
        self.assertEqual(self._qty("godown", "P2"), 4)
        self.assertEqual(self._qty("factory", "P1"), 100)

    def test_cash_counter_sale_is_settled_immediately(self):
        sale_id = self.saga.create(self._sale(payment_method="cash"))
        sale = ss.get_sale(self.store, sale_id)
        self.assertEqual(sale["status"], "completed")
        self.assertTrue(sale["verified"])
        self.assertEqual(sale["paid_amount"], 250.0)

    def test_delivery_sale_uses_delivery_price_and_cash(self):
        sale_id = self.saga.create(self._sale(delivery=True, payment_method="upi"))
        sale = ss.get_sale(self.store, sale_id)
        self.assertEqual(sale["payment_method"], "cash")
        self.assertEqual(sale["status"], "pending")
        self.assertFalse(sale["verified"])
        self.assertEqual(sale["paid_amount"], 0)
        self.assertTrue(sale["delivery_date"])
        # P2 has no delivery price and falls back to the godown price
        self.assertEqual(sale["total_amount"], 2 * 110.0 + 50.0)

    def test_distributor_sale_uses_factory_pool_credit_and_new_customer(self):
        sale_id = self.saga.create(self._sale(sale_type="distributor", payment_method="cash"))
        sale = ss.get_sale(self.store, sale_id)
        self.assertEqual(sale["payment_method"], "credit")
        self.assertEqual(sale["total_amount"], 2 * 80.0 + 40.0)
        self.assertEqual(self._qty("factory", "P1"), 98)
        self.assertEqual(self._qty("godown", "P1"), 10)
        customers = self.store.read("customers")
        self.assertEqual(len(customers), 1)
        self.assertEqual(customers[0]["id"], sale["customer_id"])
        self.assertEqual(customers[0]["credit_limit"], ss.DISTRIBUTOR_CREDIT_LIMIT)
        self.assertTrue(customers[0]["is_distributor"])

    def test_quick_sale_has_no_customer_and_is_cash(self):
        sale_id = self.saga.create(self._sale(sale_type="quick", customer_id="C-9", payment_method="upi"))
        sale = ss.get_sale(self.store, sale_id)
        self.assertIsNone(sale["customer_id"])
        self.assertEqual(sale["payment_method"], "cash")
        self.assertEqual(sale["status"], "completed")

    def test_discount_customer_price(self):
        sale_id = self.saga.create(self._sale(discount_customer=True))
        sale = ss.get_sale(self.store, sale_id)
        self.assertEqual(sale["total_amount"], 2 * 90.0 + 50.0)

    def test_explicit_prices_and_matching_total(self):
        sale = self._sale(lines=[{"product_id": "P1", "quantity": 3, "unit_price": 95.5}], total_amount=286.5)
        sale_id = self.saga.create(sale)
        self.assertEqual(ss.get_sale(self.store, sale_id)["total_amount"], 286.5)

    def test_total_mismatch_is_rejected_before_writes(self):
        with self.assertRaises(ValidationError):
            self.saga.create(self._sale(total_amount=999.0))
        self.assertEqual(self.store.read("sales"), [])
        self.assertEqual(self._qty("godown", "P1"), 10)

    def test_no_items_selected(self):
        with self.assertRaises(NoItemsSelected) as ctx:
            self.saga.create(self._sale(lines=[{"product_id": "P1", "quantity": 0}]))
        self.assertEqual(ctx.exception.message, "No items selected for purchase")
        with self.assertRaises(NoItemsSelected):
            self.saga.create(self._sale(lines=[]))

    def test_fractional_quantity_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.saga.create(self._sale(lines=[{"product_id": "P1", "quantity": 1.5}]))

    def test_unknown_product_without_price(self):
        with self.assertRaises(ValidationError):
            self.saga.create(self._sale(lines=[{"product_id": "NOPE", "quantity": 1}]))

    def test_unknown_sale_type(self):
        with self.assertRaises(ValidationError):
            self.saga.create(self._sale(sale_type="wholesale"))

    def test_precheck_failure_writes_nothing(self):
        sale = self._sale(persist_customer=True, lines=[
            {"product_id": "P1", "quantity": 11},
            {"product_id": "P2", "quantity": 1},
        ])
        with self.assertRaises(StockUnavailable) as ctx:
            self.saga.create(sale)
        self.assertEqual(
            ctx.exception.message,
            "Insufficient godown stock for: P1 (requested: 11, available: 10)",
        )
        self.assertEqual(ctx.exception.details["pool"], "godown")
        self.assertEqual(self.store.read("sales"), [])
        self.assertEqual(self.store.read("sale_items"), [])
        self.assertEqual(self.store.read("customers"), [])
        self.assertEqual(self._qty("godown", "P1"), 10)

    def test_precheck_sums_repeated_products(self):
        sale = self._sale(lines=[
            {"product_id": "P1", "quantity": 6},
            {"product_id": "P1", "quantity": 6},
        ])
        with self.assertRaises(StockUnavailable) as ctx:
            self.saga.create(sale)
        self.assertEqual(ctx.exception.items[0]["requested"], 12)
        self.assertEqual(self.store.read("sales"), [])

    def test_failure_on_later_line_compensates_and_restores_stock(self):
        store = _seed(FlakyStore())
        store.fail_item = "P2"
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"), restore_stock=True)

        with self.assertRaises(SaleError) as ctx:
            saga.create(self._sale(persist_customer=True))

        err = ctx.exception
        self.assertTrue(err.message.startswith("Sale failed: P2"))
        self.assertEqual(err.details["failures"][0]["kind"], "remote")
        self.assertEqual(store.read("sales"), [])
        self.assertEqual(store.read("sale_items"), [])
        self.assertEqual(store.read("customers"), [])
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 10)
        self.assertEqual(stock_service.read_quantity(store, "godown", "P2"), 5)

    def test_failure_without_stock_restore_keeps_decrement(self):
        store = _seed(FlakyStore())
        store.fail_item = "P2"
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"), restore_stock=False)

        with self.assertRaises(SaleError):
            saga.create(self._sale())

        self.assertEqual(store.read("sales"), [])
        self.assertEqual(store.read("sale_items"), [])
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 8)

    def test_stock_taken_after_precheck_is_a_stock_failure(self):
        store = _seed(MemoryStore(), godown={"P1": 1, "P2": 5})
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"),
                           snapshots=StaleSnapshots({"P1": 100, "P2": 100}))
        with self.assertRaises(StockUnavailable) as ctx:
            saga.create(self._sale())
        err = ctx.exception
        self.assertTrue(err.message.startswith("Sale failed: P1"))
        self.assertEqual(err.details["pool"], "godown")
        self.assertEqual(err.items, [{"product_id": "P1", "requested": 2, "available": 1}])
        failure = err.details["failures"][0]
        self.assertEqual(failure["kind"], "stock")
        self.assertEqual(failure["product_id"], "P1")
        self.assertIn("needed: 2, available: 1", failure["reason"])
        self.assertEqual(store.read("sales"), [])
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 1)

    def test_remote_line_failure_is_not_a_stock_failure(self):
        store = _seed(FlakyStore())
        store.fail_item = "P1"
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"))
        with self.assertRaises(SaleError) as ctx:
            saga.create(self._sale())
        self.assertNotIsInstance(ctx.exception, StockUnavailable)

    def test_sale_insert_that_lands_after_timeout_is_removed(self):
        store = _seed(LateWriteStore())
        store.late_inserts = ("sales",)
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"))
        with self.assertRaises(RemoteWriteFailure):
            saga.create(self._sale(payment_method="cash", persist_customer=True))
        self.assertEqual(store.read("sales"), [])
        self.assertEqual(store.read("sale_items"), [])
        self.assertEqual(store.read("customers"), [])
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 10)

    def test_customer_insert_that_lands_after_timeout_is_removed(self):
        store = _seed(LateWriteStore())
        store.late_inserts = ("customers",)
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"))
        with self.assertRaises(RemoteWriteFailure):
            saga.create(self._sale(sale_type="distributor"))
        self.assertEqual(store.read("customers"), [])
        self.assertEqual(store.read("sales"), [])
        self.assertEqual(stock_service.read_quantity(store, "factory", "P1"), 100)

    def test_stock_update_that_lands_after_timeout_is_restored(self):
        store = _seed(LateWriteStore())
        store.late_updates = 1
        store.fail_item = "P2"
        saga = ss.SaleSaga(store, sequencer=ss.InvoiceSequencer(store, tag="TEST"), restore_stock=True)
        with self.assertRaises(SaleError):
            saga.create(self._sale())
        self.assertEqual(store.read("sales"), [])
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 10)
        self.assertEqual(stock_service.read_quantity(store, "godown", "P2"), 5)

    def test_numeric_customer_fields_are_taken_as_text(self):
        sale_id = self.saga.create(self._sale(customer={"name": "Asha", "phone": 9800000000, "address": 12}))
        sale = ss.get_sale(self.store, sale_id)
        self.assertEqual(sale["customer_phone"], "9800000000")
        self.assertEqual(sale["customer_address"], "12")

    def test_non_text_payment_method_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.saga.create(self._sale(payment_method=5))
        self.assertEqual(self.store.read("sales"), [])

    def test_invoice_conflict_takes_next_number(self):
        when = dt.datetime(2025, 5, 10)
        self.store.insert("sales", {"invoice_number": "INV/TEST-05-001", "created_at": "2000-01-01T00:00:00Z"})
        sale_id = self.saga.create(self._sale(), now=when)
        self.assertEqual(ss.get_sale(self.store, sale_id)["invoice_number"], "INV/TEST-05-002")

    def test_invoice_conflicts_exhausted(self):
        when = dt.datetime(2025, 5, 10)
        for n in range(1, ss.INVOICE_ATTEMPTS + 1):
            self.store.insert("sales", {"invoice_number": f"INV/TEST-05-{n:03d}",
                                        "created_at": "2000-01-01T00:00:00Z"})
        with self.assertRaises(RemoteWriteFailure):
            self.saga.create(self._sale(), now=when)
        self.assertEqual(len(self.store.read("sales")), ss.INVOICE_ATTEMPTS)
        self.assertEqual(self._qty("godown", "P1"), 10)


class PaymentMethodTest(unittest.TestCase):
    def test_rules(self):
        self.assertEqual(ss.effective_payment_method("quick", True, "upi"), "cash")
        self.assertEqual(ss.effective_payment_method("customer", True, "upi"), "cash")
        self.assertEqual(ss.effective_payment_method("distributor", True, None), "cash")
        self.assertEqual(ss.effective_payment_method("distributor", False, "cash"), "credit")
        self.assertEqual(ss.effective_payment_method("customer", False, "upi"), "upi")
        self.assertEqual(ss.effective_payment_method("customer", False, None), "cash")


class CustomerResolverTest(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.resolver = ss.CustomerResolver(self.store)
        self.inline = {"name": "Ravi", "phone": "98", "address": "Market St"}

    def test_selected_customer_is_used_as_is(self):
        self.assertEqual(self.resolver.resolve("C-1", self.inline, True), "C-1")
        self.assertEqual(self.store.read("customers"), [])

    def test_quick_sale_never_has_customer(self):
        self.assertIsNone(self.resolver.resolve("C-1", self.inline, True, "quick"))

    def test_walk_in_stays_inline(self):
        self.assertIsNone(self.resolver.resolve(None, self.inline, False))
        self.assertEqual(self.store.read("customers"), [])

    def test_persisted_walk_in(self):
        cid = self.resolver.resolve(None, self.inline, True, discount_customer=True)
        row = self.store.read("customers", {"id": cid})[0]
        self.assertEqual(row["name"], "Ravi")
        self.assertEqual(row["credit_limit"], ss.CUSTOMER_CREDIT_LIMIT)
        self.assertFalse(row["is_distributor"])
        self.assertTrue(row["is_discount_customer"])

    def test_distributor_always_persisted(self):
        cid = self.resolver.resolve(None, {}, False, "distributor")
        row = self.store.read("customers", {"id": cid})[0]
        self.assertEqual(row["name"], ss.WALK_IN_NAME)
        self.assertEqual(row["type"], "distributor")
        self.assertEqual(row["credit_limit"], ss.DISTRIBUTOR_CREDIT_LIMIT)


class StockCompareAndSwapTest(unittest.TestCase):
    def test_retries_when_row_changes(self):
        store = _seed(RestockingStore())
        store.races = 1
        before, after = stock_service.decrement_stock(store, "godown", "P1", 2)
        self.assertEqual((before, after), (11, 9))
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 9)

    def test_gives_up_after_repeated_conflicts(self):
        store = _seed(RestockingStore())
        store.races = stock_service.CAS_ATTEMPTS
        with self.assertRaises(RemoteWriteFailure):
            stock_service.decrement_stock(store, "godown", "P1", 2)

    def test_update_that_lands_after_timeout_counts_as_done(self):
        store = _seed(LateWriteStore())
        store.late_updates = 1
        before, after = stock_service.decrement_stock(store, "godown", "P1", 2)
        self.assertEqual((before, after), (10, 8))
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 8)

    def test_update_lost_to_timeout_is_a_failure(self):
        store = _seed(LateWriteStore())
        store.lost_updates = 1
        with self.assertRaises(RemoteWriteFailure):
            stock_service.decrement_stock(store, "godown", "P1", 2)
        self.assertEqual(stock_service.read_quantity(store, "godown", "P1"), 10)

    def test_never_goes_below_zero(self):
        store = _seed(MemoryStore())
        with self.assertRaises(StockUnavailable) as ctx:
            stock_service.decrement_stock(store, "godown", "P2", 6)
        self.assertEqual(ctx.exception.items[0]["available"], 5)
        self.assertEqual(stock_service.read_quantity(store, "godown", "P2"), 5)

    def test_restore_creates_missing_row(self):
        store = MemoryStore()
        stock_service.restore_stock(store, "factory", "P7", 3)
        self.assertEqual(stock_service.read_snapshot(store, "factory"), {"P7": 3})

    def test_unknown_pool(self):
        with self.assertRaises(ValidationError):
            stock_service.read_snapshot(MemoryStore(), "warehouse")


class MarkDeliveredTest(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.store.insert("sales", {"id": "D1", "delivery": True, "status": "pending", "verified": False,
                                    "total_amount": 300.0, "paid_amount": 0})
        self.store.insert("sales", {"id": "S1", "delivery": False, "status": "pending",
                                    "total_amount": 300.0, "paid_amount": 0})

    def test_pending_delivery_becomes_delivered(self):
        row = ss.mark_delivered(self.store, "D1")
        self.assertEqual(row["status"], "delivered")
        self.assertFalse(row["verified"])
        # second call is a no-op
        self.assertEqual(ss.mark_delivered(self.store, "D1")["status"], "delivered")

    def test_non_delivery_sale(self):
        with self.assertRaises(ValidationError):
            ss.mark_delivered(self.store, "S1")

    def test_missing_sale(self):
        with self.assertRaises(NotFound):
            ss.mark_delivered(self.store, "NOPE")


if __name__ == "__main__":
    unittest.main()
