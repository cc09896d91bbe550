import datetime as dt
import tempfile
import unittest

from checkout import CAPTURE_FAILED_MESSAGE, CheckoutService
from customer_service import CustomerService
from local_queue import SALE, LocalQueue
from local_store import FallbackStore, FileStore
from pricing import Cart
from ref_cache import CustomerCache, ProductCache
from remote import ErrorKind, RemoteError
from sync_engine import InventoryReconciler, SyncEngine
from test_local_store import BrokenStore
from test_sync_engine import FakeRemote

CASHIER = {'id': 'user-1', 'email': 'cashier@shop.in', 'first_name': 'Meena', 'last_name': 'S',
           'store_id': 'store-001', 'role': 'cashier', 'is_active': True}


class CheckoutRemote(FakeRemote):
    def __init__(self):
        super().__init__()
        self.customers = []
        self.intakes = []
        self.fail_intake = None

    def find_customer_by_phone(self, phone, store_id):
        for customer in self.customers:
            if customer['phone'] == phone:
                return customer
        return None

    def insert_customer(self, data):
        row = dict(data, id=len(self.customers) + 1, is_active=True)
        self.customers.append(row)
        return row

    def update_customer(self, customer_id, updates):
        for customer in self.customers:
            if customer['id'] == customer_id:
                customer.update(updates)
                return dict(customer)
        raise RemoteError(ErrorKind.UNKNOWN, 'no row returned')

    def create_sales_intake(self, record):
        if self.fail_intake:
            raise self.fail_intake
        self.intakes.append(record)


class CheckoutTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FileStore(self.tmp.name)
        self.remote = CheckoutRemote()
        self.queue = LocalQueue(self.store)
        self.products = ProductCache(self.store)
        self.products.save('store-001', [
            {'id': 1, 'sku': 'SKU-1', 'name': 'Pressure Cooker', 'mrp': 200, 'selling_price': 200,
             'gst_rate': 18, 'hsn_code': '7323', 'stock': 10, 'is_active': True},
        ])
        self.customer_cache = CustomerCache(self.store)
        self.online = False
        self.customers = CustomerService(self.remote, self.customer_cache, lambda: self.online)
        self.reconciler = InventoryReconciler(self.remote, self.queue, self.products)
        self.checkout = CheckoutService(self.queue, self.remote, self.products, self.customers,
                                        self.reconciler, counter_id='COUNTER-01')
        self.cart = Cart(self.store, store_id='store-001', tax_rate=18)
        self.cart.add_item(self.products.get_by_id(1, 'store-001'), 1)
        self.successes = []
        self.errors = []

    def tearDown(self):
        self.tmp.cleanup()

    def _pay(self, **kwargs):
        params = dict(cart=self.cart, user=CASHIER, payment_method='cash',
                      is_online=lambda: self.online,
                      on_success=self.successes.append, on_error=self.errors.append)
        params.update(kwargs)
        return self.checkout.process_payment(**params)

    def test_offline_checkout_queues_sale_and_decrements_stock(self):
        result = self._pay()
        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['mode'], 'offline')
        self.assertEqual(self.successes, [result['sale_number']])
        self.assertEqual(self.errors, [])

        pending = self.queue.get_queue(only_unsynced=True)
        self.assertEqual(len(pending), 1)
        sale = pending[0]['payload']
        self.assertEqual(pending[0]['type'], SALE)
        self.assertEqual((sale['subtotal'], sale['tax'], sale['discount'], sale['total']), (200, 36, 0, 236))
        self.assertFalse(sale['synced'])
        self.assertIsNone(sale['last_synced_at'])
        self.assertEqual(sale['cashier_name'], 'Meena S')
        self.assertEqual(sale['payment_status'], 'completed')
        line = sale['items'][0]
        self.assertEqual((line['id'], line['gst_amount'], line['total'], line['hsn_code']), (1, 36, 236, '7323'))

        self.assertEqual(self.products.get_by_id(1, 'store-001')['stock'], 9)
        self.assertEqual(self.remote.calls, [])
        self.assertEqual(self.cart.state()['items'], [])

    def test_queued_offline_sale_syncs_later(self):
        self._pay()
        self.online = True
        engine = SyncEngine(self.queue, self.remote, self.store, lambda: self.online, reconciler=self.reconciler)
        engine.run_once()
        self.assertEqual(self.queue.get_queue(only_unsynced=True), [])
        sale_id = next(iter(self.remote.sales))
        self.assertTrue(self.remote.sales[sale_id]['synced'])
        self.assertEqual(self.remote.inventory[('store-001', 1)], 9)

    def test_online_checkout_goes_direct(self):
        self.online = True
        result = self._pay(customer_info={'name': 'Asha', 'phone': '9800000001'})
        self.assertEqual(result['mode'], 'online')
        self.assertEqual([c[0] for c in self.remote.calls[:2]], ['create_sale', 'mark_sale_synced'])
        self.assertTrue(self.remote.sales[result['sale_id']]['synced'])
        self.assertEqual(self.queue.get_queue(), [])
        self.assertEqual(self.remote.inventory[('store-001', 1)], 9)
        self.assertEqual(self.remote.intakes[0]['customer_id'], 1)
        self.assertEqual(self.remote.intakes[0]['sale_amount'], 236)
        self.assertEqual(self.customer_cache.get_by_phone('9800000001', 'store-001')['id'], 1)

    def test_online_failure_falls_back_to_queue(self):
        self.online = True
        self.remote.fail_create = RemoteError(ErrorKind.TRANSIENT, 'HTTP 502')
        result = self._pay()
        self.assertEqual(result['status'], 'success')
        self.assertEqual(result['mode'], 'queued')
        self.assertEqual(self.errors, [])
        pending = self.queue.get_queue(only_unsynced=True)
        self.assertEqual(len(pending), 1)
        self.assertFalse(pending[0]['payload']['synced'])
        self.assertEqual(self.products.get_by_id(1, 'store-001')['stock'], 9)

    def test_online_status_is_read_once(self):
        probes = []

        def flapping():
            probes.append(1)
            return len(probes) == 1

        result = self._pay(is_online=flapping, customer_info={'name': 'Ravi', 'phone': '9800000002'})
        self.assertEqual(result['mode'], 'online')
        self.assertEqual(len(probes), 1)
        self.assertEqual(len(self.remote.customers), 1)

    def test_offline_customer_gets_temporary_id(self):
        self._pay(customer_info={'name': 'Walk In', 'phone': '9800000009'})
        cached = self.customer_cache.get_by_phone('9800000009', 'store-001')
        self.assertLess(cached['id'], 0)
        self.assertEqual(self.remote.customers, [])

    def test_sale_id_and_date_follow_clock(self):
        moment = dt.datetime(2025, 3, 1, 23, 59, 30, tzinfo=dt.timezone.utc)
        checkout = CheckoutService(self.queue, self.remote, self.products, self.customers,
                                   self.reconciler, clock=lambda: moment)
        sale = checkout.build_sale(self.cart.state(), CASHIER, 'cash', None, None)
        millis = str(int(moment.timestamp() * 1000))
        self.assertTrue(sale['id'].startswith(f"SALE-{millis}-"))
        self.assertEqual(sale['sale_number'], f"SN-{millis[-8:]}")
        self.assertEqual(sale['sale_date'], '2025-03-01')

    def test_discount_override(self):
        self._pay(discount=36)
        sale = self.queue.get_queue()[0]['payload']
        self.assertEqual((sale['discount'], sale['total']), (36, 200))

    def test_empty_cart_is_rejected(self):
        self.cart.clear()
        result = self._pay()
        self.assertEqual(result['status'], 'error')
        self.assertEqual(self.errors, ['Cart is empty'])
        self.assertEqual(self.queue.get_queue(), [])

    def test_error_only_when_sale_cannot_be_captured(self):
        queue = LocalQueue(FallbackStore(BrokenStore(), BrokenStore()))
        checkout = CheckoutService(queue, self.remote, self.products, self.customers, self.reconciler)
        result = checkout.process_payment(self.cart, CASHIER, 'cash', is_online=lambda: False,
                                          on_success=self.successes.append, on_error=self.errors.append)
        self.assertEqual(result['status'], 'error')
        self.assertEqual(self.errors, [CAPTURE_FAILED_MESSAGE])
        self.assertEqual(self.successes, [])
        # nothing captured, so stock and cart are untouched
        self.assertEqual(self.products.get_by_id(1, 'store-001')['stock'], 10)
        self.assertEqual(len(self.cart.state()['items']), 1)


if __name__ == '__main__':
    unittest.main()
