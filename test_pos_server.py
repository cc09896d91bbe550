import tempfile
import unittest

import pos_server
from config import Settings
from local_store import FileStore
from network import NetworkMonitor
from runtime import PosRuntime
from test_auth import FakeAuthRemote
from test_checkout import CheckoutRemote


class ServerRemote(CheckoutRemote, FakeAuthRemote):
    def __init__(self):
        CheckoutRemote.__init__(self)
        FakeAuthRemote.__init__(self)

    def get_product_by_barcode(self, barcode, store_id):
        return None

    def health(self):
        return False


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        settings = Settings(data_dir=self.tmp.name)
        self.remote = ServerRemote()
        self.runtime = PosRuntime(settings, store=FileStore(self.tmp.name), remote=self.remote,
                                  network=NetworkMonitor(self.remote.health))
        self.runtime.products.save('store-001', [
            {'id': 1, 'sku': 'SKU-1', 'barcode': '8901234', 'name': 'Pressure Cooker', 'mrp': 200,
             'selling_price': 200, 'gst_rate': 18, 'stock': 10, 'is_active': True},
        ])
        pos_server.set_runtime(self.runtime)
        self.client = pos_server.app.test_client()

    def tearDown(self):
        pos_server.set_runtime(None)
        self.tmp.cleanup()

    def _login(self):
        resp = self.client.post('/api/auth/login', json={'email': 'cashier@shop.in', 'password': 'secret'})
        self.assertEqual(resp.status_code, 200)

    def test_status_offline(self):
        body = self.client.get('/api/status').get_json()
        self.assertEqual(body['status'], 'success')
        self.assertFalse(body['online'])
        self.assertEqual(body['pending'], 0)

    def test_checkout_requires_sign_in(self):
        resp = self.client.post('/api/checkout', json={'payment_method': 'cash'})
        self.assertEqual(resp.status_code, 401)

    def test_bad_login(self):
        resp = self.client.post('/api/auth/login', json={'email': 'nope', 'password': 'x'})
        self.assertEqual(resp.status_code, 401)
        self.assertEqual(resp.get_json()['status'], 'error')

    def test_offline_sale_then_reconnect(self):
        self._login()
        cart = self.client.post('/api/cart/items', json={'barcode': '8901234'}).get_json()['cart']
        self.assertEqual(cart['total'], 236)

        resp = self.client.post('/api/checkout', json={'payment_method': 'cash'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['mode'], 'offline')
        self.assertEqual(self.client.get('/api/cart').get_json()['cart']['items'], [])

        items = self.client.get('/api/queue').get_json()['items']
        self.assertEqual(len(items), 1)
        self.assertFalse(items[0]['terminal'])
        self.assertIsNone(items[0]['next_attempt_at'])
        self.assertEqual(self.client.get('/api/status').get_json()['offline_sales_total'], 236)

        resp = self.client.post('/api/network', json={'online': True})
        self.assertTrue(resp.get_json()['online'])
        self.assertEqual(self.client.get('/api/queue').get_json()['items'], [])
        self.assertEqual(len(self.remote.sales), 1)

    def test_empty_cart_and_missing_payment_method(self):
        self._login()
        self.assertEqual(self.client.post('/api/checkout', json={}).status_code, 400)
        self.assertEqual(self.client.post('/api/checkout', json={'payment_method': 'cash'}).status_code, 400)

    def test_cart_editing(self):
        self._login()
        self.client.post('/api/cart/items', json={'product_id': 1, 'quantity': 2})
        cart = self.client.post('/api/cart/items/1/quantity', json={'quantity': 3}).get_json()['cart']
        self.assertEqual(cart['items'][0]['quantity'], 3)
        cart = self.client.post('/api/cart/discount', json={'discount': 8}).get_json()['cart']
        self.assertEqual(cart['discount'], 8)
        self.assertEqual(self.client.post('/api/cart/items/1/price-type', json={'price_type': 'bulk'}).status_code, 400)
        cart = self.client.delete('/api/cart/items/1').get_json()['cart']
        self.assertEqual(cart['items'], [])

    def test_barcode_lookup(self):
        self.assertEqual(self.client.get('/api/lookup-barcode?code=8901234').get_json()['product']['id'], 1)
        self.assertEqual(self.client.get('/api/lookup-barcode?code=000').status_code, 404)
        self.assertEqual(self.client.get('/api/lookup-barcode').status_code, 400)

    def test_product_search(self):
        products = self.client.get('/api/products/search?q=cook').get_json()['products']
        self.assertEqual([p['id'] for p in products], [1])

    def test_unknown_queue_item(self):
        self.assertEqual(self.client.delete('/api/queue/missing').status_code, 404)
        self.assertEqual(self.client.post('/api/queue/missing/resync').status_code, 404)

    def test_network_event_needs_flag(self):
        self.assertEqual(self.client.post('/api/network', json={}).status_code, 400)


if __name__ == '__main__':
    unittest.main()
