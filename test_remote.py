import json
import unittest
from unittest import mock

import requests

from remote import ErrorKind, RemoteError, SupabaseClient, classify_status


def _response(status=200, body=None, headers=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = b'' if body is None else json.dumps(body).encode('utf-8')
    resp.headers.update(headers or {})
    resp.url = 'https://example.supabase.co/rest/v1/x'
    return resp


class ClassifyStatusTest(unittest.TestCase):
    def test_kinds(self):
        for status in (500, 502, 503, 408, 425, 429):
            self.assertEqual(classify_status(status), ErrorKind.TRANSIENT, status)
        for status in (400, 404, 409, 422):
            self.assertEqual(classify_status(status), ErrorKind.PERMANENT, status)
        self.assertEqual(classify_status(401), ErrorKind.UNKNOWN)
        self.assertEqual(classify_status(403), ErrorKind.UNKNOWN)

    def test_only_permanent_is_not_retryable(self):
        self.assertFalse(RemoteError(ErrorKind.PERMANENT, 'x').retryable)
        self.assertTrue(RemoteError(ErrorKind.UNKNOWN, 'x').retryable)
        self.assertIn('HTTP 503', str(RemoteError(ErrorKind.TRANSIENT, 'down', 503)))


class SupabaseClientTest(unittest.TestCase):
    def setUp(self):
        self.session = mock.Mock(spec=requests.Session)
        self.client = SupabaseClient('https://example.supabase.co/', 'anon-key', timeout=7, session=self.session)

    def _last_call(self):
        args, kwargs = self.session.request.call_args
        return args, kwargs

    def test_create_sale_is_an_idempotent_upsert(self):
        self.session.request.return_value = _response(201, [{'id': 'SALE-1', 'synced': False}])
        row = self.client.create_sale({'id': 'SALE-1', 'synced': False})
        self.assertEqual(row['id'], 'SALE-1')
        (method, url), kwargs = self._last_call()
        self.assertEqual((method, url), ('POST', 'https://example.supabase.co/rest/v1/sales'))
        self.assertEqual(kwargs['params'], {'on_conflict': 'id'})
        self.assertIn('resolution=merge-duplicates', kwargs['headers']['Prefer'])
        self.assertEqual(kwargs['headers']['apikey'], 'anon-key')
        self.assertEqual(kwargs['timeout'], 7)

    def test_mark_sale_synced_requires_a_row(self):
        self.session.request.return_value = _response(200, [{'id': 'SALE-1', 'synced': True}])
        self.assertTrue(self.client.mark_sale_synced('SALE-1'))
        _, kwargs = self._last_call()
        self.assertEqual(kwargs['params'], {'id': 'eq.SALE-1'})
        self.assertTrue(kwargs['json']['synced'])

        self.session.request.return_value = _response(200, [])
        with self.assertRaises(RemoteError) as ctx:
            self.client.mark_sale_synced('SALE-1')
        self.assertEqual(ctx.exception.kind, ErrorKind.UNKNOWN)

    def test_http_errors_are_classified(self):
        self.session.request.return_value = _response(422, {'message': 'null value in column "total"'})
        with self.assertRaises(RemoteError) as ctx:
            self.client.create_sale({'id': 'SALE-1'})
        self.assertEqual(ctx.exception.kind, ErrorKind.PERMANENT)
        self.assertEqual(ctx.exception.status, 422)
        self.assertIn('null value', str(ctx.exception))

        self.session.request.return_value = _response(503, {'message': 'unavailable'})
        with self.assertRaises(RemoteError) as ctx:
            self.client.update_inventory(1, 9, 'store-001')
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSIENT)

    def test_network_errors_are_transient(self):
        self.session.request.side_effect = requests.ConnectionError('connection refused')
        with self.assertRaises(RemoteError) as ctx:
            self.client.create_sale({'id': 'SALE-1'})
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSIENT)

    def test_unconfigured_client_never_calls_out(self):
        client = SupabaseClient('', '', session=self.session)
        with self.assertRaises(RemoteError):
            client.create_sale({'id': 'SALE-1'})
        self.assertFalse(client.health())
        self.session.request.assert_not_called()

    def test_read_failures_degrade_to_empty(self):
        self.session.request.return_value = _response(500, {'message': 'boom'})
        with self.assertLogs('pos.remote', level='WARNING'):
            self.assertEqual(self.client.get_products('store-001'), [])
        with self.assertLogs('pos.remote', level='WARNING'):
            self.assertIsNone(self.client.get_store_config('store-001'))

    def test_barcode_lookup_falls_back_to_sku(self):
        self.session.request.side_effect = [_response(200, []), _response(200, [{'id': 4, 'sku': 'RICE-5KG'}])]
        product = self.client.get_product_by_barcode(' RICE-5KG ', 'store-001')
        self.assertEqual(product['id'], 4)
        params = [c[1]['params'] for c in self.session.request.call_args_list]
        self.assertEqual(params[0]['barcode'], 'eq.RICE-5KG')
        self.assertEqual(params[1]['sku'], 'eq.RICE-5KG')

    def test_counts_come_from_content_range(self):
        self.session.request.return_value = _response(200, None, {'Content-Range': '0-24/137'})
        self.assertEqual(self.client.get_pending_sync_count('store-001'), 137)
        (method, _), kwargs = self._last_call()
        self.assertEqual(method, 'HEAD')
        self.assertEqual(kwargs['headers']['Prefer'], 'count=exact')

    def test_sales_total_for_date_range(self):
        self.session.request.return_value = _response(200, [{'total': 236}, {'total': '100.5'}, {'total': None}])
        self.assertEqual(self.client.get_sales_by_date_range('store-001', '2025-03-01', '2025-03-31'), 336.5)

    def test_sign_in_uses_session_token(self):
        self.session.request.return_value = _response(200, {'access_token': 'jwt-1', 'user': {'id': 'u1'}})
        self.client.sign_in_with_password('a@b.in', 'secret')
        (method, url), kwargs = self._last_call()
        self.assertTrue(url.endswith('/auth/v1/token'))
        self.assertEqual(kwargs['params'], {'grant_type': 'password'})

        self.session.request.return_value = _response(200, [{'id': 'SALE-1'}])
        self.client.mark_sale_synced('SALE-1')
        _, kwargs = self._last_call()
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer jwt-1')

        self.session.request.return_value = _response(204)
        self.client.sign_out()
        self.assertIsNone(self.client.access_token)


if __name__ == '__main__':
    unittest.main()
