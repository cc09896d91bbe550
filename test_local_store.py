import os
import tempfile
import unittest
from types import SimpleNamespace

from local_store import (FallbackStore, FileStore, SqliteStore, StoreError,
                         dump_json, load_json, open_store, remove_key)


class BrokenStore:
    name = 'broken'

    def read(self, namespace, key):
        raise StoreError('disk gone')

    def write(self, namespace, key, data):
        raise StoreError('disk gone')

    def remove(self, namespace, key):
        raise StoreError('disk gone')

    def namespaces(self):
        raise StoreError('disk gone')


class ReadOnlyStore:
    """Wraps a backend; while ``locked`` writes and removes fail but reads work."""

    def __init__(self, inner):
        self.inner = inner
        self.name = inner.name
        self.locked = False

    def read(self, namespace, key):
        return self.inner.read(namespace, key)

    def write(self, namespace, key, data):
        if self.locked:
            raise StoreError('database is locked')
        self.inner.write(namespace, key, data)

    def remove(self, namespace, key):
        if self.locked:
            raise StoreError('database is locked')
        self.inner.remove(namespace, key)

    def namespaces(self):
        return self.inner.namespaces()


class FileStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = FileStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_key_reads_as_none(self):
        self.assertIsNone(self.store.read('store-001', 'products'))

    def test_write_read_remove(self):
        self.store.write('store-001', 'products', b'[1,2]')
        self.assertEqual(self.store.read('store-001', 'products'), b'[1,2]')
        self.store.remove('store-001', 'products')
        self.assertIsNone(self.store.read('store-001', 'products'))
        # removing twice is fine
        self.store.remove('store-001', 'products')

    def test_write_leaves_no_temp_files(self):
        self.store.write('device', 'local_queue', b'[]')
        self.store.write('device', 'local_queue', b'[{"id": "a"}]')
        files = os.listdir(os.path.join(self.tmp.name, 'device'))
        self.assertEqual(files, ['local_queue.json'])

    def test_namespaces_are_sanitised_and_listed(self):
        self.store.write('store/../x', 'products', b'{}')
        self.store.write('store-002', 'products', b'{}')
        names = self.store.namespaces()
        self.assertIn('store-002', names)
        self.assertTrue(all('/' not in n for n in names))
        self.assertFalse(os.path.exists(os.path.join(os.path.dirname(self.tmp.name), 'x')))

    def test_corrupt_value_loads_as_default(self):
        self.store.write('store-001', 'customers', b'{"metadata": {"vers')
        self.assertEqual(load_json(self.store, 'store-001', 'customers', default=[]), [])

    def test_json_helpers(self):
        self.assertTrue(dump_json(self.store, 'store-001', 'cart', {'items': [], 'discount': 5}))
        self.assertEqual(load_json(self.store, 'store-001', 'cart'), {'items': [], 'discount': 5})
        self.assertTrue(remove_key(self.store, 'store-001', 'cart'))
        self.assertIsNone(load_json(self.store, 'store-001', 'cart'))


class SqliteStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = SqliteStore(os.path.join(self.tmp.name, 'kv.db'))

    def tearDown(self):
        self.tmp.cleanup()

    def test_write_overwrites_and_reads_back(self):
        self.store.write('store-001', 'products', b'one')
        self.store.write('store-001', 'products', b'two')
        self.assertEqual(self.store.read('store-001', 'products'), b'two')
        self.assertIsNone(self.store.read('store-002', 'products'))

    def test_remove_and_namespaces(self):
        self.store.write('store-001', 'products', b'x')
        self.store.write('device', 'local_queue', b'[]')
        self.assertEqual(self.store.namespaces(), ['device', 'store-001'])
        self.store.remove('store-001', 'products')
        self.assertEqual(self.store.namespaces(), ['device'])


class FallbackStoreTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.secondary = FileStore(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_failing_primary_degrades_to_secondary(self):
        store = FallbackStore(BrokenStore(), self.secondary)
        with self.assertLogs('pos.store', level='WARNING'):
            self.assertTrue(dump_json(store, 'device', 'local_queue', [{'id': 'a'}]))
        self.assertEqual(load_json(store, 'device', 'local_queue'), [{'id': 'a'}])
        self.assertEqual(store.namespaces(), ['device'])

    def test_both_failing_reports_write_failure(self):
        store = FallbackStore(BrokenStore(), BrokenStore())
        self.assertFalse(dump_json(store, 'device', 'local_queue', []))
        self.assertIsNone(load_json(store, 'device', 'local_queue'))
        with self.assertRaises(StoreError):
            store.remove('device', 'local_queue')

    def test_primary_write_clears_fallback_copy(self):
        primary = SqliteStore(os.path.join(self.tmp.name, 'kv.db'))
        self.secondary.write('store-001', 'products', b'"old"')
        store = FallbackStore(primary, self.secondary)
        self.assertEqual(load_json(store, 'store-001', 'products'), 'old')
        dump_json(store, 'store-001', 'products', 'new')
        self.assertIsNone(self.secondary.read('store-001', 'products'))
        self.assertEqual(load_json(store, 'store-001', 'products'), 'new')

    def test_fallback_copy_wins_after_restart(self):
        primary = ReadOnlyStore(SqliteStore(os.path.join(self.tmp.name, 'kv.db')))
        dump_json(FallbackStore(primary, self.secondary), 'device', 'local_queue', ['A'])
        primary.locked = True
        dump_json(FallbackStore(primary, self.secondary), 'device', 'local_queue', ['A', 'B'])
        self.assertEqual(primary.read('device', 'local_queue'), b'["A"]')

        reopened = FallbackStore(primary, self.secondary)
        self.assertEqual(load_json(reopened, 'device', 'local_queue'), ['A', 'B'])

    def test_uncleared_fallback_copy_is_refreshed(self):
        secondary = ReadOnlyStore(self.secondary)
        store = FallbackStore(SqliteStore(os.path.join(self.tmp.name, 'kv.db')), secondary)
        self.secondary.write('device', 'local_queue', b'["old"]')
        secondary.locked = True
        with self.assertLogs('pos.store', level='WARNING'):
            self.assertFalse(dump_json(store, 'device', 'local_queue', ['new']))
        self.assertEqual(load_json(store, 'device', 'local_queue'), ['old'])
        secondary.locked = False
        self.assertTrue(dump_json(store, 'device', 'local_queue', ['new']))
        self.assertEqual(load_json(store, 'device', 'local_queue'), ['new'])
        self.assertIsNone(self.secondary.read('device', 'local_queue'))

    def test_open_store_uses_configured_backend_first(self):
        settings = SimpleNamespace(data_dir=self.tmp.name, storage_backend='sqlite')
        store = open_store(settings)
        self.assertEqual(store.name, 'sqlite+file')
        settings = SimpleNamespace(data_dir=self.tmp.name, storage_backend='file')
        self.assertEqual(open_store(settings).name, 'file+sqlite')


if __name__ == '__main__':
    unittest.main()
