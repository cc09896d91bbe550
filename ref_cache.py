"""
Store-scoped snapshots of reference data (products, customers).

Each snapshot is stored as one JSON blob per store and kind::

    {"metadata": {"version": 1, "lastUpdated": "...Z", "storeId": "..."},
     "records": [...]}

A blob whose version or storeId does not match is treated as a cold cache.
Every public method swallows and logs storage problems: a broken cache must
never stop a cashier from ringing up a sale.
"""
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from local_store import dump_json, iso_now, load_json, remove_key

log = logging.getLogger('pos.cache')

CACHE_VERSION = 1


def _text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip().lower()


def _is_active(record: Dict[str, Any]) -> bool:
    value = record.get('is_active', True)
    if isinstance(value, str):
        return value.strip().lower() not in ('0', 'false', 'no', '')
    return bool(value)


class RecordCache:
    """Versioned snapshot of one kind of record for one store at a time."""

    kind = 'records'
    search_fields = ('name',)
    name_field = 'name'

    def __init__(self, store):
        self.store = store
        self._lock = threading.RLock()

    # ---------- snapshot ----------
    def _read_blob(self, store_id: str) -> Optional[Dict[str, Any]]:
        blob = load_json(self.store, store_id, self.kind)
        if not isinstance(blob, dict):
            return None
        meta = blob.get('metadata')
        records = blob.get('records')
        if not isinstance(meta, dict) or not isinstance(records, list):
            log.warning('Ignoring malformed %s cache for store %s', self.kind, store_id)
            return None
        if meta.get('version') != CACHE_VERSION:
            log.info('Ignoring %s cache for store %s: version %r != %s',
                     self.kind, store_id, meta.get('version'), CACHE_VERSION)
            return None
        if meta.get('storeId') != store_id:
            log.warning('Ignoring %s cache for store %s: snapshot belongs to %r',
                        self.kind, store_id, meta.get('storeId'))
            return None
        return blob

    def load(self, store_id: str) -> List[Dict[str, Any]]:
        """Return the cached records for ``store_id`` or [] on a cold cache."""
        try:
            blob = self._read_blob(store_id)
        except Exception:
            log.exception('%s cache load failed for store %s', self.kind, store_id)
            return []
        if not blob:
            return []
        return [r for r in blob['records'] if isinstance(r, dict)]

    def metadata(self, store_id: str) -> Optional[Dict[str, Any]]:
        blob = self._read_blob(store_id)
        return dict(blob['metadata']) if blob else None

    def save(self, store_id: str, records: Iterable[Dict[str, Any]]) -> bool:
        """Replace the whole snapshot for ``store_id``."""
        blob = {
            'metadata': {'version': CACHE_VERSION, 'lastUpdated': iso_now(), 'storeId': store_id},
            'records': [dict(r) for r in (records or []) if isinstance(r, dict)],
        }
        with self._lock:
            ok = dump_json(self.store, store_id, self.kind, blob)
        if ok:
            log.debug('Cached %d %s for store %s', len(blob['records']), self.kind, store_id)
        return ok

    def upsert(self, records: Iterable[Dict[str, Any]], store_id: str) -> bool:
        """Merge ``records`` into the snapshot by id: replace fields or append."""
        incoming = [r for r in (records or []) if isinstance(r, dict)]
        if not incoming:
            return True
        with self._lock:
            merged = self.load(store_id)
            index = {str(r.get('id')): pos for pos, r in enumerate(merged) if r.get('id') is not None}
            for record in incoming:
                key = record.get('id')
                if key is not None and str(key) in index:
                    pos = index[str(key)]
                    merged[pos] = {**merged[pos], **record}
                else:
                    merged.append(dict(record))
                    if key is not None:
                        index[str(key)] = len(merged) - 1
            ok = self.save(store_id, merged)
        if ok:
            log.info('Upserted %d %s (cache now %d) for store %s',
                     len(incoming), self.kind, len(merged), store_id)
        return ok

    def update(self, record_id: Any, store_id: str, mutate: Callable[[Dict[str, Any]], None]) -> Optional[Dict[str, Any]]:
        """Apply ``mutate`` to one cached record in place and save. Returns the new record."""
        with self._lock:
            records = self.load(store_id)
            for record in records:
                if str(record.get('id')) == str(record_id):
                    mutate(record)
                    if self.save(store_id, records):
                        return dict(record)
                    return None
        return None

    def clear(self, store_id: str) -> bool:
        with self._lock:
            return remove_key(self.store, store_id, self.kind)

    # ---------- lookups ----------
    def _find(self, store_id: str, predicate: Callable[[Dict[str, Any]], bool]) -> Optional[Dict[str, Any]]:
        try:
            for record in self.load(store_id):
                if predicate(record):
                    return record
        except Exception:
            log.exception('%s cache lookup failed for store %s', self.kind, store_id)
        return None

    def get_by_id(self, record_id: Any, store_id: str) -> Optional[Dict[str, Any]]:
        if record_id is None:
            return None
        wanted = str(record_id)
        return self._find(store_id, lambda r: str(r.get('id')) == wanted)

    def count_active(self, store_id: str) -> int:
        return sum(1 for r in self.load(store_id) if _is_active(r))

    def search(self, query: str, store_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Case-insensitive substring search over ``search_fields`` of active records.

        Ranking: exact match on any field, then prefix match, then by name.
        """
        needle = _text(query)
        if not needle:
            return []
        try:
            limit = max(0, int(limit))
        except (TypeError, ValueError):
            limit = 10
        ranked = []
        try:
            for record in self.load(store_id):
                if not _is_active(record):
                    continue
                values = [_text(record.get(field)) for field in self.search_fields]
                values = [v for v in values if v]
                if not any(needle in v for v in values):
                    continue
                if needle in values:
                    rank = 0
                elif any(v.startswith(needle) for v in values):
                    rank = 1
                else:
                    rank = 2
                ranked.append((rank, _text(record.get(self.name_field)), record))
        except Exception:
            log.exception('%s cache search failed for store %s', self.kind, store_id)
            return []
        ranked.sort(key=lambda entry: (entry[0], entry[1]))
        return [record for _, _, record in ranked[:limit]]


class ProductCache(RecordCache):
    kind = 'products'
    search_fields = ('name', 'barcode')

    def __init__(self, store, multi_store_device: bool = False):
        super().__init__(store)
        self.multi_store_device = multi_store_device

    def get_by_sku(self, sku: str, store_id: str) -> Optional[Dict[str, Any]]:
        if not sku:
            return None
        wanted = str(sku).strip()
        return self._find(store_id, lambda r: str(r.get('sku') or '') == wanted)

    @staticmethod
    def _matches_code(code: str):
        return lambda r: str(r.get('barcode') or '') == code or str(r.get('sku') or '') == code

    def get_by_barcode(self, barcode: str, store_id: str) -> Optional[Dict[str, Any]]:
        """Match on barcode or SKU in the active store, then other stores on multi-store tills."""
        if not barcode:
            return None
        code = str(barcode).strip()
        found = self._find(store_id, self._matches_code(code))
        if found or not self.multi_store_device:
            return found
        try:
            namespaces = self.store.namespaces()
        except Exception:
            log.exception('Listing cached stores failed')
            return None
        for other in namespaces:
            if other == store_id:
                continue
            found = self._find(other, self._matches_code(code))
            if found:
                log.warning('Barcode %s resolved from store %s cache while active store is %s',
                            code, other, store_id)
                return found
        return None

    def adjust_stock(self, product_id: Any, store_id: str, delta: float) -> Optional[float]:
        """Add ``delta`` (negative to decrement, floored at zero) to cached stock; returns new stock."""
        def _apply(record):
            try:
                current = float(record.get('stock') or 0)
            except (TypeError, ValueError):
                current = 0.0
            new_stock = max(0.0, round(current + delta, 3))
            if new_stock == int(new_stock):
                new_stock = int(new_stock)
            record['stock'] = new_stock

        updated = self.update(product_id, store_id, _apply)
        if updated is None:
            log.info('Product %s not in cache for store %s; stock not adjusted', product_id, store_id)
            return None
        return updated['stock']


class CustomerCache(RecordCache):
    kind = 'customers'
    search_fields = ('customer_name', 'phone')
    name_field = 'customer_name'

    def get_by_phone(self, phone: str, store_id: str) -> Optional[Dict[str, Any]]:
        if not phone:
            return None
        wanted = str(phone).strip()
        return self._find(store_id, lambda r: _is_active(r) and str(r.get('phone') or '').strip() == wanted)


class CacheWarmup:
    """
    Per-store warm-up coordinator: NOT_STARTED -> LOADING -> LOADED | FAILED.

    The first caller of ``ensure_loaded`` runs the loader; concurrent callers
    wait for that run instead of starting their own. A FAILED store may be
    retried by the next call.
    """

    NOT_STARTED = 'not_started'
    LOADING = 'loading'
    LOADED = 'loaded'
    FAILED = 'failed'

    def __init__(self, loader: Callable[[str], Any]):
        self.loader = loader
        self._lock = threading.Lock()
        self._states: Dict[str, str] = {}
        self._events: Dict[str, threading.Event] = {}

    def state(self, store_id: str) -> str:
        with self._lock:
            return self._states.get(store_id, self.NOT_STARTED)

    def ensure_loaded(self, store_id: str, timeout: Optional[float] = None) -> str:
        with self._lock:
            state = self._states.get(store_id, self.NOT_STARTED)
            if state == self.LOADED:
                return state
            if state == self.LOADING:
                event = self._events[store_id]
                owner = False
            else:
                event = threading.Event()
                self._events[store_id] = event
                self._states[store_id] = self.LOADING
                owner = True
        if not owner:
            event.wait(timeout)
            return self.state(store_id)
        result = self.FAILED
        try:
            self.loader(store_id)
            result = self.LOADED
        except Exception:
            log.exception('Cache warm-up failed for store %s', store_id)
        finally:
            with self._lock:
                self._states[store_id] = result
            event.set()
        log.info('Cache warm-up for store %s: %s', store_id, result)
        return result
