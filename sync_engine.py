"""
Background reconciliation of the write-behind queue against the remote backend.

One pass (``run_once``) drains pending items oldest first. Sales are created
remotely (idempotent on the client sale id), then the remote row is marked
synced, and only then is the local item flipped to synced and removed.
Failed items keep their position and are retried after an exponential
backoff measured from ``created_at``; permanent rejections and items that
used up their attempts stay in the queue flagged ``terminal`` for an operator.
"""
import datetime as dt
import logging
import threading
from typing import Any, Callable, Dict, Optional

from local_queue import (INVENTORY_ADJUSTMENT, SALE, QueueWriteError,
                         format_ts, parse_ts, utc_now)
from local_store import DEVICE_NAMESPACE, dump_json, load_json
from remote import ErrorKind, RemoteError

log = logging.getLogger('pos.sync')

LAST_SYNC_KEY = 'last_sync_time'


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class InventoryReconciler:
    """Pushes absolute stock figures to the remote; failed pushes go through the queue."""

    def __init__(self, remote, queue, products):
        self.remote = remote
        self.queue = queue
        self.products = products

    @staticmethod
    def adjustment_id(store_id: str, product_id: Any) -> str:
        return f"inv:{store_id}:{product_id}"

    def push_stock(self, product_id: Any, new_stock: float, store_id: str,
                   sku: Optional[str] = None, sale_id: Optional[str] = None) -> bool:
        try:
            self.remote.update_inventory(product_id, new_stock, store_id)
            log.debug('Remote stock for %s set to %s', product_id, new_stock)
            return True
        except RemoteError as exc:
            log.warning('Remote stock update for %s failed (%s); queueing adjustment', product_id, exc)
        payload = {
            'id': self.adjustment_id(store_id, product_id),
            'product_id': product_id,
            'sku': sku,
            'store_id': store_id,
            'new_stock': new_stock,
            'sale_id': sale_id,
        }
        try:
            item = self.queue.enqueue(INVENTORY_ADJUSTMENT, payload)
        except QueueWriteError as exc:
            log.error('Could not queue stock adjustment for %s: %s', product_id, exc)
            return False
        if item.get('terminal') or item.get('attempts'):
            # a newer stock figure is a new write; give it a fresh retry budget
            self.queue.update_queue_item(item['id'], {'attempts': 0, 'terminal': False, 'last_error': None})
        return False

    def push_sale_stock(self, sale: Dict[str, Any]) -> int:
        """Send current cached stock for every product in ``sale``. Returns the number queued for retry."""
        store_id = sale.get('store_id')
        queued = 0
        for line in sale.get('items') or []:
            product_id = line.get('id')
            if product_id is None:
                continue
            cached = self.products.get_by_id(product_id, store_id)
            if not cached:
                log.info('Product %s not cached for store %s; remote stock left unchanged', product_id, store_id)
                continue
            if not self.push_stock(product_id, cached.get('stock') or 0, store_id,
                                   sku=line.get('sku'), sale_id=sale.get('id')):
                queued += 1
        return queued

    def apply_adjustment(self, payload: Dict[str, Any]) -> None:
        if payload.get('product_id') is None or not payload.get('store_id'):
            raise RemoteError(ErrorKind.PERMANENT, 'inventory adjustment without product_id/store_id')
        self.remote.update_inventory(payload['product_id'], payload.get('new_stock') or 0, payload['store_id'])


class SyncEngine:
    def __init__(self, queue, remote, store, is_online: Callable[[], bool],
                 reconciler: Optional[InventoryReconciler] = None,
                 max_attempts: int = 6, backoff_base: float = 2.0, backoff_cap: float = 1800.0,
                 interval: float = 30.0, clock: Optional[Callable[[], dt.datetime]] = None):
        self.queue = queue
        self.remote = remote
        self.store = store
        self.is_online = is_online
        self.reconciler = reconciler
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.interval = interval
        self.clock = clock or utc_now
        self._pass_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            SALE: self._send_sale,
            INVENTORY_ADJUSTMENT: self._send_inventory_adjustment,
        }

    # ---------- policy ----------
    def backoff_delay(self, attempts: int) -> float:
        return min(self.backoff_base * (2 ** max(0, attempts)), self.backoff_cap)

    def next_attempt_at(self, item: Dict[str, Any]) -> Optional[dt.datetime]:
        """When ``item`` may next be sent; None means immediately."""
        attempts = int(item.get('attempts') or 0)
        if attempts <= 0:
            return None
        created = parse_ts(item.get('created_at'))
        if created is None:
            return None
        return created + dt.timedelta(seconds=self.backoff_delay(attempts))

    def is_due(self, item: Dict[str, Any], now: dt.datetime) -> bool:
        due_at = self.next_attempt_at(item)
        return due_at is None or now >= due_at

    def is_terminal(self, item: Dict[str, Any]) -> bool:
        return bool(item.get('terminal')) or int(item.get('attempts') or 0) >= self.max_attempts

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    # ---------- handlers ----------
    def _send_sale(self, item: Dict[str, Any]) -> None:
        sale = dict(item.get('payload') or {})
        sale['synced'] = False
        sale['last_synced_at'] = None
        row = self.remote.create_sale(sale)
        sale_id = row.get('id') or sale.get('id')
        try:
            self.remote.mark_sale_synced(sale_id)
        except RemoteError as exc:
            raise RemoteError(exc.kind, f"markSaleSynced failed: {exc}", exc.status) from exc
        self.queue.update_queue_item(item['id'], {'synced': True, 'last_error': None})
        if self.reconciler:
            self.reconciler.push_sale_stock(sale)

    def _send_inventory_adjustment(self, item: Dict[str, Any]) -> None:
        if not self.reconciler:
            raise RemoteError(ErrorKind.PERMANENT, 'no inventory reconciler configured')
        self.reconciler.apply_adjustment(item.get('payload') or {})

    # ---------- pass ----------
    def _record_failure(self, item: Dict[str, Any], exc: RemoteError) -> bool:
        attempts = int(item.get('attempts') or 0) + 1
        fields: Dict[str, Any] = {'attempts': attempts, 'last_error': str(exc)}
        if not exc.retryable:
            fields['terminal'] = True
            fields['last_error'] = f"permanent: {exc}"
        elif attempts >= self.max_attempts:
            fields['terminal'] = True
            fields['last_error'] = f"max attempts reached ({self.max_attempts}): {exc}"
        self.queue.update_queue_item(item['id'], fields)
        log.warning('Sync of %s %s failed (attempt %d): %s', item.get('type'), item['id'], attempts, exc)
        return bool(fields.get('terminal'))

    def run_once(self) -> Dict[str, Any]:
        """One single-flight drain pass. A call while another pass runs is a no-op."""
        if not self._pass_lock.acquire(blocking=False):
            log.debug('Sync pass already running; skipping')
            return {'status': 'busy'}
        try:
            try:
                online = bool(self.is_online())
            except Exception:
                log.exception('Connectivity check failed')
                online = False
            if not online:
                return {'status': 'offline'}
            return self._drain()
        finally:
            self._pass_lock.release()

    def _drain(self) -> Dict[str, Any]:
        summary = {'status': 'ok', 'success': 0, 'failed': 0, 'waiting': 0, 'terminal': 0, 'unsupported': 0}
        for leftover in [i for i in self.queue.get_queue() if i.get('synced')]:
            self.queue.remove_queue_item(leftover['id'])
        now = self.clock()
        for item in self.queue.get_queue(only_unsynced=True):
            if self.is_terminal(item):
                if not item.get('terminal'):
                    self.queue.update_queue_item(item['id'], {
                        'terminal': True,
                        'last_error': f"max attempts reached ({self.max_attempts})",
                    })
                summary['terminal'] += 1
                continue
            if not self.is_due(item, now):
                summary['waiting'] += 1
                continue
            handler = self.handlers.get(item.get('type'))
            if handler is None:
                self.queue.update_queue_item(item['id'], {'last_error': f"unsupported-item-type:{item.get('type')}"})
                summary['unsupported'] += 1
                continue
            try:
                handler(item)
            except RemoteError as exc:
                summary['failed'] += 1
                if self._record_failure(item, exc):
                    summary['terminal'] += 1
                continue
            except Exception as exc:
                log.exception('Unexpected error syncing %s', item['id'])
                summary['failed'] += 1
                if self._record_failure(item, RemoteError(ErrorKind.UNKNOWN, str(exc))):
                    summary['terminal'] += 1
                continue
            if not self.queue.remove_queue_item(item['id']):
                self.queue.update_queue_item(item['id'], {'synced': True, 'last_error': None})
            summary['success'] += 1
        if summary['success']:
            dump_json(self.store, DEVICE_NAMESPACE, LAST_SYNC_KEY, format_ts(self.clock()))
        if summary['success'] or summary['failed']:
            log.info('Sync pass: %(success)d synced, %(failed)d failed, %(waiting)d waiting, '
                     '%(terminal)d need attention', summary)
        return summary

    # ---------- triggers ----------
    def sync_now(self) -> Dict[str, Any]:
        return self.run_once()

    def notify_online(self) -> None:
        """Reconnect trigger: wake the background loop, or run inline if it is not started."""
        if self._thread and self._thread.is_alive():
            self._wake.set()
            return
        self.run_once()

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception('Sync loop iteration failed')
            self._wake.wait(self.interval)
            self._wake.clear()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name='sync-engine', daemon=True)
        self._thread.start()
        log.info('Sync engine started (interval=%ss, max_attempts=%d)', self.interval, self.max_attempts)

    def stop(self) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    # ---------- operator actions / status ----------
    def delete_item(self, item_id: str) -> bool:
        return self.queue.remove_queue_item(item_id)

    def resync_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Give an item a fresh retry budget; the next pass sends it immediately."""
        return self.queue.update_queue_item(item_id, {'attempts': 0, 'terminal': False, 'last_error': None})

    def last_sync_time(self) -> Optional[str]:
        value = load_json(self.store, DEVICE_NAMESPACE, LAST_SYNC_KEY)
        return value if isinstance(value, str) else None

    def status(self) -> Dict[str, Any]:
        pending = self.queue.get_queue(only_unsynced=True)
        sales = [i for i in pending if i.get('type') == SALE]
        try:
            online = bool(self.is_online())
        except Exception:
            online = False
        return {
            'online': online,
            'is_syncing': self.is_syncing,
            'pending': len(pending),
            'pending_sales': len(sales),
            'terminal': sum(1 for i in pending if self.is_terminal(i)),
            'last_sync_time': self.last_sync_time(),
            'offline_sales_total': round(sum(_as_float((i.get('payload') or {}).get('total')) for i in sales), 2),
        }
