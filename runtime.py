"""Builds and owns every component of one POS client instance."""
import datetime as dt
import logging
import threading
from typing import Any, Dict, Optional

from auth import AuthService
from checkout import CheckoutService
from customer_service import CustomerService
from local_queue import LocalQueue
from local_store import dump_json, load_json, open_store
from network import NetworkMonitor
from pricing import Cart
from ref_cache import CacheWarmup, CustomerCache, ProductCache
from remote import SupabaseClient
from sync_engine import InventoryReconciler, SyncEngine

log = logging.getLogger('pos.runtime')

STORE_CONFIG_KEY = 'store_config'


class PosRuntime:
    def __init__(self, settings, store=None, remote=None, network=None):
        self.settings = settings
        self.store = store if store is not None else open_store(settings)
        self.remote = remote if remote is not None else SupabaseClient(
            settings.supabase_url, settings.supabase_key, timeout=settings.request_timeout)
        self.network = network if network is not None else NetworkMonitor(
            self.remote.health, interval=settings.network_check_interval)
        self.products = ProductCache(self.store, multi_store_device=settings.multi_store_device)
        self.customers = CustomerCache(self.store)
        self.queue = LocalQueue(self.store)
        self.reconciler = InventoryReconciler(self.remote, self.queue, self.products)
        self.engine = SyncEngine(
            self.queue, self.remote, self.store, self.network.is_online,
            reconciler=self.reconciler,
            max_attempts=settings.max_sync_attempts,
            backoff_base=settings.backoff_base,
            backoff_cap=settings.backoff_cap,
            interval=settings.sync_interval,
        )
        self.customer_service = CustomerService(self.remote, self.customers, self.network.is_online)
        self.checkout = CheckoutService(self.queue, self.remote, self.products, self.customer_service,
                                        self.reconciler, counter_id=settings.counter_id,
                                        tax_rate=settings.tax_rate)
        self.auth = AuthService(self.remote, self.store)
        self.warmup = CacheWarmup(self._warm_store)
        self._carts: Dict[str, Cart] = {}
        self._carts_lock = threading.Lock()
        self.network.add_reconnect_listener(self.engine.notify_online)

    # ---------- lifecycle ----------
    def start(self) -> None:
        self.network.check_now()
        self.network.start()
        self.engine.start()
        self.warmup_async(self.settings.store_id)

    def stop(self) -> None:
        self.engine.stop()
        self.network.stop()

    def warmup_async(self, store_id: str) -> None:
        threading.Thread(target=self.warmup.ensure_loaded, args=(store_id,),
                         name=f"cache-warmup-{store_id}", daemon=True).start()

    def _warm_store(self, store_id: str) -> None:
        if not self.network.is_online():
            if self.products.load(store_id):
                log.info('Offline start: using cached products for store %s', store_id)
                return
            raise RuntimeError(f"offline with no cached products for store {store_id}")
        products = self.remote.get_products(store_id)
        if products:
            self.products.save(store_id, products)
        customers = self.remote.get_customers(store_id)
        if customers:
            self.customers.save(store_id, customers)
        config = self.remote.get_store_config(store_id)
        if config:
            dump_json(self.store, store_id, STORE_CONFIG_KEY, config)
        log.info('Primed caches for store %s (%d products, %d customers)',
                 store_id, len(products), len(customers))

    # ---------- store-scoped helpers ----------
    def tax_rate_for(self, store_id: str) -> float:
        config = load_json(self.store, store_id, STORE_CONFIG_KEY)
        if isinstance(config, dict) and config.get('tax_rate') not in (None, ''):
            try:
                return float(config['tax_rate'])
            except (TypeError, ValueError):
                log.warning('Bad tax_rate %r in store config for %s', config.get('tax_rate'), store_id)
        return self.settings.tax_rate

    def cart_for(self, store_id: str) -> Cart:
        with self._carts_lock:
            cart = self._carts.get(store_id)
            if cart is None:
                cart = Cart(self.store, store_id=store_id, tax_rate=self.tax_rate_for(store_id))
                self._carts[store_id] = cart
            return cart

    def find_product_by_barcode(self, code: str, store_id: str) -> Optional[Dict[str, Any]]:
        """Cache first; online misses go to the backend and are cached."""
        found = self.products.get_by_barcode(code, store_id)
        if found or not self.network.is_online():
            return found
        found = self.remote.get_product_by_barcode(code, store_id)
        if found:
            self.products.upsert([found], store_id)
        return found

    def dashboard(self, store_id: str) -> Dict[str, Any]:
        today = dt.date.today().isoformat()
        status = self.engine.status()
        summary = {
            'store_id': store_id,
            'cached_products': self.products.count_active(store_id),
            'local_pending': status['pending'],
            'offline_sales_total': status['offline_sales_total'],
            'last_sync_time': status['last_sync_time'],
            'online': status['online'],
        }
        if status['online']:
            summary['today_sales_total'] = self.remote.get_sales_by_date_range(store_id, today, today)
            summary['total_products'] = self.remote.get_total_products_count(store_id)
            summary['remote_pending'] = self.remote.get_pending_sync_count(store_id)
        return summary
