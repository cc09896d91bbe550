"""Offline-first customer lookup/creation and the best-effort sales intake record."""
import datetime as dt
import logging
import time
from typing import Any, Callable, Dict, Optional

from remote import RemoteError

log = logging.getLogger('pos.customers')


def _utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace('+00:00', 'Z')


class CustomerService:
    def __init__(self, remote, customers, is_online: Callable[[], bool]):
        self.remote = remote
        self.customers = customers
        self.is_online = is_online

    def _online(self, online: Optional[bool] = None) -> bool:
        if online is not None:
            return online
        try:
            return bool(self.is_online())
        except Exception:
            return False

    def find_customer_by_phone(self, phone: str, store_id: str, online: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        """Cache first; when online, fall back to the backend and remember the result."""
        if not phone:
            return None
        cached = self.customers.get_by_phone(phone, store_id)
        if cached:
            return cached
        if not self._online(online):
            log.debug('Offline: customer %s not in cache', phone)
            return None
        found = self.remote.find_customer_by_phone(phone, store_id)
        if found:
            self.customers.upsert([found], store_id)
        return found

    def create_customer(self, data: Dict[str, Any], online: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        store_id = data.get('store_id')
        if not self._online(online):
            now = _utc_iso()
            temp = {
                'id': -int(time.time() * 1000),
                'customer_name': data.get('customer_name'),
                'phone': data.get('phone') or None,
                'email': data.get('email') or None,
                'store_id': store_id,
                'total_purchases': 0,
                'total_spent': 0,
                'last_purchase_date': None,
                'is_active': True,
                'created_at': now,
                'updated_at': now,
            }
            self.customers.upsert([temp], store_id)
            log.info('Offline: created temporary customer %s (%s)', temp['customer_name'], temp['id'])
            return temp
        try:
            created = self.remote.insert_customer(data)
        except RemoteError as exc:
            log.warning('Creating customer %s failed: %s', data.get('customer_name'), exc)
            return None
        self.customers.upsert([created], store_id)
        return created

    def update_customer(self, customer_id: Any, updates: Dict[str, Any], store_id: str,
                        online: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        """Online only; returns None when offline or when the backend refuses."""
        if not self._online(online):
            log.debug('Offline: skipping update of customer %s', customer_id)
            return None
        try:
            updated = self.remote.update_customer(customer_id, updates)
        except RemoteError as exc:
            log.warning('Updating customer %s failed: %s', customer_id, exc)
            return None
        self.customers.upsert([updated], updated.get('store_id') or store_id)
        return updated

    def get_or_create_customer(self, name: str, phone: Optional[str], email: Optional[str],
                               store_id: str, online: Optional[bool] = None) -> Optional[Dict[str, Any]]:
        online = self._online(online)
        if phone:
            existing = self.find_customer_by_phone(phone, store_id, online=online)
            if existing:
                changed = name != existing.get('customer_name') or (email and email != existing.get('email'))
                if changed and online:
                    updated = self.update_customer(existing['id'], {
                        'customer_name': name,
                        'email': email or existing.get('email'),
                    }, store_id, online=online)
                    return updated or existing
                return existing
        return self.create_customer({
            'customer_name': name,
            'phone': phone,
            'email': email,
            'store_id': store_id,
        }, online=online)

    def create_sales_intake(self, record: Dict[str, Any], online: Optional[bool] = None) -> bool:
        """Skipped offline; online failures are logged and reported as False."""
        if not self._online(online):
            log.debug('Offline: skipping sales intake for %s', record.get('sale_number'))
            return True
        try:
            self.remote.create_sales_intake(record)
            return True
        except RemoteError as exc:
            log.warning('Sales intake for %s failed: %s', record.get('sale_number'), exc)
            return False
