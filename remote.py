"""
Thin client for the remote backend (Supabase: PostgREST tables + GoTrue auth).

Write operations raise RemoteError carrying an ErrorKind so the sync engine
can tell retryable failures from permanent rejections. Read helpers used to
prime or bypass the local caches log and return None / [] / 0 instead.
"""
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

import requests

log = logging.getLogger('pos.remote')


class ErrorKind:
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'
    UNKNOWN = 'unknown'


class RemoteError(Exception):
    def __init__(self, kind: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind != ErrorKind.PERMANENT

    def __str__(self) -> str:
        base = super().__str__()
        if self.status:
            return f"{self.kind} (HTTP {self.status}): {base}"
        return f"{self.kind}: {base}"


def classify_status(status: int) -> str:
    if status >= 500 or status in (408, 425, 429):
        return ErrorKind.TRANSIENT
    if status in (401, 403):
        return ErrorKind.UNKNOWN
    if 400 <= status < 500:
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or resp.reason or '').strip()[:300]
    if isinstance(body, dict):
        for key in ('message', 'msg', 'error_description', 'error', 'hint', 'details'):
            if body.get(key):
                return str(body[key])[:300]
    return str(body)[:300]


def _parse_count(resp: requests.Response) -> int:
    content_range = resp.headers.get('Content-Range') or ''
    total = content_range.rsplit('/', 1)[-1] if '/' in content_range else ''
    try:
        return int(total)
    except ValueError:
        return 0


def _utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace('+00:00', 'Z')


class SupabaseClient:
    def __init__(self, base_url: str, api_key: str, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or '').rstrip('/')
        self.api_key = api_key or ''
        self.timeout = timeout
        self.session = session or requests.Session()
        self.access_token: Optional[str] = None

    # ---------- plumbing ----------
    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'apikey': self.api_key,
            'Authorization': f"Bearer {self.access_token or self.api_key}",
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if prefer:
            headers['Prefer'] = prefer
        return headers

    def _send(self, method: str, path: str, params=None, payload=None,
              prefer: Optional[str] = None, extra_headers: Optional[Dict[str, str]] = None) -> requests.Response:
        if not self.base_url:
            raise RemoteError(ErrorKind.TRANSIENT, 'remote backend not configured')
        headers = self._headers(prefer)
        if extra_headers:
            headers.update(extra_headers)
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, params=params, json=payload,
                                        headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RemoteError(ErrorKind.TRANSIENT, f"{method} {path}: {exc}") from exc
        if resp.status_code >= 400:
            raise RemoteError(classify_status(resp.status_code),
                              f"{method} {path}: {_error_message_from_response(resp)}",
                              status=resp.status_code)
        return resp

    def _json(self, resp: requests.Response) -> Any:
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(ErrorKind.UNKNOWN, f"bad JSON from {resp.url}: {exc}", status=resp.status_code) from exc

    def _rows(self, method: str, table: str, params=None, payload=None, prefer: Optional[str] = None) -> List[Dict[str, Any]]:
        body = self._json(self._send(method, f"/rest/v1/{table}", params=params, payload=payload, prefer=prefer))
        if body is None:
            return []
        if isinstance(body, dict):
            return [body]
        return [row for row in body if isinstance(row, dict)]

    def _one(self, method: str, table: str, params=None, payload=None, prefer: Optional[str] = None) -> Dict[str, Any]:
        rows = self._rows(method, table, params=params, payload=payload, prefer=prefer)
        if not rows:
            raise RemoteError(ErrorKind.UNKNOWN, f"{method} {table}: no row returned")
        return rows[0]

    def _read_rows(self, table: str, params, label: str) -> Optional[List[Dict[str, Any]]]:
        try:
            return self._rows('GET', table, params=params)
        except RemoteError as exc:
            log.warning('%s failed: %s', label, exc)
            return None

    def _count(self, table: str, params, label: str) -> int:
        try:
            resp = self._send('HEAD', f"/rest/v1/{table}", params=params, prefer='count=exact')
        except RemoteError as exc:
            log.warning('%s failed: %s', label, exc)
            return 0
        return _parse_count(resp)

    def health(self) -> bool:
        """True when the backend answers at all (used for connectivity probing)."""
        if not self.base_url:
            return False
        try:
            resp = self.session.get(f"{self.base_url}/auth/v1/health",
                                    headers={'apikey': self.api_key}, timeout=min(self.timeout, 5))
        except requests.RequestException:
            return False
        return resp.status_code < 500

    # ---------- sales / inventory (queued writes) ----------
    def create_sale(self, sale: Dict[str, Any]) -> Dict[str, Any]:
        """Insert the sale, or merge into the existing row with the same client-generated id."""
        return self._one('POST', 'sales', params={'on_conflict': 'id'}, payload=sale,
                         prefer='return=representation,resolution=merge-duplicates')

    def mark_sale_synced(self, sale_id: str) -> bool:
        self._one('PATCH', 'sales', params={'id': f"eq.{sale_id}"},
                  payload={'synced': True, 'last_synced_at': _utc_iso()},
                  prefer='return=representation')
        return True

    def update_inventory(self, product_id: Any, new_stock: float, store_id: str) -> Dict[str, Any]:
        return self._one('PATCH', 'inventory',
                         params={'product_id': f"eq.{product_id}", 'store_id': f"eq.{store_id}"},
                         payload={'current_stock': new_stock, 'updated_at': _utc_iso()},
                         prefer='return=representation')

    # ---------- customers ----------
    def find_customer_by_phone(self, phone: str, store_id: str) -> Optional[Dict[str, Any]]:
        rows = self._read_rows('customers', {
            'select': '*', 'phone': f"eq.{phone}", 'store_id': f"eq.{store_id}",
            'is_active': 'eq.true', 'limit': '1',
        }, 'Customer lookup by phone')
        return rows[0] if rows else None

    def insert_customer(self, customer: Dict[str, Any]) -> Dict[str, Any]:
        return self._one('POST', 'customers', payload=[customer], prefer='return=representation')

    def update_customer(self, customer_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        return self._one('PATCH', 'customers', params={'id': f"eq.{customer_id}"},
                         payload=updates, prefer='return=representation')

    def create_sales_intake(self, record: Dict[str, Any]) -> None:
        self._send('POST', '/rest/v1/sales_intake', payload=[record], prefer='return=minimal')

    # ---------- reads used to prime or bypass the caches ----------
    def get_products(self, store_id: str) -> List[Dict[str, Any]]:
        return self._read_rows('products', {
            'select': '*', 'store_id': f"eq.{store_id}", 'is_active': 'eq.true', 'order': 'name.asc',
        }, 'Product fetch') or []

    def get_customers(self, store_id: str) -> List[Dict[str, Any]]:
        return self._read_rows('customers', {
            'select': '*', 'store_id': f"eq.{store_id}", 'is_active': 'eq.true',
        }, 'Customer fetch') or []

    def get_product_by_barcode(self, barcode: str, store_id: str) -> Optional[Dict[str, Any]]:
        code = (barcode or '').strip()
        if not code:
            return None
        rows = self._read_rows('products', {
            'select': '*', 'barcode': f"eq.{code}", 'store_id': f"eq.{store_id}", 'limit': '1',
        }, 'Barcode lookup')
        if rows:
            return rows[0]
        rows = self._read_rows('products', {
            'select': '*', 'sku': f"eq.{code}", 'store_id': f"eq.{store_id}", 'limit': '1',
        }, 'SKU lookup')
        return rows[0] if rows else None

    def get_store_config(self, store_id: str) -> Optional[Dict[str, Any]]:
        rows = self._read_rows('store_config', {'select': '*', 'store_id': f"eq.{store_id}", 'limit': '1'},
                               'Store config fetch')
        return rows[0] if rows else None

    def get_sales_by_date_range(self, store_id: str, date_from: str, date_to: str) -> float:
        rows = self._read_rows('sales', [
            ('select', 'total'), ('store_id', f"eq.{store_id}"),
            ('sale_date', f"gte.{date_from}"), ('sale_date', f"lte.{date_to}"),
        ], 'Sales by date range fetch') or []
        total = 0.0
        for row in rows:
            try:
                total += float(row.get('total') or 0)
            except (TypeError, ValueError):
                continue
        return round(total, 2)

    def get_total_products_count(self, store_id: str) -> int:
        return self._count('products', {'store_id': f"eq.{store_id}", 'is_active': 'eq.true'},
                           'Product count')

    def get_pending_sync_count(self, store_id: str) -> int:
        return self._count('sales', {'store_id': f"eq.{store_id}", 'synced': 'eq.false'},
                           'Pending sync count')

    # ---------- auth ----------
    def sign_in_with_password(self, email: str, password: str) -> Dict[str, Any]:
        body = self._json(self._send('POST', '/auth/v1/token', params={'grant_type': 'password'},
                                     payload={'email': email, 'password': password}))
        if not isinstance(body, dict) or not body.get('access_token'):
            raise RemoteError(ErrorKind.UNKNOWN, 'sign-in returned no session')
        self.access_token = body['access_token']
        return body

    def get_session_user(self) -> Optional[Dict[str, Any]]:
        if not self.access_token:
            return None
        try:
            body = self._json(self._send('GET', '/auth/v1/user'))
        except RemoteError as exc:
            log.warning('Session check failed: %s', exc)
            return None
        return body if isinstance(body, dict) else None

    def sign_out(self) -> None:
        if not self.access_token:
            return
        try:
            self._send('POST', '/auth/v1/logout')
        except RemoteError as exc:
            log.warning('Remote sign-out failed: %s', exc)
        finally:
            self.access_token = None

    def get_profile(self, user_id: Optional[str] = None, email: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if user_id:
            rows = self._read_rows('auth_users', {'select': '*', 'id': f"eq.{user_id}", 'limit': '1'},
                                   'Profile lookup by id')
            if rows:
                return rows[0]
        if email:
            rows = self._read_rows('auth_users', {'select': '*', 'email': f"eq.{email}", 'limit': '1'},
                                   'Profile lookup by email')
            if rows:
                return rows[0]
        return None
