"""
Payment / checkout sequencing.

Online status is read once per transaction. Online sales are created remotely
and marked synced directly; if either call fails, or the till is offline, the
sale goes into the write-behind queue instead. The cashier only sees an error
when the sale could not be captured anywhere.
"""
import datetime as dt
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from local_queue import SALE, QueueWriteError
from remote import RemoteError

log = logging.getLogger('pos.checkout')

CAPTURE_FAILED_MESSAGE = 'Payment processing error: the sale could not be saved, please retry'


def _cashier_name(user: Dict[str, Any]) -> str:
    name = f"{user.get('first_name') or ''} {user.get('last_name') or ''}".strip()
    return name or user.get('email') or ''


def _utc_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat().replace('+00:00', 'Z')


def _default_tax(rate: Any) -> float:
    try:
        return float(rate)
    except (TypeError, ValueError):
        return 18.0


class CheckoutService:
    def __init__(self, queue, remote, products, customer_service, reconciler,
                 counter_id: str = 'COUNTER-01', tax_rate: float = 18.0,
                 clock: Optional[Callable[[], dt.datetime]] = None):
        self.queue = queue
        self.remote = remote
        self.products = products
        self.customer_service = customer_service
        self.reconciler = reconciler
        self.counter_id = counter_id
        self.tax_rate = tax_rate
        self.clock = clock or (lambda: dt.datetime.now(dt.timezone.utc))

    def build_sale(self, cart_state: Dict[str, Any], user: Dict[str, Any], payment_method: str,
                   discount: Optional[Any], counter_id: Optional[str]) -> Dict[str, Any]:
        now = self.clock()
        millis = int(now.timestamp() * 1000)
        subtotal = float(cart_state.get('subtotal') or 0)
        tax = float(cart_state.get('tax') or 0)
        raw_discount = cart_state.get('discount') if discount is None else discount
        try:
            applied_discount = max(0.0, float(raw_discount or 0))
        except (TypeError, ValueError):
            applied_discount = 0.0
        items = []
        for item in cart_state.get('items') or []:
            gst_rate = item.get('gst_rate')
            items.append({
                'id': item.get('id'),
                'sku': item.get('sku'),
                'name': item.get('name'),
                'mrp': item.get('mrp'),
                'selling_price': item.get('selling_price'),
                'wholesale_price': item.get('wholesale_price'),
                'price_type': item.get('priceType'),
                'effective_price': item.get('effectivePrice'),
                'quantity': item.get('quantity'),
                'gst_rate': gst_rate if gst_rate not in (None, '') else _default_tax(self.tax_rate),
                'gst_amount': item.get('itemTax'),
                'hsn_code': item.get('hsn_code'),
                'total': round(float(item.get('effectivePrice') or 0) + float(item.get('itemTax') or 0), 2),
            })
        return {
            'id': f"SALE-{millis}-{uuid.uuid4().hex[:6]}",
            'sale_number': f"SN-{str(millis)[-8:]}",
            'store_id': user.get('store_id'),
            'counter_id': counter_id or self.counter_id,
            'cashier_id': user.get('id'),
            'cashier_name': _cashier_name(user),
            'items': items,
            'subtotal': round(subtotal, 2),
            'discount': round(applied_discount, 2),
            'tax': round(tax, 2),
            'total': round(max(0.0, subtotal + tax - applied_discount), 2),
            'payment_method': payment_method,
            'payment_status': 'completed',
            'sale_date': now.date().isoformat(),
            'notes': None,
            'synced': False,
            'last_synced_at': None,
        }

    def _send_direct(self, sale: Dict[str, Any]) -> bool:
        try:
            row = self.remote.create_sale(sale)
            self.remote.mark_sale_synced(row.get('id') or sale['id'])
        except RemoteError as exc:
            log.warning('Direct sale %s failed (%s); queueing for retry', sale['sale_number'], exc)
            return False
        sale['synced'] = True
        sale['last_synced_at'] = _utc_iso()
        return True

    def _decrement_local_stock(self, sale: Dict[str, Any]) -> None:
        for line in sale['items']:
            if line.get('id') is None:
                continue
            try:
                qty = float(line.get('quantity') or 0)
            except (TypeError, ValueError):
                continue
            self.products.adjust_stock(line['id'], sale['store_id'], -qty)

    def _intake_record(self, sale: Dict[str, Any], customer_id: Any, customer_info: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'sale_id': sale['id'],
            'sale_number': sale['sale_number'],
            'customer_id': customer_id,
            'customer_name': customer_info.get('name') or None,
            'customer_phone': customer_info.get('phone') or None,
            'customer_email': customer_info.get('email') or None,
            'customer_skipped': bool(customer_info.get('skipped')),
            'store_id': sale['store_id'],
            'counter_id': sale['counter_id'],
            'cashier_id': sale['cashier_id'],
            'cashier_name': sale['cashier_name'],
            'sale_amount': sale['total'],
            'payment_method': sale['payment_method'],
            'sale_date': sale['sale_date'],
        }

    def _resolve_customer(self, customer_info: Dict[str, Any], store_id: str, online: bool) -> Any:
        if customer_info.get('skipped') or not customer_info.get('name'):
            return None
        try:
            customer = self.customer_service.get_or_create_customer(
                customer_info.get('name'), customer_info.get('phone') or None,
                customer_info.get('email') or None, store_id, online=online)
        except Exception:
            log.exception('Customer capture failed for %s', customer_info.get('name'))
            return None
        return customer.get('id') if customer else None

    def process_payment(self, cart, user: Dict[str, Any], payment_method: str,
                        discount: Optional[Any] = None, counter_id: Optional[str] = None,
                        customer_info: Optional[Dict[str, Any]] = None,
                        is_online: Optional[Callable[[], bool]] = None,
                        on_success: Optional[Callable[[str], None]] = None,
                        on_error: Optional[Callable[[str], None]] = None) -> Dict[str, Any]:
        """
        Capture one sale. ``cart`` is a pricing.Cart (cleared on success) or a cart state dict.

        Returns {'status': 'success', 'mode': 'online'|'queued'|'offline', ...} or
        {'status': 'error', 'message': ...}; the matching callback is invoked as well.
        """
        def _fail(message: str) -> Dict[str, Any]:
            if on_error:
                on_error(message)
            return {'status': 'error', 'message': message}

        try:
            online = bool(is_online()) if is_online else False
        except Exception:
            log.exception('Online probe failed; treating checkout as offline')
            online = False

        cart_state = cart.state() if hasattr(cart, 'state') else dict(cart or {})
        if not cart_state.get('items'):
            return _fail('Cart is empty')
        if not user or not user.get('store_id'):
            return _fail('No signed-in cashier for this till')

        customer_info = customer_info or {}
        try:
            sale = self.build_sale(cart_state, user, payment_method, discount, counter_id)
            customer_id = self._resolve_customer(customer_info, sale['store_id'], online)
            mode = 'offline'
            if online:
                mode = 'online' if self._send_direct(sale) else 'queued'
            if mode != 'online':
                self.queue.enqueue(SALE, sale)
        except QueueWriteError as exc:
            log.error('Sale could not be queued: %s', exc)
            return _fail(CAPTURE_FAILED_MESSAGE)
        except Exception:
            log.exception('Checkout failed before the sale was captured')
            return _fail(CAPTURE_FAILED_MESSAGE)

        # the sale is durable from here on; side effects are best effort
        try:
            self._decrement_local_stock(sale)
            if mode == 'online':
                self.reconciler.push_sale_stock(sale)
            if mode != 'queued':
                self.customer_service.create_sales_intake(
                    self._intake_record(sale, customer_id, customer_info), online=online)
        except Exception:
            log.exception('Post-checkout bookkeeping failed for %s', sale['sale_number'])

        log.info('Sale %s captured (%s, total=%.2f)', sale['sale_number'], mode, sale['total'])
        if hasattr(cart, 'clear'):
            cart.clear()
        if on_success:
            on_success(sale['sale_number'])
        return {'status': 'success', 'mode': mode, 'sale_number': sale['sale_number'],
                'sale_id': sale['id'], 'total': sale['total']}
