"""
Cart state and price computation.

Every mutation recomputes all derived fields from the raw product fields and
quantities, so recomputing an unchanged cart always gives the same numbers.
The cart (items + discount) is written to the local store after each
mutation so an interrupted sale survives a restart.
"""
import logging
import math
import threading
from typing import Any, Dict, List, Optional

from local_store import dump_json, load_json, remove_key

log = logging.getLogger('pos.cart')

RETAIL = 'retail'
WHOLESALE = 'wholesale'
CART_KEY = 'cart'
DERIVED_FIELDS = ('effectivePrice', 'itemTax', 'itemSavings')


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == '':
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _money(value: float) -> float:
    return round(value + 0.0, 2)


def _has_price(value: Any) -> bool:
    return value is not None and value != '' and _as_float(value) > 0


def base_price(product: Dict[str, Any], price_type: str) -> float:
    """Per-unit (or per-pack for weighed goods) price before quantity."""
    if price_type == WHOLESALE and _has_price(product.get('wholesale_price')):
        return _as_float(product.get('wholesale_price'))
    selling = product.get('selling_price')
    if selling is not None and selling != '':
        return _as_float(selling)
    return _as_float(product.get('mrp'))


def is_weighed(product: Dict[str, Any]) -> bool:
    return str(product.get('weight_unit') or '').strip().lower() == 'kg'


def _line_amount(product: Dict[str, Any], price: float, quantity: float) -> float:
    if is_weighed(product):
        weight = _as_float(product.get('weight'))
        if weight <= 0:
            weight = 1.0
        return (price / weight) * quantity
    return price * quantity


def qualifies_for_wholesale(product: Dict[str, Any], quantity: float) -> bool:
    min_qty = _as_float(product.get('min_wholesale_qty'))
    return _has_price(product.get('wholesale_price')) and min_qty > 0 and quantity >= min_qty


def price_item(item: Dict[str, Any], default_tax_rate: float) -> Dict[str, Any]:
    """Return a copy of ``item`` with effectivePrice, itemTax and itemSavings filled in."""
    priced = dict(item)
    quantity = max(0.0, _as_float(item.get('quantity')))
    price_type = item.get('priceType') if item.get('priceType') in (RETAIL, WHOLESALE) else RETAIL
    effective = _line_amount(item, base_price(item, price_type), quantity)
    mrp_total = _line_amount(item, _as_float(item.get('mrp')), quantity)
    gst = item.get('gst_rate')
    rate = _as_float(gst) if gst is not None and gst != '' else _as_float(default_tax_rate)
    priced['quantity'] = quantity
    priced['priceType'] = price_type
    priced['effectivePrice'] = _money(effective)
    priced['itemTax'] = _money(effective * rate / 100.0)
    priced['itemSavings'] = _money(max(0.0, mrp_total - effective))
    return priced


def compute_cart(items: List[Dict[str, Any]], discount: Any, default_tax_rate: float) -> Dict[str, Any]:
    priced = [price_item(item, default_tax_rate) for item in items]
    discount_value = max(0.0, _as_float(discount))
    subtotal = _money(sum(i['effectivePrice'] for i in priced))
    tax = _money(sum(i['itemTax'] for i in priced))
    savings = _money(sum(i['itemSavings'] for i in priced))
    return {
        'items': priced,
        'subtotal': subtotal,
        'discount': _money(discount_value),
        'tax': tax,
        'totalSavings': savings,
        'total': _money(max(0.0, subtotal + tax - discount_value)),
    }


class Cart:
    """In-progress sale for one store. All mutators return the recomputed cart state."""

    def __init__(self, store=None, store_id: str = 'default', tax_rate: float = 18.0):
        self.store = store
        self.store_id = store_id
        self.tax_rate = tax_rate
        self._lock = threading.RLock()
        self._items: List[Dict[str, Any]] = []
        self._discount = 0.0
        self._restore()

    # ---------- persistence ----------
    def _restore(self) -> None:
        if self.store is None:
            return
        saved = load_json(self.store, self.store_id, CART_KEY)
        if not isinstance(saved, dict):
            return
        items = saved.get('items')
        if isinstance(items, list):
            self._items = [
                {k: v for k, v in item.items() if k not in DERIVED_FIELDS}
                for item in items if isinstance(item, dict) and item.get('id') is not None
            ]
        self._discount = max(0.0, _as_float(saved.get('discount')))
        if self._items:
            log.info('Restored cart with %d item(s) for store %s', len(self._items), self.store_id)

    def _persist(self, state: Dict[str, Any]) -> None:
        if self.store is None:
            return
        if not state['items'] and not self._discount:
            remove_key(self.store, self.store_id, CART_KEY)
            return
        dump_json(self.store, self.store_id, CART_KEY, {'items': self._items, 'discount': self._discount})

    def _commit(self) -> Dict[str, Any]:
        state = compute_cart(self._items, self._discount, self.tax_rate)
        self._persist(state)
        return state

    # ---------- reads ----------
    def state(self) -> Dict[str, Any]:
        with self._lock:
            return compute_cart(self._items, self._discount, self.tax_rate)

    def _find(self, product_id: Any) -> Optional[Dict[str, Any]]:
        for item in self._items:
            if str(item.get('id')) == str(product_id):
                return item
        return None

    @staticmethod
    def _auto_tier(item: Dict[str, Any]) -> None:
        if item.get('manualPriceType'):
            return
        if item.get('priceType', RETAIL) == RETAIL and qualifies_for_wholesale(item, _as_float(item.get('quantity'))):
            item['priceType'] = WHOLESALE

    # ---------- mutations ----------
    def add_item(self, product: Dict[str, Any], quantity: Any = 1) -> Dict[str, Any]:
        qty = _as_float(quantity)
        with self._lock:
            if not isinstance(product, dict) or product.get('id') is None or qty <= 0:
                return self.state()
            existing = self._find(product['id'])
            if existing:
                existing['quantity'] = _as_float(existing.get('quantity')) + qty
                item = existing
            else:
                item = {k: v for k, v in product.items() if k not in DERIVED_FIELDS}
                item['quantity'] = qty
                item['priceType'] = RETAIL
                self._items.append(item)
            self._auto_tier(item)
            return self._commit()

    def remove_item(self, product_id: Any) -> Dict[str, Any]:
        with self._lock:
            self._items = [i for i in self._items if str(i.get('id')) != str(product_id)]
            return self._commit()

    def update_quantity(self, product_id: Any, quantity: Any) -> Dict[str, Any]:
        """Set an item's quantity; zero or less removes it, non-numeric input is ignored."""
        with self._lock:
            try:
                qty = float(quantity)
            except (TypeError, ValueError):
                return self.state()
            if math.isnan(qty) or math.isinf(qty):
                return self.state()
            if qty <= 0:
                return self.remove_item(product_id)
            item = self._find(product_id)
            if item is None:
                return self.state()
            item['quantity'] = qty
            self._auto_tier(item)
            return self._commit()

    def update_item_price_type(self, product_id: Any, price_type: str) -> Dict[str, Any]:
        with self._lock:
            item = self._find(product_id)
            if item is None or price_type not in (RETAIL, WHOLESALE):
                return self.state()
            item['priceType'] = price_type
            item['manualPriceType'] = True
            return self._commit()

    def set_discount(self, amount: Any) -> Dict[str, Any]:
        with self._lock:
            self._discount = max(0.0, _as_float(amount))
            return self._commit()

    def clear(self) -> Dict[str, Any]:
        with self._lock:
            self._items = []
            self._discount = 0.0
            return self._commit()
