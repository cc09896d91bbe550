from flask import Flask, request, jsonify
import logging
import threading
from typing import Any, Dict, Optional

from config import load_settings
from runtime import PosRuntime

app = Flask(__name__)

_RUNTIME: Optional[PosRuntime] = None
_RUNTIME_LOCK = threading.Lock()
_BACKGROUND_SERVICES_STARTED = False


def get_runtime() -> PosRuntime:
    global _RUNTIME
    with _RUNTIME_LOCK:
        if _RUNTIME is None:
            settings = load_settings()
            app.logger.setLevel(getattr(logging, settings.log_level, logging.INFO))
            _RUNTIME = PosRuntime(settings)
        return _RUNTIME


def set_runtime(runtime: Optional[PosRuntime]) -> None:
    """Install a prebuilt runtime (used by main.py and the tests)."""
    global _RUNTIME, _BACKGROUND_SERVICES_STARTED
    with _RUNTIME_LOCK:
        _RUNTIME = runtime
        _BACKGROUND_SERVICES_STARTED = False


def start_background_services():
    """Start the network monitor and sync loop once per process."""
    global _BACKGROUND_SERVICES_STARTED
    if _BACKGROUND_SERVICES_STARTED:
        return
    get_runtime().start()
    _BACKGROUND_SERVICES_STARTED = True


def _active_store_id(rt: PosRuntime) -> str:
    user = rt.auth.current_user()
    if user and user.get('store_id'):
        return user['store_id']
    return request.args.get('store_id') or rt.settings.store_id


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _limit_arg(default: int = 10) -> int:
    try:
        return max(1, min(100, int(request.args.get('limit', default))))
    except (TypeError, ValueError):
        return default


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    return response


# ---------- status ----------
@app.route('/api/status')
def api_status():
    """Online flag, pending counts and last successful sync for the status bar."""
    rt = get_runtime()
    payload = rt.engine.status()
    payload['status'] = 'success'
    payload['cache'] = rt.warmup.state(_active_store_id(rt))
    return jsonify(payload)


@app.route('/api/dashboard')
def api_dashboard():
    rt = get_runtime()
    return jsonify({'status': 'success', 'dashboard': rt.dashboard(_active_store_id(rt))})


@app.route('/api/network', methods=['POST'])
def api_network_event():
    """Platform online/offline notifications; going online triggers a sync pass."""
    data = _json_body()
    if 'online' not in data:
        return jsonify({'status': 'error', 'message': 'Missing online flag'}), 400
    rt = get_runtime()
    rt.network.set_online(bool(data.get('online')))
    return jsonify({'status': 'success', 'online': rt.network.is_online()})


# ---------- auth ----------
@app.route('/api/auth/login', methods=['POST'])
def api_login():
    data = _json_body()
    rt = get_runtime()
    result = rt.auth.login(data.get('email'), data.get('password'))
    if not result['success']:
        return jsonify({'status': 'error', 'message': result['error']}), 401
    user = result['user']
    if user.get('store_id'):
        rt.warmup_async(user['store_id'])
    return jsonify({'status': 'success', 'user': user})


@app.route('/api/auth/logout', methods=['POST'])
def api_logout():
    get_runtime().auth.logout()
    return jsonify({'status': 'success'})


@app.route('/api/auth/me')
def api_me():
    user = get_runtime().auth.current_user()
    if not user:
        return jsonify({'status': 'error', 'message': 'Not signed in'}), 401
    return jsonify({'status': 'success', 'user': user})


# ---------- reference data ----------
@app.route('/api/products/search')
def api_product_search():
    q = (request.args.get('q') or '').strip()
    if not q:
        return jsonify({'status': 'success', 'products': []})
    rt = get_runtime()
    return jsonify({'status': 'success', 'products': rt.products.search(q, _active_store_id(rt), _limit_arg())})


@app.route('/api/lookup-barcode')
def api_lookup_barcode():
    code = (request.args.get('code') or '').strip()
    if not code:
        return jsonify({'status': 'error', 'message': 'Missing code'}), 400
    rt = get_runtime()
    product = rt.find_product_by_barcode(code, _active_store_id(rt))
    if not product:
        return jsonify({'status': 'error', 'message': f'No product for {code}'}), 404
    return jsonify({'status': 'success', 'product': product})


@app.route('/api/customers/search')
def api_customer_search():
    q = (request.args.get('q') or '').strip()
    rt = get_runtime()
    store_id = _active_store_id(rt)
    if not q:
        return jsonify({'status': 'success', 'customers': []})
    return jsonify({'status': 'success', 'customers': rt.customers.search(q, store_id, _limit_arg())})


@app.route('/api/customers/by-phone')
def api_customer_by_phone():
    phone = (request.args.get('phone') or '').strip()
    if not phone:
        return jsonify({'status': 'error', 'message': 'Missing phone'}), 400
    rt = get_runtime()
    customer = rt.customer_service.find_customer_by_phone(phone, _active_store_id(rt))
    return jsonify({'status': 'success', 'customer': customer})


@app.route('/api/cache/warmup', methods=['POST'])
def api_cache_warmup():
    rt = get_runtime()
    state = rt.warmup.ensure_loaded(_active_store_id(rt), timeout=60)
    code = 200 if state == rt.warmup.LOADED else 503
    return jsonify({'status': 'success' if code == 200 else 'error', 'cache': state}), code


# ---------- cart ----------
@app.route('/api/cart')
def api_cart():
    rt = get_runtime()
    return jsonify({'status': 'success', 'cart': rt.cart_for(_active_store_id(rt)).state()})


@app.route('/api/cart/items', methods=['POST'])
def api_cart_add():
    """Add by product_id (cached product) or barcode (cache, then backend when online)."""
    data = _json_body()
    rt = get_runtime()
    store_id = _active_store_id(rt)
    product = None
    if data.get('product_id') is not None:
        product = rt.products.get_by_id(data['product_id'], store_id)
    elif data.get('barcode'):
        product = rt.find_product_by_barcode(str(data['barcode']), store_id)
    else:
        return jsonify({'status': 'error', 'message': 'product_id or barcode is required'}), 400
    if not product:
        return jsonify({'status': 'error', 'message': 'Product not found'}), 404
    if not product.get('is_active', True):
        return jsonify({'status': 'error', 'message': 'Product is inactive'}), 400
    cart = rt.cart_for(store_id).add_item(product, data.get('quantity', 1))
    return jsonify({'status': 'success', 'cart': cart})


@app.route('/api/cart/items/<product_id>', methods=['DELETE'])
def api_cart_remove(product_id: str):
    rt = get_runtime()
    return jsonify({'status': 'success', 'cart': rt.cart_for(_active_store_id(rt)).remove_item(product_id)})


@app.route('/api/cart/items/<product_id>/quantity', methods=['POST'])
def api_cart_quantity(product_id: str):
    data = _json_body()
    if 'quantity' not in data:
        return jsonify({'status': 'error', 'message': 'Missing quantity'}), 400
    rt = get_runtime()
    cart = rt.cart_for(_active_store_id(rt)).update_quantity(product_id, data.get('quantity'))
    return jsonify({'status': 'success', 'cart': cart})


@app.route('/api/cart/items/<product_id>/price-type', methods=['POST'])
def api_cart_price_type(product_id: str):
    price_type = str(_json_body().get('price_type') or '').strip().lower()
    if price_type not in ('retail', 'wholesale'):
        return jsonify({'status': 'error', 'message': 'price_type must be retail or wholesale'}), 400
    rt = get_runtime()
    cart = rt.cart_for(_active_store_id(rt)).update_item_price_type(product_id, price_type)
    return jsonify({'status': 'success', 'cart': cart})


@app.route('/api/cart/discount', methods=['POST'])
def api_cart_discount():
    rt = get_runtime()
    cart = rt.cart_for(_active_store_id(rt)).set_discount(_json_body().get('discount'))
    return jsonify({'status': 'success', 'cart': cart})


@app.route('/api/cart/clear', methods=['POST'])
def api_cart_clear():
    rt = get_runtime()
    return jsonify({'status': 'success', 'cart': rt.cart_for(_active_store_id(rt)).clear()})


# ---------- checkout ----------
@app.route('/api/checkout', methods=['POST'])
def api_checkout():
    data = _json_body()
    rt = get_runtime()
    user = rt.auth.current_user()
    if not user:
        return jsonify({'status': 'error', 'message': 'Sign in before taking payment'}), 401
    payment_method = str(data.get('payment_method') or '').strip()
    if not payment_method:
        return jsonify({'status': 'error', 'message': 'Payment method is required'}), 400
    customer = data.get('customer') if isinstance(data.get('customer'), dict) else {'skipped': True}
    result = rt.checkout.process_payment(
        rt.cart_for(user['store_id']),
        user,
        payment_method,
        discount=data.get('discount'),
        counter_id=data.get('counter_id'),
        customer_info=customer,
        is_online=rt.network.is_online,
    )
    if result['status'] != 'success':
        return jsonify(result), 400 if result.get('message') == 'Cart is empty' else 500
    return jsonify(result)


# ---------- queue inspection ----------
@app.route('/api/queue')
def api_queue():
    rt = get_runtime()
    pending_only = request.args.get('pending', '1') != '0'
    items = rt.queue.get_queue(only_unsynced=pending_only)
    for item in items:
        item['terminal'] = rt.engine.is_terminal(item)
        due = rt.engine.next_attempt_at(item)
        item['next_attempt_at'] = due.isoformat() if due else None
    return jsonify({'status': 'success', 'items': items})


@app.route('/api/queue/sync-now', methods=['POST'])
def api_queue_sync_now():
    result = get_runtime().engine.sync_now()
    return jsonify({'status': 'success', 'result': result})


@app.route('/api/queue/<item_id>', methods=['DELETE'])
def api_queue_delete(item_id: str):
    if not get_runtime().engine.delete_item(item_id):
        return jsonify({'status': 'error', 'message': 'Queue item not found'}), 404
    app.logger.info('Queue item %s deleted by operator', item_id)
    return jsonify({'status': 'success'})


@app.route('/api/queue/<item_id>/resync', methods=['POST'])
def api_queue_resync(item_id: str):
    rt = get_runtime()
    item = rt.engine.resync_item(item_id)
    if not item:
        return jsonify({'status': 'error', 'message': 'Queue item not found'}), 404
    app.logger.info('Queue item %s reset for retry by operator', item_id)
    return jsonify({'status': 'success', 'item': item, 'result': rt.engine.sync_now()})
