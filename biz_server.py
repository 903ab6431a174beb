"""
Thin JSON surface over the sale saga, the payment ledger and the outbox.

Every response is {'status': 'success', ...} or
{'status': 'error', 'message': ..., 'details': ...}.
"""
import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

import biz_config
import stock_service
from biz_errors import NotFound, RemoteWriteFailure, SaleError, ValidationError
from local_store import KeyValueStore
from outbox_service import PendingOperationQueue
from payment_service import PaymentLedger, payment_summary
from sales_service import SaleSaga, get_sale, mark_delivered
from store_client import RemoteError, make_store

app = Flask(__name__)
app.logger.setLevel(biz_config.LOG_LEVEL)
logging.getLogger('werkzeug').setLevel(biz_config.LOG_LEVEL)

_SERVICES: Dict[str, Any] = {}
_SERVICES_LOCK = threading.Lock()


def configure(store=None, kv=None) -> Dict[str, Any]:
    """(Re)build the services; tests pass their own store and key-value store."""
    with _SERVICES_LOCK:
        store = store or make_store()
        kv = kv or KeyValueStore(db_path=biz_config.DB_PATH)
        queue = PendingOperationQueue(kv, store)
        _SERVICES.clear()
        _SERVICES.update({
            'store': store,
            'kv': kv,
            'queue': queue,
            'saga': SaleSaga(store),
            'ledger': PaymentLedger(store, queue=queue),
        })
        return _SERVICES


def services() -> Dict[str, Any]:
    if not _SERVICES:
        configure()
    return _SERVICES


def _error_response(exc: SaleError):
    if isinstance(exc, ValidationError):
        code = 400
    elif isinstance(exc, NotFound):
        code = 404
    elif isinstance(exc, RemoteWriteFailure):
        code = 502
    else:
        # StockUnavailable and failed sale commits
        code = 409
    return jsonify({'status': 'error', 'message': exc.message, 'details': exc.details}), code


def _json_body() -> Optional[Dict[str, Any]]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else None


@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.route('/api/sales', methods=['POST'])
def api_create_sale():
    payload = _json_body()
    if payload is None:
        return jsonify({'status': 'error', 'message': 'Invalid JSON payload'}), 400
    svc = services()
    try:
        sale_id = svc['saga'].create(payload)
        sale = get_sale(svc['store'], sale_id)
    except SaleError as exc:
        return _error_response(exc)
    return jsonify({'status': 'success', 'sale_id': sale_id, 'sale': sale}), 201


@app.route('/api/sales/<sale_id>')
def api_get_sale(sale_id):
    svc = services()
    try:
        sale = get_sale(svc['store'], sale_id)
        items = svc['store'].read('sale_items', {'sale_id': sale_id})
    except SaleError as exc:
        return _error_response(exc)
    except RemoteError:
        app.logger.exception('Failed to load items for sale %s', sale_id)
        return jsonify({'status': 'error', 'message': 'Unable to load sale items'}), 502
    return jsonify({'status': 'success', 'sale': sale, 'items': items})


@app.route('/api/sales/<sale_id>/payments', methods=['POST'])
def api_apply_payment(sale_id):
    payload = _json_body()
    if payload is None or payload.get('amount') is None:
        return jsonify({'status': 'error', 'message': 'amount is required'}), 400
    try:
        outcome = services()['ledger'].apply(sale_id, payload['amount'], payload.get('payment_method'))
    except SaleError as exc:
        return _error_response(exc)
    return jsonify({'status': 'success', 'payment': outcome})


@app.route('/api/sales/<sale_id>/deliver', methods=['POST'])
def api_mark_delivered(sale_id):
    try:
        sale = mark_delivered(services()['store'], sale_id)
    except SaleError as exc:
        return _error_response(exc)
    return jsonify({'status': 'success', 'sale': sale})


@app.route('/api/sales/<sale_id>/verify', methods=['POST'])
def api_verify_payment(sale_id):
    try:
        result = services()['ledger'].verify(sale_id)
    except SaleError as exc:
        return _error_response(exc)
    code = 202 if result['queued'] else 200
    return jsonify({'status': 'success', 'verification': result}), code


@app.route('/api/stock/<pool>')
def api_stock(pool):
    try:
        snapshot = stock_service.read_snapshot(services()['store'], pool)
    except ValidationError as exc:
        return _error_response(exc)
    except RemoteError:
        app.logger.exception('Stock snapshot for %s failed', pool)
        return jsonify({'status': 'error', 'message': f'Unable to load {pool} stock'}), 502
    return jsonify({'status': 'success', 'pool': pool, 'stock': snapshot})


@app.route('/api/payments/summary')
def api_payment_summary():
    try:
        summary = payment_summary(services()['store'])
    except SaleError as exc:
        return _error_response(exc)
    return jsonify({'status': 'success', 'summary': summary})


@app.route('/api/outbox')
def api_outbox():
    return jsonify({'status': 'success', 'pending': services()['queue'].pending()})


@app.route('/api/outbox/drain', methods=['POST'])
def api_outbox_drain():
    report = services()['queue'].drain()
    return jsonify({
        'status': 'success',
        'succeeded': [e['key'] for e in report['succeeded']],
        'failed': [{'key': e['key'], 'error': e['error']} for e in report['failed']],
    })
