"""
Durable local outbox for remote calls that must eventually land.

Entries live as one JSON list in the local key-value store, so they survive
restarts. Each entry is keyed by "<sale_id>:<intent>": queueing the same
intent for the same sale again replaces the earlier params instead of adding
a second copy. Handlers must be idempotent; drain() may replay an entry any
number of times.
"""
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from biz_errors import SaleError
from store_client import RemoteError, iso_now

logger = logging.getLogger(__name__)

PENDING_KEY = 'pending_operations'
INTENT_VERIFY_PAYMENT = 'verify_payment'
VERIFY_RPC = 'update_sales_payment_status'


def dedupe_key(sale_id: str, intent: str) -> str:
    return f"{sale_id}:{intent}"


def replay_verification(store, entry: Dict[str, Any]):
    params = entry.get('params') or {}
    store.rpc(VERIFY_RPC, {
        'p_sale_id': entry['sale_id'],
        'p_status': params.get('status'),
        'p_verified': bool(params.get('verified')),
    })


class PendingOperationQueue:
    def __init__(self, kv, store, on_refresh: Optional[Callable[[], None]] = None,
                 key: str = PENDING_KEY):
        self.kv = kv
        self.store = store
        self.on_refresh = on_refresh
        self.key = key
        self.handlers: Dict[str, Callable[[Any, Dict[str, Any]], Any]] = {
            INTENT_VERIFY_PAYMENT: replay_verification,
        }
        self._lock = threading.Lock()

    def register(self, intent: str, handler: Callable[[Any, Dict[str, Any]], Any]):
        self.handlers[intent] = handler

    def _load(self) -> List[Dict[str, Any]]:
        raw = self.kv.get(self.key)
        if not raw:
            return []
        try:
            entries = json.loads(raw)
        except ValueError:
            logger.error("Discarding unreadable outbox value under %r: %s", self.key, raw[:400])
            return []
        if not isinstance(entries, list):
            logger.error("Outbox value under %r is not a list; ignoring it", self.key)
            return []
        return [e for e in entries if isinstance(e, dict) and e.get('key')]

    def _save(self, entries: List[Dict[str, Any]]):
        if entries:
            self.kv.set(self.key, json.dumps(entries, separators=(",", ":")))
        else:
            self.kv.remove(self.key)

    def pending(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._load()

    def enqueue(self, sale_id: str, intent: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        key = dedupe_key(sale_id, intent)
        now = iso_now()
        with self._lock, self.kv.transaction():
            entries = self._load()
            for entry in entries:
                if entry['key'] == key:
                    entry['params'] = dict(params or {})
                    entry['updated_at'] = now
                    entry['revision'] = int(entry.get('revision') or 0) + 1
                    break
            else:
                entry = {
                    'key': key,
                    'sale_id': sale_id,
                    'intent': intent,
                    'params': dict(params or {}),
                    'created_at': now,
                    'updated_at': now,
                    'revision': 0,
                    'attempts': 0,
                    'last_error': None,
                }
                entries.append(entry)
            self._save(entries)
        logger.warning("Queued %s for sale %s for retry", intent, sale_id)
        return entry

    def enqueue_verification(self, sale_id: str, status: str, verified: bool = True) -> Dict[str, Any]:
        return self.enqueue(sale_id, INTENT_VERIFY_PAYMENT, {'status': status, 'verified': bool(verified)})

    def drain(self) -> Dict[str, List[Dict[str, Any]]]:
        """Replay every entry once. Returns {'succeeded': [...], 'failed': [...]}."""
        entries = self.pending()
        if not entries:
            return {'succeeded': [], 'failed': []}
        logger.info("Retrying %d pending operation(s)", len(entries))
        succeeded, failed = [], []
        for entry in entries:
            handler = self.handlers.get(entry.get('intent'))
            if handler is None:
                failed.append({**entry, 'error': f"No handler for intent {entry.get('intent')!r}"})
                continue
            try:
                handler(self.store, entry)
            except (RemoteError, SaleError) as exc:
                logger.warning("Retry of %s failed: %s", entry['key'], exc)
                failed.append({**entry, 'error': str(exc)})
                continue
            logger.info("Replayed %s", entry['key'])
            succeeded.append(entry)

        done = {e['key']: e.get('revision') for e in succeeded}
        errors = {e['key']: e['error'] for e in failed}
        with self._lock, self.kv.transaction():
            # entries queued or re-queued while we were replaying stay put
            remaining = []
            for entry in self._load():
                if entry['key'] in done and entry.get('revision') == done[entry['key']]:
                    continue
                if entry['key'] in errors:
                    entry['attempts'] = int(entry.get('attempts') or 0) + 1
                    entry['last_error'] = errors[entry['key']]
                remaining.append(entry)
            self._save(remaining)

        if succeeded and self.on_refresh:
            self.on_refresh()
        return {'succeeded': succeeded, 'failed': failed}
