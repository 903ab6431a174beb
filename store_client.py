"""
Remote tabular store clients.

RestStore talks to a PostgREST-compatible endpoint (table routes plus /rpc).
MemoryStore keeps the same tables in-process and is used in mock mode and by
the tests. Both expose the same small contract:

    read(table, filters, columns, order, limit) -> rows
    count(table, filters) -> int
    insert(table, row) -> row
    update(table, filters, patch) -> rows actually changed
    delete(table, filters) -> number of rows removed
    rpc(name, params) -> result
    ping() -> bool

Filters are {column: value} for equality or {column: (op, value)} with op in
eq/neq/gt/gte/lt/lte; {column: [(op, value), ...]} applies several.
"""
from __future__ import annotations

import copy
import datetime as dt
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import requests

import biz_config

logger = logging.getLogger(__name__)

FILTER_OPS = ('eq', 'neq', 'gt', 'gte', 'lt', 'lte')

# HTTP statuses worth retrying later
_TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}

_NETWORK_MARKERS = (
    'network request failed',
    'failed to fetch',
    'network error',
    'connection failed',
    'connection refused',
    'connection reset',
    'connection aborted',
    'timed out',
    'timeout',
    'offline',
    'cannot connect',
    'econnrefused',
    'econnreset',
    'etimedout',
    'no internet',
    'unable to resolve host',
    'name or service not known',
)


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


class RemoteError(Exception):
    """A remote store call failed. `detail` holds the raw body for logs only."""
    def __init__(self, message: str, status: Optional[int] = None, transient: bool = False,
                 detail: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.transient = transient
        self.detail = detail


class RemoteTimeout(RemoteError):
    """The local wall-clock timeout fired; the write may still land remotely."""
    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message, status=None, transient=True, detail=detail)


def is_network_error(exc: BaseException) -> bool:
    """True when the failure looks like connectivity rather than a rejected request."""
    if exc is None:
        return False
    if isinstance(exc, RemoteError):
        if exc.transient:
            return True
        if exc.status is not None:
            return False
    if isinstance(exc, (requests.ConnectionError, requests.Timeout, TimeoutError, ConnectionError)):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _NETWORK_MARKERS)


def _is_condition(value: Any) -> bool:
    return isinstance(value, tuple) and len(value) == 2 and value[0] in FILTER_OPS


def _conditions(filters: Optional[Dict[str, Any]]) -> Iterable[Tuple[str, str, Any]]:
    """Yield (column, op, value); a list value holds several (op, value) pairs for one column."""
    for column, raw in (filters or {}).items():
        if isinstance(raw, list) and raw and all(_is_condition(c) for c in raw):
            for op, value in raw:
                yield column, op, value
        elif _is_condition(raw):
            yield column, raw[0], raw[1]
        else:
            yield column, 'eq', raw


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    return str(value)


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get('message') or j.get('hint') or j.get('details') or resp.text
    except (ValueError, AttributeError):
        return resp.text


class RestStore:
    """PostgREST client. `base_url` is the REST root, e.g. https://xyz.supabase.co/rest/v1"""

    def __init__(self, base_url: str, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else biz_config.REMOTE_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        }
        if self.api_key:
            headers['apikey'] = self.api_key
            headers['Authorization'] = f'Bearer {self.api_key}'
        if prefer:
            headers['Prefer'] = prefer
        return headers

    @staticmethod
    def _filter_params(filters: Optional[Dict[str, Any]]) -> List[Tuple[str, str]]:
        params: List[Tuple[str, str]] = []
        for column, op, value in _conditions(filters):
            if value is None:
                params.append((column, 'is.null' if op == 'eq' else 'not.is.null'))
            else:
                params.append((column, f"{op}.{_format_value(value)}"))
        return params

    def _request(self, method: str, path: str, params: Optional[List[Tuple[str, str]]] = None,
                 json: Any = None, prefer: Optional[str] = None,
                 extra_headers: Optional[Dict[str, str]] = None) -> requests.Response:
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = self._headers(prefer)
        if extra_headers:
            headers.update(extra_headers)
        logger.debug("%s %s params=%s", method, url, params)
        try:
            resp = self.session.request(method, url, params=params, json=json,
                                        headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteTimeout(f"Remote store timed out after {self.timeout}s: {method} {path}",
                                detail=str(exc)) from exc
        except requests.RequestException as exc:
            raise RemoteError(f"Remote store unreachable: {method} {path}", transient=True,
                              detail=str(exc)) from exc
        if resp.status_code >= 400:
            detail = _error_message_from_response(resp)
            raise RemoteError(
                f"Remote store rejected {method} {path} (HTTP {resp.status_code})",
                status=resp.status_code,
                transient=resp.status_code in _TRANSIENT_STATUSES,
                detail=detail,
            )
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError("Remote store returned invalid JSON", status=resp.status_code,
                              detail=resp.text[:400]) from exc

    def read(self, table: str, filters: Optional[Dict[str, Any]] = None, columns: str = '*',
             order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params = [('select', columns)] + self._filter_params(filters)
        if order:
            params.append(('order', order))
        if limit is not None:
            params.append(('limit', str(int(limit))))
        return self._json(self._request('GET', table, params=params)) or []

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        params = [('select', 'id')] + self._filter_params(filters)
        resp = self._request('HEAD', table, params=params, prefer='count=exact')
        content_range = resp.headers.get('Content-Range') or ''
        total = content_range.rsplit('/', 1)[-1]
        try:
            return int(total)
        except ValueError:
            raise RemoteError("Remote store did not report a row count",
                              status=resp.status_code, detail=content_range)

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        body = self._json(self._request('POST', table, json=row, prefer='return=representation'))
        if isinstance(body, list):
            if not body:
                raise RemoteError(f"Insert into {table} returned no row")
            return body[0]
        return body or {}

    def update(self, table: str, filters: Dict[str, Any], patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("update requires at least one filter")
        resp = self._request('PATCH', table, params=self._filter_params(filters), json=patch,
                             prefer='return=representation')
        return self._json(resp) or []

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise ValueError("delete requires at least one filter")
        resp = self._request('DELETE', table, params=self._filter_params(filters),
                             prefer='return=representation')
        return len(self._json(resp) or [])

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self._json(self._request('POST', f'rpc/{name}', json=params or {}))

    def ping(self) -> bool:
        try:
            self._request('GET', 'sales', params=[('select', 'id'), ('limit', '1')])
            return True
        except RemoteError as exc:
            logger.info("Remote store ping failed: %s", exc)
            return False

    def close(self):
        self.session.close()


def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    for column, op, expected in _conditions(filters):
        actual = row.get(column)
        if op == 'eq':
            ok = actual == expected
        elif op == 'neq':
            ok = actual != expected
        elif actual is None or expected is None:
            ok = False
        elif op == 'gt':
            ok = actual > expected
        elif op == 'gte':
            ok = actual >= expected
        elif op == 'lt':
            ok = actual < expected
        else:
            ok = actual <= expected
        if not ok:
            return False
    return True


class MemoryStore:
    """In-process tables with the RestStore contract."""

    # unique columns besides id, mirroring the remote schema
    UNIQUE = {
        'sales': ('invoice_number',),
        'factory_stock': ('product_id',),
        'godown_stock': ('product_id',),
    }

    def __init__(self, tables: Optional[Dict[str, Iterable[Dict[str, Any]]]] = None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.functions: Dict[str, Callable[..., Any]] = {
            'update_sales_payment_status': self._update_sales_payment_status,
        }
        self._lock = threading.RLock()
        for name, rows in (tables or {}).items():
            self.seed(name, rows)

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]):
        for row in rows:
            self.insert(table, row)

    def _table(self, table: str) -> List[Dict[str, Any]]:
        return self.tables.setdefault(table, [])

    def read(self, table: str, filters: Optional[Dict[str, Any]] = None, columns: str = '*',
             order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._table(table) if _matches(r, filters)]
        if order:
            column, _, direction = order.partition('.')
            rows.sort(key=lambda r: (r.get(column) is None, r.get(column)),
                      reverse=direction.startswith('desc'))
        if limit is not None:
            rows = rows[:int(limit)]
        if columns and columns != '*':
            wanted = [c.strip() for c in columns.split(',') if c.strip()]
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return rows

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for r in self._table(table) if _matches(r, filters))

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        record = copy.deepcopy(row)
        record.setdefault('id', str(uuid.uuid4()))
        record.setdefault('created_at', iso_now())
        with self._lock:
            rows = self._table(table)
            for column in ('id',) + tuple(self.UNIQUE.get(table, ())):
                value = record.get(column)
                if value is not None and any(r.get(column) == value for r in rows):
                    raise RemoteError(f"duplicate key value violates unique constraint on {table}.{column}",
                                      status=409)
            rows.append(record)
        return copy.deepcopy(record)

    def update(self, table: str, filters: Dict[str, Any], patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("update requires at least one filter")
        changed = []
        with self._lock:
            for r in self._table(table):
                if _matches(r, filters):
                    r.update(copy.deepcopy(patch))
                    changed.append(copy.deepcopy(r))
        return changed

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise ValueError("delete requires at least one filter")
        with self._lock:
            rows = self._table(table)
            keep = [r for r in rows if not _matches(r, filters)]
            removed = len(rows) - len(keep)
            self.tables[table] = keep
        return removed

    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        fn = self.functions.get(name)
        if fn is None:
            raise RemoteError(f"Could not find the function {name}", status=404)
        return fn(**(params or {}))

    def ping(self) -> bool:
        return True

    def close(self):
        pass

    def _update_sales_payment_status(self, p_sale_id: str, p_status: str, p_verified: bool):
        with self._lock:
            for r in self._table('sales'):
                if r.get('id') != p_sale_id:
                    continue
                # replays leave the row exactly as the first call did
                if r.get('status') != p_status or bool(r.get('verified')) != bool(p_verified):
                    r['payment_date'] = iso_now()
                r['status'] = p_status
                r['verified'] = bool(p_verified)
        return None


def make_store():
    """Store selected by configuration: RestStore when BIZ_STORE_URL is set, else MemoryStore."""
    if biz_config.STORE_URL:
        return RestStore(biz_config.STORE_URL, biz_config.STORE_KEY, timeout=biz_config.REMOTE_TIMEOUT)
    logger.warning("BIZ_STORE_URL not set; using in-process MemoryStore (mock mode)")
    return MemoryStore()
