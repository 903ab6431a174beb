"""
Runtime settings for the sales/payments core.

Values come from the environment (a local .env is loaded first). Blank values
fall back to the defaults below.
"""
import logging
import os
from datetime import date, datetime
from typing import Optional, Union

from dotenv import load_dotenv

load_dotenv()


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name, str(default)))
    except (TypeError, ValueError):
        return default


# Remote tabular store (PostgREST compatible). Unset -> in-process MemoryStore.
STORE_URL = _env_string('BIZ_STORE_URL')
STORE_KEY = _env_string('BIZ_STORE_KEY')
REMOTE_TIMEOUT = _env_float('BIZ_REMOTE_TIMEOUT', 5.0)

# Local durable key-value store
DB_PATH = _env_string('BIZ_DB_PATH', 'biz_local.db')

INVOICE_TAG = _env_string('BIZ_INVOICE_TAG')
RESTORE_STOCK = _env_string('BIZ_RESTORE_STOCK', '1') == '1'
OVERDUE_HOURS = _env_float('BIZ_OVERDUE_HOURS', 48.0)
SYNC_INTERVAL = _env_float('SYNC_INTERVAL', 10.0)

LOG_LEVEL_NAME = (_env_string('BIZ_LOG_LEVEL', 'INFO') or 'INFO').upper()
LOG_LEVEL = getattr(logging, LOG_LEVEL_NAME, logging.INFO)


def fiscal_year_tag(when: Union[date, datetime, None] = None) -> str:
    """April-March fiscal year tag: 2025-04..2026-03 -> '2526'."""
    when = when or datetime.now()
    start = when.year if when.month >= 4 else when.year - 1
    return f"{start % 100:02d}{(start + 1) % 100:02d}"


def invoice_tag(when: Union[date, datetime, None] = None) -> str:
    return INVOICE_TAG or fiscal_year_tag(when)
