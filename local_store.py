"""Local durable key-value store (SQLite) that survives restarts."""
import sqlite3
import threading
from contextlib import contextmanager
from typing import Optional

import biz_config
from store_client import iso_now


def connect(db_path: Optional[str] = None, timeout: float = 30) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or biz_config.DB_PATH, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    _ensure_kv_table(conn)
    return conn


def _ensure_kv_table(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS kv_store (
      key         TEXT PRIMARY KEY,
      value       TEXT NOT NULL,
      updated_utc TEXT NOT NULL
    )
    """)
    conn.commit()


class KeyValueStore:
    """get/set/remove of string values keyed by string.

    transaction() holds the SQLite write lock for a read-modify-write, so the
    web process and the sync worker can share one file.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None, db_path: Optional[str] = None):
        self.conn = conn or connect(db_path)
        self._lock = threading.RLock()
        self._in_txn = False

    def _commit(self):
        if not self._in_txn:
            self.conn.commit()

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._in_txn:
                yield self
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._in_txn = True
            try:
                yield self
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                self._in_txn = False

    def _write(self, sql: str, params: tuple):
        with self._lock:
            try:
                self.conn.execute(sql, params)
            except sqlite3.Error:
                # a failed statement must not leave an implicit transaction open
                if not self._in_txn:
                    self.conn.rollback()
                raise
            self._commit()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT value FROM kv_store WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set(self, key: str, value: str):
        self._write("""
            INSERT INTO kv_store (key, value, updated_utc) VALUES (?,?,?)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
        """, (key, value, iso_now()))

    def remove(self, key: str):
        self._write("DELETE FROM kv_store WHERE key=?", (key,))

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error:
            pass
