#!/usr/bin/env python3
"""
Outbox sync worker

Replays queued remote calls (payment verifications) whenever the remote
store answers a ping. Entries that fail stay queued with their attempt
count and last error.

Env vars:
  BIZ_DB_PATH      local SQLite file holding the outbox (default: biz_local.db)
  SYNC_INTERVAL    seconds between loops (default: 10)
  BIZ_STORE_URL    remote store; without it the worker has nothing to reach

Run:
  python sync_worker.py
"""
import logging
import time

import biz_config
from local_store import KeyValueStore
from outbox_service import PendingOperationQueue
from store_client import make_store

logger = logging.getLogger('sync')


def run_once(queue: PendingOperationQueue, store) -> int:
    """One sync pass. Returns how many entries were replayed."""
    if not queue.pending():
        return 0
    if not store.ping():
        logger.info('remote store unreachable; %d operation(s) stay queued', len(queue.pending()))
        return 0
    report = queue.drain()
    if report['succeeded']:
        logger.info('replayed %d queued operation(s)', len(report['succeeded']))
    for entry in report['failed']:
        logger.warning('still queued: %s (%s)', entry['key'], entry['error'])
    return len(report['succeeded'])


def main():
    logging.basicConfig(level=biz_config.LOG_LEVEL, format='[sync] %(asctime)s %(levelname)s %(message)s')
    if not biz_config.STORE_URL:
        logger.warning('BIZ_STORE_URL not set; replaying against the in-memory store')
    store = make_store()
    kv = KeyValueStore(db_path=biz_config.DB_PATH)
    queue = PendingOperationQueue(kv, store)
    logger.info('starting worker, interval=%ss, db=%s', biz_config.SYNC_INTERVAL, biz_config.DB_PATH)
    try:
        while True:
            run_once(queue, store)
            time.sleep(biz_config.SYNC_INTERVAL)
    except KeyboardInterrupt:
        logger.info('exiting on Ctrl+C')
    finally:
        kv.close()
        store.close()


if __name__ == '__main__':
    main()
