import asyncio
import logging
from collections import defaultdict

from pymongo import UpdateOne


class WriteQueue:
    """Write-back buffer for derived fields (period scores).

    Callers get their freshly computed value immediately; the durable copy
    lands on the next flush. Several writes to the same document between
    flushes collapse into one `$set`, last writer wins.
    """

    def __init__(self, db, flush_interval=5):
        self.db = db
        self.flush_interval = flush_interval
        # (collection, filter_key) -> {'filter': ..., 'collection': ..., 'fields': {...}}
        self._pending = {}
        self._lock = asyncio.Lock()
        self._task = None

    def start(self):
        """Start the background flush loop"""
        if self._task is None:
            self._task = asyncio.create_task(self._flush_loop())
            logging.info(f"🚀 WriteQueue started (flush interval: {self.flush_interval}s)")

    async def stop(self):
        """Cancel the loop and flush whatever is still buffered"""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush()

    async def set_fields(self, collection, filter_doc, fields):
        """Buffer a `$set` for one document"""
        # We need a hashable key for the filter dict
        filter_key = str(sorted(filter_doc.items()))
        key = (collection, filter_key)

        async with self._lock:
            entry = self._pending.setdefault(
                key, {'collection': collection, 'filter': filter_doc, 'fields': {}}
            )
            entry['fields'].update(fields)

    def pending_count(self):
        return len(self._pending)

    async def _flush_loop(self):
        while True:
            try:
                await asyncio.sleep(self.flush_interval)
                await self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logging.error(f"⚠️ WriteQueue loop error: {e}")

    async def flush(self):
        async with self._lock:
            if not self._pending:
                return 0
            snapshot = list(self._pending.values())
            self._pending.clear()

        # Group operations by collection
        by_collection = defaultdict(list)
        for data in snapshot:
            op = UpdateOne(data['filter'], {'$set': data['fields']})
            by_collection[data['collection']].append(op)

        written = 0
        for coll_name, ops in by_collection.items():
            try:
                coll = self.db[coll_name]
                # ordered=False allows individual writes to succeed even if others fail
                await coll.bulk_write(ops, ordered=False)
                written += len(ops)
                logging.debug(f"✅ WriteQueue flushed {len(ops)} ops to {coll_name}")
            except Exception as e:
                logging.error(f"❌ WriteQueue flush error [{coll_name}]: {e}")
        return written
