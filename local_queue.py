"""
Durable write-behind queue of pending remote writes.

The queue is one JSON array per device (not per store); each payload carries
its own ``store_id``. Items look like::

    {"id": "...", "type": "sale", "payload": {...}, "created_at": "...Z",
     "attempts": 0, "synced": false, "last_error": null, "terminal": false}

Only the sync engine changes ``attempts``/``synced``/``terminal``.
"""
import datetime as dt
import logging
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

from local_store import DEVICE_NAMESPACE, dump_json, load_json

log = logging.getLogger('pos.queue')

QUEUE_KEY = 'local_queue'
SALE = 'sale'
INVENTORY_ADJUSTMENT = 'inventory-adjustment'


class QueueWriteError(Exception):
    """The queue could not be written to any backend; the item is not durable."""


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_ts(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def parse_ts(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO-8601 timestamp (``Z`` or offset); naive values are taken as UTC."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _sort_key(item: Dict[str, Any]):
    parsed = parse_ts(item.get('created_at'))
    return parsed or dt.datetime.max.replace(tzinfo=dt.timezone.utc)


class LocalQueue:
    def __init__(self, store, clock: Optional[Callable[[], dt.datetime]] = None):
        self.store = store
        self.clock = clock or utc_now
        self._lock = threading.RLock()

    def _load(self) -> List[Dict[str, Any]]:
        raw = load_json(self.store, DEVICE_NAMESPACE, QUEUE_KEY, default=[])
        if not isinstance(raw, list):
            log.warning('Queue blob is not a list; treating as empty')
            return []
        return [item for item in raw if isinstance(item, dict) and item.get('id')]

    def _save(self, items: List[Dict[str, Any]]) -> bool:
        return dump_json(self.store, DEVICE_NAMESPACE, QUEUE_KEY, items)

    def enqueue(self, item_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append a new pending item and persist it before returning.

        A second enqueue of the same ``type`` + ``payload['id']`` refreshes the
        existing entry instead of adding a duplicate. Raises QueueWriteError when
        no storage backend accepted the write.
        """
        if not item_type:
            raise ValueError('Queue item type is required')
        payload = dict(payload or {})
        with self._lock:
            items = self._load()
            payload_id = payload.get('id')
            if payload_id is not None:
                for existing in items:
                    if existing.get('type') == item_type and (existing.get('payload') or {}).get('id') == payload_id:
                        existing['payload'] = payload
                        if not self._save(items):
                            raise QueueWriteError(f"could not persist {item_type} {payload_id}")
                        log.info('Refreshed queued %s %s (item %s)', item_type, payload_id, existing['id'])
                        return dict(existing)
            item = {
                'id': uuid.uuid4().hex,
                'type': item_type,
                'payload': payload,
                'created_at': format_ts(self.clock()),
                'attempts': 0,
                'synced': False,
                'last_error': None,
                'terminal': False,
            }
            items.append(item)
            if not self._save(items):
                raise QueueWriteError(f"could not persist {item_type} {payload_id or item['id']}")
        log.info('Queued %s %s (item %s, queue size %d)', item_type, payload_id or '-', item['id'], len(items))
        return dict(item)

    def get_queue(self, only_unsynced: bool = False) -> List[Dict[str, Any]]:
        """All items oldest first, or only those not yet confirmed synced."""
        with self._lock:
            items = self._load()
        if only_unsynced:
            items = [item for item in items if not item.get('synced')]
        return sorted(items, key=_sort_key)

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for item in self._load():
                if item.get('id') == item_id:
                    return item
        return None

    def update_queue_item(self, item_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Merge ``fields`` into the item. Returns the updated item, or None if missing/unsaved."""
        patch = {k: v for k, v in (fields or {}).items() if k not in ('id', 'created_at')}
        with self._lock:
            items = self._load()
            for item in items:
                if item.get('id') == item_id:
                    item.update(patch)
                    if not self._save(items):
                        log.warning('Queue update for %s was not persisted', item_id)
                        return None
                    return dict(item)
        log.debug('Queue item %s not found for update', item_id)
        return None

    def remove_queue_item(self, item_id: str) -> bool:
        with self._lock:
            items = self._load()
            remaining = [item for item in items if item.get('id') != item_id]
            if len(remaining) == len(items):
                return False
            if not self._save(remaining):
                log.warning('Queue removal of %s was not persisted', item_id)
                return False
        log.info('Removed queue item %s', item_id)
        return True

    def pending_count(self) -> int:
        return len(self.get_queue(only_unsynced=True))
