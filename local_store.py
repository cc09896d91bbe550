"""
Durable key-value storage used by the caches, the sale queue and the cart.

Values are raw bytes addressed by (namespace, key). The namespace is a
store id for store-scoped data or ``device`` for data shared by every
store on this till. Two backends are provided:

  FileStore    one directory per namespace, one file per key, replaced
               atomically on every write
  SqliteStore  a single ``kv`` table in a local SQLite file

``open_store`` picks the configured backend once at startup and wraps it
in a FallbackStore so that a failing backend degrades to the other one
instead of surfacing errors to the cashier.
"""
import datetime as dt
import json
import logging
import os
import re
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional, Set, Tuple

log = logging.getLogger('pos.store')

DEVICE_NAMESPACE = 'device'
_SAFE_NAME = re.compile(r'[^A-Za-z0-9_.-]')


class StoreError(Exception):
    """Raised when a backend cannot perform a read, write or remove."""


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace('+00:00', 'Z')


def _safe_name(value: str) -> str:
    clean = _SAFE_NAME.sub('_', str(value or '').strip())
    return clean or '_'


class FileStore:
    """Directory + file per key. Writes go to a temp file that replaces the target."""

    name = 'file'

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, namespace: str, key: str) -> Path:
        return self.root / _safe_name(namespace) / f"{_safe_name(key)}.json"

    def read(self, namespace: str, key: str) -> Optional[bytes]:
        path = self._path(namespace, key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StoreError(f"read {path}: {exc}") from exc

    def write(self, namespace: str, key: str, data: bytes) -> None:
        path = self._path(namespace, key)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix='.tmp', dir=str(path.parent))
            with os.fdopen(fd, 'wb') as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise StoreError(f"write {path}: {exc}") from exc
        finally:
            if tmp_name:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    log.debug('Failed to remove temp file %s', tmp_name)

    def remove(self, namespace: str, key: str) -> None:
        path = self._path(namespace, key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StoreError(f"remove {path}: {exc}") from exc

    def namespaces(self) -> List[str]:
        try:
            return sorted(p.name for p in self.root.iterdir() if p.is_dir())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise StoreError(f"list {self.root}: {exc}") from exc


class SqliteStore:
    """Key-value rows in SQLite; each write is a single committed statement."""

    name = 'sqlite'

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._initialized = False
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        try:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            with self._lock:
                if not self._initialized:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS kv (
                            namespace   TEXT NOT NULL,
                            key         TEXT NOT NULL,
                            value       BLOB NOT NULL,
                            updated_utc TEXT NOT NULL,
                            PRIMARY KEY (namespace, key)
                        )
                    """)
                    conn.commit()
                    self._initialized = True
            return conn
        except (OSError, sqlite3.Error) as exc:
            raise StoreError(f"open {self.db_path}: {exc}") from exc

    def _run(self, sql: str, params: Tuple[Any, ...], fetch: bool = False):
        conn = self._connect()
        try:
            cur = conn.execute(sql, params)
            rows = cur.fetchall() if fetch else None
            conn.commit()
            return rows
        except sqlite3.Error as exc:
            raise StoreError(f"sqlite {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def read(self, namespace: str, key: str) -> Optional[bytes]:
        rows = self._run("SELECT value FROM kv WHERE namespace=? AND key=?", (namespace, key), fetch=True)
        if not rows:
            return None
        value = rows[0]['value']
        return value.encode('utf-8') if isinstance(value, str) else bytes(value)

    def write(self, namespace: str, key: str, data: bytes) -> None:
        self._run(
            """
            INSERT INTO kv(namespace, key, value, updated_utc) VALUES (?,?,?,?)
            ON CONFLICT(namespace, key) DO UPDATE SET value=excluded.value, updated_utc=excluded.updated_utc
            """,
            (namespace, key, sqlite3.Binary(data), iso_now()),
        )

    def remove(self, namespace: str, key: str) -> None:
        self._run("DELETE FROM kv WHERE namespace=? AND key=?", (namespace, key))

    def namespaces(self) -> List[str]:
        rows = self._run("SELECT DISTINCT namespace FROM kv ORDER BY namespace", (), fetch=True)
        return [row['namespace'] for row in rows or []]


class FallbackStore:
    """
    Route every call to ``primary`` and degrade to ``secondary`` when it fails.

    The secondary only ever holds a key while it is newer than the primary's
    copy: a failed primary write lands there, and a later successful primary
    write clears it (or overwrites it when clearing fails). Reads therefore
    check the secondary first, which also holds across restarts.
    """

    def __init__(self, primary, secondary=None):
        self.primary = primary
        self.secondary = secondary

    @property
    def name(self) -> str:
        if self.secondary is None:
            return self.primary.name
        return f"{self.primary.name}+{self.secondary.name}"

    def read(self, namespace: str, key: str) -> Optional[bytes]:
        if self.secondary is None:
            return self.primary.read(namespace, key)
        secondary_error = None
        try:
            data = self.secondary.read(namespace, key)
            if data is not None:
                return data
        except StoreError as exc:
            secondary_error = exc
            log.warning('Fallback store read failed for %s/%s: %s', namespace, key, exc)
        try:
            return self.primary.read(namespace, key)
        except StoreError as exc:
            if secondary_error is not None:
                raise
            log.warning('Primary store read failed for %s/%s and %s has no copy: %s',
                        namespace, key, self.secondary.name, exc)
            return None

    def write(self, namespace: str, key: str, data: bytes) -> None:
        try:
            self.primary.write(namespace, key, data)
        except StoreError as exc:
            if self.secondary is None:
                raise
            log.warning('Primary store write failed for %s/%s, writing to %s: %s',
                        namespace, key, self.secondary.name, exc)
            self.secondary.write(namespace, key, data)
            try:
                self.primary.remove(namespace, key)
            except StoreError:
                log.debug('Could not clear stale primary copy of %s/%s', namespace, key)
            return
        if self.secondary is None:
            return
        try:
            self.secondary.remove(namespace, key)
        except StoreError as exc:
            # reads prefer the secondary, so a copy left there must not be stale
            log.warning('Could not clear fallback copy of %s/%s (%s); refreshing it', namespace, key, exc)
            self.secondary.write(namespace, key, data)

    def remove(self, namespace: str, key: str) -> None:
        errors = []
        for backend in (self.primary, self.secondary):
            if backend is None:
                continue
            try:
                backend.remove(namespace, key)
            except StoreError as exc:
                errors.append(exc)
        backends = 1 if self.secondary is None else 2
        if len(errors) == backends:
            raise StoreError(f"remove {namespace}/{key}: {errors[0]}")

    def namespaces(self) -> List[str]:
        found: Set[str] = set()
        for backend in (self.primary, self.secondary):
            if backend is None:
                continue
            try:
                found.update(backend.namespaces())
            except StoreError as exc:
                log.warning('Listing namespaces on %s failed: %s', backend.name, exc)
        return sorted(found)


def open_store(settings) -> FallbackStore:
    """Build the configured backend with the other one as fallback."""
    file_store = FileStore(settings.data_dir)
    sqlite_store = SqliteStore(os.path.join(settings.data_dir, 'pos_store.db'))
    if settings.storage_backend == 'sqlite':
        store = FallbackStore(sqlite_store, file_store)
    else:
        store = FallbackStore(file_store, sqlite_store)
    log.info('Local store ready (backend=%s, dir=%s)', store.name, settings.data_dir)
    return store


def load_json(store, namespace: str, key: str, default: Any = None) -> Any:
    """Decode a stored JSON value; unreadable or corrupt values count as absent."""
    try:
        raw = store.read(namespace, key)
    except StoreError as exc:
        log.warning('Local store read failed for %s/%s: %s', namespace, key, exc)
        return default
    if raw is None:
        return default
    try:
        return json.loads(raw.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as exc:
        log.warning('Discarding unreadable value at %s/%s: %s', namespace, key, exc)
        return default


def dump_json(store, namespace: str, key: str, value: Any) -> bool:
    """Encode and write a JSON value. Returns False when no backend accepted it."""
    try:
        data = json.dumps(value, ensure_ascii=False, separators=(',', ':')).encode('utf-8')
    except (TypeError, ValueError) as exc:
        log.error('Cannot serialise value for %s/%s: %s', namespace, key, exc)
        return False
    try:
        store.write(namespace, key, data)
        return True
    except StoreError as exc:
        log.warning('Local store write failed for %s/%s: %s', namespace, key, exc)
        return False


def remove_key(store, namespace: str, key: str) -> bool:
    try:
        store.remove(namespace, key)
        return True
    except StoreError as exc:
        log.warning('Local store remove failed for %s/%s: %s', namespace, key, exc)
        return False
