"""Document store contract and the in-memory backend.

Documents are JSON-compatible dicts addressed by ``"<collection>/<id>"``
keys. The contract mirrors what the session core needs from a managed
document database:

- point reads/writes by key (``get``, ``create``, ``set``, ``delete``)
- atomic partial updates over dotted field paths with array-union,
  array-remove, delete-field and server-timestamp sentinels (``update``)
- simple equality queries for resumption and drawing lookup (``query``)
- change subscription delivering the full snapshot to every subscriber,
  including the writer (``subscribe``)

Every write bumps the document's ``_rev`` counter so subscribers can drop
out-of-order deliveries, and same-path writes from different writers that
land within the configured race window are logged for audit.
"""
import copy
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tutorsync.core.config import settings
from tutorsync.core.logging import get_logger

logger = get_logger(__name__)

Snapshot = Dict[str, Any]
SnapshotCallback = Callable[[Optional[Snapshot]], None]
Filter = Tuple[str, str, Any]

REVISION_FIELD = "_rev"


class StoreError(Exception):
    """Raised by store backends when a read or write cannot be served."""


class DocumentNotFound(StoreError):
    def __init__(self, key: str):
        super().__init__(f"Document not found: {key}")
        self.key = key


# ----------------
# UPDATE SENTINELS
# ----------------

class ArrayUnion:
    """Append values not already present (set semantics)."""

    def __init__(self, *values: Any):
        self.values = list(values)


class ArrayRemove:
    """Remove every occurrence of the given values."""

    def __init__(self, *values: Any):
        self.values = list(values)


class _DeleteField:
    def __repr__(self):
        return "DELETE_FIELD"


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


DELETE_FIELD = _DeleteField()
SERVER_TIMESTAMP = _ServerTimestamp()


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def doc_key(collection: str, doc_id: str) -> str:
    return f"{collection}/{doc_id}"


def split_key(key: str) -> Tuple[str, str]:
    collection, _, doc_id = key.partition("/")
    if not collection or not doc_id:
        raise ValueError(f"Invalid document key: {key!r}")
    return collection, doc_id


def new_document_id() -> str:
    return uuid.uuid4().hex[:20]


def _resolve_value(value: Any, now: str) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve_value(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_value(v, now) for v in value]
    return value


def prepare_document(doc: Dict[str, Any], now: Optional[str] = None) -> Dict[str, Any]:
    """Resolve server timestamps in a full document before it is written."""
    return _resolve_value(copy.deepcopy(doc), now or utcnow_iso())


def apply_update(doc: Dict[str, Any], fields: Dict[str, Any], now: Optional[str] = None) -> Dict[str, Any]:
    """Return a copy of ``doc`` with ``fields`` applied at their dotted paths.

    Intermediate maps are created as needed; paths not named in ``fields``
    are left untouched.
    """
    now = now or utcnow_iso()
    out = copy.deepcopy(doc)

    for path, value in fields.items():
        parts = path.split(".")
        target = out
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        leaf = parts[-1]

        if value is DELETE_FIELD:
            target.pop(leaf, None)
        elif isinstance(value, ArrayUnion):
            current = target.get(leaf)
            current = list(current) if isinstance(current, list) else []
            for item in _resolve_value(value.values, now):
                if item not in current:
                    current.append(item)
            target[leaf] = current
        elif isinstance(value, ArrayRemove):
            current = target.get(leaf)
            current = list(current) if isinstance(current, list) else []
            removed = _resolve_value(value.values, now)
            target[leaf] = [item for item in current if item not in removed]
        else:
            target[leaf] = _resolve_value(copy.deepcopy(value), now)

    return out


def _lookup(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches(doc: Dict[str, Any], filters: Iterable[Filter]) -> bool:
    """Evaluate simple (field, op, value) filters against a document."""
    for field, op, expected in filters:
        actual = _lookup(doc, field)
        if op == "==":
            ok = actual == expected
        elif op == "!=":
            ok = actual != expected
        elif op == "in":
            ok = actual in expected
        elif op == "array_contains":
            ok = isinstance(actual, list) and expected in actual
        else:
            raise ValueError(f"Unsupported filter operator: {op}")
        if not ok:
            return False
    return True


def sort_documents(docs: List[Dict[str, Any]], order_by: Optional[Sequence[str]], descending: bool) -> List[Dict[str, Any]]:
    if not order_by:
        return docs

    def sort_key(doc):
        # None sorts first ascending, mirroring managed stores
        return tuple((_lookup(doc, f) is not None, _lookup(doc, f) or 0) for f in order_by)

    return sorted(docs, key=sort_key, reverse=descending)


class Subscription:
    """Handle returned by ``subscribe``; ``unsubscribe`` is idempotent."""

    def __init__(self, key: str, callback: SnapshotCallback, on_cancel: Callable[["Subscription"], None]):
        self.key = key
        self.callback = callback
        self._on_cancel = on_cancel
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._on_cancel(self)

    def deliver(self, snapshot: Optional[Snapshot]) -> None:
        if not self.active:
            return
        try:
            self.callback(copy.deepcopy(snapshot) if snapshot is not None else None)
        except Exception as e:
            # A failing listener must not break delivery to the others
            logger.error(f"Snapshot callback failed for {self.key}: {e}", exc_info=True)


class DocumentStore(ABC):
    """Abstract document store used by every session-core component."""

    def __init__(self, race_window_ms: Optional[int] = None):
        window = settings.same_path_race_window_ms if race_window_ms is None else race_window_ms
        self.race_window = window / 1000.0
        self._last_writes: Dict[Tuple[str, str], Tuple[Optional[str], float]] = {}
        self._audit_lock = threading.Lock()

    @abstractmethod
    def get(self, key: str) -> Optional[Snapshot]:
        """Return the document snapshot (with ``id``) or None."""

    @abstractmethod
    def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        """Create a new document and return its id."""

    @abstractmethod
    def set(self, key: str, doc: Dict[str, Any]) -> None:
        """Overwrite (or create) a full document."""

    @abstractmethod
    def update(self, key: str, fields: Dict[str, Any], writer: Optional[str] = None) -> Snapshot:
        """Atomically apply a partial update and return the new snapshot."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Physically remove a document."""

    @abstractmethod
    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        """Return matching document snapshots."""

    @abstractmethod
    def subscribe(self, key: str, callback: SnapshotCallback) -> Subscription:
        """Deliver the current snapshot now and on every later change."""

    def close(self) -> None:
        """Release backend resources."""

    def audit_paths(self, key: str, paths: Iterable[str], writer: Optional[str]) -> None:
        """Log same-path writes from different writers inside the race window."""
        if writer is None or self.race_window <= 0:
            return
        now = time.monotonic()
        with self._audit_lock:
            for path in paths:
                previous = self._last_writes.get((key, path))
                if previous and previous[0] != writer and now - previous[1] <= self.race_window:
                    logger.warning(
                        f"Concurrent same-path write on {key}:{path} by {writer} "
                        f"overrides {previous[0]} (last writer wins)",
                        extra={"field_path": path, "user_id": writer},
                    )
                self._last_writes[(key, path)] = (writer, now)


class MemoryDocumentStore(DocumentStore):
    """Process-local store; used for development, tests and single-node runs.

    Writes are serialised by a lock so partial updates are atomic per call.
    Subscribers are notified synchronously after the lock is released.
    """

    def __init__(self, race_window_ms: Optional[int] = None):
        super().__init__(race_window_ms)
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = threading.RLock()

    def _snapshot(self, key: str) -> Optional[Snapshot]:
        doc = self._docs.get(key)
        if doc is None:
            return None
        snap = copy.deepcopy(doc)
        snap["id"] = split_key(key)[1]
        return snap

    def _notify(self, key: str, snapshot: Optional[Snapshot]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(key, []))
        for sub in subscribers:
            sub.deliver(snapshot)

    def get(self, key: str) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshot(key)

    def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        key = doc_key(collection, doc_id)
        with self._lock:
            if key in self._docs:
                raise StoreError(f"Document already exists: {key}")
            body = prepare_document(doc)
            body.pop("id", None)
            body[REVISION_FIELD] = 1
            self._docs[key] = body
            snapshot = self._snapshot(key)
        self._notify(key, snapshot)
        return doc_id

    def set(self, key: str, doc: Dict[str, Any]) -> None:
        split_key(key)
        with self._lock:
            body = prepare_document(doc)
            body.pop("id", None)
            body[REVISION_FIELD] = self._docs.get(key, {}).get(REVISION_FIELD, 0) + 1
            self._docs[key] = body
            snapshot = self._snapshot(key)
        self._notify(key, snapshot)

    def update(self, key: str, fields: Dict[str, Any], writer: Optional[str] = None) -> Snapshot:
        with self._lock:
            current = self._docs.get(key)
            if current is None:
                raise DocumentNotFound(key)
            body = apply_update(current, fields)
            body[REVISION_FIELD] = current.get(REVISION_FIELD, 0) + 1
            self._docs[key] = body
            snapshot = self._snapshot(key)
        self.audit_paths(key, fields.keys(), writer)
        self._notify(key, snapshot)
        return snapshot

    def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._docs.pop(key, None) is not None
        if existed:
            self._notify(key, None)
        return existed

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        prefix = f"{collection}/"
        with self._lock:
            docs = [self._snapshot(k) for k in self._docs if k.startswith(prefix)]
        docs = [d for d in docs if matches(d, filters)]
        docs = sort_documents(docs, order_by, descending)
        return docs[:limit] if limit is not None else docs

    def subscribe(self, key: str, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(key, callback, self._unsubscribe)
        with self._lock:
            self._subscribers.setdefault(key, []).append(sub)
            snapshot = self._snapshot(key)
        sub.deliver(snapshot)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.key, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.key, None)

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return len(self._subscribers.get(key, []))


_store: Optional[DocumentStore] = None


def get_document_store() -> DocumentStore:
    """Return the process-wide store selected by ``STORE_BACKEND``.

    Falls back to the in-memory store when Redis is selected but
    unreachable, in the same way cached state degrades to memory.
    """
    global _store
    if _store is not None:
        return _store

    if settings.store_backend == "redis":
        from tutorsync.infrastructure.redis import RedisDocumentStore, get_redis_client

        client = get_redis_client()
        if client is not None:
            _store = RedisDocumentStore(client)
            return _store
        logger.warning("Redis unavailable, falling back to in-memory document store")

    _store = MemoryDocumentStore()
    logger.info("Using in-memory document store")
    return _store


def reset_document_store(store: Optional[DocumentStore] = None) -> None:
    """Replace the process-wide store (used by tests and the seed script)."""
    global _store
    if _store is not None and _store is not store:
        _store.close()
    _store = store
