"""Redis-backed document store.

Documents are stored as JSON strings under ``<prefix>doc:<collection>/<id>``
with a per-collection id set for queries. Partial updates run as optimistic
WATCH/MULTI transactions so concurrent writers to disjoint field paths never
lose each other's changes; each committed write publishes the full new
snapshot on the document's channel, which a pub/sub listener thread fans
out to local subscribers.

For Cloud Run with Memorystore:
- Set REDIS_HOST to the Memorystore instance IP
- Set REDIS_PASSWORD if authentication is enabled
- Ensure VPC connector is configured for Cloud Run
"""
import json
import threading
from typing import Any, Dict, List, Optional, Sequence

import redis

from tutorsync.core.config import settings
from tutorsync.core.logging import get_logger, LogTimer
from tutorsync.infrastructure.store import (
    REVISION_FIELD,
    DocumentNotFound,
    DocumentStore,
    Filter,
    Snapshot,
    SnapshotCallback,
    StoreError,
    Subscription,
    apply_update,
    doc_key,
    matches,
    new_document_id,
    prepare_document,
    sort_documents,
    split_key,
)

logger = get_logger(__name__)

# Redis connection pool (lazy initialization)
_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
) -> Optional[redis.Redis]:
    """Get or create Redis client with connection pooling.

    Uses settings from environment variables if not explicitly provided.
    Returns None if Redis is not available (graceful fallback).
    """
    global _redis_pool, _redis_client

    host = host or settings.redis_host
    port = port or settings.redis_port
    db = db if db is not None else settings.redis_db
    password = password or settings.redis_password

    if _redis_client is None:
        logger.info(f"Initializing Redis connection pool: {host}:{port}")

        try:
            _redis_pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=5,
                socket_timeout=5,
            )

            _redis_client = redis.Redis(connection_pool=_redis_pool)

            _redis_client.ping()
            logger.info("Redis connection established successfully")

        except redis.ConnectionError as e:
            logger.error(f"Failed to connect to Redis: {e}", exc_info=True)
            _redis_client = None
            return None
        except Exception as e:
            logger.error(f"Redis initialization error: {e}", exc_info=True)
            _redis_client = None
            return None

    return _redis_client


class RedisDocumentStore(DocumentStore):
    """Document store on a shared Redis instance.

    Example:
        >>> store = RedisDocumentStore(get_redis_client())
        >>> sid = store.create("sessions", {"status": "active"})
        >>> store.update(f"sessions/{sid}", {"currentPage": 4})
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        key_prefix: Optional[str] = None,
        race_window_ms: Optional[int] = None,
    ):
        super().__init__(race_window_ms)
        self.redis = redis_client
        self.key_prefix = key_prefix if key_prefix is not None else settings.redis_key_prefix
        self._pubsub = None
        self._listener = None
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = threading.RLock()

        logger.info(f"RedisDocumentStore initialized with prefix '{self.key_prefix}'")

    # ----------------
    # KEY HELPERS
    # ----------------

    def _doc_key(self, key: str) -> str:
        return f"{self.key_prefix}doc:{key}"

    def _collection_key(self, collection: str) -> str:
        return f"{self.key_prefix}col:{collection}"

    def _channel(self, key: str) -> str:
        return f"{self.key_prefix}chan:{key}"

    @staticmethod
    def _decode(key: str, raw: Optional[str]) -> Optional[Snapshot]:
        if raw is None:
            return None
        doc = json.loads(raw)
        doc["id"] = split_key(key)[1]
        return doc

    # ----------------
    # READS / WRITES
    # ----------------

    def get(self, key: str) -> Optional[Snapshot]:
        try:
            return self._decode(key, self.redis.get(self._doc_key(key)))
        except redis.RedisError as e:
            raise StoreError(str(e)) from e

    def _write(self, key: str, body: Dict[str, Any], pipe) -> Snapshot:
        collection, doc_id = split_key(key)
        serialized = json.dumps(body, default=str)
        snapshot = dict(body, id=doc_id)
        pipe.set(self._doc_key(key), serialized)
        pipe.sadd(self._collection_key(collection), doc_id)
        pipe.publish(self._channel(key), json.dumps(snapshot, default=str))
        return snapshot

    def create(self, collection: str, doc: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or new_document_id()
        key = doc_key(collection, doc_id)
        body = prepare_document(doc)
        body.pop("id", None)
        body[REVISION_FIELD] = 1

        def _txn(pipe):
            if pipe.exists(self._doc_key(key)):
                raise StoreError(f"Document already exists: {key}")
            pipe.multi()
            self._write(key, body, pipe)

        try:
            with LogTimer(logger, f"redis_create:{collection}"):
                self.redis.transaction(_txn, self._doc_key(key))
        except redis.RedisError as e:
            raise StoreError(str(e)) from e
        return doc_id

    def set(self, key: str, doc: Dict[str, Any]) -> None:
        body = prepare_document(doc)
        body.pop("id", None)

        def _txn(pipe):
            raw = pipe.get(self._doc_key(key))
            previous = json.loads(raw).get(REVISION_FIELD, 0) if raw else 0
            body[REVISION_FIELD] = previous + 1
            pipe.multi()
            self._write(key, body, pipe)

        try:
            self.redis.transaction(_txn, self._doc_key(key))
        except redis.RedisError as e:
            raise StoreError(str(e)) from e

    def update(self, key: str, fields: Dict[str, Any], writer: Optional[str] = None) -> Snapshot:
        def _txn(pipe):
            raw = pipe.get(self._doc_key(key))
            if raw is None:
                raise DocumentNotFound(key)
            current = json.loads(raw)
            body = apply_update(current, fields)
            body[REVISION_FIELD] = current.get(REVISION_FIELD, 0) + 1
            pipe.multi()
            return self._write(key, body, pipe)

        try:
            with LogTimer(logger, f"redis_update:{key}"):
                snapshot = self.redis.transaction(_txn, self._doc_key(key), value_from_callable=True)
        except redis.RedisError as e:
            raise StoreError(str(e)) from e
        self.audit_paths(key, fields.keys(), writer)
        return snapshot

    def delete(self, key: str) -> bool:
        collection, doc_id = split_key(key)
        try:
            pipe = self.redis.pipeline()
            pipe.delete(self._doc_key(key))
            pipe.srem(self._collection_key(collection), doc_id)
            pipe.publish(self._channel(key), "null")
            deleted, _, _ = pipe.execute()
            return bool(deleted)
        except redis.RedisError as e:
            raise StoreError(str(e)) from e

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[Sequence[str]] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Snapshot]:
        try:
            ids = sorted(self.redis.smembers(self._collection_key(collection)))
            if not ids:
                return []
            keys = [doc_key(collection, doc_id) for doc_id in ids]
            raws = self.redis.mget([self._doc_key(k) for k in keys])
        except redis.RedisError as e:
            raise StoreError(str(e)) from e

        docs = [self._decode(k, raw) for k, raw in zip(keys, raws) if raw is not None]
        docs = [d for d in docs if matches(d, filters)]
        docs = sort_documents(docs, order_by, descending)
        return docs[:limit] if limit is not None else docs

    # ----------------
    # SUBSCRIPTIONS
    # ----------------

    def _dispatch(self, message: Dict[str, Any]) -> None:
        channel = message.get("channel")
        key = channel[len(f"{self.key_prefix}chan:"):]
        data = message.get("data")
        snapshot = None if data in (None, "null") else json.loads(data)
        with self._lock:
            subscribers = list(self._subscribers.get(key, []))
        for sub in subscribers:
            sub.deliver(snapshot)

    def subscribe(self, key: str, callback: SnapshotCallback) -> Subscription:
        sub = Subscription(key, callback, self._unsubscribe)
        with self._lock:
            first_for_key = key not in self._subscribers
            self._subscribers.setdefault(key, []).append(sub)
            if first_for_key:
                if self._pubsub is None:
                    self._pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
                self._pubsub.subscribe(**{self._channel(key): self._dispatch})
                if self._listener is None:
                    self._listener = self._pubsub.run_in_thread(sleep_time=0.01, daemon=True)
        sub.deliver(self.get(key))
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.key, [])
            if sub in subs:
                subs.remove(sub)
            if not subs and sub.key in self._subscribers:
                self._subscribers.pop(sub.key)
                if self._pubsub is not None:
                    self._pubsub.unsubscribe(self._channel(sub.key))

    def close(self) -> None:
        with self._lock:
            if self._listener is not None:
                self._listener.stop()
                self._listener = None
            if self._pubsub is not None:
                self._pubsub.close()
                self._pubsub = None
            self._subscribers.clear()
