"""Shared state synchronizer.

Keeps one canonical cached snapshot per watched document for a single
client. The store delivers full snapshots (never diffs) to every
subscriber, the writer included, so the cache is simply replaced with the
freshest snapshot received:

- edits to disjoint field paths from different participants converge
- edits to the same field path resolve last-writer-wins in the store
- deliveries carrying an older ``_rev`` than the cached one are dropped

Subscriptions must be torn down with ``close`` when the session ends or the
client goes away, otherwise updates keep flowing for a stale session id.
"""
import copy
import threading
from typing import Any, Callable, Dict, List, Optional, Set

from tutorsync.core.logging import get_logger
from tutorsync.infrastructure.store import (
    REVISION_FIELD,
    DocumentStore,
    Snapshot,
    Subscription,
    doc_key,
)

logger = get_logger(__name__)

SnapshotListener = Callable[[str, Optional[Snapshot]], None]


class SessionSynchronizer:
    """One subscription per watched document, one cached snapshot per key.

    Example:
        >>> sync = SessionSynchronizer(store)
        >>> sync.watch_session("abc")
        >>> sync.snapshot("sessions/abc")["currentPage"]
        3
        >>> sync.close()
    """

    def __init__(self, store: DocumentStore, owner: Optional[str] = None):
        self.store = store
        self.owner = owner
        self._subscriptions: Dict[str, Subscription] = {}
        self._snapshots: Dict[str, Optional[Snapshot]] = {}
        # Keys whose subscribe() call is delivering its first snapshot
        self._pending: Set[str] = set()
        self._listeners: List[SnapshotListener] = []
        self._lock = threading.RLock()

    @property
    def watched_keys(self) -> List[str]:
        with self._lock:
            return list(self._subscriptions)

    def watch(self, key: str) -> None:
        """Subscribe to ``key`` unless already watching it."""
        with self._lock:
            if key in self._subscriptions:
                return
            self._pending.add(key)
        try:
            sub = self.store.subscribe(key, lambda snap, _key=key: self._on_snapshot(_key, snap))
        except Exception:
            with self._lock:
                self._pending.discard(key)
            raise
        with self._lock:
            self._pending.discard(key)
            if key in self._subscriptions:
                # Lost a race with another watch() for the same key
                sub.unsubscribe()
                return
            self._subscriptions[key] = sub
        logger.debug(f"Watching {key}", extra={"user_id": self.owner})

    def watch_session(self, session_id: str) -> str:
        key = doc_key("sessions", session_id)
        self.watch(key)
        return key

    def watch_class(self, class_id: str) -> str:
        key = doc_key("classes", class_id)
        self.watch(key)
        return key

    def unwatch(self, key: str) -> None:
        with self._lock:
            sub = self._subscriptions.pop(key, None)
            self._snapshots.pop(key, None)
        if sub is not None:
            sub.unsubscribe()

    def snapshot(self, key: str) -> Optional[Snapshot]:
        """Return a copy of the cached snapshot for ``key``."""
        with self._lock:
            snap = self._snapshots.get(key)
            return copy.deepcopy(snap) if snap is not None else None

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a callback for accepted snapshots; returns a remover."""
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _on_snapshot(self, key: str, snapshot: Optional[Snapshot]) -> None:
        with self._lock:
            if key not in self._subscriptions and key not in self._pending:
                # Late delivery for a key that was unwatched or closed
                return
            cached = self._snapshots.get(key)
            if snapshot is not None and cached is not None:
                incoming_rev = snapshot.get(REVISION_FIELD, 0)
                cached_rev = cached.get(REVISION_FIELD, 0)
                if incoming_rev < cached_rev:
                    logger.debug(
                        f"Dropping stale snapshot for {key} (rev {incoming_rev} < {cached_rev})",
                        extra={"revision": incoming_rev, "user_id": self.owner},
                    )
                    return
            self._snapshots[key] = snapshot
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(key, copy.deepcopy(snapshot) if snapshot is not None else None)
            except Exception as e:
                logger.error(f"Snapshot listener failed for {key}: {e}", exc_info=True)

    def close(self) -> None:
        """Tear down every subscription and drop cached state."""
        with self._lock:
            subs = list(self._subscriptions.values())
            self._subscriptions.clear()
            self._snapshots.clear()
            self._pending.clear()
            self._listeners.clear()
        for sub in subs:
            sub.unsubscribe()
        if subs:
            logger.debug(f"Closed {len(subs)} subscriptions", extra={"user_id": self.owner})
