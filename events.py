"""
Change notifications between the writers (webhook, CRUD routes) and the
cached dashboard queries.

Both classes are shared by FastAPI's threadpool workers, so their state is
only touched under a lock.
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 1024


@dataclass(frozen=True)
class Change:
    collection: str
    operation: str  # insert | update | delete
    document_id: str
    user_id: Optional[str] = None


Subscriber = Callable[[Change], None]


class ChangeNotifier:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, collection: str, callback: Subscriber) -> Callable[[], None]:
        """Register `callback` for changes on `collection`; returns the unsubscribe function."""
        with self._lock:
            self._subscribers[collection].append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers[collection]:
                    self._subscribers[collection].remove(callback)

        return unsubscribe

    def publish(self, collection: str, operation: str, document_id: str, user_id: Optional[str] = None) -> None:
        """
        Deliver a change to every subscriber of `collection`.

        Publishing happens after the write is stored, so a failing subscriber
        is logged and skipped instead of failing the caller.
        """
        change = Change(collection, operation, str(document_id), user_id)
        with self._lock:
            callbacks = list(self._subscribers[collection])
        for callback in callbacks:
            try:
                callback(change)
            except Exception:
                logger.exception("Subscriber %r failed on %s %s", callback, collection, operation)


class QueryCache:
    """Keyed query results, evicting the least recently used key past `max_size`."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE):
        self.max_size = max_size
        self._values: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._values)

    def get(self, key: str) -> Any:
        with self._lock:
            if key not in self._values:
                return None
            self._values.move_to_end(key)
            return self._values[key]

    def set(self, key: str, value: Any, replaces: Optional[str] = None) -> None:
        """Store `value`; keys starting with `replaces` are dropped first."""
        with self._lock:
            if replaces is not None:
                self._drop(replaces)
            self._values[key] = value
            self._values.move_to_end(key)
            while len(self._values) > self.max_size:
                self._values.popitem(last=False)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def invalidate(self, prefix: str) -> int:
        with self._lock:
            return self._drop(prefix)

    def _drop(self, prefix: str) -> int:
        stale = [k for k in self._values if k.startswith(prefix)]
        for key in stale:
            del self._values[key]
        return len(stale)

    def invalidate_on(self, notifier: ChangeNotifier, collection: str, prefix: str) -> Callable[[], None]:
        """
        Drop every key starting with `prefix` when `collection` changes.

        `prefix` may contain `{user_id}`, filled from the change so one user's
        writes leave other users' entries alone.
        """

        def on_change(change: Change) -> None:
            key_prefix = prefix.format(user_id=change.user_id or "")
            dropped = self.invalidate(key_prefix)
            if dropped:
                logger.debug("Invalidated %d cached queries for %s %s", dropped, change.collection, change.operation)

        return notifier.subscribe(collection, on_change)
