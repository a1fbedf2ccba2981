"""Indexed listener registry split by exact and wildcard patterns."""

from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

from relaybus.kernel.pattern_matcher import PatternMatcher
from relaybus.kernel.types import (
    Listener,
    ListenerHandler,
    ListenerId,
    ListenerMap,
    SubscribeOptions,
)

Bucket = Dict[str, List[Listener]]
RemovedPair = Tuple[str, ListenerId]


def sort_by_priority(listeners: Iterable[Listener]) -> List[Listener]:
    """Priority descending, then registration order ascending."""

    return sorted(listeners, key=lambda item: item.sort_key())


class ListenerStore:
    """Owns every subscription.

    Literal patterns live in the exact bucket so an emission can look them up
    directly; patterns containing ``*`` live in the wildcard bucket and are
    tested one by one. A bucket never holds an empty list.
    """

    def __init__(self, pattern_matcher: Optional[PatternMatcher] = None) -> None:
        self._matcher = pattern_matcher or PatternMatcher()
        self._exact: Bucket = {}
        self._wildcard: Bucket = {}
        self._marked: Set[ListenerId] = set()
        self._lock = threading.RLock()

    @property
    def pattern_matcher(self) -> PatternMatcher:
        return self._matcher

    def add(
        self,
        pattern: str,
        handler: ListenerHandler,
        options: Optional[SubscribeOptions] = None,
    ) -> ListenerId:
        opts = options or SubscribeOptions()
        listener = Listener(
            id=ListenerId(pattern),
            handler=handler,
            pattern=pattern,
            priority=int(opts.priority),
            once=bool(opts.once),
        )
        with self._lock:
            bucket = self._bucket_for(pattern)
            bucket[pattern] = sort_by_priority(bucket.get(pattern, []) + [listener])
        return listener.id

    def remove(self, pattern: str, listener_id: ListenerId) -> bool:
        with self._lock:
            bucket = self._bucket_for(pattern)
            existing = bucket.get(pattern, [])
            updated = [item for item in existing if item.id != listener_id]
            self._store_or_drop(bucket, pattern, updated)
            return len(updated) != len(existing)

    def remove_by_id(self, listener_id: ListenerId) -> Optional[str]:
        with self._lock:
            pattern = self._remove_from(self._exact, listener_id)
            if pattern is None:
                pattern = self._remove_from(self._wildcard, listener_id)
            return pattern

    def remove_all(self, event_name: Optional[str] = None) -> List[RemovedPair]:
        """Drop listeners and report the removed ``(pattern, id)`` pairs.

        With ``event_name`` only the entry registered under exactly that
        string is dropped. Wildcard listeners that would merely match the
        name stay registered, unlike ``get_matching`` and ``get_all``.
        """

        with self._lock:
            if event_name is None:
                removed = self._collect(self._exact) + self._collect(self._wildcard)
                self._exact.clear()
                self._wildcard.clear()
                return removed

            bucket = self._bucket_for(event_name)
            listeners = bucket.pop(event_name, [])
            return [(event_name, item.id) for item in listeners]

    def get_matching(self, event_name: str) -> List[Listener]:
        with self._lock:
            matching: List[Listener] = list(self._exact.get(event_name, []))
            for pattern, listeners in self._wildcard.items():
                if self._matcher.matches(pattern, event_name):
                    matching.extend(listeners)
        return sort_by_priority(matching)

    def get_all(self, event_name: Optional[str] = None) -> ListenerMap:
        result: ListenerMap = {}
        with self._lock:
            for bucket in (self._exact, self._wildcard):
                for pattern, listeners in bucket.items():
                    if event_name is None or self._matcher.matches(pattern, event_name):
                        result[pattern] = [item.info() for item in listeners]
        return result

    def get(self, listener_id: ListenerId) -> Optional[Listener]:
        with self._lock:
            for bucket in (self._exact, self._wildcard):
                for listeners in bucket.values():
                    for item in listeners:
                        if item.id == listener_id:
                            return item
        return None

    def patterns(self) -> List[str]:
        with self._lock:
            return list(self._exact.keys()) + list(self._wildcard.keys())

    def update_stats(self, listener_id: ListenerId, duration_ms: float) -> None:
        listener = self.get(listener_id)
        if listener is not None:
            listener.record_execution(duration_ms)

    def mark_for_removal(self, listener_id: ListenerId) -> None:
        with self._lock:
            self._marked.add(listener_id)

    def remove_marked(self) -> List[RemovedPair]:
        with self._lock:
            if not self._marked:
                return []
            removed: List[RemovedPair] = []
            for bucket in (self._exact, self._wildcard):
                for pattern, listeners in list(bucket.items()):
                    kept = []
                    for item in listeners:
                        if item.id in self._marked:
                            removed.append((pattern, item.id))
                        else:
                            kept.append(item)
                    if len(kept) != len(listeners):
                        self._store_or_drop(bucket, pattern, kept)
            self._marked.clear()
            return removed

    def __len__(self) -> int:
        with self._lock:
            return sum(len(items) for items in self._exact.values()) + sum(
                len(items) for items in self._wildcard.values()
            )

    def __contains__(self, listener_id: object) -> bool:
        if not isinstance(listener_id, ListenerId):
            return False
        return self.get(listener_id) is not None

    def _bucket_for(self, pattern: str) -> Bucket:
        return self._wildcard if self._matcher.has_wildcard(pattern) else self._exact

    @staticmethod
    def _store_or_drop(bucket: Bucket, pattern: str, listeners: List[Listener]) -> None:
        if listeners:
            bucket[pattern] = listeners
        else:
            bucket.pop(pattern, None)

    def _remove_from(self, bucket: Bucket, listener_id: ListenerId) -> Optional[str]:
        for pattern, listeners in list(bucket.items()):
            if any(item.id == listener_id for item in listeners):
                updated = [item for item in listeners if item.id != listener_id]
                self._store_or_drop(bucket, pattern, updated)
                return pattern
        return None

    @staticmethod
    def _collect(bucket: Bucket) -> List[RemovedPair]:
        collected: List[RemovedPair] = []
        for pattern, listeners in bucket.items():
            for item in listeners:
                collected.append((pattern, item.id))
        return collected
