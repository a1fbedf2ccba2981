"""Wildcard pattern matching for event subscriptions."""

from __future__ import annotations

import re
import threading
from typing import Dict, Pattern

WILDCARD = "*"


class PatternMatcher:
    """Matches subscription patterns against concrete event names.

    ``*`` stands for zero or more arbitrary characters; every other character
    is literal. Compiled expressions are cached per raw pattern string.
    """

    def __init__(self) -> None:
        self._cache: Dict[str, Pattern[str]] = {}
        self._lock = threading.Lock()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def has_wildcard(self, pattern: str) -> bool:
        return WILDCARD in pattern

    def matches(self, pattern: str, event_name: str) -> bool:
        if pattern == WILDCARD:
            return True
        if pattern == event_name:
            return True
        return self._compile(pattern).fullmatch(event_name) is not None

    def _compile(self, pattern: str) -> Pattern[str]:
        compiled = self._cache.get(pattern)
        if compiled is not None:
            return compiled
        with self._lock:
            compiled = self._cache.get(pattern)
            if compiled is None:
                # "user:*" -> r"user:.*", everything else escaped.
                body = ".*".join(re.escape(part) for part in pattern.split(WILDCARD))
                compiled = re.compile(body, re.DOTALL)
                self._cache[pattern] = compiled
        return compiled
