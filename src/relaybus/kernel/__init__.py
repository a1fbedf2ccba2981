"""Dispatch engine: pattern matcher, listener store and handler executor."""

from relaybus.kernel.handler_executor import HandlerExecutor
from relaybus.kernel.listener_store import ListenerStore
from relaybus.kernel.pattern_matcher import PatternMatcher

__all__ = ["HandlerExecutor", "ListenerStore", "PatternMatcher"]
