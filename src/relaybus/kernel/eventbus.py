"""In-process event bus façade over the listener store and handler executor."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, List, Optional, Sequence, Set

from relaybus.kernel.debug_log import BusLogger
from relaybus.kernel.handler_executor import HandlerExecutor
from relaybus.kernel.listener_store import ListenerStore, RemovedPair
from relaybus.kernel.pattern_matcher import PatternMatcher
from relaybus.kernel.plugin_manager import PluginManager
from relaybus.kernel.types import (
    HandlerExecutionResult,
    ListenerHandler,
    ListenerId,
    ListenerMap,
    SubscribeOptions,
)


class Unsubscribe:
    """Callable returned by subscriptions; safe to call any number of times."""

    __slots__ = ("_bus", "pattern", "listener_id", "_done")

    def __init__(self, bus: EventBus, pattern: str, listener_id: ListenerId) -> None:
        self._bus = bus
        self.pattern = pattern
        self.listener_id = listener_id
        self._done = False

    def __call__(self) -> None:
        if self._done:
            return
        self._done = True
        self._bus._unsubscribe(self.pattern, self.listener_id)

    def __repr__(self) -> str:
        return "Unsubscribe({0!r}, {1!r})".format(self.pattern, self.listener_id)


class EventBus:
    """Publish/subscribe scoped to one process.

    ``emit`` looks up the matching listeners once, runs them sequentially in
    priority order and then retires one-shot listeners that succeeded.
    Handler failures never reach the caller of ``emit``.
    """

    def __init__(
        self,
        plugins: Optional[Sequence[Any]] = None,
        logger: Optional[BusLogger] = None,
        report_handler_errors: bool = True,
    ) -> None:
        self._logger = logger or BusLogger()
        self._matcher = PatternMatcher()
        self._store = ListenerStore(self._matcher)
        self._plugins = PluginManager(plugins, logger=self._logger.child("plugins"))
        self._executor = HandlerExecutor(
            on_error=self._report_handler_error if report_handler_errors else None
        )
        self._initialized = False
        self._background: Set[asyncio.Task] = set()

    @property
    def store(self) -> ListenerStore:
        return self._store

    @property
    def plugin_manager(self) -> PluginManager:
        return self._plugins

    @property
    def logger(self) -> BusLogger:
        return self._logger

    def add_plugin(self, plugin: Any) -> None:
        self._plugins.add(plugin)

    async def init(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        await self._plugins.call_hook("on_init")

    def on(
        self,
        event: str,
        handler: ListenerHandler,
        priority: int = 0,
        once: bool = False,
    ) -> Unsubscribe:
        return self._subscribe(str(event), handler, SubscribeOptions(priority=priority, once=once))

    def on_pattern(
        self,
        pattern: str,
        handler: ListenerHandler,
        priority: int = 0,
        once: bool = False,
    ) -> Unsubscribe:
        return self._subscribe(str(pattern), handler, SubscribeOptions(priority=priority, once=once))

    def once(self, event: str, handler: ListenerHandler, priority: int = 0) -> Unsubscribe:
        return self._subscribe(str(event), handler, SubscribeOptions(priority=priority, once=True))

    def listener(
        self,
        pattern: str,
        priority: int = 0,
        once: bool = False,
    ) -> Callable[[ListenerHandler], ListenerHandler]:
        """Decorator form of ``on_pattern``."""

        def decorator(handler: ListenerHandler) -> ListenerHandler:
            self.on_pattern(pattern, handler, priority=priority, once=once)
            return handler

        return decorator

    async def emit(self, event: str, payload: Any = None) -> None:
        await self.dispatch(event, payload)

    async def dispatch(self, event: str, payload: Any = None) -> HandlerExecutionResult:
        """Emit ``event`` and return what happened to each matched handler."""

        event_name = str(event)
        started_at = time.perf_counter()
        await self._plugins.call_hook("on_before_emit", event_name, payload)

        listeners = self._store.get_matching(event_name)
        result = await self._executor.execute(event_name, payload, listeners)

        for listener_id in result.listeners_to_remove:
            pattern = self._store.remove_by_id(listener_id)
            if pattern is not None:
                await self._plugins.call_hook("on_unsubscribe", pattern, listener_id)

        duration_ms = (time.perf_counter() - started_at) * 1000.0
        self._logger.debug(
            "emit",
            kind="emit",
            event=event_name,
            handler_count=len(listeners),
            failed=result.failed_count,
            retired=len(result.listeners_to_remove),
            duration_ms=round(duration_ms, 3),
        )
        await self._plugins.call_hook("on_after_emit", event_name, payload, duration_ms, len(listeners))
        return result

    def emit_sync(self, event: str, payload: Any = None) -> None:
        """Run ``emit`` to completion from synchronous code."""

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.emit(event, payload))
            return
        raise RuntimeError("emit_sync() called inside a running event loop; await emit() instead")

    def off(self, listener_id: ListenerId) -> None:
        pattern = self._store.remove_by_id(listener_id)
        if pattern is not None:
            self._notify("on_unsubscribe", pattern, listener_id)

    def off_all(self, event: Optional[str] = None) -> None:
        # An empty name clears everything, like passing no name.
        removed = self._store.remove_all(str(event) if event else None)
        self._notify_removed(removed)

    def get_listeners(self, event: Optional[str] = None) -> ListenerMap:
        return self._store.get_all(event)

    def _subscribe(self, pattern: str, handler: ListenerHandler, options: SubscribeOptions) -> Unsubscribe:
        listener_id = self._store.add(pattern, handler, options)
        self._notify("on_subscribe", pattern, listener_id)
        return Unsubscribe(self, pattern, listener_id)

    def _unsubscribe(self, pattern: str, listener_id: ListenerId) -> None:
        if self._store.remove(pattern, listener_id):
            self._notify("on_unsubscribe", pattern, listener_id)

    def _notify_removed(self, removed: List[RemovedPair]) -> None:
        for pattern, listener_id in removed:
            self._notify("on_unsubscribe", pattern, listener_id)

    def _notify(self, hook_name: str, *args: Any) -> None:
        """Fire a hook from synchronous code.

        Inside a running loop the hook is scheduled as a task; otherwise it
        runs to completion before returning.
        """

        if not len(self._plugins):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self._plugins.call_hook(hook_name, *args))
            return
        task = loop.create_task(self._plugins.call_hook(hook_name, *args))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _report_handler_error(
        self,
        event: str,
        payload: Any,
        error: BaseException,
        listener_id: Optional[ListenerId],
    ) -> None:
        self._logger.error(
            "handler failed",
            error=error,
            kind="handler_failed",
            event=event,
            listener_id=listener_id.value if listener_id is not None else None,
        )
        await self._plugins.call_hook("on_error", event, payload, error, listener_id)
