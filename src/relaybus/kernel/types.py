"""Core typed contracts shared by the store, executor and façade."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

_ID_COUNTER = itertools.count(1)
_SEQUENCE_COUNTER = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def next_sequence() -> int:
    return next(_SEQUENCE_COUNTER)


class ListenerId:
    """Opaque listener identity.

    Backed by a process-wide counter. Two ids are equal only when they carry
    the same counter value; an id never equals a plain string or int.
    """

    __slots__ = ("_value", "_label")

    def __init__(self, label: str = "") -> None:
        self._value = next(_ID_COUNTER)
        self._label = label

    @property
    def value(self) -> int:
        return self._value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ListenerId):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash((ListenerId, self._value))

    def __repr__(self) -> str:
        if self._label:
            return "ListenerId({0}, {1!r})".format(self._value, self._label)
        return "ListenerId({0})".format(self._value)


ListenerHandler = Callable[[Any], Union[None, Awaitable[None]]]


@dataclass
class SubscribeOptions:
    priority: int = 0
    once: bool = False


@dataclass
class Listener:
    id: ListenerId
    handler: ListenerHandler
    pattern: str
    priority: int = 0
    once: bool = False
    added_at: int = field(default_factory=now_ms)
    sequence: int = field(default_factory=next_sequence)
    execution_count: int = 0
    total_duration: float = 0.0

    def sort_key(self) -> Tuple[int, int]:
        return (-self.priority, self.sequence)

    def record_execution(self, duration_ms: float) -> None:
        self.execution_count += 1
        self.total_duration += duration_ms

    def info(self) -> ListenerInfo:
        avg = self.total_duration / self.execution_count if self.execution_count > 0 else 0.0
        return ListenerInfo(
            id=self.id,
            priority=self.priority,
            once=self.once,
            pattern=self.pattern,
            added_at=self.added_at,
            execution_count=self.execution_count,
            avg_duration=avg,
        )


@dataclass(frozen=True)
class ListenerInfo:
    """Public listener metadata returned by introspection."""

    id: ListenerId
    priority: int
    once: bool
    pattern: str
    added_at: int
    execution_count: int
    avg_duration: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id.value,
            "priority": self.priority,
            "once": self.once,
            "pattern": self.pattern,
            "added_at": self.added_at,
            "execution_count": self.execution_count,
            "avg_duration": self.avg_duration,
        }


ListenerMap = Dict[str, List[ListenerInfo]]


@dataclass
class HandlerFailure:
    listener_id: ListenerId
    pattern: str
    error: BaseException
    duration_ms: float = 0.0


@dataclass
class HandlerExecutionResult:
    listeners_to_remove: List[ListenerId] = field(default_factory=list)
    failures: List[HandlerFailure] = field(default_factory=list)
    executed: int = 0

    @property
    def failed_count(self) -> int:
        return len(self.failures)


ErrorCallback = Callable[[str, Any, BaseException, Optional[ListenerId]], Union[None, Awaitable[None]]]
