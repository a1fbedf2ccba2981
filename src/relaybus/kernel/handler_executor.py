"""Sequential handler execution with per-handler failure isolation."""

from __future__ import annotations

import enum
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, Optional

from relaybus.kernel.types import (
    ErrorCallback,
    HandlerExecutionResult,
    HandlerFailure,
    Listener,
)

# Never swallowed as handler failures.
_PASSTHROUGH_ERRORS = (KeyboardInterrupt, SystemExit)


class CallState(str, enum.Enum):
    DONE = "done"
    PENDING = "pending"
    FAILED = "failed"


@dataclass
class HandlerCall:
    """Outcome of invoking one handler, before any awaiting."""

    state: CallState
    started_at: float
    awaitable: Optional[Awaitable[Any]] = None
    error: Optional[BaseException] = None


def invoke_handler(listener: Listener, payload: Any) -> HandlerCall:
    started_at = time.perf_counter()
    try:
        returned = listener.handler(payload)
    except _PASSTHROUGH_ERRORS:
        raise
    except Exception as exc:
        return HandlerCall(state=CallState.FAILED, started_at=started_at, error=exc)
    if inspect.isawaitable(returned):
        return HandlerCall(state=CallState.PENDING, started_at=started_at, awaitable=returned)
    return HandlerCall(state=CallState.DONE, started_at=started_at)


def _elapsed_ms(started_at: float) -> float:
    return (time.perf_counter() - started_at) * 1000.0


class HandlerExecutor:
    """Runs matched listeners one at a time, in the order supplied.

    A handler that raises, or whose awaitable raises, is recorded as a
    failure and the loop moves on. Failed one-shot listeners are not flagged
    for removal. The executor updates execution counters but never touches
    store structure; callers retire the returned ids through the store.
    """

    def __init__(self, on_error: Optional[ErrorCallback] = None) -> None:
        self._on_error = on_error

    async def execute(
        self,
        event_name: str,
        payload: Any,
        listeners: Iterable[Listener],
    ) -> HandlerExecutionResult:
        result = HandlerExecutionResult()

        for listener in listeners:
            call = invoke_handler(listener, payload)
            result.executed += 1

            if call.state is CallState.PENDING:
                try:
                    await call.awaitable  # type: ignore[misc]
                except _PASSTHROUGH_ERRORS:
                    raise
                except Exception as exc:
                    call.state = CallState.FAILED
                    call.error = exc
                else:
                    call.state = CallState.DONE

            duration_ms = _elapsed_ms(call.started_at)
            if call.state is CallState.FAILED:
                failure = HandlerFailure(
                    listener_id=listener.id,
                    pattern=listener.pattern,
                    error=call.error,  # type: ignore[arg-type]
                    duration_ms=duration_ms,
                )
                result.failures.append(failure)
                await self._report(event_name, payload, failure)
                continue

            listener.record_execution(duration_ms)
            if listener.once:
                result.listeners_to_remove.append(listener.id)

        return result

    async def _report(self, event_name: str, payload: Any, failure: HandlerFailure) -> None:
        if self._on_error is None:
            return
        try:
            reported = self._on_error(event_name, payload, failure.error, failure.listener_id)
            if inspect.isawaitable(reported):
                await reported
        except _PASSTHROUGH_ERRORS:
            raise
        except Exception:
            # Error reporting must not disturb the emission.
            return
