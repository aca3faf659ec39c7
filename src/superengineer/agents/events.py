"""Observer plumbing between the core components and their collaborators.

Event names are closed enums rather than free-form strings. Callbacks may be
plain functions or coroutine functions; coroutines are scheduled on the running
loop and kept alive until they finish.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)


class AgentEventType(str, Enum):
    """Public events emitted by ``ClaudeAgent``."""

    MESSAGE = "message"
    STATUS = "status"
    EXIT = "exit"
    WAITING_FOR_INPUT = "waitingForInput"
    SESSION_NOT_FOUND = "sessionNotFound"
    ENTER_PLAN_MODE = "enterPlanMode"
    EXIT_PLAN_MODE = "exitPlanMode"
    CONTEXT_USAGE = "contextUsage"
    PERMISSION_REQUEST = "permissionRequest"


class StreamSignal(str, Enum):
    """Signals the StreamHandler raises while interpreting output."""

    MESSAGE = "message"
    WAITING_FOR_INPUT = "waitingForInput"
    CONTEXT_USAGE = "contextUsage"
    ERROR = "error"
    SESSION_NOT_FOUND = "sessionNotFound"
    SESSION_ID = "sessionId"
    PERMISSION_REQUEST = "permissionRequest"
    ENTER_PLAN_MODE = "enterPlanMode"
    EXIT_PLAN_MODE = "exitPlanMode"
    TURN_COMPLETE = "turnComplete"
    READY = "ready"


class ProcessEvent(str, Enum):
    EXIT = "exit"
    ERROR = "error"
    STARTED = "processStarted"


class EventDispatcher(Generic[E]):
    """Minimal synchronous pub/sub keyed by an enum."""

    def __init__(self) -> None:
        self._listeners: dict[E, list[Callable[..., Any]]] = {}
        self._pending: set[asyncio.Task] = set()

    def on(self, event: E, callback: Callable[..., Any]) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def off(self, event: E, callback: Callable[..., Any]) -> None:
        callbacks = self._listeners.get(event)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)

    def clear(self, event: E | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: E) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: E, *args: Any) -> None:
        # Copy so listeners may unsubscribe while being called
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(*args)
            except Exception:
                logger.exception("Listener for %s failed", event.value)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)

    def _schedule(self, event: E, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop for async %s listener; dropped", event.value)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(
                    "Async listener for %s failed", event.value, exc_info=t.exception()
                )

        task.add_done_callback(_done)
