"""
Minimal publish/subscribe helper shared by the client and its transports.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

LOG = logging.getLogger(__name__)

Listener = Callable[..., Any]

ERROR_EVENT = "error"


class _OnceWrapper:
    __slots__ = ("emitter", "event", "listener", "fired")

    def __init__(self, emitter: "EventEmitter", event: str, listener: Listener) -> None:
        self.emitter = emitter
        self.event = event
        self.listener = listener
        self.fired = False

    def __call__(self, *args: Any) -> Any:
        if self.fired:
            return None
        self.fired = True
        self.emitter.remove_listener(self.event, self)
        return self.listener(*args)


class EventEmitter:
    """
    Ordered listener registry keyed by event name.

    Listeners run synchronously in registration order.  Dispatch iterates over a
    snapshot so listeners may add or remove listeners (including themselves)
    while an event is being delivered.  A failing listener is logged and the
    remaining listeners still run.  Coroutine listeners are scheduled on the
    running loop instead of being awaited.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ registration

    def on(self, event: str, listener: Listener) -> Listener:
        if not callable(listener):
            raise TypeError("listener must be callable")
        self._listeners.setdefault(event, []).append(listener)
        return listener

    add_listener = on

    def once(self, event: str, listener: Listener) -> Listener:
        if not callable(listener):
            raise TypeError("listener must be callable")
        self.on(event, _OnceWrapper(self, event, listener))
        return listener

    def remove_listener(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        # Last registration wins, matching the order ``on`` appended them.
        for index in range(len(listeners) - 1, -1, -1):
            candidate = listeners[index]
            if candidate == listener or getattr(candidate, "listener", None) == listener:
                del listeners[index]
                break
        if not listeners:
            del self._listeners[event]

    off = remove_listener

    def remove_all_listeners(self, event: str | None = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listeners(self, event: str) -> List[Listener]:
        return [getattr(item, "listener", item) for item in self._listeners.get(event, ())]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    # ------------------------------------------------------------------ dispatch

    def emit(self, event: str, *args: Any) -> bool:
        """
        Deliver ``args`` to every listener of ``event``.

        Returns ``True`` when at least one listener was registered.
        """

        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            if event == ERROR_EVENT:
                error = args[0] if args else None
                LOG.error("Unhandled %s event on %s: %r", event, type(self).__name__, error)
            return False

        for listener in listeners:
            try:
                result = listener(*args)
            except Exception:
                LOG.exception("Listener %r for %s event failed.", listener, event)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, result)
        return True

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError:
            LOG.error("Cannot run coroutine listener for %s event without a running loop.", event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOG.error("Coroutine listener failed.", exc_info=exc)


__all__ = ["EventEmitter", "Listener"]
