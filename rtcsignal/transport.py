"""
Duplex, message framed transports used by :class:`~rtcsignal.client.SignalingClient`.

A transport is an :class:`~rtcsignal.events.EventEmitter` that emits four
events: ``open``, ``message`` (one text frame), ``error`` and ``close``.  It is
started with :meth:`Transport.connect` after the listeners are bound, and is
owned by exactly one client.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from .errors import TransportError
from .events import EventEmitter
from .utils.logging import redact_url

LOG = logging.getLogger(__name__)

DEFAULT_OPEN_TIMEOUT = 10.0
DEFAULT_PING_INTERVAL = 20.0

_CLOSE = object()


class Transport(EventEmitter, abc.ABC):
    """Interface expected by the signaling client."""

    url: str

    @abc.abstractmethod
    def connect(self) -> None:
        """Start connecting; outcomes arrive as events."""

    @abc.abstractmethod
    def send(self, frame: str) -> None:
        """Queue one text frame."""

    @abc.abstractmethod
    def close(self) -> None:
        """Request the connection to close."""


TransportFactory = Callable[[str], Transport]


class WebSocketTransport(Transport):
    """
    Transport backed by the ``websockets`` asyncio client.

    ``send`` and ``close`` are synchronous and only enqueue work; a send loop
    writes frames in call order and closes the connection once every frame
    queued before :meth:`close` has been written.
    """

    def __init__(
        self,
        url: str,
        *,
        open_timeout: Optional[float] = DEFAULT_OPEN_TIMEOUT,
        ping_interval: Optional[float] = DEFAULT_PING_INTERVAL,
    ) -> None:
        super().__init__()
        self.url = url
        self.open_timeout = open_timeout
        self.ping_interval = ping_interval
        self._connection: Any = None
        self._task: Optional[asyncio.Task] = None
        self._send_queue: asyncio.Queue[object] = asyncio.Queue()
        self._close_requested = False
        self._closed = False
        self.logger = LOG.getChild(uuid.uuid4().hex[:8])

    @property
    def is_open(self) -> bool:
        return self._connection is not None and not self._close_requested

    def connect(self) -> None:
        if self._task is not None or self._closed:
            raise TransportError("Transport has already been started")
        self._task = asyncio.get_running_loop().create_task(self._run())

    def send(self, frame: str) -> None:
        if not self.is_open:
            raise TransportError("Could not send frame because the WebSocket is not open.")
        self._send_queue.put_nowait(frame)

    def close(self) -> None:
        if self._close_requested or self._closed:
            return
        self._close_requested = True
        if self._task is None or self._task.done():
            self._finish()
        elif self._connection is None:
            # Still handshaking.
            self._task.cancel()
        else:
            self._send_queue.put_nowait(_CLOSE)

    async def wait_closed(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # ------------------------------------------------------------------ loops

    async def _run(self) -> None:
        self.logger.debug("Connecting to %s", redact_url(self.url))
        try:
            async with websockets.connect(
                self.url,
                open_timeout=self.open_timeout,
                ping_interval=self.ping_interval,
            ) as connection:
                self._connection = connection
                if self._close_requested:
                    return
                self.logger.debug("WebSocket connection established")
                self.emit("open")
                async with asyncio.TaskGroup() as task_group:
                    task_group.create_task(self._recv_loop(connection))
                    task_group.create_task(self._send_loop(connection))
        except asyncio.CancelledError:
            if not self._close_requested:
                raise
            self.logger.debug("Connection attempt cancelled")
        except Exception as exc:
            self.logger.debug("WebSocket transport failed: %r", exc)
            self.emit("error", exc)
        finally:
            self._finish()

    async def _recv_loop(self, connection: Any) -> None:
        try:
            async for frame in connection:
                if isinstance(frame, bytes):
                    try:
                        frame = frame.decode("utf-8")
                    except UnicodeDecodeError as exc:
                        self.logger.debug("Dropping binary frame that is not UTF-8: %s", exc)
                        continue
                self.emit("message", frame)
        except ConnectionClosedError as exc:
            if not self._close_requested:
                self.emit("error", exc)
        finally:
            self._send_queue.put_nowait(_CLOSE)

    async def _send_loop(self, connection: Any) -> None:
        while True:
            frame = await self._send_queue.get()
            if frame is _CLOSE:
                await connection.close()
                return
            try:
                await connection.send(frame)
            except ConnectionClosed:
                # The receive loop reports abnormal closures.
                return

    def _finish(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._connection = None
        self.logger.debug("WebSocket connection closed")
        self.emit("close")


def websocket_transport_factory(**options: Any) -> TransportFactory:
    """Return a factory building :class:`WebSocketTransport` instances with ``options``."""

    def factory(url: str) -> Transport:
        return WebSocketTransport(url, **options)

    return factory


__all__ = ["Transport", "TransportFactory", "WebSocketTransport", "websocket_transport_factory"]
