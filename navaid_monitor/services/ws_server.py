"""WebSocket transport for the live fanout."""
from __future__ import annotations

import asyncio
import concurrent.futures
import datetime as dt
import json
import logging
import threading
from typing import Any, Callable, Optional

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from navaid_monitor.services.fanout import Fanout

LOGGER = logging.getLogger(__name__)

SnapshotProvider = Callable[[], dict[str, Any]]

_STOP = object()


def _utc_iso() -> str:
    return dt.datetime.now(tz=dt.timezone.utc).isoformat()


class WebSocketSink:
    """Fanout sink for one connection.

    ``send`` may be called from any thread; messages go through an asyncio
    queue drained by a single writer task, so the connection sees them in
    call order.
    """

    def __init__(
        self,
        connection: ServerConnection,
        loop: asyncio.AbstractEventLoop,
        *,
        on_ack: Callable[[str], None],
        max_queue: int = 256,
        pong_timeout_s: float = 10.0,
    ) -> None:
        self.subscription_id = ""
        self._connection = connection
        self._loop = loop
        self._on_ack = on_ack
        self._pong_timeout_s = pong_timeout_s
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue)

    def send(self, message: str) -> None:
        self._loop.call_soon_threadsafe(self._enqueue, message)

    def ping(self) -> None:
        future = asyncio.run_coroutine_threadsafe(self._ping_and_wait(), self._loop)
        future.add_done_callback(self._log_failure("heartbeat"))

    def close(self) -> None:
        future = asyncio.run_coroutine_threadsafe(self._connection.close(), self._loop)
        future.add_done_callback(self._log_failure("close"))

    def acknowledge(self) -> None:
        if self.subscription_id:
            self._on_ack(self.subscription_id)

    async def run_writer(self) -> None:
        while True:
            message = await self._queue.get()
            if message is _STOP:
                return
            try:
                await self._connection.send(message)
            except ConnectionClosed:
                return

    def stop_writer(self) -> None:
        try:
            self._queue.put_nowait(_STOP)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(_STOP)

    def _enqueue(self, message: str) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.warning("Subscriber %s is not keeping up, dropping message", self.subscription_id)

    def _log_failure(self, action: str) -> Callable[[concurrent.futures.Future[Any]], None]:
        def _done(future: concurrent.futures.Future[Any]) -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is not None:
                LOGGER.error(
                    "Subscriber %s %s failed",
                    self.subscription_id,
                    action,
                    exc_info=exc,
                )

        return _done

    async def _ping_and_wait(self) -> None:
        try:
            pong_waiter = await self._connection.ping()
            await asyncio.wait_for(pong_waiter, timeout=self._pong_timeout_s)
        except (ConnectionClosed, asyncio.TimeoutError):
            return
        self.acknowledge()


class FanoutServer:
    """Runs a websockets server on its own event loop thread."""

    def __init__(
        self,
        fanout: Fanout,
        snapshot: SnapshotProvider,
        *,
        host: str = "0.0.0.0",
        port: int = 3000,
    ) -> None:
        self._fanout = fanout
        self._snapshot = snapshot
        self._host = host
        self._port = port
        self._bound_port: Optional[int] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop: Optional[asyncio.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None

    @property
    def port(self) -> Optional[int]:
        return self._bound_port

    def start(self, timeout_s: float = 5.0) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="ws-fanout", daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=timeout_s):
            raise RuntimeError("WebSocket server did not start in time")
        if self._startup_error is not None:
            raise RuntimeError(f"WebSocket server failed to start: {self._startup_error}") from self._startup_error

    def stop(self, timeout_s: float = 5.0) -> None:
        if self._thread is None:
            return
        if self._loop is not None and self._stop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stop.set)
        self._thread.join(timeout=timeout_s)
        self._thread = None
        LOGGER.info("WebSocket server closed")

    def _run(self) -> None:
        try:
            asyncio.run(self._main())
        except Exception as exc:  # noqa: BLE001
            self._startup_error = exc
            LOGGER.exception("WebSocket server stopped with an error")
        finally:
            self._ready.set()

    async def _main(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop = asyncio.Event()
        async with serve(self._handle, self._host, self._port, ping_interval=None) as server:
            sockets = list(server.sockets)
            self._bound_port = sockets[0].getsockname()[1] if sockets else self._port
            LOGGER.info("WebSocket server listening on %s:%s", self._host, self._bound_port)
            self._ready.set()
            await self._stop.wait()

    async def _handle(self, connection: ServerConnection) -> None:
        loop = asyncio.get_running_loop()
        peer = connection.remote_address
        name = f"ws:{peer[0]}:{peer[1]}" if peer else "ws"

        sink = WebSocketSink(connection, loop, on_ack=self._fanout.acknowledge)
        sink.send(
            json.dumps(
                {
                    "type": "connection",
                    "message": "Connected to Navigation Monitoring System",
                    "timestamp": _utc_iso(),
                }
            )
        )
        sink.send(json.dumps(self._snapshot()))
        subscription = self._fanout.subscribe(sink, name=name)
        sink.subscription_id = subscription.id
        writer = asyncio.create_task(sink.run_writer())

        try:
            async for raw in connection:
                self._handle_client_message(sink, raw)
        except ConnectionClosed:
            pass
        finally:
            self._fanout.unsubscribe(subscription.id)
            sink.stop_writer()
            await writer

    def _handle_client_message(self, sink: WebSocketSink, raw: str | bytes) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            LOGGER.warning("Ignoring malformed message from subscriber %s", sink.subscription_id)
            return
        if not isinstance(data, dict):
            return

        message_type = data.get("type")
        if message_type == "ping":
            sink.acknowledge()
            sink.send(json.dumps({"type": "pong", "timestamp": _utc_iso()}))
        elif message_type == "snapshot":
            sink.send(json.dumps(self._snapshot()))
        else:
            LOGGER.debug("Unhandled message type %r from %s", message_type, sink.subscription_id)
