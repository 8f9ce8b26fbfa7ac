from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from typing import Iterator

import pytest
from websockets.sync.client import connect

from navaid_monitor.services.fanout import Fanout
from navaid_monitor.services.ws_server import FanoutServer, WebSocketSink

pytestmark = pytest.mark.fanout

_SNAPSHOT = {"type": "snapshot", "data": {"ils": {"path": "ACTIVE", "status": "NORMAL"}}}


@pytest.fixture()
def server() -> Iterator[tuple[FanoutServer, Fanout]]:
    fanout = Fanout()
    instance = FanoutServer(fanout, lambda: _SNAPSHOT, host="127.0.0.1", port=0)
    instance.start()
    yield instance, fanout
    fanout.close()
    instance.stop()


def test_connect_receives_greeting_then_snapshot(server) -> None:
    instance, fanout = server

    with connect(f"ws://127.0.0.1:{instance.port}", open_timeout=5) as client:
        greeting = json.loads(client.recv(timeout=5))
        snapshot = json.loads(client.recv(timeout=5))

        assert greeting["type"] == "connection"
        assert snapshot == _SNAPSHOT
        assert fanout.subscriber_count == 1


def test_broadcasts_arrive_in_order(server) -> None:
    instance, fanout = server

    with connect(f"ws://127.0.0.1:{instance.port}", open_timeout=5) as client:
        client.recv(timeout=5)
        client.recv(timeout=5)

        for index in range(10):
            fanout.broadcast({"type": "statusUpdate", "seq": index})

        received = [json.loads(client.recv(timeout=5))["seq"] for _ in range(10)]
        assert received == list(range(10))


def test_client_ping_and_snapshot_request(server) -> None:
    instance, _fanout = server

    with connect(f"ws://127.0.0.1:{instance.port}", open_timeout=5) as client:
        client.recv(timeout=5)
        client.recv(timeout=5)

        client.send(json.dumps({"type": "ping"}))
        assert json.loads(client.recv(timeout=5))["type"] == "pong"

        client.send(json.dumps({"type": "snapshot"}))
        assert json.loads(client.recv(timeout=5)) == _SNAPSHOT


def test_disconnect_unsubscribes(server) -> None:
    instance, fanout = server

    with connect(f"ws://127.0.0.1:{instance.port}", open_timeout=5) as client:
        client.recv(timeout=5)
        assert fanout.subscriber_count == 1

    # The server side notices the close asynchronously.
    for _ in range(50):
        if fanout.subscriber_count == 0:
            break
        fanout.broadcast({"type": "noop"})
        time.sleep(0.05)
    assert fanout.subscriber_count == 0


class _SteppedClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_heartbeat_ping_is_acknowledged_by_live_client() -> None:
    clock = _SteppedClock()
    fanout = Fanout(heartbeat_interval_s=30.0, clock=clock)
    instance = FanoutServer(fanout, lambda: _SNAPSHOT, host="127.0.0.1", port=0)
    instance.start()
    try:
        with connect(f"ws://127.0.0.1:{instance.port}", open_timeout=5) as client:
            client.recv(timeout=5)
            client.recv(timeout=5)
            (subscription,) = fanout.subscriptions()
            assert subscription.last_ack == 1000.0

            clock.now = 1045.0
            assert fanout.heartbeat() == []

            deadline = time.monotonic() + 5.0
            while subscription.last_ack != 1045.0 and time.monotonic() < deadline:
                time.sleep(0.02)
            assert subscription.last_ack == 1045.0

            # Acknowledged within the window, so the next sweep keeps it.
            clock.now = 1100.0
            assert fanout.heartbeat() == []
            assert fanout.subscriber_count == 1
    finally:
        fanout.close()
        instance.stop()


class _FailingConnection:
    async def ping(self) -> None:
        raise RuntimeError("transport exploded")

    async def close(self) -> None:
        raise RuntimeError("close exploded")


def test_sink_logs_failed_ping_and_close(caplog: pytest.LogCaptureFixture) -> None:
    loop = asyncio.new_event_loop()
    runner = threading.Thread(target=loop.run_forever, daemon=True)
    runner.start()
    try:
        sink = WebSocketSink(_FailingConnection(), loop, on_ack=lambda _id: None)
        sink.subscription_id = "sub-9"

        with caplog.at_level(logging.ERROR, logger="navaid_monitor.services.ws_server"):
            sink.ping()
            sink.close()
            deadline = time.monotonic() + 2.0
            while len(caplog.records) < 2 and time.monotonic() < deadline:
                time.sleep(0.02)

        messages = sorted(record.getMessage() for record in caplog.records)
        assert messages == ["Subscriber sub-9 close failed", "Subscriber sub-9 heartbeat failed"]
    finally:
        loop.call_soon_threadsafe(loop.stop)
        runner.join(timeout=2.0)
        loop.close()
