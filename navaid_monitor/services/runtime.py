"""Process wiring: listener, tracker, fanout, timers and the WebSocket server."""
from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Callable, Optional

from navaid_monitor.config import MonitorSettings
from navaid_monitor.services.equipment_admin import EquipmentAdmin
from navaid_monitor.services.events import EventBus, status_to_dict
from navaid_monitor.services.fanout import Fanout
from navaid_monitor.services.ingest import DatagramIngest
from navaid_monitor.services.socket_manager import BindResult, SocketManager
from navaid_monitor.services.state_tracker import StateTracker
from navaid_monitor.services.ws_server import FanoutServer
from navaid_monitor.storage.repositories import EquipmentRepository

LOGGER = logging.getLogger(__name__)


class PeriodicTask:
    """Calls ``action`` every ``interval_s`` on a daemon thread until stopped."""

    def __init__(self, name: str, interval_s: float, action: Callable[[], Any]) -> None:
        self._name = name
        self._interval_s = interval_s
        self._action = action
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval_s + 1.0)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval_s):
            try:
                self._action()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Periodic task %s failed", self._name)


class MonitorRuntime:
    def __init__(self, settings: MonitorSettings) -> None:
        self.settings = settings
        self.repository = EquipmentRepository(settings.equipment_path)
        self.tracker = StateTracker(history_capacity=settings.history_capacity)
        self.bus = EventBus()
        self.fanout = Fanout(heartbeat_interval_s=settings.heartbeat_interval_s)
        self.ingest = DatagramIngest(
            self.tracker,
            self.bus,
            allow_unknown_sources=settings.allow_unknown_sources,
        )
        self.manager = SocketManager(
            self.ingest.handle_datagram,
            host=settings.host,
        )
        self.admin = EquipmentAdmin(self.repository, self.manager, self.tracker, self.bus)
        self.server = FanoutServer(
            self.fanout,
            self.snapshot,
            host=settings.ws_host,
            port=settings.ws_port,
        )
        self._tasks = [
            PeriodicTask(
                "liveness-sweep",
                settings.sweep_interval_s,
                lambda: self.tracker.sweep_liveness(settings.liveness_timeout_ms),
            ),
            PeriodicTask("fanout-heartbeat", settings.heartbeat_interval_s, self.fanout.heartbeat),
        ]
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._started = False
        self._stopped = threading.Event()

    def snapshot(self) -> dict[str, Any]:
        return {
            "type": "snapshot",
            "data": {
                equipment_id: status_to_dict(status)
                for equipment_id, status in self.tracker.get_all_statuses().items()
            },
        }

    def start(self) -> dict[str, BindResult]:
        if self._started:
            raise RuntimeError("Runtime already started")
        self._started = True

        descriptors = self.repository.load()
        self._unsubscribe = self.bus.subscribe(self.fanout.handle_event)
        self.server.start()
        results = self.manager.start(descriptors)
        for task in self._tasks:
            task.start()

        for descriptor in descriptors:
            state = "listening" if self.manager.is_listening(descriptor.listen_port) else "not listening"
            LOGGER.info(
                "  %-15s %-15s port %5s %s",
                descriptor.name,
                descriptor.expected_source_ip,
                descriptor.listen_port,
                state,
            )
        LOGGER.info("Live updates on ws://%s:%s", self.settings.ws_host, self.server.port)
        return results

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        LOGGER.info("Shutting down")
        for task in self._tasks:
            task.stop()
        self.manager.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
        self.fanout.close()
        self.server.stop()

    def run_forever(self) -> None:
        """Start, block until SIGINT/SIGTERM, then stop."""
        stop_requested = threading.Event()

        def _request_stop(signum: int, _frame: Any) -> None:
            LOGGER.info("Received signal %s", signum)
            stop_requested.set()

        previous = {
            sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            self.start()
            while not stop_requested.wait(1.0):
                pass
        finally:
            self.stop()
            for sig, handler in previous.items():
                signal.signal(sig, handler)
