"""Event channel between the listener, the administrative path and the fanout."""
from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from navaid_monitor.domain.models import EquipmentStatus

LOGGER = logging.getLogger(__name__)


def _utc_iso() -> str:
    return dt.datetime.now(tz=dt.timezone.utc).isoformat()


@dataclass(frozen=True)
class StatusChanged:
    equipment_id: str
    status: EquipmentStatus
    timestamp: str = field(default_factory=_utc_iso)


@dataclass(frozen=True)
class PortChanged:
    equipment_id: str
    old_port: int | None
    new_port: int
    timestamp: str = field(default_factory=_utc_iso)


@dataclass(frozen=True)
class EquipmentRemoved:
    equipment_id: str
    timestamp: str = field(default_factory=_utc_iso)


MonitorEvent = Union[StatusChanged, PortChanged, EquipmentRemoved]
EventHandler = Callable[[MonitorEvent], None]


class EventBus:
    """Synchronous publish/subscribe; one failing handler never blocks the rest."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: MonitorEvent) -> int:
        with self._lock:
            handlers = list(self._handlers)

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Event handler %r failed for %s", handler, type(event).__name__)
                continue
            delivered += 1
        return delivered


def status_to_dict(status: EquipmentStatus) -> dict[str, Any]:
    last_update = status.last_seen_at.isoformat()
    return {
        "equipmentId": status.equipment_id,
        "path": status.path_state.value,
        "status": status.severity.value,
        "timestamp": last_update,
        "lastUpdate": last_update,
        "connected": status.connected,
        "rawData": status.raw_byte,
        "sourceIP": status.source_ip,
        "sourcePort": status.source_port,
        "listenPort": status.listen_port,
    }


def to_message(event: MonitorEvent) -> dict[str, Any]:
    """Wire representation sent to live subscribers."""
    if isinstance(event, StatusChanged):
        return {
            "type": "statusUpdate",
            "equipmentId": event.equipment_id,
            "data": status_to_dict(event.status),
            "timestamp": event.timestamp,
        }
    if isinstance(event, PortChanged):
        return {
            "type": "port_changed",
            "data": {
                "equipmentId": event.equipment_id,
                "oldPort": event.old_port,
                "newPort": event.new_port,
                "timestamp": event.timestamp,
            },
        }
    if isinstance(event, EquipmentRemoved):
        return {
            "type": "equipment_removed",
            "data": {"equipmentId": event.equipment_id, "timestamp": event.timestamp},
        }
    raise TypeError(f"Unsupported event type: {type(event).__name__}")
