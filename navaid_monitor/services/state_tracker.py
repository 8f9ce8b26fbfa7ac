"""In-memory equipment status and history tracking."""
from __future__ import annotations

import collections
import dataclasses
import datetime as dt
import itertools
import logging
import threading
from typing import Callable, Deque, Optional

from navaid_monitor.domain.models import EquipmentStatus, HistoryEntry, MonitorByte

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_CAPACITY = 100
DEFAULT_LIVENESS_TIMEOUT_MS = 30_000


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.timezone.utc)


class StateTracker:
    """Current status map plus a bounded, most-recent-first history per equipment.

    Each equipment id has its own lock; the registry lock only guards creation
    and removal of per-id entries, so records for different ids never wait on
    each other.
    """

    def __init__(
        self,
        *,
        history_capacity: int = DEFAULT_HISTORY_CAPACITY,
        clock: Callable[[], dt.datetime] = utc_now,
    ) -> None:
        if history_capacity < 1:
            raise ValueError("history_capacity must be >= 1")
        self._capacity = history_capacity
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._statuses: dict[str, EquipmentStatus] = {}
        self._history: dict[str, Deque[HistoryEntry]] = {}

    @property
    def history_capacity(self) -> int:
        return self._capacity

    def record_status(
        self,
        equipment_id: str,
        decoded: MonitorByte,
        source_ip: Optional[str],
        source_port: Optional[int],
        listen_port: Optional[int],
    ) -> EquipmentStatus:
        if not decoded.valid or decoded.path_state is None or decoded.severity is None:
            raise ValueError(f"Cannot record invalid monitor byte 0x{decoded.raw_byte:02x}")

        with self._lock_for(equipment_id):
            now = self._clock()
            status = EquipmentStatus(
                equipment_id=equipment_id,
                path_state=decoded.path_state,
                severity=decoded.severity,
                last_seen_at=now,
                connected=True,
                source_ip=source_ip,
                source_port=source_port,
                listen_port=listen_port,
                raw_byte=decoded.raw_byte,
            )
            self._statuses[equipment_id] = status
            ring = self._history.setdefault(equipment_id, collections.deque(maxlen=self._capacity))
            ring.appendleft(HistoryEntry(status=status, recorded_at=now))
        return status

    def get_status(self, equipment_id: str) -> Optional[EquipmentStatus]:
        return self._statuses.get(equipment_id)

    def get_all_statuses(self) -> dict[str, EquipmentStatus]:
        return dict(self._statuses)

    def get_history(self, equipment_id: str, limit: int = 50) -> list[HistoryEntry]:
        ring = self._history.get(equipment_id)
        if ring is None or limit <= 0:
            return []
        with self._lock_for(equipment_id):
            return list(itertools.islice(ring, min(limit, self._capacity)))

    def last_seen(self, equipment_id: str) -> Optional[dt.datetime]:
        status = self._statuses.get(equipment_id)
        return status.last_seen_at if status is not None else None

    def sweep_liveness(
        self,
        timeout_ms: int = DEFAULT_LIVENESS_TIMEOUT_MS,
        *,
        now: Optional[dt.datetime] = None,
    ) -> list[str]:
        """Mark equipment silent for longer than ``timeout_ms`` as disconnected.

        Last known path state, severity and ``last_seen_at`` are kept.
        Returns the ids demoted by this sweep.
        """
        reference = now if now is not None else self._clock()
        timeout = dt.timedelta(milliseconds=timeout_ms)
        demoted: list[str] = []

        for equipment_id in list(self._statuses):
            with self._lock_for(equipment_id):
                status = self._statuses.get(equipment_id)
                if status is None or not status.connected:
                    continue
                if reference - status.last_seen_at > timeout:
                    self._statuses[equipment_id] = dataclasses.replace(status, connected=False)
                    demoted.append(equipment_id)

        if demoted:
            LOGGER.info("Liveness sweep marked %s equipment disconnected: %s", len(demoted), demoted)
        return demoted

    def forget(self, equipment_id: str) -> None:
        with self._lock_for(equipment_id):
            self._statuses.pop(equipment_id, None)
            self._history.pop(equipment_id, None)
        with self._registry_lock:
            self._key_locks.pop(equipment_id, None)

    def clear(self) -> None:
        with self._registry_lock:
            self._statuses.clear()
            self._history.clear()
            self._key_locks.clear()

    def _lock_for(self, equipment_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(equipment_id)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[equipment_id] = lock
            return lock
