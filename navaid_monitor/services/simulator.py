"""UDP packet simulator for local testing.

Each enabled equipment gets its own sending socket and targets its own
listening port on the loopback interface.
"""
from __future__ import annotations

import logging
import random
import socket
import threading
from typing import Iterable, Optional

from navaid_monitor.domain.models import EquipmentDescriptor, PathState, Severity
from navaid_monitor.services.monitor_byte import encode

LOGGER = logging.getLogger(__name__)

PACKET_LENGTH = 20
MONITOR_OFFSET = 4
# Neither sync byte matches 10xxxxxx, so the monitor byte is the first valid one.
_HEADER = bytes([0x5A, 0x55, 0x01, 0x00])

STATE_CYCLE: tuple[tuple[PathState, Severity], ...] = (
    (PathState.ACTIVE, Severity.NORMAL),
    (PathState.ACTIVE, Severity.WARNING),
    (PathState.ACTIVE, Severity.ALARM),
    (PathState.STANDBY, Severity.NORMAL),
    (PathState.STANDBY, Severity.WARNING),
    (PathState.STANDBY, Severity.ALARM),
)


def build_packet(
    path_state: PathState,
    severity: Severity,
    *,
    rng: Optional[random.Random] = None,
) -> bytes:
    generator = rng or random.Random()
    filler = bytes(generator.randrange(256) for _ in range(PACKET_LENGTH - MONITOR_OFFSET - 1))
    return _HEADER + bytes([encode(path_state, severity)]) + filler


class UdpSimulator:
    def __init__(
        self,
        descriptors: Iterable[EquipmentDescriptor],
        *,
        target_host: str = "127.0.0.1",
        interval_s: float = 5.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._equipment = [d for d in descriptors if d.enabled]
        self._target_host = target_host
        self._interval_s = interval_s
        self._rng = rng or random.Random()
        # Stagger start states so equipment does not move in lockstep.
        self._state_index = {d.id: index % len(STATE_CYCLE) for index, d in enumerate(self._equipment)}
        self._sockets: dict[str, socket.socket] = {}

    @property
    def equipment(self) -> list[EquipmentDescriptor]:
        return list(self._equipment)

    def send_once(self) -> int:
        sent = 0
        for descriptor in self._equipment:
            index = self._state_index[descriptor.id]
            path_state, severity = STATE_CYCLE[index]
            packet = build_packet(path_state, severity, rng=self._rng)
            sock = self._sockets.get(descriptor.id)
            if sock is None:
                sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._sockets[descriptor.id] = sock
            try:
                sock.sendto(packet, (self._target_host, descriptor.listen_port))
            except OSError as exc:
                LOGGER.error("Error sending packet for %s: %s", descriptor.name, exc)
            else:
                sent += 1
                LOGGER.info(
                    "%-12s -> Port %5s | %-8s | %-8s | Byte: 0x%02x",
                    descriptor.name,
                    descriptor.listen_port,
                    path_state.value,
                    severity.value,
                    packet[MONITOR_OFFSET],
                )
            self._state_index[descriptor.id] = (index + 1) % len(STATE_CYCLE)
        return sent

    def run(self, stop: threading.Event, *, count: Optional[int] = None) -> int:
        """Send rounds until ``stop`` is set or ``count`` rounds are done."""
        LOGGER.info(
            "Simulating %s equipment towards %s every %.1fs",
            len(self._equipment),
            self._target_host,
            self._interval_s,
        )
        rounds = 0
        try:
            while not stop.is_set():
                self.send_once()
                rounds += 1
                if count is not None and rounds >= count:
                    break
                stop.wait(self._interval_s)
        finally:
            self.close()
        return rounds

    def close(self) -> None:
        for sock in self._sockets.values():
            sock.close()
        self._sockets.clear()
