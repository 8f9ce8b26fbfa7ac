from __future__ import annotations

import random
import socket
import threading
from typing import Callable

import pytest

from navaid_monitor.domain.models import EquipmentDescriptor, PathState, Severity
from navaid_monitor.services.monitor_byte import decode_packet
from navaid_monitor.services.simulator import (
    MONITOR_OFFSET,
    PACKET_LENGTH,
    STATE_CYCLE,
    UdpSimulator,
    build_packet,
)

pytestmark = pytest.mark.simulator


def test_packet_decodes_to_requested_state() -> None:
    rng = random.Random(7)
    for path_state, severity in STATE_CYCLE:
        for _ in range(20):
            packet = build_packet(path_state, severity, rng=rng)
            assert len(packet) == PACKET_LENGTH
            result = decode_packet(packet)
            assert result.offset == MONITOR_OFFSET
            assert result.monitor.path_state is path_state
            assert result.monitor.severity is severity


def test_simulator_sends_to_each_enabled_port(free_udp_port: Callable[[], int]) -> None:
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", free_udp_port()))
    receiver.settimeout(2.0)
    port = receiver.getsockname()[1]
    descriptors = [
        EquipmentDescriptor(id="ils", name="ILS", expected_source_ip="any", listen_port=port),
        EquipmentDescriptor(id="vor", name="VOR", expected_source_ip="any", listen_port=1, enabled=False),
    ]
    simulator = UdpSimulator(descriptors, interval_s=0.01, rng=random.Random(1))

    try:
        assert [d.id for d in simulator.equipment] == ["ils"]
        assert simulator.run(threading.Event(), count=2) == 2

        first = decode_packet(receiver.recvfrom(1024)[0])
        second = decode_packet(receiver.recvfrom(1024)[0])
    finally:
        receiver.close()

    assert (first.monitor.path_state, first.monitor.severity) == (PathState.ACTIVE, Severity.NORMAL)
    assert (second.monitor.path_state, second.monitor.severity) == (PathState.ACTIVE, Severity.WARNING)


def test_run_returns_immediately_when_stopped() -> None:
    stop = threading.Event()
    stop.set()
    assert UdpSimulator([], interval_s=10).run(stop) == 0
