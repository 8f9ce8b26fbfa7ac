from __future__ import annotations

import logging

import pytest

from navaid_monitor.domain.models import EquipmentDescriptor, PathState, Severity
from navaid_monitor.services.events import EventBus, StatusChanged
from navaid_monitor.services.ingest import DatagramIngest
from navaid_monitor.services.state_tracker import StateTracker

pytestmark = pytest.mark.ingest

_ILS = EquipmentDescriptor(id="ils", name="ILS", expected_source_ip="10.0.0.5", listen_port=4001)


@pytest.fixture()
def pipeline() -> tuple[DatagramIngest, StateTracker, list]:
    tracker = StateTracker()
    bus = EventBus()
    events: list = []
    bus.subscribe(events.append)
    return DatagramIngest(tracker, bus), tracker, events


def test_valid_datagram_updates_state_and_publishes(pipeline) -> None:
    ingest, tracker, events = pipeline

    status = ingest.handle_datagram(_ILS, bytes([0x5A, 0x55, 0x01, 0x00, 0x90]), "10.0.0.5", 50001)

    assert status is not None
    assert status.path_state is PathState.STANDBY
    assert status.severity is Severity.ALARM
    assert status.listen_port == 4001
    assert tracker.get_status("ils") == status
    assert len(events) == 1
    assert isinstance(events[0], StatusChanged)
    assert events[0].status == status


def test_undecodable_payload_is_dropped(pipeline, caplog: pytest.LogCaptureFixture) -> None:
    ingest, tracker, events = pipeline

    with caplog.at_level(logging.WARNING):
        assert ingest.handle_datagram(_ILS, bytes([0x00, 0xFF]), "10.0.0.5", 50001) is None

    assert tracker.get_status("ils") is None
    assert events == []
    assert "decode_invalid" in caplog.text
    assert "00 ff" in caplog.text


def test_unowned_datagram_is_dropped_with_hex_dump(pipeline, caplog: pytest.LogCaptureFixture) -> None:
    ingest, tracker, events = pipeline

    with caplog.at_level(logging.WARNING):
        assert ingest.handle_datagram(None, bytes([0x01, 0xA0]), "10.9.9.9", 40000) is None

    assert tracker.get_all_statuses() == {}
    assert events == []
    assert "unknown_source" in caplog.text
    assert "01 a0" in caplog.text
    assert "@1=0xa0" in caplog.text


def test_source_mismatch_is_accepted_and_warned(pipeline, caplog: pytest.LogCaptureFixture) -> None:
    ingest, tracker, events = pipeline

    with caplog.at_level(logging.WARNING):
        status = ingest.handle_datagram(_ILS, bytes([0xA0]), "10.0.0.99", 50001)

    assert status is not None
    assert status.source_ip == "10.0.0.99"
    assert len(events) == 1
    assert "Source IP mismatch" in caplog.text


def test_source_mismatch_quiet_when_allowed(caplog: pytest.LogCaptureFixture) -> None:
    ingest = DatagramIngest(StateTracker(), EventBus(), allow_unknown_sources=True)

    with caplog.at_level(logging.WARNING):
        assert ingest.handle_datagram(_ILS, bytes([0xA0]), "10.0.0.99", 50001) is not None

    assert "Source IP mismatch" not in caplog.text


def test_loopback_sender_is_accepted(pipeline) -> None:
    ingest, tracker, _events = pipeline

    assert ingest.handle_datagram(_ILS, bytes([0xB8]), "127.0.0.1", 50001) is not None
    assert tracker.get_status("ils").severity is Severity.FAULT
