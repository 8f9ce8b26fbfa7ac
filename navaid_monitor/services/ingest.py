"""Ingest service for monitor datagrams."""
from __future__ import annotations

import logging
from typing import Optional

from navaid_monitor.domain.models import EquipmentDescriptor, EquipmentStatus, FaultKind
from navaid_monitor.services.events import EventBus, StatusChanged
from navaid_monitor.services.identification import SourceVerdict, identify_source
from navaid_monitor.services.monitor_byte import decode_packet, decode_payload, hex_dump
from navaid_monitor.services.state_tracker import StateTracker

LOGGER = logging.getLogger(__name__)


class DatagramIngest:
    """Source identification, decode, state update and publish for one datagram.

    Per-datagram problems are logged and the packet dropped; nothing raised
    here escapes to other equipment.
    """

    def __init__(
        self,
        tracker: StateTracker,
        bus: EventBus,
        *,
        allow_unknown_sources: bool = False,
    ) -> None:
        self._tracker = tracker
        self._bus = bus
        self._allow_unknown_sources = allow_unknown_sources

    def handle_datagram(
        self,
        descriptor: Optional[EquipmentDescriptor],
        payload: bytes,
        source_ip: str,
        source_port: int,
    ) -> Optional[EquipmentStatus]:
        label = f"{descriptor.name}:{descriptor.listen_port}" if descriptor else "unknown"
        LOGGER.debug(
            "[%s] UDP packet from %s:%s, %s bytes: %s",
            label,
            source_ip,
            source_port,
            len(payload),
            hex_dump(payload),
        )

        identification = identify_source(
            descriptor,
            source_ip,
            allow_unknown_sources=self._allow_unknown_sources,
        )
        if identification.descriptor is None:
            candidates = [
                f"@{located.offset}=0x{located.monitor.raw_byte:02x}"
                for located in decode_payload(payload)
            ]
            LOGGER.warning(
                "%s: dropping datagram from %s:%s with no owning equipment. Hex: %s Monitor bytes: %s",
                FaultKind.UNKNOWN_SOURCE.value,
                source_ip,
                source_port,
                hex_dump(payload),
                ", ".join(candidates) or "none",
            )
            return None

        equipment = identification.descriptor
        if identification.verdict is SourceVerdict.MISMATCH:
            log = LOGGER.warning if identification.warn else LOGGER.debug
            log(
                "[%s] Source IP mismatch: expected %s, got %s (accepted by listening port)",
                equipment.name,
                equipment.expected_source_ip,
                source_ip,
                extra={"equipment_id": equipment.id, "port": equipment.listen_port},
            )

        decoded = decode_packet(payload)
        if not decoded.ok or decoded.monitor is None:
            LOGGER.warning(
                "[%s] %s from %s: %s. Hex: %s",
                equipment.name,
                FaultKind.DECODE_INVALID.value,
                source_ip,
                decoded.error,
                hex_dump(payload),
                extra={"equipment_id": equipment.id, "port": equipment.listen_port},
            )
            return None

        status = self._tracker.record_status(
            equipment.id,
            decoded.monitor,
            source_ip,
            source_port,
            equipment.listen_port,
        )
        LOGGER.info(
            "[%s:%s] Status: %s | %s",
            equipment.name,
            equipment.listen_port,
            status.path_state.value,
            status.severity.value,
            extra={"equipment_id": equipment.id, "port": equipment.listen_port},
        )
        self._bus.publish(StatusChanged(equipment_id=equipment.id, status=status))
        return status
