"""Resolve an inbound datagram to the equipment that owns the receiving port.

The dedicated listening socket is the identity: a datagram that arrived on an
equipment's port belongs to that equipment. The source address is only
cross-checked, and never causes a drop on its own. Loopback traffic (local
simulators) skips the cross-check entirely.
"""
from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass
from typing import Optional

from navaid_monitor.domain.models import EquipmentDescriptor


class SourceVerdict(str, enum.Enum):
    MATCH = "match"
    ANY = "any"
    LOOPBACK = "loopback"
    MISMATCH = "mismatch"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Identification:
    descriptor: Optional[EquipmentDescriptor]
    verdict: SourceVerdict
    source_ip: str
    warn: bool = False

    @property
    def accepted(self) -> bool:
        return self.descriptor is not None


def is_loopback(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped.is_loopback
    return ip.is_loopback


def identify_source(
    descriptor: Optional[EquipmentDescriptor],
    source_ip: str,
    *,
    allow_unknown_sources: bool = False,
) -> Identification:
    if descriptor is None:
        return Identification(None, SourceVerdict.UNKNOWN, source_ip)
    if descriptor.accepts_any_source:
        return Identification(descriptor, SourceVerdict.ANY, source_ip)
    if is_loopback(source_ip):
        return Identification(descriptor, SourceVerdict.LOOPBACK, source_ip)
    if _same_address(descriptor.expected_source_ip, source_ip):
        return Identification(descriptor, SourceVerdict.MATCH, source_ip)
    return Identification(
        descriptor,
        SourceVerdict.MISMATCH,
        source_ip,
        warn=not allow_unknown_sources,
    )


def _same_address(expected: str, actual: str) -> bool:
    try:
        expected_ip = ipaddress.ip_address(expected)
        actual_ip = ipaddress.ip_address(actual)
    except ValueError:
        return expected == actual
    if isinstance(actual_ip, ipaddress.IPv6Address) and actual_ip.ipv4_mapped is not None:
        actual_ip = actual_ip.ipv4_mapped
    return expected_ip == actual_ip
