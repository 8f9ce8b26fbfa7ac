"""Domain models for the navigation aid monitor."""
from __future__ import annotations

import datetime as dt
import enum
from dataclasses import dataclass
from typing import Optional

ANY_SOURCE = "any"
_LEGACY_ANY_SOURCE = "auto"


class PathState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    STANDBY = "STANDBY"


class Severity(str, enum.Enum):
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    ALARM = "ALARM"
    FAULT = "FAULT"


class FaultKind(str, enum.Enum):
    """Per-datagram and per-binding fault classes surfaced in logs and results."""

    DECODE_INVALID = "decode_invalid"
    UNKNOWN_SOURCE = "unknown_source"
    PORT_IN_USE = "port_in_use"
    BIND_PERMISSION = "bind_permission"
    SOCKET_FAULT = "socket_fault"


def normalize_source_ip(value: str) -> str:
    stripped = value.strip()
    if stripped.lower() in (ANY_SOURCE, _LEGACY_ANY_SOURCE):
        return ANY_SOURCE
    return stripped


@dataclass(frozen=True)
class EquipmentDescriptor:
    id: str
    name: str
    expected_source_ip: str
    listen_port: int
    enabled: bool = True

    @property
    def accepts_any_source(self) -> bool:
        return self.expected_source_ip == ANY_SOURCE


@dataclass(frozen=True)
class MonitorByte:
    valid: bool
    raw_byte: int
    binary_digits: str
    path_state: Optional[PathState] = None
    severity: Optional[Severity] = None


@dataclass(frozen=True)
class LocatedMonitorByte:
    offset: int
    monitor: MonitorByte


@dataclass(frozen=True)
class PacketDecodeResult:
    monitor: Optional[MonitorByte] = None
    offset: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.monitor is not None


@dataclass(frozen=True)
class EquipmentStatus:
    equipment_id: str
    path_state: PathState
    severity: Severity
    last_seen_at: dt.datetime
    connected: bool
    source_ip: Optional[str] = None
    source_port: Optional[int] = None
    listen_port: Optional[int] = None
    raw_byte: Optional[int] = None


@dataclass(frozen=True)
class HistoryEntry:
    status: EquipmentStatus
    recorded_at: dt.datetime
