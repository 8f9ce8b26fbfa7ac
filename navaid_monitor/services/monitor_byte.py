"""Monitor byte codec.

A monitor byte is valid when bit 7 is set and bit 6 is clear (``10xxxxxx``).
Bit 5 carries the path state (1 = ACTIVE, 0 = STANDBY) and bits 4-3 carry the
severity (00 NORMAL, 01 WARNING, 10 ALARM, 11 FAULT). Bits 2-0 are ignored.
"""
from __future__ import annotations

from typing import Iterable

from navaid_monitor.domain.models import (
    LocatedMonitorByte,
    MonitorByte,
    PacketDecodeResult,
    PathState,
    Severity,
)

NO_MONITOR_BYTE = "No valid monitor byte found in payload"

_VALIDATION_MASK = 0xC0
_VALIDATION_PATTERN = 0x80
_PATH_BIT = 0x20
_SEVERITY_SHIFT = 3
_SEVERITY_MASK = 0x03

_SEVERITY_BY_BITS = {
    0b00: Severity.NORMAL,
    0b01: Severity.WARNING,
    0b10: Severity.ALARM,
    0b11: Severity.FAULT,
}
_BITS_BY_SEVERITY = {severity: bits for bits, severity in _SEVERITY_BY_BITS.items()}


def is_valid_monitor_byte(value: int) -> bool:
    return (value & 0x80) == 0x80 and (value & 0x40) == 0x00


def decode_byte(value: int) -> MonitorByte:
    """Decode one byte; invalid bytes yield ``MonitorByte(valid=False)``."""
    if not 0 <= value <= 0xFF:
        raise ValueError(f"Byte value out of range: {value}")

    binary = format(value, "08b")
    if not is_valid_monitor_byte(value):
        return MonitorByte(valid=False, raw_byte=value, binary_digits=binary)

    path_state = PathState.ACTIVE if value & _PATH_BIT else PathState.STANDBY
    severity = _SEVERITY_BY_BITS[(value >> _SEVERITY_SHIFT) & _SEVERITY_MASK]
    return MonitorByte(
        valid=True,
        raw_byte=value,
        binary_digits=binary,
        path_state=path_state,
        severity=severity,
    )


def encode(path_state: PathState | str, severity: Severity | str) -> int:
    """Build the monitor byte for a path state and severity."""
    path_value = PathState(path_state)
    severity_value = Severity(severity)

    value = _VALIDATION_PATTERN
    if path_value is PathState.ACTIVE:
        value |= _PATH_BIT
    value |= _BITS_BY_SEVERITY[severity_value] << _SEVERITY_SHIFT
    return value


def decode_payload(buffer: bytes | bytearray | Iterable[int]) -> list[LocatedMonitorByte]:
    """Return every valid monitor byte in the buffer with its offset."""
    found: list[LocatedMonitorByte] = []
    for offset, value in enumerate(bytes(buffer)):
        if not is_valid_monitor_byte(value):
            continue
        found.append(LocatedMonitorByte(offset=offset, monitor=decode_byte(value)))
    return found


def decode_packet(buffer: bytes | bytearray | Iterable[int]) -> PacketDecodeResult:
    """Return the first valid monitor byte in the buffer.

    The first match wins even when later bytes are also valid; the payload is
    never scanned for a "better" candidate.
    """
    for offset, value in enumerate(bytes(buffer)):
        if is_valid_monitor_byte(value):
            return PacketDecodeResult(monitor=decode_byte(value), offset=offset)
    return PacketDecodeResult(error=NO_MONITOR_BYTE)


def hex_dump(buffer: bytes | bytearray) -> str:
    return bytes(buffer).hex(" ")
