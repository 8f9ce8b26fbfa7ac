"""Input validation for equipment descriptors."""
from __future__ import annotations

import re
from typing import Any, Optional

from navaid_monitor.domain.models import ANY_SOURCE, normalize_source_ip

MIN_PORT = 1024
MAX_PORT = 65535

_IPV4_PATTERN = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")


class ValidationError(RuntimeError):
    """Raised when equipment input is rejected; ``errors`` maps field to message."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = dict(errors)
        detail = "; ".join(f"{field}: {message}" for field, message in self.errors.items())
        super().__init__(f"Validation failed: {detail}")


def validate_ipv4(value: Any) -> Optional[str]:
    """Return an error message, or None when ``value`` is acceptable."""
    if value is None or not str(value).strip():
        return "IP address is required"
    if normalize_source_ip(str(value)) == ANY_SOURCE:
        return None

    match = _IPV4_PATTERN.match(str(value).strip())
    if not match:
        return "Invalid IP format. Expected: xxx.xxx.xxx.xxx"
    if any(int(octet) > 255 for octet in match.groups()):
        return "IP octet must be 0-255"
    return None


def validate_port(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "Port must be a number"
    if isinstance(value, float):
        if not value.is_integer():
            return "Port must be an integer"
        value = int(value)
    try:
        port = int(value)
    except (TypeError, ValueError):
        return "Port must be a number"
    if port < MIN_PORT:
        return f"Port must be >= {MIN_PORT} (non-privileged)"
    if port > MAX_PORT:
        return f"Port must be <= {MAX_PORT}"
    return None


def validate_name(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return "Name is required"
    trimmed = value.strip()
    if len(trimmed) < 3:
        return "Name must be at least 3 characters"
    if len(trimmed) > 50:
        return "Name must be less than 50 characters"
    return None


def generate_equipment_id(name: str) -> str:
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def validate_equipment(name: Any, ip: Any, port: Any) -> None:
    """Raise ValidationError listing every invalid field."""
    errors: dict[str, str] = {}
    for field, message in (
        ("name", validate_name(name)),
        ("ip", validate_ipv4(ip)),
        ("port", validate_port(port)),
    ):
        if message is not None:
            errors[field] = message
    if errors:
        raise ValidationError(errors)


def require_valid_port(value: Any) -> int:
    message = validate_port(value)
    if message is not None:
        raise ValidationError({"port": message})
    return int(value)
