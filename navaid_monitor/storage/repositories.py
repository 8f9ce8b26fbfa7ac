"""Equipment descriptor storage backed by a JSON file."""
from __future__ import annotations

import json
import logging
import os
import pathlib
import tempfile
import threading
from typing import Any, Optional

from navaid_monitor.domain.models import EquipmentDescriptor, normalize_source_ip

LOGGER = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the equipment file cannot be read or written."""


class EquipmentRepository:
    """Descriptor list persisted as ``{"server": {...}, "equipment": [...]}``.

    Records use the on-disk keys ``id``, ``name``, ``ip``, ``port`` and
    ``enabled``. The ``server`` section is carried through untouched.
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path)
        self._lock = threading.Lock()
        self._equipment: dict[str, EquipmentDescriptor] = {}
        self._server: dict[str, Any] = {}

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def load(self) -> list[EquipmentDescriptor]:
        if not self._path.exists():
            LOGGER.warning("Equipment file %s not found, starting with no equipment", self._path)
            with self._lock:
                self._equipment = {}
                self._server = {}
            return []

        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Could not read equipment file {self._path}: {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("equipment", []), list):
            raise StorageError(f"Equipment file {self._path} must hold an 'equipment' list")

        descriptors = [
            _descriptor_from_record(record, self._path, index)
            for index, record in enumerate(data.get("equipment", []))
        ]
        seen_ports: dict[int, str] = {}
        for descriptor in descriptors:
            other = seen_ports.setdefault(descriptor.listen_port, descriptor.id)
            if other != descriptor.id:
                raise StorageError(
                    f"Port {descriptor.listen_port} is assigned to both {other} and {descriptor.id}"
                )

        with self._lock:
            self._equipment = {descriptor.id: descriptor for descriptor in descriptors}
            self._server = dict(data.get("server") or {})
        LOGGER.info("Loaded %s equipment from %s", len(descriptors), self._path)
        return descriptors

    def all(self) -> list[EquipmentDescriptor]:
        with self._lock:
            return list(self._equipment.values())

    def get(self, equipment_id: str) -> Optional[EquipmentDescriptor]:
        with self._lock:
            return self._equipment.get(equipment_id)

    def find_by_port(self, port: int) -> Optional[EquipmentDescriptor]:
        with self._lock:
            for descriptor in self._equipment.values():
                if descriptor.listen_port == port:
                    return descriptor
            return None

    def upsert(self, descriptor: EquipmentDescriptor) -> None:
        with self._lock:
            self._equipment[descriptor.id] = descriptor

    def remove(self, equipment_id: str) -> bool:
        with self._lock:
            return self._equipment.pop(equipment_id, None) is not None

    def save(self) -> None:
        with self._lock:
            payload = {
                "server": dict(self._server),
                "equipment": [_record_from_descriptor(d) for d in self._equipment.values()],
            }
        _atomic_write_json(self._path, payload)
        LOGGER.info("Equipment configuration saved to %s", self._path)


def _descriptor_from_record(record: Any, path: pathlib.Path, index: int) -> EquipmentDescriptor:
    if not isinstance(record, dict):
        raise StorageError(f"Equipment entry #{index} in {path} is not an object")
    try:
        equipment_id = str(record["id"]).strip()
        name = str(record.get("name") or equipment_id).strip()
        ip = normalize_source_ip(str(record.get("ip", "any")))
        port = int(record["port"])
    except (KeyError, TypeError, ValueError) as exc:
        raise StorageError(f"Invalid equipment entry #{index} in {path}: {exc}") from exc
    if not equipment_id:
        raise StorageError(f"Equipment entry #{index} in {path} has an empty id")

    return EquipmentDescriptor(
        id=equipment_id,
        name=name,
        expected_source_ip=ip,
        listen_port=port,
        enabled=record.get("enabled", True) is not False,
    )


def _record_from_descriptor(descriptor: EquipmentDescriptor) -> dict[str, Any]:
    return {
        "id": descriptor.id,
        "name": descriptor.name,
        "ip": descriptor.expected_source_ip,
        "port": descriptor.listen_port,
        "enabled": descriptor.enabled,
    }


def _atomic_write_json(path: pathlib.Path, payload: dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        raise StorageError(f"Could not write equipment file {path}: {exc}") from exc
