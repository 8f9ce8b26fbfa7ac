"""Administrative path for equipment changes at runtime.

Every mutation goes through one lock so the socket map, the descriptor file
and the status tracker change together, and never from a datagram handler.
Events go out only after the change has been saved.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from typing import Any, Iterable, Mapping, Optional

from navaid_monitor.domain.models import EquipmentDescriptor, normalize_source_ip
from navaid_monitor.services.events import EquipmentRemoved, EventBus, PortChanged
from navaid_monitor.services.socket_manager import ListenerError, PortInUseError, SocketManager
from navaid_monitor.services.state_tracker import StateTracker
from navaid_monitor.services.validation import (
    MAX_PORT,
    MIN_PORT,
    ValidationError,
    generate_equipment_id,
    require_valid_port,
    validate_equipment,
    validate_ipv4,
    validate_name,
    validate_port,
)
from navaid_monitor.storage.repositories import EquipmentRepository

LOGGER = logging.getLogger(__name__)


class AdminError(RuntimeError):
    """Raised when an administrative request is rejected."""


class EquipmentNotFoundError(AdminError):
    """Raised when an equipment id is unknown."""


class DuplicateEquipmentError(AdminError):
    """Raised when an equipment id already exists."""


def prepare_descriptor(
    repository: EquipmentRepository,
    name: str,
    ip: str,
    port: int,
    *,
    enabled: bool = True,
    equipment_id: Optional[str] = None,
) -> EquipmentDescriptor:
    """Validate input for a new equipment and build its descriptor.

    Shared by the runtime admin path and the offline CLI.
    """
    validate_equipment(name, ip, port)
    new_id = equipment_id or generate_equipment_id(name)
    if not new_id:
        raise ValidationError({"name": "Name must contain letters or digits"})
    if repository.get(new_id) is not None:
        raise DuplicateEquipmentError(f"Equipment with ID '{new_id}' already exists")
    return EquipmentDescriptor(
        id=new_id,
        name=name.strip(),
        expected_source_ip=normalize_source_ip(ip),
        listen_port=int(port),
        enabled=enabled,
    )


def port_owner(
    repository: EquipmentRepository,
    port: int,
    *,
    exclude_id: Optional[str] = None,
    manager: Optional[SocketManager] = None,
) -> Optional[str]:
    """Id holding ``port``: a live binding first, then the descriptor file."""
    if manager is not None and manager.is_port_in_use(port, exclude_id=exclude_id):
        return manager.owner_of(port)
    configured = repository.find_by_port(port)
    if configured is not None and configured.id != exclude_id:
        return configured.id
    return None


def ensure_port_free(
    repository: EquipmentRepository,
    port: int,
    *,
    exclude_id: Optional[str] = None,
    manager: Optional[SocketManager] = None,
) -> None:
    owner = port_owner(repository, port, exclude_id=exclude_id, manager=manager)
    if owner is not None:
        raise PortInUseError(f"Port {port} is already in use by {owner}")


class EquipmentAdmin:
    def __init__(
        self,
        repository: EquipmentRepository,
        manager: SocketManager,
        tracker: StateTracker,
        bus: EventBus,
    ) -> None:
        self._repository = repository
        self._manager = manager
        self._tracker = tracker
        self._bus = bus
        self._lock = threading.Lock()

    def list_equipment(self) -> list[EquipmentDescriptor]:
        return self._repository.all()

    def get_equipment(self, equipment_id: str) -> EquipmentDescriptor:
        descriptor = self._repository.get(equipment_id)
        if descriptor is None:
            raise EquipmentNotFoundError(f"Equipment {equipment_id} not found")
        return descriptor

    def add_equipment(
        self,
        name: str,
        ip: str,
        port: int,
        *,
        enabled: bool = True,
        equipment_id: Optional[str] = None,
    ) -> EquipmentDescriptor:
        with self._lock:
            descriptor = prepare_descriptor(
                self._repository, name, ip, port, enabled=enabled, equipment_id=equipment_id
            )
            ensure_port_free(self._repository, descriptor.listen_port, manager=self._manager)

            if enabled:
                self._manager.add_equipment(descriptor)
            else:
                self._manager.register(descriptor)
            self._repository.upsert(descriptor)
            self._repository.save()

        LOGGER.info("Added equipment %s on port %s", descriptor.id, descriptor.listen_port)
        return descriptor

    def update_equipment(
        self,
        equipment_id: str,
        *,
        name: Optional[str] = None,
        ip: Optional[str] = None,
        port: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> EquipmentDescriptor:
        errors: dict[str, str] = {}
        for field, value, check in (("name", name, validate_name), ("ip", ip, validate_ipv4), ("port", port, validate_port)):
            if value is None:
                continue
            message = check(value)
            if message is not None:
                errors[field] = message
        if errors:
            raise ValidationError(errors)

        event: Optional[PortChanged] = None
        with self._lock:
            current = self.get_equipment(equipment_id)
            updated = dataclasses.replace(
                current,
                name=name.strip() if name is not None else current.name,
                expected_source_ip=normalize_source_ip(ip) if ip is not None else current.expected_source_ip,
                enabled=current.enabled if enabled is None else enabled,
            )

            moved = port is not None and int(port) != current.listen_port
            try:
                if moved:
                    self._move(updated, int(port))
                    updated = dataclasses.replace(updated, listen_port=int(port))
                self._apply_enabled(current, updated)
            except (AdminError, ListenerError):
                if moved:
                    self._roll_back(current)
                raise

            self._repository.upsert(updated)
            self._repository.save()
            if moved:
                event = PortChanged(equipment_id=current.id, old_port=current.listen_port, new_port=updated.listen_port)

        if event is not None:
            self._bus.publish(event)
        return updated

    def update_port(self, equipment_id: str, port: int) -> EquipmentDescriptor:
        new_port = require_valid_port(port)

        with self._lock:
            current = self.get_equipment(equipment_id)
            if current.listen_port == new_port:
                return current
            self._move(current, new_port)
            updated = dataclasses.replace(current, listen_port=new_port)
            self._repository.upsert(updated)
            self._repository.save()

        self._bus.publish(PortChanged(equipment_id=current.id, old_port=current.listen_port, new_port=new_port))
        return updated

    def update_ports(self, updates: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Apply several ``{"id", "port"}`` moves; one failure never stops the rest.

        Returns one ``{"id", "port", "success"[, "error"]}`` result per item and
        saves the descriptor file once at the end.
        """
        results: list[dict[str, Any]] = []
        events: list[PortChanged] = []
        with self._lock:
            for update in updates:
                equipment_id = update.get("id")
                port = update.get("port")
                result: dict[str, Any] = {"id": equipment_id, "port": port}
                try:
                    new_port = require_valid_port(port)
                    current = self.get_equipment(str(equipment_id))
                    if current.listen_port != new_port:
                        self._move(current, new_port)
                        self._repository.upsert(dataclasses.replace(current, listen_port=new_port))
                        events.append(
                            PortChanged(equipment_id=current.id, old_port=current.listen_port, new_port=new_port)
                        )
                except (AdminError, ListenerError, ValidationError) as exc:
                    LOGGER.warning("Port update for %s to %s failed: %s", equipment_id, port, exc)
                    result.update(success=False, error=str(exc))
                else:
                    result["success"] = True
                results.append(result)

            if events:
                self._repository.save()

        for event in events:
            self._bus.publish(event)
        LOGGER.info("Batch port update: %s of %s applied", sum(r["success"] for r in results), len(results))
        return results

    def remove_equipment(self, equipment_id: str) -> EquipmentDescriptor:
        with self._lock:
            descriptor = self.get_equipment(equipment_id)
            self._manager.remove_equipment(equipment_id)
            self._tracker.forget(equipment_id)
            self._repository.remove(equipment_id)
            self._repository.save()

        LOGGER.info("Removed equipment %s", equipment_id)
        self._bus.publish(EquipmentRemoved(equipment_id=equipment_id))
        return descriptor

    def check_port(self, port: int, exclude_id: Optional[str] = None) -> dict[str, Any]:
        checked = require_valid_port(port)
        owner = port_owner(self._repository, checked, exclude_id=exclude_id, manager=self._manager)
        return {"port": checked, "available": owner is None, "usedBy": owner}

    def next_free_port(self, start: int = 4000) -> int:
        for candidate in range(max(start, MIN_PORT), MAX_PORT + 1):
            if port_owner(self._repository, candidate, manager=self._manager) is None:
                return candidate
        raise AdminError("No free port available")

    def port_overview(self) -> list[dict[str, Any]]:
        overview = []
        for descriptor in self._repository.all():
            last_seen = self._tracker.last_seen(descriptor.id)
            overview.append(
                {
                    "id": descriptor.id,
                    "name": descriptor.name,
                    "ip": descriptor.expected_source_ip,
                    "port": descriptor.listen_port,
                    "enabled": descriptor.enabled,
                    "listening": self._manager.is_listening(descriptor.listen_port),
                    "lastPacket": last_seen.isoformat() if last_seen else None,
                }
            )
        return overview

    def _move(self, descriptor: EquipmentDescriptor, new_port: int) -> None:
        ensure_port_free(self._repository, new_port, exclude_id=descriptor.id, manager=self._manager)
        try:
            self._manager.update_port(descriptor.id, new_port)
        except PortInUseError:
            raise
        except ListenerError as exc:
            raise AdminError(f"Could not move {descriptor.id} to port {new_port}: {exc}") from exc

    def _roll_back(self, current: EquipmentDescriptor) -> None:
        try:
            self._manager.update_port(current.id, current.listen_port)
        except ListenerError as exc:
            LOGGER.error("Could not restore %s on port %s: %s", current.id, current.listen_port, exc)
            return
        if self._manager.owner_of(current.listen_port) == current.id:
            self._manager.refresh_descriptor(current)
        else:
            self._manager.register(current)

    def _apply_enabled(self, before: EquipmentDescriptor, after: EquipmentDescriptor) -> None:
        if not after.enabled:
            self._manager.remove_equipment(after.id)
            self._manager.register(after)
        elif self._manager.owner_of(after.listen_port) == after.id:
            self._manager.refresh_descriptor(after)
        else:
            self._manager.register(after)
            try:
                self._manager.add_equipment(after)
            except ListenerError as exc:
                self._manager.register(before)
                raise AdminError(f"Could not enable {after.id} on port {after.listen_port}: {exc}") from exc
