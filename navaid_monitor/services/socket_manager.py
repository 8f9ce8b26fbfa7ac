"""Per-equipment UDP sockets with runtime add, remove and rebind."""
from __future__ import annotations

import dataclasses
import enum
import errno
import logging
import socket
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from navaid_monitor.domain.models import EquipmentDescriptor, FaultKind

LOGGER = logging.getLogger(__name__)

DatagramHandler = Callable[[Optional[EquipmentDescriptor], bytes, str, int], None]

_JOIN_TIMEOUT_S = 2.0
# Largest UDP payload; recvfrom truncates anything past the buffer size.
MAX_DATAGRAM_SIZE = 65535


class ListenerError(RuntimeError):
    """Raised when a listener operation is rejected."""

    kind: FaultKind = FaultKind.SOCKET_FAULT


class PortInUseError(ListenerError):
    """Raised when a port already has a binding."""

    kind = FaultKind.PORT_IN_USE


class BindPermissionError(ListenerError):
    """Raised when the OS denies binding a port."""

    kind = FaultKind.BIND_PERMISSION


class BindError(ListenerError):
    """Raised when binding fails for any other OS reason."""


class UnknownEquipmentError(ListenerError):
    """Raised when an equipment id was never handed to this manager."""


class BindingState(str, enum.Enum):
    UNBOUND = "UNBOUND"
    BINDING = "BINDING"
    LISTENING = "LISTENING"
    CLOSING = "CLOSING"


@dataclass
class SocketBinding:
    port: int
    descriptor: EquipmentDescriptor
    sock: socket.socket
    state: BindingState = BindingState.BINDING
    closed: threading.Event = field(default_factory=threading.Event)
    reader: Optional[threading.Thread] = None

    @property
    def owner_id(self) -> str:
        return self.descriptor.id


@dataclass(frozen=True)
class BindResult:
    equipment_id: str
    port: int
    error: Optional[ListenerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SocketManager:
    """Owns one bound UDP socket per enabled equipment, keyed by port.

    Every datagram is handed to ``handler(descriptor, payload, source_ip,
    source_port)`` from the reader thread of the receiving port. The handler
    must not call back into add/remove/update on this manager.
    """

    def __init__(
        self,
        handler: DatagramHandler,
        *,
        host: str = "0.0.0.0",
        poll_interval_s: float = 0.2,
    ) -> None:
        self._handler = handler
        self._host = host
        self._poll_interval_s = poll_interval_s
        self._lock = threading.RLock()
        self._bindings: dict[int, SocketBinding] = {}
        self._known: dict[str, EquipmentDescriptor] = {}
        self._retired: list[threading.Thread] = []

    # -------- lifecycle --------

    def start(self, descriptors: Iterable[EquipmentDescriptor]) -> dict[str, BindResult]:
        """Bind every enabled descriptor; failures are reported, not raised."""
        results: dict[str, BindResult] = {}
        for descriptor in descriptors:
            self.register(descriptor)
            if not descriptor.enabled:
                LOGGER.info("Skipping disabled equipment %s (port %s)", descriptor.id, descriptor.listen_port)
                continue
            try:
                self.add_equipment(descriptor)
            except ListenerError as exc:
                LOGGER.error("Could not listen for %s on port %s: %s", descriptor.id, descriptor.listen_port, exc)
                results[descriptor.id] = BindResult(descriptor.id, descriptor.listen_port, exc)
            else:
                results[descriptor.id] = BindResult(descriptor.id, descriptor.listen_port)

        listening = sum(1 for result in results.values() if result.ok)
        LOGGER.info("UDP listener started for %s of %s equipment", listening, len(results))
        return results

    def stop(self) -> None:
        with self._lock:
            bindings = list(self._bindings.values())
            self._bindings.clear()
            for binding in bindings:
                self._close(binding)
            readers = self._retired
            self._retired = []

        for reader in readers:
            if reader is not threading.current_thread():
                reader.join(timeout=_JOIN_TIMEOUT_S)
        if bindings:
            LOGGER.info("Closed %s UDP listener(s)", len(bindings))

    # -------- administrative operations --------

    def register(self, descriptor: EquipmentDescriptor) -> None:
        """Remember a descriptor without binding it (disabled or not yet started)."""
        with self._lock:
            self._known[descriptor.id] = descriptor

    def add_equipment(self, descriptor: EquipmentDescriptor) -> SocketBinding:
        with self._lock:
            existing = self._bindings.get(descriptor.listen_port)
            if existing is not None:
                raise PortInUseError(
                    f"Port {descriptor.listen_port} is already in use by {existing.owner_id}"
                )
            current = self._binding_for(descriptor.id)
            if current is not None:
                raise ListenerError(
                    f"Equipment {descriptor.id} is already listening on port {current.port}"
                )

            self._known[descriptor.id] = descriptor
            binding = self._bind(descriptor)
            LOGGER.info("Listening for %s (%s) on port %s", descriptor.id, descriptor.name, binding.port)
            return binding

    def remove_equipment(self, equipment_id: str) -> bool:
        with self._lock:
            self._known.pop(equipment_id, None)
            binding = self._binding_for(equipment_id)
            if binding is None:
                return False
            del self._bindings[binding.port]
            self._close(binding)
            LOGGER.info("Removed listener for %s on port %s", equipment_id, binding.port)
            return True

    def update_port(self, equipment_id: str, new_port: int) -> EquipmentDescriptor:
        """Move an equipment to ``new_port``: close the old socket, then bind the new one."""
        with self._lock:
            descriptor = self._known.get(equipment_id)
            if descriptor is None:
                raise UnknownEquipmentError(f"Equipment {equipment_id} not found")

            current = self._binding_for(equipment_id)
            if current is not None and current.port == new_port:
                return current.descriptor
            if self.is_port_in_use(new_port, exclude_id=equipment_id):
                raise PortInUseError(
                    f"Port {new_port} is already in use by {self._bindings[new_port].owner_id}"
                )

            old_port = descriptor.listen_port
            if current is not None:
                del self._bindings[current.port]
                self._close(current)
                LOGGER.info("Closed %s port %s", equipment_id, current.port)

            moved = dataclasses.replace(descriptor, listen_port=new_port)
            self._known[equipment_id] = moved
            if not moved.enabled and current is None:
                return moved

            try:
                self._bind(moved)
            except ListenerError:
                self._known[equipment_id] = descriptor
                if current is not None:
                    self._restore(descriptor)
                raise

            LOGGER.info("%s moved from port %s to %s", equipment_id, old_port, new_port)
            return moved

    def refresh_descriptor(self, descriptor: EquipmentDescriptor) -> None:
        """Swap in updated name, source ip or enabled flag without touching the socket."""
        with self._lock:
            known = self._known.get(descriptor.id)
            if known is None:
                raise UnknownEquipmentError(f"Equipment {descriptor.id} not found")
            if descriptor.listen_port != known.listen_port:
                raise ValueError("Use update_port to change the listening port")
            self._known[descriptor.id] = descriptor
            binding = self._binding_for(descriptor.id)
            if binding is not None:
                binding.descriptor = descriptor

    # -------- queries --------

    def is_listening(self, port: int) -> bool:
        with self._lock:
            binding = self._bindings.get(port)
            return binding is not None and binding.state is BindingState.LISTENING

    def is_port_in_use(self, port: int, exclude_id: Optional[str] = None) -> bool:
        with self._lock:
            binding = self._bindings.get(port)
            if binding is None:
                return False
            return binding.owner_id != exclude_id

    def owner_of(self, port: int) -> Optional[str]:
        with self._lock:
            binding = self._bindings.get(port)
            return binding.owner_id if binding is not None else None

    def descriptor_for_port(self, port: int) -> Optional[EquipmentDescriptor]:
        with self._lock:
            binding = self._bindings.get(port)
            return binding.descriptor if binding is not None else None

    def binding_state(self, port: int) -> BindingState:
        with self._lock:
            binding = self._bindings.get(port)
            return binding.state if binding is not None else BindingState.UNBOUND

    def bindings(self) -> dict[int, str]:
        with self._lock:
            return {port: binding.owner_id for port, binding in self._bindings.items()}

    # -------- internals --------

    def _binding_for(self, equipment_id: str) -> Optional[SocketBinding]:
        for binding in self._bindings.values():
            if binding.owner_id == equipment_id:
                return binding
        return None

    def _bind(self, descriptor: EquipmentDescriptor) -> SocketBinding:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        binding = SocketBinding(port=descriptor.listen_port, descriptor=descriptor, sock=sock)
        try:
            sock.bind((self._host, descriptor.listen_port))
        except OSError as exc:
            sock.close()
            binding.state = BindingState.UNBOUND
            raise _bind_error(descriptor, exc) from exc

        sock.settimeout(self._poll_interval_s)
        binding.state = BindingState.LISTENING
        self._bindings[binding.port] = binding
        binding.reader = threading.Thread(
            target=self._read_loop,
            args=(binding,),
            name=f"udp-{descriptor.id}-{binding.port}",
            daemon=True,
        )
        binding.reader.start()
        return binding

    def _restore(self, descriptor: EquipmentDescriptor) -> None:
        try:
            self._bind(descriptor)
        except ListenerError as exc:
            LOGGER.error("Could not restore %s on port %s: %s", descriptor.id, descriptor.listen_port, exc)
        else:
            LOGGER.warning("Restored %s on previous port %s", descriptor.id, descriptor.listen_port)

    def _close(self, binding: SocketBinding) -> None:
        binding.state = BindingState.CLOSING
        binding.closed.set()
        try:
            binding.sock.close()
        finally:
            binding.state = BindingState.UNBOUND
            self._retired = [reader for reader in self._retired if reader.is_alive()]
            if binding.reader is not None:
                self._retired.append(binding.reader)

    def _read_loop(self, binding: SocketBinding) -> None:
        while not binding.closed.is_set():
            try:
                payload, address = binding.sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                continue
            except OSError as exc:
                if binding.closed.is_set():
                    break
                self._fault(binding, exc)
                break

            descriptor = self.descriptor_for_port(binding.port)
            if descriptor is not None and descriptor.id != binding.owner_id:
                descriptor = None
            try:
                self._handler(descriptor, payload, address[0], address[1])
            except Exception:  # noqa: BLE001
                LOGGER.exception(
                    "Error handling datagram for %s on port %s", binding.owner_id, binding.port
                )

    def _fault(self, binding: SocketBinding, exc: OSError) -> None:
        LOGGER.error(
            "Socket fault on %s port %s, tearing down binding: %s",
            binding.owner_id,
            binding.port,
            exc,
            extra={"equipment_id": binding.owner_id, "port": binding.port},
        )
        with self._lock:
            if self._bindings.get(binding.port) is binding:
                del self._bindings[binding.port]
            binding.closed.set()
            binding.state = BindingState.UNBOUND
            try:
                binding.sock.close()
            except OSError:
                pass


def _bind_error(descriptor: EquipmentDescriptor, exc: OSError) -> ListenerError:
    port = descriptor.listen_port
    if exc.errno == errno.EADDRINUSE:
        return PortInUseError(f"Port {port} is already in use by another process")
    if exc.errno in (errno.EACCES, errno.EPERM):
        return BindPermissionError(f"Permission denied binding port {port} for {descriptor.id}")
    return BindError(f"Could not bind port {port} for {descriptor.id}: {exc}")
