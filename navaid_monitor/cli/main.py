"""CLI entrypoint for the navigation aid monitor."""
from __future__ import annotations

import argparse
import json
import threading
from dataclasses import replace
from typing import Any

from navaid_monitor.config import ConfigError, MonitorSettings, load_config, settings_from_mapping
from navaid_monitor.domain.models import EquipmentDescriptor
from navaid_monitor.logging_setup import configure_logging
from navaid_monitor.services.equipment_admin import (
    AdminError,
    EquipmentNotFoundError,
    ensure_port_free,
    prepare_descriptor,
)
from navaid_monitor.services.monitor_byte import decode_packet, decode_payload
from navaid_monitor.services.runtime import MonitorRuntime
from navaid_monitor.services.simulator import UdpSimulator
from navaid_monitor.services.socket_manager import ListenerError
from navaid_monitor.services.validation import ValidationError, require_valid_port
from navaid_monitor.storage.repositories import EquipmentRepository, StorageError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="navaid-monitor")
    parser.add_argument("--config", help="Path to TOML/JSON config.")
    parser.add_argument("--log-level", default="INFO", help="Logging level.")
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit logs in JSON format."
    )
    parser.add_argument("--equipment", help="Path to equipment JSON file (overrides config).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run UDP listeners and the live update server")

    simulate = subparsers.add_parser("simulate", help="Send simulated monitor packets")
    simulate.add_argument("--host", default="127.0.0.1", help="Target host.")
    simulate.add_argument("--interval", type=float, default=5.0, help="Seconds between rounds.")
    simulate.add_argument("--count", type=int, help="Stop after this many rounds.")

    decode = subparsers.add_parser("decode", help="Decode a hex payload")
    decode.add_argument("payload", help="Hex bytes, e.g. '5a 55 01 00 a0'.")

    equipment = subparsers.add_parser("equipment", help="Edit the equipment file")
    equipment_sub = equipment.add_subparsers(dest="equipment_command", required=True)
    equipment_sub.add_parser("list", help="List configured equipment")

    equipment_add = equipment_sub.add_parser("add", help="Add equipment")
    equipment_add.add_argument("--name", required=True, help="Display name.")
    equipment_add.add_argument("--ip", default="any", help="Expected source IPv4 or 'any'.")
    equipment_add.add_argument("--port", required=True, type=int, help="Listening UDP port.")
    equipment_add.add_argument("--id", dest="equipment_id", help="Explicit id (default: slug of name).")
    equipment_add.add_argument("--disabled", action="store_true", help="Add without listening.")

    equipment_remove = equipment_sub.add_parser("remove", help="Remove equipment")
    equipment_remove.add_argument("equipment_id", help="Equipment id.")

    equipment_port = equipment_sub.add_parser("set-port", help="Change the listening port")
    equipment_port.add_argument("equipment_id", help="Equipment id.")
    equipment_port.add_argument("port", type=int, help="New UDP port.")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level, json_format=args.json_logs)

    try:
        settings = _load_settings(args)
    except ConfigError as exc:
        parser.error(str(exc))

    if args.command == "serve":
        MonitorRuntime(settings).run_forever()
        return 0

    if args.command == "decode":
        return _decode(parser, args.payload)

    try:
        repository = EquipmentRepository(settings.equipment_path)
        descriptors = repository.load()
    except StorageError as exc:
        parser.error(str(exc))

    if args.command == "simulate":
        simulator = UdpSimulator(descriptors, target_host=args.host, interval_s=args.interval)
        stop = threading.Event()
        try:
            simulator.run(stop, count=args.count)
        except KeyboardInterrupt:
            stop.set()
        return 0

    if args.command == "equipment":
        try:
            return _equipment(args, repository, descriptors)
        except (AdminError, ListenerError, ValidationError, StorageError) as exc:
            parser.error(str(exc))

    parser.error(f"Command not implemented yet: {args.command}")
    return 2


def _load_settings(args: argparse.Namespace) -> MonitorSettings:
    data: dict[str, Any] = load_config(args.config) if args.config else {}
    settings = settings_from_mapping(data)
    if args.equipment:
        settings = replace(settings, equipment_path=args.equipment)
    return settings


def _decode(parser: argparse.ArgumentParser, payload: str) -> int:
    try:
        buffer = bytes.fromhex(payload.replace(":", " "))
    except ValueError as exc:
        parser.error(f"Invalid hex payload: {exc}")

    result = decode_packet(buffer)
    report: dict[str, Any] = {
        "valid": result.ok,
        "error": result.error,
        "offset": result.offset,
        "candidates": [
            {
                "offset": located.offset,
                "byte": f"0x{located.monitor.raw_byte:02x}",
                "binary": located.monitor.binary_digits,
                "path": located.monitor.path_state.value if located.monitor.path_state else None,
                "status": located.monitor.severity.value if located.monitor.severity else None,
            }
            for located in decode_payload(buffer)
        ],
    }
    if result.monitor is not None:
        report["path"] = result.monitor.path_state.value if result.monitor.path_state else None
        report["status"] = result.monitor.severity.value if result.monitor.severity else None
        report["byte"] = f"0x{result.monitor.raw_byte:02x}"
    print(json.dumps(report, indent=2))
    return 0 if result.ok else 1


def _equipment(
    args: argparse.Namespace,
    repository: EquipmentRepository,
    descriptors: list[EquipmentDescriptor],
) -> int:
    if args.equipment_command == "list":
        for descriptor in descriptors:
            state = "enabled" if descriptor.enabled else "disabled"
            print(
                f"{descriptor.id:<20} {descriptor.name:<20} "
                f"{descriptor.expected_source_ip:<15} {descriptor.listen_port:>5} {state}"
            )
        return 0

    if args.equipment_command == "add":
        descriptor = prepare_descriptor(
            repository,
            args.name,
            args.ip,
            args.port,
            enabled=not args.disabled,
            equipment_id=args.equipment_id,
        )
        ensure_port_free(repository, descriptor.listen_port)
        repository.upsert(descriptor)
        repository.save()
        print(descriptor.id)
        return 0

    if args.equipment_command == "remove":
        if not repository.remove(args.equipment_id):
            raise EquipmentNotFoundError(f"Equipment {args.equipment_id} not found")
        repository.save()
        return 0

    if args.equipment_command == "set-port":
        port = require_valid_port(args.port)
        current = repository.get(args.equipment_id)
        if current is None:
            raise EquipmentNotFoundError(f"Equipment {args.equipment_id} not found")
        ensure_port_free(repository, port, exclude_id=current.id)
        repository.upsert(replace(current, listen_port=port))
        repository.save()
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main())
