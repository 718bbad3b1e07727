"""usbwatch command-line interface."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import signal
import sys
from typing import Any, Dict, List, Optional

import uvicorn
from rich.console import Console
from rich.table import Table

from usbwatch.config import STRATEGY_NAMES, MonitorConfig
from usbwatch.errors import DeviceNotFound, EnumerationFailure, MountResolutionFailure
from usbwatch.metrics import EventLogger
from usbwatch.models.notification_system import NotificationSystem
from usbwatch.monitor import UsbMonitor
from usbwatch.strategy import PRIORITY, default_probes, select_strategy


def _config(args: argparse.Namespace) -> MonitorConfig:
	overrides: Dict[str, Any] = {}
	if getattr(args, "strategy", None):
		overrides["strategy"] = args.strategy
	if getattr(args, "grace_period", None) is not None:
		overrides["grace_period"] = args.grace_period
	return dataclasses.replace(MonitorConfig.from_env(), **overrides)


def _dump_json(data: Any) -> None:
	json.dump(data, sys.stdout, indent=2)
	sys.stdout.write("\n")


async def _cmd_probe(args: argparse.Namespace) -> int:
	selection = select_strategy(default_probes(), forced=args.strategy)
	if args.json:
		_dump_json(selection.to_dict())
		return 0
	console = Console()
	table = Table(title="USB Detection Strategies", show_lines=False)
	for column in ("strategy", "available", "reason"):
		table.add_column(column.upper())
	for strategy in PRIORITY:
		marker = "*" if strategy is selection.strategy else ""
		table.add_row(
			f"{strategy.value}{marker}",
			"yes" if selection.availability.get(strategy.value) else "no",
			selection.reasons.get(strategy.value, ""),
		)
	console.print(table)
	return 0


async def _cmd_list(args: argparse.Namespace) -> int:
	monitor = UsbMonitor(_config(args))
	try:
		await monitor.refresh_device_list()
		data: List[Dict[str, Any]] = [device.to_dict() for device in monitor.list_devices()]
	except EnumerationFailure as exc:
		Console(stderr=True).print(f"[red]Failed to enumerate USB devices:[/red] {exc}")
		return 1
	finally:
		await monitor.close()

	if args.json:
		_dump_json(data)
		return 0
	console = Console()
	table = Table(title=f"USB Devices ({monitor.strategy.value})", show_lines=False)
	for column in ("id", "vendor", "product", "manufacturer", "name", "status"):
		table.add_column(column.upper())
	for entry in data:
		table.add_row(
			str(entry["id"]),
			f"{entry['vendorId']:04x}",
			f"{entry['productId']:04x}",
			str(entry["manufacturer"]),
			str(entry["productName"]),
			str(entry["status"]),
		)
	console.print(table)
	return 0


async def _cmd_monitor(args: argparse.Namespace) -> int:
	monitor = UsbMonitor(_config(args))
	NotificationSystem(stream=sys.stdout).attach(monitor.bus)
	if args.log:
		EventLogger(args.log).attach(monitor.bus)

	stop_event = asyncio.Event()

	def _signal_handler(*_: Any) -> None:
		stop_event.set()

	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		with contextlib.suppress(NotImplementedError):
			loop.add_signal_handler(sig, _signal_handler)

	try:
		await monitor.initialize()
		with contextlib.suppress(asyncio.TimeoutError):
			await asyncio.wait_for(stop_event.wait(), timeout=args.runtime)
	except EnumerationFailure as exc:
		Console(stderr=True).print(f"[red]Failed to start USB monitoring:[/red] {exc}")
		return 1
	except KeyboardInterrupt:
		stop_event.set()
	finally:
		await monitor.close()
	return 0


async def _cmd_storage(args: argparse.Namespace) -> int:
	monitor = UsbMonitor(_config(args))
	try:
		await monitor.refresh_device_list()
		path = await monitor.resolve_storage_path(args.device)
	except (EnumerationFailure, DeviceNotFound, MountResolutionFailure) as exc:
		Console(stderr=True).print(f"[red]{exc}[/red]")
		return 1
	finally:
		await monitor.close()
	if args.json:
		_dump_json({"deviceId": args.device, "path": path})
	else:
		sys.stdout.write(path + "\n")
	return 0


async def _cmd_serve(args: argparse.Namespace) -> int:
	config = _config(args)
	if config.strategy:
		os.environ["USBWATCH_STRATEGY"] = config.strategy
	server = uvicorn.Server(
		uvicorn.Config(
			"usbwatch.api:app",
			host=args.host or config.api_host,
			port=args.port or config.api_port,
			log_level="debug" if args.verbose else "info",
		)
	)
	await server.serve()
	return 0


def _add_strategy(parser: argparse.ArgumentParser) -> None:
	parser.add_argument("--strategy", choices=STRATEGY_NAMES, help="Force a detection strategy if available")


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="usbwatch USB device monitor")
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command", required=True)

	probe = sub.add_parser("probe", help="Show which detection strategies are available")
	_add_strategy(probe)
	probe.add_argument("--json", action="store_true", help="Output JSON")
	probe.set_defaults(handler=_cmd_probe)

	devices = sub.add_parser("list", help="Enumerate connected USB devices once")
	_add_strategy(devices)
	devices.add_argument("--json", action="store_true", help="Output JSON")
	devices.set_defaults(handler=_cmd_list)

	monitor = sub.add_parser("monitor", help="Watch for USB connect and disconnect events")
	_add_strategy(monitor)
	monitor.add_argument("--log", help="Append events to this CSV file")
	monitor.add_argument("--grace-period", type=float, help="Seconds a removed device stays listed")
	monitor.add_argument("--runtime", type=float, help="Optional monitor duration seconds")
	monitor.set_defaults(handler=_cmd_monitor)

	storage = sub.add_parser("storage", help="Find the mount point of a USB storage device")
	_add_strategy(storage)
	storage.add_argument("device", help="Device id as shown by 'list'")
	storage.add_argument("--json", action="store_true", help="Output JSON")
	storage.set_defaults(handler=_cmd_storage)

	serve = sub.add_parser("serve", help="Run the HTTP and WebSocket API")
	_add_strategy(serve)
	serve.add_argument("--host", help="Bind address")
	serve.add_argument("--port", type=int, help="Bind port")
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.WARNING,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)
	try:
		return asyncio.run(args.handler(args))
	except ValueError as exc:
		parser.error(str(exc))


if __name__ == "__main__":
	sys.exit(main())
