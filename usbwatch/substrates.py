"""Event-driven detection substrates built on top of pyudev."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from usbwatch.models.device_record import BusLocation, DeviceRecord

logger = logging.getLogger(__name__)

AddCallback = Callable[[DeviceRecord], None]
RemoveCallback = Callable[[str], None]


@runtime_checkable
class EventSubstrate(Protocol):
	"""Capability set shared by every push-style substrate."""

	async def initial_snapshot(self) -> List[DeviceRecord]:
		...

	def on_add(self, callback: AddCallback) -> None:
		...

	def on_remove(self, callback: RemoveCallback) -> None:
		...

	def start_push(self) -> None:
		...

	def stop_push(self) -> None:
		...


def _hex_field(value: Optional[str]) -> Optional[int]:
	if not value:
		return None
	try:
		number = int(value, 16)
	except ValueError:
		return None
	return number if 0 <= number <= 0xFFFF else None


def _label(value: Optional[str]) -> Optional[str]:
	if not value:
		return None
	# udev encodes spaces as underscores in ID_VENDOR / ID_MODEL
	return " ".join(value.replace("_", " ").split()) or None


def record_from_udev(properties: Mapping[str, str]) -> Optional[DeviceRecord]:
	"""Build a record from the udev properties of a ``usb_device``."""
	vendor_id = _hex_field(properties.get("ID_VENDOR_ID"))
	product_id = _hex_field(properties.get("ID_MODEL_ID"))
	if vendor_id is None or product_id is None:
		# Kernel uevents carry PRODUCT=<vid>/<pid>/<bcd> without padding.
		parts = (properties.get("PRODUCT") or "").split("/")
		if len(parts) >= 2:
			vendor_id = _hex_field(parts[0])
			product_id = _hex_field(parts[1])
	if vendor_id is None or product_id is None:
		return None

	bus_location: Optional[BusLocation] = None
	try:
		bus_location = BusLocation(int(properties["BUSNUM"]), int(properties["DEVNUM"]))
	except (KeyError, ValueError):
		bus_location = None

	return DeviceRecord.build(
		vendor_id,
		product_id,
		serial_number=properties.get("ID_SERIAL_SHORT"),
		manufacturer=properties.get("ID_VENDOR_FROM_DATABASE") or _label(properties.get("ID_VENDOR")),
		product_name=properties.get("ID_MODEL_FROM_DATABASE") or _label(properties.get("ID_MODEL")),
		bus_location=bus_location,
	)


class UdevSubstrate:
	"""Linux substrate that reports USB add/remove events through udev.

	pyudev's observer runs in its own thread; events are handed to the event
	loop with ``call_soon_threadsafe`` so callbacks always run on the loop.
	"""

	def __init__(self, context: Any = None) -> None:
		import pyudev

		self._pyudev = pyudev
		self._context = context if context is not None else pyudev.Context()
		self._add_callbacks: List[AddCallback] = []
		self._remove_callbacks: List[RemoveCallback] = []
		self._observer: Any = None
		self._loop: Optional[asyncio.AbstractEventLoop] = None
		self._paths: Dict[str, str] = {}

	# ------------------------------------------------------------------
	# Snapshot
	# ------------------------------------------------------------------
	async def initial_snapshot(self) -> List[DeviceRecord]:
		devices = await asyncio.to_thread(self._list_devices)
		records: List[DeviceRecord] = []
		for sys_path, properties in devices:
			record = record_from_udev(properties)
			if record is None:
				continue
			self._paths[sys_path] = record.id
			records.append(record)
		return records

	def _list_devices(self) -> List[tuple[str, Dict[str, str]]]:
		listed = self._context.list_devices(subsystem="usb", DEVTYPE="usb_device")
		return [(device.sys_path, dict(device.properties)) for device in listed]

	# ------------------------------------------------------------------
	# Push lifecycle
	# ------------------------------------------------------------------
	def on_add(self, callback: AddCallback) -> None:
		self._add_callbacks.append(callback)

	def on_remove(self, callback: RemoveCallback) -> None:
		self._remove_callbacks.append(callback)

	def start_push(self) -> None:
		if self._observer is not None:
			return
		self._loop = asyncio.get_running_loop()
		monitor = self._pyudev.Monitor.from_netlink(self._context)
		monitor.filter_by(subsystem="usb", device_type="usb_device")
		self._observer = self._pyudev.MonitorObserver(
			monitor,
			callback=self._on_udev_event,
			name="usbwatch-udev",
		)
		self._observer.start()
		logger.debug("udev observer started")

	def stop_push(self) -> None:
		observer, self._observer = self._observer, None
		if observer is None:
			return
		observer.stop()
		logger.debug("udev observer stopped")

	# ------------------------------------------------------------------
	# Observer thread -> event loop
	# ------------------------------------------------------------------
	def _on_udev_event(self, device: Any) -> None:
		loop = self._loop
		if loop is None or loop.is_closed():
			return
		properties = dict(device.properties)
		if device.action == "add":
			loop.call_soon_threadsafe(self._dispatch_add, device.sys_path, properties)
		elif device.action == "remove":
			loop.call_soon_threadsafe(self._dispatch_remove, device.sys_path, properties)

	def _dispatch_add(self, sys_path: str, properties: Mapping[str, str]) -> None:
		record = record_from_udev(properties)
		if record is None:
			return
		self._paths[sys_path] = record.id
		for callback in list(self._add_callbacks):
			try:
				callback(record)
			except Exception:
				logger.exception("udev add callback raised for %s", record.id)

	def _dispatch_remove(self, sys_path: str, properties: Mapping[str, str]) -> None:
		device_id = self._paths.pop(sys_path, None)
		if device_id is None:
			record = record_from_udev(properties)
			device_id = record.id if record is not None else None
		if device_id is None:
			return
		for callback in list(self._remove_callbacks):
			try:
				callback(device_id)
			except Exception:
				logger.exception("udev remove callback raised for %s", device_id)


__all__ = [
	"AddCallback",
	"EventSubstrate",
	"RemoveCallback",
	"UdevSubstrate",
	"record_from_udev",
]
