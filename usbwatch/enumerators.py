"""Per-substrate enumerators producing canonical device records."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from usbwatch.commands import CommandRunner, RunCommand
from usbwatch.errors import CommandFailure, DescriptorReadFailure, ParseFailure
from usbwatch.models.device_record import BusLocation, DeviceRecord, DeviceStatus, generate_device_id
from usbwatch.parsers import USB_LIST_COMMANDS, normalize_platform, parse_usb_output
from usbwatch.strategy import DetectionStrategy
from usbwatch.substrates import EventSubstrate

logger = logging.getLogger(__name__)

DeviceFinder = Callable[[], Iterable[Any]]
StringReader = Callable[[Any, int], Optional[str]]
ResourceReleaser = Callable[[Any], None]


class Enumerator(ABC):
	"""Re-queries one substrate on every call and yields canonical records."""

	strategy: DetectionStrategy

	@abstractmethod
	def iter_devices(self) -> AsyncIterator[DeviceRecord]:
		"""Lazily yield the devices currently reported by the substrate."""

	async def enumerate(self) -> List[DeviceRecord]:
		records: Dict[str, DeviceRecord] = {}
		async for record in self.iter_devices():
			if record.id in records:
				logger.debug("dropping duplicate device id %s from %s", record.id, self.strategy.value)
				continue
			records[record.id] = record
		return list(records.values())


class NativeEventEnumerator(Enumerator):
	"""One-shot query of an event substrate; later changes arrive as events."""

	strategy = DetectionStrategy.NATIVE_EVENT

	def __init__(self, substrate: EventSubstrate) -> None:
		self.substrate = substrate

	async def iter_devices(self) -> AsyncIterator[DeviceRecord]:
		for record in await self.substrate.initial_snapshot():
			yield record


def _pyusb_find_all() -> List[Any]:
	import usb.core

	return list(usb.core.find(find_all=True))


def _pyusb_get_string(device: Any, index: int) -> Optional[str]:
	import usb.util

	return usb.util.get_string(device, index)


def _pyusb_dispose(device: Any) -> None:
	import usb.util

	usb.util.dispose_resources(device)


class NativePollEnumerator(Enumerator):
	"""Lists devices through pyusb and resolves their string descriptors.

	Descriptor reads open the device, so they run in a worker thread. A device
	whose descriptors cannot be read is reported with ``status=error`` instead
	of aborting the enumeration.
	"""

	strategy = DetectionStrategy.NATIVE_POLL

	def __init__(
		self,
		*,
		finder: Optional[DeviceFinder] = None,
		string_reader: Optional[StringReader] = None,
		releaser: Optional[ResourceReleaser] = None,
	) -> None:
		self._finder = finder or _pyusb_find_all
		self._read_string = string_reader or _pyusb_get_string
		self._release = releaser or _pyusb_dispose

	async def iter_devices(self) -> AsyncIterator[DeviceRecord]:
		devices = await asyncio.to_thread(lambda: list(self._finder()))
		for device in devices:
			yield await self._describe(device)

	async def _describe(self, device: Any) -> DeviceRecord:
		vendor_id = int(getattr(device, "idVendor", 0) or 0)
		product_id = int(getattr(device, "idProduct", 0) or 0)
		bus = getattr(device, "bus", None)
		address = getattr(device, "address", None)
		location = BusLocation(int(bus), int(address)) if bus is not None and address is not None else None
		# Ids ignore the serial so a flaky descriptor read cannot change them.
		device_id = generate_device_id(vendor_id, product_id, None, location)

		try:
			strings = await asyncio.to_thread(self._read_descriptors, device)
		except DescriptorReadFailure as exc:
			logger.debug("descriptor read failed for %s: %s", device_id, exc)
			return DeviceRecord.build(
				vendor_id,
				product_id,
				bus_location=location,
				status=DeviceStatus.ERROR,
				error=str(exc),
				device_id=device_id,
			)

		return DeviceRecord.build(
			vendor_id,
			product_id,
			serial_number=strings.get("serial_number"),
			manufacturer=strings.get("manufacturer"),
			product_name=strings.get("product_name"),
			bus_location=location,
			device_id=device_id,
		)

	def _read_descriptors(self, device: Any) -> Dict[str, Optional[str]]:
		fields = {
			"manufacturer": "iManufacturer",
			"product_name": "iProduct",
			"serial_number": "iSerialNumber",
		}
		try:
			strings: Dict[str, Optional[str]] = {}
			for name, attribute in fields.items():
				index = getattr(device, attribute, 0)
				strings[name] = self._read_string(device, index) if index else None
			return strings
		except Exception as exc:
			raise DescriptorReadFailure(str(exc) or type(exc).__name__) from exc
		finally:
			with contextlib.suppress(Exception):
				self._release(device)


class CommandPollEnumerator(Enumerator):
	"""Runs the platform USB listing command and parses its output.

	Command and parse failures are logged and yield an empty enumeration; this
	enumerator never raises.
	"""

	strategy = DetectionStrategy.COMMAND_POLL

	def __init__(
		self,
		runner: Optional[RunCommand] = None,
		*,
		platform: Optional[str] = None,
		timeout: Optional[float] = 15.0,
	) -> None:
		self.platform = normalize_platform(platform)
		self._runner: RunCommand = runner or CommandRunner(timeout)

	async def iter_devices(self) -> AsyncIterator[DeviceRecord]:
		for record in await self._query():
			yield record

	async def _query(self) -> List[DeviceRecord]:
		command = USB_LIST_COMMANDS.get(self.platform)
		if command is None:
			logger.warning("no USB listing command for platform %s", self.platform)
			return []
		try:
			result = (await self._runner(command)).check()
		except CommandFailure as exc:
			logger.warning("System USB command failed: %s", exc)
			return []
		try:
			return parse_usb_output(result.stdout, self.platform)
		except (ParseFailure, ValueError) as exc:
			logger.warning("Error parsing system USB output: %s", exc)
			return []


def create_enumerator(
	strategy: DetectionStrategy,
	*,
	substrate: Optional[EventSubstrate] = None,
	runner: Optional[RunCommand] = None,
	platform: Optional[str] = None,
	timeout: Optional[float] = 15.0,
) -> Enumerator:
	if strategy is DetectionStrategy.NATIVE_EVENT:
		if substrate is None:
			from usbwatch.substrates import UdevSubstrate

			substrate = UdevSubstrate()
		return NativeEventEnumerator(substrate)
	if strategy is DetectionStrategy.NATIVE_POLL:
		return NativePollEnumerator()
	return CommandPollEnumerator(runner, platform=platform, timeout=timeout)


__all__ = [
	"Enumerator",
	"NativeEventEnumerator",
	"NativePollEnumerator",
	"CommandPollEnumerator",
	"create_enumerator",
]
