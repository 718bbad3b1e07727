from __future__ import annotations

import logging
from typing import Callable, List, Optional, TextIO

from .device_record import DeviceRecord, DeviceStatus

logger = logging.getLogger(__name__)


class NotificationSystem:
    """Announces device presence changes to the log and, optionally, a stream.

    Attach it to an :class:`~usbwatch.events.EventBus` so every connect and
    disconnect transition is reported once.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self, bus) -> "NotificationSystem":
        from usbwatch.events import DEVICE_CONNECTED, DEVICE_DISCONNECTED

        self._unsubscribers.append(bus.subscribe(DEVICE_CONNECTED, self.notify_presence))
        self._unsubscribers.append(bus.subscribe(DEVICE_DISCONNECTED, self.notify_disconnection))
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def notify_presence(self, device: DeviceRecord) -> None:
        logger.info("USB device connected: %s (%s)", device.product_name, device.id)
        self._emit(f"[+] Device Connected: {device.product_name} ({device.id})")
        if device.status is DeviceStatus.ERROR:
            self.notify_failure(device)

    def notify_disconnection(self, device: DeviceRecord) -> None:
        logger.info("USB device disconnected: %s (%s)", device.product_name, device.id)
        self._emit(f"[-] Device Disconnected: {device.product_name} ({device.id})")

    def notify_failure(self, device: DeviceRecord, message: str | None = None) -> None:
        """Report a device whose descriptors could not be read."""
        logger.warning("USB device degraded: %s (%s) %s", device.product_name, device.id, message or device.error or "")

    def _emit(self, line: str) -> None:
        if self.stream is None:
            return
        self.stream.write(line + "\n")
        self.stream.flush()
