"""Exception types raised across the usbwatch engine."""
from __future__ import annotations

from typing import Optional


class UsbWatchError(Exception):
    """Base class for every error raised by usbwatch."""


class ProbeUnavailable(UsbWatchError):
    """A detection substrate could not be loaded or invoked."""


class CommandFailure(UsbWatchError):
    """An external command exited non-zero, was missing or timed out."""

    def __init__(
        self,
        command: str,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(f"{command!r}: {message}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class ParseFailure(UsbWatchError):
    """Command output did not match the expected grammar."""


class DescriptorReadFailure(UsbWatchError):
    """Reading the string descriptors of a single device failed."""


class DeviceNotFound(UsbWatchError, LookupError):
    """The requested device id is not part of the live set."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"No device found with ID: {device_id}")
        self.device_id = device_id


class MountResolutionFailure(UsbWatchError):
    """No mounted volume could be matched to the device."""


class EnumerationFailure(UsbWatchError):
    """The active substrate raised while enumerating devices."""


class StorageWriteFailure(UsbWatchError):
    """Writing a file onto a resolved storage volume failed."""


__all__ = [
    "UsbWatchError",
    "ProbeUnavailable",
    "CommandFailure",
    "ParseFailure",
    "DescriptorReadFailure",
    "DeviceNotFound",
    "MountResolutionFailure",
    "EnumerationFailure",
    "StorageWriteFailure",
]
