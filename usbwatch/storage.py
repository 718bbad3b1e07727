"""Resolve the mounted filesystem path of a USB mass-storage device."""
from __future__ import annotations

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from usbwatch.commands import CommandRunner, RunCommand
from usbwatch.errors import CommandFailure, DeviceNotFound, MountResolutionFailure, StorageWriteFailure
from usbwatch.models.device_record import DeviceRecord
from usbwatch.parsers import normalize_platform, parse_linux_mounts, parse_macos_volumes, parse_windows_drives

logger = logging.getLogger(__name__)

DeviceLookup = Callable[[str], Optional[DeviceRecord]]

MACOS_MOUNT_COMMAND = "df -h"
LINUX_MOUNT_COMMAND = "mount"
WINDOWS_MOUNT_COMMAND = 'wmic logicaldisk where "DriveType=2" get DeviceID'


def macos_descriptor_matches(text: str, vendor_id: int, product_id: int) -> bool:
    """Match ``diskutil info`` output (``Vendor ID:  0x0951``)."""
    vendor = re.search(rf"Vendor ID:\s*0x0*{vendor_id:x}\b", text, re.IGNORECASE)
    product = re.search(rf"Product ID:\s*0x0*{product_id:x}\b", text, re.IGNORECASE)
    return bool(vendor and product)


def windows_descriptor_matches(text: str, vendor_id: int, product_id: int) -> bool:
    """Match PnP ids (``VID_0951&PID_1666``), upper-case hex padded to four."""
    upper = text.upper()
    return f"VID_{vendor_id:04X}" in upper and f"PID_{product_id:04X}" in upper


def linux_descriptor_matches(text: str, vendor_id: int, product_id: int) -> bool:
    """Match ``udevadm info -q property`` output (``ID_VENDOR_ID=0951``)."""
    vendor = re.search(rf"^ID_VENDOR_ID={vendor_id:04x}\s*$", text, re.IGNORECASE | re.MULTILINE)
    product = re.search(rf"^ID_MODEL_ID={product_id:04x}\s*$", text, re.IGNORECASE | re.MULTILINE)
    return bool(vendor and product)


@dataclass(slots=True, frozen=True)
class StorageWrite:
    device_id: str
    path: str
    bytes_written: int

    def to_dict(self) -> Dict[str, Any]:
        return {"deviceId": self.device_id, "path": self.path, "bytesWritten": self.bytes_written}


def _plain_filename(filename: str) -> str:
    name = filename.strip()
    if not name or name in (".", "..") or "/" in name or "\\" in name or ":" in name:
        raise ValueError(f"filename must be a bare file name: {filename!r}")
    return name


def _write(path: Path, content: Union[str, bytes]) -> int:
    if isinstance(content, bytes):
        return path.write_bytes(content)
    return path.write_bytes(content.encode("utf-8"))


def _with_separator(path: str, separator: str) -> str:
    return path if path.endswith(separator) else path + separator


class StoragePathResolver:
    """Map a live device id onto the mount point backing its storage.

    Candidates come from the platform mount table in its output order; the
    first whose descriptor carries the device's vendor and product ids wins.
    """

    def __init__(
        self,
        lookup: DeviceLookup,
        runner: Optional[RunCommand] = None,
        *,
        platform: Optional[str] = None,
        timeout: Optional[float] = 15.0,
    ) -> None:
        self._lookup = lookup
        self._runner: RunCommand = runner or CommandRunner(timeout)
        self.platform = normalize_platform(platform)

    async def resolve(self, device_id: str) -> str:
        record = self._lookup(device_id)
        if record is None or not record.present:
            raise DeviceNotFound(device_id)

        vendor_id, product_id = record.vendor_id, record.product_id
        logger.debug("resolving storage for %s (%04x:%04x) on %s", device_id, vendor_id, product_id, self.platform)
        if self.platform == "darwin":
            path = await self._resolve_macos(vendor_id, product_id)
        elif self.platform == "win32":
            path = await self._resolve_windows(vendor_id, product_id)
        elif self.platform == "linux":
            path = await self._resolve_linux(vendor_id, product_id)
        else:
            raise MountResolutionFailure(f"storage resolution is not supported on {self.platform}")

        if path is None:
            raise MountResolutionFailure(f"Matching USB storage not found for {device_id}")
        logger.info("USB storage for %s mounted at %s", device_id, path)
        return path

    async def write_file(self, device_id: str, filename: str, content: Union[str, bytes]) -> StorageWrite:
        """Write ``content`` as ``filename`` at the root of the device's volume.

        Text is encoded as UTF-8. The file name may not contain path
        separators, so the write always lands on the resolved volume.
        """
        name = _plain_filename(filename)
        root = await self.resolve(device_id)
        target = Path(root) / name
        try:
            written = await asyncio.to_thread(_write, target, content)
        except OSError as exc:
            raise StorageWriteFailure(f"could not write {target}: {exc}") from exc
        logger.info("wrote %d bytes to %s for %s", written, target, device_id)
        return StorageWrite(device_id, str(target), written)

    async def _resolve_macos(self, vendor_id: int, product_id: int) -> Optional[str]:
        volumes = parse_macos_volumes(await self._mount_table(MACOS_MOUNT_COMMAND))
        for volume in volumes:
            info = await self._descriptor(f"diskutil info {shlex.quote(volume)}")
            if info is not None and macos_descriptor_matches(info, vendor_id, product_id):
                return _with_separator(volume, "/")
        return None

    async def _resolve_windows(self, vendor_id: int, product_id: int) -> Optional[str]:
        drives = parse_windows_drives(await self._mount_table(WINDOWS_MOUNT_COMMAND))
        for drive in drives:
            info = await self._descriptor(f"wmic volume where \"DriveLetter='{drive}'\" get DeviceID")
            if info is not None and windows_descriptor_matches(info, vendor_id, product_id):
                return _with_separator(drive, "\\")
        return None

    async def _resolve_linux(self, vendor_id: int, product_id: int) -> Optional[str]:
        entries = parse_linux_mounts(await self._mount_table(LINUX_MOUNT_COMMAND))
        for entry in entries:
            info = await self._descriptor(f"udevadm info -q property -n {shlex.quote(entry.source)}")
            if info is not None and linux_descriptor_matches(info, vendor_id, product_id):
                return _with_separator(entry.mount_point, "/")
        return None

    async def _mount_table(self, command: str) -> str:
        try:
            result = (await self._runner(command)).check()
        except CommandFailure as exc:
            raise MountResolutionFailure(f"could not read mount table: {exc}") from exc
        return result.stdout

    async def _descriptor(self, command: str) -> Optional[str]:
        try:
            result = (await self._runner(command)).check()
        except CommandFailure as exc:
            logger.debug("skipping mount, descriptor query failed: %s", exc)
            return None
        return result.stdout


__all__ = [
    "StoragePathResolver",
    "StorageWrite",
    "linux_descriptor_matches",
    "macos_descriptor_matches",
    "windows_descriptor_matches",
]
