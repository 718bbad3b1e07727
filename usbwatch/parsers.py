"""Pure parsers for the free-text output of OS device and mount commands.

Every parser takes the raw command output and returns canonical values, so
each platform grammar can be exercised with literal fixture strings.
"""
from __future__ import annotations

import hashlib
import json
import re
import sys
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from usbwatch.errors import ParseFailure
from usbwatch.models.device_record import BusLocation, DeviceRecord

MAC_BUS_SENTINEL = "USB Bus"

USB_LIST_COMMANDS: Dict[str, str] = {
    "darwin": "system_profiler SPUSBDataType -json",
    "linux": "lsusb",
    "win32": "wmic path win32_usbhub get deviceid,description /format:csv",
}

_LSUSB_LINE = re.compile(
    r"Bus\s+(\d+)\s+Device\s+(\d+):\s+ID\s+([0-9a-fA-F]{4}):([0-9a-fA-F]{4})\s*(.*)"
)
_HEX_VALUE = re.compile(r"0x([0-9a-fA-F]+)")
_PAREN_NAME = re.compile(r"\(([^)]+)\)")
_MAC_LOCATION = re.compile(r"0x([0-9a-fA-F]+)(?:\s*/\s*(\d+))?")
_WINDOWS_DRIVE = re.compile(r"^([A-Z]:)")
_MOUNT_LINE = re.compile(r"^(\S+) on (.+?) type (\S+)")


def normalize_platform(platform: Optional[str] = None) -> str:
    """Map ``sys.platform`` style names onto ``darwin``/``linux``/``win32``."""
    value = (platform or sys.platform).lower()
    if value.startswith("linux"):
        return "linux"
    if value.startswith("win") or value == "cygwin":
        return "win32"
    return value


# ---------------------------------------------------------------------------
# USB device lists
# ---------------------------------------------------------------------------
def _parse_hex(value: Any) -> int:
    if value is None:
        return 0
    text = str(value)
    match = _HEX_VALUE.search(text)
    try:
        number = int(match.group(1), 16) if match else int(text.split()[0], 16)
    except (ValueError, IndexError):
        return 0
    return number if 0 <= number <= 0xFFFF else 0


def _mac_location(value: Any) -> Optional[BusLocation]:
    if not value:
        return None
    match = _MAC_LOCATION.search(str(value))
    if not match:
        return None
    location = int(match.group(1), 16)
    address = int(match.group(2)) if match.group(2) else location & 0xFFFFFF
    return BusLocation(bus=(location >> 24) & 0xFF, address=address)


def _mac_record(node: Dict[str, Any]) -> DeviceRecord:
    manufacturer = node.get("manufacturer")
    if not manufacturer:
        # vendor_id often reads "0x046d  (Logitech Inc.)"
        vendor_label = _PAREN_NAME.search(str(node.get("vendor_id", "")))
        manufacturer = vendor_label.group(1) if vendor_label else None
    return DeviceRecord.build(
        _parse_hex(node.get("vendor_id")),
        _parse_hex(node.get("product_id")),
        serial_number=node.get("serial_num"),
        manufacturer=manufacturer,
        product_name=node.get("_name"),
        bus_location=_mac_location(node.get("location_id")),
    )


def parse_macos_usb(output: str) -> List[DeviceRecord]:
    """Parse ``system_profiler SPUSBDataType -json`` output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise ParseFailure(f"system_profiler output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseFailure("system_profiler output is not a JSON object")

    records: List[DeviceRecord] = []

    def _walk(nodes: Iterable[Any]) -> None:
        for node in nodes:
            if not isinstance(node, dict):
                continue
            name = node.get("_name")
            if name and name != MAC_BUS_SENTINEL and "host_controller" not in node:
                records.append(_mac_record(node))
            children = node.get("_items")
            if isinstance(children, list):
                _walk(children)

    buses = data.get("SPUSBDataType") or []
    if not isinstance(buses, list):
        raise ParseFailure("SPUSBDataType is not a list")
    _walk(buses)
    return records


def parse_linux_usb(output: str) -> List[DeviceRecord]:
    """Parse ``lsusb`` output, one device per matching line."""
    records: List[DeviceRecord] = []
    for line in output.splitlines():
        match = _LSUSB_LINE.search(line)
        if not match:
            continue
        bus, address, vendor, product, description = match.groups()
        records.append(
            DeviceRecord.build(
                int(vendor, 16),
                int(product, 16),
                product_name=description,
                bus_location=BusLocation(bus=int(bus), address=int(address)),
            )
        )
    return records


def _windows_device_id(description: str, instance_id: str, occurrence: int) -> str:
    key = f"{description}|{instance_id}|{occurrence}".encode("utf-8")
    return "windows-" + hashlib.sha1(key).hexdigest()[:16]


def parse_windows_usb(output: str) -> List[DeviceRecord]:
    """Parse ``wmic ... /format:csv`` output (``Node,Description,DeviceID``).

    wmic exposes no vendor/product ids on this path, so only the product name
    is filled in and the id is a hash of the row content.
    """
    records: List[DeviceRecord] = []
    seen: Dict[Tuple[str, str], int] = {}
    header_skipped = False
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        if not header_skipped:
            header_skipped = True
            continue
        parts = [part.strip() for part in line.split(",")]
        if len(parts) < 2 or not parts[1] or sum(1 for part in parts if part) < 2:
            continue
        description = parts[1]
        instance_id = parts[2] if len(parts) > 2 else ""
        key = (description, instance_id)
        occurrence = seen.get(key, 0)
        seen[key] = occurrence + 1
        records.append(
            DeviceRecord.build(
                0,
                0,
                product_name=description,
                device_id=_windows_device_id(description, instance_id, occurrence),
            )
        )
    return records


USB_PARSERS: Dict[str, Callable[[str], List[DeviceRecord]]] = {
    "darwin": parse_macos_usb,
    "linux": parse_linux_usb,
    "win32": parse_windows_usb,
}


def parse_usb_output(output: str, platform: Optional[str] = None) -> List[DeviceRecord]:
    parser = USB_PARSERS.get(normalize_platform(platform))
    if parser is None:
        return []
    return parser(output)


# ---------------------------------------------------------------------------
# Mount tables
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class MountEntry:
    source: str
    mount_point: str
    fs_type: str = ""


def parse_macos_volumes(output: str) -> List[str]:
    """Return ``/Volumes/...`` mount points from ``df -h`` output in order."""
    volumes: List[str] = []
    for line in output.splitlines():
        index = line.find("/Volumes/")
        if index < 0:
            continue
        volume = line[index:].strip()
        if volume:
            volumes.append(volume)
    return volumes


def parse_windows_drives(output: str) -> List[str]:
    """Return drive letters (``E:``) from ``wmic logicaldisk`` output."""
    drives: List[str] = []
    for line in output.splitlines():
        match = _WINDOWS_DRIVE.match(line.strip())
        if match:
            drives.append(match.group(1))
    return drives


def parse_linux_mounts(output: str, prefixes: Sequence[str] = ("/media/", "/mnt/")) -> List[MountEntry]:
    """Return ``mount`` entries under removable-media prefixes.

    Entries under the first prefix that has any match win; later prefixes are
    only consulted when earlier ones match nothing.
    """
    entries: List[MountEntry] = []
    for line in output.splitlines():
        match = _MOUNT_LINE.match(line.strip())
        if match:
            entries.append(MountEntry(*match.groups()))
    for prefix in prefixes:
        selected = [entry for entry in entries if entry.mount_point.startswith(prefix)]
        if selected:
            return selected
    return []


__all__ = [
    "MAC_BUS_SENTINEL",
    "USB_LIST_COMMANDS",
    "USB_PARSERS",
    "MountEntry",
    "normalize_platform",
    "parse_macos_usb",
    "parse_linux_usb",
    "parse_windows_usb",
    "parse_usb_output",
    "parse_macos_volumes",
    "parse_windows_drives",
    "parse_linux_mounts",
]
