from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

# Best-effort names for vendors commonly seen on desktop hosts.
KNOWN_VENDORS: Dict[int, str] = {
    0x1234: "Example Vendor",
    0x04D8: "Microchip Technology Inc.",
    0x046D: "Logitech",
    0x09DA: "A4TECH",
    0x413C: "Dell Computer Corp.",
    0x05AC: "Apple Inc.",
    0x045E: "Microsoft Corp.",
    0x8087: "Intel Corp.",
    0x0951: "Kingston Technology",
    0x0781: "SanDisk Corp.",
}


class DeviceStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"

    @property
    def present(self) -> bool:
        """True for statuses that count as attached to the host."""
        return self is not DeviceStatus.DISCONNECTED


@dataclass(frozen=True, slots=True)
class BusLocation:
    """Bus number and device address pair reported by the USB stack."""

    bus: int
    address: int

    def __str__(self) -> str:
        return f"bus{self.bus}-dev{self.address}"


def generate_device_id(
    vendor_id: int,
    product_id: int,
    serial_number: Optional[str] = None,
    bus_location: Optional[BusLocation] = None,
) -> str:
    """Return the stable identifier for a device instance.

    The serial number wins when the device exposes one; otherwise the bus
    location disambiguates devices that share vendor and product ids. Each
    form carries its own tag so a serial can never spell another form.
    """
    prefix = f"{vendor_id & 0xFFFF:04x}-{product_id & 0xFFFF:04x}"
    serial = (serial_number or "").strip()
    if serial:
        return f"{prefix}-sn-{serial}"
    if bus_location is not None:
        return f"{prefix}-loc-{bus_location}"
    return f"{prefix}-no-serial"


def describe_product(vendor_id: int, product_id: int) -> str:
    vendor = KNOWN_VENDORS.get(vendor_id, f"Vendor 0x{vendor_id:04x}")
    return f"{vendor} Device 0x{product_id:04x}"


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class DeviceRecord:
    """Canonical identity and metadata for one attached USB device."""

    id: str
    vendor_id: int
    product_id: int
    serial_number: Optional[str] = None
    manufacturer: str = UNKNOWN
    product_name: str = UNKNOWN
    status: DeviceStatus = DeviceStatus.CONNECTED
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    bus_location: Optional[BusLocation] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("device id must not be empty")
        for name in ("vendor_id", "product_id"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"{name} must fit in 16 bits, got {value!r}")
        self.status = DeviceStatus(self.status)

    @classmethod
    def build(
        cls,
        vendor_id: int,
        product_id: int,
        *,
        serial_number: Any = None,
        manufacturer: Any = None,
        product_name: Any = None,
        bus_location: Optional[BusLocation] = None,
        status: DeviceStatus = DeviceStatus.CONNECTED,
        error: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> "DeviceRecord":
        """Normalise raw substrate fields into a record.

        Blank strings collapse to the ``Unknown`` sentinel and a missing
        product name falls back to :func:`describe_product` when the ids are
        known. ``device_id`` overrides the derived identifier for substrates
        without vendor/product ids.
        """
        serial = _clean(serial_number)
        name = _clean(product_name)
        if name is None:
            name = describe_product(vendor_id, product_id) if (vendor_id or product_id) else UNKNOWN
        return cls(
            id=device_id or generate_device_id(vendor_id, product_id, serial, bus_location),
            vendor_id=vendor_id,
            product_id=product_id,
            serial_number=serial,
            manufacturer=_clean(manufacturer) or UNKNOWN,
            product_name=name,
            status=status,
            bus_location=bus_location,
            error=error,
        )

    @property
    def present(self) -> bool:
        return self.status.present

    def copy(self) -> "DeviceRecord":
        # Every field is immutable, so a shallow replace is a full copy.
        return dataclasses.replace(self)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "vendorId": self.vendor_id,
            "productId": self.product_id,
            "serialNumber": self.serial_number,
            "manufacturer": self.manufacturer,
            "productName": self.product_name,
            "status": self.status.value,
            "connectedAt": _iso(self.connected_at),
            "disconnectedAt": _iso(self.disconnected_at),
            "lastSeen": _iso(self.last_seen),
            "busLocation": None,
        }
        if self.bus_location is not None:
            payload["busLocation"] = {
                "busNumber": self.bus_location.bus,
                "deviceAddress": self.bus_location.address,
            }
        if self.error:
            payload["error"] = self.error
        return payload
