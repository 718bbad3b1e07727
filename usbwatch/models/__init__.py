"""Model package for usbwatch.

Canonical device records, the lifecycle history log and the registry that
owns the live device set.
"""
from .device_record import (
    UNKNOWN,
    BusLocation,
    DeviceRecord,
    DeviceStatus,
    describe_product,
    generate_device_id,
)
from .history_entry import EventType, HistoryEntry
from .connection_history import ConnectionHistory
from .registry import DeviceRegistry, Transition
from .notification_system import NotificationSystem

__all__ = [
    "UNKNOWN",
    "BusLocation",
    "DeviceRecord",
    "DeviceStatus",
    "describe_product",
    "generate_device_id",
    "EventType",
    "HistoryEntry",
    "ConnectionHistory",
    "DeviceRegistry",
    "Transition",
    "NotificationSystem",
]
