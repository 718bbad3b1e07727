"""CSV recording of device lifecycle events."""
from __future__ import annotations

import csv
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from usbwatch.events import DEVICE_CONNECTED, DEVICE_DISCONNECTED, EventBus
from usbwatch.models.device_record import DeviceRecord


DEFAULT_FIELDS: Sequence[str] = (
    "timestamp",
    "event",
    "device_id",
    "vendor_id",
    "product_id",
    "product_name",
    "status",
)


def _ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(slots=True)
class EventRow:
    """Simple value container representing a single CSV row."""

    timestamp: str
    event: str
    device_id: str
    vendor_id: str
    product_id: str
    product_name: str
    status: str

    @classmethod
    def from_record(cls, timestamp: str, event: str, record: DeviceRecord) -> "EventRow":
        return cls(
            timestamp=timestamp,
            event=event,
            device_id=record.id,
            vendor_id=f"{record.vendor_id:04x}",
            product_id=f"{record.product_id:04x}",
            product_name=record.product_name,
            status=record.status.value,
        )

    def as_row(self, fields: Sequence[str]) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "event": self.event,
            "device_id": self.device_id,
            "vendor_id": self.vendor_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "status": self.status,
        }
        return {key: row.get(key, "") for key in fields}


class EventLogger:
    """Append-only CSV log of connect and disconnect events.

    Rows are written synchronously so the file stays tail-friendly; the
    header is written once when the file is new or empty.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        fields: Sequence[str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(path)
        self.fields: Sequence[str] = tuple(fields) if fields else DEFAULT_FIELDS
        if not self.fields:
            raise ValueError("fields must contain at least one column")

        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._unsubscribers: List[Callable[[], None]] = []
        self._ensure_header()

    def _ensure_header(self) -> None:
        if self.path.exists() and self.path.stat().st_size > 0:
            return
        with self._lock:
            with self.path.open("w", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writeheader()
                handle.flush()

    def attach(self, bus: EventBus) -> "EventLogger":
        self._unsubscribers.append(bus.subscribe(DEVICE_CONNECTED, self._on_connected))
        self._unsubscribers.append(bus.subscribe(DEVICE_DISCONNECTED, self._on_disconnected))
        return self

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    def log(self, event: str, record: DeviceRecord) -> None:
        self._write_row(EventRow.from_record(self._timestamp(), event, record))

    def _on_connected(self, record: DeviceRecord) -> None:
        self.log(DEVICE_CONNECTED, record)

    def _on_disconnected(self, record: DeviceRecord) -> None:
        self.log(DEVICE_DISCONNECTED, record)

    def _write_row(self, row: EventRow) -> None:
        values = row.as_row(self.fields)
        with self._lock:
            with self.path.open("a", newline="", encoding="utf-8") as handle:
                writer = csv.DictWriter(handle, fieldnames=self.fields, extrasaction="ignore")
                writer.writerow(values)
                handle.flush()

    def _timestamp(self) -> str:
        dt: Optional[datetime] = self._clock()
        if not isinstance(dt, datetime):
            return str(dt)
        return _ensure_utc(dt).isoformat(timespec="milliseconds")


__all__ = [
    "EventLogger",
    "EventRow",
    "DEFAULT_FIELDS",
]
