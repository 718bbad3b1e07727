from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from .device_record import DeviceRecord


class EventType(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"


def _entry_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass(frozen=True)
class HistoryEntry:
    """Represents a single connect or disconnect transition."""

    device: DeviceRecord
    event_type: EventType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    entry_id: str = field(default_factory=_entry_id)

    def __post_init__(self) -> None:
        # Detach from the registry's record so later mutations never leak in.
        object.__setattr__(self, "device", self.device.copy())
        object.__setattr__(self, "event_type", EventType(self.event_type))

    @property
    def device_id(self) -> str:
        return self.device.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "deviceId": self.device_id,
            "device": self.device.to_dict(),
            "eventType": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
        }
