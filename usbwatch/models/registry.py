from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional

from .device_record import DeviceRecord, DeviceStatus
from .history_entry import EventType

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 5.0


@dataclass(frozen=True, slots=True)
class Transition:
    """A single lifecycle change computed for one device id."""

    event_type: EventType
    record: DeviceRecord

    @property
    def device_id(self) -> str:
        return self.record.id


class DeviceRegistry:
    """Owns the live device map.

    ``apply`` is the only mutation entry point. Every read accessor hands out
    copies so callers can never alter tracked state.
    """

    def __init__(self, grace_period: float = DEFAULT_GRACE_PERIOD) -> None:
        self.grace_period = max(0.0, grace_period)
        self._devices: Dict[str, DeviceRecord] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

    def apply(
        self,
        transitions: Iterable[Transition],
        retained: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> List[Transition]:
        """Apply transitions and return the ones that took effect.

        The returned transitions carry copies of the records as stored after
        the change, ready for history and event publication.
        """
        now = now or datetime.now(timezone.utc)
        applied: List[Transition] = []
        for transition in transitions:
            if transition.event_type is EventType.CONNECT:
                record = self._connect(transition.record, now)
            else:
                record = self._disconnect(transition.device_id, now)
            if record is not None:
                applied.append(Transition(transition.event_type, record.copy()))
        for device_id in retained:
            current = self._devices.get(device_id)
            if current is not None and current.present:
                current.last_seen = now
        return applied

    def snapshot(self) -> List[DeviceRecord]:
        return [record.copy() for record in self._devices.values()]

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        record = self._devices.get(device_id)
        return record.copy() if record is not None else None

    def pending_removals(self) -> FrozenSet[str]:
        return frozenset(self._timers)

    def reset(self) -> None:
        """Hard reset: cancel every removal timer and drop the live set."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._devices.clear()

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def _connect(self, incoming: DeviceRecord, now: datetime) -> Optional[DeviceRecord]:
        current = self._devices.get(incoming.id)
        if current is not None and current.present:
            return None
        self._cancel_timer(incoming.id)
        status = DeviceStatus.ERROR if incoming.status is DeviceStatus.ERROR else DeviceStatus.CONNECTED
        record = dataclasses.replace(
            incoming,
            status=status,
            connected_at=now,
            disconnected_at=None,
            last_seen=now,
        )
        self._devices[record.id] = record
        return record

    def _disconnect(self, device_id: str, now: datetime) -> Optional[DeviceRecord]:
        current = self._devices.get(device_id)
        if current is None or not current.present or device_id in self._timers:
            return None
        current.status = DeviceStatus.DISCONNECTED
        current.disconnected_at = now
        self._schedule_removal(device_id)
        return current

    def _schedule_removal(self, device_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers[device_id] = loop.call_later(self.grace_period, self._expire, device_id)

    def _cancel_timer(self, device_id: str) -> None:
        handle = self._timers.pop(device_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug("cancelled pending removal of %s", device_id)

    def _expire(self, device_id: str) -> None:
        self._timers.pop(device_id, None)
        record = self._devices.get(device_id)
        if record is not None and record.status is DeviceStatus.DISCONNECTED:
            del self._devices[device_id]
            logger.debug("removed %s from live set after grace period", device_id)
