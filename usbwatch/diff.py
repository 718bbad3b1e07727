"""Snapshot diffing and lifecycle transition application."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AbstractSet, Callable, List, Mapping, Optional, Sequence

from usbwatch.events import EVENT_NAMES, EventBus
from usbwatch.models.connection_history import ConnectionHistory
from usbwatch.models.device_record import DeviceRecord
from usbwatch.models.history_entry import EventType, HistoryEntry
from usbwatch.models.registry import DeviceRegistry, Transition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DiffResult:
    """Outcome of comparing the live set against a fresh snapshot."""

    added: List[DeviceRecord] = field(default_factory=list)
    removed: List[DeviceRecord] = field(default_factory=list)
    retained: List[str] = field(default_factory=list)

    @property
    def transitions(self) -> List[Transition]:
        connects = [Transition(EventType.CONNECT, record) for record in self.added]
        disconnects = [Transition(EventType.DISCONNECT, record) for record in self.removed]
        return connects + disconnects

    @property
    def empty(self) -> bool:
        return not self.added and not self.removed


def compute_diff(
    live: Mapping[str, DeviceRecord],
    snapshot: Sequence[DeviceRecord],
    pending: AbstractSet[str] = frozenset(),
) -> DiffResult:
    """Compare ``snapshot`` with the ``live`` registry view.

    Only records with a present status count as the old set, so an id whose
    removal is pending reappears as a fresh connect. Pending ids never yield
    another disconnect.
    """
    old_ids = [device_id for device_id, record in live.items() if record.present]
    old_set = set(old_ids)
    new_ids = {record.id for record in snapshot}

    result = DiffResult()
    seen: set[str] = set()
    for record in snapshot:
        if record.id in seen:
            continue
        seen.add(record.id)
        if record.id in old_set:
            result.retained.append(record.id)
        else:
            result.added.append(record)
    for device_id in old_ids:
        if device_id not in new_ids and device_id not in pending:
            result.removed.append(live[device_id])
    return result


class DiffEngine:
    """Applies transitions to the registry, history log and event bus.

    Each applied transition is recorded in history and published exactly
    once, synchronously and in computed order, before ``apply`` returns.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        history: ConnectionHistory,
        bus: EventBus,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.registry = registry
        self.history = history
        self.bus = bus
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def compute(self, snapshot: Sequence[DeviceRecord]) -> DiffResult:
        live = {record.id: record for record in self.registry.snapshot()}
        return compute_diff(live, snapshot, self.registry.pending_removals())

    def apply(self, diff: DiffResult) -> List[Transition]:
        now = self._clock()
        applied = self.registry.apply(diff.transitions, diff.retained, now)
        for transition in applied:
            self.history.append(HistoryEntry(transition.record, transition.event_type, timestamp=now))
            self.bus.publish(EVENT_NAMES[transition.event_type], transition.record)
        if applied:
            logger.debug(
                "applied %d transition(s): +%d -%d",
                len(applied),
                sum(1 for t in applied if t.event_type is EventType.CONNECT),
                sum(1 for t in applied if t.event_type is EventType.DISCONNECT),
            )
        return applied

    def reconcile(self, snapshot: Sequence[DeviceRecord]) -> List[Transition]:
        return self.apply(self.compute(snapshot))

    def connect(self, record: DeviceRecord) -> Optional[Transition]:
        """Apply a single native add event."""
        current = self.registry.get(record.id)
        if current is not None and current.present:
            return None
        applied = self.apply(DiffResult(added=[record]))
        return applied[0] if applied else None

    def disconnect(self, device_id: str) -> Optional[Transition]:
        """Apply a single native remove event."""
        current = self.registry.get(device_id)
        if current is None or not current.present or device_id in self.registry.pending_removals():
            return None
        applied = self.apply(DiffResult(removed=[current]))
        return applied[0] if applied else None


__all__ = ["DiffEngine", "DiffResult", "compute_diff"]
