"""Process-wide publish point for device lifecycle events."""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Dict, List, Set, Union

from usbwatch.models.device_record import DeviceRecord
from usbwatch.models.history_entry import EventType

logger = logging.getLogger(__name__)

DEVICE_CONNECTED = "deviceConnected"
DEVICE_DISCONNECTED = "deviceDisconnected"

EVENT_NAMES: Dict[EventType, str] = {
	EventType.CONNECT: DEVICE_CONNECTED,
	EventType.DISCONNECT: DEVICE_DISCONNECTED,
}

EventCallback = Callable[[DeviceRecord], Union[None, Awaitable[None]]]


class EventBus:
	"""Synchronous fan-out of lifecycle events to subscribers.

	Callbacks run in subscription order inside :meth:`publish`. Coroutine
	callbacks are scheduled as tasks in the same order, so consumers observe
	events exactly as the engine computed them.
	"""

	def __init__(self) -> None:
		self._subscribers: Dict[str, List[EventCallback]] = {}
		self._tasks: Set[asyncio.Task] = set()

	def subscribe(self, event_type: str, callback: EventCallback) -> Callable[[], None]:
		if event_type not in (DEVICE_CONNECTED, DEVICE_DISCONNECTED):
			raise ValueError(f"unknown event type: {event_type}")
		self._subscribers.setdefault(event_type, []).append(callback)

		def _unsubscribe() -> None:
			callbacks = self._subscribers.get(event_type, [])
			if callback in callbacks:
				callbacks.remove(callback)

		return _unsubscribe

	def publish(self, event_type: str, record: DeviceRecord) -> int:
		delivered = 0
		for callback in list(self._subscribers.get(event_type, ())):
			if self._dispatch(callback, record.copy()):
				delivered += 1
		return delivered

	def subscriber_count(self, event_type: str | None = None) -> int:
		if event_type is not None:
			return len(self._subscribers.get(event_type, ()))
		return sum(len(callbacks) for callbacks in self._subscribers.values())

	def clear(self) -> None:
		self._subscribers.clear()

	def _dispatch(self, callback: EventCallback, record: DeviceRecord) -> bool:
		try:
			outcome = callback(record)
			if asyncio.iscoroutine(outcome):
				task = asyncio.get_running_loop().create_task(outcome)
				self._tasks.add(task)
				task.add_done_callback(functools.partial(self._task_done, record.id))
		except Exception:
			logger.exception("event subscriber raised for %s", record.id)
			return False
		return True

	def _task_done(self, record_id: str, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error("event subscriber raised for %s", record_id, exc_info=exc)


__all__ = [
	"EventBus",
	"EventCallback",
	"EVENT_NAMES",
	"DEVICE_CONNECTED",
	"DEVICE_DISCONNECTED",
]
