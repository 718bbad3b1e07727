"""USB monitoring service tying detection, diffing and queries together."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import Counter
from datetime import datetime
from time import monotonic
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from usbwatch.commands import CommandRunner, RunCommand
from usbwatch.config import MonitorConfig
from usbwatch.diff import DiffEngine
from usbwatch.enumerators import Enumerator, NativeEventEnumerator, create_enumerator
from usbwatch.errors import EnumerationFailure
from usbwatch.events import EventBus
from usbwatch.models.connection_history import ConnectionHistory
from usbwatch.models.device_record import DeviceRecord, DeviceStatus
from usbwatch.models.history_entry import EventType, HistoryEntry
from usbwatch.models.registry import DeviceRegistry, Transition
from usbwatch.parsers import normalize_platform
from usbwatch.storage import StoragePathResolver, StorageWrite
from usbwatch.strategy import DetectionStrategy, Probe, StrategySelection, default_probes, select_strategy
from usbwatch.substrates import EventSubstrate

logger = logging.getLogger(__name__)


class UsbMonitor:
    """Track USB devices with the best available detection strategy.

    Poll strategies run a ticker that launches one enumeration cycle per
    interval; a tick that finds the previous cycle still running is skipped.
    The native-event strategy takes one snapshot and then follows the
    substrate's add/remove callbacks.
    """

    def __init__(
        self,
        config: Optional[MonitorConfig] = None,
        *,
        selection: Optional[StrategySelection] = None,
        probes: Optional[Mapping[DetectionStrategy, Probe]] = None,
        enumerator: Optional[Enumerator] = None,
        substrate: Optional[EventSubstrate] = None,
        runner: Optional[RunCommand] = None,
        bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        platform: Optional[str] = None,
    ) -> None:
        self.config = config or MonitorConfig()
        self.platform = normalize_platform(platform)

        if selection is None and enumerator is not None:
            selection = StrategySelection(
                strategy=enumerator.strategy,
                availability={enumerator.strategy.value: True},
            )
        if selection is None:
            selection = select_strategy(
                probes if probes is not None else default_probes(self.platform),
                forced=self.config.strategy,
            )
        self.selection = selection
        self.strategy = selection.strategy

        self.bus = bus or EventBus()
        self.registry = DeviceRegistry(self.config.grace_period)
        self.history = ConnectionHistory(self.config.history_limit)
        self.engine = DiffEngine(self.registry, self.history, self.bus, clock=clock)

        runner = runner or CommandRunner(self.config.command_timeout)
        self.enumerator = enumerator or create_enumerator(
            self.strategy,
            substrate=substrate,
            runner=runner,
            platform=self.platform,
            timeout=self.config.command_timeout,
        )
        if substrate is None and isinstance(self.enumerator, NativeEventEnumerator):
            substrate = self.enumerator.substrate
        self.substrate = substrate
        self.storage = StoragePathResolver(self.get_device, runner, platform=self.platform)

        self._started_at = monotonic()
        self._monitoring = False
        self._generation = 0
        self._stop_event: Optional[asyncio.Event] = None
        self._ticker: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self._cycle_lock = asyncio.Lock()
        self._push_active = False
        self._push_registered = False
        self.skipped_cycles = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def monitoring_active(self) -> bool:
        return self._monitoring

    @property
    def poll_interval(self) -> Optional[float]:
        if self.strategy is DetectionStrategy.NATIVE_POLL:
            return self.config.native_poll_interval
        if self.strategy is DetectionStrategy.COMMAND_POLL:
            return self.config.command_poll_interval
        return None

    async def initialize(self) -> None:
        """Take the initial snapshot and start monitoring."""
        logger.info("Initializing USB monitor with method: %s", self.strategy.value)
        await self.refresh_device_list()
        self.start_monitoring()
        logger.info("USB monitor initialized with %d devices", len(self.registry))

    def start_monitoring(self) -> None:
        if self._monitoring:
            logger.warning("USB monitoring is already active")
            return

        stop_event = asyncio.Event()
        self._stop_event = stop_event
        if self.strategy is DetectionStrategy.NATIVE_EVENT and self.substrate is not None:
            try:
                self._start_push(self.substrate)
            except Exception as exc:
                # The strategy stays fixed; the substrate's snapshot is polled instead.
                logger.error("Failed to start native USB monitoring, polling instead: %s", exc)
                self._start_ticker(self.config.native_poll_interval, stop_event)
        else:
            self._start_ticker(self.poll_interval or self.config.command_poll_interval, stop_event)

        self._monitoring = True
        logger.info("USB monitoring started with method: %s", self.strategy.value)

    async def stop_monitoring(self) -> None:
        """Stop monitoring; late poll results are discarded. Idempotent."""
        if not self._monitoring:
            return
        self._monitoring = False
        self._generation += 1
        if self._stop_event is not None:
            self._stop_event.set()

        if self._push_active and self.substrate is not None:
            self._push_active = False
            try:
                self.substrate.stop_push()
            except Exception:
                logger.exception("Error stopping native USB monitoring")

        for task in (self._ticker, self._cycle):
            if task is None or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._ticker = None
        self._cycle = None
        logger.info("USB monitoring stopped")

    async def close(self) -> None:
        """Stop monitoring and hard-reset the live set and subscribers."""
        logger.info("Cleaning up USB monitor...")
        await self.stop_monitoring()
        self.registry.reset()
        self.bus.clear()

    async def __aenter__(self) -> "UsbMonitor":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------
    async def refresh_device_list(self) -> List[Transition]:
        """Re-enumerate the active substrate and apply the resulting diff.

        Raises :class:`EnumerationFailure` when the substrate itself raises;
        the command substrate never does.
        """
        async with self._cycle_lock:
            generation = self._generation
            try:
                records = await self.enumerator.enumerate()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error refreshing device list: %s", exc)
                raise EnumerationFailure(str(exc)) from exc
            if generation != self._generation:
                logger.debug("discarding refresh result that finished after stop")
                return []
            transitions = self.engine.reconcile(records)
        logger.info("Refreshed device list: %d devices found", len(self.registry))
        return transitions

    def trigger_poll(self) -> Optional[asyncio.Task]:
        """Launch one poll cycle unless the previous one is still running."""
        if (self._cycle is not None and not self._cycle.done()) or self._cycle_lock.locked():
            self.skipped_cycles += 1
            logger.debug("previous poll cycle still running; skipping tick")
            return None
        self._cycle = asyncio.create_task(self._poll_cycle(self._generation))
        return self._cycle

    def _start_ticker(self, interval: float, stop_event: asyncio.Event) -> None:
        self._ticker = asyncio.create_task(self._poll_loop(interval, stop_event))

    async def _poll_loop(self, interval: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self._sleep_with_stop(interval, stop_event)
            if stop_event.is_set():
                break
            self.trigger_poll()

    async def _poll_cycle(self, generation: int) -> None:
        async with self._cycle_lock:
            try:
                records = await self.enumerator.enumerate()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Error polling USB devices: %s", exc)
                return
            if generation != self._generation or not self._monitoring:
                logger.debug("discarding poll result that finished after stop")
                return
            self.engine.reconcile(records)

    async def _sleep_with_stop(self, duration: float, stop_event: asyncio.Event) -> None:
        if duration <= 0:
            return
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass

    def _start_push(self, substrate: EventSubstrate) -> None:
        if not self._push_registered:
            substrate.on_add(self._handle_native_add)
            substrate.on_remove(self._handle_native_remove)
            self._push_registered = True
        substrate.start_push()
        self._push_active = True

    def _handle_native_add(self, record: DeviceRecord) -> None:
        if not self._monitoring:
            return
        self.engine.connect(record)

    def _handle_native_remove(self, device_id: str) -> None:
        if not self._monitoring:
            return
        self.engine.disconnect(device_id)

    # ------------------------------------------------------------------
    # Query interface
    # ------------------------------------------------------------------
    def list_devices(self) -> List[DeviceRecord]:
        return self.registry.snapshot()

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        return self.registry.get(device_id)

    def get_history(self, limit: int = 50) -> List[HistoryEntry]:
        return self.history.recent(limit)

    def get_status(self) -> Dict[str, Any]:
        return {
            "monitoringActive": self._monitoring,
            "strategy": self.strategy.value,
            "deviceCount": len(self.registry),
            "historyCount": len(self.history),
            "substrateAvailability": dict(self.selection.availability),
            "uptime": monotonic() - self._started_at,
            "pollInterval": self.poll_interval,
            "skippedCycles": self.skipped_cycles,
        }

    def get_stats(self) -> Dict[str, Any]:
        devices = self.list_devices()
        history = self.history.recent(self.history.capacity)
        statuses = Counter(device.status for device in devices)
        events = Counter(entry.event_type for entry in history)
        return {
            "devices": {
                "total": len(devices),
                "connected": statuses[DeviceStatus.CONNECTED],
                "disconnected": statuses[DeviceStatus.DISCONNECTED],
                "error": statuses[DeviceStatus.ERROR],
            },
            "events": {
                "total": len(history),
                "connects": events[EventType.CONNECT],
                "disconnects": events[EventType.DISCONNECT],
            },
            "manufacturers": dict(Counter(device.manufacturer for device in devices)),
        }

    async def resolve_storage_path(self, device_id: str) -> str:
        return await self.storage.resolve(device_id)

    async def write_file_to_device(self, device_id: str, filename: str, content: Union[str, bytes]) -> StorageWrite:
        return await self.storage.write_file(device_id, filename, content)


__all__ = ["UsbMonitor"]
