"""Grace-period and copy semantics of the device registry."""
from __future__ import annotations

import asyncio
from unittest import IsolatedAsyncioTestCase

from usbwatch.models import BusLocation, DeviceRecord, DeviceRegistry, DeviceStatus, EventType, Transition


def _receiver(address: int = 4) -> DeviceRecord:
    return DeviceRecord.build(0x046D, 0xC52B, product_name="USB Receiver", bus_location=BusLocation(1, address))


class RegistrySimulationTest(IsolatedAsyncioTestCase):
    async def test_disconnect_keeps_record_until_grace_expires(self) -> None:
        registry = DeviceRegistry(grace_period=0.05)
        record = _receiver()
        registry.apply([Transition(EventType.CONNECT, record)])
        applied = registry.apply([Transition(EventType.DISCONNECT, record)])

        self.assertEqual(len(applied), 1)
        self.assertIs(applied[0].record.status, DeviceStatus.DISCONNECTED)
        self.assertIsNotNone(applied[0].record.disconnected_at)
        self.assertIn(record.id, registry.pending_removals())
        self.assertIs(registry.get(record.id).status, DeviceStatus.DISCONNECTED)

        await asyncio.sleep(0.15)
        self.assertIsNone(registry.get(record.id))
        self.assertEqual(registry.pending_removals(), frozenset())

    async def test_reconnect_during_grace_cancels_removal(self) -> None:
        registry = DeviceRegistry(grace_period=0.05)
        record = _receiver()
        registry.apply([Transition(EventType.CONNECT, record)])
        registry.apply([Transition(EventType.DISCONNECT, record)])
        applied = registry.apply([Transition(EventType.CONNECT, record)])

        self.assertEqual([t.event_type for t in applied], [EventType.CONNECT])
        self.assertEqual(registry.pending_removals(), frozenset())
        await asyncio.sleep(0.15)
        current = registry.get(record.id)
        self.assertIsNotNone(current)
        self.assertIs(current.status, DeviceStatus.CONNECTED)
        self.assertIsNone(current.disconnected_at)

    async def test_duplicate_transitions_are_ignored(self) -> None:
        registry = DeviceRegistry(grace_period=0.05)
        record = _receiver()
        self.assertEqual(len(registry.apply([Transition(EventType.CONNECT, record)])), 1)
        self.assertEqual(registry.apply([Transition(EventType.CONNECT, record)]), [])
        self.assertEqual(len(registry.apply([Transition(EventType.DISCONNECT, record)])), 1)
        self.assertEqual(registry.apply([Transition(EventType.DISCONNECT, record)]), [])
        self.assertEqual(registry.apply([Transition(EventType.DISCONNECT, _receiver(9))]), [])
        registry.reset()

    async def test_error_status_survives_connect(self) -> None:
        registry = DeviceRegistry()
        degraded = DeviceRecord.build(0x0951, 0x1666, status=DeviceStatus.ERROR, error="pipe error")
        applied = registry.apply([Transition(EventType.CONNECT, degraded)])
        self.assertIs(applied[0].record.status, DeviceStatus.ERROR)
        self.assertIsNotNone(applied[0].record.connected_at)

    async def test_readers_receive_copies(self) -> None:
        registry = DeviceRegistry()
        record = _receiver()
        registry.apply([Transition(EventType.CONNECT, record)])

        snapshot = registry.snapshot()
        snapshot[0].product_name = "tampered"
        fetched = registry.get(record.id)
        fetched.status = DeviceStatus.DISCONNECTED

        current = registry.get(record.id)
        self.assertEqual(current.product_name, "USB Receiver")
        self.assertIs(current.status, DeviceStatus.CONNECTED)

    async def test_reset_cancels_pending_timers(self) -> None:
        registry = DeviceRegistry(grace_period=0.05)
        record = _receiver()
        registry.apply([Transition(EventType.CONNECT, record)])
        registry.apply([Transition(EventType.DISCONNECT, record)])
        registry.reset()
        self.assertEqual(len(registry), 0)
        self.assertEqual(registry.pending_removals(), frozenset())
