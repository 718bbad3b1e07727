"""Integration-style tests for the FastAPI layer using fakes."""
from __future__ import annotations

import asyncio
import unittest
from typing import Any, Dict, List
from unittest import IsolatedAsyncioTestCase
from unittest.mock import AsyncMock, patch

from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

import usbwatch.api as api_module
from usbwatch.commands import CommandResult
from usbwatch.config import MonitorConfig
from usbwatch.enumerators import Enumerator
from usbwatch.events import DEVICE_CONNECTED
from usbwatch.models import BusLocation, DeviceRecord
from usbwatch.monitor import UsbMonitor
from usbwatch.storage import StorageWrite
from usbwatch.strategy import DetectionStrategy

RECEIVER = DeviceRecord.build(0x046D, 0xC52B, product_name="USB Receiver", bus_location=BusLocation(1, 4))
STICK = DeviceRecord.build(0x0951, 0x1666, serial_number="001A4D5E", product_name="DataTraveler 3.0")


class _FakeEnumerator(Enumerator):
    strategy = DetectionStrategy.NATIVE_POLL

    def __init__(self, records: List[DeviceRecord]) -> None:
        self.records = records
        self.fail = False

    async def iter_devices(self):
        if self.fail:
            raise OSError("libusb: access denied")
        for record in self.records:
            yield record.copy()


class _FakeRunner:
    async def __call__(self, command: str) -> CommandResult:
        if command == "mount":
            return CommandResult(command, "/dev/sdb1 on /media/alice/STICK type vfat (rw)\n", 0)
        if command.startswith("udevadm info"):
            return CommandResult(command, "ID_VENDOR_ID=0951\nID_MODEL_ID=1666\n", 0)
        return CommandResult(command, "", 1)


class ApiSimulationTest(unittest.TestCase):
    def setUp(self) -> None:
        self.enumerator = _FakeEnumerator([RECEIVER, STICK])
        self.monitor = UsbMonitor(
            MonitorConfig(),
            enumerator=self.enumerator,
            runner=_FakeRunner(),
            platform="linux",
        )
        self.monitor.engine.reconcile([RECEIVER, STICK])
        api_module._monitor = self.monitor
        self.client = TestClient(api_module.app)

    def tearDown(self) -> None:
        self.client.close()
        api_module._monitor = None

    def test_health(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_list_devices_envelope(self) -> None:
        response = self.client.get("/api/devices")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertTrue(payload["success"])
        self.assertEqual(payload["count"], 2)
        self.assertEqual({d["id"] for d in payload["data"]}, {RECEIVER.id, STICK.id})
        self.assertIn("timestamp", payload)

    def test_get_device_and_missing_device(self) -> None:
        response = self.client.get(f"/api/devices/{RECEIVER.id}")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["busLocation"], {"busNumber": 1, "deviceAddress": 4})

        missing = self.client.get("/api/devices/ffff-ffff-no-serial")
        self.assertEqual(missing.status_code, 404)
        self.assertIn("No device found", missing.json()["detail"])

    def test_history_limit(self) -> None:
        response = self.client.get("/api/history", params={"limit": 1})
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["data"][0]["eventType"], "connect")
        self.assertEqual(payload["data"][0]["deviceId"], STICK.id)

        self.assertEqual(self.client.get("/api/history", params={"limit": 0}).status_code, 422)

    def test_status_and_stats(self) -> None:
        status = self.client.get("/api/status").json()["data"]
        self.assertEqual(status["strategy"], "native-poll")
        self.assertEqual(status["deviceCount"], 2)
        self.assertFalse(status["monitoringActive"])

        stats = self.client.get("/api/stats").json()["data"]
        self.assertEqual(stats["devices"]["total"], 2)
        self.assertEqual(stats["events"]["connects"], 2)

    def test_refresh_picks_up_new_device(self) -> None:
        extra = DeviceRecord.build(0x05AC, 0x12A8, serial_number="PHONE")
        self.enumerator.records.append(extra)
        response = self.client.post("/api/devices/refresh")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 3)

    def test_refresh_failure_returns_500(self) -> None:
        self.enumerator.fail = True
        response = self.client.post("/api/devices/refresh")
        self.assertEqual(response.status_code, 500)
        self.assertIn("access denied", response.json()["detail"])

    def test_storage_path(self) -> None:
        response = self.client.get(f"/api/devices/{STICK.id}/storage")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"], {"deviceId": STICK.id, "path": "/media/alice/STICK/"})

        self.assertEqual(self.client.get("/api/devices/ffff-ffff-x/storage").status_code, 404)
        self.assertEqual(self.client.get(f"/api/devices/{RECEIVER.id}/storage").status_code, 409)

    def test_write_file(self) -> None:
        url = f"/api/devices/{STICK.id}/files"
        written = StorageWrite(STICK.id, "/media/alice/STICK/notes.txt", 5)
        with patch.object(self.monitor.storage, "write_file", AsyncMock(return_value=written)) as write:
            response = self.client.post(url, json={"filename": "notes.txt", "content": "hello"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["bytesWritten"], 5)
        write.assert_awaited_once_with(STICK.id, "notes.txt", "hello")

        self.assertEqual(self.client.post(url, json={"filename": "../x", "content": ""}).status_code, 422)
        self.assertEqual(self.client.post(url, json={"content": "hello"}).status_code, 422)
        missing = self.client.post("/api/devices/ffff-ffff-x/files", json={"filename": "a", "content": ""})
        self.assertEqual(missing.status_code, 404)

    def test_endpoints_report_missing_monitor(self) -> None:
        api_module._monitor = None
        self.assertEqual(self.client.get("/api/devices").status_code, 503)

    def test_websocket_initial_messages_and_requests(self) -> None:
        with self.client.websocket_connect("/events") as ws:
            self.assertEqual(ws.receive_json()["type"], "devices:initial")
            history = ws.receive_json()
            self.assertEqual(history["type"], "history:initial")
            self.assertEqual(len(history["history"]), 2)
            self.assertEqual(ws.receive_json()["type"], "status:initial")

            ws.send_json({"type": "ping", "data": 7})
            pong = ws.receive_json()
            self.assertEqual((pong["type"], pong["data"]), ("pong", 7))

            ws.send_json({"type": "devices:get"})
            self.assertEqual(len(ws.receive_json()["devices"]), 2)

            ws.send_text("not json")
            self.assertEqual(ws.receive_json()["type"], "error")

            ws.send_json({"type": "teleport"})
            self.assertIn("Unknown request type", ws.receive_json()["message"])


class _BrokenPipeSocket:
    """Accepts the initial messages, then fails on the first pushed event."""

    def __init__(self, monitor: UsbMonitor) -> None:
        self.monitor = monitor
        self.sent: List[Dict[str, Any]] = []

    async def accept(self) -> None:
        pass

    async def close(self, code: int = 1000) -> None:
        pass

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if payload["type"] == "device:connected":
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def receive_text(self) -> str:
        self.monitor.bus.publish(DEVICE_CONNECTED, STICK)
        await asyncio.sleep(0.05)
        raise WebSocketDisconnect(code=1006)


class EventsSocketTest(IsolatedAsyncioTestCase):
    async def test_sender_failure_is_logged(self) -> None:
        monitor = UsbMonitor(MonitorConfig(), enumerator=_FakeEnumerator([RECEIVER]), platform="linux")
        ws = _BrokenPipeSocket(monitor)
        api_module._monitor = monitor
        self.addCleanup(setattr, api_module, "_monitor", None)
        with self.assertLogs("usbwatch.api", level="ERROR") as logs:
            await api_module.events(ws)
        self.assertIn("WebSocket sender failed", logs.output[0])
        self.assertIn("peer went away", logs.output[0])
        self.assertEqual([p["type"] for p in ws.sent], ["devices:initial", "history:initial", "status:initial"])
        self.assertEqual(monitor.bus.subscriber_count(), 0)


if __name__ == "__main__":
    unittest.main()
