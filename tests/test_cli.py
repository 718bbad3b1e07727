"""CLI parsing and output tests with the monitor swapped for fakes."""
from __future__ import annotations

import io
import json
import tempfile
import unittest
from pathlib import Path
from typing import List
from unittest.mock import patch

from usbwatch import cli
from usbwatch.config import MonitorConfig
from usbwatch.enumerators import Enumerator
from usbwatch.models import BusLocation, DeviceRecord
from usbwatch.monitor import UsbMonitor
from usbwatch.strategy import DetectionStrategy, SubstrateProbe

RECEIVER = DeviceRecord.build(0x046D, 0xC52B, product_name="USB Receiver", bus_location=BusLocation(1, 4))


class _StaticEnumerator(Enumerator):
    strategy = DetectionStrategy.COMMAND_POLL

    def __init__(self, records: List[DeviceRecord]) -> None:
        self.records = records

    async def iter_devices(self):
        for record in self.records:
            yield record.copy()


def _fake_monitor(config: MonitorConfig) -> UsbMonitor:
    return UsbMonitor(config, enumerator=_StaticEnumerator([RECEIVER]))


class CliTest(unittest.TestCase):
    def test_parser_monitor_options(self) -> None:
        args = cli._build_parser().parse_args(
            ["monitor", "--log", "events.csv", "--runtime", "1.5", "--strategy", "command-poll"]
        )
        self.assertEqual(args.log, "events.csv")
        self.assertEqual(args.runtime, 1.5)
        self.assertEqual(args.strategy, "command-poll")
        self.assertIs(args.handler, cli._cmd_monitor)

    def test_list_json(self) -> None:
        with patch("usbwatch.cli.UsbMonitor", _fake_monitor), patch("sys.stdout", new_callable=io.StringIO) as out:
            code = cli.main(["list", "--json"])
        self.assertEqual(code, 0)
        data = json.loads(out.getvalue())
        self.assertEqual([d["id"] for d in data], [RECEIVER.id])
        self.assertEqual(data[0]["status"], "connected")

    def test_probe_json(self) -> None:
        probes = {
            DetectionStrategy.NATIVE_EVENT: lambda: SubstrateProbe(False, "not linux"),
            DetectionStrategy.NATIVE_POLL: lambda: SubstrateProbe(True),
        }
        with patch("usbwatch.cli.default_probes", return_value=probes), patch(
            "sys.stdout", new_callable=io.StringIO
        ) as out:
            code = cli.main(["probe", "--json"])
        self.assertEqual(code, 0)
        payload = json.loads(out.getvalue())
        self.assertEqual(payload["strategy"], "native-poll")
        self.assertFalse(payload["availability"]["native-event"])

    def test_monitor_runtime_writes_log(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "events.csv"
            with patch("usbwatch.cli.UsbMonitor", _fake_monitor), patch("sys.stdout", new_callable=io.StringIO) as out:
                code = cli.main(["monitor", "--runtime", "0.05", "--log", str(log_path)])
            self.assertEqual(code, 0)
            self.assertIn("[+] Device Connected: USB Receiver", out.getvalue())
            rows = log_path.read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(rows), 2)


if __name__ == "__main__":
    unittest.main()
