"""Fixture-driven tests for the OS command output parsers."""
from __future__ import annotations

import json
import unittest

from usbwatch.errors import ParseFailure
from usbwatch.models import BusLocation
from usbwatch.parsers import (
    MountEntry,
    normalize_platform,
    parse_linux_mounts,
    parse_linux_usb,
    parse_macos_usb,
    parse_macos_volumes,
    parse_usb_output,
    parse_windows_drives,
    parse_windows_usb,
)

LSUSB_OUTPUT = """\
Bus 002 Device 001: ID 1d6b:0003 Linux Foundation 3.0 root hub
Bus 001 Device 004: ID 046d:c52b Logitech, Inc. Unifying Receiver
Bus 001 Device 007: ID 0951:1666 Kingston Technology DataTraveler 100 G3/G4/SE9 G2/50
not a device line
"""

MACOS_OUTPUT = json.dumps(
    {
        "SPUSBDataType": [
            {
                "_name": "USB31Bus",
                "host_controller": "AppleT8112USBXHCI",
                "_items": [
                    {
                        "_name": "USB Receiver",
                        "vendor_id": "0x046d  (Logitech Inc.)",
                        "product_id": "0xc52b",
                        "location_id": "0x01100000 / 1",
                        "serial_num": "",
                    },
                    {
                        "_name": "USB3.0 Hub",
                        "vendor_id": "0x05e3  (Genesys Logic, Inc.)",
                        "product_id": "0x0612",
                        "location_id": "0x01200000 / 2",
                        "_items": [
                            {
                                "_name": "DataTraveler 3.0",
                                "manufacturer": "Kingston",
                                "vendor_id": "0x0951",
                                "product_id": "0x1666",
                                "serial_num": "001A4D5E",
                                "location_id": "0x01210000 / 3",
                            }
                        ],
                    },
                ],
            },
            {"_name": "USB Bus", "_items": []},
        ]
    }
)

WMIC_USB_OUTPUT = "\r\n".join(
    [
        "",
        "Node,Description,DeviceID",
        "DESKTOP,USB Root Hub (USB 3.0),USB\\ROOT_HUB30\\4&2B8E0A5&0&0",
        "DESKTOP,Generic USB Hub,USB\\VID_05E3&PID_0612\\5&1A2B3C&0&1",
        "DESKTOP,,",
        "",
    ]
)

DF_OUTPUT = """\
Filesystem      Size   Used  Avail Capacity iused ifree %iused  Mounted on
/dev/disk3s1s1 460Gi   15Gi  300Gi     5%  404k  3.1G    0%   /
/dev/disk4s1    14Gi  1.2Gi   13Gi     9%     1     0  100%   /Volumes/KINGSTON
/dev/disk5s1    29Gi   10Gi   19Gi    35%     1     0  100%   /Volumes/My Backup
"""

MOUNT_OUTPUT = """\
/dev/nvme0n1p2 on / type ext4 (rw,relatime)
/dev/sdb1 on /media/alice/STICK type vfat (rw,nosuid,nodev)
/dev/sdc1 on /mnt/archive type ext4 (rw)
"""


class UsbListParserTest(unittest.TestCase):
    def test_lsusb(self) -> None:
        records = parse_linux_usb(LSUSB_OUTPUT)
        self.assertEqual(len(records), 3)
        receiver = records[1]
        self.assertEqual(receiver.id, "046d-c52b-loc-bus1-dev4")
        self.assertEqual(receiver.vendor_id, 0x046D)
        self.assertEqual(receiver.product_id, 0xC52B)
        self.assertEqual(receiver.product_name, "Logitech, Inc. Unifying Receiver")
        self.assertEqual(receiver.bus_location, BusLocation(1, 4))

    def test_macos_json_walks_nested_items(self) -> None:
        records = parse_macos_usb(MACOS_OUTPUT)
        by_name = {record.product_name: record for record in records}
        self.assertEqual(set(by_name), {"USB Receiver", "USB3.0 Hub", "DataTraveler 3.0"})

        receiver = by_name["USB Receiver"]
        self.assertEqual(receiver.vendor_id, 0x046D)
        self.assertEqual(receiver.manufacturer, "Logitech Inc.")
        self.assertIsNone(receiver.serial_number)
        self.assertEqual(receiver.id, "046d-c52b-loc-bus1-dev1")

        stick = by_name["DataTraveler 3.0"]
        self.assertEqual(stick.id, "0951-1666-sn-001A4D5E")
        self.assertEqual(stick.manufacturer, "Kingston")

    def test_macos_rejects_invalid_json(self) -> None:
        with self.assertRaises(ParseFailure):
            parse_macos_usb("{not json")
        with self.assertRaises(ParseFailure):
            parse_macos_usb("[]")

    def test_wmic_csv(self) -> None:
        records = parse_windows_usb(WMIC_USB_OUTPUT)
        self.assertEqual([r.product_name for r in records], ["USB Root Hub (USB 3.0)", "Generic USB Hub"])
        for record in records:
            self.assertTrue(record.id.startswith("windows-"))
            self.assertEqual((record.vendor_id, record.product_id), (0, 0))
        self.assertNotEqual(records[0].id, records[1].id)

        again = parse_windows_usb(WMIC_USB_OUTPUT)
        self.assertEqual([r.id for r in records], [r.id for r in again])

    def test_dispatch_by_platform(self) -> None:
        self.assertEqual(len(parse_usb_output(LSUSB_OUTPUT, "linux")), 3)
        self.assertEqual(parse_usb_output(LSUSB_OUTPUT, "sunos5"), [])
        self.assertEqual(normalize_platform("linux2"), "linux")
        self.assertEqual(normalize_platform("win32"), "win32")
        self.assertEqual(normalize_platform("darwin"), "darwin")


class MountParserTest(unittest.TestCase):
    def test_macos_volumes_keep_spaces(self) -> None:
        self.assertEqual(parse_macos_volumes(DF_OUTPUT), ["/Volumes/KINGSTON", "/Volumes/My Backup"])

    def test_windows_drives(self) -> None:
        output = "DeviceID  \r\nE:        \r\nF:        \r\n\r\n"
        self.assertEqual(parse_windows_drives(output), ["E:", "F:"])

    def test_linux_mounts_prefer_media(self) -> None:
        entries = parse_linux_mounts(MOUNT_OUTPUT)
        self.assertEqual(entries, [MountEntry("/dev/sdb1", "/media/alice/STICK", "vfat")])

    def test_linux_mounts_fall_back_to_mnt(self) -> None:
        output = "\n".join(line for line in MOUNT_OUTPUT.splitlines() if "/media/" not in line)
        entries = parse_linux_mounts(output)
        self.assertEqual([e.mount_point for e in entries], ["/mnt/archive"])
        self.assertEqual(parse_linux_mounts("/dev/sda1 on / type ext4 (rw)"), [])


if __name__ == "__main__":
    unittest.main()
