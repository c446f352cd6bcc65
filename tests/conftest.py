"""
conftest.py - Shared fixtures for wchprog tests.

SimDevice stands in for the USB transport: it decodes every command frame,
answers like a WCH bootloader would and keeps a code flash image, so the
session can be driven end to end without hardware.
"""
import struct
import sys
from pathlib import Path

import pytest

# Ensure the parent directory is on sys.path so we can import the modules
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from wchchips import ChipDescriptor, ChipDirectory  # noqa: E402

CH582 = ChipDescriptor(0x82, 0x16, 'CH582', 448 * 1024, 32 * 1024, 8, True)
CH32V307 = ChipDescriptor(0x70, 0x17, 'CH32V307', 256 * 1024, 0, 8, True)
CH552 = ChipDescriptor(0x52, 0x11, 'CH552', 14 * 1024, 128, 8, False, 4)

UID = bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88])
BTVER = bytes([0x00, 0x02, 0x07, 0x00])
UNLOCKED_CONFIG = bytes([0xA5, 0x5A, 0x3F, 0xC0, 0x00, 0xFF, 0x00, 0xFF,
                         0xFF, 0xFF, 0xFF, 0xFF])
LOCKED_CONFIG = bytes([0x3A, 0xC5, 0x3F, 0xC0, 0x00, 0xFF, 0x00, 0xFF,
                       0x00, 0x00, 0x00, 0x00])

FAIL = 0xFE


class SimDevice:
    """Simulated WCH ISP bootloader behind the transport interface."""

    def __init__(self, chip=CH582, uid=UID, config=UNLOCKED_CONFIG,
                 btver=BTVER):
        self.chip = chip
        self.uid = bytes(uid)
        self.config = bytearray(config)
        self.btver = bytes(btver)
        self.flash = bytearray(b'\xff' * chip.flash_size)
        self.key = None
        self.failing = set()
        self.key_checksum_delta = 0
        self.replies = {}
        self.frames = []
        self.pending = None
        self.opened = 0
        self.claimed = None
        self.closed = 0
        self.ended = False

    # ── transport interface ──

    def open(self):
        self.opened += 1
        return self

    def claim_interface(self, config_index, interface_index):
        self.claimed = (config_index, interface_index)

    def write(self, data, timeout_ms):
        data = bytes(data)
        self.frames.append(data)
        cmd, dlen = struct.unpack('<BH', data[:3])
        payload = data[3:]
        assert len(payload) == dlen
        self.pending = self.handle(cmd, payload)
        return len(data)

    def read(self, size, timeout_ms):
        raw, self.pending = self.pending, None
        return raw[:size]

    def close(self):
        self.closed += 1

    # ── bootloader behaviour ──

    def commands(self):
        return [f[0] for f in self.frames]

    def reply(self, cmd, status, payload=b''):
        payload = bytes(payload)
        return struct.pack('<BBH', cmd, status, len(payload)) + payload

    def device_key(self):
        s = sum(self.uid[:self.chip.uid_size]) & 0xFF
        return [s] * 7 + [(s + self.chip.chip_id) & 0xFF]

    def unscramble(self, data):
        key = self.device_key()
        return bytes(v ^ key[i % 8] for i, v in enumerate(data))

    def handle(self, cmd, payload):
        if cmd in self.failing:
            return self.reply(cmd, FAIL)
        if cmd in self.replies:
            return self.reply(cmd, 0, self.replies[cmd])
        if cmd == 0xA1:
            assert payload[2:] == b'MCU ISP & WCH.CN'
            return self.reply(cmd, 0, [self.chip.chip_id, self.chip.type_id])
        if cmd == 0xA7:
            mask = payload[0]
            data = bytes([mask, 0]) + bytes(self.config)
            if mask & 0x08:
                data += self.btver
            if mask & 0x10:
                data += self.uid
            return self.reply(cmd, 0, data)
        if cmd == 0xA8:
            self.config[:] = payload[2:14]
            return self.reply(cmd, 0)
        if cmd == 0xA3:
            if len(payload) != 0x1E:
                return self.reply(cmd, FAIL)
            self.key = self.device_key()
            checksum = (sum(self.key) + self.key_checksum_delta) & 0xFF
            return self.reply(cmd, 0, [checksum])
        if cmd == 0xA4:
            sectors, = struct.unpack('<I', payload)
            self.flash[:sectors * 1024] = b'\xff' * (sectors * 1024)
            return self.reply(cmd, 0)
        if cmd in (0xA5, 0xA6):
            if self.key is None:
                return self.reply(cmd, FAIL)
            address, padding = struct.unpack('<IB', payload[:5])
            data = self.unscramble(payload[5:])
            if cmd == 0xA5:
                self.flash[address:address + len(data)] = data
                if not data:
                    self.key = None
                return self.reply(cmd, 0)
            match = self.flash[address:address + len(data)] == data
            return self.reply(cmd, 0, [0x00 if match else 0xF5])
        if cmd == 0xA2:
            self.ended = True
            return self.reply(cmd, 0)
        return self.reply(cmd, FAIL)


@pytest.fixture
def directory():
    return ChipDirectory([CH582, CH32V307, CH552])


@pytest.fixture
def device():
    return SimDevice()


@pytest.fixture
def locked_device():
    return SimDevice(config=LOCKED_CONFIG)


@pytest.fixture
def isp(device, directory):
    import wchprog
    return wchprog.WCHISP(device, directory)
