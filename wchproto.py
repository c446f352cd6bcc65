'''
Protocol:
Command frames have a header of size 3 followed by the payload:
CC LL LL DATA[LEN]
msg[0] = CC: command
msg[1:3] = LL LL: length of payload, little endian

Response frames echo the command and carry a status byte:
CC SS LL LL DATA[LEN]
msg[0] = CC: command
msg[1] = SS: status, 0x00 when the command succeeded
msg[2:4] = LL LL: length of payload, little endian
'''

import struct
from collections import namedtuple


class Command:
    IDENTIFY = 0xA1
    ISP_END = 0xA2
    ISP_KEY = 0xA3
    ERASE = 0xA4
    PROGRAM = 0xA5
    VERIFY = 0xA6
    READ_CONFIG = 0xA7
    WRITE_CONFIG = 0xA8
    DATA_ERASE = 0xA9
    DATA_PROGRAM = 0xAA
    DATA_READ = 0xAB
    WRITE_OTP = 0xC3
    READ_OTP = 0xC4
    SET_BAUD = 0xC5


COMMAND_NAMES = {v: k.lower().replace('_', ' ')
                 for k, v in vars(Command).items() if not k.startswith('_')}

HEADER_SIZE = 4
STATUS_OK = 0x00
IDENTIFY_MAGIC = b'MCU ISP & WCH.CN'

# config read/write masks
CFG_MASK_RDPR_USER_DATA_WPR = 0x07
CFG_MASK_BTVER = 0x08
CFG_MASK_UID = 0x10
CFG_MASK_ALL = 0x1F

KEY_SIZE = 8
ISP_KEY_SEED_SIZE = 0x1E
CHUNK_SIZE = 56

# per-chunk keystream only equals the absolute-offset one on key boundaries
assert CHUNK_SIZE % KEY_SIZE == 0


class WchIspError(Exception):
    """Generic exception type for errors occurring in wchprog."""


class TransportError(WchIspError, IOError):
    """Exception: writing to or reading from the device failed."""

    def __init__(self, message, reason=None):
        super().__init__(message)
        self.reason = reason


class ProtocolError(WchIspError):
    """Exception: the device rejected a command."""

    def __init__(self, message, command=None, status=None):
        super().__init__(message)
        self.command = command
        self.status = status


class FramingError(ProtocolError):
    """Exception: a response frame is malformed or too short."""


class ChecksumMismatchError(WchIspError):
    """Exception: key checksum or verified data did not match."""


class UnsupportedOperationError(WchIspError):
    """Exception: the operation is not implemented."""


class DataEepromAbsentError(UnsupportedOperationError):
    """Exception: the chip has no data EEPROM."""


class DirectoryLookupError(WchIspError, LookupError):
    """Exception: the identification bytes match no known chip."""


class Response(namedtuple('Response', ['command', 'status', 'payload'])):
    __slots__ = ()

    @property
    def ok(self):
        return self.status == STATUS_OK

    @property
    def name(self):
        return COMMAND_NAMES.get(self.command,
                                 '0x{:02X}'.format(self.command))


def encode(command, payload=b''):
    payload = bytes(payload)
    return struct.pack('<BH', command, len(payload)) + payload


def decode(raw, length=None):
    if length is None:
        length = len(raw)
    raw = bytes(raw[:length])
    if len(raw) < HEADER_SIZE:
        raise FramingError('Response too short, len={}'.format(len(raw)))
    command, status, dlen = struct.unpack('<BBH', raw[:HEADER_SIZE])
    payload = raw[HEADER_SIZE:HEADER_SIZE + dlen]
    if len(payload) != dlen:
        raise FramingError('Wrong response data len {} insteadof {} for cmd '
                           '0x{:02X}'.format(len(payload), dlen, command),
                           command=COMMAND_NAMES.get(command), status=status)
    return Response(command, status, payload)


def identify(device_id=0, device_type=0):
    return encode(Command.IDENTIFY,
                  bytes([device_id, device_type]) + IDENTIFY_MAGIC)


def isp_end(reason):
    return encode(Command.ISP_END, [reason])


def isp_key(seed):
    return encode(Command.ISP_KEY, seed)


def erase(sectors):
    return encode(Command.ERASE, struct.pack('<I', sectors))


def program(address, padding, data):
    return encode(Command.PROGRAM,
                  struct.pack('<IB', address, padding) + bytes(data))


def verify(address, padding, data):
    return encode(Command.VERIFY,
                  struct.pack('<IB', address, padding) + bytes(data))


def read_config(mask):
    return encode(Command.READ_CONFIG, [mask, 0])


def write_config(mask, data):
    return encode(Command.WRITE_CONFIG, bytes([mask, 0]) + bytes(data))


def checksum(data):
    return sum(data) & 0xFF


def derive_key(chip_uid, chip_id):
    """Return the XOR key for a chip and the checksum the device answers
    to an ISP_KEY command with.

    The first seven key bytes are the byte sum of the chip unique ID, the
    last one adds the chip id on top of it.
    """
    uid_sum = checksum(chip_uid)
    key = bytes([uid_sum] * (KEY_SIZE - 1) + [(uid_sum + chip_id) & 0xFF])
    return key, checksum(key)


def scramble(data, key):
    return bytes(v ^ key[i % len(key)] for i, v in enumerate(data))


def chunks(data, size=CHUNK_SIZE):
    for addr in range(0, len(data), size):
        yield addr, data[addr:addr + size]


def hex_str(v):
    return ' '.join('{:02X}'.format(c) for c in v)
