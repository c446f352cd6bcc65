#!/usr/bin/python

import argparse
import logging
import struct
import sys

from intelhex import IntelHex

import wchproto
from wchchips import ChipDirectory
from wchproto import (CFG_MASK_ALL, CFG_MASK_RDPR_USER_DATA_WPR,
                      ISP_KEY_SEED_SIZE, ChecksumMismatchError,
                      DataEepromAbsentError, FramingError, ProtocolError,
                      TransportError, UnsupportedOperationError, WchIspError,
                      chunks, derive_key, hex_str, scramble)
from wchusb import UsbTransport

USB_TIMEOUT_MS = 1000
MAX_PACKET = 1024
SECTOR_SIZE = 1024

USB_CONFIG = 1
USB_INTERFACE = 0

# read config payload layout (mask 0x1F):
# [mask, 0, RDPR, nRDPR, USER, nUSER, DATA0, nDATA0, DATA1, nDATA1,
#  WPR0..3, BTVER0..3, UID0..7]
# CH55x only use UID0..3
CONFIG_OFFSET = 2
CONFIG_SIZE = 12
BTVER_OFFSET = 14
BTVER_SIZE = 4
UID_OFFSET = 18

RDPR_UNLOCKED = 0xA5
NRDPR_UNLOCKED = 0x5A
WPR_OFFSET = 8

ISP_END_RESET = 1


class WCHISP:
    """A programming session with a WCH chip in ISP mode.

    Opening the session claims the device, reads the whole configuration
    and identifies the chip. The transport is released on any failure.
    """

    def __init__(self, transport, directory=None, logger=None):
        self.transport = transport
        self.directory = directory if directory is not None else ChipDirectory()
        self.logger = logger or logging.getLogger(__name__)
        self.chip = None
        self.chip_uid = b''
        self.bootloader_version = b''
        self.code_flash_protected = False
        try:
            self.transport.open()
            self.transport.claim_interface(USB_CONFIG, USB_INTERFACE)

            buffer = self.read_config(CFG_MASK_ALL)
            self.chip = self.identify()
            uid = buffer[UID_OFFSET:UID_OFFSET + self.chip.uid_size]
            if len(uid) != self.chip.uid_size:
                raise FramingError('Config reply too short, len={}'.format(
                    len(buffer)), command='read config')
            self.code_flash_protected = self._protection_marker(buffer)
            self.bootloader_version = bytes(
                buffer[BTVER_OFFSET:BTVER_OFFSET + BTVER_SIZE])
            self.chip_uid = bytes(uid)
        except Exception:
            self.close()
            raise

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        if self.transport is not None:
            self.transport.close()

    def transfer(self, frame):
        try:
            self.transport.write(frame, USB_TIMEOUT_MS)
            raw = self.transport.read(MAX_PACKET, USB_TIMEOUT_MS)
        except TransportError:
            raise
        except OSError as e:
            raise TransportError(str(e), e) from e
        self.logger.debug('=> %s', hex_str(frame))
        self.logger.debug('<= %s', hex_str(raw))
        return wchproto.decode(raw)

    def _expect_ok(self, resp, message):
        if not resp.ok:
            raise ProtocolError('{} (status 0x{:02X})'.format(
                message, resp.status), command=resp.name, status=resp.status)
        return resp

    def _protection_marker(self, buffer):
        return (self.chip.supports_code_flash_protect and
                buffer[CONFIG_OFFSET] != RDPR_UNLOCKED)

    def identify(self):
        resp = self.transfer(wchproto.identify(0, 0))
        self._expect_ok(resp, 'chip identification failed')
        if len(resp.payload) < 2:
            raise FramingError('Identify reply too short, len={}'.format(
                len(resp.payload)), command=resp.name)
        chip = self.directory.find(resp.payload[0], resp.payload[1])
        self.logger.debug('identified %s', chip.name)
        return chip

    def read_config(self, mask):
        resp = self._expect_ok(self.transfer(wchproto.read_config(mask)),
                               'read config failed')
        payload = resp.payload
        if (self.chip is not None and mask & 0x01 and
                len(payload) > CONFIG_OFFSET):
            self.code_flash_protected = self._protection_marker(payload)
        return payload

    def write_config(self, mask, data):
        self._expect_ok(self.transfer(wchproto.write_config(mask, data)),
                        'write config failed')

    def config_raw(self):
        """Return the 12 raw config bytes: RDPR, nRDPR, USER, nUSER,
        DATA0, nDATA0, DATA1, nDATA1, WPR0..3."""
        payload = self.read_config(CFG_MASK_RDPR_USER_DATA_WPR)
        config = bytes(payload[CONFIG_OFFSET:CONFIG_OFFSET + CONFIG_SIZE])
        if len(config) != CONFIG_SIZE:
            raise FramingError('Config reply too short, len={}'.format(
                len(payload)), command='read config')
        return config

    def config_words(self):
        return struct.unpack('<4I', self.config_raw())

    def check_chip_name(self, name):
        return self.chip.name.startswith(name)

    def _isp_key(self):
        # device derives the same key from its UID on every ISP_KEY
        key, key_checksum = derive_key(self.chip_uid, self.chip.chip_id)
        resp = self._expect_ok(
            self.transfer(wchproto.isp_key(bytes(ISP_KEY_SEED_SIZE))),
            'isp key failed')
        if not resp.payload:
            raise FramingError('Empty isp key reply', command=resp.name)
        if resp.payload[0] != key_checksum:
            raise ChecksumMismatchError(
                'isp key checksum failed: 0x{:02X} != 0x{:02X}'.format(
                    resp.payload[0], key_checksum))
        return key

    def flash_chunk(self, address, data, key):
        frame = wchproto.program(address, 0, scramble(data, key))
        self._expect_ok(self.transfer(frame),
                        'program at address 0x{:08X} failed'.format(address))

    def verify_chunk(self, address, data, key):
        frame = wchproto.verify(address, 0, scramble(data, key))
        resp = self._expect_ok(self.transfer(frame), 'verify response failed')
        if not resp.payload:
            raise FramingError('Empty verify reply', command=resp.name)
        if resp.payload[0] != 0x00:
            raise ChecksumMismatchError(
                'verify failed, mismatch at address 0x{:08X}'.format(address))

    def flash(self, image, progress=None):
        key = self._isp_key()
        for address, chunk in chunks(image):
            self.flash_chunk(address, chunk, key)
            if progress:
                progress(address + len(chunk), len(image))
        # empty chunk ends the program sequence
        self.flash_chunk(len(image), b'', key)
        self.logger.info('Code flash %d bytes written', len(image))

    def verify(self, image, progress=None):
        key = self._isp_key()
        for address, chunk in chunks(image):
            self.verify_chunk(address, chunk, key)
            if progress:
                progress(address + len(chunk), len(image))
        self.logger.info('Code flash %d bytes verified', len(image))

    def erase_code(self, sectors):
        sectors = max(sectors, self.chip.min_erase_sector_number)
        self._expect_ok(self.transfer(wchproto.erase(sectors)), 'erase failed')
        self.logger.info('Erased %d code flash sectors', sectors)
        return sectors

    def erase_data(self, sectors):
        if self.chip.eeprom_size == 0:
            raise DataEepromAbsentError("chip doesn't support data EEPROM")
        raise UnsupportedOperationError(
            'erasing {} data EEPROM sectors is not implemented'.format(sectors))

    def unprotect(self, force=False):
        if not force and not self.code_flash_protected:
            return False
        config = bytearray(self.config_raw())
        config[0] = RDPR_UNLOCKED
        config[1] = NRDPR_UNLOCKED
        config[WPR_OFFSET:WPR_OFFSET + 4] = b'\xff' * 4
        self.write_config(CFG_MASK_RDPR_USER_DATA_WPR, config)
        self.code_flash_protected = False
        self.logger.info('Code flash unprotected')
        return True

    def reset(self):
        self._expect_ok(self.transfer(wchproto.isp_end(ISP_END_RESET)),
                        'isp end failed')

    def program(self, image, verify=True, progress=None):
        """Unprotect, erase, flash and optionally verify an image."""
        if len(image) > self.chip.flash_size:
            raise ValueError('image size {} exceeds {} code flash of {} '
                             'bytes'.format(len(image), self.chip.name,
                                            self.chip.flash_size))
        self.unprotect()
        self.erase_code(-(-len(image) // SECTOR_SIZE))
        self.flash(image, progress)
        if verify:
            self.verify(image, progress)

    def info(self):
        chip = self.chip
        if chip.eeprom_size > 0:
            lines = ['Chip: {} (Code Flash: {}KiB, Data EEPROM: {})'.format(
                chip.name, chip.flash_size // 1024, size_str(chip.eeprom_size))]
        else:
            lines = ['Chip: {} (Code Flash: {}KiB)'.format(
                chip.name, chip.flash_size // 1024)]
        lines.append('Chip UID: {}'.format(
            '-'.join('{:02x}'.format(b) for b in self.chip_uid)))
        lines.append('BTVER(bootloader ver): {:x}{:x}.{:x}{:x}'.format(
            *self.bootloader_version))
        lines.append('Code Flash protected: {}'.format(
            self.code_flash_protected))
        return lines


def size_str(size):
    if size < 1024:
        return '{}B'.format(size)
    return '{}KiB'.format(size // 1024)


def load_image(path):
    if path.lower().endswith(('.hex', '.ihx')):
        image = IntelHex()
        image.fromfile(path, format='hex')
        # flash always starts at address 0
        return bytes(image.tobinarray(start=0))
    with open(path, 'rb') as f:
        return f.read()


def show_progress(done, total):
    sys.stdout.write('#')
    sys.stdout.flush()
    if done >= total:
        print('')


def main(argv=None):
    parser = argparse.ArgumentParser(
        description='Program WCH microcontrollers over the USB ISP bootloader')
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('-i', '--info', action='store_true',
                       help='show chip information')
    group.add_argument('-f', '--flash', type=str, metavar='IMAGE',
                       help='erase, flash and verify the provided hex/bin file')
    group.add_argument('-c', '--verify', type=str, metavar='IMAGE',
                       help='verify the code flash against a hex/bin file')
    group.add_argument('-e', '--erase', action='store_true',
                       help='erase the whole code flash')
    group.add_argument('-u', '--unprotect', action='store_true',
                       help='remove code flash read/write protection')
    group.add_argument('-r', '--reset', action='store_true',
                       help='leave ISP mode and start the application')
    parser.add_argument('--no-verify', action='store_true',
                        help='skip verification after flashing')
    parser.add_argument('-s', '--start', action='store_true', default=False,
                        help='start the program after flashing')
    parser.add_argument('--chips', type=str, metavar='INI',
                        help='chip directory file replacing the built-in one')
    parser.add_argument('-v', '--verbose', help='enable debug prints',
                        action='store_true')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(message)s')
    log = logging.getLogger('wchprog')

    try:
        directory = ChipDirectory.from_ini(args.chips) if args.chips else None
        with WCHISP(UsbTransport(), directory) as isp:
            log.info('Found %s', isp.chip.name)
            if args.info:
                for line in isp.info():
                    print(line)
                print('Config: {}'.format(hex_str(isp.config_raw())))
            elif args.flash:
                image = load_image(args.flash)
                isp.program(image, verify=not args.no_verify,
                            progress=show_progress)
                if args.start:
                    log.info('All done, starting program...')
                    isp.reset()
            elif args.verify:
                isp.verify(load_image(args.verify), show_progress)
            elif args.erase:
                isp.unprotect()
                isp.erase_code(isp.chip.flash_size // SECTOR_SIZE)
            elif args.unprotect:
                isp.unprotect(force=True)
            elif args.reset:
                isp.reset()
    except (WchIspError, ValueError, OSError) as e:
        log.error('Error: %s', e)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
