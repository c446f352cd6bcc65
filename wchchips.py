import configparser
import logging
from collections import namedtuple

from wchproto import DirectoryLookupError

logger = logging.getLogger(__name__)

ChipDescriptor = namedtuple('ChipDescriptor', [
    'chip_id', 'type_id', 'name', 'flash_size', 'eeprom_size',
    'min_erase_sector_number', 'supports_code_flash_protect', 'uid_size'],
    defaults=[8])

KiB = 1024

# (chip_id, type_id, name, flash, eeprom, min erase sectors, protect, uid)
# CH55x bootloaders key off the first 4 UID bytes only
CHIPS = [
    ChipDescriptor(0x51, 0x11, 'CH551', 10 * KiB, 128, 8, False, 4),
    ChipDescriptor(0x52, 0x11, 'CH552', 14 * KiB, 128, 8, False, 4),
    ChipDescriptor(0x53, 0x11, 'CH553', 10 * KiB, 128, 8, False, 4),
    ChipDescriptor(0x54, 0x11, 'CH554', 14 * KiB, 128, 8, False, 4),
    ChipDescriptor(0x59, 0x11, 'CH559', 60 * KiB, 1 * KiB, 8, False, 4),
    ChipDescriptor(0x49, 0x12, 'CH549', 60 * KiB, 1 * KiB, 8, False, 4),
    ChipDescriptor(0x71, 0x13, 'CH571', 192 * KiB, 32 * KiB, 8, True),
    ChipDescriptor(0x73, 0x13, 'CH573', 448 * KiB, 32 * KiB, 8, True),
    ChipDescriptor(0x81, 0x16, 'CH581', 192 * KiB, 32 * KiB, 8, True),
    ChipDescriptor(0x82, 0x16, 'CH582', 448 * KiB, 32 * KiB, 8, True),
    ChipDescriptor(0x83, 0x16, 'CH583', 448 * KiB, 32 * KiB, 8, True),
    ChipDescriptor(0x30, 0x17, 'CH32V303CBT6', 128 * KiB, 0, 8, True),
    ChipDescriptor(0x31, 0x17, 'CH32V303RBT6', 128 * KiB, 0, 8, True),
    ChipDescriptor(0x32, 0x17, 'CH32V303RCT6', 256 * KiB, 0, 8, True),
    ChipDescriptor(0x33, 0x17, 'CH32V303VCT6', 256 * KiB, 0, 8, True),
    ChipDescriptor(0x50, 0x17, 'CH32V305RBT6', 128 * KiB, 0, 8, True),
    ChipDescriptor(0x70, 0x17, 'CH32V307VCT6', 256 * KiB, 0, 8, True),
    ChipDescriptor(0x30, 0x19, 'CH32V203C8T6', 64 * KiB, 0, 8, True),
    ChipDescriptor(0x20, 0x14, 'CH32F103C8T6', 64 * KiB, 0, 8, True),
]


class ChipDirectory:
    """Read-only lookup of chip descriptors by identification bytes."""

    def __init__(self, chips=CHIPS):
        self._chips = {(c.chip_id, c.type_id): c for c in chips}

    def __len__(self):
        return len(self._chips)

    def __iter__(self):
        return iter(self._chips.values())

    def find(self, chip_id, type_id):
        try:
            return self._chips[(chip_id, type_id)]
        except KeyError:
            raise DirectoryLookupError(
                'Unknown chip id 0x{:02X} type 0x{:02X}'.format(
                    chip_id, type_id)) from None

    @classmethod
    def from_ini(cls, path):
        """Load a directory from an INI file, one section per chip:

        [CH552]
        chipid = 0x52
        typeid = 0x11
        MaxFlashSize = 14336
        MaxEepromSize = 128
        MinEraseSectors = 8
        CodeFlashProtect = no
        UidSize = 4
        """
        params_ini = configparser.ConfigParser()
        if not params_ini.read(path):
            raise FileNotFoundError(path)
        chips = []
        for section in params_ini.sections():
            sec = params_ini[section]
            if 'chipid' not in sec or 'typeid' not in sec:
                logger.warning('skipping %s: no chipid/typeid', section)
                continue
            chips.append(ChipDescriptor(
                chip_id=int(sec['chipid'], 0),
                type_id=int(sec['typeid'], 0),
                name=section,
                flash_size=int(sec.get('MaxFlashSize', '0'), 0),
                eeprom_size=int(sec.get('MaxEepromSize', '0'), 0),
                min_erase_sector_number=int(sec.get('MinEraseSectors', '8'), 0),
                supports_code_flash_protect=sec.getboolean('CodeFlashProtect',
                                                           False),
                uid_size=int(sec.get('UidSize', '8'), 0)))
        logger.debug('loaded %d chips from %s', len(chips), path)
        return cls(chips)
