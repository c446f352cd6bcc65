import logging

import usb.core
import usb.util

from wchproto import TransportError

logger = logging.getLogger(__name__)

USB_VENDOR_IDS = (0x4348, 0x1A86)
USB_PRODUCT_ID = 0x55E0

EP_OUT = 0x02
EP_IN = 0x82


class UsbTransport:
    """Bulk OUT/IN channel to a WCH bootloader over pyusb."""

    def __init__(self, dev=None, vendor_ids=USB_VENDOR_IDS,
                 product_id=USB_PRODUCT_ID):
        self.dev = dev
        self.vendor_ids = vendor_ids
        self.product_id = product_id
        self.interface = None
        self.epout = None
        self.epin = None

    def open(self):
        if self.dev is None:
            for vid in self.vendor_ids:
                self.dev = usb.core.find(idVendor=vid,
                                         idProduct=self.product_id)
                if self.dev is not None:
                    break
        if self.dev is None:
            raise TransportError('Device not found')
        logger.debug('opened device %04x:%04x', self.dev.idVendor,
                     self.dev.idProduct)
        return self.dev

    def claim_interface(self, config_index=1, interface_index=0):
        try:
            if self.dev.is_kernel_driver_active(interface_index):
                self.dev.detach_kernel_driver(interface_index)
        except (NotImplementedError, usb.core.USBError):
            # not supported on every backend
            pass
        try:
            self.dev.set_configuration(config_index)
            usb.util.claim_interface(self.dev, interface_index)
        except usb.core.USBError as e:
            raise TransportError('Cannot claim interface {}: {}'.format(
                interface_index, e), e) from e
        self.interface = interface_index

        cfg = self.dev.get_active_configuration()
        intf = cfg[(interface_index, 0)]
        self.epout = usb.util.find_descriptor(intf, bEndpointAddress=EP_OUT)
        self.epin = usb.util.find_descriptor(intf, bEndpointAddress=EP_IN)
        if self.epout is None or self.epin is None:
            raise TransportError('Bulk endpoints not found')

    def write(self, data, timeout_ms):
        try:
            return self.epout.write(data, timeout_ms)
        except usb.core.USBError as e:
            raise TransportError('USB write failed: {}'.format(e), e) from e

    def read(self, size, timeout_ms):
        try:
            return bytes(self.epin.read(size, timeout_ms))
        except usb.core.USBError as e:
            raise TransportError('USB read failed: {}'.format(e), e) from e

    def close(self):
        self.epout = None
        self.epin = None
        if self.dev is None:
            return
        dev, self.dev = self.dev, None
        if self.interface is not None:
            interface, self.interface = self.interface, None
            try:
                usb.util.release_interface(dev, interface)
            except usb.core.USBError as e:
                logger.warning('release interface failed: %s', e)
        usb.util.dispose_resources(dev)
