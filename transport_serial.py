import asyncio
import errno
import os
import serial
import serial_asyncio
from serial.tools import list_ports
import logging
logger = logging.getLogger(__name__)

from glove_errors import TransportDenied, TransportOpenFailed, TransportUnavailable

READ_CHUNK = 4096
DEFAULT_BAUDRATE = 9600

_MISSING = {errno.ENOENT, errno.ENODEV, errno.ENXIO}
_DENIED = {errno.EACCES, errno.EPERM, errno.EBUSY}


def _usb_info(port):
    try:
        for info in list_ports.comports():
            if info.device == port or os.path.realpath(port) == info.device:
                return {"usbVendorId": info.vid, "usbProductId": info.pid}
    except Exception as e:
        logger.debug("serial: port listing failed: %s", e)
    return {}


class SerialTransport:
    kind = "serial"

    def __init__(self, port, baudrate=DEFAULT_BAUDRATE):
        self.port = port
        self.baudrate = baudrate
        self.reader = None
        self.writer = None
        self._usb = {}

    async def start(self):
        if not self.port:
            raise TransportUnavailable("no serial port selected")
        try:
            self.reader, self.writer = await serial_asyncio.open_serial_connection(
                url=self.port, baudrate=self.baudrate
            )
        except PermissionError as e:
            raise TransportDenied(f"access to {self.port} refused: {e}") from e
        except FileNotFoundError as e:
            raise TransportUnavailable(f"serial port {self.port} not found") from e
        except (serial.SerialException, OSError) as e:
            code = getattr(e, "errno", None)
            if code in _MISSING:
                raise TransportUnavailable(f"serial port {self.port} not found") from e
            if code in _DENIED:
                raise TransportDenied(f"access to {self.port} refused: {e}") from e
            raise TransportOpenFailed(f"could not open {self.port}: {e}") from e
        # comports() walks sysfs or the registry; keep it off the event loop
        self._usb = await asyncio.to_thread(_usb_info, self.port)
        logger.debug("SerialTransport.start: opened %s @ %s", self.port, self.baudrate)

    def info(self):
        meta = {"port": self.port, "baudRate": self.baudrate}
        meta.update(self._usb)
        return meta

    async def read(self):
        if self.reader is None:
            return b""
        return await self.reader.read(READ_CHUNK)

    async def write(self, data):
        if self.writer is None:
            raise ConnectionError("serial port is not open")
        self.writer.write(data)
        await self.writer.drain()

    async def close(self):
        writer = self.writer
        self.writer = None
        self.reader = None
        if writer is None:
            return
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
        except asyncio.TimeoutError:
            logger.debug("SerialTransport.close: %s did not confirm close", self.port)
        logger.debug("SerialTransport.close: closed %s", self.port)
