"""
Radio transport for the glove: Bluetooth LE with the Nordic UART Service.

# Find the glove and check it advertises the UART service.
bluetoothctl scan on
bluetoothctl info 77:88:99:AA:BB:CC

# Disconnect bluez from the device. Sometimes bleak needs this to own the connection.
bluetoothctl disconnect 77:88:99:AA:BB:CC
"""


import asyncio
import re
from bleak import BleakClient, BleakScanner
from bleak.exc import (
    BleakBluetoothNotAvailableError,
    BleakBluetoothNotAvailableReason,
    BleakDeviceNotFoundError,
    BleakError,
)
import logging
logger = logging.getLogger(__name__)

from glove_errors import TransportDenied, TransportOpenFailed, TransportUnavailable

# Nordic UART Service UUIDs
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # we write here
NUS_TX_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # device notifies here

DEFAULT_NAME = "Neuro Glove"
SCAN_TIMEOUT = 8.0
MIN_WRITE_CHUNK = 20

_ADDRESS_RE = re.compile(
    r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$|^[0-9A-Fa-f]{8}-([0-9A-Fa-f]{4}-){3}[0-9A-Fa-f]{12}$"
)


def looks_like_address(selector):
    return bool(selector) and bool(_ADDRESS_RE.match(selector))


class BLETransport:
    kind = "radio"

    def __init__(self, selector=None, adapter=None, scan_timeout=SCAN_TIMEOUT):
        self.selector = selector or DEFAULT_NAME
        self.adapter = adapter
        self.scan_timeout = scan_timeout
        self.client = None
        self._in_q = asyncio.Queue()
        self._meta = {}

    async def _resolve(self):
        # Returns (address_or_device, name, rssi)
        if looks_like_address(self.selector):
            return self.selector, None, None
        found = await BleakScanner.discover(timeout=self.scan_timeout, return_adv=True)
        for device, adv in found.values():
            name = adv.local_name or device.name or ""
            if name == self.selector:
                return device, name, adv.rssi
        raise TransportUnavailable(f"no BLE device named {self.selector!r} in range")

    async def start(self):
        # Reset state to avoid stale sentinels/data from prior sessions
        self._in_q = asyncio.Queue()
        try:
            target, name, rssi = await self._resolve()
            kwargs = {"disconnected_callback": self._on_disconnect}
            if self.adapter:
                kwargs["adapter"] = self.adapter
            client = BleakClient(target, **kwargs)
            await client.connect()
            try:
                await client.start_notify(NUS_TX_UUID, self._on_notify)
            except Exception:
                try:
                    await client.disconnect()
                except BleakError as e:
                    logger.debug("BLETransport.start: disconnect after failed subscribe: %s", e)
                raise
        except TransportUnavailable:
            raise
        except BleakBluetoothNotAvailableError as e:
            if e.reason == BleakBluetoothNotAvailableReason.DENIED_BY_USER:
                raise TransportDenied(f"bluetooth access refused: {e}") from e
            raise TransportUnavailable(f"bluetooth not available: {e}") from e
        except BleakDeviceNotFoundError as e:
            raise TransportUnavailable(f"BLE device {self.selector} not found") from e
        except PermissionError as e:
            raise TransportDenied(f"bluetooth access refused: {e}") from e
        except (BleakError, OSError, asyncio.TimeoutError) as e:
            raise TransportOpenFailed(f"could not connect to {self.selector}: {e}") from e
        self.client = client
        address = getattr(target, "address", target)
        self._meta = {"address": address, "name": name or self.selector, "rssi": rssi, "mtu": client.mtu_size}
        logger.debug("BLETransport.start: connected to %s (adapter=%s)", address, self.adapter)

    def _on_notify(self, _sender, data):
        self._in_q.put_nowait(bytes(data))

    def _on_disconnect(self, _client):
        logger.debug("BLETransport: peripheral disconnected")
        self._in_q.put_nowait(None)

    def info(self):
        return dict(self._meta)

    async def read(self):
        item = await self._in_q.get()
        if item is None:
            return b""
        return item

    async def write(self, data):
        if self.client is None:
            raise ConnectionError("radio link is not open")
        size = max(MIN_WRITE_CHUNK, (self.client.mtu_size or 23) - 3)
        for i in range(0, len(data), size):
            await self.client.write_gatt_char(NUS_RX_UUID, data[i : i + size], response=False)

    async def close(self):
        client = self.client
        if client is None:
            return
        self.client = None
        try:
            try:
                await client.stop_notify(NUS_TX_UUID)
            except BleakError as e:
                logger.debug("BLETransport.close: stop_notify failed: %s", e)
            await client.disconnect()
        finally:
            self._in_q.put_nowait(None)
