from __future__ import annotations
import asyncio, re
from typing import Optional, Callable, List

from bleak import BleakScanner, BleakClient
from bleak.exc import BleakError

from ..errors import TransportUnavailable
from ..logs import NdjsonLogger
from ..protocol import HM10_CHAR, HM10_SERVICE, terminate
from .util import scan_lock, bluez_scan_off

RE_MAC = re.compile(r"[0-9a-fA-F]{2}(:[0-9a-fA-F]{2}){5}")


class Hm10Transport:
    """Transparent UART over an HM-10 style module (service FFE0, char FFE1).

    Writes go to the FFE1 characteristic; its notifications are forwarded
    unmodified to the ``on_chunk`` callbacks. A link loss fires the
    ``on_disconnect`` callbacks once.
    """

    def __init__(self, adapter: str = "hci0", target: Optional[str] = None, *,
                 service_uuid: str = HM10_SERVICE, char_uuid: str = HM10_CHAR,
                 connect_timeout_s: float = 20.0, scan_timeout_s: float = 12.0,
                 write_response: bool = False, logger: Optional[NdjsonLogger] = None):
        self.adapter = adapter
        self.target = (target or "").strip()
        self.service_uuid = service_uuid
        self.char_uuid = char_uuid
        self.connect_timeout_s = connect_timeout_s
        self.scan_timeout_s = scan_timeout_s
        self.write_response = write_response
        self.logger = logger or NdjsonLogger(None, "timer")
        self.client: Optional[BleakClient] = None
        self.device_name: str = ""
        self._on_chunk: List[Callable[[bytes], None]] = []
        self._on_disconnect: List[Callable[[str], None]] = []
        self._closing = False

    def on_chunk(self, fn: Callable[[bytes], None]):
        self._on_chunk.append(fn)

    def on_disconnect(self, fn: Callable[[str], None]):
        self._on_disconnect.append(fn)

    @property
    def is_connected(self) -> bool:
        return self.client is not None and self.client.is_connected

    # ---------- discovery ----------

    def _match(self, dev, adv=None) -> bool:
        name = (getattr(dev, "name", None) or "").lower()
        addr = (getattr(dev, "address", None) or "").lower()
        if self.target:
            t = self.target.lower()
            return t == addr or t in name
        uuids = [u.lower() for u in (getattr(adv, "service_uuids", None) or [])]
        return self.service_uuid.lower() in uuids

    async def _discover(self):
        found = None
        if RE_MAC.fullmatch(self.target):
            async with scan_lock:
                found = await BleakScanner.find_device_by_address(self.target, timeout=self.scan_timeout_s)
            if found:
                return found
        async with scan_lock:
            seen = await BleakScanner.discover(timeout=self.scan_timeout_s, return_adv=True, adapter=self.adapter)
        for dev, adv in seen.values():
            if self._match(dev, adv):
                return dev
        return None

    # ---------- connection ----------

    async def start(self):
        await bluez_scan_off()
        dev = await self._discover()
        if dev is None:
            raise TransportUnavailable(f"timer not found ({self.target or self.service_uuid})")
        self.device_name = getattr(dev, "name", None) or getattr(dev, "address", "") or "BLE device"
        self._closing = False
        self.client = BleakClient(dev, disconnected_callback=self._handle_disconnect, adapter=self.adapter)
        # BlueZ reports a transient InProgress while another operation settles
        last_err: Optional[Exception] = None
        for _ in range(3):
            try:
                await self.client.connect(timeout=self.connect_timeout_s)
                last_err = None
                break
            except BleakError as e:
                last_err = e
                if "InProgress" not in str(e):
                    break
                await asyncio.sleep(1.0)
        if last_err is not None:
            self.client = None
            raise TransportUnavailable(f"connect failed: {last_err}") from last_err
        self.logger.write({"type": "info", "msg": "connected", "data": {"device": self.device_name,
                                                                        "text": "GATT: connected"}})
        await self.client.start_notify(self.char_uuid, self._handle_notify)
        self.logger.write({"type": "info", "msg": "notify_started", "data": {"text": "HM-10 UART ready (FFE1)"}})

    async def stop(self):
        self._closing = True
        client, self.client = self.client, None
        if client is not None:
            await client.disconnect()
            self.logger.write({"type": "info", "msg": "disconnected", "data": {"text": "BLE: disconnected"}})

    def _handle_notify(self, _char, data: bytearray):
        b = bytes(data)
        for fn in self._on_chunk:
            fn(b)

    def _handle_disconnect(self, _client):
        reason = "disconnect requested" if self._closing else "link lost"
        for fn in self._on_disconnect:
            fn(reason)

    # ---------- I/O ----------

    async def write_line(self, text: str):
        if not self.is_connected:
            raise TransportUnavailable("TX not ready")
        assert self.client is not None
        await self.client.write_gatt_char(self.char_uuid, terminate(text).encode("ascii"),
                                          response=self.write_response)
