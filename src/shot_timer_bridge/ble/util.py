from __future__ import annotations
import asyncio
from asyncio.subprocess import PIPE

# Serializes BlueZ discovery across scanners in this process
scan_lock = asyncio.Lock()


async def bluez_scan_off():
    """Best effort: stop a lingering bluetoothctl discovery (BlueZ InProgress otherwise).

    Hosts without bluetoothctl (macOS, Windows) simply skip this.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            "bluetoothctl", "--timeout", "1", "scan", "off", stdout=PIPE, stderr=PIPE
        )
    except FileNotFoundError:
        return
    await proc.communicate()
