"""
USB serial transport.

Companion radios show up as a USB CDC serial port. Some boards reset when
RTS is asserted, so RTS is cleared right after opening, followed by a short
pause and a drain of whatever the device printed while booting.
"""

from __future__ import annotations

import asyncio
import logging

import serial
import serial_asyncio
from serial.tools import list_ports as _list_ports

from meshcore_client.config import SerialConfig
from meshcore_client.transport.base import StreamTransport

logger = logging.getLogger(__name__)


def list_ports() -> list[_list_ports.ListPortInfo]:
    """Return the serial ports present on this machine, sorted by device name."""
    return sorted(_list_ports.comports(), key=lambda p: p.device)


class SerialTransport(StreamTransport):
    """Serial port transport using pyserial-asyncio."""

    def __init__(self, port: str | None = None, baudrate: int | None = None, config: SerialConfig | None = None) -> None:
        super().__init__()
        self.config = config or SerialConfig()
        self.port = port or self.config.port
        self.baudrate = baudrate or self.config.baudrate

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        logger.info("Opening %s at %d baud", self.port, self.baudrate)
        # SerialException is an OSError, wrapped into TransportError by connect()
        return await serial_asyncio.open_serial_connection(url=self.port, baudrate=self.baudrate)

    async def _on_open(self) -> None:
        assert self._writer is not None
        port = self._writer.transport.serial  # type: ignore[attr-defined]
        try:
            port.rts = False
        except (serial.SerialException, OSError) as e:
            logger.debug("Could not clear RTS on %s: %s", self.port, e)

        await asyncio.sleep(self.config.connect_delay)
        await self.discard_input(self.config.drain_duration, self.config.read_chunk_size)

    def __repr__(self) -> str:
        return f"SerialTransport({self.port!r}, baudrate={self.baudrate})"
