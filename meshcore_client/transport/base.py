"""
Transport contract for the MeshCore client.

The session needs very little from a transport: open and close the byte
stream, write a whole buffer, read whatever bytes are available, and say
whether it is connected. Reads are only ever issued by the session's read
loop; writes are serialized by the command engine.
"""

from __future__ import annotations

import asyncio
import logging

from meshcore_client.errors import NotConnectedError, TransportError

logger = logging.getLogger(__name__)


class Transport:
    """
    Base class for byte stream transports.

    Subclasses implement all five operations. read() returns b"" on end
    of stream and raises TransportError on I/O failure.
    """

    @property
    def is_connected(self) -> bool:
        raise NotImplementedError

    async def connect(self) -> None:
        raise NotImplementedError

    async def disconnect(self) -> None:
        raise NotImplementedError

    async def send(self, data: bytes) -> None:
        """Write the whole buffer; there is no partial-write success."""
        raise NotImplementedError

    async def read(self, max_bytes: int) -> bytes:
        """Wait for and return up to max_bytes bytes."""
        raise NotImplementedError


class StreamTransport(Transport):
    """
    Transport over an asyncio StreamReader/StreamWriter pair.

    Subclasses provide _open(), which returns the pair; everything else is
    shared.
    """

    def __init__(self) -> None:
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def _open(self) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        raise NotImplementedError

    async def _on_open(self) -> None:
        """Hook run right after the stream is opened."""

    async def connect(self) -> None:
        if self.is_connected:
            return
        try:
            self._reader, self._writer = await self._open()
        except (OSError, ValueError) as e:
            raise TransportError(f"failed to open transport: {e}") from e
        await self._on_open()

    async def disconnect(self) -> None:
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass  # Already gone

    async def send(self, data: bytes) -> None:
        if not self.is_connected or self._writer is None:
            raise NotConnectedError()
        try:
            self._writer.write(data)
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise TransportError(f"write failed: {e}") from e

    async def read(self, max_bytes: int) -> bytes:
        if self._reader is None:
            raise NotConnectedError()
        try:
            return await self._reader.read(max_bytes)
        except (ConnectionError, OSError) as e:
            raise TransportError(f"read failed: {e}") from e

    async def discard_input(self, duration: float, chunk_size: int = 1024) -> int:
        """
        Read and throw away bytes for a while.

        Used right after opening to get rid of boot chatter and stale
        frames from a previous session.

        Returns:
            Number of bytes discarded.
        """
        if self._reader is None or duration <= 0:
            return 0

        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration
        discarded = 0
        while (remaining := deadline - loop.time()) > 0:
            try:
                chunk = await asyncio.wait_for(self._reader.read(chunk_size), remaining)
            except asyncio.TimeoutError:
                break
            if not chunk:
                break
            discarded += len(chunk)

        if discarded:
            logger.debug("Discarded %d stale bytes", discarded)
        return discarded
