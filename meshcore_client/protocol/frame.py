"""
Frame codec for the MeshCore USB protocol.

The device speaks a simple length-delimited framing over the serial line:

    [MARKER: 1 byte][LENGTH: 2 bytes, little-endian][PAYLOAD: LENGTH bytes]

Outgoing frames use the marker 0x3c. The marker of incoming frames is never
validated (the device answers with 0x3e, and line noise or framing variants
are tolerated); only the length field drives decoding.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator

from meshcore_client.errors import FrameTooLargeError

logger = logging.getLogger(__name__)

# Marker byte for frames sent to the device
FRAME_MARKER = 0x3C

# Marker byte the device uses for frames it sends
DEVICE_FRAME_MARKER = 0x3E

# Largest payload a 16-bit length can describe
MAX_FRAME_SIZE = 65535

# Marker + 2-byte length
HEADER_SIZE = 3

HEXDUMP_BYTES = 64


def hexdump(data: bytes, limit: int = HEXDUMP_BYTES) -> str:
    """Return a compact hex representation of the first N bytes."""
    view = data[:limit]
    hexpart = " ".join(f"{b:02x}" for b in view)
    if len(data) > limit:
        return f"{hexpart} ... (+{len(data) - limit} bytes)"
    return hexpart


def encode_frame(payload: bytes) -> bytes:
    """
    Frame a payload for sending to the device.

    Args:
        payload: Packet bytes (opcode + body).

    Returns:
        Marker + little-endian length + payload.

    Raises:
        ValueError: If the payload exceeds MAX_FRAME_SIZE.
    """
    if len(payload) > MAX_FRAME_SIZE:
        raise ValueError(f"payload of {len(payload)} bytes exceeds maximum frame size {MAX_FRAME_SIZE}")

    return struct.pack("<BH", FRAME_MARKER, len(payload)) + bytes(payload)


class FrameDecoder:
    """
    Incremental frame decoder.

    Bytes are appended with feed(); try_decode() extracts at most one
    complete payload per call and leaves any remainder buffered, so a
    single read containing several frames is drained by calling it
    repeatedly (or by iterating over frames()).
    """

    def __init__(self, max_frame_size: int = MAX_FRAME_SIZE) -> None:
        self._buffer = bytearray()
        self._max_frame_size = max_frame_size

    @property
    def buffered(self) -> int:
        """Number of bytes currently buffered."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append received bytes to the internal buffer."""
        self._buffer.extend(data)

    def try_decode(self) -> bytes | None:
        """
        Extract the next complete frame payload.

        Returns:
            The payload, or None if more data is needed. Nothing is
            consumed when None is returned.

        Raises:
            FrameTooLargeError: If the declared length exceeds the limit.
                The buffer is left untouched; the connection should be reset.
        """
        if len(self._buffer) < HEADER_SIZE:
            return None

        # Length sits at offset 1; the marker byte is not checked
        (length,) = struct.unpack_from("<H", self._buffer, 1)

        if length > self._max_frame_size:
            raise FrameTooLargeError(length, self._max_frame_size)

        total = HEADER_SIZE + length
        if len(self._buffer) < total:
            return None

        payload = bytes(self._buffer[HEADER_SIZE:total])
        del self._buffer[:total]
        return payload

    def frames(self) -> Iterator[bytes]:
        """Yield every complete payload currently buffered, in order."""
        while (payload := self.try_decode()) is not None:
            yield payload

    def clear(self) -> None:
        """Discard all buffered bytes."""
        if self._buffer:
            logger.debug("Discarding %d buffered bytes", len(self._buffer))
        self._buffer.clear()
