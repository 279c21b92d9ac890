"""
Test doubles and wire builders shared by the test modules.

FakeTransport stands in for the serial port: everything the client sends
is recorded (unframed), and scripted replies are pushed back as device
frames the moment a command with a matching opcode is written.
"""

import asyncio
import struct
from collections import defaultdict, deque

from meshcore_client.config import ClientConfig, SerialConfig, SessionConfig
from meshcore_client.core.models import PublicKey
from meshcore_client.errors import NotConnectedError, TransportError
from meshcore_client.protocol.frame import DEVICE_FRAME_MARKER, HEADER_SIZE
from meshcore_client.protocol.packets import PacketType
from meshcore_client.transport.base import Transport

KEY_A = PublicKey(bytes(range(32)))
KEY_B = PublicKey(bytes(range(100, 132)))
KEY_C = PublicKey(b"\xaa" * 32)


def device_frame(payload: bytes) -> bytes:
    """Frame a payload the way the device does."""
    return struct.pack("<BH", DEVICE_FRAME_MARKER, len(payload)) + payload


def packet(kind: PacketType | int, body: bytes = b"") -> bytes:
    return bytes([int(kind)]) + body


def self_info_body(
    name: str = "node-1",
    public_key: PublicKey = KEY_A,
    latitude: int = 0,
    longitude: int = 0,
    telemetry_mode: int = 0,
) -> bytes:
    """Self info body: 57 fixed bytes followed by the NUL-terminated name."""
    return (
        struct.pack("<BBB", 1, 20, 22)
        + public_key.raw
        + struct.pack("<iiBBBBIIBB", latitude, longitude, 1, 0, telemetry_mode, 1, 869525, 250000, 11, 5)
        + name.encode("utf-8")
        + b"\x00"
    )


def contact_body(
    public_key: PublicKey = KEY_B,
    name: str = "alice",
    device_type: int = 1,
    flags: int = 0,
    path_len: int = -1,
    path: bytes = b"",
    last_advert: int = 0,
    latitude: int = 0,
    longitude: int = 0,
    last_modified: int = 0,
) -> bytes:
    """Contact record body (147 bytes)."""
    return (
        public_key.raw
        + struct.pack("<BBb", device_type, flags, path_len)
        + path.ljust(64, b"\x00")
        + name.encode("utf-8").ljust(32, b"\x00")
        + struct.pack("<IiiI", last_advert, latitude, longitude, last_modified)
    )


def msg_sent_body(expected_ack: int, timeout_ms: int = 0, flood: bool = False) -> bytes:
    return struct.pack("<BII", 1 if flood else 0, expected_ack, timeout_ms)


def ack_body(code: int) -> bytes:
    return struct.pack("<I", code)


def fast_config(**session: object) -> ClientConfig:
    """Config with no settle delays and a short command timeout."""
    values: dict[str, object] = {
        "command_timeout": 0.5,
        "settle_delay": 0.0,
        "startup_settle": 0.0,
    }
    values.update(session)
    return ClientConfig(
        serial=SerialConfig(port="fake"),
        session=SessionConfig(**values),  # type: ignore[arg-type]
    )


class FakeTransport(Transport):
    """In-memory transport with scripted device replies."""

    def __init__(self) -> None:
        self.sent: list[bytes] = []
        self.replies: dict[int, deque[list[bytes]]] = defaultdict(deque)
        self.connect_count = 0
        self.fail_send = False
        self._incoming: asyncio.Queue[bytes] = asyncio.Queue()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        # Leftovers (e.g. the end-of-stream marker) belong to the previous session
        while not self._incoming.empty():
            self._incoming.get_nowait()
        self._connected = True
        self.connect_count += 1

    async def disconnect(self) -> None:
        if self._connected:
            self._connected = False
            self._incoming.put_nowait(b"")

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise NotConnectedError()
        if self.fail_send:
            raise TransportError("write failed: broken pipe")
        payload = bytes(data[HEADER_SIZE:])
        self.sent.append(payload)
        queued = self.replies.get(payload[0])
        if queued:
            for reply in queued.popleft():
                self.push(reply)

    async def read(self, max_bytes: int) -> bytes:
        return await self._incoming.get()

    # -- scripting --

    def reply(self, opcode: int, *payloads: bytes) -> None:
        """Answer the next command with this opcode with the given packets."""
        self.replies[int(opcode)].append(list(payloads))

    def push(self, payload: bytes) -> None:
        """Deliver one packet from the device."""
        self._incoming.put_nowait(device_frame(payload))

    def push_raw(self, data: bytes) -> None:
        self._incoming.put_nowait(data)

    def close_stream(self) -> None:
        """Simulate the device going away (end of stream)."""
        self._incoming.put_nowait(b"")

    def sent_opcodes(self) -> list[int]:
        return [p[0] for p in self.sent]
