"""
Packet kinds received from a MeshCore device.

The first byte of every frame payload selects the packet kind. Kinds below
0x80 answer a command; kinds from 0x80 upwards are unsolicited pushes.
"""

from __future__ import annotations

from enum import IntEnum

PUSH_THRESHOLD = 0x80


class PacketType(IntEnum):
    """Packet kind byte."""

    # Command responses
    OK = 0x00
    ERROR = 0x01
    CONTACT_START = 0x02
    CONTACT = 0x03
    CONTACT_END = 0x04
    SELF_INFO = 0x05
    MSG_SENT = 0x06
    CONTACT_MSG_RECV = 0x07
    CHANNEL_MSG_RECV = 0x08
    CURRENT_TIME = 0x09
    NO_MORE_MSGS = 0x0A
    CONTACT_URI = 0x0B
    BATTERY = 0x0C
    DEVICE_INFO = 0x0D
    PRIVATE_KEY = 0x0E
    DISABLED = 0x0F
    CONTACT_MSG_RECV_V3 = 0x10
    CHANNEL_MSG_RECV_V3 = 0x11
    CHANNEL_INFO = 0x12
    SIGN_START = 0x13
    SIGNATURE = 0x14
    CUSTOM_VARS = 0x15
    STATS = 0x18

    # Special command responses
    BINARY_REQ = 0x32
    FACTORY_RESET = 0x33
    PATH_DISCOVERY = 0x34
    SET_FLOOD_SCOPE = 0x36
    SEND_CONTROL_DATA = 0x37

    # Pushes
    ADVERTISEMENT = 0x80
    PATH_UPDATE = 0x81
    ACK = 0x82
    MESSAGES_WAITING = 0x83
    RAW_DATA = 0x84
    LOGIN_SUCCESS = 0x85
    LOGIN_FAILED = 0x86
    STATUS_RESPONSE = 0x87
    LOG_DATA = 0x88
    TRACE_DATA = 0x89
    PUSH_NEW_ADVERT = 0x8A
    TELEMETRY_RESPONSE = 0x8B
    BINARY_RESPONSE = 0x8C
    PATH_DISCOVERY_RESPONSE = 0x8D
    CONTROL_DATA = 0x8E

    @property
    def is_push(self) -> bool:
        """True for unsolicited pushes."""
        return self.value >= PUSH_THRESHOLD

    @property
    def is_response(self) -> bool:
        """True for command responses."""
        return not self.is_push


def classify(first_byte: int) -> PacketType | None:
    """Map a payload's first byte to its packet kind, or None if unknown."""
    try:
        return PacketType(first_byte)
    except ValueError:
        return None
