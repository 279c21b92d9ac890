"""
Outbound commands for Client → Device communication.

Every command is an opcode byte followed by a command-specific body;
multi-byte numbers are little-endian. The builders here only produce
payload bytes (framing is added by protocol.frame) and validate their
arguments locally, so a bad argument never reaches the device.

Coordinates are sent as i32 degrees * 1e6, radio frequency and bandwidth
as u32 thousandths of MHz / kHz.
"""

from __future__ import annotations

import hashlib
import struct
from enum import IntEnum

from meshcore_client.core.models import (
    MAX_NAME_LEN,
    MAX_PATH_LEN,
    Contact,
    PublicKey,
    StatsType,
    TelemetryMode,
)
from meshcore_client.errors import InvalidCoordinatesError

COORD_SCALE = 1_000_000

# Client identification sent with the init handshake
APP_NAME = "mccli"
APP_START_VERSION = 0x03
DEVICE_QUERY_VERSION = 0x03

CHANNEL_SECRET_LEN = 16
FLOOD_SCOPE_KEY_LEN = 16


class CommandOpcode(IntEnum):
    """Command opcode byte."""

    APP_START = 0x01
    SEND_MESSAGE = 0x02
    SEND_CHANNEL_MSG = 0x03
    GET_CONTACTS = 0x04
    GET_TIME = 0x05
    SET_TIME = 0x06
    SEND_ADVERT = 0x07
    SET_NAME = 0x08
    UPDATE_CONTACT = 0x09
    GET_MESSAGE = 0x0A
    SET_RADIO = 0x0B
    SET_TX_POWER = 0x0C
    RESET_PATH = 0x0D
    SET_COORDS = 0x0E
    REMOVE_CONTACT = 0x0F
    SHARE_CONTACT = 0x10
    EXPORT_CONTACT = 0x11
    IMPORT_CONTACT = 0x12
    REBOOT = 0x13
    GET_BATTERY = 0x14
    SET_TUNING = 0x15
    DEVICE_QUERY = 0x16
    EXPORT_PRIVATE_KEY = 0x17
    IMPORT_PRIVATE_KEY = 0x18
    SEND_LOGIN = 0x1A
    SEND_STATUS_REQ = 0x1B
    SEND_LOGOUT = 0x1D
    GET_CHANNEL = 0x1F
    SET_CHANNEL = 0x20
    SIGN_START = 0x21
    SIGN_DATA = 0x22
    SIGN_FINISH = 0x23
    SEND_TRACE = 0x24
    SET_DEVICE_PIN = 0x25
    SET_OTHER_PARAMS = 0x26
    TELEMETRY = 0x27
    GET_CUSTOM_VARS = 0x28
    SET_CUSTOM_VAR = 0x29
    BINARY_REQ = 0x32
    PATH_DISCOVERY = 0x34
    SET_FLOOD_SCOPE = 0x36
    SEND_CONTROL_DATA = 0x37
    GET_STATS = 0x38


class MessageType(IntEnum):
    """Text message kind for SEND_MESSAGE."""

    PRIVATE = 0x00
    COMMAND = 0x01


class BinaryReqType(IntEnum):
    """Request kind for BINARY_REQ."""

    STATUS = 0x01
    KEEP_ALIVE = 0x02
    TELEMETRY = 0x03
    MMA = 0x04  # min/max/average
    ACL = 0x05
    NEIGHBOURS = 0x06


class ControlDataType(IntEnum):
    """Control data kind for SEND_CONTROL_DATA."""

    NODE_DISCOVER_REQ = 0x80


# -- helpers --


def _key_bytes(public_key: PublicKey | bytes) -> bytes:
    if isinstance(public_key, PublicKey):
        return public_key.raw
    return PublicKey(bytes(public_key)).raw


def _prefix(public_key: PublicKey | bytes) -> bytes:
    if isinstance(public_key, PublicKey):
        return public_key.prefix
    return PublicKey(bytes(public_key)).prefix


def _padded(data: bytes, size: int) -> bytes:
    """Truncate or zero-pad to exactly size bytes."""
    return data[:size].ljust(size, b"\x00")


def _encode_coord(value: float | None) -> int:
    if value is None:
        return 0
    return round(value * COORD_SCALE)


def validate_coords(latitude: float, longitude: float) -> None:
    """
    Check latitude/longitude ranges.

    Raises:
        InvalidCoordinatesError: If latitude is outside ±90 or longitude
            outside ±180 degrees.
    """
    if not -90.0 <= latitude <= 90.0:
        raise InvalidCoordinatesError(f"latitude {latitude} outside -90..90")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidCoordinatesError(f"longitude {longitude} outside -180..180")


def flood_scope_key(topic: str) -> bytes:
    """Derive a 16-byte flood scope key from a topic name (SHA-256 prefix)."""
    return hashlib.sha256(topic.encode("utf-8")).digest()[:FLOOD_SCOPE_KEY_LEN]


# -- device --


def build_app_start() -> bytes:
    """Init handshake: version byte, 6 reserved spaces, client name."""
    return bytes([CommandOpcode.APP_START, APP_START_VERSION]) + b" " * 6 + APP_NAME.encode("ascii")


def build_device_query() -> bytes:
    return bytes([CommandOpcode.DEVICE_QUERY, DEVICE_QUERY_VERSION])


def build_get_time() -> bytes:
    return bytes([CommandOpcode.GET_TIME])


def build_set_time(timestamp: int) -> bytes:
    return struct.pack("<BI", CommandOpcode.SET_TIME, timestamp)


def build_get_battery() -> bytes:
    return bytes([CommandOpcode.GET_BATTERY])


def build_send_advert(flood: bool = False) -> bytes:
    if flood:
        return bytes([CommandOpcode.SEND_ADVERT, 0x01])
    return bytes([CommandOpcode.SEND_ADVERT])


def build_set_name(name: str) -> bytes:
    return bytes([CommandOpcode.SET_NAME]) + name.encode("utf-8")


def build_set_coords(latitude: float, longitude: float) -> bytes:
    """
    Set the advertised location.

    Raises:
        InvalidCoordinatesError: Before anything is encoded, if out of range.
    """
    validate_coords(latitude, longitude)
    # Trailing i32 is reserved (altitude)
    return struct.pack(
        "<Biii",
        CommandOpcode.SET_COORDS,
        _encode_coord(latitude),
        _encode_coord(longitude),
        0,
    )


def build_set_tx_power(power: int) -> bytes:
    return struct.pack("<Bi", CommandOpcode.SET_TX_POWER, power)


def build_set_radio(frequency_mhz: float, bandwidth_khz: float, spreading_factor: int, coding_rate: int) -> bytes:
    return struct.pack(
        "<BIIBB",
        CommandOpcode.SET_RADIO,
        round(frequency_mhz * 1000),
        round(bandwidth_khz * 1000),
        spreading_factor,
        coding_rate,
    )


def build_set_tuning(rx_delay: int, airtime_factor: int) -> bytes:
    return struct.pack("<BiiBB", CommandOpcode.SET_TUNING, rx_delay, airtime_factor, 0, 0)


def build_set_device_pin(pin: int) -> bytes:
    return struct.pack("<BI", CommandOpcode.SET_DEVICE_PIN, pin)


def build_set_other_params(
    manual_add_contacts: bool,
    telemetry_mode: TelemetryMode | int = 0,
    advert_loc_policy: int = 0,
    multi_acks: int = 0,
) -> bytes:
    if isinstance(telemetry_mode, TelemetryMode):
        telemetry_mode = telemetry_mode.to_byte()
    return bytes(
        [
            CommandOpcode.SET_OTHER_PARAMS,
            1 if manual_add_contacts else 0,
            telemetry_mode & 0xFF,
            advert_loc_policy & 0xFF,
            multi_acks & 0xFF,
        ]
    )


def build_reboot() -> bytes:
    # The literal string guards against accidental reboots
    return bytes([CommandOpcode.REBOOT]) + b"reboot"


def build_export_private_key() -> bytes:
    return bytes([CommandOpcode.EXPORT_PRIVATE_KEY])


def build_import_private_key(key: bytes) -> bytes:
    if len(key) not in (32, 64):
        raise ValueError(f"private key must be 32 or 64 bytes, got {len(key)}")
    return bytes([CommandOpcode.IMPORT_PRIVATE_KEY]) + bytes(key)


def build_get_stats(stats_type: StatsType) -> bytes:
    return bytes([CommandOpcode.GET_STATS, int(stats_type)])


def build_get_custom_vars() -> bytes:
    return bytes([CommandOpcode.GET_CUSTOM_VARS])


def build_set_custom_var(key: str, value: str) -> bytes:
    if ":" in key:
        raise ValueError(f"custom variable name may not contain ':': {key!r}")
    return bytes([CommandOpcode.SET_CUSTOM_VAR]) + f"{key}:{value}".encode("utf-8")


# -- contacts --


def build_get_contacts(since: int | None = None) -> bytes:
    """List contacts, optionally only those modified after a timestamp."""
    if since is None:
        return bytes([CommandOpcode.GET_CONTACTS])
    return struct.pack("<BI", CommandOpcode.GET_CONTACTS, since)


def build_update_contact(contact: Contact) -> bytes:
    """
    Add or update a contact on the device.

    Layout mirrors the contact record: key, type, flags, path length,
    64-byte path, 32-byte name, last advert, latitude, longitude. The path
    and name are zero-padded or truncated to their fixed widths.
    """
    # Unset coordinates encode as 0, which is always in range
    validate_coords(contact.latitude or 0.0, contact.longitude or 0.0)

    return b"".join(
        [
            struct.pack("<B", CommandOpcode.UPDATE_CONTACT),
            contact.public_key.raw,
            struct.pack("<BBb", contact.device_type.value, contact.flags & 0xFF, contact.out_path_len),
            _padded(contact.out_path, MAX_PATH_LEN),
            _padded(contact.name.encode("utf-8"), MAX_NAME_LEN),
            struct.pack(
                "<Iii",
                contact.last_advert,
                _encode_coord(contact.latitude),
                _encode_coord(contact.longitude),
            ),
        ]
    )


def build_remove_contact(public_key: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.REMOVE_CONTACT]) + _key_bytes(public_key)


def build_reset_path(public_key: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.RESET_PATH]) + _key_bytes(public_key)


def build_share_contact(public_key: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.SHARE_CONTACT]) + _key_bytes(public_key)


def build_export_contact(public_key: PublicKey | bytes | None = None) -> bytes:
    """Export a contact card; without a key the device exports itself."""
    if public_key is None:
        return bytes([CommandOpcode.EXPORT_CONTACT])
    return bytes([CommandOpcode.EXPORT_CONTACT]) + _key_bytes(public_key)


def build_import_contact(card: bytes) -> bytes:
    if not card:
        raise ValueError("contact card is empty")
    return bytes([CommandOpcode.IMPORT_CONTACT]) + bytes(card)


# -- messaging --


def build_send_message(
    recipient: PublicKey | bytes,
    text: str,
    timestamp: int,
    attempt: int = 0,
) -> bytes:
    """Private text message, addressed by the recipient's key prefix."""
    return (
        struct.pack("<BBBI", CommandOpcode.SEND_MESSAGE, MessageType.PRIVATE, attempt & 0xFF, timestamp)
        + _prefix(recipient)
        + text.encode("utf-8")
    )


def build_send_command(recipient: PublicKey | bytes, command: str, timestamp: int) -> bytes:
    """CLI command for a remote node (repeater/room); attempt is always 0."""
    return (
        struct.pack("<BBBI", CommandOpcode.SEND_MESSAGE, MessageType.COMMAND, 0, timestamp)
        + _prefix(recipient)
        + command.encode("utf-8")
    )


def build_send_channel_message(channel_index: int, text: str, timestamp: int) -> bytes:
    return struct.pack("<BBBI", CommandOpcode.SEND_CHANNEL_MSG, 0x00, channel_index, timestamp) + text.encode(
        "utf-8"
    )


def build_get_message() -> bytes:
    return bytes([CommandOpcode.GET_MESSAGE])


def build_send_login(destination: PublicKey | bytes, password: str) -> bytes:
    return bytes([CommandOpcode.SEND_LOGIN]) + _key_bytes(destination) + password.encode("utf-8")


def build_send_logout(destination: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.SEND_LOGOUT]) + _key_bytes(destination)


def build_send_status_request(destination: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.SEND_STATUS_REQ]) + _key_bytes(destination)


def build_telemetry_request(destination: PublicKey | bytes | None = None) -> bytes:
    """Telemetry of a remote node, or of the local device without a destination."""
    header = bytes([CommandOpcode.TELEMETRY, 0x00, 0x00, 0x00])
    if destination is None:
        return header
    return header + _key_bytes(destination)


# -- channels --


def build_get_channel(index: int) -> bytes:
    return bytes([CommandOpcode.GET_CHANNEL, index])


def build_set_channel(index: int, name: str, secret: bytes) -> bytes:
    if len(secret) != CHANNEL_SECRET_LEN:
        raise ValueError(f"channel secret must be {CHANNEL_SECRET_LEN} bytes, got {len(secret)}")
    return bytes([CommandOpcode.SET_CHANNEL, index]) + _padded(name.encode("utf-8"), MAX_NAME_LEN) + bytes(secret)


# -- binary requests, discovery, trace --


def build_binary_request(destination: PublicKey | bytes, request_type: BinaryReqType, data: bytes = b"") -> bytes:
    return bytes([CommandOpcode.BINARY_REQ]) + _key_bytes(destination) + bytes([request_type]) + bytes(data)


def build_neighbours_request_data(
    max_results: int,
    offset: int,
    order_by: int,
    prefix_len: int,
    tag: int,
) -> bytes:
    """Body of a NEIGHBOURS binary request: version 0, then paging and sort options."""
    return struct.pack("<BBHBBI", 0, max_results, offset, order_by, prefix_len, tag)


def build_path_discovery(destination: PublicKey | bytes) -> bytes:
    return bytes([CommandOpcode.PATH_DISCOVERY, 0x00]) + _key_bytes(destination)


def build_send_trace(tag: int, auth_code: int, flags: int, path: bytes) -> bytes:
    return struct.pack("<BIIB", CommandOpcode.SEND_TRACE, tag, auth_code, flags) + bytes(path)


def build_set_flood_scope(key: bytes | None = None) -> bytes:
    """Limit flooding to a scope; None (all zeros) clears the scope."""
    if key is None:
        key = b"\x00" * FLOOD_SCOPE_KEY_LEN
    if len(key) != FLOOD_SCOPE_KEY_LEN:
        raise ValueError(f"flood scope key must be {FLOOD_SCOPE_KEY_LEN} bytes, got {len(key)}")
    return bytes([CommandOpcode.SET_FLOOD_SCOPE, 0x00]) + bytes(key)


def build_node_discover(filter_type: int, tag: int, prefix_only: bool = True, since: int | None = None) -> bytes:
    """Node discovery control packet: [0x80 | prefix_only][filter][tag:u32][since:u32]?"""
    control = ControlDataType.NODE_DISCOVER_REQ | (1 if prefix_only else 0)
    body = struct.pack("<BBBI", CommandOpcode.SEND_CONTROL_DATA, control, filter_type, tag)
    if since is not None:
        body += struct.pack("<I", since)
    return body


# -- signing --


def build_sign_start() -> bytes:
    return bytes([CommandOpcode.SIGN_START])


def build_sign_data(chunk: bytes) -> bytes:
    return bytes([CommandOpcode.SIGN_DATA]) + bytes(chunk)


def build_sign_finish() -> bytes:
    return bytes([CommandOpcode.SIGN_FINISH])
