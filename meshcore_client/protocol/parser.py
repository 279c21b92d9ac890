"""
Packet decoders for the MeshCore USB protocol.

A frame payload is [KIND: 1 byte][BODY]. decode_packet() looks the kind up
in PACKET_DECODERS and hands the body to the matching decoder. Every
decoder checks the minimum body length before touching any field and
raises DecodeError on malformed input; decode_packet() turns that (and
unknown kinds) into a RawPacketEvent, so exactly one event comes out of
every frame.

All multi-byte numbers are little-endian unless noted otherwise.

Self info (>= 57 bytes):
    [adv_type:1][tx_power:1][max_tx_power:1][pubkey:32][lat:i32][lon:i32]
    [multi_acks:1][adv_loc_policy:1][telemetry_mode:1][manual_add:1]
    [freq:u32][bw:u32][sf:1][cr:1][name: up to 32, NUL-terminated]

Contact (>= 147 bytes):
    [pubkey:32][type:1][flags:1][path_len:i8][path:64][name:32]
    [last_advert:u32][lat:i32][lon:i32][last_modified:u32]

Contact message (v1 >= 12 bytes, v3 >= 15 bytes):
    v3 only: [snr:i8 /4][reserved:2]
    [sender_prefix:6][path_len:i8][txt_type:1][timestamp:u32]
    signed only: [signature:4]
    [text...]

Channel message (v1 >= 7 bytes, v3 >= 10 bytes):
    v3 only: [snr:i8 /4][reserved:2]
    [channel_idx:1][path_len:i8][txt_type:1][timestamp:u32][text...]

Coordinates are i32 degrees * 1e6, where 0 means "not set".
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable

from meshcore_client.core.events import (
    AckEvent,
    AdvertisementEvent,
    BatteryEvent,
    BinaryResponseEvent,
    ChannelInfoEvent,
    ChannelMessageEvent,
    ContactEvent,
    ContactListEndEvent,
    ContactListStartEvent,
    ContactMessageEvent,
    ContactUriEvent,
    ControlDataEvent,
    CurrentTimeEvent,
    CustomVarsEvent,
    DeviceInfoEvent,
    DisabledEvent,
    ErrorEvent,
    Event,
    LogDataEvent,
    LoginFailedEvent,
    LoginSuccessEvent,
    MessageSentEvent,
    MessagesWaitingEvent,
    NewContactAdvertEvent,
    NoMoreMessagesEvent,
    OkEvent,
    PathDiscoveryResponseEvent,
    PathUpdateEvent,
    PrivateKeyEvent,
    RawDataEvent,
    RawPacketEvent,
    SelfInfoEvent,
    SignatureEvent,
    SignStartedEvent,
    StatsEvent,
    StatusResponseEvent,
    TelemetryResponseEvent,
    TraceDataEvent,
)
from meshcore_client.core.models import (
    MAX_NAME_LEN,
    MAX_PATH_LEN,
    PUBLIC_KEY_LEN,
    BatteryStatus,
    Channel,
    ChannelMessage,
    Contact,
    ContactMessage,
    ContactType,
    CoreStats,
    DeviceInfo,
    DeviceStatus,
    PacketStats,
    PublicKey,
    RadioConfig,
    RadioStats,
    SelfInfo,
    SignalQuality,
    StatsType,
    TelemetryMode,
    TextType,
)
from meshcore_client.errors import DecodeError
from meshcore_client.protocol.frame import hexdump
from meshcore_client.protocol.packets import PacketType, classify
from meshcore_client.protocol.telemetry import Telemetry

logger = logging.getLogger(__name__)

COORD_SCALE = 1_000_000
SNR_SCALE = 4.0

SELF_INFO_MIN_LEN = 57
CONTACT_MIN_LEN = 147
DEVICE_INFO_FULL_LEN = 79
DEVICE_STATUS_MIN_LEN = 58
CHANNEL_MIN_LEN = 49
PRIVATE_KEY_LEN = 64

CONTACT_URI_SCHEME = "meshcore://"

PacketDecoder = Callable[[bytes], Event]


def _require(body: bytes, min_len: int, what: str) -> None:
    if len(body) < min_len:
        raise DecodeError(f"{what} too short: {len(body)} bytes, need {min_len}")


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _fixed_string(data: bytes, max_len: int = MAX_NAME_LEN) -> str:
    """Decode a NUL-terminated (or fixed-width) string field."""
    raw = data[:max_len]
    end = raw.find(b"\x00")
    if end >= 0:
        raw = raw[:end]
    return _text(raw)


def _coord(raw: int) -> float | None:
    # 0 is the "unset" sentinel, so (0, 0) cannot be represented
    if raw == 0:
        return None
    return raw / COORD_SCALE


def _u32(body: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<I", body, offset)[0]


def _optional_u32(body: bytes) -> int:
    return _u32(body) if len(body) >= 4 else 0


def _public_key(body: bytes, what: str) -> PublicKey:
    _require(body, PUBLIC_KEY_LEN, what)
    return PublicKey(body[:PUBLIC_KEY_LEN])


# -- structured records --


def parse_self_info(body: bytes) -> SelfInfo:
    """Decode the device's self description (init handshake answer)."""
    _require(body, SELF_INFO_MIN_LEN, "self info")

    adv_type, tx_power, max_tx_power = struct.unpack_from("<BBB", body, 0)
    public_key = PublicKey(body[3:35])
    (
        lat,
        lon,
        multi_acks,
        adv_loc_policy,
        telemetry_byte,
        manual_add,
        freq,
        bw,
        sf,
        cr,
    ) = struct.unpack_from("<iiBBBBIIBB", body, 35)

    return SelfInfo(
        public_key=public_key,
        advert_type=adv_type,
        tx_power=tx_power,
        max_tx_power=max_tx_power,
        latitude=_coord(lat),
        longitude=_coord(lon),
        multi_acks=multi_acks,
        advert_loc_policy=adv_loc_policy,
        telemetry_mode=TelemetryMode.from_byte(telemetry_byte),
        manual_add_contacts=manual_add != 0,
        radio=RadioConfig(
            frequency_mhz=freq / 1000,
            bandwidth_khz=bw / 1000,
            spreading_factor=sf,
            coding_rate=cr,
        ),
        name=_fixed_string(body[SELF_INFO_MIN_LEN:]),
    )


def parse_device_info(body: bytes) -> DeviceInfo:
    """
    Decode the device query answer.

    Only firmware v3 and later report anything beyond the version byte.
    """
    _require(body, 1, "device info")

    firmware_version = body[0]
    if firmware_version < 3 or len(body) < DEVICE_INFO_FULL_LEN:
        return DeviceInfo(firmware_version=firmware_version)

    max_contacts_raw, max_channels, ble_pin = struct.unpack_from("<BBI", body, 1)
    return DeviceInfo(
        firmware_version=firmware_version,
        max_contacts=max_contacts_raw * 2,
        max_channels=max_channels,
        ble_pin=ble_pin,
        build=_fixed_string(body[7:19], 12),
        model=_fixed_string(body[19:59], 40),
        version=_fixed_string(body[59:79], 20),
    )


def parse_contact(body: bytes) -> Contact:
    """Decode a contact table entry."""
    _require(body, CONTACT_MIN_LEN, "contact")

    public_key = PublicKey(body[0:32])
    type_id, flags, path_len = struct.unpack_from("<BBb", body, 32)
    path_buf = body[35:99]
    usable = min(max(path_len, 0), MAX_PATH_LEN)
    last_advert, lat, lon, last_modified = struct.unpack_from("<IiiI", body, 131)

    return Contact(
        public_key=public_key,
        device_type=ContactType.from_id(type_id),
        flags=flags,
        out_path_len=path_len,
        out_path=bytes(path_buf[:usable]),
        name=_fixed_string(body[99:131]),
        last_advert=last_advert,
        latitude=_coord(lat),
        longitude=_coord(lon),
        last_modified=last_modified,
    )


def _signal_prefix(body: bytes, v3: bool) -> tuple[SignalQuality | None, int]:
    if not v3:
        return None, 0
    (snr_raw,) = struct.unpack_from("<b", body, 0)
    # Two reserved bytes follow the SNR
    return SignalQuality(snr=snr_raw / SNR_SCALE), 3


def parse_contact_message(body: bytes, v3: bool) -> ContactMessage:
    """Decode a private message from either message generation."""
    _require(body, 15 if v3 else 12, "contact message")

    signal, pos = _signal_prefix(body, v3)
    sender_prefix = bytes(body[pos : pos + 6])
    path_len, txt_type, timestamp = struct.unpack_from("<bBI", body, pos + 6)
    text_start = pos + 12
    text_type = TextType.from_id(txt_type)

    signature = None
    if text_type is TextType.SIGNED and len(body) >= text_start + 4:
        signature = bytes(body[text_start : text_start + 4])
        text_start += 4

    return ContactMessage(
        sender_prefix=sender_prefix,
        path_len=path_len,
        text_type=text_type,
        timestamp=timestamp,
        text=_text(body[text_start:]),
        signature=signature,
        signal=signal,
    )


def parse_channel_message(body: bytes, v3: bool) -> ChannelMessage:
    """Decode a group channel message from either message generation."""
    _require(body, 10 if v3 else 7, "channel message")

    signal, pos = _signal_prefix(body, v3)
    channel_index, path_len, txt_type, timestamp = struct.unpack_from("<BbBI", body, pos)

    return ChannelMessage(
        channel_index=channel_index,
        path_len=path_len,
        text_type=TextType.from_id(txt_type),
        timestamp=timestamp,
        text=_text(body[pos + 7 :]),
        signal=signal,
    )


def parse_battery(body: bytes) -> BatteryStatus:
    _require(body, 2, "battery")
    (millivolts,) = struct.unpack_from("<H", body, 0)
    if len(body) >= 10:
        used, total = struct.unpack_from("<II", body, 2)
        return BatteryStatus(millivolts=millivolts, used_kb=used, total_kb=total)
    return BatteryStatus(millivolts=millivolts)


def parse_channel(body: bytes) -> Channel:
    _require(body, CHANNEL_MIN_LEN, "channel")
    return Channel(index=body[0], name=_fixed_string(body[1:33]), secret=bytes(body[33:49]))


def parse_device_status(body: bytes) -> DeviceStatus:
    """
    Decode a node status report.

    [prefix:6][batt:u16][txq:u16][noise:i16][rssi:i16]
    [recv:u32][sent:u32][airtime:u32][uptime:u32]
    [sent_flood:u32][sent_direct:u32][recv_flood:u32][recv_direct:u32]
    [full_events:u16][snr:i16 /4][direct_dups:u16][flood_dups:u16][rx_airtime:u32]
    """
    _require(body, DEVICE_STATUS_MIN_LEN, "device status")
    values = struct.unpack_from("<HHhhIIIIIIIIHhHHI", body, 6)
    (
        battery_mv,
        tx_queue_len,
        noise_floor,
        last_rssi,
        packets_received,
        packets_sent,
        airtime_secs,
        uptime_secs,
        sent_flood,
        sent_direct,
        recv_flood,
        recv_direct,
        full_events,
        snr_raw,
        direct_dups,
        flood_dups,
        rx_airtime_secs,
    ) = values

    return DeviceStatus(
        pubkey_prefix=bytes(body[0:6]),
        battery_mv=battery_mv,
        tx_queue_len=tx_queue_len,
        noise_floor=noise_floor,
        last_rssi=last_rssi,
        packets_received=packets_received,
        packets_sent=packets_sent,
        airtime_secs=airtime_secs,
        uptime_secs=uptime_secs,
        sent_flood=sent_flood,
        sent_direct=sent_direct,
        recv_flood=recv_flood,
        recv_direct=recv_direct,
        full_events=full_events,
        last_snr=snr_raw / SNR_SCALE,
        direct_dups=direct_dups,
        flood_dups=flood_dups,
        rx_airtime_secs=rx_airtime_secs,
    )


def parse_stats(body: bytes) -> CoreStats | RadioStats | PacketStats:
    """Decode a statistics answer; the first byte selects the layout."""
    _require(body, 1, "stats")
    try:
        stats_type = StatsType(body[0])
    except ValueError:
        raise DecodeError(f"unknown stats type 0x{body[0]:02x}") from None

    data = body[1:]
    if stats_type is StatsType.CORE:
        _require(data, 9, "core stats")
        battery_mv, uptime, errors, queue_len = struct.unpack_from("<HIHB", data, 0)
        return CoreStats(battery_mv=battery_mv, uptime_secs=uptime, errors=errors, queue_len=queue_len)

    if stats_type is StatsType.RADIO:
        _require(data, 12, "radio stats")
        noise_floor, rssi, snr_raw, tx_air, rx_air = struct.unpack_from("<hbbII", data, 0)
        return RadioStats(
            noise_floor=noise_floor,
            rssi=rssi,
            snr=snr_raw / SNR_SCALE,
            tx_airtime_secs=tx_air,
            rx_airtime_secs=rx_air,
        )

    _require(data, 24, "packet stats")
    return PacketStats(*struct.unpack_from("<IIIIII", data, 0))


def parse_custom_vars(text: str) -> dict[str, str]:
    """Split "key:value,key:value" into a dict. Entries without a colon are skipped."""
    values: dict[str, str] = {}
    for item in text.split(","):
        key, sep, value = item.partition(":")
        if sep and key.strip():
            values[key.strip()] = value.strip()
    return values


# -- per-kind decoders --


def _decode_error(body: bytes) -> Event:
    # Firmware sends a single error code byte; older builds send text
    if len(body) == 1:
        return ErrorEvent(message=f"error code {body[0]}", code=body[0])
    return ErrorEvent(message=_text(body).rstrip("\x00"))


def _decode_msg_sent(body: bytes) -> Event:
    _require(body, 9, "message sent")
    expected_ack, timeout_ms = struct.unpack_from("<II", body, 1)
    return MessageSentEvent(expected_ack=expected_ack, timeout_ms=timeout_ms)


def _decode_ack(body: bytes) -> Event:
    _require(body, 4, "ack")
    return AckEvent(code=_u32(body))


def _decode_current_time(body: bytes) -> Event:
    _require(body, 4, "current time")
    return CurrentTimeEvent(timestamp=_u32(body))


def _decode_status_response(body: bytes) -> Event:
    # One reserved byte precedes the status record
    _require(body, 2, "status response")
    return StatusResponseEvent(status=parse_device_status(body[1:]))


def _decode_telemetry_response(body: bytes) -> Event:
    # Reserved byte + 6-byte key prefix precede the LPP data
    if len(body) > 7:
        return TelemetryResponseEvent(telemetry=Telemetry.parse(body[7:]))
    return TelemetryResponseEvent()


def _decode_private_key(body: bytes) -> Event:
    _require(body, PRIVATE_KEY_LEN, "private key")
    return PrivateKeyEvent(key=bytes(body[:PRIVATE_KEY_LEN]))


def _decode_signature(body: bytes) -> Event:
    _require(body, 1, "signature")
    return SignatureEvent(signature=bytes(body))


def _decode_sign_start(body: bytes) -> Event:
    _require(body, 5, "sign start")
    return SignStartedEvent(max_length=_u32(body, 1))


def _decode_custom_vars(body: bytes) -> Event:
    raw = _text(body)
    return CustomVarsEvent(raw=raw, values=parse_custom_vars(raw))


PACKET_DECODERS: dict[PacketType, PacketDecoder] = {
    PacketType.OK: lambda body: OkEvent(),
    PacketType.ERROR: _decode_error,
    PacketType.CONTACT_START: lambda body: ContactListStartEvent(count=_optional_u32(body)),
    PacketType.CONTACT: lambda body: ContactEvent(contact=parse_contact(body)),
    PacketType.CONTACT_END: lambda body: ContactListEndEvent(last_modified=_optional_u32(body)),
    PacketType.SELF_INFO: lambda body: SelfInfoEvent(info=parse_self_info(body)),
    PacketType.MSG_SENT: _decode_msg_sent,
    PacketType.CONTACT_MSG_RECV: lambda body: ContactMessageEvent(message=parse_contact_message(body, v3=False)),
    PacketType.CHANNEL_MSG_RECV: lambda body: ChannelMessageEvent(message=parse_channel_message(body, v3=False)),
    PacketType.CURRENT_TIME: _decode_current_time,
    PacketType.NO_MORE_MSGS: lambda body: NoMoreMessagesEvent(),
    PacketType.CONTACT_URI: lambda body: ContactUriEvent(uri=CONTACT_URI_SCHEME + bytes(body).hex()),
    PacketType.BATTERY: lambda body: BatteryEvent(status=parse_battery(body)),
    PacketType.DEVICE_INFO: lambda body: DeviceInfoEvent(info=parse_device_info(body)),
    PacketType.PRIVATE_KEY: _decode_private_key,
    PacketType.DISABLED: lambda body: DisabledEvent(),
    PacketType.CONTACT_MSG_RECV_V3: lambda body: ContactMessageEvent(message=parse_contact_message(body, v3=True)),
    PacketType.CHANNEL_MSG_RECV_V3: lambda body: ChannelMessageEvent(message=parse_channel_message(body, v3=True)),
    PacketType.CHANNEL_INFO: lambda body: ChannelInfoEvent(channel=parse_channel(body)),
    PacketType.SIGN_START: _decode_sign_start,
    PacketType.SIGNATURE: _decode_signature,
    PacketType.CUSTOM_VARS: _decode_custom_vars,
    PacketType.STATS: lambda body: StatsEvent(stats=parse_stats(body)),
    # Pushes
    PacketType.ADVERTISEMENT: lambda body: AdvertisementEvent(public_key=_public_key(body, "advertisement")),
    PacketType.PATH_UPDATE: lambda body: PathUpdateEvent(public_key=_public_key(body, "path update")),
    PacketType.ACK: _decode_ack,
    PacketType.MESSAGES_WAITING: lambda body: MessagesWaitingEvent(),
    PacketType.RAW_DATA: lambda body: RawDataEvent(data=bytes(body)),
    PacketType.LOGIN_SUCCESS: lambda body: LoginSuccessEvent(),
    PacketType.LOGIN_FAILED: lambda body: LoginFailedEvent(),
    PacketType.STATUS_RESPONSE: _decode_status_response,
    PacketType.LOG_DATA: lambda body: LogDataEvent(text=_text(body)),
    PacketType.TRACE_DATA: lambda body: TraceDataEvent(data=bytes(body)),
    PacketType.PUSH_NEW_ADVERT: lambda body: NewContactAdvertEvent(contact=parse_contact(body)),
    PacketType.TELEMETRY_RESPONSE: _decode_telemetry_response,
    PacketType.BINARY_RESPONSE: lambda body: BinaryResponseEvent(data=bytes(body)),
    PacketType.PATH_DISCOVERY_RESPONSE: lambda body: PathDiscoveryResponseEvent(data=bytes(body)),
    PacketType.CONTROL_DATA: lambda body: ControlDataEvent(data=bytes(body)),
}


def decode_packet(payload: bytes) -> Event:
    """
    Decode one frame payload into an event.

    Never raises: unknown kinds, kinds without a decoder and malformed
    bodies all come back as RawPacketEvent.
    """
    if not payload:
        logger.warning("Received empty packet")
        return RawPacketEvent(packet_type=None, data=b"", error="empty packet")

    kind_byte = payload[0]
    body = bytes(payload[1:])

    kind = classify(kind_byte)
    decoder = PACKET_DECODERS.get(kind) if kind is not None else None
    if decoder is None:
        logger.debug("No decoder for packet 0x%02x (%d bytes): %s", kind_byte, len(body), hexdump(body))
        return RawPacketEvent(packet_type=kind_byte, data=body, error="no decoder")

    try:
        return decoder(body)
    except (DecodeError, struct.error) as e:
        logger.warning("Failed to decode %s packet: %s", kind.name, e)
        return RawPacketEvent(packet_type=kind_byte, data=body, error=str(e))
