"""
Decoded records exchanged with a MeshCore device.

These are plain frozen dataclasses so that snapshots handed out by the
device state cache can be shared freely without copying.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum

from meshcore_client.errors import InvalidPublicKeyError

PUBLIC_KEY_LEN = 32
PUBLIC_KEY_PREFIX_LEN = 6
MAX_PATH_LEN = 64
MAX_NAME_LEN = 32


@dataclass(frozen=True)
class PublicKey:
    """
    32-byte public key identifying a device or contact.

    Peers are addressed on the wire by the leading six bytes only
    (see prefix), which assumes those are unique among known contacts.
    """

    raw: bytes

    def __post_init__(self) -> None:
        if len(self.raw) != PUBLIC_KEY_LEN:
            raise InvalidPublicKeyError(
                f"public key must be {PUBLIC_KEY_LEN} bytes, got {len(self.raw)}"
            )
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_hex(cls, value: str) -> "PublicKey":
        """Parse a 64-character hex string."""
        try:
            raw = bytes.fromhex(value.strip())
        except ValueError as e:
            raise InvalidPublicKeyError(f"invalid hex public key: {e}") from None
        return cls(raw)

    @property
    def prefix(self) -> bytes:
        """The 6-byte prefix used for addressing in messages."""
        return self.raw[:PUBLIC_KEY_PREFIX_LEN]

    def hex(self) -> str:
        return self.raw.hex()

    def __str__(self) -> str:
        return self.raw.hex()

    def __repr__(self) -> str:
        return f"PublicKey({self.raw.hex()[:12]}...)"


class ContactType(Enum):
    """Kind of device a contact is."""

    UNKNOWN = 0
    NODE = 1
    REPEATER = 2
    ROOM = 3

    @classmethod
    def from_id(cls, type_id: int) -> "ContactType":
        """Get contact type from its wire byte."""
        try:
            return cls(type_id)
        except ValueError:
            return cls.UNKNOWN


# Contact flag bits
FLAG_TRUSTED = 0x01
FLAG_HIDDEN = 0x02


@dataclass(frozen=True)
class Contact:
    """A known peer, as stored in the device's contact table."""

    public_key: PublicKey
    device_type: ContactType = ContactType.UNKNOWN
    flags: int = 0
    # Negative means flood routing (no fixed path)
    out_path_len: int = -1
    out_path: bytes = b""
    name: str = ""
    last_advert: int = 0
    latitude: float | None = None
    longitude: float | None = None
    last_modified: int = 0

    @property
    def is_flood(self) -> bool:
        return self.out_path_len < 0

    @property
    def trusted(self) -> bool:
        return bool(self.flags & FLAG_TRUSTED)

    @property
    def hidden(self) -> bool:
        return bool(self.flags & FLAG_HIDDEN)


@dataclass(frozen=True)
class TelemetryMode:
    """Telemetry sharing policy packed into one byte (env:2 | loc:2 | base:2)."""

    env: int = 0
    loc: int = 0
    base: int = 0

    @classmethod
    def from_byte(cls, value: int) -> "TelemetryMode":
        return cls(env=(value >> 4) & 0x03, loc=(value >> 2) & 0x03, base=value & 0x03)

    def to_byte(self) -> int:
        return ((self.env & 0x03) << 4) | ((self.loc & 0x03) << 2) | (self.base & 0x03)


@dataclass(frozen=True)
class RadioConfig:
    """LoRa radio parameters."""

    frequency_mhz: float = 868.0
    bandwidth_khz: float = 125.0
    spreading_factor: int = 7
    coding_rate: int = 5


@dataclass(frozen=True)
class SelfInfo:
    """The local device's description of itself, returned by the init handshake."""

    public_key: PublicKey
    advert_type: int = 0
    tx_power: int = 0
    max_tx_power: int = 0
    latitude: float | None = None
    longitude: float | None = None
    multi_acks: int = 0
    advert_loc_policy: int = 0
    telemetry_mode: TelemetryMode = field(default_factory=TelemetryMode)
    manual_add_contacts: bool = False
    radio: RadioConfig = field(default_factory=RadioConfig)
    name: str = ""


@dataclass(frozen=True)
class DeviceInfo:
    """Firmware/hardware description. Only the version is known before firmware v3."""

    firmware_version: int
    max_contacts: int | None = None
    max_channels: int | None = None
    ble_pin: int | None = None
    build: str | None = None
    model: str | None = None
    version: str | None = None


@dataclass(frozen=True)
class BatteryStatus:
    millivolts: int
    used_kb: int | None = None
    total_kb: int | None = None


@dataclass(frozen=True)
class Channel:
    """A group channel slot."""

    index: int
    name: str = ""
    secret: bytes = b"\x00" * 16


class TextType(Enum):
    """Format of a message body."""

    PLAIN = 0
    COMMAND = 1
    SIGNED = 2

    @classmethod
    def from_id(cls, type_id: int) -> "TextType":
        try:
            return cls(type_id)
        except ValueError:
            return cls.PLAIN


@dataclass(frozen=True)
class SignalQuality:
    """Signal information carried by newer-generation messages."""

    snr: float


@dataclass(frozen=True)
class ContactMessage:
    """A private message received from a contact."""

    sender_prefix: bytes
    path_len: int = 0
    text_type: TextType = TextType.PLAIN
    timestamp: int = 0
    text: str = ""
    signature: bytes | None = None
    signal: SignalQuality | None = None


@dataclass(frozen=True)
class ChannelMessage:
    """A message received on a group channel."""

    channel_index: int
    path_len: int = 0
    text_type: TextType = TextType.PLAIN
    timestamp: int = 0
    text: str = ""
    signal: SignalQuality | None = None


class StatsType(IntEnum):
    """Statistics sub-type selector."""

    CORE = 0x00
    RADIO = 0x01
    PACKETS = 0x02


@dataclass(frozen=True)
class CoreStats:
    battery_mv: int
    uptime_secs: int
    errors: int
    queue_len: int


@dataclass(frozen=True)
class RadioStats:
    noise_floor: int
    rssi: int
    snr: float
    tx_airtime_secs: int
    rx_airtime_secs: int


@dataclass(frozen=True)
class PacketStats:
    received: int
    sent: int
    flood_tx: int
    direct_tx: int
    flood_rx: int
    direct_rx: int


@dataclass(frozen=True)
class DeviceStatus:
    """Status report of a (usually remote) node."""

    pubkey_prefix: bytes
    battery_mv: int = 0
    tx_queue_len: int = 0
    noise_floor: int = 0
    last_rssi: int = 0
    packets_received: int = 0
    packets_sent: int = 0
    airtime_secs: int = 0
    uptime_secs: int = 0
    sent_flood: int = 0
    sent_direct: int = 0
    recv_flood: int = 0
    recv_direct: int = 0
    full_events: int = 0
    last_snr: float = 0.0
    direct_dups: int = 0
    flood_dups: int = 0
    rx_airtime_secs: int = 0
