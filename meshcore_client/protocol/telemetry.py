"""
Cayenne LPP sensor telemetry decoding.

Telemetry bodies are a flat sequence of records:

    [CHANNEL: 1 byte][TYPE: 1 byte][VALUE: type-specific, big-endian]

Decoding is forgiving: a record that would run past the end of the buffer
ends the scan silently (the truncated record is dropped), and an unknown
type code swallows all remaining bytes as one opaque record because its
width cannot be known.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)


class Vector3(NamedTuple):
    x: float
    y: float
    z: float


class GpsFix(NamedTuple):
    latitude: float
    longitude: float
    altitude: float


class Colour(NamedTuple):
    r: int
    g: int
    b: int


# LPP type codes
LPP_DIGITAL_INPUT = 0
LPP_DIGITAL_OUTPUT = 1
LPP_ANALOG_INPUT = 2
LPP_ANALOG_OUTPUT = 3
LPP_ILLUMINANCE = 101
LPP_PRESENCE = 102
LPP_TEMPERATURE = 103
LPP_HUMIDITY = 104
LPP_ACCELEROMETER = 113
LPP_BAROMETER = 115
LPP_VOLTAGE = 116
LPP_CURRENT = 117
LPP_FREQUENCY = 118
LPP_PERCENTAGE = 120
LPP_ALTITUDE = 121
LPP_POWER = 128
LPP_DISTANCE = 130
LPP_ENERGY = 131
LPP_DIRECTION = 132
LPP_UNIX_TIME = 133
LPP_GYROMETER = 134
LPP_COLOUR = 135
LPP_GPS = 136


def _scalar(fmt: str, scale: float | None = None) -> Callable[[bytes], Any]:
    def decode(raw: bytes) -> Any:
        (value,) = struct.unpack(fmt, raw)
        return value / scale if scale else value

    return decode


def _vector(scale: float) -> Callable[[bytes], Vector3]:
    def decode(raw: bytes) -> Vector3:
        x, y, z = struct.unpack(">hhh", raw)
        return Vector3(x / scale, y / scale, z / scale)

    return decode


def _int24(raw: bytes) -> int:
    return int.from_bytes(raw, "big", signed=True)


def _gps(raw: bytes) -> GpsFix:
    return GpsFix(
        latitude=_int24(raw[0:3]) / 10000,
        longitude=_int24(raw[3:6]) / 10000,
        altitude=_int24(raw[6:9]) / 100,
    )


def _colour(raw: bytes) -> Colour:
    return Colour(raw[0], raw[1], raw[2])


@dataclass(frozen=True)
class LppType:
    """Width and decoder of one LPP type code."""

    name: str
    size: int
    decode: Callable[[bytes], Any]


LPP_TYPES: dict[int, LppType] = {
    LPP_DIGITAL_INPUT: LppType("digital_input", 1, _scalar(">B")),
    LPP_DIGITAL_OUTPUT: LppType("digital_output", 1, _scalar(">B")),
    LPP_ANALOG_INPUT: LppType("analog_input", 2, _scalar(">h", 100)),
    LPP_ANALOG_OUTPUT: LppType("analog_output", 2, _scalar(">h", 100)),
    LPP_ILLUMINANCE: LppType("illuminance", 2, _scalar(">H")),
    LPP_PRESENCE: LppType("presence", 1, _scalar(">B")),
    LPP_TEMPERATURE: LppType("temperature", 2, _scalar(">h", 10)),
    LPP_HUMIDITY: LppType("humidity", 1, _scalar(">B", 2)),
    LPP_ACCELEROMETER: LppType("accelerometer", 6, _vector(1000)),
    LPP_BAROMETER: LppType("barometer", 2, _scalar(">H", 10)),
    LPP_VOLTAGE: LppType("voltage", 2, _scalar(">H", 100)),
    LPP_CURRENT: LppType("current", 2, _scalar(">H", 1000)),
    LPP_FREQUENCY: LppType("frequency", 4, _scalar(">I")),
    LPP_PERCENTAGE: LppType("percentage", 1, _scalar(">B")),
    LPP_ALTITUDE: LppType("altitude", 2, _scalar(">h", 100)),
    LPP_POWER: LppType("power", 2, _scalar(">H")),
    LPP_DISTANCE: LppType("distance", 4, _scalar(">I")),
    LPP_ENERGY: LppType("energy", 4, _scalar(">I")),
    LPP_DIRECTION: LppType("direction", 2, _scalar(">H")),
    LPP_UNIX_TIME: LppType("unix_time", 4, _scalar(">I")),
    LPP_GYROMETER: LppType("gyrometer", 6, _vector(100)),
    LPP_COLOUR: LppType("colour", 3, _colour),
    LPP_GPS: LppType("gps", 9, _gps),
}


@dataclass(frozen=True)
class TelemetryReading:
    """One decoded LPP record."""

    channel: int
    lpp_type: int
    value: Any

    @property
    def name(self) -> str:
        lpp = LPP_TYPES.get(self.lpp_type)
        return lpp.name if lpp else "generic"


def iter_lpp(data: bytes) -> Iterator[TelemetryReading]:
    """
    Yield readings from an LPP buffer in order.

    Stops at the first record that does not fit in the remaining bytes.
    """
    pos = 0
    end = len(data)

    while pos + 2 <= end:
        channel = data[pos]
        lpp_type = data[pos + 1]
        pos += 2

        lpp = LPP_TYPES.get(lpp_type)
        if lpp is None:
            # Unknown width: take everything that is left
            if pos >= end:
                return
            logger.debug("Unknown LPP type %d on channel %d, %d bytes left", lpp_type, channel, end - pos)
            yield TelemetryReading(channel, lpp_type, bytes(data[pos:]))
            return

        if pos + lpp.size > end:
            logger.debug("Truncated LPP record type %d on channel %d", lpp_type, channel)
            return

        yield TelemetryReading(channel, lpp_type, lpp.decode(bytes(data[pos : pos + lpp.size])))
        pos += lpp.size


@dataclass(frozen=True)
class Telemetry:
    """A set of readings from one telemetry report."""

    readings: tuple[TelemetryReading, ...] = field(default_factory=tuple)

    @classmethod
    def parse(cls, data: bytes) -> "Telemetry":
        return cls(tuple(iter_lpp(data)))

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[TelemetryReading]:
        return iter(self.readings)

    def by_channel(self) -> dict[int, list[TelemetryReading]]:
        """Group readings by channel, preserving order."""
        grouped: dict[int, list[TelemetryReading]] = {}
        for reading in self.readings:
            grouped.setdefault(reading.channel, []).append(reading)
        return grouped

    def first(self, lpp_type: int) -> Any | None:
        """Value of the first reading of the given type, or None."""
        for reading in self.readings:
            if reading.lpp_type == lpp_type:
                return reading.value
        return None

    @property
    def temperature(self) -> float | None:
        return self.first(LPP_TEMPERATURE)

    @property
    def humidity(self) -> float | None:
        return self.first(LPP_HUMIDITY)

    @property
    def voltage(self) -> float | None:
        return self.first(LPP_VOLTAGE)

    @property
    def gps(self) -> GpsFix | None:
        return self.first(LPP_GPS)
