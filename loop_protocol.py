"""
Loop Connect HID wire protocol
==============================

Encodes commands into the fixed 64-byte packets understood by the controller
and decodes fan, light and sensor state out of raw responses.

Packet layout (logical, before framing):

    offset  0  1  2  3  4  5  6  7  8  9  10 ...
            10 12 m2 AA 01 m5 p0 p1 00 10 20 payload...

    m2/m5:  command mode (READ: 08/03, WRITE: 29/10)
    p0/p1:  port address

Every byte not set by the template, mode, port or payload is zero.

The device does not seem to check a checksum and nobody knows which one it
would expect, so none is computed here and responses are not verified either.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple, Union

# USB identifiers
VENDOR_ID = 0x0483
PRODUCT_ID = 0x5750
HID_INTERFACE = 0

PACKET_LENGTH = 64
REPORT_ID = 0x00

PACKET_TEMPLATE = bytes(
    [0x10, 0x12, 0x00, 0xAA, 0x01, 0x00, 0x00, 0x00, 0x00, 0x10, 0x20]
)
MODE_OFFSETS = (2, 5)
PORT_OFFSETS = (6, 7)

# Payload offsets (write commands)
FAN_DUTY_OFFSET = 24
LIGHT_MODE_OFFSET = 12
LIGHT_SPEED_OFFSET = 14
LIGHT_COLOR_OFFSET = 16

# Sensor reads need a different length byte than the template carries
SENSOR_READ_LENGTH_OFFSET = 9
SENSOR_READ_LENGTH = 0x20

# Response offsets
FAN_RPM_HIGH = 12
FAN_RPM_LOW = 13
FAN_DUTY = 21
LIGHT_MODE = 9
LIGHT_SPEED = 11
LIGHT_COLOR = 13
SENSOR_TEMPS = (11, 15, 19)
SENSOR_FLOW = 23
SENSOR_LEVEL = 27

TEMP_ABSENT = 231  # no sensor connected
LEVEL_GOOD = 100


class DecodeError(Exception):
    """Raised when a response holds a byte the protocol does not define"""


class CommandMode(Enum):
    """Read/write selector, value is the pair of bytes at offsets 2 and 5"""

    READ = (0x08, 0x03)
    WRITE = (0x29, 0x10)


class Port(Enum):
    """Addressable endpoints on the controller"""

    F1 = (0xA0, 0xA0)
    F2 = (0xA0, 0xC0)
    F3 = (0xA0, 0xE0)
    F4 = (0xA1, 0x00)
    F5 = (0xA1, 0x20)
    F6 = (0xA1, 0xE0)
    SENSOR = (0xA2, 0x20)
    RGB = (0xA2, 0x60)

    @property
    def is_fan(self) -> bool:
        return self in FAN_PORTS


FAN_PORTS = (Port.F1, Port.F2, Port.F3, Port.F4, Port.F5, Port.F6)


class TemperaturePort(Enum):
    """Temperature sensors on the sensor bank, value is the response offset"""

    T1 = SENSOR_TEMPS[0]
    T2 = SENSOR_TEMPS[1]
    T3 = SENSOR_TEMPS[2]


class LightMode(Enum):
    OFF = "Off"
    STATIC = "Static"
    BREATHING = "Breathing"
    FADING = "Fading"
    MARQUEE = "Marquee"
    COVERING_MARQUEE = "CoveringMarquee"
    PULSE = "Pulse"
    SPECTRUM_WAVE = "SpectrumWave"
    ALTERNATING = "Alternating"
    CANDLE = "Candle"


class LightSpeed(Enum):
    SLOWEST = "Slowest"
    SLOWER = "Slower"
    SLOW = "Slow"
    SLOWISH = "Slowish"
    NORMAL = "Normal"
    FASTISH = "Fastish"
    FAST = "Fast"
    FASTER = "Faster"
    FASTEST = "Fastest"


class Level(Enum):
    GOOD = "Good"
    WARNING = "Warning"
    UNKNOWN = "Unknown"  # sensor bank not read


LIGHT_MODE_BYTES: Dict[LightMode, int] = {
    LightMode.OFF: 0x00,
    LightMode.STATIC: 0x01,
    LightMode.BREATHING: 0x02,
    LightMode.FADING: 0x03,
    LightMode.MARQUEE: 0x04,
    LightMode.COVERING_MARQUEE: 0x05,
    LightMode.PULSE: 0x06,
    LightMode.SPECTRUM_WAVE: 0x07,
    LightMode.ALTERNATING: 0x08,
    LightMode.CANDLE: 0x09,
}

# 0xE3 for Fastish is what the vendor software sends, even though it breaks
# the otherwise increasing sequence
LIGHT_SPEED_BYTES: Dict[LightSpeed, int] = {
    LightSpeed.SLOWEST: 0x00,
    LightSpeed.SLOWER: 0x0C,
    LightSpeed.SLOW: 0x19,
    LightSpeed.SLOWISH: 0x25,
    LightSpeed.NORMAL: 0x32,
    LightSpeed.FASTISH: 0xE3,
    LightSpeed.FAST: 0x4B,
    LightSpeed.FASTER: 0x57,
    LightSpeed.FASTEST: 0x64,
}

MODE_BY_BYTE: Dict[int, LightMode] = {v: k for k, v in LIGHT_MODE_BYTES.items()}
SPEED_BY_BYTE: Dict[int, LightSpeed] = {v: k for k, v in LIGHT_SPEED_BYTES.items()}


@dataclass(frozen=True)
class LightColor:
    red: int
    green: int
    blue: int

    def __post_init__(self):
        for channel in (self.red, self.green, self.blue):
            if not 0 <= channel <= 255:
                raise ValueError(f"Color channel out of range: {channel}")

    @classmethod
    def from_hex(cls, code: str) -> "LightColor":
        """Parse a '#rrggbb' color code"""
        if len(code) != 7 or not code.startswith("#"):
            raise ValueError(f"Invalid color code: {code!r}")
        return cls(int(code[1:3], 16), int(code[3:5], 16), int(code[5:7], 16))

    def as_tuple(self) -> Tuple[int, int, int]:
        return (self.red, self.green, self.blue)


@dataclass(frozen=True)
class LightSettings:
    """Complete lighting state, compared structurally before every write"""

    mode: LightMode
    speed: LightSpeed
    color: LightColor


@dataclass(frozen=True)
class FanSnapshot:
    rpm: int
    duty: int  # 0-100


@dataclass(frozen=True)
class SensorSnapshot:
    """Decoded sensor bank reading

    Temperatures are in °C, or None when no sensor is connected. Flow is the
    raw pulse count, or None when the bank could not be read; converting it
    needs the configured signals per liter.
    """

    temperatures: Dict[TemperaturePort, Optional[int]]
    flow: Optional[int]
    level: Level

    def temperature(self, port: TemperaturePort) -> Optional[int]:
        return self.temperatures.get(port)

    @classmethod
    def unavailable(cls) -> "SensorSnapshot":
        """Snapshot used when the sensor bank could not be read at all"""
        return cls(
            temperatures={port: None for port in TemperaturePort},
            flow=None,
            level=Level.UNKNOWN,
        )


Decoded = Union[FanSnapshot, LightSettings, SensorSnapshot]


def encode_packet(
    mode: CommandMode, port: Port, payload: Optional[Mapping[int, int]] = None
) -> bytes:
    """Build a logical packet

    Args:
        mode: Read or write command
        port: Target port
        payload: Mapping of packet offset to byte value

    Returns:
        64-byte packet, not yet framed for the transport

    Raises:
        ValueError: If a payload offset or value is out of range
    """
    packet = bytearray(PACKET_LENGTH)
    packet[: len(PACKET_TEMPLATE)] = PACKET_TEMPLATE

    for offset, value in zip(MODE_OFFSETS, mode.value):
        packet[offset] = value
    for offset, value in zip(PORT_OFFSETS, port.value):
        packet[offset] = value

    for offset, value in (payload or {}).items():
        if not 0 <= offset < PACKET_LENGTH:
            raise ValueError(f"Payload offset out of range: {offset}")
        if not 0 <= value <= 0xFF:
            raise ValueError(f"Payload byte out of range at {offset}: {value}")
        packet[offset] = value

    return bytes(packet)


def frame_packet(packet: bytes) -> bytes:
    """Prepare a logical packet for the wire

    The first byte goes missing on the way to the device (it is consumed as
    the HID report id), so a zero is prepended and the last byte dropped to
    keep the length at 64.
    """
    if len(packet) != PACKET_LENGTH:
        raise ValueError(f"Expected {PACKET_LENGTH} byte packet, got {len(packet)}")
    return bytes([REPORT_ID]) + packet[:-1]


def parse_command(packet: bytes) -> Tuple[CommandMode, Port]:
    """Recover mode and port from a logical packet (or an echo of one)"""
    _require_length(packet, max(MODE_OFFSETS + PORT_OFFSETS) + 1)

    mode_bytes = tuple(packet[i] for i in MODE_OFFSETS)
    port_bytes = tuple(packet[i] for i in PORT_OFFSETS)
    try:
        return CommandMode(mode_bytes), Port(port_bytes)
    except ValueError as e:
        raise DecodeError(f"Unknown command selector: {e}") from e


def sensor_read_packet() -> bytes:
    return encode_packet(
        CommandMode.READ,
        Port.SENSOR,
        {SENSOR_READ_LENGTH_OFFSET: SENSOR_READ_LENGTH},
    )


def fan_read_packet(port: Port) -> bytes:
    _require_fan(port)
    return encode_packet(CommandMode.READ, port)


def fan_write_packet(port: Port, duty: int) -> bytes:
    _require_fan(port)
    if not 0 <= duty <= 100:
        raise ValueError(f"Duty cycle must be within 0-100, got {duty}")
    return encode_packet(CommandMode.WRITE, port, {FAN_DUTY_OFFSET: duty})


def light_read_packet() -> bytes:
    return encode_packet(CommandMode.READ, Port.RGB)


def light_write_packet(settings: LightSettings) -> bytes:
    payload = {
        LIGHT_MODE_OFFSET: LIGHT_MODE_BYTES[settings.mode],
        LIGHT_SPEED_OFFSET: LIGHT_SPEED_BYTES[settings.speed],
    }
    for i, channel in enumerate(settings.color.as_tuple()):
        payload[LIGHT_COLOR_OFFSET + i] = channel
    return encode_packet(CommandMode.WRITE, Port.RGB, payload)


def decode_fan(response: bytes) -> FanSnapshot:
    """Decode a fan read response

    RPM is the high byte followed by the low byte padded to two hex digits,
    which amounts to a big-endian 16 bit value.
    """
    _require_length(response, FAN_DUTY + 1)
    high = response[FAN_RPM_HIGH]
    low = response[FAN_RPM_LOW]
    rpm = int(f"{high:x}{low:02x}", 16)
    return FanSnapshot(rpm=rpm, duty=response[FAN_DUTY])


def decode_light(response: bytes) -> LightSettings:
    _require_length(response, LIGHT_COLOR + 3)

    mode_byte = response[LIGHT_MODE]
    speed_byte = response[LIGHT_SPEED]
    if mode_byte not in MODE_BY_BYTE:
        raise DecodeError(f"Unknown light mode byte: 0x{mode_byte:02x}")
    if speed_byte not in SPEED_BY_BYTE:
        raise DecodeError(f"Unknown light speed byte: 0x{speed_byte:02x}")

    red, green, blue = response[LIGHT_COLOR : LIGHT_COLOR + 3]
    return LightSettings(
        mode=MODE_BY_BYTE[mode_byte],
        speed=SPEED_BY_BYTE[speed_byte],
        color=LightColor(red, green, blue),
    )


def decode_sensors(response: bytes) -> SensorSnapshot:
    _require_length(response, SENSOR_LEVEL + 1)

    temperatures = {}
    for port in TemperaturePort:
        raw = response[port.value]
        temperatures[port] = None if raw == TEMP_ABSENT else raw

    level = Level.GOOD if response[SENSOR_LEVEL] == LEVEL_GOOD else Level.WARNING
    return SensorSnapshot(
        temperatures=temperatures, flow=response[SENSOR_FLOW], level=level
    )


def decode_response(response: bytes, port: Port) -> Decoded:
    """Decode a response according to the port that was read"""
    if port.is_fan:
        return decode_fan(response)
    if port is Port.RGB:
        return decode_light(response)
    return decode_sensors(response)


def _require_fan(port: Port):
    if not port.is_fan:
        raise ValueError(f"{port.name} is not a fan port")


def _require_length(data: bytes, length: int):
    if len(data) < length:
        raise DecodeError(f"Response too short: {len(data)} < {length} bytes")
