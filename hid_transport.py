"""USB HID access to the Loop Connect controller"""

import logging
from typing import Dict, Optional

import hid

from loop_protocol import (
    FAN_PORTS,
    HID_INTERFACE,
    PACKET_LENGTH,
    PRODUCT_ID,
    VENDOR_ID,
    FanSnapshot,
    LightSettings,
    Port,
    SensorSnapshot,
    decode_fan,
    decode_light,
    decode_sensors,
    fan_read_packet,
    fan_write_packet,
    frame_packet,
    light_read_packet,
    light_write_packet,
    sensor_read_packet,
)

DEFAULT_READ_TIMEOUT_MS = 1000


class TransportError(Exception):
    """Device unreachable or not responding"""


class DeviceNotFoundError(TransportError):
    """No controller attached"""


class HidTransport:
    """Raw packet exchange with the controller over hidapi"""

    def __init__(self, read_timeout_ms: int = DEFAULT_READ_TIMEOUT_MS):
        self.read_timeout_ms = read_timeout_ms
        self._device: Optional[hid.device] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def open(self):
        """Find the controller and open its HID interface

        Raises:
            DeviceNotFoundError: If no controller is attached
            TransportError: If the device exists but cannot be opened
        """
        if self._device is not None:
            return

        candidates = [
            info
            for info in hid.enumerate(VENDOR_ID, PRODUCT_ID)
            if info.get("interface_number") == HID_INTERFACE
        ]
        if not candidates:
            raise DeviceNotFoundError(
                "Couldn't find Loop Connect controller! Is it connected?"
            )

        path = candidates[0]["path"]
        try:
            device = hid.device()
            device.open_path(path)
        except OSError as e:
            raise TransportError(f"Failed to open controller: {e}") from e

        self._device = device
        self.logger.info("Connected to controller at %s", path.decode(errors="replace"))

    def close(self):
        if self._device is None:
            return
        try:
            self._device.close()
        except OSError as e:
            self.logger.warning("Error closing controller: %s", e)
        self._device = None

    def write(self, packet: bytes):
        """Frame and send a logical packet"""
        device = self._require_device()
        try:
            written = device.write(frame_packet(packet))
        except (OSError, ValueError) as e:
            raise TransportError(f"Write failed: {e}") from e
        if written < 0:
            raise TransportError("Write failed: device rejected packet")

    def read(self, timeout_ms: Optional[int] = None) -> bytes:
        """Read one response, waiting at most timeout_ms

        Raises:
            TransportError: If nothing arrives before the timeout
        """
        device = self._require_device()
        timeout = self.read_timeout_ms if timeout_ms is None else timeout_ms
        try:
            data = device.read(PACKET_LENGTH, timeout_ms=timeout)
        except (OSError, ValueError) as e:
            raise TransportError(f"Read failed: {e}") from e
        if not data:
            raise TransportError("Unable to read response: device did not respond")
        return bytes(data)

    def _require_device(self) -> hid.device:
        if self._device is None:
            raise TransportError("Controller not connected")
        return self._device

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class LoopConnectInterface:
    """Device-level commands: one packet out, one response back

    Any object with ``write(packet)`` and ``read()`` works as transport.
    """

    def __init__(self, transport):
        self.transport = transport
        self.logger = logging.getLogger(self.__class__.__name__)

    def _exchange(self, packet: bytes) -> bytes:
        self.transport.write(packet)
        return self.transport.read()

    def read_sensors(self) -> SensorSnapshot:
        return decode_sensors(self._exchange(sensor_read_packet()))

    def read_fan(self, port: Port) -> FanSnapshot:
        return decode_fan(self._exchange(fan_read_packet(port)))

    def read_fans(self) -> Dict[Port, FanSnapshot]:
        return {port: self.read_fan(port) for port in FAN_PORTS}

    def read_light(self) -> LightSettings:
        return decode_light(self._exchange(light_read_packet()))

    def set_fan_duty(self, port: Port, duty: int):
        """Set fan PWM duty cycle

        Args:
            port: Fan port
            duty: Duty cycle 0-100
        """
        self.logger.debug("Setting %s to %d%%", port.name, duty)
        # The response to a write carries nothing we know how to check
        self._exchange(fan_write_packet(port, duty))

    def set_light(self, settings: LightSettings):
        self.logger.debug(
            "Setting light to %s/%s/%s",
            settings.mode.value,
            settings.speed.value,
            settings.color.as_tuple(),
        )
        self._exchange(light_write_packet(settings))

    def close(self):
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()
