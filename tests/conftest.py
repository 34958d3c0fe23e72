# tests/conftest.py
"""Shared pytest fixtures and device doubles.

The control loop is tested against FakeDevice, which stands in for
LoopConnectInterface. Protocol-level tests use FakeTransport, which answers
every write with a canned response.
"""

import io
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from fan_control import LoopFanController
from fan_curves import ProfileName, ProfilePoint
from hid_transport import TransportError
from log_dispatch import LogDispatcher
from loop_config import AppConfig, DaemonConfig
from loop_protocol import (
    FAN_PORTS,
    PACKET_LENGTH,
    CommandMode,
    FanSnapshot,
    Level,
    LightColor,
    LightMode,
    LightSettings,
    LightSpeed,
    Port,
    SensorSnapshot,
    TemperaturePort,
    parse_command,
)


# ----------------------------------------------------------------
# Doubles
# ----------------------------------------------------------------
class FakeTransport:
    """Records written packets and answers each with responder(packet)"""

    def __init__(self, responder: Callable[[bytes], bytes]):
        self.responder = responder
        self.written: List[bytes] = []
        self._pending: Optional[bytes] = None
        self.closed = False

    def write(self, packet: bytes):
        self.written.append(packet)
        self._pending = self.responder(packet)

    def read(self) -> bytes:
        response, self._pending = self._pending, None
        if not response:
            raise TransportError("Unable to read response: device did not respond")
        return response

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class EmulatedController:
    """Responder that answers packets the way the controller does

    Fan duties and light settings written to it are reported back by later
    reads. Sensor reads return T1 at 30 °C, raw flow 120 and a good level.
    """

    def __init__(self, rpm: int = 1200):
        self.rpm = rpm
        self.duties: Dict[Port, int] = {port: 0 for port in FAN_PORTS}
        # mode, speed, red, green, blue as written at offsets 12, 14, 16-18
        self.light = bytes([0x01, 0x32, 0xFF, 0xFF, 0xFF])

    def __call__(self, packet: bytes) -> bytes:
        mode, port = parse_command(packet)
        response = bytearray(PACKET_LENGTH)
        if mode is CommandMode.WRITE:
            if port.is_fan:
                self.duties[port] = packet[24]
            elif port is Port.RGB:
                self.light = bytes([packet[12], packet[14], *packet[16:19]])
        elif port.is_fan:
            response[12], response[13] = divmod(self.rpm, 256)
            response[21] = self.duties[port]
        elif port is Port.RGB:
            response[9], response[11] = self.light[0], self.light[1]
            response[13:16] = self.light[2:]
        else:
            response[11], response[15], response[19] = 30, 231, 231
            response[23], response[27] = 120, 100
        return bytes(response)


class FakeDevice:
    """Stand-in for LoopConnectInterface with scripted readings"""

    def __init__(self, t1: Optional[int] = 30, rpm: int = 1200):
        self.sensors = SensorSnapshot(
            temperatures={
                TemperaturePort.T1: t1,
                TemperaturePort.T2: None,
                TemperaturePort.T3: None,
            },
            flow=120,
            level=Level.GOOD,
        )
        self.rpm = rpm
        self.light = LightSettings(
            LightMode.OFF, LightSpeed.NORMAL, LightColor(0, 0, 0)
        )
        self.initial_duty = 0

        self.fan_writes: List[Tuple[Port, int]] = []
        self.light_writes: List[LightSettings] = []

        self.fail_sensors = False
        self.fail_fan_writes = set()
        self.on_read_sensors: Optional[Callable[[], None]] = None

    def set_temperature(self, t1: Optional[int]):
        temperatures = dict(self.sensors.temperatures)
        temperatures[TemperaturePort.T1] = t1
        self.sensors = SensorSnapshot(
            temperatures, self.sensors.flow, self.sensors.level
        )

    def read_sensors(self) -> SensorSnapshot:
        if self.on_read_sensors is not None:
            self.on_read_sensors()
        if self.fail_sensors:
            raise TransportError("Unable to read response: device did not respond")
        return self.sensors

    def read_fan(self, port: Port) -> FanSnapshot:
        return FanSnapshot(rpm=self.rpm, duty=self.initial_duty)

    def read_light(self) -> LightSettings:
        return self.light

    def set_fan_duty(self, port: Port, duty: int):
        if port in self.fail_fan_writes:
            raise TransportError("Write failed: device rejected packet")
        self.fan_writes.append((port, duty))

    def set_light(self, settings: LightSettings):
        self.light_writes.append(settings)

    def writes_for(self, port: Port) -> List[int]:
        return [duty for p, duty in self.fan_writes if p is port]


class StaticConfigStore:
    def __init__(self, config: AppConfig):
        self.config = config

    def current(self) -> AppConfig:
        return self.config


# ----------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------
@pytest.fixture
def app_config() -> AppConfig:
    """T1 drives F1 over a two point custom curve: 20°C/20% to 40°C/80%"""
    config = AppConfig()
    config.temps[TemperaturePort.T1].enabled = True
    config.temps[TemperaturePort.T1].name = "Coolant"
    config.temps[TemperaturePort.T1].warning = 45

    fan = config.fans[Port.F1]
    fan.enabled = True
    fan.name = "Radiator"
    fan.warning = 300
    fan.temp_sources = [TemperaturePort.T1]
    fan.active_profile = ProfileName.CUSTOM
    fan.custom_profile = "test"
    fan.back_off_duty = 40

    config.profiles["test"] = [ProfilePoint(20, 20), ProfilePoint(40, 80)]
    config.daemon = DaemonConfig(log_threshold=100)
    return config


@pytest.fixture
def fake_device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def dispatcher(app_config, log_stream):
    """Dispatcher installed on the root logger, writing to log_stream"""
    root = logging.getLogger()
    previous_level = root.level

    handler = LogDispatcher(
        app_config.daemon, stream=log_stream, dump_stream=log_stream
    )
    handler.install()
    yield handler

    handler.uninstall()
    handler.close()
    root.setLevel(previous_level)


@pytest.fixture
def make_transport():
    """Factory fixture for FakeTransport with a given responder"""

    def _make(responder: Callable[[bytes], bytes]) -> FakeTransport:
        return FakeTransport(responder)

    return _make


@pytest.fixture
def controller(app_config, fake_device, dispatcher):
    """Controller over fake_device with a fixed clock and no shutdown pause"""
    return LoopFanController(
        StaticConfigStore(app_config),
        fake_device,
        dispatcher,
        clock=lambda: 1_000_000.0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def write_config_file(tmp_path):
    """Factory fixture for writing YAML configuration files"""

    def _write(text: str, filename: str = "config.yml") -> Path:
        path = tmp_path / filename
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def attach_controller(monkeypatch):
    """Factory fixture: make module.HidTransport open an EmulatedController"""

    def _attach(module) -> Tuple[FakeTransport, EmulatedController]:
        emulated = EmulatedController()
        transport = FakeTransport(emulated)
        monkeypatch.setattr(module, "HidTransport", lambda read_timeout_ms: transport)
        return transport, emulated

    return _attach
