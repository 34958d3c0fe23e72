# tests/test_tools.py
"""One-shot command line tools, run against an emulated controller"""

import pytest

import read_sensors
import set_fan
import set_light
from conftest import EmulatedController, FakeTransport
from hid_transport import DeviceNotFoundError, LoopConnectInterface
from loop_config import AppConfig
from loop_protocol import (
    FAN_PORTS,
    LightColor,
    LightMode,
    LightSpeed,
    Port,
    fan_write_packet,
)


@pytest.fixture
def no_config(tmp_path):
    return ["-c", str(tmp_path / "missing.yml")]


class TestReadSensors:
    def test_report_skips_disabled_flow_and_level(self, make_transport, capsys):
        device = LoopConnectInterface(make_transport(EmulatedController()))
        read_sensors.print_report(device, AppConfig())
        out = capsys.readouterr().out

        assert "T1                   |   30.0 °C" in out
        assert "not connected" in out
        assert "l/h" not in out
        assert "Level" not in out
        assert "Mode:  Static" in out
        assert "Color: #ffffff" in out

    def test_report_with_flow_and_level(self, make_transport, capsys):
        config = AppConfig()
        config.flow.enabled = True
        config.flow.signals_per_liter = 50
        config.level.enabled = True
        config.level.name = "Reservoir"

        device = LoopConnectInterface(make_transport(EmulatedController()))
        read_sensors.print_report(device, config)
        out = capsys.readouterr().out

        assert "Flow                 |   60.0 l/h (raw 120)" in out
        assert "Reservoir            | Good" in out

    def test_main(self, attach_controller, no_config, capsys):
        attach_controller(read_sensors)
        assert read_sensors.main(no_config) == 0
        assert "LOOP CONNECT STATUS" in capsys.readouterr().out

    def test_main_device_not_responding(self, monkeypatch, no_config, capsys):
        transport = FakeTransport(lambda packet: b"")
        monkeypatch.setattr(
            read_sensors, "HidTransport", lambda read_timeout_ms: transport
        )

        assert read_sensors.main(no_config) == 1
        assert "did not respond" in capsys.readouterr().err
        assert transport.closed

    def test_main_bad_response(self, monkeypatch, no_config, capsys):
        emulated = EmulatedController()
        emulated.light = bytes([0x0A, 0x32, 0, 0, 0])  # undefined mode byte
        transport = FakeTransport(emulated)
        monkeypatch.setattr(
            read_sensors, "HidTransport", lambda read_timeout_ms: transport
        )

        assert read_sensors.main(no_config) == 1
        assert "Unknown light mode byte" in capsys.readouterr().err

    def test_main_no_device(self, monkeypatch, no_config):
        def missing(read_timeout_ms):
            raise DeviceNotFoundError("Couldn't find Loop Connect controller!")

        monkeypatch.setattr(read_sensors, "HidTransport", missing)
        assert read_sensors.main(no_config) == 2

    def test_main_invalid_config(self, write_config_file):
        path = write_config_file("daemon: {interval: 0}")
        assert read_sensors.main(["-c", str(path)]) == 1


class TestSetFan:
    def test_single_port(self, attach_controller, no_config, capsys):
        transport, emulated = attach_controller(set_fan)

        assert set_fan.main(["f3", "65"] + no_config) == 0

        assert transport.written[0] == fan_write_packet(Port.F3, 65)
        assert emulated.duties[Port.F3] == 65
        out = capsys.readouterr().out
        assert "F3    | -                    |   1200 |  65%" in out
        assert "F1 " not in out

    def test_all_fans(self, attach_controller, no_config):
        transport, emulated = attach_controller(set_fan)

        assert set_fan.main(["fans", "40"] + no_config) == 0
        assert all(emulated.duties[port] == 40 for port in FAN_PORTS)
        assert transport.closed

    def test_read_back_uses_configured_names(
        self, attach_controller, write_config_file, capsys
    ):
        attach_controller(set_fan)
        path = write_config_file("fans: {F1: {name: Radiator}}")

        assert set_fan.main(["F1", "30", "-c", str(path)]) == 0
        assert "Radiator" in capsys.readouterr().out

    @pytest.mark.parametrize("duty", ["101", "-1", "fast"])
    def test_rejects_bad_duty(self, attach_controller, no_config, duty):
        transport, _ = attach_controller(set_fan)
        with pytest.raises(SystemExit):
            set_fan.main(["F1", duty] + no_config)
        assert transport.written == []

    def test_rejects_unknown_port(self, no_config):
        with pytest.raises(SystemExit):
            set_fan.main(["F7", "50"] + no_config)

    def test_device_not_responding(self, monkeypatch, no_config, capsys):
        transport = FakeTransport(lambda packet: b"")
        monkeypatch.setattr(set_fan, "HidTransport", lambda read_timeout_ms: transport)
        assert set_fan.main(["F1", "50"] + no_config) == 1
        assert "Couldn't set fan speed" in capsys.readouterr().err


class TestSetLight:
    def test_defaults_to_static_white(self, attach_controller, no_config, capsys):
        _, emulated = attach_controller(set_light)

        assert set_light.main(no_config) == 0

        assert emulated.light == bytes([0x01, 0x32, 0xFF, 0xFF, 0xFF])
        out = capsys.readouterr().out
        assert "Mode:  Static" in out
        assert "Speed: Normal" in out

    def test_mode_speed_and_color(self, attach_controller, no_config, capsys):
        transport, _ = attach_controller(set_light)

        code = set_light.main(["SpectrumWave", "fastish", "#2040ff"] + no_config)

        assert code == 0
        device = LoopConnectInterface(transport)
        light = device.read_light()
        assert light.mode is LightMode.SPECTRUM_WAVE
        assert light.speed is LightSpeed.FASTISH
        assert light.color == LightColor(0x20, 0x40, 0xFF)
        assert "Color: #2040ff" in capsys.readouterr().out

    @pytest.mark.parametrize("color", ["2040ff", "#2040f", "#zz40ff"])
    def test_bad_color(self, attach_controller, no_config, color, capsys):
        transport, _ = attach_controller(set_light)

        assert set_light.main(["static", "normal", color] + no_config) == 1
        assert "wrong format" in capsys.readouterr().err
        assert transport.written == []

    def test_rejects_unknown_mode(self, no_config):
        with pytest.raises(SystemExit):
            set_light.main(["disco"] + no_config)
