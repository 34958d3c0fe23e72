#!/usr/bin/env python3
"""Print the current sensor, fan and light state of the controller"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional

from hid_transport import (
    DeviceNotFoundError,
    HidTransport,
    LoopConnectInterface,
    TransportError,
)
from loop_config import AppConfig, ConfigurationError, default_config_path, load_config
from loop_protocol import (
    DecodeError,
    FanSnapshot,
    LightSettings,
    Port,
    TemperaturePort,
)


def print_banner(title: str):
    print("=" * 60)
    print(title)
    print("=" * 60)


def print_fans(fans: Dict[Port, FanSnapshot], config: AppConfig):
    print("\nFANS")
    print("-" * 60)
    print("Port  | Name                 |    RPM | Duty")
    for port, fan in fans.items():
        name = config.fans[port].name or "-"
        print(f"{port.name:5s} | {name:20s} | {fan.rpm:6d} | {fan.duty:3d}%")


def print_light(light: LightSettings):
    print("\nLIGHTS")
    print("-" * 60)
    print(f"Mode:  {light.mode.value}")
    print(f"Speed: {light.speed.value}")
    print("Color: #{:02x}{:02x}{:02x}".format(*light.color.as_tuple()))


def print_report(device: LoopConnectInterface, config: AppConfig):
    sensors = device.read_sensors()
    fans = device.read_fans()
    light = device.read_light()

    print_banner("LOOP CONNECT STATUS")

    print("\nSENSORS")
    print("-" * 60)
    for port in TemperaturePort:
        temp = sensors.temperature(port)
        name = config.temps[port].name or port.name
        if temp is None:
            print(f"{name:20s} | not connected")
        else:
            offset = config.temps[port].offset
            print(
                f"{name:20s} | {temp + offset:6.1f} °C  "
                f"(raw {temp}, offset {offset:+.1f})"
            )

    # flow meter and level sensor are optional hardware
    if config.flow.enabled:
        flow = sensors.flow * config.flow.signals_per_liter / 100
        print(
            f"{config.flow.name or 'Flow':20s} | {flow:6.1f} l/h "
            f"(raw {sensors.flow})"
        )
    if config.level.enabled:
        print(f"{config.level.name or 'Level':20s} | {sensors.level.value}")

    print_fans(fans, config)
    print_light(light)


def load_or_default(config_path: Optional[Path]) -> AppConfig:
    """Configured settings, or defaults when there is no config file

    Raises:
        ConfigurationError: If the file exists but is invalid
    """
    path = config_path or default_config_path()
    return load_config(path) if path.exists() else AppConfig()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Read sensors, fans and lights.")
    parser.add_argument("-c", "--config", type=Path, default=None)
    args = parser.parse_args(argv)

    try:
        config = load_or_default(args.config)
    except ConfigurationError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1

    try:
        with HidTransport(read_timeout_ms=config.read_timeout) as transport:
            print_report(LoopConnectInterface(transport), config)
    except DeviceNotFoundError as e:
        print(e, file=sys.stderr)
        return 2
    except (TransportError, DecodeError) as e:
        print(f"Couldn't read controller: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
