#!/usr/bin/env python3
"""Configure the RGB lights and print the settings read back"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from hid_transport import (
    DeviceNotFoundError,
    HidTransport,
    LoopConnectInterface,
    TransportError,
)
from loop_config import ConfigurationError
from loop_protocol import (
    DecodeError,
    LightColor,
    LightMode,
    LightSettings,
    LightSpeed,
)
from read_sensors import load_or_default, print_banner, print_light

MODES = {mode.value.lower(): mode for mode in LightMode}
SPEEDS = {speed.value.lower(): speed for speed in LightSpeed}


def set_light(device: LoopConnectInterface, settings: LightSettings) -> LightSettings:
    device.set_light(settings)
    return device.read_light()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Configure RGB lights.")
    parser.add_argument(
        "mode", nargs="?", type=str.lower, choices=list(MODES), default="static"
    )
    parser.add_argument(
        "speed", nargs="?", type=str.lower, choices=list(SPEEDS), default="normal"
    )
    parser.add_argument(
        "color", nargs="?", default="#FFFFFF", help="Color code as #rrggbb"
    )
    parser.add_argument("-c", "--config", type=Path, default=None)
    args = parser.parse_args(argv)

    try:
        config = load_or_default(args.config)
    except ConfigurationError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1

    try:
        color = LightColor.from_hex(args.color)
    except ValueError:
        print("Couldn't set color: wrong format!", file=sys.stderr)
        return 1

    settings = LightSettings(MODES[args.mode], SPEEDS[args.speed], color)
    try:
        with HidTransport(read_timeout_ms=config.read_timeout) as transport:
            light = set_light(LoopConnectInterface(transport), settings)
    except DeviceNotFoundError as e:
        print(e, file=sys.stderr)
        return 2
    except (TransportError, DecodeError) as e:
        print(f"Couldn't set lights: {e}", file=sys.stderr)
        return 1

    print_banner("LIGHTS SET")
    print_light(light)
    return 0


if __name__ == "__main__":
    sys.exit(main())
