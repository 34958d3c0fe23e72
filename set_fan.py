#!/usr/bin/env python3
"""Set the duty cycle of one fan port, or all of them, and print the result"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from hid_transport import (
    DeviceNotFoundError,
    HidTransport,
    LoopConnectInterface,
    TransportError,
)
from loop_config import ConfigurationError
from loop_protocol import FAN_PORTS, DecodeError, FanSnapshot, Port
from read_sensors import load_or_default, print_banner, print_fans

ALL_FANS = "FANS"


def set_fans(
    device: LoopConnectInterface, ports: Sequence[Port], duty: int
) -> Dict[Port, FanSnapshot]:
    """Write the duty to each port, then read the ports back"""
    for port in ports:
        device.set_fan_duty(port, duty)
    return {port: device.read_fan(port) for port in ports}


def duty_cycle(value: str) -> int:
    duty = int(value)
    if not 0 <= duty <= 100:
        raise argparse.ArgumentTypeError(f"{duty} is outside 0-100")
    return duty


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Set fan speed on a fan port.")
    parser.add_argument(
        "port",
        type=str.upper,
        choices=[port.name for port in FAN_PORTS] + [ALL_FANS],
        help="The fan to configure, or 'fans' for every port",
    )
    parser.add_argument(
        "duty", type=duty_cycle, help="The desired PWM duty cycle, 0-100"
    )
    parser.add_argument("-c", "--config", type=Path, default=None)
    args = parser.parse_args(argv)

    try:
        config = load_or_default(args.config)
    except ConfigurationError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 1

    ports = list(FAN_PORTS) if args.port == ALL_FANS else [Port[args.port]]
    try:
        with HidTransport(read_timeout_ms=config.read_timeout) as transport:
            fans = set_fans(LoopConnectInterface(transport), ports, args.duty)
    except DeviceNotFoundError as e:
        print(e, file=sys.stderr)
        return 2
    except (TransportError, DecodeError) as e:
        print(f"Couldn't set fan speed: {e}", file=sys.stderr)
        return 1

    print_banner(f"FAN DUTY SET TO {args.duty}%")
    print_fans(fans, config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
