#!/usr/bin/env python3
"""
Fan Control Daemon for the EK Loop Connect Controller
=====================================================

Drives a custom liquid-cooling loop from the Loop Connect board: six PWM fan
headers, three temperature sensors, a flow meter, a level sensor and RGB
lighting, all behind one USB HID interface.

Control Loop:
-------------
Every tick runs sense -> decide -> act, sequentially on one thread:

    1. Read the sensor bank (temperatures, flow, level)
    2. Check each enabled temperature sensor against its warning threshold
    3. For every enabled fan, combine its temperature sources into a control
       temperature (mean or max) and interpolate the duty cycle on its curve
    4. Write a fan only when its duty cycle changed since the last write
    5. Write the lights only when the configured settings changed
    6. Hand a snapshot of the tick to the log dispatcher

A tick never overlaps the next one: the loop waits out the rest of the
interval after a tick returns, or starts right away if the tick overran.

Failure Policy:
---------------
Missing data never slows a fan down. An unreadable sensor is left out of the
control temperature, a fan with no readable sensor runs as if at 100°C, and a
curve that does not cover the control temperature runs the fan at 100%.
Device errors affect only the read or write that failed and are retried on the
next tick.

Shutdown:
---------
SIGTERM or SIGINT stop the schedule. Once the tick in flight has returned the
daemon pauses briefly, then writes every enabled fan and the lights back to
their configured back-off settings, exactly once.

SIGUSR1 dumps the last snapshot to stderr regardless of log throttling.
"""

import argparse
import logging
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from fan_curves import control_temperature, evaluate, resolve_profile
from hid_transport import (
    DeviceNotFoundError,
    HidTransport,
    LoopConnectInterface,
    TransportError,
)
from log_dispatch import (
    FanReading,
    FlowReading,
    LevelReading,
    LightReading,
    LogDispatcher,
    LogEvent,
    TemperatureReading,
)
from loop_config import (
    AppConfig,
    ConfigStore,
    ConfigurationError,
    DaemonConfig,
    default_config_path,
)
from loop_protocol import (
    FAN_PORTS,
    DecodeError,
    Level,
    LightSettings,
    Port,
    SensorSnapshot,
    TemperaturePort,
)

EXIT_OK = 0
EXIT_STARTUP_ERROR = 1
EXIT_MISSING_PREREQUISITE = 2

SHUTDOWN_PAUSE = 1.0  # seconds, lets an in-flight write settle

FLOW_PORT_ID = "FLOW"
LEVEL_PORT_ID = "LEVEL"
LIGHT_PORT_ID = "RGB"

DEVICE_ERRORS = (TransportError, DecodeError)


@dataclass
class FanState:
    """Last known state of one fan header"""

    rpm: Optional[int] = None
    duty: Optional[int] = None  # last duty cycle written, 0-100


@dataclass
class DaemonSession:
    """Mutable state owned by the control loop for one daemon run"""

    fans: Dict[Port, FanState] = field(
        default_factory=lambda: {port: FanState() for port in FAN_PORTS}
    )
    light: Optional[LightSettings] = None
    last_event: Optional[LogEvent] = None
    ticks: int = 0


class LoopFanController:
    """Main controller class that runs the control loop

    Args:
        config_store: Source of the current configuration, consulted on
            every tick
        device: Device interface (see hid_transport.LoopConnectInterface)
        dispatcher: Log dispatcher, reconfigured on every tick
        clock: Wall clock for snapshot timestamps
        sleep: Used for the pause before the back-off write
    """

    def __init__(
        self,
        config_store: ConfigStore,
        device: LoopConnectInterface,
        dispatcher: Optional[LogDispatcher] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        shutdown_pause: float = SHUTDOWN_PAUSE,
    ):
        self.config_store = config_store
        self.config: AppConfig = config_store.current()
        self.device = device
        self.dispatcher = dispatcher or LogDispatcher(self.config.daemon)
        self.clock = clock
        self.sleep = sleep
        self.shutdown_pause = shutdown_pause

        self.session = DaemonSession()

        self._stop = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def install_signal_handlers(self):
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)
        # Not available on Windows
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, self._dump_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        self.logger.info("Received signal %s, initiating graceful shutdown...", signum)
        self.stop()

    def _dump_handler(self, signum, frame):
        self.dispatcher.dump(self.session.last_event)

    def stop(self):
        """Cancel the schedule; the tick in flight still completes"""
        self._stop.set()

    def seed_state(self, session: DaemonSession):
        """Initial read of fan and light state

        Anything that cannot be read stays unknown, which makes the first
        tick write it.
        """
        for port in FAN_PORTS:
            try:
                snapshot = self.device.read_fan(port)
            except DEVICE_ERRORS as e:
                self.logger.warning(
                    "Couldn't read initial state of %s: %s", port.name, e
                )
                continue
            session.fans[port] = FanState(rpm=snapshot.rpm, duty=snapshot.duty)

        try:
            session.light = self.device.read_light()
        except DEVICE_ERRORS as e:
            self.logger.warning("Couldn't read initial light state: %s", e)

    def read_sensors(self) -> SensorSnapshot:
        try:
            return self.device.read_sensors()
        except DEVICE_ERRORS as e:
            self.logger.error("Couldn't read sensors: %s", e)
            return SensorSnapshot.unavailable()

    def _temperature(
        self, config: AppConfig, snapshot: SensorSnapshot, port: TemperaturePort
    ) -> Optional[float]:
        raw = snapshot.temperature(port)
        if raw is None:
            return None
        return raw + config.temps[port].offset

    def handle_sensors(
        self, config: AppConfig, snapshot: SensorSnapshot
    ) -> Tuple[List[TemperatureReading], Optional[FlowReading], Optional[LevelReading]]:
        """Apply offsets and conversions, warn on thresholds"""
        temps = []
        for port in config.enabled_temps:
            temp_config = config.temps[port]
            log_name = temp_config.name or port.name
            temp = self._temperature(config, snapshot, port)

            if temp is None:
                self.logger.warning("Couldn't read temperature %s!", log_name)
            elif temp > temp_config.warning:
                self.logger.warning(
                    "%s is above warning temperature: %s > %s °C!",
                    log_name,
                    temp,
                    temp_config.warning,
                )
            temps.append(TemperatureReading(port.name, temp_config.name, temp))

        flow = None
        if config.flow.enabled:
            flow_config = config.flow
            log_name = flow_config.name or FLOW_PORT_ID
            value = None
            if snapshot.flow is not None:
                value = snapshot.flow * flow_config.signals_per_liter / 100
                if value < flow_config.warning:
                    self.logger.warning(
                        "%s is below warning flow: %s < %s l/h!",
                        log_name,
                        value,
                        flow_config.warning,
                    )
            flow = FlowReading(FLOW_PORT_ID, flow_config.name, value)

        level = None
        if config.level.enabled:
            level_config = config.level
            if level_config.warning and snapshot.level is Level.WARNING:
                self.logger.warning(
                    "%s is below warning level!", level_config.name or LEVEL_PORT_ID
                )
            level = LevelReading(LEVEL_PORT_ID, level_config.name, snapshot.level.value)

        return temps, flow, level

    def handle_fans(
        self, config: AppConfig, snapshot: SensorSnapshot, session: DaemonSession
    ) -> List[FanReading]:
        """Compute and apply duty cycles for every enabled fan"""
        readings = []
        for port in config.enabled_fans:
            fan_config = config.fans[port]
            log_name = fan_config.name or port.name
            state = session.fans[port]

            rpm = None
            try:
                rpm = self.device.read_fan(port).rpm
            except DEVICE_ERRORS as e:
                self.logger.error("Couldn't read %s: %s", log_name, e)
            else:
                state.rpm = rpm
                if rpm < fan_config.warning:
                    self.logger.warning(
                        "%s is below warning speed: %d < %d RPM!",
                        log_name,
                        rpm,
                        fan_config.warning,
                    )

            sources = []
            for source in fan_config.temp_sources:
                temp = self._temperature(config, snapshot, source)
                if temp is None:
                    self.logger.warning(
                        "Couldn't read temperature sensor %s for %s",
                        source.name,
                        log_name,
                    )
                sources.append(temp)

            temperature = control_temperature(sources, fan_config.temp_mode, log_name)
            profile_name, curve = resolve_profile(
                fan_config.active_profile, fan_config.custom_profile, config.profiles
            )
            duty = evaluate(curve, temperature, profile_name)

            if state.duty != duty:
                try:
                    self.device.set_fan_duty(port, duty)
                except TransportError as e:
                    self.logger.error("Failed to set %s to %d%%: %s", log_name, duty, e)
                else:
                    self.logger.debug(
                        "Set %s to %d%% (%s at %.1f°C)",
                        log_name,
                        duty,
                        profile_name,
                        temperature,
                    )
                    state.duty = duty

            readings.append(FanReading(port.name, fan_config.name, state.duty, rpm))

        return readings

    def handle_light(self, config: AppConfig, session: DaemonSession) -> LightReading:
        desired = config.light.settings()

        if desired != session.light:
            try:
                self.device.set_light(desired)
            except TransportError as e:
                self.logger.error("Failed to set lights: %s", e)
            else:
                session.light = desired

        return LightReading(
            LIGHT_PORT_ID,
            config.light.name,
            desired.mode.value,
            desired.speed.value,
            desired.color.as_tuple(),
        )

    def tick(self, session: DaemonSession) -> LogEvent:
        """One sense -> decide -> act pass"""
        config = self.config_store.current()
        self.config = config
        self.dispatcher.configure(config.daemon)

        snapshot = self.read_sensors()
        temps, flow, level = self.handle_sensors(config, snapshot)
        fans = self.handle_fans(config, snapshot, session)
        light = self.handle_light(config, session)

        event = LogEvent(
            timestamp=self.clock(),
            temperatures=temps,
            flow=flow,
            level=level,
            fans=fans,
            light=light,
        )
        severity = logging.WARNING if self.dispatcher.tick_warned else logging.INFO
        self.logger.log(severity, event)

        session.last_event = event
        session.ticks += 1
        self.dispatcher.tick_completed()
        return event

    def run(self):
        """Main control loop"""
        self.logger.info("Loop fan controller starting...")
        self.seed_state(self.session)

        self.logger.info("Entering main control loop...")
        try:
            while not self._stop.is_set():
                loop_start = time.monotonic()
                try:
                    self.tick(self.session)
                except Exception as e:
                    self.logger.error("Error in control loop: %s", e, exc_info=True)

                interval = self.config.daemon.interval / 1000.0
                elapsed = time.monotonic() - loop_start
                self._stop.wait(max(0.0, interval - elapsed))
        finally:
            self.shutdown()

    def shutdown(self):
        """Write back-off settings to all enabled fans and the lights

        Runs at most once; later calls return immediately.
        """
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self._stop.set()
        self.dispatcher.reset_counter(force=True)
        self.logger.info(
            "Daemon terminating, setting all fans and RGB to their configured "
            "back-off settings."
        )
        self.sleep(self.shutdown_pause)

        config = self.config
        try:
            back_off = config.light.back_off.settings()
            self.device.set_light(back_off)
            self.session.light = back_off
        except TransportError as e:
            self.logger.error("Failed to set lights to back-off settings: %s", e)

        for port in config.enabled_fans:
            duty = config.fans[port].back_off_duty
            try:
                self.device.set_fan_duty(port, duty)
                self.session.fans[port].duty = duty
            except TransportError as e:
                self.logger.error(
                    "Failed to set %s to back-off speed: %s", port.name, e
                )


def run_daemon(config_path: Path, dispatcher: LogDispatcher) -> int:
    """Load config, connect and run until a shutdown signal

    Returns:
        Process exit code
    """
    logger = logging.getLogger("main")

    if not config_path.exists():
        logger.error(
            "Config file %s does not exist, please create it first!", config_path
        )
        return EXIT_MISSING_PREREQUISITE

    transport = HidTransport()
    try:
        store = ConfigStore(config_path)
        config = store.load()
        dispatcher.configure(config.daemon)
        logger.info("Successfully loaded config from %s", config_path)

        transport.read_timeout_ms = config.read_timeout
        transport.open()
        logger.info("Successfully connected to controller!")
    except DeviceNotFoundError as e:
        logger.error("%s", e)
        return EXIT_MISSING_PREREQUISITE
    except (ConfigurationError, TransportError, OSError) as e:
        logger.error("Startup failed: %s", e)
        transport.close()
        return EXIT_STARTUP_ERROR

    controller = LoopFanController(store, LoopConnectInterface(transport), dispatcher)
    controller.install_signal_handlers()
    try:
        controller.run()
    finally:
        transport.close()

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    parser = argparse.ArgumentParser(
        description="Run the Loop Connect fan controller in daemon mode."
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help=f"Configuration file (default: {default_config_path()})",
    )
    args = parser.parse_args(argv)

    dispatcher = LogDispatcher(DaemonConfig())
    dispatcher.install()
    try:
        return run_daemon(args.config or default_config_path(), dispatcher)
    finally:
        dispatcher.uninstall()
        dispatcher.close()


if __name__ == "__main__":
    sys.exit(main())
