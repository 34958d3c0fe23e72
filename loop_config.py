"""
Daemon configuration

Loaded from a YAML file, validated into pydantic models, and reloaded whenever
the file changes on disk so settings can be adjusted while the daemon runs.
Enum settings accept either the display value ("LiquidBalanced") or the member
name in any case ("liquid_balanced").
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

import yaml
from pydantic import (
    BaseModel,
    Field,
    StrictBool,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from fan_curves import ProfileName, ProfilePoint, TemperatureMode
from loop_protocol import (
    FAN_PORTS,
    LightColor,
    LightMode,
    LightSettings,
    LightSpeed,
    Port,
    TemperaturePort,
)

CONFIG_ENV_VAR = "LOOP_FAN_CONTROL_CONFIG"
DEFAULT_CONFIG_PATH = Path("~/.config/loop-fan-control/config.yml")
DEFAULT_LOG_DIRECTORY = "~/.local/state/loop-fan-control/logs"

E = TypeVar("E", bound=Enum)


class ConfigurationError(Exception):
    """Configuration file malformed or holding invalid values"""


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARN: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]


class LogTarget(Enum):
    NONE = "None"
    CONSOLE = "Console"
    FILE = "File"


class LogMode(Enum):
    TEXT = "Text"
    JSON = "JSON"


class TimestampFormat(Enum):
    ISO = "ISO"
    UNIX = "UNIX"
    UTC = "UTC"


def coerce_enum(enum_cls: Type[E], value: Any) -> E:
    """Match a member by value first, then by name ignoring case"""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value == member.value or value.upper() == member.name:
                return member
    choices = ", ".join(str(member.value) for member in enum_cls)
    raise ValueError(f"{value!r} is not one of: {choices}")


def _port_sections(ports: Iterable[E], value: Any) -> Dict[E, Any]:
    """Key a per-port mapping by enum, with every port present"""
    if not isinstance(value, dict):
        raise ValueError("expected a mapping of port names")

    by_name = {port.name: port for port in ports}
    sections: Dict[E, Any] = {port: {} for port in by_name.values()}
    for key, section in value.items():
        if key in sections:
            port = key
        elif isinstance(key, str) and key.upper() in by_name:
            port = by_name[key.upper()]
        else:
            raise ValueError(f"unknown port {key!r}, expected one of {list(by_name)}")
        sections[port] = {} if section is None else section
    return sections


def _temperature_port(value: Any) -> TemperaturePort:
    """Temperature ports are named T1..T3 in the file, not by their offsets"""
    if isinstance(value, str) and value.upper() in TemperaturePort.__members__:
        return TemperaturePort[value.upper()]
    if isinstance(value, TemperaturePort):
        return value
    raise ValueError(f"unknown temperature port {value!r}")


class TemperatureConfig(BaseModel):
    enabled: StrictBool = False
    name: str = ""
    offset: float = 0.0  # added to the raw reading [°C]
    warning: float = 50.0  # °C


class FlowConfig(BaseModel):
    enabled: StrictBool = False
    name: str = ""
    warning: float = 60.0  # l/h
    signals_per_liter: float = Field(default=100.0, gt=0)


class LevelConfig(BaseModel):
    enabled: StrictBool = False
    name: str = ""
    warning: StrictBool = True


class FanConfig(BaseModel):
    enabled: StrictBool = False
    name: str = ""
    warning: int = Field(default=300, ge=0)  # RPM
    temp_sources: List[TemperaturePort] = Field(
        default_factory=lambda: [TemperaturePort.T1]
    )
    temp_mode: TemperatureMode = TemperatureMode.AVERAGE
    active_profile: ProfileName = ProfileName.LIQUID_BALANCED
    custom_profile: Optional[str] = None
    back_off_duty: int = Field(default=50, ge=0, le=100)

    @field_validator("temp_sources", mode="before")
    @classmethod
    def validate_temp_sources(cls, value):
        if not isinstance(value, list):
            raise ValueError("expected a list of temperature ports")
        return [_temperature_port(source) for source in value]

    @field_validator("temp_mode", "active_profile", mode="before")
    @classmethod
    def validate_enum(cls, value, info: ValidationInfo):
        return coerce_enum(cls.model_fields[info.field_name].annotation, value)


class LightPreset(BaseModel):
    """Mode, speed and colour, as written to the RGB port"""

    mode: LightMode = LightMode.STATIC
    speed: LightSpeed = LightSpeed.NORMAL
    color: LightColor = LightColor(255, 255, 255)

    @field_validator("mode", "speed", mode="before")
    @classmethod
    def validate_enum(cls, value, info: ValidationInfo):
        return coerce_enum(cls.model_fields[info.field_name].annotation, value)

    @field_validator("color", mode="before")
    @classmethod
    def validate_color(cls, value):
        """Accept '#rrggbb' or [r, g, b]"""
        if isinstance(value, LightColor):
            return value
        if isinstance(value, str):
            return LightColor.from_hex(value)
        if (
            isinstance(value, (list, tuple))
            and len(value) == 3
            and all(isinstance(c, int) and not isinstance(c, bool) for c in value)
        ):
            return LightColor(*value)
        raise ValueError("expected '#rrggbb' or [r, g, b]")

    def settings(self) -> LightSettings:
        return LightSettings(mode=self.mode, speed=self.speed, color=self.color)


class LightConfig(LightPreset):
    enabled: StrictBool = True
    name: str = ""
    back_off: LightPreset = Field(
        default_factory=lambda: LightPreset(
            mode=LightMode.OFF, color=LightColor(0, 0, 0)
        )
    )

    def settings(self) -> LightSettings:
        """Settings to apply, with the light switched off when disabled"""
        mode = self.mode if self.enabled else LightMode.OFF
        return LightSettings(mode=mode, speed=self.speed, color=self.color)


class DaemonConfig(BaseModel):
    interval: int = Field(default=1000, ge=1)  # ms between ticks
    log_level: LogLevel = LogLevel.INFO
    log_target: LogTarget = LogTarget.CONSOLE
    log_mode: LogMode = LogMode.TEXT
    log_delimiter: str = " | "
    timestamp_format: TimestampFormat = TimestampFormat.ISO
    log_directory: str = DEFAULT_LOG_DIRECTORY
    log_file_retention_days: int = 7  # negative keeps files forever
    log_threshold: int = Field(default=60, ge=1)  # write every Nth tick

    @field_validator(
        "log_level", "log_target", "log_mode", "timestamp_format", mode="before"
    )
    @classmethod
    def validate_enum(cls, value, info: ValidationInfo):
        return coerce_enum(cls.model_fields[info.field_name].annotation, value)


class AppConfig(BaseModel):
    read_timeout: int = Field(default=1000, ge=1)  # ms
    temps: Dict[TemperaturePort, TemperatureConfig] = Field(
        default_factory=lambda: {port: TemperatureConfig() for port in TemperaturePort}
    )
    flow: FlowConfig = Field(default_factory=FlowConfig)
    level: LevelConfig = Field(default_factory=LevelConfig)
    fans: Dict[Port, FanConfig] = Field(
        default_factory=lambda: {port: FanConfig() for port in FAN_PORTS}
    )
    light: LightConfig = Field(default_factory=LightConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    profiles: Dict[str, List[ProfilePoint]] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def drop_empty_sections(cls, data):
        """A section left empty in YAML (`fans:`) means its defaults"""
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data

    @field_validator("temps", mode="before")
    @classmethod
    def validate_temps(cls, value):
        return _port_sections(TemperaturePort, value)

    @field_validator("fans", mode="before")
    @classmethod
    def validate_fans(cls, value):
        return _port_sections(FAN_PORTS, value)

    @field_validator("profiles")
    @classmethod
    def validate_profiles(cls, value):
        for name, points in value.items():
            for point in points:
                if not 0 <= point.duty <= 100:
                    raise ValueError(
                        f"profile {name!r}: duty {point.duty} outside 0-100"
                    )
        return value

    @property
    def enabled_fans(self) -> List[Port]:
        return [port for port in FAN_PORTS if self.fans[port].enabled]

    @property
    def enabled_temps(self) -> List[TemperaturePort]:
        return [port for port in TemperaturePort if self.temps[port].enabled]


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)).expanduser()


def load_config(path: Path) -> AppConfig:
    """Read and validate a configuration file

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: If the file is not valid YAML or holds bad values
    """
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{path}: invalid YAML: {e}") from e

    return parse_config(data or {})


def parse_config(data: Any) -> AppConfig:
    """Build an AppConfig from already-parsed YAML data"""
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"config: expected a mapping, got {type(data).__name__}"
        )
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e


class ConfigStore:
    """Configuration file with reload-on-change

    The file is re-read whenever its modification time changes. A file that
    fails to load after startup keeps the last good configuration in use.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._config: Optional[AppConfig] = None
        self._mtime: Optional[float] = None
        self.logger = logging.getLogger(self.__class__.__name__)

    def load(self) -> AppConfig:
        """Initial load, errors propagate"""
        mtime = self.path.stat().st_mtime
        self._config = load_config(self.path)
        self._mtime = mtime
        return self._config

    def current(self) -> AppConfig:
        if self._config is None:
            return self.load()

        try:
            mtime = self.path.stat().st_mtime
        except OSError as e:
            self.logger.error(
                "Cannot stat %s, keeping current config: %s", self.path, e
            )
            return self._config

        if mtime != self._mtime:
            self._mtime = mtime
            try:
                self._config = load_config(self.path)
                self.logger.info("Reloaded configuration from %s", self.path)
            except (OSError, ConfigurationError) as e:
                self.logger.error(
                    "Failed to reload %s, keeping current config: %s", self.path, e
                )

        return self._config
