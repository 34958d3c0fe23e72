"""
Log dispatch for the control loop

Every record, including the one snapshot per tick, goes through a single
LogDispatcher handler installed on the root logger. The dispatcher renders
records as text or JSON and hands them to the sink selected in the
configuration (nothing, the console, or a daily log file).

Output is throttled: a record is written only on every Nth tick, unless it is
a warning or worse.
"""

import json
import logging
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from email.utils import formatdate
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from loop_config import DaemonConfig, LogMode, LogTarget, TimestampFormat

DUMP_DELIMITER = ", "
LOG_FILE_SUFFIX = ".log"
RETENTION_CUTOFF_HOUR = 1


@dataclass
class TemperatureReading:
    port: str
    name: str
    temp: Optional[float]  # °C, None when unreadable


@dataclass
class FlowReading:
    port: str
    name: str
    flow: Optional[float]  # l/h, None when unreadable


@dataclass
class LevelReading:
    port: str
    name: str
    level: str


@dataclass
class FanReading:
    port: str
    name: str
    duty: Optional[int]
    rpm: Optional[int]


@dataclass
class LightReading:
    port: str
    name: str
    mode: str
    speed: str
    color: Tuple[int, int, int]


@dataclass
class LogEvent:
    """Everything observed and decided during one tick"""

    timestamp: float
    temperatures: List[TemperatureReading] = field(default_factory=list)
    flow: Optional[FlowReading] = None
    level: Optional[LevelReading] = None
    fans: List[FanReading] = field(default_factory=list)
    light: Optional[LightReading] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def messages(self) -> List[str]:
        """One line per reading, prefixed with its name or port"""
        lines = []
        for t in self.temperatures:
            lines.append(f"{t.name or t.port}: {_number(t.temp)} °C")
        if self.flow is not None:
            flow = self.flow
            lines.append(f"{flow.name or flow.port}: {_number(flow.flow)} l/h")
        if self.level is not None:
            lines.append(f"{self.level.name or self.level.port}: {self.level.level}")
        for f in self.fans:
            lines.append(f"{f.name or f.port}: {_number(f.rpm)} RPM")
        if self.light is not None:
            light = self.light
            info = light.mode
            if light.mode != "Off":
                info += f"/{light.speed}/{','.join(str(c) for c in light.color)}"
            lines.append(f"{light.name or light.port}: {info}")
        return lines


def _number(value) -> str:
    if value is None:
        return "n/a"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def format_timestamp(seconds: float, fmt: TimestampFormat) -> str:
    if fmt is TimestampFormat.UNIX:
        return str(int(seconds * 1000))
    if fmt is TimestampFormat.UTC:
        return formatdate(seconds, usegmt=True)
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TextFormatter(logging.Formatter):
    """``[<timestamp> <L>] message<delimiter>message...``"""

    def __init__(self, delimiter: str, timestamp_format: TimestampFormat):
        super().__init__()
        self.delimiter = delimiter
        self.timestamp_format = timestamp_format

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, LogEvent):
            messages = record.msg.messages()
        else:
            messages = [record.getMessage()]
        if record.exc_info:
            messages.append(self.formatException(record.exc_info))

        stamp = format_timestamp(record.created, self.timestamp_format)
        return f"[{stamp} {record.levelname[0]}] {self.delimiter.join(messages)}"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, events serialized field by field"""

    def __init__(self, timestamp_format: TimestampFormat):
        super().__init__()
        self.timestamp_format = timestamp_format

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, LogEvent):
            messages: List[Any] = [record.msg.to_dict()]
        else:
            messages = [record.getMessage()]
        if record.exc_info:
            messages.append(self.formatException(record.exc_info))

        return json.dumps(
            {
                "timestamp": format_timestamp(record.created, self.timestamp_format),
                "level": record.levelname,
                "messages": messages,
            }
        )


def make_formatter(config: DaemonConfig) -> logging.Formatter:
    if config.log_mode is LogMode.JSON:
        return JSONFormatter(config.timestamp_format)
    return TextFormatter(config.log_delimiter, config.timestamp_format)


class NullSink:
    def write(self, line: str):
        pass

    def close(self):
        pass


class ConsoleSink:
    def __init__(self, stream: TextIO):
        self.stream = stream

    def write(self, line: str):
        self.stream.write(line + "\n")
        self.stream.flush()

    def close(self):
        pass


def log_filename(day: date) -> str:
    return f"{day.isoformat()}{LOG_FILE_SUFFIX}"


def prune_log_directory(
    directory: Path, retention_days: int, today: date
) -> List[Path]:
    """Delete log files last modified before 01:00 on today - retention_days

    Returns:
        The removed files
    """
    if retention_days < 0:
        return []

    cutoff_day = today - timedelta(days=retention_days)
    cutoff = datetime(
        cutoff_day.year, cutoff_day.month, cutoff_day.day, RETENTION_CUTOFF_HOUR
    ).timestamp()

    removed = []
    for entry in directory.iterdir():
        if not entry.is_file() or entry.suffix != LOG_FILE_SUFFIX:
            continue
        if entry.stat().st_mtime < cutoff:
            entry.unlink()
            removed.append(entry)
    return removed


class FileSink:
    """Append-only daily log files

    Appends run on one worker thread, so callers never wait for the disk and
    lines land in the order they were written. The directory is pruned once
    per day, on the first write of that day.
    """

    def __init__(
        self,
        directory: Path,
        retention_days: int,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory).expanduser()
        self.retention_days = retention_days
        self.clock = clock
        self._pruned_on: Optional[date] = None
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="log-writer"
        )

    def write(self, line: str):
        day = date.fromtimestamp(self.clock())
        future = self._executor.submit(self._append, day, line)
        future.add_done_callback(self._report_failure)

    def _append(self, day: date, line: str):
        self.directory.mkdir(parents=True, exist_ok=True)
        if self._pruned_on != day:
            prune_log_directory(self.directory, self.retention_days, day)
            self._pruned_on = day

        with open(self.directory / log_filename(day), "a", encoding="utf-8") as f:
            f.write(line + "\n")

    @staticmethod
    def _report_failure(future: Future):
        # Logging from here would feed back into the dispatcher
        error = future.exception()
        if error is not None:
            sys.stderr.write(f"Failed to write log file: {error}\n")

    def close(self):
        self._executor.shutdown(wait=True)


class LogDispatcher(logging.Handler):
    """Routes log records to the configured sink with throttling

    Args:
        config: Daemon section of the configuration
        stream: Console sink stream
        dump_stream: Stream for unconditional state dumps
        clock: Time source for log file names
    """

    def __init__(
        self,
        config: DaemonConfig,
        stream: Optional[TextIO] = None,
        dump_stream: Optional[TextIO] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.stream = stream or sys.stdout
        self.dump_stream = dump_stream or sys.stderr
        self.clock = clock

        self.counter = 0
        self.tick_warned = False

        self.config = config
        self._sink = NullSink()
        self._sink_key: Optional[Tuple] = None
        self._logger: Optional[logging.Logger] = None
        self.configure(config)

    def install(self, logger: Optional[logging.Logger] = None):
        """Attach to a logger, root by default"""
        self._logger = logger or logging.getLogger()
        self._logger.addHandler(self)
        self._logger.setLevel(self.config.log_level.logging_level)

    def uninstall(self):
        if self._logger is not None:
            self._logger.removeHandler(self)
            self._logger = None

    def configure(self, config: DaemonConfig):
        """Apply (possibly changed) settings, switching sink if needed"""
        self.config = config
        self.setFormatter(make_formatter(config))

        level = config.log_level.logging_level
        self.setLevel(level)
        if self._logger is not None and self._logger.level != level:
            self._logger.setLevel(level)

        key: Tuple = (config.log_target,)
        if config.log_target is LogTarget.FILE:
            key += (config.log_directory, config.log_file_retention_days)

        if key != self._sink_key:
            self._sink.close()
            self._sink = self._make_sink(config)
            self._sink_key = key

    def _make_sink(self, config: DaemonConfig):
        if config.log_target is LogTarget.CONSOLE:
            return ConsoleSink(self.stream)
        if config.log_target is LogTarget.FILE:
            return FileSink(
                Path(config.log_directory),
                config.log_file_retention_days,
                clock=self.clock,
            )
        return NullSink()

    @property
    def sink(self):
        return self._sink

    def should_emit(self, levelno: int) -> bool:
        return (
            self.counter % self.config.log_threshold == 0
            or levelno >= logging.WARNING
        )

    def emit(self, record: logging.LogRecord):
        if record.levelno >= logging.WARNING:
            self.tick_warned = True
        if not self.should_emit(record.levelno):
            return

        try:
            self._sink.write(self.format(record))
        except Exception:
            self.handleError(record)
        self.reset_counter()

    def reset_counter(self, force: bool = False):
        if force or self.counter % self.config.log_threshold == 0:
            self.counter = 0

    def tick_completed(self):
        self.counter += 1
        self.tick_warned = False

    def dump(self, event: Optional[LogEvent]):
        """Write the given state to the console regardless of throttling"""
        formatter = TextFormatter(DUMP_DELIMITER, self.config.timestamp_format)
        record = logging.LogRecord(
            name="dump",
            level=logging.INFO,
            pathname=__file__,
            lineno=0,
            msg=event if event is not None else "No state collected yet",
            args=None,
            exc_info=None,
        )
        self.dump_stream.write(formatter.format(record) + "\n")
        self.dump_stream.flush()

    def close(self):
        self._sink.close()
        super().close()
