#!/usr/bin/env python3
"""
Data Models for the TAM Coordinator

This module contains the data classes, enums and constants shared by the
link, registry, mesh protocol and scheduler.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import yaml

from .exceptions import ConfigError


# =============================================================================
# Constants (NASA Rule 2: Fixed bounds for all limits)
# =============================================================================

# Default serial settings of the local XBee radio
DEFAULT_SERIAL_PORT = "/dev/ttyUSB0"
DEFAULT_BAUDRATE = 9600

# Controller step period (milliseconds)
DEFAULT_STEP_INTERVAL_MS = 100

# Node discovery period (seconds)
DEFAULT_DISCOVERY_INTERVAL_S = 30

# Liveness audit period and staleness threshold (seconds)
DEFAULT_LIVENESS_INTERVAL_S = 5
DEFAULT_STALE_AFTER_S = 30

# Per-command retry bound and per-attempt deadline
DEFAULT_RETRY_LIMIT = 3
DEFAULT_RETRY_TIMEOUT_MS = 500

# Maximum number of TAMs to track (NASA Rule 2: bounded collections)
MAX_TAMS = 256

# Maximum handlers per event type (NASA Rule 2: bounded collections)
MAX_EVENT_HANDLERS = 32

# Minimum operational TAM voltage (volts)
MIN_TAM_VOLTAGE = 3.2

# Length of the placeholder id derived from the address
PLACEHOLDER_ID_LENGTH = 5

# Interval between protocol mismatch warnings for one TAM (seconds)
MISMATCH_WARNING_INTERVAL_S = 10.0

DEFAULT_EXPERIMENT = "tam_coordinator.experiments:CameraCalibrationExperiment"


# =============================================================================
# Enums
# =============================================================================

class CoordinatorState(Enum):
    """Coordinator lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class CommandKind(Enum):
    """Retriable per-TAM commands."""
    SET_LEDS = "set_leds"
    WRITE_ROBOT = "write_robot"


# =============================================================================
# Clock
# =============================================================================

class Clock:
    """
    Coordinator clock.

    Record timestamps are wall-clock milliseconds; scheduler deadlines use the
    monotonic clock in seconds.
    """

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def monotonic(self) -> float:
        return time.monotonic()


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class PendingCommand:
    """An in-flight SET_LEDS or WRITE_ROBOT command."""
    kind: CommandKind
    value: int
    frame_id: int
    attempt: int = 1
    sent_at: int = 0          # ms, assigned at send time
    deadline: float = 0.0     # monotonic seconds
    timer: Any = None         # TimerHandle of the per-attempt timeout
    delivered: bool = False   # radio reported successful delivery


@dataclass(frozen=True)
class TamSnapshot:
    """Immutable copy of a TAM record for observers outside the scheduler thread."""
    id: str
    address64: int
    first_seen: int
    last_seen: int
    led_color: int
    led_color_last_updated: int
    robot_present: bool
    robot_present_last_updated: int
    robot_data: int
    robot_data_last_updated: int
    voltage: float
    set_leds_pending: bool
    write_robot_pending: bool
    controller: Optional[str]
    decode_errors: int
    mismatch_count: int
    failed_commands: int

    @property
    def address_hex(self) -> str:
        return format_address(self.address64)


@dataclass(eq=False)
class TAM:
    """
    One Task Abstraction Module on the mesh.

    Records are created by the registry on first evidence of a device and are
    never removed during a run. All mutation happens on the scheduler thread.
    """
    address64: int
    id: str = ""

    # Timing (coordinator clock, milliseconds)
    first_seen: int = 0
    last_seen: int = 0

    # State as reported by the TAM. Timestamps of 0 mean "never updated".
    led_color: int = 0
    led_color_last_updated: int = 0
    robot_present: bool = False
    robot_present_last_updated: int = 0
    robot_data: int = 0
    robot_data_last_updated: int = 0
    voltage: float = 0.0

    # Last value handed to the protocol for the robot, and the last one acked
    robot_data_to_send: Optional[int] = None
    robot_data_acked: Optional[int] = None

    # In-flight commands, at most one per kind
    pending_set_leds: Optional[PendingCommand] = None
    pending_write_robot: Optional[PendingCommand] = None

    # User controller, set once on discovery
    controller: Any = None

    # Statistics
    status_count: int = 0
    decode_errors: int = 0
    mismatch_count: int = 0
    failed_commands: int = 0
    last_mismatch_warning: Optional[float] = None

    # Command sink (MeshProtocol), injected by the registry
    commands: Any = field(default=None, repr=False)

    def __post_init__(self):
        if not self.id:
            self.id = placeholder_id(self.address64)

    def __setattr__(self, name, value):
        if name == "address64" and "address64" in self.__dict__:
            raise AttributeError("address64 is immutable")
        if name == "controller" and self.__dict__.get("controller") is not None:
            raise AttributeError(f"{self.id} already has a controller")
        super().__setattr__(name, value)

    # -------------------------------------------------------------------------
    # Identity and liveness
    # -------------------------------------------------------------------------

    @property
    def address_hex(self) -> str:
        return format_address(self.address64)

    def set_id(self, tam_id: Optional[str]):
        """Set the resolved id, or fall back to the address placeholder when None."""
        self.id = tam_id if tam_id else placeholder_id(self.address64)

    def touch(self, now: int):
        self.last_seen = max(self.last_seen, now)

    # -------------------------------------------------------------------------
    # Reported state (update only on change, or from the 0 sentinel)
    # -------------------------------------------------------------------------

    def update_led_color(self, color: int, now: int) -> bool:
        color &= 0xFFFFFF
        if color != self.led_color or self.led_color_last_updated == 0:
            self.led_color = color
            self.led_color_last_updated = now
            return True
        return False

    def update_robot_present(self, present: bool, now: int) -> bool:
        if present != self.robot_present or self.robot_present_last_updated == 0:
            self.robot_present = present
            self.robot_present_last_updated = now
            return True
        return False

    def update_robot_data(self, data: int, now: int) -> bool:
        data &= 0xFF
        if data != self.robot_data or self.robot_data_last_updated == 0:
            self.robot_data = data
            self.robot_data_last_updated = now
            return True
        return False

    def set_voltage(self, lsb: int, msb: int):
        """Set the voltage from the little-endian millivolt field of a status packet."""
        self.voltage = ((lsb & 0xFF) | ((msb & 0xFF) << 8)) / 1000.0

    # -------------------------------------------------------------------------
    # Pending commands
    # -------------------------------------------------------------------------

    def pending(self, kind: CommandKind) -> Optional[PendingCommand]:
        if kind is CommandKind.SET_LEDS:
            return self.pending_set_leds
        return self.pending_write_robot

    def set_pending(self, kind: CommandKind, command: Optional[PendingCommand]):
        if kind is CommandKind.SET_LEDS:
            self.pending_set_leds = command
        else:
            self.pending_write_robot = command

    # -------------------------------------------------------------------------
    # Controller-facing commands
    # -------------------------------------------------------------------------

    def set_led_color(self, color: int):
        """
        Ask the TAM to show a color (0x00RRGGBB).

        Nothing is sent when the TAM already confirmed this color and no
        other color is in flight.
        """
        color &= 0xFFFFFF
        if (
            self.pending_set_leds is None
            and self.led_color_last_updated != 0
            and self.led_color == color
        ):
            return
        self._require_commands().send_set_leds(self, color)

    def set_robot_data_to_send(self, data: int):
        """
        Ask the TAM to forward one byte to the robot over IR.

        Nothing is sent when the TAM already acknowledged this byte and no
        other byte is in flight.
        """
        data &= 0xFF
        if self.pending_write_robot is None and self.robot_data_acked == data:
            return
        if data != self.robot_data_acked:
            self.robot_data_acked = None
        self.robot_data_to_send = data
        self._require_commands().send_write_robot(self, data)

    def _require_commands(self):
        if self.commands is None:
            raise RuntimeError(f"{self.id} is not attached to a mesh protocol")
        return self.commands

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def snapshot(self) -> TamSnapshot:
        return TamSnapshot(
            id=self.id,
            address64=self.address64,
            first_seen=self.first_seen,
            last_seen=self.last_seen,
            led_color=self.led_color,
            led_color_last_updated=self.led_color_last_updated,
            robot_present=self.robot_present,
            robot_present_last_updated=self.robot_present_last_updated,
            robot_data=self.robot_data,
            robot_data_last_updated=self.robot_data_last_updated,
            voltage=self.voltage,
            set_leds_pending=self.pending_set_leds is not None,
            write_robot_pending=self.pending_write_robot is not None,
            controller=type(self.controller).__name__ if self.controller else None,
            decode_errors=self.decode_errors,
            mismatch_count=self.mismatch_count,
            failed_commands=self.failed_commands,
        )

    def status_string(self) -> str:
        return (
            f"voltage={self.voltage:.3f}V, led_color={self.led_color:06X}, "
            f"robot_present={self.robot_present}, robot_data={self.robot_data}"
        )


@dataclass
class ApiConfig:
    """Status API server configuration."""
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class CoordinatorConfig:
    """Configuration for the coordinator."""
    # Serial settings
    serial_port: str = DEFAULT_SERIAL_PORT
    baudrate: int = DEFAULT_BAUDRATE

    # Timing settings
    step_interval_ms: int = DEFAULT_STEP_INTERVAL_MS
    discovery_interval_s: float = DEFAULT_DISCOVERY_INTERVAL_S
    liveness_interval_s: float = DEFAULT_LIVENESS_INTERVAL_S
    stale_after_s: float = DEFAULT_STALE_AFTER_S

    # Command settings
    retry_limit: int = DEFAULT_RETRY_LIMIT
    retry_timeout_ms: int = DEFAULT_RETRY_TIMEOUT_MS

    # Experiment settings
    experiment_class: str = DEFAULT_EXPERIMENT
    experiment_seed: Optional[int] = None
    experiment_duration_s: Optional[float] = None

    # API settings
    api: ApiConfig = field(default_factory=ApiConfig)

    # Logging
    log_level: str = "INFO"
    log_file: str = "coordinator.log"

    @classmethod
    def from_yaml(cls, path: str) -> "CoordinatorConfig":
        """Load configuration from YAML file."""
        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")

        serial = _section(data, "serial", path)
        timing = _section(data, "timing", path)
        commands = _section(data, "commands", path)
        experiment = _section(data, "experiment", path)
        api_data = _section(data, "api", path)
        logging_data = _section(data, "logging", path)

        config = cls(
            serial_port=serial.get("port", DEFAULT_SERIAL_PORT),
            baudrate=serial.get("baudrate", DEFAULT_BAUDRATE),
            step_interval_ms=timing.get("step_interval_ms", DEFAULT_STEP_INTERVAL_MS),
            discovery_interval_s=timing.get("discovery_interval_s", DEFAULT_DISCOVERY_INTERVAL_S),
            liveness_interval_s=timing.get("liveness_interval_s", DEFAULT_LIVENESS_INTERVAL_S),
            stale_after_s=timing.get("stale_after_s", DEFAULT_STALE_AFTER_S),
            retry_limit=commands.get("retry_limit", DEFAULT_RETRY_LIMIT),
            retry_timeout_ms=commands.get("retry_timeout_ms", DEFAULT_RETRY_TIMEOUT_MS),
            experiment_class=experiment.get("class", DEFAULT_EXPERIMENT),
            experiment_seed=experiment.get("seed"),
            experiment_duration_s=experiment.get("duration_s"),
            api=ApiConfig(
                enabled=api_data.get("enabled", False),
                host=api_data.get("host", "0.0.0.0"),
                port=api_data.get("port", 8080),
            ),
            log_level=logging_data.get("level", "INFO"),
            log_file=logging_data.get("file", "coordinator.log"),
        )
        config.validate()
        return config

    def validate(self):
        """Raise ConfigError if any setting is out of range."""
        if not self.serial_port:
            raise ConfigError("serial port must not be empty")
        if not isinstance(self.baudrate, int) or self.baudrate <= 0:
            raise ConfigError(f"invalid baud rate: {self.baudrate!r}")
        for name in ("step_interval_ms", "discovery_interval_s", "liveness_interval_s",
                     "stale_after_s", "retry_timeout_ms"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigError(f"{name} must be positive, got {value!r}")
        if not isinstance(self.retry_limit, int) or self.retry_limit < 1:
            raise ConfigError(f"retry_limit must be >= 1, got {self.retry_limit!r}")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigError(f"unknown log level: {self.log_level!r}")
        if not isinstance(self.log_file, str):
            raise ConfigError(f"log file must be a path, got {self.log_file!r}")
        if not isinstance(self.experiment_class, str):
            raise ConfigError(f"experiment class must be a string, got {self.experiment_class!r}")
        module, sep, attr = self.experiment_class.partition(":")
        if not module or not sep or not attr:
            raise ConfigError(
                f"experiment must look like 'package.module:Class', got {self.experiment_class!r}"
            )

    def to_dict(self) -> Dict:
        """Convert config to dictionary."""
        return {
            "serial": {
                "port": self.serial_port,
                "baudrate": self.baudrate,
            },
            "timing": {
                "step_interval_ms": self.step_interval_ms,
                "discovery_interval_s": self.discovery_interval_s,
                "liveness_interval_s": self.liveness_interval_s,
                "stale_after_s": self.stale_after_s,
            },
            "commands": {
                "retry_limit": self.retry_limit,
                "retry_timeout_ms": self.retry_timeout_ms,
            },
            "experiment": {
                "class": self.experiment_class,
                "seed": self.experiment_seed,
                "duration_s": self.experiment_duration_s,
            },
            "api": {
                "enabled": self.api.enabled,
                "host": self.api.host,
                "port": self.api.port,
            },
            "logging": {
                "level": self.log_level,
                "file": self.log_file,
            },
        }


# =============================================================================
# Helper Functions
# =============================================================================

def _section(data: Dict, name: str, path: str) -> Dict:
    """A top-level config section; empty when missing or left blank."""
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{path}: section '{name}' must be a mapping")
    return section


def format_address(address64: int) -> str:
    """Format a 64-bit address as 16 upper-case hex digits."""
    return f"{address64 & 0xFFFFFFFFFFFFFFFF:016X}"


def placeholder_id(address64: int) -> str:
    """Id used until node discovery resolves the TAM's real id."""
    return format_address(address64)[-PLACEHOLDER_ID_LENGTH:]
