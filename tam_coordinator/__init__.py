"""
TAM Coordinator Module

Coordinate Task Abstraction Modules (TAMs) over an XBee DigiMesh network
from a host computer. Each TAM is a stationary station with an RGB LED ring
and an IR link to the robots that visit it.

Architecture:
    Coordinator (this module)
        │
        ├── USB/Serial (XBee API mode 2)
        ▼
    Local XBee radio
        │
        ├── DigiMesh (explicit frames)
        ▼
    TAMs (custom firmware)
        - Send status reports (LED color, robot presence, robot data, voltage)
        - Send heartbeats
        - Receive SET_LEDS and WRITE_ROBOT commands, acknowledge each

Components:
    XBeeLink      - serial port, frame encoding, RX thread
    TamRegistry   - address -> TAM record, id resolution, liveness
    MeshProtocol  - status reconciliation, retried commands, discovery
    Scheduler     - controller steps, timers, inbox of received frames

Usage:
    from tam_coordinator import Coordinator, CoordinatorConfig
    from tam_coordinator.experiments import CameraCalibrationExperiment

    config = CoordinatorConfig.from_yaml("config.yaml")
    coordinator = Coordinator(config, experiment=CameraCalibrationExperiment())

    # Register handlers
    coordinator.on_new_tam(lambda tam: print(f"New TAM: {tam.id}"))
    coordinator.on_command_failed(lambda tam, error: print(error))

    # Run until the experiment finishes (returns the exit code)
    coordinator.run()
"""

from .coordinator import Coordinator
from .exceptions import (
    CommandFailed,
    ConfigError,
    ControllerBug,
    CoordinatorError,
    FrameDecode,
    LinkIo,
    ProtocolMismatch,
)
from .experiment import AbstractController, AbstractExperiment
from .fsm import Transition, TransitionController, TransitionType
from .models import TAM, CommandKind, CoordinatorConfig, CoordinatorState, TamSnapshot
from .protocol import PayloadType, StatusReport

__version__ = "1.0.0"
__all__ = [
    # Coordinator
    "Coordinator",
    "CoordinatorConfig",
    "CoordinatorState",
    # Records
    "TAM",
    "TamSnapshot",
    "CommandKind",
    # Controllers and experiments
    "AbstractController",
    "AbstractExperiment",
    "Transition",
    "TransitionController",
    "TransitionType",
    # Protocol
    "PayloadType",
    "StatusReport",
    # Errors
    "CoordinatorError",
    "ConfigError",
    "LinkIo",
    "FrameDecode",
    "ProtocolMismatch",
    "CommandFailed",
    "ControllerBug",
]
