#!/usr/bin/env python3
"""
Error taxonomy for the TAM coordinator.

Link errors travel up to the process and end the run. Everything else is
local to a single TAM: it is logged, counted on the TAM record and dropped.
"""

from typing import Optional


class CoordinatorError(Exception):
    """Base class for all coordinator errors."""


class ConfigError(CoordinatorError):
    """Invalid or unreadable configuration."""


class LinkIo(CoordinatorError):
    """Serial port open/read/write failure. Fatal for the run."""


class FrameDecode(CoordinatorError):
    """Malformed or unknown inbound payload."""


class ProtocolMismatch(FrameDecode):
    """Payload with a known type byte but an unexpected length."""

    def __init__(self, payload_type: int, expected: int, actual: int):
        super().__init__(
            f"payload type {payload_type:#04x}: expected {expected} bytes, got {actual}"
        )
        self.payload_type = payload_type
        self.expected = expected
        self.actual = actual


class CommandFailed(CoordinatorError):
    """
    A command exhausted its retry bound.

    Never raised. Instances are handed to the controller of the TAM and to the
    coordinator's command-failed handlers.
    """

    def __init__(self, tam_id: str, address64: int, kind, attempts: int, value: int):
        super().__init__(
            f"{kind.name} to {tam_id} failed after {attempts} attempts (value={value:#x})"
        )
        self.tam_id = tam_id
        self.address64 = address64
        self.kind = kind
        self.attempts = attempts
        self.value = value


class ControllerBug(CoordinatorError):
    """An exception escaped a controller's step() or one of its timer tasks."""

    def __init__(self, tam_id: str, controller_class: str, cause: Optional[BaseException] = None):
        super().__init__(f"controller {controller_class} of {tam_id} raised {cause!r}")
        self.tam_id = tam_id
        self.controller_class = controller_class
        self.cause = cause
