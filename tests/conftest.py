#!/usr/bin/env python3
"""
Shared fixtures for the TAM coordinator tests.

The scheduler is driven deterministically: tests advance a fake clock and
call run_pending() instead of starting threads.
"""

from collections import defaultdict

import pytest

from tam_coordinator.coordinator import Coordinator
from tam_coordinator.exceptions import LinkIo
from tam_coordinator.experiment import AbstractController, AbstractExperiment
from tam_coordinator.frames import ExplicitRx, ExplicitTx, FrameIdCounter, FrameKind
from tam_coordinator.mesh import MeshProtocol
from tam_coordinator.models import CoordinatorConfig
from tam_coordinator.protocol import StatusReport, create_status_message
from tam_coordinator.registry import TamRegistry
from tam_coordinator.scheduler import Scheduler


# =============================================================================
# Constants
# =============================================================================

TAM_ADDRESS = 0x0013A20040ABCDEF
OTHER_ADDRESS = 0x0013A20040123456


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Clock whose wall and monotonic time only move when told to."""

    def __init__(self, start_ms: int = 1000):
        self.ms = start_ms

    def now_ms(self) -> int:
        return self.ms

    def monotonic(self) -> float:
        return self.ms / 1000.0

    def advance(self, seconds: float):
        self.ms += int(round(seconds * 1000))


class TickingClock(FakeClock):
    """FakeClock whose wall time also moves 1 ms on every read."""

    def now_ms(self) -> int:
        self.ms += 1
        return self.ms


class FakeLink:
    """Link that records sent frames and lets tests inject received ones."""

    def __init__(self):
        self.sent = []
        self.handlers = defaultdict(list)
        self.fatal_handlers = []
        self.opened = False
        self.closed = False
        self.open_error = None
        self.fail_sends = False

        self.frames_sent = 0
        self.frames_received = 0
        self.frames_dropped = 0

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def close(self):
        self.closed = True

    def subscribe(self, kind, handler):
        self.handlers[kind].append(handler)
        return True

    def on_fatal(self, handler):
        self.fatal_handlers.append(handler)
        return True

    def send(self, frame):
        if self.fail_sends:
            raise LinkIo("write failed")
        self.sent.append(frame)
        self.frames_sent += 1

    def deliver(self, kind: FrameKind, frame):
        self.frames_received += 1
        for handler in self.handlers[kind]:
            handler(frame)

    def fail(self, error: LinkIo):
        for handler in self.fatal_handlers:
            handler(error)

    def explicit_frames(self):
        return [frame for frame in self.sent if isinstance(frame, ExplicitTx)]


class RecordingController(AbstractController):
    """Counts steps and failures; optionally runs a callback on each step."""

    def __init__(self, on_step=None):
        super().__init__()
        self.on_step = on_step
        self.steps = 0
        self.failures = []

    def step(self):
        self.steps += 1
        if self.on_step is not None:
            self.on_step(self)

    def on_command_failed(self, error):
        self.failures.append(error)


class RecordingExperiment(AbstractExperiment):
    """Attaches a RecordingController to every TAM and remembers them."""

    def __init__(self, on_step=None, duration_s=None):
        super().__init__(duration_s=duration_s)
        self.on_step = on_step
        self.attached = []

    def attach_controller(self, tam):
        controller = RecordingController(self.on_step)
        controller.init(self.next_seed(), tam)
        tam.controller = controller
        self.attached.append(tam)


# =============================================================================
# Helpers
# =============================================================================

def status_frame(address=TAM_ADDRESS, led_color=0, robot_present=False, robot_data=0, voltage_mv=3700):
    payload = create_status_message(
        StatusReport(
            led_color=led_color,
            robot_present=robot_present,
            robot_data=robot_data,
            voltage_mv=voltage_mv,
        )
    )
    return ExplicitRx(address64=address, payload=payload)


def payload_frame(payload: bytes, address=TAM_ADDRESS):
    return ExplicitRx(address64=address, payload=payload)


class MeshEnv:
    """Registry, scheduler and protocol runtime wired without a coordinator."""

    def __init__(self, clock, link):
        self.clock = clock
        self.link = link
        self.scheduler = Scheduler(clock)
        self.registry = TamRegistry(clock)
        self.mesh = MeshProtocol(link, self.registry, self.scheduler, clock, FrameIdCounter())
        self.registry.commands = self.mesh
        self.failures = []
        self.mesh.on_command_failed(lambda tam, error: self.failures.append(error))

    def advance(self, seconds: float):
        self.clock.advance(seconds)
        self.scheduler.run_pending()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def link():
    return FakeLink()


@pytest.fixture
def env(clock, link):
    return MeshEnv(clock, link)


@pytest.fixture
def make_coordinator(clock, link):
    """Factory for coordinators on the fake clock and link."""

    def factory(experiment=None, **overrides):
        overrides.setdefault("log_file", "")
        overrides.setdefault("experiment_seed", 42)
        config = CoordinatorConfig(**overrides)
        return Coordinator(
            config,
            experiment=experiment if experiment is not None else RecordingExperiment(),
            link=link,
            clock=clock,
            setup_logging=False,
        )

    return factory
