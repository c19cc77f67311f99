#!/usr/bin/env python3
"""
TAM Coordinator

This module is the composition root of the coordinator. It connects to the
local XBee radio over a serial port and drives the experiment running on
the TAMs of the mesh.

Architecture:
    Coordinator (this Python app)
        │
        ├── Serial connection (XBee API mode 2)
        ▼
    Local XBee radio
        │
        ├── DigiMesh (explicit frames, cluster 0x0011)
        ▼
    TAMs (LED ring + IR link to robots)
        - Send status reports and heartbeats
        - Receive SET_LEDS and WRITE_ROBOT commands

Threads:
- RX thread (XBeeLink) decodes frames and posts them to the scheduler inbox
- Scheduler thread owns every TAM record: inbox, timers, controller steps
- Optional API thread serves read-only snapshots
"""

import logging
import sys
import threading
import time
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import ConfigError, ControllerBug, LinkIo
from .experiment import AbstractExperiment, load_experiment
from .frames import FrameIdCounter, FrameKind
from .link import XBeeLink
from .mesh import MeshProtocol
from .models import (
    MAX_EVENT_HANDLERS,
    TAM,
    Clock,
    CoordinatorConfig,
    CoordinatorState,
    TamSnapshot,
)
from .registry import TamRegistry
from .scheduler import Scheduler, TimerHandle


class Coordinator:
    """
    Coordinator of the TAMs on a DigiMesh network.

    Owns the link, registry, protocol runtime and scheduler and wires them
    together. No component reaches the coordinator through global state.
    """

    def __init__(
        self,
        config: CoordinatorConfig,
        experiment: AbstractExperiment = None,
        link=None,
        clock: Clock = None,
        setup_logging: bool = True,
    ):
        """
        Initialize the coordinator.

        Args:
            config: Coordinator configuration object.
            experiment: Experiment to run (loaded from config if None).
            link: Link to the radio (an XBeeLink on config.serial_port if None).
            clock: Clock (wall and monotonic time).
            setup_logging: Configure the root logger from config.
        """
        self.config = config
        if setup_logging:
            self._setup_logging()

        self.logger = logging.getLogger("Coordinator")
        self.state = CoordinatorState.STOPPED
        self.clock = clock or Clock()
        self.experiment = experiment

        # Components
        self.link = link or XBeeLink(
            config.serial_port,
            config.baudrate,
            logging.getLogger("XBeeLink"),
        )
        self.scheduler = Scheduler(self.clock, logging.getLogger("Scheduler"))
        self.registry = TamRegistry(self.clock, logging.getLogger("TamRegistry"))
        self.mesh = MeshProtocol(
            self.link,
            self.registry,
            self.scheduler,
            clock=self.clock,
            frame_ids=FrameIdCounter(),
            retry_limit=config.retry_limit,
            retry_timeout_ms=config.retry_timeout_ms,
            logger=logging.getLogger("MeshProtocol"),
        )
        self.registry.commands = self.mesh

        # Read-only view for other threads
        self._view: Tuple[TamSnapshot, ...] = ()
        self._view_lock = threading.Lock()

        # Run state
        self.started_at: Optional[float] = None
        self.fatal_error: Optional[LinkIo] = None
        self.controller_errors = 0
        self.stale_count = 0
        self._duration_timer: Optional[TimerHandle] = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

        # Event handlers
        self._new_tam_handlers: List[Callable] = []
        self._command_failed_handlers: List[Callable] = []
        self._stale_handlers: List[Callable] = []
        self._state_handlers: List[Callable] = []

        self._wire()

    def _setup_logging(self):
        """Configure logging."""
        level = getattr(logging, self.config.log_level.upper())

        handlers = [logging.StreamHandler(sys.stdout)]
        if self.config.log_file:
            try:
                handlers.insert(0, logging.FileHandler(self.config.log_file))
            except OSError as e:
                raise ConfigError(f"Cannot open log file {self.config.log_file}: {e}") from e

        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            handlers=handlers,
        )

    def _wire(self):
        """Connect the components: RX frames go through the scheduler inbox."""
        post = self.scheduler.post
        self.link.subscribe(FrameKind.EXPLICIT_RX, partial(post, self.mesh.handle_explicit_rx))
        self.link.subscribe(FrameKind.TX_STATUS, partial(post, self.mesh.handle_tx_status))
        self.link.subscribe(
            FrameKind.NODE_DISCOVER_REPLY, partial(post, self.mesh.handle_node_discover_reply)
        )
        self.link.subscribe(FrameKind.AT_RESPONSE, partial(post, self.mesh.handle_at_response))
        self.link.subscribe(FrameKind.MODEM_STATUS, partial(post, self.mesh.handle_modem_status))
        self.link.on_fatal(self._on_link_fatal)

        self.registry.on_new_tam(self._on_new_tam)
        self.mesh.on_command_failed(self._on_command_failed)
        self.scheduler.set_error_handler(self._on_task_error)
        self.scheduler.after_cycle = self._after_cycle

    def _set_state(self, state: CoordinatorState):
        """Update coordinator state and notify handlers."""
        old_state = self.state
        if old_state == state:
            return
        self.state = state
        self.logger.info(f"State: {old_state.value} -> {state.value}")

        for handler in self._state_handlers:
            try:
                handler(old_state, state)
            except Exception as e:
                self.logger.error(f"State handler error: {e}")

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    def _on_new_tam(self, tam: TAM):
        """Ask the experiment for a controller for a newly discovered TAM."""
        if self.experiment is not None:
            self.experiment.attach_controller(tam)

            controller = tam.controller
            if controller is not None:
                controller.bind_timer(partial(self._schedule_controller_task, tam))
                self.logger.info(f"Controller {type(controller).__name__} attached to {tam.id}")

        for handler in self._new_tam_handlers:
            try:
                handler(tam)
            except Exception as e:
                self.logger.error(f"New TAM handler error: {e}")

    def _on_command_failed(self, tam: TAM, error):
        """Deliver CommandFailed to the TAM's controller and registered handlers."""
        controller = tam.controller
        if controller is not None:
            try:
                controller.on_command_failed(error)
            except LinkIo:
                raise
            except Exception as e:
                self._controller_bug(tam, e)

        for handler in self._command_failed_handlers:
            try:
                handler(tam, error)
            except Exception as e:
                self.logger.error(f"Command failed handler error: {e}")

    def _on_link_fatal(self, error: LinkIo):
        """Called on the RX thread when the serial port failed for good."""
        self.fatal_error = error
        self.scheduler.stop()

    def _on_task_error(self, error: Exception, what: str):
        if isinstance(error, LinkIo):
            self.logger.error(f"Link failure in {what}: {error}")
            self.fatal_error = error
            self.scheduler.stop()
            return
        self.logger.error(f"Error in {what}: {error}", exc_info=error)

    def _controller_bug(self, tam: TAM, cause: Exception):
        bug = ControllerBug(tam.id, type(tam.controller).__name__, cause)
        self.controller_errors += 1
        self.logger.error(str(bug), exc_info=cause)

    def _schedule_controller_task(self, tam: TAM, delay: float, task: Callable[[], None]) -> TimerHandle:
        """Timer service handed to controllers; failures are reported as controller bugs."""
        def run():
            try:
                task()
            except LinkIo:
                raise
            except Exception as e:
                self._controller_bug(tam, e)

        return self.scheduler.schedule(delay, run, name=f"controller task {tam.id}")

    def _after_cycle(self):
        self._publish_view()
        if self.experiment is not None and self.experiment.finished and not self.scheduler.stopped:
            self.logger.info("Experiment reported finished, stopping")
            self.scheduler.stop()

    def _on_duration_over(self):
        self.logger.warning("Experiment duration is over, terminating")
        self.experiment.set_finished()

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def step_tams(self):
        """Call step() on every controller, one at a time."""
        for tam in self.registry.snapshot():
            controller = tam.controller
            if controller is None:
                continue
            try:
                controller.step()
            except LinkIo:
                raise
            except Exception as e:
                self._controller_bug(tam, e)

    def discover(self) -> int:
        """Issue a node discovery on the local radio."""
        return self.mesh.issue_discovery()

    def audit_liveness(self) -> List[TAM]:
        """Log TAMs silent for longer than the staleness threshold."""
        now = self.clock.now_ms()
        stale = self.registry.stale(int(self.config.stale_after_s * 1000), now)
        self.stale_count = len(stale)

        for tam in stale:
            self.logger.warning(
                f"TAM {tam.id} is stale, last seen {(now - tam.last_seen) / 1000:.1f}s ago"
            )
            for handler in self._stale_handlers:
                try:
                    handler(tam)
                except Exception as e:
                    self.logger.error(f"Stale handler error: {e}")

        return stale

    # -------------------------------------------------------------------------
    # Public API - Event Handlers
    # -------------------------------------------------------------------------

    def on_new_tam(self, handler: Callable[[TAM], None]) -> bool:
        """Register a handler for newly discovered TAMs."""
        if len(self._new_tam_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max new TAM handlers reached")
            return False
        self._new_tam_handlers.append(handler)
        return True

    def on_command_failed(self, handler: Callable[[TAM, Any], None]) -> bool:
        """Register a handler for CommandFailed events."""
        if len(self._command_failed_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max command failed handlers reached")
            return False
        self._command_failed_handlers.append(handler)
        return True

    def on_stale(self, handler: Callable[[TAM], None]) -> bool:
        """Register a handler called for each stale TAM at every liveness audit."""
        if len(self._stale_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max stale handlers reached")
            return False
        self._stale_handlers.append(handler)
        return True

    def on_state_change(self, handler: Callable[[CoordinatorState, CoordinatorState], None]) -> bool:
        """Register a state change handler."""
        if len(self._state_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max state handlers reached")
            return False
        self._state_handlers.append(handler)
        return True

    # -------------------------------------------------------------------------
    # Public API - TAM View
    # -------------------------------------------------------------------------

    def _publish_view(self):
        view = tuple(self.registry.views())
        with self._view_lock:
            self._view = view

    def get_tams(self) -> List[TamSnapshot]:
        """Snapshots of all known TAMs as of the last scheduler cycle."""
        with self._view_lock:
            return list(self._view)

    def get_tam(self, tam_id: str) -> Optional[TamSnapshot]:
        """Snapshot of one TAM by id or 16-digit hex address."""
        key = tam_id.upper()
        for snapshot in self.get_tams():
            if snapshot.id == tam_id or snapshot.address_hex == key:
                return snapshot
        return None

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the coordinator and all TAMs."""
        tams = self.get_tams()
        mesh = self.mesh.get_stats()

        return {
            "state": self.state.value,
            "serial_port": self.config.serial_port,
            "uptime_s": time.time() - self.started_at if self.started_at else 0.0,
            "total_tams": len(tams),
            "stale_tams": self.stale_count,
            "controllers": sum(1 for t in tams if t.controller),
            "frames_sent": self.link.frames_sent,
            "frames_received": self.link.frames_received,
            "frames_dropped": self.link.frames_dropped,
            "decode_errors": mesh["decode_errors"],
            "retries": mesh["retries"],
            "failed_commands": mesh["failed_commands"],
            "controller_errors": self.controller_errors,
            "mesh": mesh,
            "scheduler": self.scheduler.get_stats(),
        }

    # -------------------------------------------------------------------------
    # Public API - Run Loop
    # -------------------------------------------------------------------------

    @property
    def exit_code(self) -> int:
        return 1 if self.fatal_error is not None else 0

    def start(self):
        """
        Open the link and schedule the periodic ticks.

        Raises:
            ConfigError: the configured experiment cannot be loaded.
            LinkIo: the serial port cannot be opened.
        """
        self._set_state(CoordinatorState.STARTING)
        self.logger.info("=" * 60)
        self.logger.info("TAM COORDINATOR STARTING")
        self.logger.info(f"Serial: {self.config.serial_port} @ {self.config.baudrate}")
        self.logger.info("=" * 60)

        if self.experiment is None:
            self.experiment = load_experiment(
                self.config.experiment_class, self.config.experiment_duration_s
            )
        seed = self.config.experiment_seed
        if seed is None:
            seed = self.clock.now_ms()
        self.experiment.init(seed)
        self.logger.info(f"Experiment {type(self.experiment).__name__} (seed {seed})")

        self.link.open()

        self.scheduler.add_periodic(
            "step_tams", self.config.step_interval_ms / 1000.0, self.step_tams
        )
        self.scheduler.add_periodic(
            "discovery", self.config.discovery_interval_s, self.discover, run_immediately=True
        )
        self.scheduler.add_periodic(
            "liveness", self.config.liveness_interval_s, self.audit_liveness
        )

        duration = self.config.experiment_duration_s or self.experiment.duration_s
        if duration:
            self._duration_timer = self.scheduler.schedule(
                duration, self._on_duration_over, name="experiment duration"
            )
            self.logger.info(f"Experiment will finish after {duration}s")

        self.started_at = time.time()
        self._set_state(CoordinatorState.RUNNING)

    def stop(self):
        """Ask the scheduler to stop after the cycle in progress. Safe from any thread."""
        self.scheduler.stop()

    def run(self) -> int:
        """
        Run the coordinator until the experiment finishes or the link fails.

        Returns:
            Process exit code (0 clean shutdown, 1 link failure).
        """
        try:
            self.start()
        except LinkIo as e:
            self.logger.error(f"Cannot start: {e}")
            self.fatal_error = e
            self.shutdown()
            return self.exit_code

        try:
            self.scheduler.run()
        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            self.shutdown()

        return self.exit_code

    def run_with_api(self, api_host: str = None, api_port: int = None) -> int:
        """
        Run the coordinator with the read-only status API.

        The scheduler runs on its own thread while uvicorn serves on this one.

        Args:
            api_host: Host to bind API server to (uses config if None).
            api_port: Port for API server (uses config if None).
        """
        import uvicorn

        from .api import create_api

        host = api_host or self.config.api.host
        port = api_port or self.config.api.port

        try:
            self.start()
        except LinkIo as e:
            self.logger.error(f"Cannot start: {e}")
            self.fatal_error = e
            self.shutdown()
            return self.exit_code

        app = create_api(self)
        server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="info"))

        def scheduler_loop():
            try:
                self.scheduler.run()
            finally:
                server.should_exit = True

        scheduler_thread = threading.Thread(target=scheduler_loop, name="scheduler", daemon=True)
        scheduler_thread.start()

        self.logger.info(f"API server starting on http://{host}:{port}")
        self.logger.info(f"API docs available at http://{host}:{port}/api/docs")

        try:
            server.run()
        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            self.scheduler.stop()
            scheduler_thread.join(timeout=5.0)
            self.shutdown()

        return self.exit_code

    def shutdown(self):
        """Stop the scheduler, cancel timers and close the link. Idempotent."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self.logger.info("Shutting down coordinator...")
        self._set_state(CoordinatorState.STOPPING)
        self.scheduler.stop()
        self.scheduler.cancel_all()
        self.link.close()
        self._publish_view()

        if self.fatal_error is not None:
            self.logger.error(f"Coordinator stopped on link failure: {self.fatal_error}")
            self._set_state(CoordinatorState.ERROR)
        else:
            self._set_state(CoordinatorState.STOPPED)
            self.logger.info("Coordinator stopped")
