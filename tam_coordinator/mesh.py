#!/usr/bin/env python3
"""
Mesh Protocol Runtime

Translates between what controllers care about (set a LED color, hand a
byte to the robot, observe a TAM) and explicit frames on the mesh.

Each (TAM, command kind) runs the same state machine:

    IDLE --send--> IN_FLIGHT(frame_id, attempt, deadline)
    IN_FLIGHT --ack--> IDLE
    IN_FLIGHT --delivery failure / timeout-->
        attempt < N  -> IN_FLIGHT(new frame_id, attempt + 1)
        attempt = N  -> IDLE, CommandFailed surfaced
    IN_FLIGHT --send other value--> IN_FLIGHT(new frame_id, attempt = 1)

All methods run on the scheduler thread.
"""

import logging
from functools import partial
from typing import Any, Callable, Dict, List, Tuple

from .exceptions import CommandFailed, FrameDecode, LinkIo, ProtocolMismatch
from .frames import (
    AtCommand,
    AtResponse,
    ExplicitRx,
    ExplicitTx,
    FrameIdCounter,
    ModemStatus,
    NodeDiscoverReply,
    TxStatus,
)
from .models import (
    DEFAULT_RETRY_LIMIT,
    DEFAULT_RETRY_TIMEOUT_MS,
    MAX_EVENT_HANDLERS,
    MIN_TAM_VOLTAGE,
    MISMATCH_WARNING_INTERVAL_S,
    TAM,
    Clock,
    CommandKind,
    PendingCommand,
    format_address,
)
from .protocol import (
    CLUSTER_ID,
    COLOR_MASK,
    PROFILE_ID,
    PayloadType,
    StatusReport,
    create_set_leds_message,
    create_write_robot_message,
    parse_message,
)
from .registry import TamRegistry
from .scheduler import Scheduler


NODE_DISCOVER_COMMAND = "ND"


class MeshProtocol:
    """Inbound reconciliation and outbound command state machines."""

    def __init__(
        self,
        link,
        registry: TamRegistry,
        scheduler: Scheduler,
        clock: Clock = None,
        frame_ids: FrameIdCounter = None,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        retry_timeout_ms: int = DEFAULT_RETRY_TIMEOUT_MS,
        logger: logging.Logger = None,
    ):
        """
        Initialize the protocol runtime.

        Args:
            link: Anything with send(frame); normally an XBeeLink.
            registry: Registry of TAM records.
            scheduler: Timer service for per-attempt timeouts.
            clock: Clock for record and send timestamps.
            frame_ids: Shared frame id counter.
            retry_limit: Maximum sends per command.
            retry_timeout_ms: Deadline of each attempt.
            logger: Logger instance (creates one if not provided).
        """
        self.link = link
        self.registry = registry
        self.scheduler = scheduler
        self.clock = clock or Clock()
        self.frame_ids = frame_ids or FrameIdCounter()
        self.retry_limit = retry_limit
        self.retry_timeout = retry_timeout_ms / 1000.0
        self.logger = logger or logging.getLogger("MeshProtocol")

        # Frame id of the current attempt -> (TAM, command)
        self._in_flight: Dict[int, Tuple[TAM, PendingCommand]] = {}

        # Event handlers
        self._status_handlers: List[Callable[[TAM, StatusReport], None]] = []
        self._failure_handlers: List[Callable[[TAM, CommandFailed], None]] = []

        # Statistics
        self.frames_received = 0
        self.status_reports = 0
        self.heartbeats = 0
        self.acks = 0
        self.unmatched_acks = 0
        self.decode_errors = 0
        self.mismatches = 0
        self.frames_sent = 0
        self.retries = 0
        self.absorbed = 0
        self.superseded = 0
        self.delivery_failures = 0
        self.failed_commands = 0
        self.discoveries = 0

    # -------------------------------------------------------------------------
    # Event Handlers
    # -------------------------------------------------------------------------

    def on_status(self, handler: Callable[[TAM, StatusReport], None]) -> bool:
        """Register a handler for reconciled status reports."""
        if len(self._status_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max status handlers reached")
            return False
        self._status_handlers.append(handler)
        return True

    def on_command_failed(self, handler: Callable[[TAM, CommandFailed], None]) -> bool:
        """Register a handler for commands that exhausted their retries."""
        if len(self._failure_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max command failure handlers reached")
            return False
        self._failure_handlers.append(handler)
        return True

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def handle_explicit_rx(self, frame: ExplicitRx):
        """Reconcile one explicit frame from a TAM."""
        if frame.cluster_id != CLUSTER_ID or frame.profile_id != PROFILE_ID:
            self.logger.debug(
                f"Ignoring frame from {format_address(frame.address64)} on "
                f"cluster {frame.cluster_id:#06x} profile {frame.profile_id:#06x}"
            )
            return

        self.frames_received += 1
        now = self.clock.now_ms()
        tam = self.registry.observe(frame.address64, "explicit frame", now)
        if tam is None:
            return
        self.registry.touch(frame.address64, now)

        try:
            msg, status = parse_message(frame.payload)
        except ProtocolMismatch as e:
            self._handle_mismatch(tam, e)
            return
        except FrameDecode as e:
            tam.decode_errors += 1
            self.decode_errors += 1
            self.logger.warning(f"Dropping malformed payload from {tam.id}: {e}")
            return

        self.logger.debug(f"RX {msg.msg_type.name} from {tam.id}, body_len={len(msg.body)}")

        if msg.msg_type == PayloadType.STATUS:
            self._handle_status(tam, status, now)

        elif msg.msg_type == PayloadType.SET_LEDS_ACK:
            self._handle_ack(tam, CommandKind.SET_LEDS)

        elif msg.msg_type == PayloadType.WRITE_ROBOT_ACK:
            self._handle_ack(tam, CommandKind.WRITE_ROBOT)

        elif msg.msg_type == PayloadType.HEARTBEAT:
            self.heartbeats += 1

        else:
            tam.decode_errors += 1
            self.decode_errors += 1
            self.logger.warning(f"Unexpected {msg.msg_type.name} from {tam.id}, dropped")

    def _handle_mismatch(self, tam: TAM, error: ProtocolMismatch):
        tam.decode_errors += 1
        tam.mismatch_count += 1
        self.decode_errors += 1
        self.mismatches += 1

        now = self.clock.monotonic()
        last = tam.last_mismatch_warning
        if last is None or now - last >= MISMATCH_WARNING_INTERVAL_S:
            tam.last_mismatch_warning = now
            self.logger.warning(
                f"Protocol mismatch from {tam.id}: {error} ({tam.mismatch_count} so far)"
            )
        else:
            self.logger.debug(f"Protocol mismatch from {tam.id}: {error}")

    def _handle_status(self, tam: TAM, status: StatusReport, now: int):
        first = tam.status_count == 0
        previous_voltage = tam.voltage
        tam.status_count += 1
        self.status_reports += 1

        tam.update_led_color(status.led_color, now)
        tam.update_robot_present(status.robot_present, now)
        tam.update_robot_data(status.robot_data, now)
        tam.set_voltage(status.voltage_mv & 0xFF, (status.voltage_mv >> 8) & 0xFF)

        if tam.voltage < MIN_TAM_VOLTAGE and (first or previous_voltage >= MIN_TAM_VOLTAGE):
            self.logger.warning(f"Low voltage on {tam.id}: {tam.voltage:.3f}V")

        self.logger.debug(f"[STATUS] {tam.id}: {tam.status_string()}")

        for handler in self._status_handlers:
            try:
                handler(tam, status)
            except Exception as e:
                self.logger.error(f"Status handler error: {e}")

    def _handle_ack(self, tam: TAM, kind: CommandKind):
        command = tam.pending(kind)
        if command is None:
            self.unmatched_acks += 1
            self.logger.debug(f"{kind.name} ack from {tam.id} with nothing in flight")
            return

        self.acks += 1
        self._discard(tam, command)
        if kind is CommandKind.WRITE_ROBOT:
            tam.robot_data_acked = command.value
        self.logger.debug(
            f"{kind.name} {command.value:#x} to {tam.id} acknowledged (attempt {command.attempt})"
        )

    def handle_tx_status(self, frame: TxStatus):
        """Correlate a delivery status with the attempt that carried its frame id."""
        entry = self._in_flight.get(frame.frame_id)
        if entry is None:
            self.logger.debug(f"TX status {frame.status:#04x} for untracked frame {frame.frame_id}")
            return

        tam, command = entry
        if frame.ok:
            command.delivered = True
            self.logger.debug(f"{command.kind.name} frame {frame.frame_id} delivered to {tam.id}")
            return

        self.delivery_failures += 1
        self.scheduler.cancel(command.timer)
        command.timer = None
        self._attempt_failed(tam, command, f"delivery failed (status {frame.status:#04x})")

    def handle_node_discover_reply(self, reply: NodeDiscoverReply):
        """Create or refresh the record of a discovered node and resolve its id."""
        now = self.clock.now_ms()
        tam = self.registry.observe(reply.address64, "node discovery", now)
        if tam is None:
            return
        self.registry.touch(reply.address64, now)
        self.registry.resolve_id(reply.address64, reply.node_id)

    def handle_at_response(self, frame: AtResponse):
        if frame.command.upper() == NODE_DISCOVER_COMMAND and not frame.value:
            self.logger.info(f"Node discovery complete ({len(self.registry)} TAMs known)")
        elif frame.status != 0:
            self.logger.warning(f"AT {frame.command} failed with status {frame.status}")
        else:
            self.logger.debug(f"AT {frame.command} response: {frame.value.hex()}")

    def handle_modem_status(self, frame: ModemStatus):
        self.logger.info(f"Modem status {frame.status:#04x}: {frame.description}")

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def send_set_leds(self, tam: TAM, color: int) -> PendingCommand:
        """Ask a TAM to show a 24-bit color."""
        return self._submit(tam, CommandKind.SET_LEDS, color & COLOR_MASK)

    def send_write_robot(self, tam: TAM, data: int) -> PendingCommand:
        """Ask a TAM to forward one byte to its robot."""
        return self._submit(tam, CommandKind.WRITE_ROBOT, data & 0xFF)

    def issue_discovery(self) -> int:
        """Send a node discover command to the local radio. Returns its frame id."""
        frame_id = self._next_frame_id()
        self.link.send(AtCommand(frame_id, NODE_DISCOVER_COMMAND))
        self.discoveries += 1
        self.logger.info(f"Node discovery issued (frame {frame_id})")
        return frame_id

    def _submit(self, tam: TAM, kind: CommandKind, value: int) -> PendingCommand:
        current = tam.pending(kind)
        if current is not None:
            if current.value == value:
                self.absorbed += 1
                self.logger.debug(f"{kind.name} {value:#x} to {tam.id} already in flight")
                return current
            self.superseded += 1
            self.logger.debug(
                f"{kind.name} {current.value:#x} to {tam.id} superseded by {value:#x}"
            )
            self._discard(tam, current)

        command = PendingCommand(kind=kind, value=value, frame_id=0)
        tam.set_pending(kind, command)
        self._transmit(tam, command)
        return command

    def _transmit(self, tam: TAM, command: PendingCommand):
        """Send one attempt of a command with a fresh frame id and deadline."""
        self._forget_frame(command)

        command.frame_id = self._next_frame_id()
        command.sent_at = self.clock.now_ms()
        command.deadline = self.clock.monotonic() + self.retry_timeout
        command.delivered = False
        self._in_flight[command.frame_id] = (tam, command)
        command.timer = self.scheduler.schedule(
            self.retry_timeout,
            partial(self._on_timeout, tam, command),
            name=f"{command.kind.value} timeout {tam.id}",
        )

        if command.kind is CommandKind.SET_LEDS:
            payload = create_set_leds_message(command.value)
        else:
            payload = create_write_robot_message(command.value)

        self.link.send(ExplicitTx(command.frame_id, tam.address64, payload))
        self.frames_sent += 1
        self.logger.debug(
            f"TX {command.kind.name} {command.value:#x} to {tam.id} "
            f"frame={command.frame_id} attempt={command.attempt}/{self.retry_limit}"
        )

    def _on_timeout(self, tam: TAM, command: PendingCommand):
        if tam.pending(command.kind) is not command:
            return
        command.timer = None
        self._attempt_failed(tam, command, f"no ack within {int(self.retry_timeout * 1000)} ms")

    def _attempt_failed(self, tam: TAM, command: PendingCommand, reason: str):
        if command.attempt >= self.retry_limit:
            self._fail(tam, command, reason)
            return

        command.attempt += 1
        self.retries += 1
        self.logger.warning(
            f"{command.kind.name} to {tam.id}: {reason}, "
            f"retrying ({command.attempt}/{self.retry_limit})"
        )
        self._transmit(tam, command)

    def _fail(self, tam: TAM, command: PendingCommand, reason: str):
        self._discard(tam, command)
        tam.failed_commands += 1
        self.failed_commands += 1

        error = CommandFailed(tam.id, tam.address64, command.kind, command.attempt, command.value)
        self.logger.warning(f"{error} (last attempt: {reason})")

        for handler in self._failure_handlers:
            try:
                handler(tam, error)
            except LinkIo:
                raise
            except Exception as e:
                self.logger.error(f"Command failure handler error: {e}")

    def _discard(self, tam: TAM, command: PendingCommand):
        """Cancel a command's timer and forget it."""
        self.scheduler.cancel(command.timer)
        command.timer = None
        self._forget_frame(command)
        if tam.pending(command.kind) is command:
            tam.set_pending(command.kind, None)

    def _next_frame_id(self) -> int:
        """Next frame id not carried by a command in flight."""
        for _ in range(255):
            frame_id = self.frame_ids.next()
            if frame_id not in self._in_flight:
                return frame_id
        self.logger.warning(f"All frame ids in flight, reusing {frame_id}")
        return frame_id

    def _forget_frame(self, command: PendingCommand):
        entry = self._in_flight.get(command.frame_id)
        if entry is not None and entry[1] is command:
            del self._in_flight[command.frame_id]

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "frames_received": self.frames_received,
            "frames_sent": self.frames_sent,
            "status_reports": self.status_reports,
            "heartbeats": self.heartbeats,
            "acks": self.acks,
            "unmatched_acks": self.unmatched_acks,
            "decode_errors": self.decode_errors,
            "protocol_mismatches": self.mismatches,
            "retries": self.retries,
            "absorbed": self.absorbed,
            "superseded": self.superseded,
            "delivery_failures": self.delivery_failures,
            "failed_commands": self.failed_commands,
            "commands_in_flight": self.in_flight,
            "discoveries": self.discoveries,
        }
