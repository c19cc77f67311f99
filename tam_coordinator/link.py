#!/usr/bin/env python3
"""
XBee Link for the TAM Coordinator

This module owns the serial port of the local XBee radio (API mode 2,
escaped) and handles:
- Opening and closing the serial connection
- Encoding outbound frames and writing them to the radio
- The RX thread that reads, decodes and dispatches inbound frames

API frame marshalling (checksums, field layout) is delegated to the
digi-xbee packet classes; the link only delimits frames on the wire.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import serial
from digi.xbee.exception import XBeeException
from digi.xbee.models.address import XBee16BitAddress, XBee64BitAddress
from digi.xbee.models.mode import OperatingMode
from digi.xbee.packets.common import (
    ATCommPacket,
    ATCommResponsePacket,
    ExplicitAddressingPacket,
    ExplicitRXIndicatorPacket,
    ModemStatusPacket,
    RemoteATCommandPacket,
    TransmitStatusPacket,
)
from digi.xbee.packets.factory import build_frame

from .exceptions import FrameDecode, LinkIo
from .frames import (
    AtCommand,
    AtResponse,
    ExplicitRx,
    ExplicitTx,
    FrameKind,
    ModemStatus,
    NodeDiscoverReply,
    RemoteAtCommand,
    TxStatus,
)
from .models import MAX_EVENT_HANDLERS, format_address
from .protocol import (
    CLUSTER_ID,
    DEST_ENDPOINT,
    PROFILE_ID,
    SOURCE_ENDPOINT,
    parse_node_discovery,
)


# =============================================================================
# Constants
# =============================================================================

# API frame bytes
START_DELIMITER = 0x7E
ESCAPE = 0x7D
ESCAPE_XOR = 0x20

# Transient serial errors tolerated before the link is declared dead
SERIAL_RETRY_LIMIT = 3

# Read timeout of the serial port (seconds); bounds how fast close() is noticed
RX_POLL_TIMEOUT = 0.1

# Pause between RX retries after a serial error (seconds)
RX_RETRY_DELAY = 0.2

# Remote AT option: apply changes immediately
REMOTE_AT_APPLY_CHANGES = 0x02

# Result code of a successful AT command
AT_STATUS_OK = 0


# =============================================================================
# Address Helpers
# =============================================================================

def address_to_int(address: XBee64BitAddress) -> int:
    return int.from_bytes(bytes(address.address), "big")


def address_from_int(address64: int) -> XBee64BitAddress:
    return XBee64BitAddress(bytearray(address64.to_bytes(8, "big")))


# =============================================================================
# Link
# =============================================================================

class XBeeLink:
    """
    Serial link to the local XBee radio.

    Handlers subscribed per frame kind run on the RX thread and must not
    block; the coordinator only uses them to post frames to the scheduler.
    """

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        logger: logging.Logger = None,
        serial_factory: Callable = None,
    ):
        """
        Initialize the link.

        Args:
            port: Serial device of the local radio (e.g. /dev/ttyUSB0).
            baudrate: Serial speed.
            logger: Logger instance (creates one if not provided).
            serial_factory: Callable returning a pyserial-like port (for tests).
        """
        self.port = port
        self.baudrate = baudrate
        self.logger = logger or logging.getLogger("XBeeLink")
        self._serial_factory = serial_factory or serial.Serial
        self._serial = None
        self._write_lock = threading.Lock()
        self._running = threading.Event()
        self._rx_thread: Optional[threading.Thread] = None

        self._handlers: Dict[FrameKind, List[Callable]] = {kind: [] for kind in FrameKind}
        self._fatal_handlers: List[Callable[[LinkIo], None]] = []

        # Statistics
        self.frames_sent = 0
        self.frames_received = 0
        self.frames_dropped = 0

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._serial is not None

    def open(self, start_rx: bool = True):
        """
        Open the serial port (8N1, no flow control) and start the RX thread.

        Raises:
            LinkIo: the port cannot be opened.
        """
        if self._serial is not None:
            return

        self.logger.info(f"Opening {self.port} at {self.baudrate} baud...")
        try:
            self._serial = self._serial_factory(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=RX_POLL_TIMEOUT,
                xonxoff=False,
                rtscts=False,
            )
        except (serial.SerialException, OSError, ValueError) as e:
            raise LinkIo(f"Cannot open {self.port}: {e}") from e

        self._running.set()
        if start_rx:
            self._rx_thread = threading.Thread(target=self._rx_loop, name="xbee-rx", daemon=True)
            self._rx_thread.start()
        self.logger.info(f"Link open on {self.port}")

    def close(self):
        """Stop the RX thread and release the port. Safe to call repeatedly."""
        self._running.clear()

        if self._rx_thread and self._rx_thread is not threading.current_thread():
            self._rx_thread.join(timeout=2.0)
        self._rx_thread = None

        port, self._serial = self._serial, None
        if port is not None:
            try:
                port.close()
            except (serial.SerialException, OSError) as e:
                self.logger.warning(f"Error closing {self.port}: {e}")
            self.logger.info(f"Link on {self.port} closed")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, kind: FrameKind, handler: Callable) -> bool:
        """Register a handler for one inbound frame kind."""
        handlers = self._handlers[kind]
        if len(handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning(f"Max {kind.value} handlers reached")
            return False
        handlers.append(handler)
        return True

    def on_fatal(self, handler: Callable[[LinkIo], None]) -> bool:
        """Register a handler called once when the RX side fails for good."""
        if len(self._fatal_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max fatal handlers reached")
            return False
        self._fatal_handlers.append(handler)
        return True

    # -------------------------------------------------------------------------
    # Transmission
    # -------------------------------------------------------------------------

    def send(self, frame):
        """
        Encode a frame and write it to the radio.

        Returns once the bytes are written; delivery is reported later by a
        TX_STATUS frame carrying the same frame id.

        Raises:
            LinkIo: the port is closed or keeps failing.
        """
        packet = self._to_packet(frame)
        data = bytes(packet.output(escaped=True))
        self._write(data)
        self.logger.debug(f"TX {type(frame).__name__} frame_id={frame.frame_id} len={len(data)}")

    def _to_packet(self, frame):
        """Build the digi-xbee packet for an outbound frame."""
        if isinstance(frame, ExplicitTx):
            return ExplicitAddressingPacket(
                frame.frame_id,
                address_from_int(frame.address64),
                XBee16BitAddress.UNKNOWN_ADDRESS,
                SOURCE_ENDPOINT,
                DEST_ENDPOINT,
                CLUSTER_ID,
                PROFILE_ID,
                0,
                0,
                rf_data=bytearray(frame.payload),
            )
        if isinstance(frame, AtCommand):
            return ATCommPacket(
                frame.frame_id,
                frame.command,
                parameter=bytearray(frame.parameter) if frame.parameter else None,
            )
        if isinstance(frame, RemoteAtCommand):
            return RemoteATCommandPacket(
                frame.frame_id,
                address_from_int(frame.address64),
                XBee16BitAddress.UNKNOWN_ADDRESS,
                REMOTE_AT_APPLY_CHANGES,
                frame.command,
                parameter=bytearray(frame.parameter) if frame.parameter else None,
            )
        raise TypeError(f"Cannot send {type(frame).__name__}")

    def _write(self, data: bytes):
        port = self._serial
        if port is None:
            raise LinkIo(f"Cannot send: {self.port} is not open")

        with self._write_lock:
            for attempt in range(1, SERIAL_RETRY_LIMIT + 1):
                try:
                    port.write(data)
                    self.frames_sent += 1
                    return
                except (serial.SerialException, OSError) as e:
                    self.logger.warning(
                        f"Serial write failed ({attempt}/{SERIAL_RETRY_LIMIT}): {e}"
                    )
                    last_error = e

        raise LinkIo(f"Write to {self.port} failed: {last_error}")

    # -------------------------------------------------------------------------
    # Reception
    # -------------------------------------------------------------------------

    def _rx_loop(self):
        """RX thread: read frames until closed or the port fails for good."""
        failures = 0

        while self._running.is_set():
            try:
                raw = self.read_frame()
            except (serial.SerialException, OSError, TypeError) as e:
                if not self._running.is_set():
                    break
                failures += 1
                self.logger.warning(f"Serial read failed ({failures}/{SERIAL_RETRY_LIMIT}): {e}")
                if failures >= SERIAL_RETRY_LIMIT:
                    self._fail(LinkIo(f"Read from {self.port} failed: {e}"))
                    break
                time.sleep(RX_RETRY_DELAY)
                continue

            failures = 0
            if raw is not None:
                self.handle_raw_frame(raw)

        self.logger.debug("RX thread exiting")

    def _fail(self, error: LinkIo):
        self.logger.error(str(error))
        self._running.clear()
        for handler in self._fatal_handlers:
            try:
                handler(error)
            except Exception as e:
                self.logger.error(f"Fatal handler error: {e}")

    def read_frame(self) -> Optional[bytes]:
        """
        Read one API frame from the port and return it unescaped.

        Returns None on a read timeout, on bytes outside a frame and on a
        frame cut short by a timeout.
        """
        port = self._serial
        if port is None:
            return None

        first = port.read(1)
        if not first or first[0] != START_DELIMITER:
            return None

        header = self._read_unescaped(port, 2)
        if header is None:
            return None
        length = (header[0] << 8) | header[1]

        body = self._read_unescaped(port, length + 1)
        if body is None:
            self.logger.debug(f"Partial frame dropped (expected {length + 1} bytes)")
            return None

        return bytes([START_DELIMITER]) + bytes(header) + bytes(body)

    @staticmethod
    def _read_unescaped(port, count: int) -> Optional[bytearray]:
        out = bytearray()
        while len(out) < count:
            byte = port.read(1)
            if not byte:
                return None
            if byte[0] == ESCAPE:
                byte = port.read(1)
                if not byte:
                    return None
                out.append(byte[0] ^ ESCAPE_XOR)
            else:
                out.append(byte[0])
        return out

    def handle_raw_frame(self, raw: bytes):
        """Decode one unescaped API frame and dispatch it to subscribers."""
        try:
            packet = build_frame(bytearray(raw), OperatingMode.API_MODE)
        except (XBeeException, ValueError, IndexError) as e:
            self.frames_dropped += 1
            self.logger.warning(f"Dropping undecodable frame {raw.hex()}: {e}")
            return

        self.frames_received += 1
        kind, frame = self._from_packet(packet)
        if kind is None:
            self.frames_dropped += 1
            self.logger.warning(f"Dropping unknown frame kind {type(packet).__name__}")
            return

        self.dispatch(kind, frame)

    def dispatch(self, kind: FrameKind, frame):
        """Deliver a decoded frame to the handlers of its kind."""
        for handler in self._handlers[kind]:
            try:
                handler(frame)
            except Exception as e:
                self.logger.error(f"{kind.value} handler error: {e}")

    def _from_packet(self, packet) -> Tuple[Optional[FrameKind], object]:
        """Translate a digi-xbee packet into a link frame."""
        if isinstance(packet, ExplicitRXIndicatorPacket):
            return FrameKind.EXPLICIT_RX, ExplicitRx(
                address64=address_to_int(packet.x64bit_source_addr),
                payload=bytes(packet.rf_data or b""),
                source_endpoint=packet.source_endpoint,
                dest_endpoint=packet.dest_endpoint,
                cluster_id=packet.cluster_id,
                profile_id=packet.profile_id,
            )

        if isinstance(packet, TransmitStatusPacket):
            return FrameKind.TX_STATUS, TxStatus(
                frame_id=packet.frame_id,
                status=packet.transmit_status.code,
                retry_count=getattr(packet, "transmit_retry_count", 0),
            )

        if isinstance(packet, ATCommResponsePacket):
            return self._from_at_response(packet)

        if isinstance(packet, ModemStatusPacket):
            status = packet.modem_status
            return FrameKind.MODEM_STATUS, ModemStatus(
                status=getattr(status, "code", 0),
                description=getattr(status, "description", str(status)),
            )

        return None, packet

    def _from_at_response(self, packet) -> Tuple[FrameKind, object]:
        command = packet.command
        if isinstance(command, (bytes, bytearray)):
            command = bytes(command).decode("ascii", errors="replace")
        value = bytes(packet.command_value or b"")
        status = packet.status.code

        if command.upper() == "ND" and status == AT_STATUS_OK and value:
            try:
                address64, node_id = parse_node_discovery(value)
            except FrameDecode as e:
                self.logger.warning(f"Bad node discovery reply: {e}")
            else:
                self.logger.debug(f"ND reply: {format_address(address64)} -> {node_id!r}")
                return FrameKind.NODE_DISCOVER_REPLY, NodeDiscoverReply(address64, node_id)

        return FrameKind.AT_RESPONSE, AtResponse(
            frame_id=packet.frame_id,
            command=command,
            status=status,
            value=value,
        )
