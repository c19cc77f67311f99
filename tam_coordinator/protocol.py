#!/usr/bin/env python3
"""
Coordinator-TAM Communication Protocol

This module defines the application payloads carried inside XBee explicit
frames between the coordinator and the TAM firmware.

Protocol Overview:
- All traffic is unicast explicit frames on the DigiMesh default endpoints
  (source/destination endpoint 0xE8, cluster 0x0011, profile 0xC105)
- TAMs periodically report their status and send heartbeats
- The coordinator sets LED colors and forwards bytes to robots via IR
- Both coordinator commands are acknowledged by the TAM

Message Format:
    [TYPE (1 byte)] [BODY (fixed length per type)]

Message Types:
    0x01: STATUS          - TAM -> coord, led_b led_g led_r flags robot_data volt_lsb volt_msb
    0x10: SET_LEDS        - coord -> TAM, led_b led_g led_r
    0x11: SET_LEDS_ACK    - TAM -> coord, empty
    0x20: WRITE_ROBOT     - coord -> TAM, byte
    0x21: WRITE_ROBOT_ACK - TAM -> coord, empty
    0x70: HEARTBEAT       - TAM -> coord, empty

Status Flags:
    Bit 0: ROBOT_PRESENT
    Bit 1-7: Reserved

Node Discovery (DigiMesh ND reply value):
    MY(2) SH(4) SL(4) NI(null-terminated) PARENT(2) DEVICE_TYPE(1) ...
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

from .exceptions import FrameDecode, ProtocolMismatch


# =============================================================================
# Constants
# =============================================================================

# Explicit addressing, fixed by the TAM firmware
SOURCE_ENDPOINT = 0xE8
DEST_ENDPOINT = 0xE8
CLUSTER_ID = 0x0011
PROFILE_ID = 0xC105

# Status flag bits
ROBOT_PRESENT_FLAG = 0x01

# Colors are 24-bit, the top byte of a 32-bit value is reserved
COLOR_MASK = 0xFFFFFF

# Largest voltage the 16-bit millivolt field can carry
MAX_VOLTAGE_MV = 0xFFFF

# Offsets into the ND reply value
ND_ADDRESS_OFFSET = 2
ND_ID_OFFSET = 10


# =============================================================================
# Enums
# =============================================================================

class PayloadType(IntEnum):
    """Payload type discriminators (first byte of every payload)."""
    # TAM -> Coordinator
    STATUS = 0x01
    SET_LEDS_ACK = 0x11
    WRITE_ROBOT_ACK = 0x21
    HEARTBEAT = 0x70

    # Coordinator -> TAM
    SET_LEDS = 0x10
    WRITE_ROBOT = 0x20


# Body length of every payload type, without the type byte
BODY_LENGTHS = {
    PayloadType.STATUS: 7,
    PayloadType.SET_LEDS: 3,
    PayloadType.SET_LEDS_ACK: 0,
    PayloadType.WRITE_ROBOT: 1,
    PayloadType.WRITE_ROBOT_ACK: 0,
    PayloadType.HEARTBEAT: 0,
}


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class ProtocolMessage:
    """Represents a protocol message."""
    msg_type: PayloadType
    body: bytes = b""

    def encode(self) -> bytes:
        """Encode message to binary format."""
        expected = BODY_LENGTHS[self.msg_type]
        if len(self.body) != expected:
            raise ValueError(
                f"{self.msg_type.name} body must be {expected} bytes, got {len(self.body)}"
            )
        return struct.pack("<B", self.msg_type) + bytes(self.body)

    @classmethod
    def decode(cls, data: bytes) -> "ProtocolMessage":
        """
        Decode binary data to a message.

        Raises:
            FrameDecode: empty payload or unknown type byte.
            ProtocolMismatch: known type with a body of the wrong length.
        """
        if not data:
            raise FrameDecode("empty payload")

        try:
            msg_type = PayloadType(data[0])
        except ValueError:
            raise FrameDecode(f"unknown payload type {data[0]:#04x}") from None

        body = bytes(data[1:])
        expected = BODY_LENGTHS[msg_type]
        if len(body) != expected:
            raise ProtocolMismatch(msg_type, expected, len(body))

        return cls(msg_type=msg_type, body=body)


@dataclass
class StatusReport:
    """
    Status report from a TAM.

    Binary Format (7 bytes):
        Byte 0:    LED blue
        Byte 1:    LED green
        Byte 2:    LED red
        Byte 3:    Flags (bit 0 = robot present)
        Byte 4:    Robot data (last byte received from the robot via IR)
        Bytes 5-6: Voltage (uint16, millivolts, little-endian)
    """
    led_color: int = 0
    robot_present: bool = False
    robot_data: int = 0
    voltage_mv: int = 0

    STRUCT_FORMAT = "<BBBBBH"
    STRUCT_SIZE = 7

    @property
    def voltage(self) -> float:
        """Voltage in volts."""
        return millivolts_to_volts(self.voltage_mv)

    def encode(self) -> bytes:
        """Encode status report to binary."""
        blue, green, red = color_to_wire(self.led_color)
        return struct.pack(
            self.STRUCT_FORMAT,
            blue,
            green,
            red,
            ROBOT_PRESENT_FLAG if self.robot_present else 0,
            self.robot_data & 0xFF,
            self.voltage_mv & MAX_VOLTAGE_MV,
        )

    @classmethod
    def decode(cls, data: bytes) -> "StatusReport":
        """Decode binary to status report."""
        if len(data) != cls.STRUCT_SIZE:
            raise ProtocolMismatch(PayloadType.STATUS, cls.STRUCT_SIZE, len(data))

        blue, green, red, flags, robot_data, voltage_mv = struct.unpack(
            cls.STRUCT_FORMAT, bytes(data)
        )
        return cls(
            led_color=wire_to_color(blue, green, red),
            robot_present=bool(flags & ROBOT_PRESENT_FLAG),
            robot_data=robot_data,
            voltage_mv=voltage_mv,
        )


# =============================================================================
# Helper Functions
# =============================================================================

def color_to_wire(color: int) -> Tuple[int, int, int]:
    """Split a 0x00RRGGBB color into (blue, green, red) wire order."""
    color &= COLOR_MASK
    return color & 0xFF, (color >> 8) & 0xFF, (color >> 16) & 0xFF


def wire_to_color(blue: int, green: int, red: int) -> int:
    """Assemble a 0x00RRGGBB color from wire order."""
    return ((red & 0xFF) << 16) | ((green & 0xFF) << 8) | (blue & 0xFF)


def decode_voltage(lsb: int, msb: int) -> float:
    """Voltage in volts from the two bytes of the millivolt field."""
    return ((lsb & 0xFF) | ((msb & 0xFF) << 8)) / 1000.0


def volts_to_millivolts(volts: float) -> int:
    """Millivolt field value for a voltage, clamped to the 16-bit range."""
    return max(0, min(MAX_VOLTAGE_MV, int(round(volts * 1000))))


def millivolts_to_volts(millivolts: int) -> float:
    return (millivolts & MAX_VOLTAGE_MV) / 1000.0


def create_set_leds_message(color: int) -> bytes:
    """Create a SET_LEDS payload. The reserved top byte is never sent."""
    msg = ProtocolMessage(
        msg_type=PayloadType.SET_LEDS,
        body=bytes(color_to_wire(color)),
    )
    return msg.encode()


def create_write_robot_message(data: int) -> bytes:
    """Create a WRITE_ROBOT payload carrying one byte for the robot."""
    msg = ProtocolMessage(
        msg_type=PayloadType.WRITE_ROBOT,
        body=struct.pack("<B", data & 0xFF),
    )
    return msg.encode()


def create_status_message(status: StatusReport) -> bytes:
    """Create a STATUS payload (as sent by TAM firmware)."""
    msg = ProtocolMessage(
        msg_type=PayloadType.STATUS,
        body=status.encode(),
    )
    return msg.encode()


def create_ack_message(for_msg_type: PayloadType) -> bytes:
    """Create the TAM acknowledgment for a coordinator command."""
    if for_msg_type == PayloadType.SET_LEDS:
        return ProtocolMessage(msg_type=PayloadType.SET_LEDS_ACK).encode()
    if for_msg_type == PayloadType.WRITE_ROBOT:
        return ProtocolMessage(msg_type=PayloadType.WRITE_ROBOT_ACK).encode()
    raise ValueError(f"{for_msg_type!r} is not acknowledged")


def create_heartbeat_message() -> bytes:
    """Create a heartbeat message."""
    return ProtocolMessage(msg_type=PayloadType.HEARTBEAT).encode()


def parse_message(data: bytes) -> Tuple[ProtocolMessage, Optional[StatusReport]]:
    """
    Parse binary data and return the message and decoded status, if any.

    Raises:
        FrameDecode: malformed payload (ProtocolMismatch for wrong lengths).
    """
    msg = ProtocolMessage.decode(data)

    status = None
    if msg.msg_type == PayloadType.STATUS:
        status = StatusReport.decode(msg.body)

    return msg, status


def parse_node_discovery(value: bytes) -> Tuple[int, str]:
    """
    Parse the value of one DigiMesh ND reply.

    Returns:
        Tuple of (address64, node identifier).

    Raises:
        FrameDecode: value too short to carry an address.
    """
    if value is None or len(value) < ND_ID_OFFSET:
        raise FrameDecode(f"node discovery reply too short: {len(value or b'')} bytes")

    address64 = int.from_bytes(bytes(value[ND_ADDRESS_OFFSET:ND_ID_OFFSET]), "big")
    node_id = bytes(value[ND_ID_OFFSET:]).split(b"\x00", 1)[0]
    return address64, node_id.decode("ascii", errors="replace").strip()
