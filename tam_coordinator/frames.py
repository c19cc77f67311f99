#!/usr/bin/env python3
"""
Link-level frame variants.

The link turns XBee API packets into these plain values before handing them
to the scheduler inbox, and turns outbound values back into packets.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FrameKind(Enum):
    """Inbound frame kinds handlers can subscribe to."""
    EXPLICIT_RX = "explicit_rx"
    TX_STATUS = "tx_status"
    NODE_DISCOVER_REPLY = "node_discover_reply"
    AT_RESPONSE = "at_response"
    MODEM_STATUS = "modem_status"


# -----------------------------------------------------------------------------
# Outbound
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ExplicitTx:
    """Unicast explicit frame to a TAM."""
    frame_id: int
    address64: int
    payload: bytes


@dataclass(frozen=True)
class AtCommand:
    """AT command for the local radio (e.g. ND)."""
    frame_id: int
    command: str
    parameter: Optional[bytes] = None


@dataclass(frozen=True)
class RemoteAtCommand:
    """AT command for a remote radio."""
    frame_id: int
    address64: int
    command: str
    parameter: Optional[bytes] = None


# -----------------------------------------------------------------------------
# Inbound
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ExplicitRx:
    """Explicit frame received from a TAM."""
    address64: int
    payload: bytes
    source_endpoint: int = 0xE8
    dest_endpoint: int = 0xE8
    cluster_id: int = 0x0011
    profile_id: int = 0xC105


@dataclass(frozen=True)
class TxStatus:
    """Delivery status for an outbound frame."""
    frame_id: int
    status: int
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status == 0


@dataclass(frozen=True)
class NodeDiscoverReply:
    """One node discovery result."""
    address64: int
    node_id: str


@dataclass(frozen=True)
class AtResponse:
    """Any other local AT command response."""
    frame_id: int
    command: str
    status: int
    value: bytes = b""


@dataclass(frozen=True)
class ModemStatus:
    """Radio modem status notification."""
    status: int
    description: str = ""


class FrameIdCounter:
    """
    Process-wide 8-bit frame id source.

    Wraps modulo 256 and never yields 0, which is reserved for "no status wanted".
    """

    def __init__(self, start: int = 0):
        self._lock = threading.Lock()
        self._value = start % 256

    def next(self) -> int:
        with self._lock:
            self._value = self._value % 255 + 1
            return self._value
