#!/usr/bin/env python3
"""
TAM Registry

Maps 64-bit XBee addresses to TAM records, resolves symbolic ids from node
discovery and keeps last-seen timestamps. Records are never removed during
a run, so a list copy of the records is a stable snapshot.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from .models import (
    MAX_EVENT_HANDLERS,
    MAX_TAMS,
    TAM,
    Clock,
    TamSnapshot,
    format_address,
)


class TamRegistry:
    """Registry of every TAM seen during the run. Scheduler thread only."""

    def __init__(self, clock: Clock = None, logger: logging.Logger = None, commands: Any = None):
        """
        Args:
            clock: Clock for first/last seen timestamps.
            logger: Logger instance (creates one if not provided).
            commands: Command sink injected into every new record.
        """
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger("TamRegistry")
        self.commands = commands

        self._tams: Dict[int, TAM] = {}
        self._new_tam_handlers: List[Callable[[TAM], None]] = []
        self.rejected = 0

    def on_new_tam(self, handler: Callable[[TAM], None]) -> bool:
        """Register a handler called once for every newly created record."""
        if len(self._new_tam_handlers) >= MAX_EVENT_HANDLERS:
            self.logger.warning("Max new TAM handlers reached")
            return False
        self._new_tam_handlers.append(handler)
        return True

    def observe(self, address64: int, source: str = "status", now: int = None) -> Optional[TAM]:
        """
        Return the record for an address, creating it on first evidence.

        Args:
            address64: Mesh address of the device.
            source: What revealed the device (for logging only).
            now: Arrival time of the evidence; read from the clock when omitted.

        Returns:
            The TAM record, or None when the registry is full.
        """
        tam = self._tams.get(address64)
        if tam is not None:
            return tam

        if len(self._tams) >= MAX_TAMS:
            self.rejected += 1
            self.logger.warning(
                f"Max TAMs ({MAX_TAMS}) reached, cannot track {format_address(address64)}"
            )
            return None

        if now is None:
            now = self.clock.now_ms()
        tam = TAM(address64=address64, first_seen=now, last_seen=now, commands=self.commands)
        self._tams[address64] = tam
        self.logger.info(
            f"New TAM discovered via {source}: {tam.id} ({tam.address_hex}, total: {len(self._tams)})"
        )

        for handler in self._new_tam_handlers:
            try:
                handler(tam)
            except Exception as e:
                self.logger.error(f"New TAM handler error for {tam.id}: {e}", exc_info=True)

        return tam

    def resolve_id(self, address64: int, symbolic_id: Optional[str]) -> Optional[TAM]:
        """Apply a node discovery result to a known record."""
        tam = self._tams.get(address64)
        if tam is None:
            self.logger.debug(f"Id {symbolic_id!r} for unknown address {format_address(address64)}")
            return None

        old_id = tam.id
        tam.set_id(symbolic_id)
        if tam.id != old_id:
            self.logger.info(f"TAM {tam.address_hex} resolved: {old_id} -> {tam.id}")
        return tam

    def touch(self, address64: int, now: int = None) -> Optional[TAM]:
        """Mark a record as seen at `now` (default: the current clock reading)."""
        tam = self._tams.get(address64)
        if tam is not None:
            tam.touch(self.clock.now_ms() if now is None else now)
        return tam

    def snapshot(self) -> List[TAM]:
        """Stable list of the records for iteration during a tick."""
        return list(self._tams.values())

    def views(self) -> List[TamSnapshot]:
        """Immutable copies of every record, for observers on other threads."""
        return [tam.snapshot() for tam in self._tams.values()]

    def stale(self, stale_after_ms: int, now: int = None) -> List[TAM]:
        """Records not seen for strictly more than stale_after_ms."""
        if now is None:
            now = self.clock.now_ms()
        return [tam for tam in self._tams.values() if now - tam.last_seen > stale_after_ms]

    def get(self, address64: int) -> Optional[TAM]:
        return self._tams.get(address64)

    def get_by_id(self, tam_id: str) -> Optional[TAM]:
        for tam in self._tams.values():
            if tam.id == tam_id:
                return tam
        return None

    def __len__(self) -> int:
        return len(self._tams)

    def __contains__(self, address64: int) -> bool:
        return address64 in self._tams

    def __iter__(self) -> Iterator[TAM]:
        return iter(self.snapshot())
