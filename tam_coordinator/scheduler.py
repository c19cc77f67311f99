#!/usr/bin/env python3
"""
Scheduler for the TAM Coordinator

Single thread that owns every TAM record. Each cycle it:
1. Drains the inbox (frames posted by the RX thread, in arrival order)
2. Fires due one-shot timers (command timeouts, controller delays)
3. Runs due periodic ticks (controller step, discovery, liveness audit)

Periodic ticks use fixed absolute deadlines. A tick that falls more than
one period behind runs once and skips the missed deadlines.
"""

import heapq
import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .models import Clock


# =============================================================================
# Constants
# =============================================================================

# Upper bound of one timed wait of the run loop (seconds)
MAX_IDLE_WAIT = 0.5


# =============================================================================
# Timer Handles
# =============================================================================

class TimerHandle:
    """
    Opaque cancellation handle returned by Scheduler.schedule().

    A handle becomes inert once its task has fired or been cancelled.
    """

    __slots__ = ("_active", "name")

    def __init__(self, name: str = ""):
        self._active = True
        self.name = name

    @property
    def active(self) -> bool:
        return self._active

    def _deactivate(self):
        self._active = False

    def __repr__(self):
        state = "active" if self._active else "inert"
        return f"<TimerHandle {self.name or 'task'} {state}>"


@dataclass
class PeriodicTick:
    """A named periodic callback with an absolute next deadline."""
    name: str
    period: float
    callback: Callable[[], Any]
    next_at: float
    runs: int = 0
    coalesced: int = 0


# =============================================================================
# Scheduler
# =============================================================================

class Scheduler:
    """Tick engine, one-shot timer service and inbox for the scheduler thread."""

    def __init__(self, clock: Clock = None, logger: logging.Logger = None):
        self.clock = clock or Clock()
        self.logger = logger or logging.getLogger("Scheduler")

        self._timers: List[list] = []
        self._sequence = itertools.count()
        self._ticks: Dict[str, PeriodicTick] = {}
        self._inbox: "queue.Queue" = queue.Queue()
        self._wakeup = threading.Event()
        self._stop = threading.Event()
        self._error_handler: Optional[Callable[[Exception, str], None]] = None

        # Called at the end of every cycle, on the scheduler thread
        self.after_cycle: Optional[Callable[[], Any]] = None

        # Statistics
        self.inbox_processed = 0
        self.timers_fired = 0
        self.task_errors = 0

    # -------------------------------------------------------------------------
    # Timer Service
    # -------------------------------------------------------------------------

    def schedule(self, delay: float, task: Callable[[], Any], name: str = "") -> TimerHandle:
        """
        Run task once on the scheduler thread after delay seconds.

        Returns:
            Handle accepted by cancel().
        """
        handle = TimerHandle(name)
        fire_at = self.clock.monotonic() + max(0.0, delay)
        heapq.heappush(self._timers, [fire_at, next(self._sequence), task, handle])
        return handle

    def cancel(self, handle: Optional[TimerHandle]):
        """Cancel a scheduled task. Cancelling twice, or after firing, does nothing."""
        if handle is not None:
            handle._deactivate()

    @property
    def pending_timers(self) -> int:
        return sum(1 for entry in self._timers if entry[3].active)

    def next_deadline(self) -> Optional[float]:
        """Earliest monotonic time at which something is due, if anything is."""
        while self._timers and not self._timers[0][3].active:
            heapq.heappop(self._timers)

        deadlines = [tick.next_at for tick in self._ticks.values()]
        if self._timers:
            deadlines.append(self._timers[0][0])
        return min(deadlines) if deadlines else None

    # -------------------------------------------------------------------------
    # Periodic Ticks
    # -------------------------------------------------------------------------

    def add_periodic(
        self,
        name: str,
        period: float,
        callback: Callable[[], Any],
        run_immediately: bool = False,
    ) -> PeriodicTick:
        """Register a periodic tick; the first run is one period from now unless run_immediately."""
        if period <= 0:
            raise ValueError(f"period of {name} must be positive, got {period}")
        now = self.clock.monotonic()
        tick = PeriodicTick(
            name=name,
            period=period,
            callback=callback,
            next_at=now if run_immediately else now + period,
        )
        self._ticks[name] = tick
        return tick

    def remove_periodic(self, name: str):
        self._ticks.pop(name, None)

    def get_tick(self, name: str) -> Optional[PeriodicTick]:
        return self._ticks.get(name)

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def post(self, fn: Callable, *args):
        """Queue fn(*args) for the scheduler thread. Safe from any thread."""
        self._inbox.put((fn, args))
        self._wakeup.set()

    @property
    def inbox_size(self) -> int:
        return self._inbox.qsize()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def run_pending(self):
        """Run one scheduler cycle: inbox, then due timers, then due ticks."""
        self._drain_inbox()
        self._fire_timers(self.clock.monotonic())
        self._run_ticks(self.clock.monotonic())
        if self.after_cycle is not None:
            self._invoke(self.after_cycle, (), "cycle hook")

    def _drain_inbox(self):
        while True:
            try:
                fn, args = self._inbox.get_nowait()
            except queue.Empty:
                return
            self.inbox_processed += 1
            self._invoke(fn, args, "inbox item")

    def _fire_timers(self, now: float):
        while self._timers and self._timers[0][0] <= now:
            _, _, task, handle = heapq.heappop(self._timers)
            if not handle.active:
                continue
            handle._deactivate()
            self.timers_fired += 1
            self._invoke(task, (), handle.name or "timer task")

    def _run_ticks(self, now: float):
        for tick in list(self._ticks.values()):
            if now < tick.next_at:
                continue

            tick.next_at += tick.period
            if now >= tick.next_at:
                missed = int((now - tick.next_at) // tick.period) + 1
                tick.next_at += missed * tick.period
                tick.coalesced += missed
                self.logger.debug(f"Tick {tick.name} overran, coalesced {missed} runs")

            tick.runs += 1
            self._invoke(tick.callback, (), f"tick {tick.name}")

    def set_error_handler(self, handler: Optional[Callable[[Exception, str], None]]):
        """Route exceptions escaping tasks to handler(error, what) instead of the log."""
        self._error_handler = handler

    def _invoke(self, fn: Callable, args: tuple, what: str):
        try:
            fn(*args)
        except Exception as e:
            self.task_errors += 1
            if self._error_handler is None:
                self.logger.error(f"Error in {what}: {e}", exc_info=True)
                return
            try:
                self._error_handler(e, what)
            except Exception as handler_error:
                self.logger.error(f"Error handler failed for {what}: {handler_error}")

    def run(self):
        """Run cycles until stop() is called, then cancel all pending timers."""
        self.logger.info("Scheduler started")

        try:
            while not self._stop.is_set():
                self.run_pending()
                if self._stop.is_set():
                    break

                deadline = self.next_deadline()
                timeout = MAX_IDLE_WAIT
                if deadline is not None:
                    timeout = min(MAX_IDLE_WAIT, max(0.0, deadline - self.clock.monotonic()))
                if self._inbox.empty():
                    self._wakeup.wait(timeout)
                self._wakeup.clear()
        finally:
            self.cancel_all()
            self.logger.info("Scheduler stopped")

    def stop(self):
        """Ask the run loop to exit after the cycle in progress. Idempotent."""
        self._stop.set()
        self._wakeup.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def cancel_all(self):
        """Cancel every pending timer."""
        for entry in self._timers:
            entry[3]._deactivate()
        self._timers.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "inbox_processed": self.inbox_processed,
            "inbox_size": self.inbox_size,
            "timers_fired": self.timers_fired,
            "pending_timers": self.pending_timers,
            "task_errors": self.task_errors,
            "ticks": {
                name: {"runs": tick.runs, "coalesced": tick.coalesced}
                for name, tick in self._ticks.items()
            },
        }
