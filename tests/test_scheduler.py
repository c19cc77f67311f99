#!/usr/bin/env python3
"""
Tests for the scheduler: timers, periodic ticks and the inbox.
"""

import threading

import pytest

from tam_coordinator.models import Clock
from tam_coordinator.scheduler import Scheduler


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock)


# =============================================================================
# One-Shot Timers
# =============================================================================

def test_timer_fires_once_after_delay(scheduler, clock):
    fired = []
    handle = scheduler.schedule(0.5, lambda: fired.append(1), name="sample")

    clock.advance(0.4)
    scheduler.run_pending()
    assert fired == []
    assert handle.active

    clock.advance(0.2)
    scheduler.run_pending()
    scheduler.run_pending()
    assert fired == [1]
    assert not handle.active


def test_cancel_is_idempotent(scheduler, clock):
    fired = []
    handle = scheduler.schedule(0.1, lambda: fired.append(1))

    scheduler.cancel(handle)
    scheduler.cancel(handle)
    scheduler.cancel(None)
    clock.advance(1.0)
    scheduler.run_pending()

    assert fired == []
    assert scheduler.pending_timers == 0


def test_cancel_after_fire_does_nothing(scheduler, clock):
    fired = []
    handle = scheduler.schedule(0.1, lambda: fired.append(1))
    clock.advance(0.2)
    scheduler.run_pending()

    scheduler.cancel(handle)
    assert fired == [1]


def test_timers_fire_in_deadline_order(scheduler, clock):
    fired = []
    scheduler.schedule(0.3, lambda: fired.append("late"))
    scheduler.schedule(0.1, lambda: fired.append("early"))

    clock.advance(0.5)
    scheduler.run_pending()
    assert fired == ["early", "late"]


def test_next_deadline_skips_cancelled(scheduler, clock):
    first = scheduler.schedule(0.1, lambda: None)
    scheduler.schedule(0.4, lambda: None)
    scheduler.cancel(first)

    assert scheduler.next_deadline() == pytest.approx(clock.monotonic() + 0.4)


# =============================================================================
# Periodic Ticks
# =============================================================================

def test_tick_keeps_fixed_deadlines(scheduler, clock):
    tick = scheduler.add_periodic("sample", 1.0, lambda: None)

    clock.advance(1.0)
    scheduler.run_pending()
    assert tick.runs == 1
    assert tick.next_at == pytest.approx(3.0)

    # Late by 0.4s: the next deadline stays on the grid
    clock.advance(1.4)
    scheduler.run_pending()
    assert tick.runs == 2
    assert tick.next_at == pytest.approx(4.0)


def test_overrun_tick_runs_once(scheduler, clock):
    tick = scheduler.add_periodic("sample", 1.0, lambda: None)

    clock.advance(1.0)
    scheduler.run_pending()
    clock.advance(5.5)
    scheduler.run_pending()

    assert tick.runs == 2
    assert tick.coalesced == 4
    assert tick.next_at == pytest.approx(8.0)

    clock.advance(0.5)
    scheduler.run_pending()
    assert tick.runs == 3


def test_run_immediately(scheduler):
    calls = []
    scheduler.add_periodic("now", 10.0, lambda: calls.append(1), run_immediately=True)
    scheduler.run_pending()
    assert calls == [1]


def test_period_must_be_positive(scheduler):
    with pytest.raises(ValueError):
        scheduler.add_periodic("bad", 0, lambda: None)


def test_remove_periodic(scheduler, clock):
    calls = []
    scheduler.add_periodic("sample", 1.0, lambda: calls.append(1))
    scheduler.remove_periodic("sample")

    clock.advance(2.0)
    scheduler.run_pending()
    assert calls == []
    assert scheduler.get_tick("sample") is None


# =============================================================================
# Cycle Order and Inbox
# =============================================================================

def test_cycle_order(scheduler, clock):
    """Inbox before timers before ticks, then the cycle hook."""
    order = []
    scheduler.add_periodic("tick", 1.0, lambda: order.append("tick"))
    scheduler.schedule(0.5, lambda: order.append("timer"))
    scheduler.post(order.append, "inbox")
    scheduler.after_cycle = lambda: order.append("hook")

    clock.advance(1.0)
    scheduler.run_pending()

    assert order == ["inbox", "timer", "tick", "hook"]


def test_inbox_keeps_arrival_order(scheduler):
    seen = []
    for i in range(5):
        scheduler.post(seen.append, i)

    assert scheduler.inbox_size == 5
    scheduler.run_pending()
    assert seen == [0, 1, 2, 3, 4]
    assert scheduler.inbox_processed == 5


def test_post_from_another_thread(scheduler):
    seen = []
    thread = threading.Thread(target=scheduler.post, args=(seen.append, "rx"))
    thread.start()
    thread.join()

    scheduler.run_pending()
    assert seen == ["rx"]


# =============================================================================
# Errors
# =============================================================================

def test_task_error_is_logged_and_contained(scheduler, caplog):
    calls = []

    def broken():
        raise RuntimeError("boom")

    scheduler.post(broken)
    scheduler.post(calls.append, "next")
    scheduler.run_pending()

    assert calls == ["next"]
    assert scheduler.task_errors == 1
    assert "boom" in caplog.text


def test_error_handler_receives_errors(scheduler):
    errors = []
    scheduler.set_error_handler(lambda error, what: errors.append((type(error), what)))

    def broken():
        raise KeyError("x")

    scheduler.schedule(0, broken, name="broken timer")
    scheduler.run_pending()

    assert errors == [(KeyError, "broken timer")]


# =============================================================================
# Run Loop
# =============================================================================

def test_run_until_stopped():
    scheduler = Scheduler(Clock())
    handle = scheduler.schedule(60.0, lambda: None)
    started = threading.Event()
    scheduler.post(started.set)

    thread = threading.Thread(target=scheduler.run)
    thread.start()
    assert started.wait(timeout=5.0)

    scheduler.stop()
    thread.join(timeout=5.0)

    assert not thread.is_alive()
    assert scheduler.stopped
    assert not handle.active


def test_stop_before_run_is_kept(scheduler):
    calls = []
    scheduler.post(calls.append, 1)
    scheduler.stop()
    scheduler.run()
    assert calls == []


def test_stats(scheduler, clock):
    scheduler.add_periodic("sample", 1.0, lambda: None)
    clock.advance(1.0)
    scheduler.run_pending()

    stats = scheduler.get_stats()
    assert stats["ticks"]["sample"] == {"runs": 1, "coalesced": 0}
    assert stats["task_errors"] == 0
