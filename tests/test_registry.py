#!/usr/bin/env python3
"""
Tests for the TAM registry.
"""

import pytest

from tam_coordinator import registry as registry_module
from tam_coordinator.registry import TamRegistry

from conftest import OTHER_ADDRESS, TAM_ADDRESS


@pytest.fixture
def registry(clock):
    return TamRegistry(clock)


def test_observe_creates_record_once(registry, clock):
    created = []
    registry.on_new_tam(created.append)

    first = registry.observe(TAM_ADDRESS)
    clock.advance(1.0)
    second = registry.observe(TAM_ADDRESS)

    assert first is second
    assert created == [first]
    assert first.first_seen == first.last_seen == 1000
    assert first.id == "BCDEF"
    assert len(registry) == 1
    assert TAM_ADDRESS in registry


def test_new_records_get_the_command_sink(clock):
    sink = object()
    registry = TamRegistry(clock, commands=sink)
    assert registry.observe(TAM_ADDRESS).commands is sink


def test_handler_error_does_not_block_creation(registry):
    def broken(tam):
        raise RuntimeError("handler failed")

    registry.on_new_tam(broken)
    assert registry.observe(TAM_ADDRESS) is not None


def test_resolve_id(registry):
    registry.observe(TAM_ADDRESS)

    tam = registry.resolve_id(TAM_ADDRESS, "TAM07")
    assert tam.id == "TAM07"
    assert registry.get_by_id("TAM07") is tam

    assert registry.resolve_id(TAM_ADDRESS, "") is tam
    assert tam.id == "BCDEF"


def test_resolve_unknown_address(registry):
    assert registry.resolve_id(OTHER_ADDRESS, "TAM01") is None
    assert len(registry) == 0


def test_touch(registry, clock):
    tam = registry.observe(TAM_ADDRESS)
    clock.advance(2.5)
    registry.touch(TAM_ADDRESS)

    assert tam.last_seen == 3500
    assert tam.first_seen == 1000
    assert registry.touch(OTHER_ADDRESS) is None


def test_stale_is_strict(registry, clock):
    registry.observe(TAM_ADDRESS)

    assert registry.stale(30000, now=31000) == []
    assert [t.address64 for t in registry.stale(30000, now=31001)] == [TAM_ADDRESS]


def test_registry_is_bounded(registry, monkeypatch):
    monkeypatch.setattr(registry_module, "MAX_TAMS", 2)

    assert registry.observe(1) is not None
    assert registry.observe(2) is not None
    assert registry.observe(3) is None
    assert registry.rejected == 1
    assert len(registry) == 2


def test_views_and_iteration(registry):
    registry.observe(TAM_ADDRESS)
    registry.observe(OTHER_ADDRESS)

    assert {view.address64 for view in registry.views()} == {TAM_ADDRESS, OTHER_ADDRESS}
    assert {tam.address64 for tam in registry} == {TAM_ADDRESS, OTHER_ADDRESS}
    assert registry.get(OTHER_ADDRESS).id == "23456"
