#!/usr/bin/env python3
"""
Tests for TAM records and the coordinator configuration.
"""

import pytest

from tam_coordinator.exceptions import ConfigError
from tam_coordinator.models import (
    DEFAULT_EXPERIMENT,
    TAM,
    CommandKind,
    CoordinatorConfig,
    PendingCommand,
    format_address,
    placeholder_id,
)


ADDRESS = 0x0013A20040ABCDEF


class RecordingCommands:
    """Command sink that records what a TAM asked for."""

    def __init__(self):
        self.calls = []

    def send_set_leds(self, tam, color):
        self.calls.append(("set_leds", color))

    def send_write_robot(self, tam, data):
        self.calls.append(("write_robot", data))


# =============================================================================
# Identity
# =============================================================================

def test_placeholder_id_is_address_suffix():
    assert format_address(ADDRESS) == "0013A20040ABCDEF"
    assert placeholder_id(ADDRESS) == "BCDEF"
    assert TAM(address64=ADDRESS).id == "BCDEF"


def test_set_id_falls_back_to_placeholder():
    tam = TAM(address64=ADDRESS)
    tam.set_id("TAM07")
    assert tam.id == "TAM07"

    tam.set_id(None)
    assert tam.id == "BCDEF"


def test_address_is_immutable():
    tam = TAM(address64=ADDRESS)
    with pytest.raises(AttributeError):
        tam.address64 = 1


def test_controller_is_set_once():
    tam = TAM(address64=ADDRESS)
    tam.controller = object()
    with pytest.raises(AttributeError):
        tam.controller = object()


def test_touch_never_moves_backwards():
    tam = TAM(address64=ADDRESS, first_seen=100, last_seen=100)
    tam.touch(500)
    tam.touch(300)
    assert tam.last_seen == 500


# =============================================================================
# Reported State
# =============================================================================

def test_first_report_sets_timestamp_even_without_change():
    """Zero timestamps mean never updated, so a first report of 0 still counts."""
    tam = TAM(address64=ADDRESS)
    assert tam.update_led_color(0, 1000) is True
    assert tam.led_color_last_updated == 1000
    assert tam.update_robot_present(False, 1000) is True
    assert tam.update_robot_data(0, 1000) is True


def test_unchanged_report_keeps_timestamp():
    tam = TAM(address64=ADDRESS)
    tam.update_led_color(0x190000, 1000)
    assert tam.update_led_color(0x190000, 2000) is False
    assert tam.led_color_last_updated == 1000

    assert tam.update_led_color(0x001900, 3000) is True
    assert tam.led_color == 0x001900
    assert tam.led_color_last_updated == 3000


def test_fields_are_masked():
    tam = TAM(address64=ADDRESS)
    tam.update_led_color(0xAB123456, 1000)
    tam.update_robot_data(0x1FF, 1000)
    assert tam.led_color == 0x123456
    assert tam.robot_data == 0xFF


def test_set_voltage_from_wire_bytes():
    tam = TAM(address64=ADDRESS)
    tam.set_voltage(0x80, 0x0C)
    assert tam.voltage == 3.2


# =============================================================================
# Commands
# =============================================================================

def test_set_led_color_skips_confirmed_color():
    commands = RecordingCommands()
    tam = TAM(address64=ADDRESS, commands=commands)
    tam.update_led_color(0x190000, 1000)

    tam.set_led_color(0x190000)
    assert commands.calls == []

    tam.set_led_color(0x001900)
    assert commands.calls == [("set_leds", 0x001900)]


def test_set_led_color_sends_when_other_color_in_flight():
    commands = RecordingCommands()
    tam = TAM(address64=ADDRESS, commands=commands)
    tam.update_led_color(0x190000, 1000)
    tam.pending_set_leds = PendingCommand(CommandKind.SET_LEDS, 0x001900, frame_id=1)

    tam.set_led_color(0x190000)
    assert commands.calls == [("set_leds", 0x190000)]


def test_set_robot_data_to_send():
    commands = RecordingCommands()
    tam = TAM(address64=ADDRESS, commands=commands)

    tam.set_robot_data_to_send(0x125)
    assert tam.robot_data_to_send == 0x25
    assert commands.calls == [("write_robot", 0x25)]


def test_acknowledged_robot_byte_is_not_resent():
    commands = RecordingCommands()
    tam = TAM(address64=ADDRESS, commands=commands)
    tam.robot_data_acked = 37

    tam.set_robot_data_to_send(37)
    assert commands.calls == []

    tam.set_robot_data_to_send(38)
    assert tam.robot_data_acked is None

    tam.set_robot_data_to_send(37)
    assert commands.calls == [("write_robot", 38), ("write_robot", 37)]


def test_commands_require_a_protocol():
    tam = TAM(address64=ADDRESS)
    with pytest.raises(RuntimeError):
        tam.set_led_color(0x190000)


def test_pending_per_kind():
    tam = TAM(address64=ADDRESS)
    command = PendingCommand(CommandKind.WRITE_ROBOT, 37, frame_id=4)
    tam.set_pending(CommandKind.WRITE_ROBOT, command)

    assert tam.pending(CommandKind.WRITE_ROBOT) is command
    assert tam.pending(CommandKind.SET_LEDS) is None


def test_snapshot_is_a_copy():
    tam = TAM(address64=ADDRESS, first_seen=1000, last_seen=1000)
    tam.update_led_color(0x190000, 1000)
    view = tam.snapshot()

    tam.update_led_color(0x001900, 2000)

    assert view.led_color == 0x190000
    assert view.address_hex == "0013A20040ABCDEF"
    assert view.controller is None
    assert view.set_leds_pending is False


# =============================================================================
# Configuration
# =============================================================================

def test_config_defaults():
    config = CoordinatorConfig()
    config.validate()

    assert config.baudrate == 9600
    assert config.step_interval_ms == 100
    assert config.retry_limit == 3
    assert config.retry_timeout_ms == 500
    assert config.experiment_class == DEFAULT_EXPERIMENT


def test_config_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "serial:\n"
        "  port: /dev/ttyACM1\n"
        "  baudrate: 57600\n"
        "timing:\n"
        "  stale_after_s: 12\n"
        "commands:\n"
        "  retry_limit: 5\n"
        "experiment:\n"
        "  class: tam_coordinator.experiments:RobotCommunicationTestExperiment\n"
        "  seed: 7\n"
        "api:\n"
        "  enabled: true\n"
        "  port: 9000\n"
        "logging:\n"
        "  level: DEBUG\n"
        "  file: ''\n"
    )

    config = CoordinatorConfig.from_yaml(str(path))

    assert config.serial_port == "/dev/ttyACM1"
    assert config.baudrate == 57600
    assert config.stale_after_s == 12
    assert config.retry_limit == 5
    assert config.retry_timeout_ms == 500
    assert config.experiment_seed == 7
    assert config.api.enabled is True
    assert config.api.port == 9000
    assert config.log_level == "DEBUG"
    assert config.log_file == ""
    assert config.to_dict()["serial"] == {"port": "/dev/ttyACM1", "baudrate": 57600}


def test_empty_config_file_uses_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert CoordinatorConfig.from_yaml(str(path)).baudrate == 9600


def test_invalid_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("serial: [unclosed\n")
    with pytest.raises(ConfigError):
        CoordinatorConfig.from_yaml(str(path))


def test_config_must_be_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        CoordinatorConfig.from_yaml(str(path))


def test_blank_sections_use_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("serial:\ntiming:\ncommands:\nexperiment:\napi:\nlogging:\n")

    config = CoordinatorConfig.from_yaml(str(path))

    assert config.serial_port == "/dev/ttyUSB0"
    assert config.stale_after_s == 30
    assert config.api.enabled is False
    assert config.log_file == "coordinator.log"


@pytest.mark.parametrize(
    "text",
    [
        "serial: 9600\n",
        "timing: [1, 2]\n",
        "logging: quiet\n",
        "api: true\n",
    ],
)
def test_section_must_be_mapping(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    with pytest.raises(ConfigError):
        CoordinatorConfig.from_yaml(str(path))


@pytest.mark.parametrize(
    "overrides",
    [
        {"baudrate": 0},
        {"baudrate": "fast"},
        {"serial_port": ""},
        {"retry_limit": 0},
        {"retry_timeout_ms": -1},
        {"log_level": "CHATTY"},
        {"experiment_class": "no_class_here"},
        {"experiment_class": None},
        {"log_file": 5},
    ],
)
def test_validate_rejects(overrides):
    with pytest.raises(ConfigError):
        CoordinatorConfig(**overrides).validate()
