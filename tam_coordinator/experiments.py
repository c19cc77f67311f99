#!/usr/bin/env python3
"""
Bundled experiments.

Select one from the command line with
``--experiment tam_coordinator.experiments:<ClassName>``.
"""

from enum import Enum

from .experiment import AbstractController, AbstractExperiment
from .fsm import TransitionController, TransitionType
from .models import TAM


# LED colors, 0x19 max per channel to keep eyes safe
LED_RED = 0x190000
LED_GREEN = 0x001900


# =============================================================================
# Camera Calibration
# =============================================================================

class CameraCalibrationController(AbstractController):
    """Keeps the LEDs of the TAM steady red."""

    def step(self):
        self.tam.set_led_color(LED_RED)


class CameraCalibrationExperiment(AbstractExperiment):
    """Every TAM shows red so robot cameras can be calibrated against it."""

    def attach_controller(self, tam: TAM):
        self.logger.info(f"Creating new CameraCalibrationController for {tam.id}")
        controller = CameraCalibrationController()
        controller.init(self.next_seed(), tam)
        tam.controller = controller


# =============================================================================
# Robot Communication Test
# =============================================================================

class CommunicationTestState(Enum):
    READ_ID = "read_id"
    WRITE_VALUE = "write_value"
    READ_BACK = "read_back"
    DONE = "done"


class RobotCommunicationTestController(TransitionController):
    """
    Tests IR communication with a robot in the TAM.

    Waits for the robot to report its id, writes a test value to it and
    turns the LEDs green once the robot echoes the value back.
    """

    ROBOT_ID = 5
    TEST_VALUE = 37

    def __init__(self):
        state = CommunicationTestState
        super().__init__(state, state.READ_ID)

        self.add_transition(state.READ_ID, state.WRITE_VALUE).add_condition(
            lambda t: self.tam.robot_present and self.tam.robot_data == self.ROBOT_ID
        )

        self.add_transition(state.WRITE_VALUE, state.READ_BACK).add_condition(
            lambda t: self.tam.robot_present
        ).add_action(self._write_test_value)

        self.add_transition(state.READ_BACK, state.DONE, TransitionType.AND).add_condition(
            lambda t: self.tam.robot_present
        ).add_condition(
            lambda t: self.tam.robot_data == self.TEST_VALUE
        ).add_action(self._report_success)

    def _write_test_value(self, transition):
        self.logger.info(f"{self.tam.id}: robot id {self.tam.robot_data}, sending {self.TEST_VALUE}")
        self.tam.set_robot_data_to_send(self.TEST_VALUE)

    def _report_success(self, transition):
        self.logger.info(f"{self.tam.id}: test success")
        self.tam.set_led_color(LED_GREEN)


class RobotCommunicationTestExperiment(AbstractExperiment):
    """Runs the robot communication test on every TAM."""

    def attach_controller(self, tam: TAM):
        self.logger.info(f"Creating new RobotCommunicationTestController for {tam.id}")
        controller = RobotCommunicationTestController()
        controller.init(self.next_seed(), tam)
        tam.controller = controller
