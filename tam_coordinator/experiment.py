#!/usr/bin/env python3
"""
Controller and experiment interfaces.

An experiment attaches one controller to every newly discovered TAM. The
coordinator calls each controller's step() on the scheduler thread and
stops the run once the experiment reports it is finished.
"""

import importlib
import logging
import random
from typing import Callable, Optional

from .exceptions import CommandFailed, ConfigError
from .models import TAM


class AbstractController:
    """
    Base class of per-TAM controllers.

    Subclasses implement step(). They read the TAM record and issue commands
    through tam.set_led_color() and tam.set_robot_data_to_send(); they never
    block.
    """

    def __init__(self):
        self.tam: Optional[TAM] = None
        self.prng = random.Random()
        self.logger = logging.getLogger(type(self).__name__)
        self._timer_service: Optional[Callable] = None

    def init(self, random_seed: int, tam: TAM):
        """Bind the controller to its TAM and seed its random generator."""
        self.prng.seed(random_seed)
        self.tam = tam

    def step(self):
        raise NotImplementedError

    def on_command_failed(self, error: CommandFailed):
        """Called when a command to this controller's TAM exhausted its retries."""
        self.logger.warning(str(error))

    def bind_timer(self, timer_service: Callable):
        """Give the controller access to the scheduler's timer service."""
        self._timer_service = timer_service

    def schedule(self, delay: float, task: Callable[[], None]):
        """
        Run task on the scheduler thread after delay seconds.

        Returns:
            Cancellation handle (see Scheduler.cancel).
        """
        if self._timer_service is None:
            raise RuntimeError(f"{type(self).__name__} is not attached to a coordinator")
        return self._timer_service(delay, task)

    def __repr__(self):
        tam_id = self.tam.id if self.tam else None
        return f"{type(self).__name__}(tam={tam_id})"


class AbstractExperiment:
    """
    Base class of experiments.

    Subclasses implement attach_controller(tam). Setting duration_s makes
    the coordinator finish the experiment after that many seconds.
    """

    duration_s: Optional[float] = None

    def __init__(self, duration_s: Optional[float] = None):
        if duration_s is not None:
            self.duration_s = duration_s
        self.prng = random.Random()
        self.finished = False
        self.logger = logging.getLogger(type(self).__name__)

    def init(self, random_seed: int):
        """Seed the experiment's random generator."""
        self.prng.seed(random_seed)
        self.finished = False

    def attach_controller(self, tam: TAM):
        """Called once for every newly discovered TAM."""
        raise NotImplementedError

    def set_finished(self):
        if not self.finished:
            self.logger.info("Experiment finished")
        self.finished = True

    def next_seed(self) -> int:
        """Seed for a new controller, drawn from the experiment's generator."""
        return self.prng.getrandbits(32)


def load_experiment(path: str, duration_s: Optional[float] = None) -> AbstractExperiment:
    """
    Instantiate an experiment from a "package.module:Class" path.

    Raises:
        ConfigError: the module or class cannot be loaded, or is not an experiment.
    """
    module_name, _, class_name = path.partition(":")
    if not module_name or not class_name:
        raise ConfigError(f"experiment must look like 'package.module:Class', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import experiment module {module_name}: {e}") from e

    cls = getattr(module, class_name, None)
    if not isinstance(cls, type) or not issubclass(cls, AbstractExperiment):
        raise ConfigError(f"{path} is not an AbstractExperiment subclass")

    return cls(duration_s=duration_s)
