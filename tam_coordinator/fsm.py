#!/usr/bin/env python3
"""
Table-driven task state machines.

A controller declares its transitions between states once; step() then
evaluates the outgoing transitions of the current state and switches on
the first one whose conditions hold, running its actions.

Example:
    controller.add_transition(State.IDLE, State.WORKING).add_condition(
        lambda transition: controller.tam.robot_present
    )
"""

from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional

from .experiment import AbstractController


class TransitionType(Enum):
    """How the conditions of a transition combine."""
    AND = "and"
    OR = "or"


class Transition:
    """
    A transition between two states.

    Conditions are callables taking the transition and returning a bool;
    a condition object may also provide reset(transition), called after
    the transition fired. Actions are callables taking the transition.
    """

    def __init__(
        self,
        controller: Any,
        from_state: Hashable,
        to_state: Hashable,
        type: TransitionType = TransitionType.AND,
        fall_through: bool = True,
    ):
        self.controller = controller
        self.from_state = from_state
        self.to_state = to_state
        self.type = type
        self.fall_through = fall_through
        self.conditions: List[Callable[["Transition"], bool]] = []
        self.actions: List[Callable[["Transition"], None]] = []

    def add_condition(self, condition: Callable[["Transition"], bool]) -> "Transition":
        self.conditions.append(condition)
        return self

    def add_action(self, action: Callable[["Transition"], None]) -> "Transition":
        self.actions.append(action)
        return self

    def can_execute(self) -> bool:
        if not self.conditions:
            return self.fall_through
        results = (bool(condition(self)) for condition in self.conditions)
        if self.type is TransitionType.AND:
            return all(results)
        return any(results)

    def execute(self) -> bool:
        """Run the actions if the conditions hold. Returns True if the transition fired."""
        if not self.can_execute():
            return False
        for action in self.actions:
            action(self)
        for condition in self.conditions:
            reset = getattr(condition, "reset", None)
            if callable(reset):
                reset(self)
        return True

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state}, {self.type.name})"


class TransitionController(AbstractController):
    """Controller whose step() interprets a table of transitions."""

    def __init__(self, states, initial_state: Hashable):
        super().__init__()
        self.state = initial_state
        self.transitions: Dict[tuple, Transition] = {}
        self.outgoing: Dict[Hashable, List[Transition]] = {state: [] for state in states}
        self.incoming: Dict[Hashable, List[Transition]] = {state: [] for state in states}

    def add_transition(
        self,
        from_state: Hashable,
        to_state: Hashable,
        type: TransitionType = TransitionType.AND,
        fall_through: bool = True,
    ) -> Transition:
        """Create a transition and index it by its end states."""
        transition = Transition(self, from_state, to_state, type, fall_through)
        self.transitions[(from_state, to_state)] = transition
        self.outgoing.setdefault(from_state, []).append(transition)
        self.incoming.setdefault(to_state, []).append(transition)
        return transition

    def get_transition(self, from_state: Hashable, to_state: Hashable) -> Optional[Transition]:
        return self.transitions.get((from_state, to_state))

    def set_state(self, new_state: Hashable):
        if new_state != self.state:
            self.logger.debug(f"{self!r} state changed from {self.state} to {new_state}")
            self.state = new_state

    def step(self):
        """Fast-switch through transitions that fire, at most len(transitions) + 1 per tick."""
        for _ in range(len(self.transitions) + 1):
            if not self._check_and_execute():
                return
        self.logger.warning(
            f"{self!r} kept switching states, stopped for this tick in {self.state}"
        )

    def _check_and_execute(self) -> bool:
        for transition in self.outgoing.get(self.state, []):
            if transition.execute():
                self.set_state(transition.to_state)
                return True
        return False

    def __repr__(self):
        tam_id = self.tam.id if self.tam else None
        return f"{type(self).__name__}(tam={tam_id}, state={self.state})"
