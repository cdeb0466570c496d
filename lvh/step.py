"""Sequential steps with deferred cleanup."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import ExitStack
from enum import Enum
from typing import Iterable


class Result(Enum):
    """Outcome of a step."""

    INVALID = 0
    CONTINUE = 1
    STOP = 2


class Step(ABC):
    """A unit of work whose cleanup runs after all later steps are done."""

    @abstractmethod
    def do(self) -> Result:
        """Perform the step; raise on failure."""

    @abstractmethod
    def cleanup(self) -> None:
        """Undo or release what do() set up."""


def do_steps(steps: Iterable[Step]) -> None:
    """Run steps in order, then clean up the completed ones in reverse order.

    A step returning Result.STOP ends the sequence. A step that raises is not
    cleaned up itself; the steps before it are, and the exception propagates.
    """
    with ExitStack() as stack:
        for step in steps:
            result = step.do()
            if result is Result.STOP:
                return
            stack.callback(step.cleanup)