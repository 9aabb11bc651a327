"""
Stop conditions for live recording.

The coordinator polls evaluate() on a fixed cadence; the first True ends the
recording. evaluate() must never block, so conditions that depend on I/O
(key presses) poll their source instead of waiting on it.
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .keyboard import ConsoleKeySource, key_matches, normalize_key
from ..cancellation import CancellationToken


class StopCondition(ABC):
    """Polled predicate deciding when live capture ends."""

    def open(self) -> None:
        """Prepare any resources needed for polling."""

    def close(self) -> None:
        """Release resources acquired in open()."""

    @abstractmethod
    def evaluate(self) -> bool:
        """Return True when recording should stop. Must not block."""

    def describe(self) -> str:
        return type(self).__name__

    def __enter__(self) -> "StopCondition":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()


class KeyPress(StopCondition):
    """Stops when the target key is pressed on the console."""

    def __init__(self, target_key: str, key_source=None):
        self.key_name = target_key
        self.target = normalize_key(target_key)
        self.key_source = key_source or ConsoleKeySource()

    def open(self) -> None:
        self.key_source.open()

    def close(self) -> None:
        self.key_source.close()

    def evaluate(self) -> bool:
        # Drain everything pending so stray keys don't hide the target
        while True:
            key = self.key_source.read_key()
            if key is None:
                return False
            if key_matches(key, self.target):
                return True

    def describe(self) -> str:
        return f"press '{self.key_name}' to stop"


class Predicate(StopCondition):
    """Wraps a zero-argument callable returning truthy to stop."""

    def __init__(self, fn: Callable[[], bool], description: Optional[str] = None):
        self.fn = fn
        self.description = description

    def evaluate(self) -> bool:
        return bool(self.fn())

    def describe(self) -> str:
        return self.description or "custom predicate"


class ExternalCancellation(StopCondition):
    """Stops when the shared cancellation token fires."""

    def __init__(self, token: CancellationToken):
        self.token = token

    def evaluate(self) -> bool:
        return self.token.is_cancelled

    def describe(self) -> str:
        return "cancellation"


class FixedDuration(StopCondition):
    """Stops after a fixed number of seconds, measured from open()."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        if seconds < 0:
            raise ValueError("Duration must be non-negative")
        self.seconds = seconds
        self.clock = clock
        self._started: Optional[float] = None

    def open(self) -> None:
        self._started = self.clock()

    def evaluate(self) -> bool:
        if self._started is None:
            self.open()
        return self.clock() - self._started >= self.seconds

    def describe(self) -> str:
        return f"stop after {self.seconds:g}s"


class AnyOf(StopCondition):
    """Stops as soon as any member condition does."""

    def __init__(self, *conditions: StopCondition):
        self.conditions = conditions
        self.triggered: Optional[StopCondition] = None

    def open(self) -> None:
        for condition in self.conditions:
            condition.open()

    def close(self) -> None:
        for condition in self.conditions:
            condition.close()

    def evaluate(self) -> bool:
        for condition in self.conditions:
            if condition.evaluate():
                self.triggered = condition
                return True
        return False

    def describe(self) -> str:
        return ", ".join(c.describe() for c in self.conditions)
