"""Stopping policies for query evolution campaigns.

run_cycle() is a single explore/evaluate/promote step with no termination
condition of its own. A campaign repeats it until the caller's policy says
stop:

- max_iterations: fixed budget of cycles (failed cycles count)
- min_amplitude_delta + patience: plateau, stop after `patience` cycles in a
  row that did not raise the group's best amplitude by at least the delta
- deadline_seconds: wall-clock budget, checked before each cycle starts

Any combination may be set; the first bound reached wins.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from querylab.errors import InvalidEntity


@dataclass(frozen=True)
class StoppingPolicy:
    """When a campaign of cycles should stop.

    Attributes:
        max_iterations: Maximum number of cycles.
        min_amplitude_delta: Smallest best-amplitude gain that counts as progress.
        patience: Non-improving cycles tolerated before a plateau stop.
        deadline_seconds: Wall-clock budget in seconds.

    Example:
        >>> policy = StoppingPolicy(max_iterations=10, min_amplitude_delta=0.05, patience=3)
    """

    max_iterations: Optional[int] = None
    min_amplitude_delta: Optional[float] = None
    patience: int = 1
    deadline_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_iterations is None and self.min_amplitude_delta is None and self.deadline_seconds is None:
            raise InvalidEntity(
                "StoppingPolicy needs at least one of max_iterations, min_amplitude_delta, deadline_seconds"
            )
        if self.max_iterations is not None and self.max_iterations < 1:
            raise InvalidEntity("max_iterations must be >= 1")
        if self.min_amplitude_delta is not None and self.min_amplitude_delta < 0:
            raise InvalidEntity("min_amplitude_delta must be >= 0")
        if self.patience < 1:
            raise InvalidEntity("patience must be >= 1")
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            raise InvalidEntity("deadline_seconds must be > 0")

    def tracker(
        self,
        initial_best: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "StoppingTracker":
        return StoppingTracker(policy=self, best_amplitude=initial_best, clock=clock)


@dataclass
class StoppingTracker:
    """Mutable progress of one campaign against its policy."""

    policy: StoppingPolicy
    best_amplitude: Optional[float] = None
    clock: Callable[[], float] = time.monotonic
    iterations: int = 0
    stale_cycles: int = 0
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def record(self, amplitude: Optional[float]) -> None:
        """Record one finished cycle; amplitude is None for a failed cycle."""
        self.iterations += 1

        improved = amplitude is not None and (
            self.best_amplitude is None
            or amplitude - self.best_amplitude >= (self.policy.min_amplitude_delta or 0.0)
        )
        if amplitude is not None and (self.best_amplitude is None or amplitude > self.best_amplitude):
            self.best_amplitude = amplitude

        # A gain smaller than the delta still updates the best, but is stale
        self.stale_cycles = 0 if improved else self.stale_cycles + 1

    def stop_reason(self) -> Optional[str]:
        """Name of the bound that was reached, or None to keep going."""
        policy = self.policy
        if policy.max_iterations is not None and self.iterations >= policy.max_iterations:
            return "max_iterations"
        if policy.min_amplitude_delta is not None and self.stale_cycles >= policy.patience:
            return "plateau"
        if policy.deadline_seconds is not None and self.elapsed() >= policy.deadline_seconds:
            return "deadline"
        return None
