"""Engine configuration."""

from dataclasses import dataclass

from ._script import ExecutionLimits


@dataclass(slots=True, frozen=True)
class EngineConfig:
    """Tunable limits of the evaluation engine.

    Attributes:
        step_limit: Maximum interpreter steps per script execution.
        time_limit: Wall-clock seconds per script execution, or None.
        mutation_round_limit: How many extra rounds script mutations may
            trigger within one evaluation before they are dropped.

    """

    step_limit: int = 100_000
    time_limit: float | None = 2.0
    mutation_round_limit: int = 1

    def __post_init__(self) -> None:
        if self.step_limit <= 0:
            msg = f"step_limit must be positive, got {self.step_limit}"
            raise ValueError(msg)
        if self.time_limit is not None and self.time_limit <= 0:
            msg = f"time_limit must be positive, got {self.time_limit}"
            raise ValueError(msg)
        if self.mutation_round_limit < 0:
            msg = f"mutation_round_limit must not be negative, got {self.mutation_round_limit}"
            raise ValueError(msg)

    def limits(self) -> ExecutionLimits:
        """Per-script resource bounds."""
        return ExecutionLimits(step_limit=self.step_limit, time_limit=self.time_limit)
