"""Error kinds raised by the shooting engine."""

from typing import Optional


class ShootingError(Exception):
    """Base class for all engine errors."""


class NumericFault(ShootingError):
    """Dynamics undefined or integration blew up at a query point."""

    def __init__(self, message: str, stage: Optional[int] = None):
        if stage is not None:
            message = f"stage {stage}: {message}"
        super().__init__(message)
        self.stage = stage


class InfeasibleStep(ShootingError):
    """The linearized subproblem has no feasible point."""


class MalformedProblem(ShootingError):
    """Problem definition rejected before any iteration."""
