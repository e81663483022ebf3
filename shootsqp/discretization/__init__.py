"""Multiple shooting discretization."""

from shootsqp.discretization.shooting import (
    NodeConstraint,
    ShootingDiscretization,
    Stage,
    VariableLayout,
)

__all__ = [
    "NodeConstraint",
    "ShootingDiscretization",
    "Stage",
    "VariableLayout",
]
