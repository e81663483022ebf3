"""Core abstractions: problem definition, cost, constraints and errors."""

from shootsqp.core.constraints import Attachment, Constraint, ConstraintKind, Target
from shootsqp.core.errors import (
    ShootingError,
    NumericFault,
    InfeasibleStep,
    MalformedProblem,
)
from shootsqp.core.objective import (
    CostFunctional,
    LagrangeTerm,
    LeastSquaresTerm,
    MayerTerm,
    LeastSquaresMayerTerm,
)
from shootsqp.core.problem import (
    ControlParametrization,
    DynamicsModel,
    FunctionDynamics,
    Horizon,
    OptimalControlProblem,
)
from shootsqp.core.tableau import ButcherTableau

__all__ = [
    "Attachment",
    "Constraint",
    "ConstraintKind",
    "Target",
    "ShootingError",
    "NumericFault",
    "InfeasibleStep",
    "MalformedProblem",
    "CostFunctional",
    "LagrangeTerm",
    "LeastSquaresTerm",
    "MayerTerm",
    "LeastSquaresMayerTerm",
    "ControlParametrization",
    "DynamicsModel",
    "FunctionDynamics",
    "Horizon",
    "OptimalControlProblem",
    "ButcherTableau",
]
