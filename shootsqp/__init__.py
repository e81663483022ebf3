"""
shootsqp: multiple shooting SQP for trajectory optimization.

This library transcribes a continuous-time optimal control problem by
multiple shooting and solves the resulting NLP with SQP:
- Explicit Runge-Kutta integration with exact discrete sensitivities
- Block-structured NLP assembly and block-wise quasi-Newton Hessians
- Dual active-set QP subproblems with elastic restoration
- Trajectory extraction, refinement and text dumps
"""

import logging

__version__ = "0.1.0"

from shootsqp.config import SolverConfig
from shootsqp.core import (
    Attachment,
    ControlParametrization,
    CostFunctional,
    FunctionDynamics,
    Horizon,
    InfeasibleStep,
    LagrangeTerm,
    LeastSquaresMayerTerm,
    LeastSquaresTerm,
    MalformedProblem,
    MayerTerm,
    NumericFault,
    OptimalControlProblem,
    ShootingError,
)
from shootsqp.optimization import SolveResult, SolveStatus, SQPSolver, SQPState
from shootsqp.solution import Solution

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "SolverConfig",
    "Attachment",
    "ControlParametrization",
    "CostFunctional",
    "FunctionDynamics",
    "Horizon",
    "InfeasibleStep",
    "LagrangeTerm",
    "LeastSquaresMayerTerm",
    "LeastSquaresTerm",
    "MalformedProblem",
    "MayerTerm",
    "NumericFault",
    "OptimalControlProblem",
    "ShootingError",
    "SolveResult",
    "SolveStatus",
    "SQPSolver",
    "SQPState",
    "Solution",
]
