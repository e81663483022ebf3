"""NLP assembly, QP subproblems and the SQP driver."""

from shootsqp.optimization.assembler import Linearization, NLPAssembler
from shootsqp.optimization.hessian import BlockBFGS, GaussNewtonHessian, create_hessian, hessian_kind
from shootsqp.optimization.qp import ActiveSetQPSolver
from shootsqp.optimization.sqp import (
    IterationRecord,
    SolveResult,
    SolveStatus,
    SQPSolver,
    SQPState,
)
from shootsqp.optimization.subproblem import Multipliers, QPSolution, QuadraticProgram

__all__ = [
    "Linearization",
    "NLPAssembler",
    "BlockBFGS",
    "GaussNewtonHessian",
    "create_hessian",
    "hessian_kind",
    "ActiveSetQPSolver",
    "IterationRecord",
    "SolveResult",
    "SolveStatus",
    "SQPSolver",
    "SQPState",
    "Multipliers",
    "QPSolution",
    "QuadraticProgram",
]
