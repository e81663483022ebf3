"""Solver configuration."""

from dataclasses import dataclass

from shootsqp.methods.runge_kutta import TABLEAUX


@dataclass
class SolverConfig:
    """Settings for the integrator, the QP solver and the SQP outer loop."""

    # Outer loop
    max_iterations: int = 20            # soft stop, not an error
    feasibility_tol: float = 1e-6       # max-norm of the constraint violation
    optimality_tol: float = 1e-6        # max-norm of the Lagrangian gradient
    step_tol: float = 1e-8              # max-norm of the SQP step

    # Integration
    integrator: str = "rk4"             # explicit tableau name
    integrator_steps: int = 4           # RK micro-steps per shooting interval

    # Hessian approximation
    hessian: str = "auto"               # "auto", "bfgs" (block-wise, damped) or "gauss_newton"
    regularization: float = 1e-8        # added to the Hessian diagonal

    # QP subproblem
    qp_max_iterations: int = 1000
    qp_backend: str = "sparse"          # "sparse" or "dense" KKT factorization
    qp_tolerance: float = 1e-9

    # Globalization
    armijo: float = 1e-4                # sufficient decrease constant
    backtracking: float = 0.5           # step contraction factor
    min_step: float = 1e-10             # smallest line-search step length
    penalty_margin: float = 1.0         # ν ≥ ||λ||∞ + margin
    max_numeric_retries: int = 8        # step halvings after a NumericFault
    elastic_penalty: float = 1e4        # l1 weight in the restoration QP

    # Initial guess: "zeros" or "interpolate" (between START/END pins)
    initialization: str = "zeros"

    # Stage evaluations in parallel when > 1
    workers: int = 1

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")
        if self.integrator_steps < 1:
            raise ValueError("integrator_steps must be positive")
        if self.integrator not in TABLEAUX:
            raise ValueError(
                f"unknown integrator '{self.integrator}'; choose one of {sorted(TABLEAUX)}"
            )
        if self.hessian not in ("auto", "bfgs", "gauss_newton"):
            raise ValueError("hessian must be 'auto', 'bfgs' or 'gauss_newton'")
        if self.qp_backend not in ("sparse", "dense"):
            raise ValueError("qp_backend must be 'sparse' or 'dense'")
        if self.initialization not in ("zeros", "interpolate"):
            raise ValueError("initialization must be 'zeros' or 'interpolate'")
        if not 0.0 < self.backtracking < 1.0:
            raise ValueError("backtracking must lie in (0, 1)")
        if not 0.0 < self.armijo < 0.5:
            raise ValueError("armijo must lie in (0, 0.5)")
        for name in ("feasibility_tol", "optimality_tol", "step_tol", "min_step"):
            if getattr(self, name) <= 0.0:
                raise ValueError(f"{name} must be positive")
        if self.regularization < 0.0:
            raise ValueError("regularization must be non-negative")
        if self.qp_max_iterations < 1:
            raise ValueError("qp_max_iterations must be positive")
        if self.max_numeric_retries < 0:
            raise ValueError("max_numeric_retries must be non-negative")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
