"""SQP outer loop with an l1 merit line search."""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional
import logging
import threading

import numpy as np
from numpy.typing import NDArray

from shootsqp.algebra import create_backend
from shootsqp.config import SolverConfig
from shootsqp.core.errors import InfeasibleStep, NumericFault
from shootsqp.core.problem import OptimalControlProblem
from shootsqp.discretization.shooting import ShootingDiscretization
from shootsqp.integrators.factory import create_integrator
from shootsqp.optimization.assembler import Linearization, NLPAssembler
from shootsqp.optimization.hessian import create_hessian, hessian_kind
from shootsqp.optimization.qp import ActiveSetQPSolver
from shootsqp.optimization.subproblem import Multipliers, QPSolution
from shootsqp.solution import Solution, extract_solution

logger = logging.getLogger(__name__)


class SQPState(Enum):
    """Lifecycle of one solve."""

    INITIALIZING = auto()
    ITERATING = auto()
    CONVERGED = auto()
    FAILED = auto()


class SolveStatus(Enum):
    """Outcome reported to the caller."""

    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"


@dataclass
class IterationRecord:
    """Diagnostics of one accepted SQP step."""

    iteration: int
    cost: float
    violation: float
    merit: float
    step_norm: float
    alpha: float
    kkt: float
    qp_iterations: int
    restoration: bool = False


@dataclass
class SolveResult:
    """Terminal outcome of SQPSolver.solve."""

    status: SolveStatus
    reason: str
    iterations: int
    solution: Solution
    w: NDArray
    feasibility: float
    optimality: float
    cost: float
    multipliers: Multipliers
    history: list[IterationRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == SolveStatus.CONVERGED


class SQPSolver:
    """
    Multiple shooting SQP for an OptimalControlProblem.

    Each outer iteration integrates every stage with sensitivities, solves
    one QP (plus an elastic one when the linearisation is infeasible) and
    backtracks on the l1 merit function φ = f + ν·||c||₁.
    """

    def __init__(self, ocp: OptimalControlProblem, config: Optional[SolverConfig] = None):
        """
        Args:
            ocp: Optimal control problem
            config: Solver settings (defaults if omitted)

        Raises:
            MalformedProblem: if the constraints contradict each other or the
                requested Hessian does not fit the cost
        """
        self.ocp = ocp
        self.config = config if config is not None else SolverConfig()
        self.discretization = ShootingDiscretization(ocp)
        self.integrator = create_integrator(self.config)
        self.hessian = create_hessian(self.config, self.discretization)
        self.qp_solver = ActiveSetQPSolver(
            create_backend(self.config.qp_backend),
            max_iterations=self.config.qp_max_iterations,
            tolerance=self.config.qp_tolerance,
        )
        self.state = SQPState.INITIALIZING

    def solve(
        self,
        states: Optional[NDArray] = None,
        controls: Optional[NDArray] = None,
        parameters: Optional[NDArray] = None,
        cancel: Optional[threading.Event] = None,
    ) -> SolveResult:
        """
        Run the SQP iteration.

        Args:
            states: Optional initial node states (N+1, n)
            controls: Optional initial controls (nodes, m)
            parameters: Optional initial free parameters
            cancel: Event checked between outer iterations

        Returns:
            Result with status, reason, trajectory and iteration history
        """
        config = self.config
        disc = self.discretization
        assembler = NLPAssembler(disc, self.integrator, config)
        self.state = SQPState.INITIALIZING
        self.hessian.reset()

        w = disc.initial_guess(config.initialization, states, controls, parameters)
        multipliers = Multipliers.zeros(
            assembler.num_equalities, assembler.num_inequalities, disc.num_variables
        )
        logger.info(
            f"Solving {disc.layout} with {config.integrator} x{config.integrator_steps}, "
            f"{hessian_kind(config, self.ocp.cost)} Hessian, {config.qp_backend} QP backend"
        )
        try:
            return self._iterate(assembler, w, multipliers, cancel)
        finally:
            assembler.close()

    def _iterate(
        self,
        assembler: NLPAssembler,
        w: NDArray,
        multipliers: Multipliers,
        cancel: Optional[threading.Event],
    ) -> SolveResult:
        config = self.config
        history: list[IterationRecord] = []

        try:
            lin = assembler.linearize(w)
        except NumericFault as err:
            logger.error(f"Numeric fault at the initial guess: {err}")
            return self._finish(
                SolveStatus.FAILED, f"numeric fault at initial guess: {err}",
                w, None, multipliers, history,
            )

        penalty = 0.0
        hessian_reset = False

        while True:
            iterations = len(history)
            violation = lin.violation()
            kkt = lin.stationarity(multipliers)

            if self.state == SQPState.ITERATING and violation <= config.feasibility_tol:
                if kkt <= config.optimality_tol:
                    return self._finish(
                        SolveStatus.CONVERGED, "KKT conditions satisfied",
                        lin.w, lin, multipliers, history,
                    )
            if cancel is not None and cancel.is_set():
                logger.warning(f"Iteration {iterations:03d}: cancelled")
                return self._finish(
                    SolveStatus.FAILED, "cancelled", lin.w, lin, multipliers, history
                )
            if iterations >= config.max_iterations:
                return self._finish(
                    SolveStatus.MAX_ITERATIONS_REACHED,
                    f"maximum number of iterations ({config.max_iterations}) reached",
                    lin.w, lin, multipliers, history,
                )

            qp = assembler.build_qp(lin, self.hessian)
            try:
                step = self._solve_qp(qp, iterations)
            except InfeasibleStep as err:
                logger.error(f"Iteration {iterations:03d}: restoration failed: {err}")
                return self._finish(
                    SolveStatus.FAILED, f"infeasible QP subproblem: {err}",
                    lin.w, lin, multipliers, history,
                )
            self.state = SQPState.ITERATING

            d = step.step
            step_norm = float(np.max(np.abs(d))) if d.size else 0.0
            if step_norm <= config.step_tol and violation <= config.feasibility_tol:
                multipliers = step.multipliers
                return self._finish(
                    SolveStatus.CONVERGED, "step below tolerance",
                    lin.w, lin, multipliers, history,
                )

            penalty = max(penalty, step.multipliers.max_abs() + config.penalty_margin)
            merit0 = lin.cost + penalty * lin.l1_violation()
            slope = float(lin.gradient @ d) - penalty * (
                lin.l1_violation() - step.linear_violation
            )

            try:
                accepted = self._line_search(assembler, lin, d, penalty, merit0, slope)
            except NumericFault as err:
                logger.error(f"Iteration {iterations:03d}: {err}")
                return self._finish(
                    SolveStatus.FAILED, f"numeric fault during line search: {err}",
                    lin.w, lin, multipliers, history,
                )

            if accepted is None:
                if hessian_reset:
                    return self._finish(
                        SolveStatus.FAILED, "line search failed",
                        lin.w, lin, multipliers, history,
                    )
                logger.warning(
                    f"Iteration {iterations:03d}: line search failed, resetting Hessian"
                )
                self.hessian.reset()
                hessian_reset = True
                continue

            alpha, trial, merit = accepted
            hessian_reset = False
            updated = multipliers.interpolate(step.multipliers, alpha)
            self.hessian.update(
                trial.w - lin.w,
                trial.lagrangian_gradient(updated) - lin.lagrangian_gradient(updated),
            )

            lin, multipliers = trial, updated
            record = IterationRecord(
                iteration=iterations + 1,
                cost=lin.cost,
                violation=lin.violation(),
                merit=merit,
                step_norm=step_norm,
                alpha=alpha,
                kkt=lin.stationarity(multipliers),
                qp_iterations=step.iterations,
                restoration=step.elastic,
            )
            history.append(record)
            logger.info(
                f"Iteration {record.iteration:03d}: cost = {record.cost:.6e}, "
                f"violation = {record.violation:.3e}, kkt = {record.kkt:.3e}, "
                f"step = {step_norm:.3e}, alpha = {alpha:.3g}"
            )

    def _solve_qp(self, qp, iteration: int) -> QPSolution:
        """Solve the QP, falling back to the elastic relaxation if infeasible."""
        try:
            return self.qp_solver.solve(qp)
        except InfeasibleStep as err:
            logger.warning(
                f"Iteration {iteration:03d}: QP infeasible ({err}), elastic restoration"
            )
        return self.qp_solver.solve_elastic(qp, self.config.elastic_penalty)

    def _line_search(
        self,
        assembler: NLPAssembler,
        lin: Linearization,
        d: NDArray,
        penalty: float,
        merit0: float,
        slope: float,
    ) -> Optional[tuple[float, Linearization, float]]:
        """
        Backtrack until φ(w + αd) <= φ(w) + η·α·min(D, 0).

        Returns:
            (alpha, trial linearization, merit), or None if alpha fell below
            min_step

        Raises:
            NumericFault: if trial points keep failing after
                max_numeric_retries halvings
        """
        config = self.config
        disc = self.discretization
        alpha = 1.0
        retries = 0
        roundoff = 10.0 * np.finfo(float).eps * max(1.0, abs(merit0))

        while alpha >= config.min_step:
            w_trial = disc.project(lin.w + alpha * d)
            try:
                trial = assembler.linearize(w_trial)
            except NumericFault as err:
                retries += 1
                if retries > config.max_numeric_retries:
                    raise
                logger.debug(f"Trial step alpha = {alpha:.3g} failed ({err}), halving")
                alpha *= 0.5
                continue

            merit = trial.cost + penalty * trial.l1_violation()
            if merit <= merit0 + config.armijo * alpha * min(slope, 0.0) + roundoff:
                return alpha, trial, merit
            logger.debug(
                f"Trial step alpha = {alpha:.3g} rejected: merit {merit:.6e} > {merit0:.6e}"
            )
            alpha *= config.backtracking
        return None

    def _finish(
        self,
        status: SolveStatus,
        reason: str,
        w: NDArray,
        lin: Optional[Linearization],
        multipliers: Multipliers,
        history: list[IterationRecord],
    ) -> SolveResult:
        self.state = SQPState.FAILED if status == SolveStatus.FAILED else SQPState.CONVERGED
        if lin is not None:
            feasibility = lin.violation()
            optimality = lin.stationarity(multipliers)
            cost = lin.cost
        else:
            feasibility = optimality = cost = float("nan")

        log = logger.warning if status == SolveStatus.FAILED else logger.info
        log(
            f"SQP finished ({status.value}): {reason} after {len(history)} iterations, "
            f"violation = {feasibility:.3e}, kkt = {optimality:.3e}"
        )
        return SolveResult(
            status=status,
            reason=reason,
            iterations=len(history),
            solution=extract_solution(self.discretization, self.integrator, w),
            w=w.copy(),
            feasibility=feasibility,
            optimality=optimality,
            cost=cost,
            multipliers=multipliers,
            history=history,
        )
