"""End-to-end tests of the SQP driver."""

import logging
import threading

import numpy as np
import pytest

from shootsqp import (
    Attachment,
    ControlParametrization,
    CostFunctional,
    FunctionDynamics,
    Horizon,
    LagrangeTerm,
    LeastSquaresMayerTerm,
    LeastSquaresTerm,
    MalformedProblem,
    NumericFault,
    OptimalControlProblem,
    SolverConfig,
    SolveStatus,
    SQPSolver,
    SQPState,
)


class ZeroDynamics:
    """dx/dt = 0"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        return np.zeros(2), np.zeros((2, 2)), np.zeros((2, 1))


class DoubleIntegrator:
    """x'' = u"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        f = np.array([x[1], u[0]])
        fx = np.array([[0.0, 1.0], [0.0, 0.0]])
        fu = np.array([[0.0], [1.0]])
        return f, fx, fu


class Pendulum:
    """θ'' = -sin θ + u"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        f = np.array([x[1], -np.sin(x[0]) + u[0]])
        fx = np.array([[0.0, 1.0], [-np.cos(x[0]), 0.0]])
        fu = np.array([[0.0], [1.0]])
        return f, fx, fu


class BoundedIntegrator:
    """dx/dt = u, only defined for |x| <= 2."""

    state_dim = 1
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        if abs(x[0]) > 2.0:
            raise NumericFault(f"state {x[0]:.3g} outside the model's domain")
        return u.copy(), np.zeros((1, 1)), np.ones((1, 1))


def effort():
    return CostFunctional(lagrange=[LeastSquaresTerm(lambda t, x, u, p: u.copy())])


def rest_to_rest(
    intervals=10,
    parametrization=ControlParametrization.PIECEWISE_CONSTANT,
    max_control=5.0,
):
    ocp = OptimalControlProblem(
        Horizon(0.0, 1.0, intervals), DoubleIntegrator(), effort(), parametrization
    )
    ocp.fix_state(Attachment.START, 0, 0.0)
    ocp.fix_state(Attachment.START, 1, 0.0)
    ocp.fix_state(Attachment.END, 0, 1.0)
    ocp.fix_state(Attachment.END, 1, 0.0)
    ocp.bound_control(0, -max_control, max_control)
    return ocp


def swing(intervals=15):
    ocp = OptimalControlProblem(Horizon(0.0, 3.0, intervals), Pendulum(), effort())
    ocp.fix_state(Attachment.START, 0, 0.0)
    ocp.fix_state(Attachment.START, 1, 0.0)
    ocp.fix_state(Attachment.END, 0, 1.0)
    ocp.fix_state(Attachment.END, 1, 0.0)
    return ocp


def test_zero_dynamics_single_interval_converges_in_one_iteration():
    ocp = OptimalControlProblem(Horizon(0.0, 1.0, 1), ZeroDynamics(), CostFunctional())
    ocp.fix_state(Attachment.START, 0, 1.0)
    ocp.fix_state(Attachment.START, 1, -2.0)
    solver = SQPSolver(ocp)

    result = solver.solve()

    assert result.status is SolveStatus.CONVERGED
    assert result.success
    assert result.iterations == 1
    assert solver.state is SQPState.CONVERGED
    assert np.allclose(result.solution.states, [[1.0, -2.0], [1.0, -2.0]])
    assert result.feasibility <= solver.config.feasibility_tol


def test_gauss_newton_rest_to_rest():
    config = SolverConfig(hessian="gauss_newton", max_iterations=10)

    result = SQPSolver(rest_to_rest(), config).solve()
    solution = result.solution

    assert result.status is SolveStatus.CONVERGED
    assert result.iterations <= 3
    assert result.feasibility <= config.feasibility_tol
    assert result.optimality <= config.optimality_tol
    assert np.allclose(solution.states[0], [0.0, 0.0])
    assert np.allclose(solution.states[-1], [1.0, 0.0], atol=1e-8)
    assert np.all(np.abs(solution.controls) <= 5.0 + 1e-9)
    # The bound is active on the first and last intervals
    assert np.isclose(solution.controls[0, 0], 5.0)
    assert np.isclose(solution.controls[-1, 0], -5.0)


def test_bfgs_reaches_gauss_newton_cost():
    reference = SQPSolver(rest_to_rest(), SolverConfig(hessian="gauss_newton")).solve()

    result = SQPSolver(rest_to_rest(), SolverConfig(hessian="bfgs", max_iterations=200)).solve()

    assert result.status is not SolveStatus.FAILED
    assert result.feasibility <= 1e-6
    assert result.cost == pytest.approx(reference.cost, rel=1e-4)


def test_least_squares_cost_uses_gauss_newton_by_default(caplog):
    with caplog.at_level(logging.INFO, logger="shootsqp"):
        result = SQPSolver(rest_to_rest()).solve()

    assert "gauss_newton Hessian" in caplog.text
    assert result.status is SolveStatus.CONVERGED
    assert result.iterations <= 3


def test_cost_non_increasing_once_feasible():
    result = SQPSolver(rest_to_rest(), SolverConfig(hessian="bfgs", max_iterations=30)).solve()
    records = result.history

    assert records
    for before, after in zip(records, records[1:]):
        if before.violation <= 1e-9 and after.violation <= 1e-9:
            assert after.cost <= before.cost + 1e-9 * max(1.0, abs(before.cost))
        assert 0.0 < after.alpha <= 1.0


def test_piecewise_linear_controls():
    config = SolverConfig(hessian="gauss_newton")
    ocp = rest_to_rest(intervals=8, parametrization=ControlParametrization.PIECEWISE_LINEAR)

    result = SQPSolver(ocp, config).solve()

    assert result.status is SolveStatus.CONVERGED
    assert result.solution.controls.shape == (9, 1)
    assert np.allclose(result.solution.control_times, np.linspace(0.0, 1.0, 9))
    assert np.allclose(result.solution.states[-1], [1.0, 0.0], atol=1e-8)


def test_free_parameter_is_optimized():
    dynamics = FunctionDynamics(
        lambda t, x, u, p: p + u, state_dim=1, control_dim=1, parameter_dim=1
    )
    cost = CostFunctional(
        lagrange=[LeastSquaresTerm(lambda t, x, u, p: u.copy())],
        mayer=[LeastSquaresMayerTerm(lambda x, p: p.copy())],
    )
    ocp = OptimalControlProblem(
        Horizon(0.0, 1.0, 4), dynamics, cost, parameters=[0.0], free_parameters=True
    )
    ocp.fix_state(Attachment.START, 0, 0.0)
    ocp.fix_state(Attachment.END, 0, 2.0)
    ocp.bound_parameter(0, 0.0, 10.0)

    result = SQPSolver(ocp, SolverConfig(hessian="gauss_newton")).solve()

    assert result.status is SolveStatus.CONVERGED
    assert np.allclose(result.solution.parameters, [1.0], atol=1e-6)
    assert np.allclose(result.solution.controls, 1.0, atol=1e-6)
    assert result.cost == pytest.approx(2.0, abs=1e-6)


@pytest.mark.parametrize("seed", [0, 1, 2])
def test_perturbed_initial_guess_reaches_same_cost(seed):
    config = SolverConfig(hessian="gauss_newton")
    reference = SQPSolver(rest_to_rest(), config).solve()

    rng = np.random.default_rng(seed)
    result = SQPSolver(rest_to_rest(), config).solve(
        states=rng.normal(size=(11, 2)),
        controls=rng.normal(scale=3.0, size=(10, 1)),
    )

    assert result.status is SolveStatus.CONVERGED
    assert result.cost == pytest.approx(reference.cost, rel=1e-6)


def test_nonlinear_swing_up_is_feasible():
    config = SolverConfig(max_iterations=100)

    result = SQPSolver(swing(), config).solve()

    assert result.status is not SolveStatus.FAILED
    assert result.feasibility <= 1e-6
    assert result.solution.max_defect() <= 1e-6


def test_parallel_stage_evaluation_matches_serial():
    serial = SQPSolver(swing(), SolverConfig(max_iterations=5)).solve()
    parallel = SQPSolver(swing(), SolverConfig(max_iterations=5, workers=4)).solve()

    assert serial.iterations == parallel.iterations
    assert np.allclose(serial.w, parallel.w)


def test_dense_backend_matches_sparse():
    sparse = SQPSolver(rest_to_rest(), SolverConfig(hessian="gauss_newton")).solve()
    dense = SQPSolver(
        rest_to_rest(), SolverConfig(hessian="gauss_newton", qp_backend="dense")
    ).solve()

    assert np.allclose(sparse.w, dense.w, atol=1e-8)


def test_max_iterations_is_a_soft_stop():
    solver = SQPSolver(swing(), SolverConfig(hessian="bfgs", max_iterations=1))

    result = solver.solve()

    assert result.status is SolveStatus.MAX_ITERATIONS_REACHED
    assert not result.success
    assert result.iterations == 1
    assert len(result.history) == 1
    assert "maximum number of iterations" in result.reason
    assert solver.state is SQPState.CONVERGED


def test_cancelled_before_first_iteration():
    cancel = threading.Event()
    cancel.set()
    solver = SQPSolver(swing())

    result = solver.solve(cancel=cancel)

    assert result.status is SolveStatus.FAILED
    assert result.reason == "cancelled"
    assert result.iterations == 0
    assert result.solution.states.shape == (16, 2)
    assert solver.state is SQPState.FAILED


def test_cancelled_between_iterations():
    class CountdownEvent(threading.Event):
        def __init__(self, checks):
            super().__init__()
            self.checks = checks

        def is_set(self):
            self.checks -= 1
            return self.checks < 0

    result = SQPSolver(swing(), SolverConfig(hessian="bfgs", max_iterations=50)).solve(
        cancel=CountdownEvent(2)
    )

    assert result.status is SolveStatus.FAILED
    assert result.reason == "cancelled"
    assert result.iterations == 2
    assert np.isfinite(result.feasibility)


def test_numeric_fault_at_initial_guess_fails():
    dynamics = FunctionDynamics(
        lambda t, x, u, p: np.sqrt(x) + u, state_dim=1, control_dim=1
    )
    ocp = OptimalControlProblem(Horizon(0.0, 1.0, 3), dynamics, effort())
    ocp.fix_state(Attachment.START, 0, -1.0)

    result = SQPSolver(ocp).solve()

    assert result.status is SolveStatus.FAILED
    assert result.reason.startswith("numeric fault at initial guess")
    assert "stage 0" in result.reason
    assert result.solution is not None
    assert np.isnan(result.feasibility)


def test_numeric_fault_during_line_search_fails_after_retries():
    cost = CostFunctional(lagrange=[LeastSquaresTerm(lambda t, x, u, p: u - 10.0)])
    ocp = OptimalControlProblem(Horizon(0.0, 1.0, 2), BoundedIntegrator(), cost)
    ocp.fix_state(Attachment.START, 0, 0.0)

    result = SQPSolver(ocp, SolverConfig(max_numeric_retries=0)).solve()

    assert result.status is SolveStatus.FAILED
    assert "numeric fault during line search" in result.reason
    assert result.iterations == 0


def test_numeric_fault_retries_shorten_the_step():
    cost = CostFunctional(lagrange=[LeastSquaresTerm(lambda t, x, u, p: u - 10.0)])
    ocp = OptimalControlProblem(Horizon(0.0, 1.0, 2), BoundedIntegrator(), cost)
    ocp.fix_state(Attachment.START, 0, 0.0)

    result = SQPSolver(ocp, SolverConfig(max_iterations=1)).solve()

    assert result.iterations == 1
    assert result.history[0].alpha < 1.0
    assert np.all(np.abs(result.solution.states) <= 2.0)


def test_infeasible_problem_uses_restoration_and_never_succeeds(caplog):
    ocp = OptimalControlProblem(
        Horizon(0.0, 1.0, 2),
        FunctionDynamics(lambda t, x, u, p: u.copy(), state_dim=1, control_dim=1),
        effort(),
    )
    ocp.bound_state(0, lower=1.0)
    ocp.add_constraint(lambda t, x, u, p: x.copy(), -np.inf, 0.5, name="ceiling")

    with caplog.at_level(logging.WARNING, logger="shootsqp"):
        result = SQPSolver(ocp, SolverConfig(max_iterations=5)).solve()

    assert "elastic restoration" in caplog.text
    assert not result.success
    assert result.status is not SolveStatus.CONVERGED
    assert result.feasibility >= 0.5 - 1e-6
    assert all(record.restoration for record in result.history)


def test_malformed_problems_rejected_before_iterating():
    ocp = rest_to_rest()
    ocp.bound_state(0, -0.5, 0.5)  # contradicts the END pin x0 = 1

    with pytest.raises(MalformedProblem):
        SQPSolver(ocp)

    general = OptimalControlProblem(
        Horizon(0.0, 1.0, 2),
        DoubleIntegrator(),
        CostFunctional(lagrange=[LagrangeTerm(lambda t, x, u, p: u[0] ** 4)]),
    )
    with pytest.raises(MalformedProblem):
        SQPSolver(general, SolverConfig(hessian="gauss_newton"))


def test_invalid_configuration():
    with pytest.raises(ValueError):
        SolverConfig(integrator="rk45")
    with pytest.raises(ValueError):
        SolverConfig(hessian="newton")
    with pytest.raises(ValueError):
        SolverConfig(backtracking=1.5)
    with pytest.raises(ValueError):
        SolverConfig(workers=0)
