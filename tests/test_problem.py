"""Tests for the problem definition: horizon, constraints and cost terms."""

import numpy as np
import pytest

from shootsqp.core import (
    Attachment,
    Constraint,
    ConstraintKind,
    ControlParametrization,
    CostFunctional,
    FunctionDynamics,
    Horizon,
    LeastSquaresMayerTerm,
    LeastSquaresTerm,
    MalformedProblem,
    MayerTerm,
    NumericFault,
    OptimalControlProblem,
    Target,
)


def double_integrator():
    return FunctionDynamics(
        lambda t, x, u, p: np.array([x[1], u[0]]), state_dim=2, control_dim=1
    )


def make_problem(**kwargs):
    return OptimalControlProblem(
        Horizon(0.0, 1.0, 4), double_integrator(), CostFunctional(), **kwargs
    )


def test_horizon_grid():
    horizon = Horizon(1.0, 3.0, 4)

    assert horizon.duration == 2.0
    assert horizon.interval_length == 0.5
    assert np.allclose(horizon.grid, [1.0, 1.5, 2.0, 2.5, 3.0])

    assert Horizon(0.0, 1.0, np.int64(3)).grid.shape == (4,)


@pytest.mark.parametrize(
    "start, end, intervals",
    [(0.0, 1.0, 0), (1.0, 1.0, 3), (2.0, 1.0, 3), (0.0, 1.0, 20.0), (0.0, 1.0, True)],
)
def test_malformed_horizon(start, end, intervals):
    with pytest.raises(MalformedProblem):
        Horizon(start, end, intervals)


def test_control_nodes_follow_parametrization():
    assert make_problem().control_nodes == 4
    linear = make_problem(parametrization=ControlParametrization.PIECEWISE_LINEAR)
    assert linear.control_nodes == 5


def test_contradictory_pins_rejected():
    ocp = make_problem()
    ocp.fix_state(Attachment.START, 0, 1.0)
    ocp.fix_state(Attachment.START, 0, 1.0)  # same value is fine
    ocp.fix_state(Attachment.END, 0, 2.0)    # different attachment is fine

    with pytest.raises(MalformedProblem, match="pinned to both"):
        ocp.fix_state(Attachment.START, 0, 3.0)
    ocp.fix_control(Attachment.END, 0, 1.0)
    with pytest.raises(MalformedProblem):
        ocp.fix_control(Attachment.END, 0, -1.0)


def test_component_index_checked():
    ocp = make_problem()

    with pytest.raises(MalformedProblem, match="out of range"):
        ocp.fix_state(Attachment.START, 2, 0.0)
    with pytest.raises(MalformedProblem):
        ocp.bound_control(1, -1.0, 1.0)


def test_parameter_bounds_need_free_parameters():
    dynamics = FunctionDynamics(
        lambda t, x, u, p: p * u, state_dim=1, control_dim=1, parameter_dim=1
    )
    fixed = OptimalControlProblem(Horizon(0.0, 1.0, 2), dynamics, CostFunctional(), parameters=[2.0])

    with pytest.raises(MalformedProblem):
        fixed.bound_parameter(0, 0.0, 1.0)

    free = OptimalControlProblem(
        Horizon(0.0, 1.0, 2), dynamics, CostFunctional(), parameters=[2.0], free_parameters=True
    )
    constraint = free.bound_parameter(0, 0.0, 5.0)
    assert constraint.target is Target.PARAMETER

    with pytest.raises(MalformedProblem):
        OptimalControlProblem(Horizon(0.0, 1.0, 2), dynamics, CostFunctional(), parameters=[1.0, 2.0])


def test_constraint_validation():
    with pytest.raises(MalformedProblem):
        Constraint.bounded(Target.STATE, 0, 2.0, 1.0, Attachment.PATH)
    with pytest.raises(MalformedProblem):
        Constraint.general(lambda t, x, u, p: x, np.nan, 1.0)

    pin = Constraint.bounded(Target.STATE, 0, 1.0, 1.0, Attachment.END)
    assert pin.kind is ConstraintKind.EQUALITY
    assert pin.is_component


def test_general_constraint_linearization():
    def h(t, x, u, p):
        return np.array([x[0] ** 2 + x[1] * u[0], np.sin(x[1])])

    def jac(t, x, u, p):
        hx = np.array([[2.0 * x[0], u[0]], [0.0, np.cos(x[1])]])
        hu = np.array([[x[1]], [0.0]])
        return hx, hu, np.zeros((2, 0))

    analytic = Constraint.general(h, [-1.0, -0.5], [1.0, 0.5], jacobian=jac, name="cone")
    numeric = Constraint.general(h, [-1.0, -0.5], [1.0, 0.5])
    x, u, p = np.array([0.3, -0.7]), np.array([1.2]), np.zeros(0)

    value, hx, hu, hp = analytic.linearize(0.0, x, u, p)
    _, hx_fd, hu_fd, hp_fd = numeric.linearize(0.0, x, u, p)

    assert analytic.kind is ConstraintKind.INEQUALITY
    assert np.allclose(value, h(0.0, x, u, p))
    assert np.allclose(hx, hx_fd, atol=1e-8)
    assert np.allclose(hu, hu_fd, atol=1e-8)
    assert hp.shape == hp_fd.shape == (2, 0)


def test_general_constraint_shape_and_value_checks():
    wrong_shape = Constraint.general(lambda t, x, u, p: x, 0.0, 1.0)
    non_finite = Constraint.general(lambda t, x, u, p: np.array([np.inf]), 0.0, 1.0)
    x, u, p = np.zeros(2), np.zeros(1), np.zeros(0)

    with pytest.raises(MalformedProblem):
        wrong_shape.evaluate(0.0, x, u, p)
    with pytest.raises(NumericFault):
        non_finite.evaluate(0.0, x, u, p)


def test_component_constraint_linearization():
    constraint = Constraint.fixed(Target.CONTROL, 1, 0.5, Attachment.START)
    x, u, p = np.zeros(3), np.array([0.1, 0.2]), np.zeros(0)

    value, hx, hu, hp = constraint.linearize(0.0, x, u, p)

    assert np.allclose(value, [0.2])
    assert np.allclose(hx, 0.0)
    assert np.allclose(hu, [[0.0, 1.0]])


def test_least_squares_terms():
    term = LeastSquaresTerm(
        lambda t, x, u, p: np.array([x[0] - 1.0, u[0]]), weights=[4.0, 1.0]
    )
    lin = term.linearize(0.0, np.array([3.0, 0.0]), np.array([2.0]), np.zeros(0))

    # 4 (3 - 1)² + 2²
    assert np.isclose(lin.value, 20.0)
    assert np.allclose(lin.grad_x, [16.0, 0.0])
    assert np.allclose(lin.grad_u, [4.0])
    # RᵀR with the √2 scaling is the Gauss-Newton Hessian 2 JᵀWJ
    H = lin.residual_jacobian.T @ lin.residual_jacobian
    assert np.allclose(H, np.diag([8.0, 0.0, 2.0]))

    with pytest.raises(MalformedProblem):
        LeastSquaresTerm(lambda t, x, u, p: x, weights=[-1.0])


def test_mayer_terms_and_least_squares_flag():
    general = MayerTerm(lambda x, p: x[0] * x[1])
    squares = LeastSquaresMayerTerm(lambda x, p: x - 1.0)
    x, p = np.array([2.0, 3.0]), np.zeros(0)

    lin = general.linearize(x, p)
    assert np.isclose(lin.value, 6.0)
    assert np.allclose(lin.grad_x, [3.0, 2.0], atol=1e-8)

    lin = squares.linearize(x, p)
    assert np.isclose(lin.value, 5.0)
    assert np.allclose(lin.grad_x, [2.0, 4.0], atol=1e-8)

    assert CostFunctional(mayer=[squares]).is_least_squares
    assert not CostFunctional(mayer=[squares, general]).is_least_squares
