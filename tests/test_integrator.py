"""Tests for the explicit RK integrator and its sensitivities."""

import numpy as np
import pytest

from shootsqp.config import SolverConfig
from shootsqp.core.errors import MalformedProblem, NumericFault
from shootsqp.core.objective import CostFunctional, LagrangeTerm, LeastSquaresTerm
from shootsqp.integrators import ExplicitIntegrator, create_integrator
from shootsqp.methods import explicit_euler, heun, rk4
from shootsqp.utils.differences import central_difference


class ZeroDynamics:
    """dx/dt = 0"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        return np.zeros(2), np.zeros((2, 2)), np.zeros((2, 1))


class Decay:
    """dx/dt = -x + u"""

    state_dim = 1
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        return -x + u, np.array([[-1.0]]), np.array([[1.0]])


class Pendulum:
    """Damped pendulum with torque: θ'' = -sin θ - 0.1 θ' + u"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    def evaluate(self, t, x, u, p):
        f = np.array([x[1], -np.sin(x[0]) - 0.1 * x[1] + u[0]])
        fx = np.array([[0.0, 1.0], [-np.cos(x[0]), -0.1]])
        fu = np.array([[0.0], [1.0]])
        return f, fx, fu


class ParametricDecay:
    """dx/dt = -p0 x + p1 u"""

    state_dim = 1
    control_dim = 1
    parameter_dim = 2

    def evaluate(self, t, x, u, p):
        return -p[0] * x + p[1] * u, np.array([[-p[0]]]), np.array([[p[1]]])

    def parameter_jacobian(self, t, x, u, p):
        return np.array([[-x[0], u[0]]])


class LinearSystem:
    """dx/dt = A x + B u"""

    state_dim = 2
    control_dim = 1
    parameter_dim = 0

    A = np.array([[0.0, 1.0], [-2.0, -0.3]])
    B = np.array([[0.0], [1.0]])

    def evaluate(self, t, x, u, p):
        return self.A @ x + self.B @ u, self.A, self.B


def local_end_state(integrator, dynamics, n, m, linear, n_p, p_fixed, **kwargs):
    """End state as a function of the stacked stage variables."""

    def fun(z):
        x0 = z[:n]
        u0 = z[n:n + m]
        offset = n + m
        u1 = None
        if linear:
            u1 = z[offset:offset + m]
            offset += m
        p = z[offset:offset + n_p] if n_p else p_fixed
        block = integrator.integrate(
            dynamics, 0.0, 0.7, x0, u0, p, u1=u1, free_parameters=n_p > 0, **kwargs
        )
        return block

    return fun


def test_zero_dynamics_identity_sensitivity():
    integrator = ExplicitIntegrator(rk4(), steps=3)
    x0 = np.array([1.5, -2.0])

    block = integrator.integrate(ZeroDynamics(), 0.0, 1.0, x0, np.array([0.3]), np.zeros(0))

    assert np.allclose(block.end_state, x0)
    assert np.allclose(block.state_sensitivity, np.eye(2))
    assert np.allclose(block.control_sensitivity, 0.0)
    assert block.cost == 0.0


def test_euler_matches_discrete_recursion():
    steps = 8
    integrator = ExplicitIntegrator(explicit_euler(), steps=steps)
    h = 1.0 / steps

    block = integrator.integrate(Decay(), 0.0, 1.0, np.array([1.0]), np.array([0.0]), np.zeros(0))

    assert np.isclose(block.end_state[0], (1.0 - h) ** steps)
    assert np.isclose(block.state_sensitivity[0, 0], (1.0 - h) ** steps)


def test_rk4_accuracy():
    integrator = ExplicitIntegrator(rk4(), steps=10)
    u = 0.5

    block = integrator.integrate(Decay(), 0.0, 1.0, np.array([1.0]), np.array([u]), np.zeros(0))

    exact = u + (1.0 - u) * np.exp(-1.0)
    assert abs(block.end_state[0] - exact) < 1e-6
    assert abs(block.state_sensitivity[0, 0] - np.exp(-1.0)) < 1e-6
    assert abs(block.control_sensitivity[0, 0] - (1.0 - np.exp(-1.0))) < 1e-6


@pytest.mark.parametrize("linear", [False, True])
def test_sensitivity_matches_finite_differences(linear):
    integrator = ExplicitIntegrator(rk4(), steps=4)
    dynamics = Pendulum()
    x0 = np.array([0.8, -0.4])
    u0 = np.array([0.3])
    u1 = np.array([-0.6]) if linear else None

    block = integrator.integrate(dynamics, 0.0, 0.7, x0, u0, np.zeros(0), u1=u1)

    fun = local_end_state(integrator, dynamics, 2, 1, linear, 0, np.zeros(0))
    z = np.concatenate([x0, u0] + ([u1] if linear else []))
    fd = central_difference(lambda z_: fun(z_).end_state, z)

    assert block.jacobian.shape == (2, 4 if linear else 3)
    assert np.allclose(block.jacobian, fd, atol=1e-7)


def test_parameter_sensitivity_matches_finite_differences():
    integrator = ExplicitIntegrator(heun(), steps=5)
    dynamics = ParametricDecay()
    x0, u0, p = np.array([2.0]), np.array([0.5]), np.array([0.7, 1.3])

    block = integrator.integrate(dynamics, 0.0, 0.7, x0, u0, p, free_parameters=True)

    fun = local_end_state(integrator, dynamics, 1, 1, False, 2, None)
    fd = central_difference(lambda z: fun(z).end_state, np.concatenate([x0, u0, p]))

    assert block.jacobian.shape == (1, 4)
    assert np.allclose(block.jacobian, fd, atol=1e-7)


def test_cost_gradient_matches_finite_differences():
    integrator = ExplicitIntegrator(rk4(), steps=3)
    dynamics = Pendulum()
    cost = CostFunctional(lagrange=[
        LagrangeTerm(lambda t, x, u, p: np.cos(x[0]) + 0.5 * u[0] ** 2 * (1.0 + t)),
        LeastSquaresTerm(lambda t, x, u, p: np.array([x[1], 2.0 * u[0]])),
    ])
    x0, u0, u1 = np.array([0.3, 0.2]), np.array([0.1]), np.array([0.4])

    block = integrator.integrate(dynamics, 0.0, 0.7, x0, u0, np.zeros(0), u1=u1, cost=cost)

    fun = local_end_state(integrator, dynamics, 2, 1, True, 0, np.zeros(0), cost=cost)
    fd = central_difference(lambda z: fun(z).cost, np.concatenate([x0, u0, u1]))

    assert block.cost > 0.0
    assert np.allclose(block.cost_gradient, fd[0], atol=1e-7)


def test_gauss_newton_hessian_exact_for_linear_least_squares():
    """With linear dynamics and residuals the GN Hessian is the exact Hessian."""
    integrator = ExplicitIntegrator(rk4(), steps=2)
    dynamics = LinearSystem()
    cost = CostFunctional(lagrange=[
        LeastSquaresTerm(
            lambda t, x, u, p: np.array([x[0], x[1] - u[0], u[0]]),
            jacobian=lambda t, x, u, p: (
                np.array([[1.0, 0.0], [0.0, 1.0], [0.0, 0.0]]),
                np.array([[0.0], [-1.0], [1.0]]),
                np.zeros((3, 0)),
            ),
            weights=[1.0, 3.0, 0.5],
        ),
    ])
    x0, u0 = np.array([0.5, -0.2]), np.array([0.3])

    block = integrator.integrate(
        dynamics, 0.0, 0.7, x0, u0, np.zeros(0), cost=cost, gauss_newton=True
    )

    fun = local_end_state(
        integrator, dynamics, 2, 1, False, 0, np.zeros(0), cost=cost
    )
    fd = central_difference(lambda z: fun(z).cost_gradient, np.concatenate([x0, u0]))

    assert np.allclose(block.cost_hessian, block.cost_hessian.T)
    assert np.allclose(block.cost_hessian, fd, atol=1e-6)


def test_record_micro_steps():
    integrator = ExplicitIntegrator(rk4(), steps=5)
    x0 = np.array([0.1, 0.0])

    block = integrator.integrate(
        Pendulum(), 1.0, 2.0, x0, np.array([0.0]), np.zeros(0), record=True
    )

    assert block.times.shape == (6,)
    assert np.allclose(block.times, np.linspace(1.0, 2.0, 6))
    assert block.states.shape == (6, 2)
    assert np.allclose(block.states[0], x0)
    assert np.allclose(block.states[-1], block.end_state)


def test_numeric_fault_carries_stage_index():
    class LogDynamics:
        state_dim = 1
        control_dim = 1
        parameter_dim = 0

        def evaluate(self, t, x, u, p):
            return np.log(x), np.array([[1.0 / x[0]]]), np.zeros((1, 1))

    integrator = ExplicitIntegrator(rk4())

    with pytest.raises(NumericFault) as info:
        integrator.integrate(
            LogDynamics(), 0.0, 1.0, np.array([0.0]), np.array([0.0]), np.zeros(0), stage=3
        )
    assert info.value.stage == 3
    assert "stage 3" in str(info.value)


def test_non_finite_dynamics_raise_numeric_fault():
    class NaNDynamics:
        state_dim = 1
        control_dim = 1
        parameter_dim = 0

        def evaluate(self, t, x, u, p):
            return np.array([np.nan]), np.zeros((1, 1)), np.zeros((1, 1))

    with pytest.raises(NumericFault):
        ExplicitIntegrator(rk4()).integrate(
            NaNDynamics(), 0.0, 1.0, np.array([1.0]), np.array([0.0]), np.zeros(0)
        )


def test_wrong_shapes_are_malformed():
    class BadDynamics:
        state_dim = 2
        control_dim = 1
        parameter_dim = 0

        def evaluate(self, t, x, u, p):
            return np.zeros(3), np.zeros((2, 2)), np.zeros((2, 1))

    with pytest.raises(MalformedProblem):
        ExplicitIntegrator(rk4()).integrate(
            BadDynamics(), 0.0, 1.0, np.zeros(2), np.zeros(1), np.zeros(0)
        )


def test_factory_uses_config():
    integrator = create_integrator(SolverConfig(integrator="heun", integrator_steps=7))

    assert integrator.steps == 7
    assert integrator.tableau.s == 2
