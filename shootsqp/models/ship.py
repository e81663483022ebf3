"""Planar ship manoeuvring model and its motion-primitive problem."""

from typing import Optional

import numpy as np
from numpy.typing import NDArray

from shootsqp.core.constraints import Attachment
from shootsqp.core.objective import CostFunctional, LeastSquaresTerm
from shootsqp.core.problem import Horizon, OptimalControlProblem

# State and control component indices
X1, X2, YAW, YAW_RATE, SPEED = range(5)
RUDDER, ACCELERATION = range(2)


class ShipModel:
    """
    First-order Nomoto ship with speed as a state.

    States:   x = (x1, x2, x3, x4, w) = position, yaw, yaw rate, speed
    Controls: u = (δ, a) = rudder angle, acceleration

        ẋ1 = w cos x3 - L w x4 sin x3
        ẋ2 = w sin x3 + L w x4 cos x3
        ẋ3 = x4
        ẋ4 = (-x4 + K δ) / τ
        ẇ  = a
    """

    state_dim = 5
    control_dim = 2
    parameter_dim = 0

    def __init__(
        self,
        length: float = 1.0,
        gain: float = 1.0,
        time_constant: float = 1.0,
        max_rudder: float = np.pi / 6,
        max_speed: float = 15.0,
    ):
        self.L = length
        self.K = gain
        self.tau = time_constant
        self.max_rudder = max_rudder
        self.max_speed = max_speed

    def evaluate(self, t: float, x: NDArray, u: NDArray, p: NDArray):
        _, _, psi, r, w = x
        rudder, accel = u
        c, s = np.cos(psi), np.sin(psi)
        L = self.L

        f = np.array([
            w * c - L * w * r * s,
            w * s + L * w * r * c,
            r,
            (-r + self.K * rudder) / self.tau,
            accel,
        ])

        fx = np.zeros((5, 5))
        fx[X1, YAW] = -w * s - L * w * r * c
        fx[X1, YAW_RATE] = -L * w * s
        fx[X1, SPEED] = c - L * r * s
        fx[X2, YAW] = w * c - L * w * r * s
        fx[X2, YAW_RATE] = L * w * c
        fx[X2, SPEED] = s + L * r * c
        fx[YAW, YAW_RATE] = 1.0
        fx[YAW_RATE, YAW_RATE] = -1.0 / self.tau

        fu = np.zeros((5, 2))
        fu[YAW_RATE, RUDDER] = self.K / self.tau
        fu[SPEED, ACCELERATION] = 1.0
        return f, fx, fu


def ship_cost(yaw_rate_weight: float = 10.0) -> CostFunctional:
    """Running cost ∫ 10 x4² + a² dt as a least-squares term."""
    scale = np.sqrt(yaw_rate_weight)

    def residual(t, x, u, p):
        return np.array([scale * x[YAW_RATE], u[ACCELERATION]])

    def jacobian(t, x, u, p):
        rx = np.zeros((2, 5))
        ru = np.zeros((2, 2))
        rx[0, YAW_RATE] = scale
        ru[1, ACCELERATION] = 1.0
        return rx, ru, np.zeros((2, 0))

    return CostFunctional(lagrange=[LeastSquaresTerm(residual, jacobian)])


def primitive_problem(
    goal: tuple[float, float] = (50.0, 30.0),
    speed: float = 3.0,
    duration: float = 20.0,
    intervals: int = 20,
    model: Optional[ShipModel] = None,
) -> OptimalControlProblem:
    """
    Motion primitive from rest heading to a goal position at cruise speed.

    The ship starts at the origin with zero yaw, zero yaw rate and the given
    speed, and must reach `goal` with zero yaw rate at the same speed. The
    rudder and acceleration are zero at both ends; the final yaw is free.
    """
    model = model if model is not None else ShipModel()
    ocp = OptimalControlProblem(
        Horizon(0.0, duration, intervals), model, ship_cost()
    )

    for index, value in zip((X1, X2, YAW, YAW_RATE, SPEED), (0.0, 0.0, 0.0, 0.0, speed)):
        ocp.fix_state(Attachment.START, index, value)
    ocp.fix_control(Attachment.START, RUDDER, 0.0)
    ocp.fix_control(Attachment.START, ACCELERATION, 0.0)

    ocp.fix_state(Attachment.END, X1, goal[0])
    ocp.fix_state(Attachment.END, X2, goal[1])
    ocp.fix_state(Attachment.END, YAW_RATE, 0.0)
    ocp.fix_state(Attachment.END, SPEED, speed)
    ocp.fix_control(Attachment.END, RUDDER, 0.0)
    ocp.fix_control(Attachment.END, ACCELERATION, 0.0)

    ocp.bound_control(RUDDER, -model.max_rudder, model.max_rudder)
    ocp.bound_state(SPEED, 0.0, model.max_speed)
    ocp.bound_control(ACCELERATION, lower=0.0)
    return ocp
