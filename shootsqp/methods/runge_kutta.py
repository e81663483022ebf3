"""Standard explicit Runge-Kutta tableaux."""

from typing import Callable

import numpy as np
from shootsqp.core.tableau import ButcherTableau


def explicit_euler() -> ButcherTableau:
    """Forward Euler method (1st order)."""
    A = np.array([[0.0]])
    b = np.array([1.0])
    c = np.array([0.0])
    return ButcherTableau(A=A, b=b, c=c, order=1)


def heun() -> ButcherTableau:
    """Heun's method (2nd order)."""
    A = np.array([
        [0.0, 0.0],
        [1.0, 0.0],
    ])
    b = np.array([0.5, 0.5])
    c = np.array([0.0, 1.0])
    return ButcherTableau(A=A, b=b, c=c, order=2)


def rk3() -> ButcherTableau:
    """Kutta's third-order method."""
    A = np.array([
        [0.0, 0.0, 0.0],
        [0.5, 0.0, 0.0],
        [-1.0, 2.0, 0.0],
    ])
    b = np.array([1.0/6.0, 2.0/3.0, 1.0/6.0])
    c = np.array([0.0, 0.5, 1.0])
    return ButcherTableau(A=A, b=b, c=c, order=3)


def rk4() -> ButcherTableau:
    """Classic 4th-order Runge-Kutta method."""
    A = np.array([
        [0.0, 0.0, 0.0, 0.0],
        [0.5, 0.0, 0.0, 0.0],
        [0.0, 0.5, 0.0, 0.0],
        [0.0, 0.0, 1.0, 0.0],
    ])
    b = np.array([1.0/6.0, 1.0/3.0, 1.0/3.0, 1.0/6.0])
    c = np.array([0.0, 0.5, 0.5, 1.0])
    return ButcherTableau(A=A, b=b, c=c, order=4)


TABLEAUX: dict[str, Callable[[], ButcherTableau]] = {
    "euler": explicit_euler,
    "heun": heun,
    "rk3": rk3,
    "rk4": rk4,
}


def get_tableau(name: str) -> ButcherTableau:
    """Look up a tableau by name."""
    try:
        return TABLEAUX[name]()
    except KeyError:
        raise ValueError(
            f"unknown integrator '{name}'; choose one of {sorted(TABLEAUX)}"
        ) from None
