"""Finite difference Jacobians for callbacks without analytic derivatives."""

from typing import Callable
import numpy as np
from numpy.typing import NDArray


def central_difference(
    fun: Callable[[NDArray], NDArray],
    x: NDArray,
    eps: float = 1e-6,
) -> NDArray:
    """
    Central difference Jacobian of a vector function.

    Args:
        fun: Function mapping (k,) to (m,) (scalars are promoted to (1,))
        x: Evaluation point (k,)
        eps: Relative perturbation size

    Returns:
        Jacobian (m, k)
    """
    x = np.asarray(x, dtype=float)
    f0 = np.atleast_1d(np.asarray(fun(x), dtype=float))
    jac = np.zeros((f0.size, x.size))

    for j in range(x.size):
        h = eps * max(1.0, abs(x[j]))
        x_plus = x.copy()
        x_minus = x.copy()
        x_plus[j] += h
        x_minus[j] -= h
        f_plus = np.atleast_1d(np.asarray(fun(x_plus), dtype=float))
        f_minus = np.atleast_1d(np.asarray(fun(x_minus), dtype=float))
        jac[:, j] = (f_plus - f_minus) / (2.0 * h)

    return jac


def split_jacobian(
    fun: Callable[[NDArray, NDArray, NDArray], NDArray],
    x: NDArray,
    u: NDArray,
    p: NDArray,
    eps: float = 1e-6,
) -> tuple[NDArray, NDArray, NDArray]:
    """
    Jacobians of fun(x, u, p) with respect to each argument.

    Returns:
        (∂fun/∂x, ∂fun/∂u, ∂fun/∂p)
    """
    nx, nu = x.size, u.size

    def stacked(z: NDArray) -> NDArray:
        return fun(z[:nx], z[nx:nx + nu], z[nx + nu:])

    jac = central_difference(stacked, np.concatenate([x, u, p]), eps)
    return jac[:, :nx], jac[:, nx:nx + nu], jac[:, nx + nu:]
