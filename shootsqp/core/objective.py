"""Cost functional: Lagrange (integrated) and Mayer (terminal) terms."""

from dataclasses import dataclass
from typing import Callable, Optional, Sequence
import numpy as np
from numpy.typing import NDArray

from shootsqp.core.errors import MalformedProblem, NumericFault
from shootsqp.utils.differences import central_difference, split_jacobian


@dataclass
class TermLinearization:
    """Value and gradient of a cost term at one point."""

    value: float
    grad_x: NDArray                         # (n,)
    grad_u: NDArray                         # (m,)
    grad_p: NDArray                         # (n_p,)
    residual_jacobian: Optional[NDArray] = None  # (k, n + m + n_p) for least squares

    def __add__(self, other: "TermLinearization") -> "TermLinearization":
        if self.residual_jacobian is None or other.residual_jacobian is None:
            jac = None
        else:
            jac = np.vstack([self.residual_jacobian, other.residual_jacobian])
        return TermLinearization(
            value=self.value + other.value,
            grad_x=self.grad_x + other.grad_x,
            grad_u=self.grad_u + other.grad_u,
            grad_p=self.grad_p + other.grad_p,
            residual_jacobian=jac,
        )


def _zero_linearization(n: int, m: int, n_p: int) -> TermLinearization:
    return TermLinearization(
        value=0.0,
        grad_x=np.zeros(n),
        grad_u=np.zeros(m),
        grad_p=np.zeros(n_p),
        residual_jacobian=np.zeros((0, n + m + n_p)),
    )


def _check_finite(value, what: str) -> None:
    if not np.all(np.isfinite(value)):
        raise NumericFault(f"{what} evaluated to a non-finite value")


class LagrangeTerm:
    """General running cost L(t, x, u, p)."""

    least_squares = False

    def __init__(
        self,
        value: Callable[[float, NDArray, NDArray, NDArray], float],
        gradient: Optional[Callable] = None,
    ):
        """
        Args:
            value: L(t, x, u, p)
            gradient: Optional (t, x, u, p) -> (∂L/∂x, ∂L/∂u, ∂L/∂p)
        """
        self.value = value
        self.gradient = gradient

    def linearize(self, t, x, u, p) -> TermLinearization:
        L = float(self.value(t, x, u, p))
        _check_finite(L, "Lagrange term")
        if self.gradient is not None:
            gx, gu, gp = (np.asarray(g, dtype=float).reshape(-1) for g in self.gradient(t, x, u, p))
        else:
            gx, gu, gp = (J[0] for J in split_jacobian(
                lambda x_, u_, p_: self.value(t, x_, u_, p_), x, u, p
            ))
        return TermLinearization(L, gx, gu, gp.reshape(p.size))


class LeastSquaresTerm:
    """
    Running cost L = Σ_k w_k r_k(t, x, u, p)².

    The residual Jacobian is kept so that a Gauss-Newton Hessian can be formed.
    """

    least_squares = True

    def __init__(
        self,
        residual: Callable[[float, NDArray, NDArray, NDArray], NDArray],
        jacobian: Optional[Callable] = None,
        weights: Optional[Sequence[float]] = None,
    ):
        """
        Args:
            residual: r(t, x, u, p), shape (k,)
            jacobian: Optional (t, x, u, p) -> (∂r/∂x, ∂r/∂u, ∂r/∂p)
            weights: Optional non-negative weights w_k (default ones)
        """
        self.residual = residual
        self.jacobian = jacobian
        self.weights = None if weights is None else np.asarray(weights, dtype=float)
        if self.weights is not None and np.any(self.weights < 0):
            raise MalformedProblem("least-squares weights must be non-negative")

    def linearize(self, t, x, u, p) -> TermLinearization:
        r = np.atleast_1d(np.asarray(self.residual(t, x, u, p), dtype=float))
        _check_finite(r, "least-squares residual")
        if self.jacobian is not None:
            rx, ru, rp = (np.asarray(J, dtype=float) for J in self.jacobian(t, x, u, p))
            R = np.hstack([
                rx.reshape(r.size, x.size),
                ru.reshape(r.size, u.size),
                rp.reshape(r.size, p.size),
            ])
        else:
            R = np.hstack(split_jacobian(
                lambda x_, u_, p_: self.residual(t, x_, u_, p_), x, u, p
            ))

        # Fold the weights into the residual: r̃ = √w r
        if self.weights is not None:
            sqrt_w = np.sqrt(self.weights)
            r = sqrt_w * r
            R = sqrt_w[:, None] * R

        grad = 2.0 * R.T @ r
        n, m = x.size, u.size
        return TermLinearization(
            value=float(r @ r),
            grad_x=grad[:n],
            grad_u=grad[n:n + m],
            grad_p=grad[n + m:],
            residual_jacobian=np.sqrt(2.0) * R,
        )


class MayerTerm:
    """Terminal cost M(x(T), p)."""

    least_squares = False

    def __init__(
        self,
        value: Callable[[NDArray, NDArray], float],
        gradient: Optional[Callable] = None,
    ):
        self.value = value
        self.gradient = gradient

    def linearize(self, x, p) -> TermLinearization:
        M = float(self.value(x, p))
        _check_finite(M, "Mayer term")
        if self.gradient is not None:
            gx, gp = (np.asarray(g, dtype=float).reshape(-1) for g in self.gradient(x, p))
        else:
            n = x.size
            g = central_difference(
                lambda z: self.value(z[:n], z[n:]), np.concatenate([x, p])
            )[0]
            gx, gp = g[:n], g[n:]
        return TermLinearization(M, gx, np.zeros(0), gp.reshape(p.size))


class LeastSquaresMayerTerm:
    """Terminal cost M = ||r(x(T), p)||²."""

    least_squares = True

    def __init__(
        self,
        residual: Callable[[NDArray, NDArray], NDArray],
        jacobian: Optional[Callable] = None,
    ):
        self.residual = residual
        self.jacobian = jacobian

    def linearize(self, x, p) -> TermLinearization:
        r = np.atleast_1d(np.asarray(self.residual(x, p), dtype=float))
        _check_finite(r, "least-squares Mayer residual")
        n = x.size
        if self.jacobian is not None:
            rx, rp = (np.asarray(J, dtype=float) for J in self.jacobian(x, p))
            R = np.hstack([rx.reshape(r.size, n), rp.reshape(r.size, p.size)])
        else:
            R = central_difference(
                lambda z: self.residual(z[:n], z[n:]), np.concatenate([x, p])
            )
        grad = 2.0 * R.T @ r
        return TermLinearization(
            value=float(r @ r),
            grad_x=grad[:n],
            grad_u=np.zeros(0),
            grad_p=grad[n:],
            residual_jacobian=np.sqrt(2.0) * R,
        )


class CostFunctional:
    """
    Additively separable objective J = Σ ∫ L dt + Σ M(x(T), p).

    Gauss-Newton Hessians are available when every term is least squares:
    with R the stacked (√2-scaled) residual Jacobians, ∇²J ≈ RᵀR.
    """

    def __init__(self, lagrange: Sequence = (), mayer: Sequence = ()):
        self.lagrange = list(lagrange)
        self.mayer = list(mayer)

    @property
    def is_least_squares(self) -> bool:
        return all(term.least_squares for term in self.lagrange + self.mayer)

    @property
    def has_lagrange(self) -> bool:
        return len(self.lagrange) > 0

    def lagrange_linearization(self, t, x, u, p) -> TermLinearization:
        """Sum of all running cost terms at (t, x, u, p)."""
        total = _zero_linearization(x.size, u.size, p.size)
        for term in self.lagrange:
            total = total + term.linearize(t, x, u, p)
        return total

    def mayer_linearization(self, x, p) -> TermLinearization:
        """Sum of all terminal cost terms at (x(T), p)."""
        total = _zero_linearization(x.size, 0, p.size)
        for term in self.mayer:
            total = total + term.linearize(x, p)
        return total
