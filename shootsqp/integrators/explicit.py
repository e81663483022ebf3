"""Fixed-step explicit Runge-Kutta integrator with forward sensitivities."""

from typing import Optional
import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.core.errors import MalformedProblem, NumericFault
from shootsqp.core.objective import CostFunctional
from shootsqp.core.tableau import ButcherTableau
from shootsqp.integrators.base import Integrator, SensitivityBlock

logger = logging.getLogger(__name__)


class ExplicitIntegrator(Integrator):
    """
    Explicit RK on the state and its variational equation.

    Differentiating the stage equations

        Z_i = x + h Σ_{j<i} a_{ij} K_j,    K_i = f(t_i, Z_i, u_i, p)
        x⁺  = x + h Σ_i b_i K_i

    with respect to the local stage variables w gives

        ∂Z_i = S + h Σ_{j<i} a_{ij} ∂K_j,  ∂K_i = f_x ∂Z_i + f_u ∂u_i (+ f_p)
        S⁺   = S + h Σ_i b_i ∂K_i

    which is the same RK scheme applied to dS/dt = f_x S + f_u ∂u/∂w, started
    from S = [I, 0]. The result is the exact derivative of the discrete map.
    """

    def __init__(self, tableau: ButcherTableau, steps: int = 1):
        if not tableau.is_explicit:
            raise ValueError("ExplicitIntegrator needs a strictly lower triangular tableau")
        if steps < 1:
            raise ValueError("steps must be positive")
        self.tableau = tableau
        self.steps = steps

    def integrate(
        self,
        dynamics,
        t0: float,
        t1: float,
        x0: NDArray,
        u0: NDArray,
        p: NDArray,
        u1: Optional[NDArray] = None,
        free_parameters: bool = False,
        cost: Optional[CostFunctional] = None,
        gauss_newton: bool = False,
        record: bool = False,
        stage: int = 0,
    ) -> SensitivityBlock:
        A, b, c = self.tableau.A, self.tableau.b, self.tableau.c
        s = self.tableau.s
        n, m = x0.size, u0.size
        linear = u1 is not None

        # Column layout of the local variables w = [x, u0, (u1), (p)]
        cu0 = n
        cu1 = n + m
        cp = n + m * (2 if linear else 1)
        n_p = p.size if free_parameters else 0
        nw = cp + n_p

        duration = t1 - t0
        h = duration / self.steps

        x = np.array(x0, dtype=float)
        S = np.zeros((n, nw))
        S[:, :n] = np.eye(n)

        with_cost = cost is not None and cost.has_lagrange
        q = 0.0
        dq = np.zeros(nw)
        Hq = np.zeros((nw, nw)) if with_cost and gauss_newton else None

        times = [t0] if record else None
        states = [x.copy()] if record else None

        K = np.zeros((s, n))
        dK = np.zeros((s, n, nw))

        for step in range(self.steps):
            t_n = t0 + step * h

            for i in range(s):
                # Z_i = x + h Σ_{j<i} a_ij K_j
                Z = x.copy()
                dZ = S.copy()
                for j in range(i):
                    if A[i, j] != 0.0:
                        Z += h * A[i, j] * K[j]
                        dZ += h * A[i, j] * dK[j]

                t_i = t_n + c[i] * h
                u_i, dU = self._control(u0, u1, (t_i - t0) / duration, nw, cu0, cu1)

                f, fx, fu = self._evaluate(dynamics, t_i, Z, u_i, p, n, m, stage)
                K[i] = f
                dK[i] = fx @ dZ + fu @ dU
                if n_p:
                    dK[i][:, cp:] += self._parameter_jacobian(dynamics, t_i, Z, u_i, p, stage)

                if with_cost:
                    lin = cost.lagrange_linearization(t_i, Z, u_i, p)
                    weight = h * b[i]
                    q += weight * lin.value
                    dq += weight * (lin.grad_x @ dZ + lin.grad_u @ dU)
                    if n_p:
                        dq[cp:] += weight * lin.grad_p
                    if Hq is not None:
                        R = lin.residual_jacobian
                        Jw = R[:, :n] @ dZ + R[:, n:n + m] @ dU
                        if n_p:
                            Jw[:, cp:] += R[:, n + m:]
                        Hq += weight * Jw.T @ Jw

            # x⁺ = x + h Σ b_i K_i
            x = x + h * (b @ K)
            S = S + h * np.tensordot(b, dK, axes=1)

            if not (np.all(np.isfinite(x)) and np.all(np.isfinite(S))):
                raise NumericFault(
                    f"integration diverged at t = {t_n + h:.6g}", stage=stage
                )

            if record:
                times.append(t_n + h)
                states.append(x.copy())

        if with_cost and not np.isfinite(q):
            raise NumericFault("running cost diverged", stage=stage)

        return SensitivityBlock(
            stage=stage,
            end_state=x,
            jacobian=S,
            control_columns=slice(cu0, cp),
            cost=q,
            cost_gradient=dq,
            cost_hessian=Hq,
            times=np.array(times) if record else None,
            states=np.array(states) if record else None,
        )

    @staticmethod
    def _control(
        u0: NDArray,
        u1: Optional[NDArray],
        theta: float,
        nw: int,
        cu0: int,
        cu1: int,
    ) -> tuple[NDArray, NDArray]:
        """Control value at relative time θ and its derivative ∂u/∂w (m, n_w)."""
        m = u0.size
        dU = np.zeros((m, nw))
        if u1 is None:
            dU[:, cu0:cu0 + m] = np.eye(m)
            return u0, dU

        dU[:, cu0:cu0 + m] = (1.0 - theta) * np.eye(m)
        dU[:, cu1:cu1 + m] = theta * np.eye(m)
        return (1.0 - theta) * u0 + theta * u1, dU

    @staticmethod
    def _evaluate(dynamics, t, x, u, p, n, m, stage):
        """Call the dynamics model and check the shapes and values it returns."""
        try:
            with np.errstate(divide="raise", invalid="raise", over="raise"):
                f, fx, fu = dynamics.evaluate(t, x, u, p)
        except (FloatingPointError, ZeroDivisionError, OverflowError) as err:
            raise NumericFault(f"dynamics undefined at t = {t:.6g}: {err}", stage=stage) from err
        except NumericFault as err:
            if err.stage is None:
                raise NumericFault(str(err), stage=stage) from err
            raise

        f = np.asarray(f, dtype=float).reshape(-1)
        fx = np.asarray(fx, dtype=float)
        fu = np.asarray(fu, dtype=float)
        if f.shape != (n,) or fx.shape != (n, n) or fu.size != n * m:
            raise MalformedProblem(
                f"dynamics returned shapes {f.shape}, {fx.shape}, {fu.shape}; "
                f"expected ({n},), ({n}, {n}), ({n}, {m})"
            )
        fu = fu.reshape(n, m)
        if not (np.all(np.isfinite(f)) and np.all(np.isfinite(fx)) and np.all(np.isfinite(fu))):
            raise NumericFault(f"dynamics non-finite at t = {t:.6g}", stage=stage)
        return f, fx, fu

    @staticmethod
    def _parameter_jacobian(dynamics, t, x, u, p, stage):
        fp = np.asarray(dynamics.parameter_jacobian(t, x, u, p), dtype=float)
        fp = fp.reshape(x.size, p.size)
        if not np.all(np.isfinite(fp)):
            raise NumericFault(f"parameter Jacobian non-finite at t = {t:.6g}", stage=stage)
        return fp
