"""NLP assembly: integrate every stage and linearize the transcribed problem."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional
import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.algebra.blocks import BlockSparseMatrix
from shootsqp.config import SolverConfig
from shootsqp.discretization.shooting import ShootingDiscretization
from shootsqp.integrators.base import Integrator, SensitivityBlock
from shootsqp.optimization.hessian import hessian_kind
from shootsqp.optimization.subproblem import Multipliers, QuadraticProgram

logger = logging.getLogger(__name__)


@dataclass
class Linearization:
    """First-order model of the transcribed NLP at one iterate."""

    w: NDArray
    cost: float
    gradient: NDArray             # ∇f (n,)
    c_eq: NDArray                 # matching rows, then general equalities
    J_eq: BlockSparseMatrix
    h_in: NDArray                 # general inequality values
    J_in: BlockSparseMatrix
    lower_in: NDArray
    upper_in: NDArray
    blocks: list[SensitivityBlock]
    mayer_hessian: Optional[NDArray] = None  # Gauss-Newton block on [x_N, (p)]

    def inequality_excess(self) -> NDArray:
        """Amount by which each general inequality is violated (>= 0)."""
        return np.maximum(
            np.maximum(self.lower_in - self.h_in, self.h_in - self.upper_in), 0.0
        )

    def violation(self) -> float:
        """Max-norm of the constraint violation."""
        parts = [np.abs(self.c_eq), self.inequality_excess()]
        values = np.concatenate(parts)
        return float(values.max()) if values.size else 0.0

    def l1_violation(self) -> float:
        return float(np.abs(self.c_eq).sum() + self.inequality_excess().sum())

    def lagrangian_gradient(self, multipliers: Multipliers) -> NDArray:
        """∇f - J_eqᵀλ_eq - J_inᵀλ_in (simple bounds excluded)."""
        return (
            self.gradient
            - self.J_eq.rmatvec(multipliers.equality)
            - self.J_in.rmatvec(multipliers.inequality)
        )

    def stationarity(self, multipliers: Multipliers) -> float:
        """Max-norm of the full Lagrangian gradient, simple bounds included."""
        residual = self.lagrangian_gradient(multipliers) - multipliers.bounds
        return float(np.max(np.abs(residual))) if residual.size else 0.0


class NLPAssembler:
    """
    Builds the QP model of the multiple shooting NLP around an iterate.

    Constraint rows are ordered as
        equality:   [Φ_0 - x_1, ..., Φ_{N-1} - x_N, general equalities]
        inequality: [general inequalities in constraint-set order]
    """

    def __init__(
        self,
        discretization: ShootingDiscretization,
        integrator: Integrator,
        config: SolverConfig,
    ):
        self.discretization = discretization
        self.integrator = integrator
        self.config = config
        self.gauss_newton = hessian_kind(config, discretization.ocp.cost) == "gauss_newton"
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def num_equalities(self) -> int:
        return self.discretization.num_matching + self.discretization.num_equalities

    @property
    def num_inequalities(self) -> int:
        return self.discretization.num_inequalities

    def close(self) -> None:
        """Shut down the stage worker pool, if one was started."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def integrate_stages(self, w: NDArray, record: bool = False) -> list[SensitivityBlock]:
        """
        Integrate every shooting interval at iterate w.

        Stages only read their own slice of w and return their own block, so
        with config.workers > 1 they are mapped over a thread pool and joined
        before assembly.
        """
        disc = self.discretization
        cost = disc.ocp.cost

        def run(stage) -> SensitivityBlock:
            x0, u0, u1, p = stage.inputs(w, disc.layout, disc.fixed_parameters)
            return self.integrator.integrate(
                disc.ocp.dynamics,
                stage.t0,
                stage.t1,
                x0,
                u0,
                p,
                u1=u1,
                free_parameters=disc.layout.n_p > 0,
                cost=cost,
                gauss_newton=self.gauss_newton,
                record=record,
                stage=stage.index,
            )

        if self.config.workers > 1 and len(disc.stages) > 1:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.config.workers)
            return list(self._executor.map(run, disc.stages))
        return [run(stage) for stage in disc.stages]

    def linearize(self, w: NDArray) -> Linearization:
        """
        Evaluate cost, constraints and their first derivatives at w.

        Raises:
            NumericFault: if any stage integration or callback fails
        """
        disc = self.discretization
        layout = disc.layout
        n = layout.n
        blocks = self.integrate_stages(w)

        # Cost: Σ stage Lagrange integrals + Mayer terms at x_N
        cost = 0.0
        gradient = np.zeros(layout.size)
        for stage, block in zip(disc.stages, blocks):
            cost += block.cost
            np.add.at(gradient, stage.columns, block.cost_gradient)

        mayer_hessian = None
        if disc.ocp.cost.mayer:
            x_end = w[layout.x_index(layout.N)]
            p = disc.parameters(w)
            mayer = disc.ocp.cost.mayer_linearization(x_end, p)
            cost += mayer.value
            gradient[layout.x_index(layout.N)] += mayer.grad_x
            if layout.n_p:
                gradient[layout.p_index] += mayer.grad_p
            if self.gauss_newton:
                R = mayer.residual_jacobian[:, :n + layout.n_p]
                mayer_hessian = R.T @ R

        # Equalities: matching rows then general equalities
        m_eq = self.num_equalities
        c_eq = np.zeros(m_eq)
        J_eq = BlockSparseMatrix((m_eq, layout.size))
        for stage, block in zip(disc.stages, blocks):
            row = stage.index * n
            c_eq[row:row + n] = block.end_state - w[layout.x_index(stage.index + 1)]
            J_eq.add_block(row, stage.columns, block.jacobian)
            J_eq.add_block(row, layout.x_index(stage.index + 1), -np.eye(n))

        row = disc.num_matching
        for item in disc.equalities:
            h, J, columns = self._linearize_node(item, w)
            c_eq[row:row + item.size] = h - item.constraint.lower
            J_eq.add_block(row, columns, J)
            row += item.size

        # General inequalities
        m_in = self.num_inequalities
        h_in = np.zeros(m_in)
        lower_in = np.zeros(m_in)
        upper_in = np.zeros(m_in)
        J_in = BlockSparseMatrix((m_in, layout.size))
        row = 0
        for item in disc.inequalities:
            h, J, columns = self._linearize_node(item, w)
            h_in[row:row + item.size] = h
            lower_in[row:row + item.size] = item.constraint.lower
            upper_in[row:row + item.size] = item.constraint.upper
            J_in.add_block(row, columns, J)
            row += item.size

        return Linearization(
            w=w.copy(),
            cost=float(cost),
            gradient=gradient,
            c_eq=c_eq,
            J_eq=J_eq,
            h_in=h_in,
            J_in=J_in,
            lower_in=lower_in,
            upper_in=upper_in,
            blocks=blocks,
            mayer_hessian=mayer_hessian,
        )

    def _linearize_node(self, item, w: NDArray) -> tuple[NDArray, NDArray, NDArray]:
        """Residual, Jacobian and columns of a general constraint at its node."""
        disc = self.discretization
        t, x, u, p = disc.node_point(w, item.node)
        h, hx, hu, hp = item.constraint.linearize(t, x, u, p)
        cx, cu, cp = disc.node_columns(item.node)
        if disc.layout.n_p:
            return h, np.hstack([hx, hu, hp]), np.concatenate([cx, cu, cp])
        return h, np.hstack([hx, hu]), np.concatenate([cx, cu])

    def build_qp(self, lin: Linearization, hessian) -> QuadraticProgram:
        """
        Quadratic model around the linearization point.

        Args:
            lin: Linearization at the current iterate
            hessian: Hessian approximation providing matrix(lin)

        Returns:
            QP in the step d = w⁺ - w
        """
        disc = self.discretization
        return QuadraticProgram(
            H=hessian.matrix(lin),
            g=lin.gradient.copy(),
            A_eq=lin.J_eq,
            b_eq=-lin.c_eq,
            A_in=lin.J_in,
            lbA=lin.lower_in - lin.h_in,
            ubA=lin.upper_in - lin.h_in,
            lb=disc.lower - lin.w,
            ub=disc.upper - lin.w,
        )
