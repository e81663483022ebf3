"""Hessian approximations for the SQP subproblem."""

import logging

import numpy as np
from numpy.typing import NDArray

from shootsqp.algebra.blocks import SymmetricBlockMatrix
from shootsqp.config import SolverConfig
from shootsqp.core.errors import MalformedProblem
from shootsqp.discretization.shooting import ShootingDiscretization

logger = logging.getLogger(__name__)


def node_partition(discretization: ShootingDiscretization) -> list[NDArray]:
    """
    Partition of w into one index set per node and one for the parameters.

    Node i owns [x_i, u_i] when it carries a control and [x_i] otherwise.
    """
    layout = discretization.layout
    partition = []
    for i in range(layout.N + 1):
        parts = [layout.x_index(i)]
        if i < layout.control_nodes:
            parts.append(layout.u_index(i))
        partition.append(np.concatenate(parts))
    if layout.n_p:
        partition.append(layout.p_index)
    return partition


class BlockBFGS:
    """
    Damped BFGS kept separately on every block of a partition of w.

    The Lagrangian of the multiple shooting NLP is separable across nodes
    apart from the matching coupling, so a block-diagonal quasi-Newton
    matrix keeps the QP sparse. Powell damping keeps each block positive
    definite when the curvature sᵀy is small or negative.
    """

    def __init__(
        self,
        partition: list[NDArray],
        size: int,
        regularization: float = 1e-8,
        damping: float = 0.2,
    ):
        self.partition = partition
        self.size = size
        self.regularization = regularization
        self.damping = damping
        self.reset()

    def reset(self) -> None:
        """Restart every block from the identity."""
        self.blocks = [np.eye(index.size) for index in self.partition]
        self.scaled = [False] * len(self.partition)
        self.skipped = 0

    def matrix(self, lin=None) -> SymmetricBlockMatrix:
        H = SymmetricBlockMatrix(self.size)
        for index, B in zip(self.partition, self.blocks):
            H.add_block(index, B + self.regularization * np.eye(index.size))
        return H

    def update(self, s: NDArray, y: NDArray) -> None:
        """
        Apply one damped BFGS update per block.

        Args:
            s: Step w⁺ - w
            y: ∇L(w⁺, λ) - ∇L(w, λ)
        """
        for k, index in enumerate(self.partition):
            s_k, y_k = s[index], y[index]
            B = self.blocks[k]
            Bs = B @ s_k
            sBs = float(s_k @ Bs)
            if sBs <= 1e-14 * max(1.0, float(s_k @ s_k)):
                continue

            sy = float(s_k @ y_k)
            if not self.scaled[k]:
                self.scaled[k] = True
                if sy > 0.0:
                    # Shanno-Phua: size the identity to the observed curvature first
                    B = self.blocks[k] = (float(y_k @ y_k) / sy) * B
                    Bs = B @ s_k
                    sBs = float(s_k @ Bs)
            if sy < self.damping * sBs:
                theta = (1.0 - self.damping) * sBs / (sBs - sy)
                r = theta * y_k + (1.0 - theta) * Bs
            else:
                r = y_k
            sr = float(s_k @ r)
            if sr <= 1e-14 * sBs:
                self.skipped += 1
                logger.debug(f"BFGS block {k} skipped: sᵀr = {sr:.3e}")
                continue

            self.blocks[k] = B - np.outer(Bs, Bs) / sBs + np.outer(r, r) / sr


class GaussNewtonHessian:
    """
    Gauss-Newton Hessian 2 RᵀR of a least-squares cost.

    Stage blocks come from the integrator quadrature, the terminal block
    from the Mayer residuals. Constraint curvature is ignored.
    """

    def __init__(self, discretization: ShootingDiscretization, regularization: float = 1e-8):
        self.discretization = discretization
        self.regularization = regularization
        self.partition = node_partition(discretization)

    def reset(self) -> None:
        pass

    def update(self, s: NDArray, y: NDArray) -> None:
        pass

    def matrix(self, lin) -> SymmetricBlockMatrix:
        disc = self.discretization
        layout = disc.layout
        H = SymmetricBlockMatrix(layout.size)
        for index in self.partition:
            H.add_block(index, self.regularization * np.eye(index.size))
        for stage, block in zip(disc.stages, lin.blocks):
            if block.cost_hessian is not None:
                H.add_block(stage.columns, block.cost_hessian)
        if lin.mayer_hessian is not None:
            index = np.concatenate([layout.x_index(layout.N), layout.p_index])
            H.add_block(index, lin.mayer_hessian)
        return H


def hessian_kind(config: SolverConfig, cost) -> str:
    """
    Resolve config.hessian against the cost.

    "auto" picks Gauss-Newton for a non-empty least-squares cost and BFGS
    otherwise.
    """
    if config.hessian != "auto":
        return config.hessian
    if (cost.lagrange or cost.mayer) and cost.is_least_squares:
        return "gauss_newton"
    return "bfgs"


def create_hessian(config: SolverConfig, discretization: ShootingDiscretization):
    """
    Select the Hessian approximation named in the configuration.

    Raises:
        MalformedProblem: if Gauss-Newton is requested for a cost that is not
            least squares
    """
    if hessian_kind(config, discretization.ocp.cost) == "gauss_newton":
        if not discretization.ocp.cost.is_least_squares:
            raise MalformedProblem("Gauss-Newton Hessian needs a least-squares cost")
        return GaussNewtonHessian(discretization, regularization=config.regularization)
    return BlockBFGS(
        node_partition(discretization),
        discretization.num_variables,
        regularization=config.regularization,
    )
