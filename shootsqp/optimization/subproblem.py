"""Data structures exchanged between the assembler, the QP solver and the SQP loop."""

from dataclasses import dataclass, field
from typing import Any
import numpy as np
from numpy.typing import NDArray

from shootsqp.algebra.blocks import BlockSparseMatrix


@dataclass
class QuadraticProgram:
    """
    QP in the step d:

        min  ½ dᵀHd + gᵀd
        s.t. A_eq d = b_eq
             lbA <= A_in d <= ubA
             lb  <= d <= ub
    """

    H: Any                    # SymmetricBlockMatrix or anything with tocsr()
    g: NDArray                # (n,)
    A_eq: BlockSparseMatrix   # (m_eq, n)
    b_eq: NDArray             # (m_eq,)
    A_in: BlockSparseMatrix   # (m_in, n)
    lbA: NDArray              # (m_in,)
    ubA: NDArray              # (m_in,)
    lb: NDArray               # (n,)
    ub: NDArray               # (n,)

    @property
    def num_variables(self) -> int:
        return self.g.size

    @property
    def num_equalities(self) -> int:
        return self.b_eq.size

    @property
    def num_inequalities(self) -> int:
        return self.lbA.size


@dataclass
class Multipliers:
    """
    Dual variables of the transcribed problem.

    Sign convention: ∇f - J_eqᵀλ_eq - J_inᵀλ_in - λ_bounds = 0 at a KKT point,
    with λ_in and λ_bounds positive on active lower bounds and negative on
    active upper bounds.
    """

    equality: NDArray
    inequality: NDArray
    bounds: NDArray

    @classmethod
    def zeros(cls, m_eq: int, m_in: int, n: int) -> "Multipliers":
        return cls(np.zeros(m_eq), np.zeros(m_in), np.zeros(n))

    def max_abs(self) -> float:
        """Largest constraint multiplier (simple bounds excluded)."""
        values = np.concatenate([self.equality, self.inequality])
        return float(np.max(np.abs(values))) if values.size else 0.0

    def interpolate(self, other: "Multipliers", alpha: float) -> "Multipliers":
        """self + α (other - self)."""
        return Multipliers(
            equality=self.equality + alpha * (other.equality - self.equality),
            inequality=self.inequality + alpha * (other.inequality - self.inequality),
            bounds=self.bounds + alpha * (other.bounds - self.bounds),
        )


@dataclass
class QPSolution:
    """Step and multiplier estimates from one QP solve."""

    step: NDArray
    multipliers: Multipliers
    iterations: int
    objective: float
    active: list[int] = field(default_factory=list)
    elastic: bool = False
    linear_violation: float = 0.0  # l1 norm of the slacks in elastic mode
