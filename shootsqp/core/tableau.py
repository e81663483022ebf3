"""Butcher tableaux for explicit Runge-Kutta methods."""

from dataclasses import dataclass
from functools import cached_property
import numpy as np
from numpy.typing import NDArray


@dataclass(frozen=True)
class ButcherTableau:
    """Runge-Kutta tableau (A, b, c)."""

    A: NDArray  # (s, s) - internal stage coefficients
    b: NDArray  # (s,)   - quadrature weights
    c: NDArray  # (s,)   - abscissae
    order: int = 1

    def __post_init__(self) -> None:
        s = self.A.shape[0]
        if self.A.shape != (s, s) or self.b.shape != (s,) or self.c.shape != (s,):
            raise ValueError(
                f"inconsistent tableau shapes A{self.A.shape}, "
                f"b{self.b.shape}, c{self.c.shape}"
            )
        if not np.isclose(self.b.sum(), 1.0):
            raise ValueError("quadrature weights must sum to one")

    @cached_property
    def s(self) -> int:
        """Number of internal stages."""
        return self.A.shape[0]

    @cached_property
    def is_explicit(self) -> bool:
        """Whether A is strictly lower triangular."""
        return bool(np.allclose(self.A, np.tril(self.A, -1)))
