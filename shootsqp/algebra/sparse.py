"""Sparse linear algebra backend using scipy.sparse."""

from typing import Any
import numpy as np
import scipy.sparse
import scipy.sparse.linalg
from numpy.typing import NDArray


class SparseFactorization:
    """SuperLU factors from scipy.sparse.linalg.splu."""

    def __init__(self, lu: scipy.sparse.linalg.SuperLU):
        self.lu = lu

    def solve(self, b: NDArray) -> NDArray:
        return self.lu.solve(np.asarray(b, dtype=float))


class SparseBackend:
    """Sparse LU of the KKT matrix; keeps the shooting band structure."""

    def factorize(self, K: Any) -> SparseFactorization:
        """
        Compute a sparse LU factorization.

        Raises:
            numpy.linalg.LinAlgError: if SuperLU reports a singular matrix
        """
        K = scipy.sparse.csc_matrix(K)
        try:
            lu = scipy.sparse.linalg.splu(K)
        except RuntimeError as err:
            raise np.linalg.LinAlgError(str(err)) from err
        return SparseFactorization(lu)

