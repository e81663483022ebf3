"""Dense linear algebra backend using NumPy/SciPy."""

import warnings
from typing import Any
import numpy as np
import scipy.linalg
import scipy.sparse
from numpy.typing import NDArray


class DenseFactorization:
    """LU factors from scipy.linalg.lu_factor."""

    def __init__(self, lu_piv: tuple[NDArray, NDArray]):
        self.lu_piv = lu_piv

    def solve(self, b: NDArray) -> NDArray:
        return scipy.linalg.lu_solve(self.lu_piv, b)


class DenseBackend:
    """NumPy/SciPy implementation of linear algebra operations."""

    def factorize(self, K: Any) -> DenseFactorization:
        """
        Compute LU factorization using scipy.

        Raises:
            numpy.linalg.LinAlgError: if a pivot is exactly zero
        """
        if scipy.sparse.issparse(K):
            K = K.toarray()
        with warnings.catch_warnings():
            warnings.simplefilter("error", scipy.linalg.LinAlgWarning)
            try:
                lu_piv = scipy.linalg.lu_factor(K, check_finite=True)
            except scipy.linalg.LinAlgWarning as err:
                raise np.linalg.LinAlgError(str(err)) from err
        if np.any(np.diag(lu_piv[0]) == 0.0):
            raise np.linalg.LinAlgError("singular matrix")
        return DenseFactorization(lu_piv)
