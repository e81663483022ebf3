"""Linear algebra backend protocol."""

from typing import Protocol, Any
from numpy.typing import NDArray


class Factorization(Protocol):
    """Reusable factorization of a square system."""

    def solve(self, b: NDArray) -> NDArray:
        """
        Solve the factored system for one or more right-hand sides.

        Args:
            b: Right-hand side (k,) or (k, r)

        Returns:
            Solution with the shape of b
        """
        ...


class LinearAlgebraBackend(Protocol):
    """
    Protocol for the KKT factorizations used by the QP solver.
    Allows swapping between dense and sparse implementations.
    """

    def factorize(self, K: Any) -> Factorization:
        """
        Factor a square matrix.

        Args:
            K: Matrix to factor (scipy.sparse matrix or ndarray)

        Returns:
            Factorization object

        Raises:
            numpy.linalg.LinAlgError: if the matrix is singular
        """
        ...
