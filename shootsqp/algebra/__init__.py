"""Linear algebra backend abstractions."""

from shootsqp.algebra.protocols import LinearAlgebraBackend
from shootsqp.algebra.dense import DenseBackend
from shootsqp.algebra.sparse import SparseBackend
from shootsqp.algebra.blocks import BlockSparseMatrix, SymmetricBlockMatrix


def create_backend(name: str) -> LinearAlgebraBackend:
    """Return the backend registered under `name`."""
    if name == "dense":
        return DenseBackend()
    if name == "sparse":
        return SparseBackend()
    raise ValueError(f"unknown linear algebra backend '{name}'")


__all__ = [
    "LinearAlgebraBackend",
    "DenseBackend",
    "SparseBackend",
    "BlockSparseMatrix",
    "SymmetricBlockMatrix",
    "create_backend",
]
