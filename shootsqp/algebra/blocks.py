"""Block-sparse matrices laid out along the shooting structure."""

from dataclasses import dataclass
import numpy as np
import scipy.sparse
from numpy.typing import NDArray


@dataclass
class Block:
    """Dense block placed at rows [row, row + k) and the given columns."""

    row: int
    columns: NDArray  # (c,) column indices
    values: NDArray   # (k, c)


class BlockSparseMatrix:
    """
    Matrix stored as a list of dense blocks.

    Constraint Jacobians of a multiple shooting transcription have one band
    of blocks per interval; keeping them as blocks lets the QP build a sparse
    KKT system without ever forming the dense matrix.
    """

    def __init__(self, shape: tuple[int, int]):
        self.shape = shape
        self.blocks: list[Block] = []

    def __repr__(self) -> str:
        return (
            f"<BlockSparseMatrix {self.shape[0]}x{self.shape[1]}, "
            f"{len(self.blocks)} blocks, nnz={self.nnz}>"
        )

    @property
    def nnz(self) -> int:
        return int(sum(block.values.size for block in self.blocks))

    def add_block(self, row: int, columns, values: NDArray) -> None:
        """Add (accumulate) a dense block at `row` and `columns`."""
        columns = np.asarray(columns, dtype=int).reshape(-1)
        values = np.asarray(values, dtype=float).reshape(-1, columns.size)
        if row < 0 or row + values.shape[0] > self.shape[0]:
            raise IndexError(f"block rows {row}:{row + values.shape[0]} out of range")
        if columns.size and (columns.min() < 0 or columns.max() >= self.shape[1]):
            raise IndexError("block columns out of range")
        self.blocks.append(Block(row=row, columns=columns, values=values))

    def tocoo(self) -> scipy.sparse.coo_matrix:
        """Convert to a scipy COO matrix (duplicate entries are summed)."""
        if not self.blocks:
            return scipy.sparse.coo_matrix(self.shape)
        rows, cols, data = [], [], []
        for block in self.blocks:
            k, c = block.values.shape
            rows.append(np.repeat(np.arange(block.row, block.row + k), c))
            cols.append(np.tile(block.columns, k))
            data.append(block.values.ravel())
        return scipy.sparse.coo_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=self.shape,
        )

    def tocsr(self) -> scipy.sparse.csr_matrix:
        return self.tocoo().tocsr()

    def toarray(self) -> NDArray:
        return self.tocoo().toarray()

    def matvec(self, x: NDArray) -> NDArray:
        """Compute A @ x block by block."""
        y = np.zeros(self.shape[0])
        for block in self.blocks:
            k = block.values.shape[0]
            y[block.row:block.row + k] += block.values @ x[block.columns]
        return y

    def rmatvec(self, y: NDArray) -> NDArray:
        """Compute A.T @ y block by block."""
        x = np.zeros(self.shape[1])
        for block in self.blocks:
            k = block.values.shape[0]
            np.add.at(x, block.columns, block.values.T @ y[block.row:block.row + k])
        return x

    def __matmul__(self, x: NDArray) -> NDArray:
        """Support A @ x syntax."""
        return self.matvec(x)


class SymmetricBlockMatrix:
    """
    Symmetric matrix assembled from dense blocks on index sets.

    Blocks sharing indices are summed; with a partition of the variables this
    is a block-diagonal matrix.
    """

    def __init__(self, size: int):
        self.size = size
        self.shape = (size, size)
        self.blocks: list[tuple[NDArray, NDArray]] = []

    def add_block(self, indices, values: NDArray) -> None:
        indices = np.asarray(indices, dtype=int).reshape(-1)
        values = np.asarray(values, dtype=float).reshape(indices.size, indices.size)
        self.blocks.append((indices, values))

    def tocoo(self) -> scipy.sparse.coo_matrix:
        rows, cols, data = [], [], []
        for indices, values in self.blocks:
            k = indices.size
            rows.append(np.repeat(indices, k))
            cols.append(np.tile(indices, k))
            data.append(values.ravel())
        if not rows:
            return scipy.sparse.coo_matrix(self.shape)
        return scipy.sparse.coo_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
            shape=self.shape,
        )

    def tocsr(self) -> scipy.sparse.csr_matrix:
        return self.tocoo().tocsr()

    def toarray(self) -> NDArray:
        return self.tocoo().toarray()

    def matvec(self, x: NDArray) -> NDArray:
        y = np.zeros(self.size)
        for indices, values in self.blocks:
            np.add.at(y, indices, values @ x[indices])
        return y

    def __matmul__(self, x: NDArray) -> NDArray:
        return self.matvec(x)
