import bisect

import numpy as np
import scipy.sparse  # type: ignore


class SparseMatrix:
    """
    Sparse square matrix assembled one element at a time.

    Storage:
    --------------------------------
    - Assembly form: for every row a list of column indices kept in strictly
      ascending order, with a parallel list of values.
    - Compact form (CSR): all rows flattened into one index buffer and one value
      buffer, with `row_start[i]:row_start[i + 1]` delimiting row i.
      It is built by `compress_data()` and is the only form `multiply()` reads.

    The matrix is not symmetrized implicitly. Callers needing a symmetric
    matrix add both (i, j) and (j, i).
    """

    def __init__(self, size):
        if size < 0:
            raise ValueError(f"size must be non-negative, got {size}")
        self.size = int(size)

        self.row_indices = [[] for _ in range(self.size)]
        self.row_values = [[] for _ in range(self.size)]

        self.row_start = None
        self.compact_indices = None
        self.compact_values = None
        self._csr = None

    def _check_index(self, i, j):
        if not (0 <= i < self.size and 0 <= j < self.size):
            raise IndexError(f"element ({i}, {j}) outside a {self.size}x{self.size} matrix")

    def add_to_element(self, i, j, value):
        """Accumulate `value` into element (i, j), inserting it in column order if absent."""
        self._check_index(i, j)
        indices = self.row_indices[i]
        k = bisect.bisect_left(indices, j)
        if k < len(indices) and indices[k] == j:
            self.row_values[i][k] += value
        else:
            indices.insert(k, j)
            self.row_values[i].insert(k, value)
        # Compact data no longer matches the assembly form
        self._csr = None

    def get_element(self, i, j):
        self._check_index(i, j)
        indices = self.row_indices[i]
        k = bisect.bisect_left(indices, j)
        if k < len(indices) and indices[k] == j:
            return self.row_values[i][k]
        return 0.0

    def row(self, i):
        """Column indices and values of row i, ascending by column."""
        return list(self.row_indices[i]), list(self.row_values[i])

    @property
    def nnz(self):
        return sum(len(indices) for indices in self.row_indices)

    def clear(self):
        for i in range(self.size):
            self.row_indices[i] = []
            self.row_values[i] = []
        self.row_start = None
        self.compact_indices = None
        self.compact_values = None
        self._csr = None

    def compress_data(self):
        """
        Flatten the per-row lists into the compact CSR buffers.
        Must be called after assembly and before any `multiply()`.
        """
        lengths = np.fromiter((len(indices) for indices in self.row_indices),
                              dtype=np.int64, count=self.size)
        self.row_start = np.zeros(self.size + 1, dtype=np.int64)
        np.cumsum(lengths, out=self.row_start[1:])

        nnz = int(self.row_start[-1])
        self.compact_indices = np.fromiter(
            (j for indices in self.row_indices for j in indices), dtype=np.int64, count=nnz)
        self.compact_values = np.fromiter(
            (a for values in self.row_values for a in values), dtype=np.float64, count=nnz)

        self._csr = scipy.sparse.csr_matrix(
            (self.compact_values, self.compact_indices, self.row_start),
            shape=(self.size, self.size))
        return self._csr

    @property
    def csr(self):
        """The compacted matrix as a scipy CSR matrix, or None before `compress_data()`."""
        return self._csr

    def multiply(self, x, result):
        """Compute result = A * x in place, using the compact form only."""
        if self._csr is None:
            raise RuntimeError("compress_data() must be called before multiply()")
        result[:] = self._csr @ np.asarray(x, dtype=np.float64)
        return result

    def to_dense(self):
        dense = np.zeros((self.size, self.size), dtype=np.float64)
        for i in range(self.size):
            for j, a in zip(self.row_indices[i], self.row_values[i]):
                dense[i, j] = a
        return dense
