import logging
import math

import numpy as np
import scipy.sparse  # type: ignore
from scipy.sparse.linalg import spsolve_triangular  # type: ignore

logger = logging.getLogger(__name__)

# Weight of the dropped fill-in folded back into the diagonal (modified incomplete Cholesky)
MIC_TUNING = 0.97


def dot_product(x, y):
    return float(np.dot(x, y))


def max_abs(x):
    if len(x) == 0:
        return 0.0
    return float(np.max(np.abs(x)))


def add_scaled(alpha, x, y):
    """y += alpha * x, in place."""
    y += alpha * x


class Preconditioner:
    """
    Lower triangular factor L of a modified incomplete Cholesky decomposition, A ~ L * L^T.

    - inv_diag[k]: 1 / L[k, k], or 0 for a null row/column
    - col_values, col_indices: entries of L below the diagonal, listed column by column
    - col_start[k]:col_start[k + 1] delimits column k (one extra entry at the end holds nnz)
    """

    def __init__(self, rows):
        self.rows = rows
        self.inv_diag = [0.0] * rows
        self.col_values = []
        self.col_indices = []
        self.col_start = [0] * (rows + 1)

    @classmethod
    def form(cls, matrix, tuning=MIC_TUNING):
        size = matrix.size
        precond = cls(size)
        inv_diag = precond.inv_diag
        col_values = precond.col_values
        col_indices = precond.col_indices
        col_start = precond.col_start

        # Copy the diagonal and the strictly lower part (row i, column > i mirrored)
        for i in range(size):
            col_start[i] = len(col_indices)
            for j, a in zip(matrix.row_indices[i], matrix.row_values[i]):
                if j > i:
                    col_indices.append(j)
                    col_values.append(a)
                elif j == i:
                    inv_diag[i] = a
        col_start[size] = len(col_indices)

        for k in range(size):
            if inv_diag[k] == 0:
                continue  # null row/column
            # A negative pivot turns the factor into NaN, which solve() reports as breakdown
            d = 1.0 / math.sqrt(inv_diag[k]) if inv_diag[k] > 0 else math.nan
            inv_diag[k] = d

            p_start = col_start[k]
            p_end = col_start[k + 1]
            for p in range(p_start, p_end):
                col_values[p] *= d

            # Eliminate column k from the columns below it
            for p in range(p_start, p_end):
                j = col_indices[p]
                multiplier = col_values[p]
                missing = 0.0
                a = p_start

                # Entries of column k above row j that have no partner in row j of A
                row_j = matrix.row_indices[j]
                b = 0
                while a < p_end and col_indices[a] < j:
                    while b < len(row_j):
                        if row_j[b] < col_indices[a]:
                            b += 1
                        elif row_j[b] == col_indices[a]:
                            break
                        else:
                            missing += col_values[a]
                            break
                    a += 1

                diag = inv_diag[j]
                if a < p_end and col_indices[a] == j:
                    diag -= multiplier * col_values[a]
                a += 1

                # Update column j where its pattern overlaps column k, the rest is dropped fill-in
                b = col_start[j]
                j_end = col_start[j + 1]
                while a < p_end and b < j_end:
                    if col_indices[b] < col_indices[a]:
                        b += 1
                    elif col_indices[b] == col_indices[a]:
                        col_values[b] -= multiplier * col_values[a]
                        a += 1
                        b += 1
                    else:
                        missing += col_values[a]
                        a += 1

                while a < p_end:
                    missing += col_values[a]
                    a += 1

                inv_diag[j] = diag - tuning * multiplier * missing
        precond.build_factor()
        return precond

    def build_factor(self):
        """
        Store L (and L^T) as CSR matrices for the triangular solves.

        Null rows/columns (zero inverse diagonal) get a unit diagonal and lose their
        off-diagonal entries, so both substitutions leave them at zero.
        """
        inv_diag = np.asarray(self.inv_diag, dtype=np.float64)
        self.null = inv_diag == 0
        # NaN pivots from a non-positive definite matrix
        self.broken = bool(np.any(np.isnan(inv_diag)))
        diag = 1.0 / np.where(self.null, 1.0, inv_diag)

        cols = np.repeat(np.arange(self.rows), np.diff(self.col_start))
        rows = np.asarray(self.col_indices, dtype=np.int64)
        values = np.asarray(self.col_values, dtype=np.float64)
        keep = ~(self.null[rows] | self.null[cols])

        index = np.arange(self.rows)
        lower = scipy.sparse.coo_matrix(
            (np.concatenate((diag, values[keep])),
             (np.concatenate((index, rows[keep])), np.concatenate((index, cols[keep])))),
            shape=(self.rows, self.rows))
        self.lower = lower.tocsr()
        self.upper = lower.T.tocsr()

    def apply(self, rhs, result):
        """Solve L * L^T * result = rhs by forward then backward substitution."""
        if self.broken:
            result[:] = math.nan
            return result
        if self.rows == 0:
            return result
        z = np.where(self.null, 0.0, np.asarray(rhs, dtype=np.float64))

        # L * z = rhs
        z = spsolve_triangular(self.lower, z, lower=True)
        # L^T * result = z
        result[:] = spsolve_triangular(self.upper, z, lower=False)
        return result


class PCGSolver:
    """
    Preconditioned conjugate gradient for symmetric positive semi-definite systems A x = b,
    following Bridson's "Fluid Simulation for Computer Graphics".

    The initial guess is zero. Convergence is declared once max|r| drops below
    `tolerance_factor` times the max|r| of the initial residual.
    `solve()` reports the outcome as a boolean, it never raises on numerical trouble:
    - non-convergence: False, `result` keeps the last iterate
    - breakdown (z.r below `epsilon` or NaN): False, `result` is zero
    - zero or NaN curvature s.As during the iteration: False, `result` is reset to zero
    - zero right-hand side: True, `result` is zero
    """

    def __init__(self, tolerance_factor=1e-6, max_iterations=400, epsilon=1e-12):
        self.tolerance_factor = tolerance_factor
        self.max_iterations = max_iterations
        self.epsilon = epsilon

        # Status of last solve
        self.last_iteration_count = 0
        self.last_residual = 0.0

    def solve(self, matrix, rhs, result):
        rows = matrix.size
        if rows == 0:
            return False

        r = np.array(rhs, dtype=np.float64)
        z = np.zeros(rows, dtype=np.float64)

        # Initial guess is zero
        result[:] = 0.0
        self.last_iteration_count = 0

        self.last_residual = max_abs(r)
        if self.last_residual < self.epsilon:
            return True

        precond = Preconditioner.form(matrix)
        precond.apply(r, z)
        rho = dot_product(z, r)
        if rho < self.epsilon or math.isnan(rho):
            logger.debug("PCG breakdown: z.r = %g", rho)
            return False

        s = z.copy()

        # The compact form is required for the matrix-vector product
        matrix.compress_data()

        tolerance = self.tolerance_factor * self.last_residual
        for iteration in range(self.max_iterations):
            matrix.multiply(s, z)
            curvature = dot_product(s, z)
            if curvature == 0 or math.isnan(curvature):
                self.last_iteration_count = iteration
                result[:] = 0.0
                logger.debug("PCG breakdown: s.As = %g", curvature)
                return False
            alpha = rho / curvature
            add_scaled(alpha, s, result)
            add_scaled(-alpha, z, r)
            self.last_residual = max_abs(r)
            if self.last_residual < tolerance:
                self.last_iteration_count = iteration + 1
                logger.debug("PCG converged in %d iterations, residual %g",
                             self.last_iteration_count, self.last_residual)
                return True

            precond.apply(r, z)
            rho_new = dot_product(z, r)
            beta = rho_new / rho
            add_scaled(beta, s, z)
            s[:] = z
            rho = rho_new

        # Failed to converge
        self.last_iteration_count = self.max_iterations
        return False
