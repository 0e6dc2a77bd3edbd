import numpy as np
import scipy.sparse  # type: ignore
from scipy.sparse.linalg import spsolve  # type: ignore

from pcg_solver import PCGSolver, Preconditioner
from sparse_matrix import SparseMatrix


def laplacian_2d(n):
    """5-point Laplacian on an n x n block of cells with zero-pressure surroundings."""
    matrix = SparseMatrix(n * n)
    for j in range(n):
        for i in range(n):
            row = i + n * j
            matrix.add_to_element(row, row, 4.0)
            for di, dj in ((1, 0), (-1, 0), (0, 1), (0, -1)):
                if 0 <= i + di < n and 0 <= j + dj < n:
                    matrix.add_to_element(row, row + di + n * dj, -1.0)
    return matrix


def test_zero_rhs_returns_immediately():
    matrix = laplacian_2d(3)
    solver = PCGSolver()
    result = np.full(9, 7.0)

    assert solver.solve(matrix, np.zeros(9), result)
    np.testing.assert_array_equal(result, np.zeros(9))
    assert solver.last_iteration_count == 0


def test_empty_matrix_fails():
    solver = PCGSolver()
    assert not solver.solve(SparseMatrix(0), np.zeros(0), np.zeros(0))


def test_diagonally_dominant_system():
    matrix = SparseMatrix(4)
    dense = np.array([[4.0, -1.0, 0.0, 0.0],
                      [-1.0, 4.0, -1.0, 0.0],
                      [0.0, -1.0, 4.0, -1.0],
                      [0.0, 0.0, -1.0, 4.0]])
    for i, j in zip(*np.nonzero(dense)):
        matrix.add_to_element(int(i), int(j), dense[i, j])
    expected = np.array([1.0, -2.0, 3.0, 0.5])
    rhs = dense @ expected

    solver = PCGSolver()
    result = np.zeros(4)
    assert solver.solve(matrix, rhs, result)
    np.testing.assert_allclose(result, expected, atol=1e-8)
    assert 0 < solver.last_iteration_count < solver.max_iterations


def test_matches_direct_solve():
    n = 6
    matrix = laplacian_2d(n)
    rhs = np.random.default_rng(1).uniform(-1.0, 1.0, n * n)

    solver = PCGSolver()
    result = np.zeros(n * n)
    assert solver.solve(matrix, rhs, result)

    matrix.compress_data()
    expected = spsolve(scipy.sparse.csc_matrix(matrix.csr), rhs)
    np.testing.assert_allclose(result, expected, atol=1e-4)


def test_null_rows_are_skipped():
    # Row/column 1 is fully decoupled, like a non-fluid cell
    matrix = SparseMatrix(3)
    matrix.add_to_element(0, 0, 2.0)
    matrix.add_to_element(0, 2, -1.0)
    matrix.add_to_element(2, 0, -1.0)
    matrix.add_to_element(2, 2, 2.0)
    rhs = np.array([1.0, 0.0, 1.0])

    solver = PCGSolver()
    result = np.zeros(3)
    assert solver.solve(matrix, rhs, result)
    np.testing.assert_allclose(result, [1.0, 0.0, 1.0], atol=1e-8)


def test_non_convergence_keeps_best_iterate():
    matrix = laplacian_2d(5)
    rhs = np.random.default_rng(2).uniform(-1.0, 1.0, 25)

    solver = PCGSolver(max_iterations=1)
    result = np.zeros(25)
    assert not solver.solve(matrix, rhs, result)
    assert solver.last_iteration_count == 1
    assert np.any(result != 0.0)
    assert np.all(np.isfinite(result))


def test_breakdown_on_indefinite_matrix():
    matrix = SparseMatrix(3)
    for i in range(3):
        matrix.add_to_element(i, i, -1.0)

    solver = PCGSolver()
    result = np.zeros(3)
    assert not solver.solve(matrix, np.ones(3), result)
    np.testing.assert_array_equal(result, np.zeros(3))


def test_preconditioner_of_diagonal_matrix():
    diagonal = np.array([4.0, 9.0, 0.0, 1.0])
    matrix = SparseMatrix(4)
    for i, d in enumerate(diagonal):
        if d != 0.0:
            matrix.add_to_element(i, i, d)

    precond = Preconditioner.form(matrix)
    result = np.zeros(4)
    precond.apply(np.array([8.0, 3.0, 5.0, -2.0]), result)
    np.testing.assert_allclose(result, [2.0, 1.0 / 3.0, 0.0, -2.0])


def test_preconditioner_is_exact_without_fill_in():
    # Tridiagonal matrices factor without fill-in, so L * L^T == A
    matrix = SparseMatrix(5)
    for i in range(5):
        matrix.add_to_element(i, i, 2.5)
        if i > 0:
            matrix.add_to_element(i, i - 1, -1.0)
            matrix.add_to_element(i - 1, i, -1.0)
    rhs = np.array([1.0, 0.0, -1.0, 2.0, 0.5])

    precond = Preconditioner.form(matrix)
    result = np.zeros(5)
    precond.apply(rhs, result)
    np.testing.assert_allclose(matrix.to_dense() @ result, rhs, atol=1e-12)


def test_factor_is_lower_triangular_csr():
    matrix = laplacian_2d(4)
    precond = Preconditioner.form(matrix)

    assert precond.lower.format == 'csr'
    lower = precond.lower.toarray()
    np.testing.assert_array_equal(lower, np.tril(lower))
    np.testing.assert_allclose(np.diag(lower), 1.0 / np.array(precond.inv_diag))
    np.testing.assert_array_equal(precond.upper.toarray(), lower.T)


class FailingProduct(SparseMatrix):
    """Matrix whose products turn to NaN after the first one."""

    def __init__(self, matrix):
        super().__init__(matrix.size)
        self.row_indices = matrix.row_indices
        self.row_values = matrix.row_values
        self.products = 0

    def multiply(self, x, result):
        super().multiply(x, result)
        self.products += 1
        if self.products > 1:
            result[:] = np.nan
        return result


def test_curvature_breakdown_discards_iterate():
    matrix = FailingProduct(laplacian_2d(5))
    rhs = np.random.default_rng(3).uniform(-1.0, 1.0, 25)

    solver = PCGSolver()
    result = np.zeros(25)
    assert not solver.solve(matrix, rhs, result)
    assert solver.last_iteration_count == 1
    np.testing.assert_array_equal(result, np.zeros(25))
