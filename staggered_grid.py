import enum
import logging
from dataclasses import dataclass

import numpy as np

from pcg_solver import PCGSolver
from sparse_matrix import SparseMatrix

logger = logging.getLogger(__name__)

# Faces whose accumulated kernel weight is below this carry no particle data
WEIGHT_EPSILON = 1e-10
# Margin (in grid units) keeping projected points strictly inside the domain
BOUNDARY_EPSILON = 1e-6


class CellType(enum.IntEnum):
    SOLID = 1
    FLUID = 2
    AIR = 3


@dataclass(frozen=True)
class GridDescriptor:
    """Immutable description of the simulation domain."""
    lower_left: tuple
    upper_right: tuple
    cell_size: float
    dim: tuple

    def __post_init__(self):
        if self.cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {self.cell_size}")
        if len(self.dim) != 2 or min(self.dim) < 1:
            raise ValueError(f"dim must be two positive cell counts, got {self.dim}")

    @classmethod
    def from_bounds(cls, lower_left, upper_right, cell_size):
        """Derive the resolution from the domain extent."""
        if cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        extent = np.asarray(upper_right, dtype=np.float64) - np.asarray(lower_left, dtype=np.float64)
        if np.any(extent <= 0):
            raise ValueError(f"upper_right {upper_right} must lie above and right of lower_left {lower_left}")
        dim = tuple(int(n) for n in np.round(extent / cell_size))
        return cls(tuple(float(a) for a in lower_left), tuple(float(a) for a in upper_right),
                   float(cell_size), dim)

    @property
    def num_cells(self):
        return self.dim[0] * self.dim[1]


def kernel(x, y):
    """Separable tent kernel with a support of one cell in each direction."""
    return np.maximum(0.0, 1.0 - np.abs(x)) * np.maximum(0.0, 1.0 - np.abs(y))


class StaggeredGrid:
    """
    2D staggered (MAC) grid holding face velocities and cell classification.

    Grid Layout:
    --------------------------------
    Arrays are indexed [j, i] (row = y), so the flat index of cell (i, j) is i + nx * j.

    - cells: CellType at CELL CENTERS. Shape: (ny, nx)
    - u (x velocity) on VERTICAL FACES, u[j, i] at grid position (i, j + 0.5). Shape: (ny, nx + 1)
    - v (y velocity) on HORIZONTAL FACES, v[j, i] at grid position (i + 0.5, j). Shape: (ny + 1, nx)
    - weight_u, weight_v: kernel weights accumulated during the last particle transfer

    Anything outside the domain is treated as solid wall, except the top edge which
    lets fluid leave but not enter and acts as a free surface in the pressure solve.

    Create grids with `new_grid()` and copy them with `clone_grid()`.
    """

    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.lower_left = np.asarray(descriptor.lower_left, dtype=np.float64)
        self.upper_right = np.asarray(descriptor.upper_right, dtype=np.float64)
        self.cell_size = float(descriptor.cell_size)
        self.nx, self.ny = descriptor.dim

        # --- Staggered velocities ---
        self.u = np.zeros((self.ny, self.nx + 1), dtype=np.float64)
        self.v = np.zeros((self.ny + 1, self.nx), dtype=np.float64)
        self.weight_u = np.zeros_like(self.u)
        self.weight_v = np.zeros_like(self.v)

        self.cells = np.full((self.ny, self.nx), CellType.AIR, dtype=np.int8)

        # Pressure from the last projection (cell centers)
        self.pressure = np.zeros((self.ny, self.nx), dtype=np.float64)
        self.last_solve_succeeded = True

    @property
    def dim(self):
        return self.nx, self.ny

    # ------------------------------------------------------------------
    # Coordinates
    # ------------------------------------------------------------------
    def world_to_grid(self, world_x, world_y):
        return ((world_x - self.lower_left[0]) / self.cell_size,
                (world_y - self.lower_left[1]) / self.cell_size)

    def world_to_grid_cell(self, world_x, world_y):
        x, y = self.world_to_grid(world_x, world_y)
        return np.floor(x).astype(np.int64), np.floor(y).astype(np.int64)

    def grid_to_world(self, x, y):
        return (x * self.cell_size + self.lower_left[0],
                y * self.cell_size + self.lower_left[1])

    def is_valid_index(self, i, j):
        return 0 <= i < self.nx and 0 <= j < self.ny

    def project_on_boundary(self, world_x, world_y):
        """Clamp a world position (scalars or arrays) into the open interior of the grid."""
        x, y = self.world_to_grid(world_x, world_y)
        x = np.clip(x, BOUNDARY_EPSILON, self.nx - BOUNDARY_EPSILON)
        y = np.clip(y, BOUNDARY_EPSILON, self.ny - BOUNDARY_EPSILON)
        return self.grid_to_world(x, y)

    def count(self, cell_type):
        return int(np.count_nonzero(self.cells == cell_type))

    # ------------------------------------------------------------------
    # Particle -> grid
    # ------------------------------------------------------------------
    def transfer_to_grid(self, positions, velocities):
        """
        Scatter particle velocities onto the faces and classify cells.

        Everything is rebuilt from scratch: cells start as AIR and every cell holding a
        particle becomes FLUID. Each particle spreads its x velocity over the 2x3 nearest
        u faces and its y velocity over the 3x2 nearest v faces with the tent kernel.
        Faces are then normalised by their accumulated weight; faces no particle reached
        stay at exactly zero.
        """
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        velocities = np.asarray(velocities, dtype=np.float64).reshape(-1, 2)
        if positions.shape != velocities.shape:
            raise ValueError(f"positions {positions.shape} and velocities {velocities.shape} differ in shape")

        self.u.fill(0.0)
        self.v.fill(0.0)
        self.weight_u.fill(0.0)
        self.weight_v.fill(0.0)
        self.cells.fill(CellType.AIR)

        if len(positions) == 0:
            return

        x, y = self.world_to_grid(positions[:, 0], positions[:, 1])
        i = np.floor(x).astype(np.int64)
        j = np.floor(y).astype(np.int64)
        outside = (i < 0) | (i >= self.nx) | (j < 0) | (j >= self.ny)
        if np.any(outside):
            raise ValueError(f"{np.count_nonzero(outside)} particle(s) lie outside the grid")

        self.cells[j, i] = CellType.FLUID

        # x velocity: faces (i, i+1) x (j-1, j, j+1)
        for dj in (-1, 0, 1):
            jj = j + dj
            valid = (jj >= 0) & (jj < self.ny)
            for di in (0, 1):
                ii = i + di
                w = kernel(x - ii, y - jj - 0.5)[valid]
                np.add.at(self.weight_u, (jj[valid], ii[valid]), w)
                np.add.at(self.u, (jj[valid], ii[valid]), w * velocities[valid, 0])

        # y velocity: faces (i-1, i, i+1) x (j, j+1)
        for di in (-1, 0, 1):
            ii = i + di
            valid = (ii >= 0) & (ii < self.nx)
            for dj in (0, 1):
                jj = j + dj
                w = kernel(x - ii - 0.5, y - jj)[valid]
                np.add.at(self.weight_v, (jj[valid], ii[valid]), w)
                np.add.at(self.v, (jj[valid], ii[valid]), w * velocities[valid, 1])

        # Normalize
        has_data = self.weight_u >= WEIGHT_EPSILON
        self.u[has_data] /= self.weight_u[has_data]
        self.u[~has_data] = 0.0
        has_data = self.weight_v >= WEIGHT_EPSILON
        self.v[has_data] /= self.weight_v[has_data]
        self.v[~has_data] = 0.0

    # ------------------------------------------------------------------
    # Grid -> particle
    # ------------------------------------------------------------------
    def interpolate_u(self, x, y):
        """Bilinear interpolation of u at grid coordinates (x, y); clamps past the first/last row."""
        i = np.clip(np.floor(x).astype(np.int64), 0, self.nx - 1)
        a = x - i
        # u samples sit half a cell up
        j = np.floor(y - 0.5).astype(np.int64)
        c = y - 0.5 - j
        j0 = np.clip(j, 0, self.ny - 1)
        j1 = np.clip(j + 1, 0, self.ny - 1)

        u = self.u
        return ((1 - c) * ((1 - a) * u[j0, i] + a * u[j0, i + 1]) +
                c * ((1 - a) * u[j1, i] + a * u[j1, i + 1]))

    def interpolate_v(self, x, y):
        """Bilinear interpolation of v at grid coordinates (x, y); clamps past the first/last column."""
        j = np.clip(np.floor(y).astype(np.int64), 0, self.ny - 1)
        c = y - j
        # v samples sit half a cell right
        i = np.floor(x - 0.5).astype(np.int64)
        a = x - 0.5 - i
        i0 = np.clip(i, 0, self.nx - 1)
        i1 = np.clip(i + 1, 0, self.nx - 1)

        v = self.v
        return ((1 - c) * ((1 - a) * v[j, i0] + a * v[j, i1]) +
                c * ((1 - a) * v[j + 1, i0] + a * v[j + 1, i1]))

    def transfer_from_grid(self, positions):
        """Grid velocity at each world position. Returns an (N, 2) array."""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        x, y = self.world_to_grid(positions[:, 0], positions[:, 1])
        return np.column_stack((self.interpolate_u(x, y), self.interpolate_v(x, y)))

    # ------------------------------------------------------------------
    # Forces / boundaries / projection
    # ------------------------------------------------------------------
    def enforce_boundary(self):
        # Left and right walls
        self.u[:, 0] = 0.0
        self.u[:, -1] = 0.0
        # Floor
        self.v[0, :] = 0.0
        # Open top: outflow only
        np.minimum(self.v[-1, :], 0.0, out=self.v[-1, :])

    def divergence(self):
        """Discrete divergence at every cell center."""
        div = (self.u[:, 1:] - self.u[:, :-1]) + (self.v[1:, :] - self.v[:-1, :])
        return div / self.cell_size

    def build_pressure_system(self, dt):
        """
        Assemble A * p = b over the FLUID cells.

        Per neighbour of a fluid cell:
        - SOLID (or beyond the walls and floor): nothing, zero flux through the face
        - AIR (or above the open top): dt/h on the diagonal only, pressure is zero at
          the free surface
        - FLUID: dt/h on the diagonal and -dt/h coupling the two cells
        The right-hand side is the net inflow through the four faces.
        """
        nx, ny = self.nx, self.ny
        scale = dt / self.cell_size
        matrix = SparseMatrix(nx * ny)

        inflow = (self.u[:, :-1] - self.u[:, 1:]) + (self.v[:-1, :] - self.v[1:, :])
        fluid = self.cells == CellType.FLUID
        rhs = np.where(fluid, inflow, 0.0).ravel()

        cells = self.cells
        for j, i in zip(*np.nonzero(fluid)):
            row = int(i + nx * j)
            neighbours = (
                (cells[j, i + 1] if i + 1 < nx else CellType.SOLID, row + 1),
                (cells[j, i - 1] if i - 1 >= 0 else CellType.SOLID, row - 1),
                (cells[j + 1, i] if j + 1 < ny else CellType.AIR, row + nx),
                (cells[j - 1, i] if j - 1 >= 0 else CellType.SOLID, row - nx),
            )
            for cell_type, column in neighbours:
                if cell_type == CellType.SOLID:
                    continue
                matrix.add_to_element(row, row, scale)
                if cell_type == CellType.FLUID:
                    matrix.add_to_element(row, column, -scale)
        return matrix, rhs

    def pressure_solve(self, dt, solver=None):
        """
        Make the velocity field divergence free inside the fluid.

        A failed solve is logged and the partial solution is applied anyway.
        Returns whether the linear solve succeeded.
        """
        if solver is None:
            solver = PCGSolver()
        matrix, rhs = self.build_pressure_system(dt)
        solution = np.zeros(matrix.size, dtype=np.float64)

        self.last_solve_succeeded = solver.solve(matrix, rhs, solution)
        if not self.last_solve_succeeded:
            logger.warning("Conjugate gradient failed (%d iterations, residual %g)",
                           solver.last_iteration_count, solver.last_residual)

        self.pressure = solution.reshape(self.ny, self.nx)
        self.remove_divergence(solution, dt / self.cell_size)
        return self.last_solve_succeeded

    def remove_divergence(self, pressure, scale):
        """
        Subtract the scaled pressure gradient from every interior face next to a FLUID cell.
        Faces on the outer edges of the domain are set to zero.
        """
        p = np.asarray(pressure, dtype=np.float64).reshape(self.ny, self.nx)
        fluid = self.cells == CellType.FLUID

        inner_u = self.u[:, 1:-1]
        touches_fluid = fluid[:, 1:] | fluid[:, :-1]
        inner_u[touches_fluid] -= scale * (p[:, 1:] - p[:, :-1])[touches_fluid]
        self.u[:, 0] = 0.0
        self.u[:, -1] = 0.0

        inner_v = self.v[1:-1, :]
        touches_fluid = fluid[1:, :] | fluid[:-1, :]
        inner_v[touches_fluid] -= scale * (p[1:, :] - p[:-1, :])[touches_fluid]
        self.v[0, :] = 0.0
        self.v[-1, :] = 0.0

    # ------------------------------------------------------------------
    # Visualisation
    # ------------------------------------------------------------------
    def sample_cells(self):
        """
        Cell-center positions (world space) and an RGB colour per cell encoding the
        interpolated velocity: (|vx| * 1.5, 0.25, |vy| * 1.5).
        Both arrays are ordered column by column (i outer, j inner).
        """
        i, j = np.meshgrid(np.arange(self.nx), np.arange(self.ny), indexing='ij')
        x = i.ravel() + 0.5
        y = j.ravel() + 0.5
        positions = np.column_stack(self.grid_to_world(x, y))

        vel_x = self.interpolate_u(x, y)
        vel_y = self.interpolate_v(x, y)
        colors = np.column_stack((np.abs(vel_x) * 1.5, np.full_like(vel_x, 0.25), np.abs(vel_y) * 1.5))
        return positions, colors


def new_grid(descriptor):
    """Fresh grid: zero velocities, every cell AIR."""
    return StaggeredGrid(descriptor)


def clone_grid(grid):
    """Deep copy of the velocities and cell classification of `grid`."""
    copy = StaggeredGrid(grid.descriptor)
    copy.u[:] = grid.u
    copy.v[:] = grid.v
    copy.cells[:] = grid.cells
    return copy


def flip_delta(new, old):
    """New grid holding the face velocity change new - old; neither input is modified."""
    delta = clone_grid(new)
    delta.u -= old.u
    delta.v -= old.v
    return delta


def max_speed(grid):
    return max(float(np.max(np.abs(grid.u))), float(np.max(np.abs(grid.v))))
