import contextlib
import enum
import logging
import time

import numpy as np

from flip_config import SimulationConfig
from staggered_grid import clone_grid, flip_delta, max_speed, new_grid

logger = logging.getLogger(__name__)

STAGES = ('advect', 'to_grid', 'gravity', 'boundary', 'pressure', 'from_grid')

# One sample per cell quadrant: (-,-), (+,-), (+,+), (-,+)
QUADRANTS = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])


class SolverState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    SEEDED = 'seeded'


class FLIPSolver:
    """
    2D liquid simulation with particles carrying velocity and a staggered grid
    enforcing incompressibility.

    Solver Steps (per substep):
    1. Advection: move particles with their own velocity (explicit Euler), clamp to the domain.
    2. Particle -> grid transfer, keeping a snapshot of the transferred grid.
    3. External Forces: gravity on the vertical face velocities.
    4. Boundary conditions: closed walls and floor, open top.
    5. Projection: pressure solve removing the divergence.
    6. Grid -> particle transfer blending
       FLIP (old particle velocity + grid change since the snapshot) and PIC (new grid velocity):
       v = flipness * (v_old + dv_grid) + (1 - flipness) * v_grid
    """

    def __init__(self, descriptor, config=None):
        self.config = config if config is not None else SimulationConfig()
        self.gravity = self.config.gravity
        self.flipness = self.config.flipness
        self.pcg_solver = self.config.make_pcg_solver()
        self.rng = np.random.default_rng(self.config.seed)

        # Cumulative wall-clock seconds per stage
        self.timings = dict.fromkeys(STAGES, 0.0)

        self.descriptor = descriptor
        self.reset()

    def reset(self, descriptor=None):
        """Discard grid and particles, optionally switching to a new domain/resolution."""
        if descriptor is not None:
            self.descriptor = descriptor
        self.grid = new_grid(self.descriptor)
        self.grid_copy = None

        self.positions = np.empty((0, 2), dtype=np.float64)
        self.velocities = np.empty((0, 2), dtype=np.float64)

        self.elapsed_time = 0.0
        self.frame_count = 0
        self.substep_count = 0

    @property
    def num_particles(self):
        return len(self.positions)

    @property
    def state(self):
        return SolverState.SEEDED if self.num_particles > 0 else SolverState.UNINITIALIZED

    def flat_positions(self):
        """Positions as x0, y0, x1, y1, ..."""
        return self.positions.ravel().copy()

    def flat_velocities(self):
        return self.velocities.ravel().copy()

    @contextlib.contextmanager
    def _timed(self, stage):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timings[stage] += time.perf_counter() - start

    def emit_particles(self, shape, initial_speed=None, rng=None):
        """
        Add particles wherever `shape` contains them.

        Every cell gets four jittered candidates, one per quadrant, each offset from the
        cell center by up to half a cell. Accepted particles start with velocity
        (initial_speed, 1). Returns the number of particles added.
        """
        if initial_speed is None:
            initial_speed = self.config.initial_speed
        if rng is None:
            rng = self.rng

        grid = self.grid
        cell_size = grid.cell_size
        i, j = np.meshgrid(np.arange(grid.nx), np.arange(grid.ny), indexing='ij')
        centers = np.column_stack(grid.grid_to_world(i.ravel() + 0.5, j.ravel() + 0.5))

        jitter = 0.5 * cell_size * rng.random((len(centers), 4, 2))
        candidates = (centers[:, None, :] + QUADRANTS[None, :, :] * jitter).reshape(-1, 2)

        accepted = np.asarray(shape.contains(candidates[:, 0], candidates[:, 1]), dtype=bool)
        new_positions = candidates[accepted]
        new_velocities = np.tile([float(initial_speed), 1.0], (len(new_positions), 1))

        self.positions = np.concatenate((self.positions, new_positions))
        self.velocities = np.concatenate((self.velocities, new_velocities))
        logger.debug("Emitted %d particles (%d total)", len(new_positions), self.num_particles)
        return len(new_positions)

    def advect_particles(self, substep):
        moved = self.positions + self.velocities * substep
        x, y = self.grid.project_on_boundary(moved[:, 0], moved[:, 1])
        self.positions = np.column_stack((x, y))

    def transfer_velocities_to_grid(self):
        self.grid.transfer_to_grid(self.positions, self.velocities)
        # Keep the transferred state for the FLIP update
        self.grid_copy = clone_grid(self.grid)

    def add_gravity(self, substep):
        self.grid.v -= self.gravity * substep

    def transfer_velocities_from_grid(self):
        # Absolute velocities (PIC)
        pic_velocities = self.grid.transfer_from_grid(self.positions)

        # Velocity change (FLIP)
        delta = flip_delta(self.grid, self.grid_copy)
        flip_velocities = self.velocities + delta.transfer_from_grid(self.positions)

        self.velocities = self.flipness * flip_velocities + (1.0 - self.flipness) * pic_velocities
        self.grid_copy = None

    def get_time_step(self):
        """CFL-limited substep for the current grid velocities (1 when the grid is at rest)."""
        speed = max_speed(self.grid)
        return self.config.cfl_number * self.grid.cell_size / speed if speed > 0 else 1.0

    def advance_frame(self, frame_duration):
        if frame_duration < 0:
            raise ValueError(f"frame_duration must be non-negative, got {frame_duration}")
        if self.num_particles == 0:
            return

        substeps = 0
        remaining = frame_duration
        while remaining > 0:
            substep = remaining
            if self.config.cfl_substepping:
                substep = min(self.get_time_step(), remaining)
            remaining = remaining - substep if substep < remaining else 0.0

            with self._timed('advect'):
                self.advect_particles(substep)
            with self._timed('to_grid'):
                self.transfer_velocities_to_grid()
            with self._timed('gravity'):
                self.add_gravity(substep)
            with self._timed('boundary'):
                self.grid.enforce_boundary()
            with self._timed('pressure'):
                self.grid.pressure_solve(substep, self.pcg_solver)
            with self._timed('from_grid'):
                self.transfer_velocities_from_grid()
            substeps += 1

        self.substep_count += substeps
        self.frame_count += 1
        self.elapsed_time += frame_duration
        logger.debug("Frame %d: %d substep(s), %d particles, PCG iterations %d",
                     self.frame_count, substeps, self.num_particles,
                     self.pcg_solver.last_iteration_count)
