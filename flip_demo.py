import logging

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.animation import FuncAnimation

from flip_config import SimulationConfig, configure_logging
from flip_shapes import Circle
from flip_solver import FLIPSolver
from staggered_grid import GridDescriptor

# ==============================================================================
# FLIP Liquid Experiment
# ==============================================================================
# What this simulates:
# A disc of liquid thrown sideways into a closed box with an open top.
# Particles carry the velocity, the grid only lives for one substep at a time:
# 1. Particles move with their own velocity.
# 2. Their velocities are splatted to a staggered grid where gravity is added
#    and the pressure solve removes any compression.
# 3. The grid correction is blended back onto the particles (PIC/FLIP).
# Clicking into the plot pours in another disc of liquid.
# ==============================================================================

# --- Configuration ---
LOWER_LEFT = (-40.0, -20.0)
UPPER_RIGHT = (40.0, 20.0)
CELL_SIZE = 2.0
FRAME_DURATION = 2.0 / 60.0
FLIPNESS = 0.95

descriptor = GridDescriptor.from_bounds(LOWER_LEFT, UPPER_RIGHT, CELL_SIZE)
config = SimulationConfig(flipness=FLIPNESS, seed=0)

# --- Initialize Solver ---
solver = FLIPSolver(descriptor, config)
solver.emit_particles(Circle((0.0, 0.0), 15.0))

print(f"Simulation initialized with {solver.num_particles} particles "
      f"on a {descriptor.dim[0]}x{descriptor.dim[1]} grid.")

# --- Visualization Setup ---
fig, ax = plt.subplots(figsize=(10, 5))
ax.set_title("FLIP Liquid on a Staggered Grid\n(Particles + Grid Cells + Velocity)")
ax.set_xlim(LOWER_LEFT[0], UPPER_RIGHT[0])
ax.set_ylim(LOWER_LEFT[1], UPPER_RIGHT[1])
ax.set_aspect('equal')

# 1. Grid cells coloured by the velocity magnitude encoding
cell_positions, cell_colors = solver.grid.sample_cells()
cells = ax.scatter(cell_positions[:, 0], cell_positions[:, 1], c=np.clip(cell_colors, 0.0, 1.0),
                   marker='s', s=40, alpha=0.5)

# 2. Particles
particles = ax.scatter(solver.positions[:, 0], solver.positions[:, 1], s=2, color='magenta')

# 3. Grid velocity at every other cell center
STRIDE = 2


def cell_center_velocity(grid):
    # Average the staggered faces onto the cell centers
    u_c = 0.5 * (grid.u[:, :-1] + grid.u[:, 1:])
    v_c = 0.5 * (grid.v[:-1, :] + grid.v[1:, :])
    return u_c[::STRIDE, ::STRIDE], v_c[::STRIDE, ::STRIDE]


nx, ny = descriptor.dim
x_grid, y_grid = solver.grid.grid_to_world(*np.meshgrid(np.arange(nx) + 0.5, np.arange(ny) + 0.5))
q = ax.quiver(x_grid[::STRIDE, ::STRIDE], y_grid[::STRIDE, ::STRIDE],
              *cell_center_velocity(solver.grid), scale=300, color='cyan', width=0.002, alpha=0.6)


def update(frame):
    solver.advance_frame(FRAME_DURATION)

    cell_positions, cell_colors = solver.grid.sample_cells()
    cells.set_facecolor(np.clip(cell_colors, 0.0, 1.0))
    particles.set_offsets(solver.positions)
    q.set_UVC(*cell_center_velocity(solver.grid))
    return cells, particles, q


def on_click(event):
    if event.inaxes is not ax:
        return
    added = solver.emit_particles(Circle((event.xdata, event.ydata), 10.0))
    print(f"Added {added} particles.")


if __name__ == "__main__":
    configure_logging(logging.INFO)
    fig.canvas.mpl_connect('button_press_event', on_click)
    anim = FuncAnimation(fig, update, frames=600, interval=30, blit=False)
    try:
        print("Running visualization... Close window to stop.")
        plt.show()
    except KeyboardInterrupt:
        pass
    finally:
        print("Time per stage (s): " +
              ", ".join(f"{stage}={seconds:.3f}" for stage, seconds in solver.timings.items()))
