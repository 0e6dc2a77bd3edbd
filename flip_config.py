import dataclasses
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from pcg_solver import PCGSolver

# Loggers of the solver modules, configured together by configure_logging()
LOGGER_NAMES = ('pcg_solver', 'staggered_grid', 'flip_solver')

LOG_FORMAT = "%(asctime)s %(name)s (%(levelname)s): %(message)s"

_console_handler = None


def configure_logging(level=logging.INFO):
    """Send the solver log output to stdout at `level`."""
    global _console_handler
    if _console_handler is None:
        _console_handler = logging.StreamHandler(sys.stdout)
        _console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if _console_handler not in logger.handlers:
            logger.addHandler(_console_handler)
        logger.propagate = False


@dataclass
class SimulationConfig:
    """
    Tunable parameters of a FLIP run.

    gravity: downward acceleration applied to the y face velocities
    flipness: PIC/FLIP blend, 1.0 = pure FLIP, 0.0 = pure PIC
    initial_speed: x velocity given to emitted particles (y velocity is 1)
    cfl_substepping: split frames into CFL-limited substeps instead of one step per frame
    cfl_number: substep = cfl_number * cell_size / max grid speed
    seed: seed of the particle jitter generator (None = nondeterministic)
    pcg_*: settings of the pressure solver
    """
    gravity: float = 9.81
    flipness: float = 0.95
    initial_speed: float = 7.0
    cfl_substepping: bool = False
    cfl_number: float = 3.0
    seed: Optional[int] = None
    pcg_tolerance: float = 1e-6
    pcg_max_iterations: int = 400
    pcg_epsilon: float = 1e-12

    def __post_init__(self):
        self.validate()

    def validate(self):
        if not 0.0 <= self.flipness <= 1.0:
            raise ValueError(f"flipness must lie in [0, 1], got {self.flipness}")
        if self.cfl_number <= 0:
            raise ValueError(f"cfl_number must be positive, got {self.cfl_number}")
        if self.pcg_tolerance <= 0:
            raise ValueError(f"pcg_tolerance must be positive, got {self.pcg_tolerance}")
        if self.pcg_max_iterations < 1:
            raise ValueError(f"pcg_max_iterations must be at least 1, got {self.pcg_max_iterations}")
        if self.pcg_epsilon < 0:
            raise ValueError(f"pcg_epsilon must be non-negative, got {self.pcg_epsilon}")

    @classmethod
    def from_dict(cls, data):
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    def make_pcg_solver(self):
        return PCGSolver(tolerance_factor=self.pcg_tolerance,
                         max_iterations=self.pcg_max_iterations,
                         epsilon=self.pcg_epsilon)
