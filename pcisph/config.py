"""
Solver configuration.

Every tunable number of the pipeline lives in SolverConfig. Defaults come from
constants.py; derived quantities (kernel coefficients, PCISPH delta) are
computed from the config instead of being stored separately.
"""

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

import numpy as np

from . import constants as C
from .core.kernels import PCISPHKernels
from .errors import ConfigurationError


@dataclass(frozen=True)
class SolverConfig:
    """Parameters of one PCISPH solver instance."""
    h: float = C.H
    mass: float = C.MASS
    rho0: float = C.RHO0
    time_step: float = C.TIME_STEP
    simulation_scale: float = C.SIMULATION_SCALE
    viscosity: float = C.MU
    damping: float = C.DAMPING
    stiffness: float = C.STIFFNESS
    cfl_limit: float = C.CFL_LIMIT
    gravity: Tuple[float, float, float] = (C.GRAVITY_X, C.GRAVITY_Y, C.GRAVITY_Z)
    r0: float = C.R0
    hash_grid_cell_size: float = C.HASH_GRID_CELL_SIZE

    # Policy constants: changing these is a behavior change
    neighbor_capacity: int = C.NEIGHBOR_COUNT
    predictive_iterations: int = C.PREDICTIVE_ITERATIONS

    elasticity_coefficient: float = C.ELASTICITY_COEFFICIENT
    max_muscle_acceleration: float = C.MAX_MUSCLE_ACCELERATION

    # Debug: snapshot every buffer after every stage
    record_checkpoints: bool = False

    kernels: PCISPHKernels = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.h <= 0 or self.hash_grid_cell_size <= 0:
            raise ConfigurationError(f"Smoothing radius and cell size must be positive (h={self.h}, "
                                     f"cell={self.hash_grid_cell_size})")
        if self.hash_grid_cell_size < self.h:
            raise ConfigurationError("Grid cell size must be >= h for a 3x3x3 neighbor scan")
        if self.mass <= 0 or self.rho0 <= 0:
            raise ConfigurationError("Mass and rest density must be positive")
        if self.time_step <= 0:
            raise ConfigurationError(f"Time step must be positive, got {self.time_step}")
        if self.simulation_scale <= 0:
            raise ConfigurationError("Simulation scale must be positive")
        if self.neighbor_capacity < 1:
            raise ConfigurationError(f"Neighbor capacity must be >= 1, got {self.neighbor_capacity}")
        if self.predictive_iterations < 1:
            raise ConfigurationError(f"Predictive iterations must be >= 1, got {self.predictive_iterations}")
        if len(self.gravity) != 3:
            raise ConfigurationError("Gravity must have three components")
        object.__setattr__(self, 'kernels', PCISPHKernels(self.h, self.simulation_scale))

    @property
    def simulation_scale_inv(self) -> float:
        return 1.0 / self.simulation_scale

    @property
    def delta(self) -> float:
        """PCISPH pressure correction factor for the configured time step."""
        return compute_delta(self, self.time_step)


def compute_delta(config: SolverConfig, time_step: float) -> float:
    """PCISPH pressure correction factor (Solenthaler & Pajarola 2009).

    delta = 1 / (beta * (Σ∇W·Σ∇W + Σ(∇W·∇W))), beta = 2 (dt m / rho0)²,
    evaluated on a filled prototype neighborhood at spacing R0.

    Args:
        config: Solver configuration
        time_step: Step size in seconds

    Returns:
        Correction factor mapping density error to pressure
    """
    return _compute_delta(config.h, config.simulation_scale, config.r0,
                          config.mass, config.rho0, float(time_step))


@lru_cache(maxsize=16)
def _compute_delta(h, simulation_scale, r0, mass, rho0, time_step):
    kernels = PCISPHKernels(h, simulation_scale)
    offsets, r = kernels.prototype_neighborhood(r0)
    if len(r) == 0:
        raise ConfigurationError(f"Rest spacing r0={r0} leaves no prototype neighbors within h={h}")

    grad = kernels.gradW_vectorized(offsets, r)
    sum_grad = grad.sum(axis=0)
    denominator = np.dot(sum_grad, sum_grad) + np.sum(grad * grad)

    beta = 2.0 * (time_step * mass / rho0) ** 2
    return float(1.0 / (beta * denominator))
