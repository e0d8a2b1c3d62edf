"""Physics stages of the PCISPH step: density, pressure, forces, integration, elasticity."""

from .pcisph_vectorized import (
    compute_density_vectorized,
    compute_forces_init_pressure_vectorized,
    predict_positions_vectorized,
    predict_density_vectorized,
    correct_pressure_vectorized,
    compute_pressure_force_vectorized,
    integrate_vectorized
)
from .elastic_vectorized import compute_elastic_forces_vectorized

__all__ = [
    'compute_density_vectorized',
    'compute_forces_init_pressure_vectorized',
    'predict_positions_vectorized',
    'predict_density_vectorized',
    'correct_pressure_vectorized',
    'compute_pressure_force_vectorized',
    'integrate_vectorized',
    'compute_elastic_forces_vectorized'
]
