"""Core PCISPH components: buffers, kernels, spatial grid, backend dispatch."""

from .buffers import ParticleBuffers, DoubleBuffer
from .kernels import PCISPHKernels
from .model import SceneModel, UniformGrid, grid_dimensions, count_types
from .spatial_grid_vectorized import (
    hash_particles_vectorized,
    sort_particles,
    index_post_pass,
    find_neighbors_vectorized
)
from .backend import Backend, HardwareProfile, ComputeDevice

__all__ = [
    'ParticleBuffers',
    'DoubleBuffer',
    'PCISPHKernels',
    'SceneModel',
    'UniformGrid',
    'grid_dimensions',
    'count_types',
    'hash_particles_vectorized',
    'sort_particles',
    'index_post_pass',
    'find_neighbors_vectorized',
    'Backend',
    'HardwareProfile',
    'ComputeDevice'
]
