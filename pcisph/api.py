"""
Stage registry for the PCISPH step pipeline.

Every stage is registered once per backend under its stage name. All stage
implementations share one calling convention:

    fn(global_size, buffers, *stage_args)

where global_size is the dispatch size already rounded up to the work-group
size. Host-side stages (sort, index post pass) are registered for both
backends with the same implementation.
"""

from typing import Optional

from .core.backend import (Backend, backend_function, for_backend, dispatch, round_up_work_size)
from .core.buffers import ParticleBuffers
from .core.model import UniformGrid
from .config import SolverConfig

# CPU implementations
from .core.spatial_grid_vectorized import (
    clear_buffers_vectorized, hash_particles_vectorized, sort_particles,
    sort_post_pass_vectorized, index_cells_vectorized, index_post_pass,
    find_neighbors_vectorized
)
from .physics.pcisph_vectorized import (
    compute_density_vectorized, compute_forces_init_pressure_vectorized,
    predict_positions_vectorized, predict_density_vectorized, correct_pressure_vectorized,
    compute_pressure_force_vectorized, integrate_vectorized
)
from .physics.elastic_vectorized import compute_elastic_forces_vectorized

# Numba implementations
from .core.spatial_grid_numba import (
    clear_buffers_wrapper, hash_particles_wrapper, sort_post_pass_wrapper,
    index_cells_wrapper, find_neighbors_wrapper
)
from .physics.pcisph_numba import (
    compute_density_numba_wrapper, compute_forces_init_pressure_numba_wrapper,
    predict_positions_numba_wrapper, predict_density_numba_wrapper,
    correct_pressure_numba_wrapper, compute_pressure_force_numba_wrapper,
    integrate_numba_wrapper
)
from .physics.elastic_numba import compute_elastic_forces_numba_wrapper

CLEAR_BUFFERS = "clear_buffers"
HASH_PARTICLES = "hash_particles"
SORT = "sort"
SORT_POST_PASS = "sort_post_pass"
INDEX = "index"
INDEX_POST_PASS = "index_post_pass"
FIND_NEIGHBORS = "find_neighbors"
COMPUTE_DENSITY = "compute_density"
COMPUTE_FORCES_INIT_PRESSURE = "compute_forces_init_pressure"
COMPUTE_ELASTIC_FORCES = "compute_elastic_forces"
PREDICT_POSITIONS = "predict_positions"
PREDICT_DENSITY = "predict_density"
CORRECT_PRESSURE = "correct_pressure"
COMPUTE_PRESSURE_FORCE = "compute_pressure_force"
INTEGRATE = "integrate"

STAGES = (
    CLEAR_BUFFERS, HASH_PARTICLES, SORT, SORT_POST_PASS, INDEX, INDEX_POST_PASS,
    FIND_NEIGHBORS, COMPUTE_DENSITY, COMPUTE_FORCES_INIT_PRESSURE, COMPUTE_ELASTIC_FORCES,
    PREDICT_POSITIONS, PREDICT_DENSITY, CORRECT_PRESSURE, COMPUTE_PRESSURE_FORCE, INTEGRATE,
)


def _swap_generations(buffers: ParticleBuffers):
    buffers.position.swap()
    buffers.velocity.swap()


# Register CPU implementations
@backend_function(CLEAR_BUFFERS)
@for_backend(Backend.CPU)
def _clear_buffers_cpu(global_size: int, buffers: ParticleBuffers):
    clear_buffers_vectorized(buffers)

@backend_function(HASH_PARTICLES)
@for_backend(Backend.CPU)
def _hash_particles_cpu(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    hash_particles_vectorized(buffers, grid)

@backend_function(SORT_POST_PASS)
@for_backend(Backend.CPU)
def _sort_post_pass_cpu(global_size: int, buffers: ParticleBuffers):
    sort_post_pass_vectorized(buffers)

@backend_function(INDEX)
@for_backend(Backend.CPU)
def _index_cells_cpu(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    index_cells_vectorized(buffers, grid)

@backend_function(FIND_NEIGHBORS)
@for_backend(Backend.CPU)
def _find_neighbors_cpu(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                        config: SolverConfig):
    find_neighbors_vectorized(buffers, grid, config.h, config.simulation_scale)

@backend_function(COMPUTE_DENSITY)
@for_backend(Backend.CPU)
def _compute_density_cpu(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    compute_density_vectorized(buffers, config)

@backend_function(COMPUTE_FORCES_INIT_PRESSURE)
@for_backend(Backend.CPU)
def _compute_forces_init_pressure_cpu(global_size: int, buffers: ParticleBuffers,
                                      config: SolverConfig):
    compute_forces_init_pressure_vectorized(buffers, config)

@backend_function(COMPUTE_ELASTIC_FORCES)
@for_backend(Backend.CPU)
def _compute_elastic_forces_cpu(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    compute_elastic_forces_vectorized(buffers, config)

@backend_function(PREDICT_POSITIONS)
@for_backend(Backend.CPU)
def _predict_positions_cpu(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                           config: SolverConfig, time_step: float):
    predict_positions_vectorized(buffers, grid, config, time_step)

@backend_function(PREDICT_DENSITY)
@for_backend(Backend.CPU)
def _predict_density_cpu(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    predict_density_vectorized(buffers, config)

@backend_function(CORRECT_PRESSURE)
@for_backend(Backend.CPU)
def _correct_pressure_cpu(global_size: int, buffers: ParticleBuffers, config: SolverConfig,
                          delta: float):
    correct_pressure_vectorized(buffers, config, delta)

@backend_function(COMPUTE_PRESSURE_FORCE)
@for_backend(Backend.CPU)
def _compute_pressure_force_cpu(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    compute_pressure_force_vectorized(buffers, config)

@backend_function(INTEGRATE)
@for_backend(Backend.CPU)
def _integrate_cpu(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                   config: SolverConfig, time_step: float):
    integrate_vectorized(buffers, grid, config, time_step)
    _swap_generations(buffers)


# Register Numba implementations
@backend_function(CLEAR_BUFFERS)
@for_backend(Backend.NUMBA)
def _clear_buffers_numba(global_size: int, buffers: ParticleBuffers):
    clear_buffers_wrapper(global_size, buffers)

@backend_function(HASH_PARTICLES)
@for_backend(Backend.NUMBA)
def _hash_particles_numba(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    hash_particles_wrapper(global_size, buffers, grid)

@backend_function(SORT_POST_PASS)
@for_backend(Backend.NUMBA)
def _sort_post_pass_numba(global_size: int, buffers: ParticleBuffers):
    sort_post_pass_wrapper(global_size, buffers)

@backend_function(INDEX)
@for_backend(Backend.NUMBA)
def _index_cells_numba(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    index_cells_wrapper(global_size, buffers, grid)

@backend_function(FIND_NEIGHBORS)
@for_backend(Backend.NUMBA)
def _find_neighbors_numba(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                          config: SolverConfig):
    find_neighbors_wrapper(global_size, buffers, grid, config.h, config.simulation_scale)

@backend_function(COMPUTE_DENSITY)
@for_backend(Backend.NUMBA)
def _compute_density_numba(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    compute_density_numba_wrapper(global_size, buffers, config)

@backend_function(COMPUTE_FORCES_INIT_PRESSURE)
@for_backend(Backend.NUMBA)
def _compute_forces_init_pressure_numba(global_size: int, buffers: ParticleBuffers,
                                        config: SolverConfig):
    compute_forces_init_pressure_numba_wrapper(global_size, buffers, config)

@backend_function(COMPUTE_ELASTIC_FORCES)
@for_backend(Backend.NUMBA)
def _compute_elastic_forces_numba(global_size: int, buffers: ParticleBuffers,
                                  config: SolverConfig):
    compute_elastic_forces_numba_wrapper(global_size, buffers, config)

@backend_function(PREDICT_POSITIONS)
@for_backend(Backend.NUMBA)
def _predict_positions_numba(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                             config: SolverConfig, time_step: float):
    predict_positions_numba_wrapper(global_size, buffers, grid, config, time_step)

@backend_function(PREDICT_DENSITY)
@for_backend(Backend.NUMBA)
def _predict_density_numba(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    predict_density_numba_wrapper(global_size, buffers, config)

@backend_function(CORRECT_PRESSURE)
@for_backend(Backend.NUMBA)
def _correct_pressure_numba(global_size: int, buffers: ParticleBuffers, config: SolverConfig,
                            delta: float):
    correct_pressure_numba_wrapper(global_size, buffers, config, delta)

@backend_function(COMPUTE_PRESSURE_FORCE)
@for_backend(Backend.NUMBA)
def _compute_pressure_force_numba(global_size: int, buffers: ParticleBuffers,
                                  config: SolverConfig):
    compute_pressure_force_numba_wrapper(global_size, buffers, config)

@backend_function(INTEGRATE)
@for_backend(Backend.NUMBA)
def _integrate_numba(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                     config: SolverConfig, time_step: float):
    integrate_numba_wrapper(global_size, buffers, grid, config, time_step)
    _swap_generations(buffers)


# Host-side stages, identical on every backend
for _backend in Backend:
    @backend_function(SORT)
    @for_backend(_backend)
    def _sort_host(global_size: int, buffers: ParticleBuffers):
        sort_particles(buffers)

    @backend_function(INDEX_POST_PASS)
    @for_backend(_backend)
    def _index_post_pass_host(global_size: int, buffers: ParticleBuffers):
        index_post_pass(buffers)


def run_stage(name: str, buffers: ParticleBuffers, *args, work_items: Optional[int] = None,
              backend: Optional[str] = None):
    """Run one stage outside the step graph (tests, debugging).

    Args:
        name: Stage name from STAGES
        buffers: Particle buffers to operate on
        *args: Stage arguments after the buffer set
        work_items: Work item count (defaults to the particle count)
        backend: 'cpu' or 'numba' (None for the global backend)
    """
    if work_items is None:
        work_items = buffers.particle_count
    return dispatch(name, round_up_work_size(work_items), buffers, *args, backend=backend)
