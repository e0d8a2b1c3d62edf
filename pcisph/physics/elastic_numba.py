"""
Numba-optimized elastic connection forces, one task per elastic particle.
"""

import numpy as np
import numba as nb

from ..constants import NO_PARTICLE_ID
from ..config import SolverConfig
from ..core.buffers import ParticleBuffers, SORTED, NON_PRESSURE


@nb.njit(parallel=True, fastmath=True, cache=True)
def compute_elastic_forces_numba(global_size: int, elastic_count: int, elastic_ids: np.ndarray,
                                 connections: np.ndarray, particle_index_back: np.ndarray,
                                 sorted_position: np.ndarray, activation_signal: np.ndarray,
                                 accel_non_pressure: np.ndarray, simulation_scale: float,
                                 elasticity_coefficient: float, max_muscle_acceleration: float):
    slots = activation_signal.shape[0]
    for e in nb.prange(global_size):
        if e >= elastic_count:
            continue
        i = particle_index_back[elastic_ids[e]]
        ax = 0.0
        ay = 0.0
        az = 0.0
        for k in range(connections.shape[1]):
            partner = int(connections[e, k, 0])
            if partner == NO_PARTICLE_ID:
                continue
            j = particle_index_back[partner]
            dx = (np.float64(sorted_position[i, 0]) - sorted_position[j, 0]) * simulation_scale
            dy = (np.float64(sorted_position[i, 1]) - sorted_position[j, 1]) * simulation_scale
            dz = (np.float64(sorted_position[i, 2]) - sorted_position[j, 2]) * simulation_scale
            length = np.sqrt(dx * dx + dy * dy + dz * dz)
            if length <= 0.0:
                continue
            magnitude = elasticity_coefficient * (length - connections[e, k, 1] * simulation_scale)
            tag = connections[e, k, 2]
            if tag >= 1.0:
                slot = min(int(tag) - 1, slots - 1)
                magnitude += activation_signal[slot] * max_muscle_acceleration
            ax -= magnitude * dx / length
            ay -= magnitude * dy / length
            az -= magnitude * dz / length
        accel_non_pressure[i, 0] += ax
        accel_non_pressure[i, 1] += ay
        accel_non_pressure[i, 2] += az


def compute_elastic_forces_numba_wrapper(global_size: int, buffers: ParticleBuffers,
                                         config: SolverConfig):
    if buffers.elastic_count == 0 or buffers.elastic_connections is None:
        return
    compute_elastic_forces_numba(
        global_size, buffers.elastic_count, buffers.elastic_ids, buffers.elastic_connections,
        buffers.particle_index_back, buffers.sorted_position[SORTED], buffers.activation_signal,
        buffers.acceleration[NON_PRESSURE], config.simulation_scale,
        config.elasticity_coefficient, config.max_muscle_acceleration
    )
