"""
Elastic connection forces (NumPy reference).

Each elastic particle owns `neighbor_capacity` connection rows
(partner original id, rest distance in simulation units, bundle tag).
A spring pulls the pair toward its rest distance; connections tagged with a
bundle >= 1 also contract with that bundle's activation signal.
"""

import numpy as np

from .. import constants as C
from ..config import SolverConfig
from ..core.buffers import ParticleBuffers, SORTED, NON_PRESSURE


def muscle_slot(bundle_tag: np.ndarray, slot_count: int) -> np.ndarray:
    """Activation slot of a bundle tag (tags count from 1)."""
    return np.minimum(bundle_tag.astype(np.int64) - 1, slot_count - 1)


def compute_elastic_forces_vectorized(buffers: ParticleBuffers, config: SolverConfig):
    """Add spring and muscle accelerations into the non-pressure slot.

    Args:
        buffers: Particle buffers with the elastic tables loaded
        config: Solver configuration
    """
    if buffers.elastic_count == 0 or buffers.elastic_connections is None:
        return
    connections = buffers.elastic_connections
    partners = connections[:, :, 0].astype(np.int64)
    rest = connections[:, :, 1].astype(np.float64) * config.simulation_scale
    tags = connections[:, :, 2]

    back = buffers.particle_index_back
    i_sorted = back[buffers.elastic_ids]
    valid = partners != C.NO_PARTICLE_ID
    j_sorted = back[np.where(valid, partners, 0)]

    x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    d = (x[i_sorted][:, np.newaxis, :] - x[j_sorted]) * config.simulation_scale
    length = np.sqrt(np.sum(d * d, axis=2))
    valid &= length > 0.0
    direction = d / np.where(valid, length, 1.0)[..., np.newaxis]

    magnitude = config.elasticity_coefficient * (length - rest)

    slots = len(buffers.activation_signal)
    muscle = (tags >= 1.0) & valid
    slot = muscle_slot(np.where(muscle, tags, 1.0), slots)
    activation = buffers.activation_signal[slot].astype(np.float64)
    magnitude += np.where(muscle, activation * config.max_muscle_acceleration, 0.0)

    magnitude = np.where(valid, magnitude, 0.0)
    accel = -np.sum(magnitude[..., np.newaxis] * direction, axis=1)
    buffers.acceleration[NON_PRESSURE, i_sorted, :3] += accel
