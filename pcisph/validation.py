"""
Model and result checks used by external validators and the test suite.
"""

from typing import Iterable, List

import numpy as np

from . import constants as C
from .core.model import SceneModel, is_type


def count_non_boundary_particles(model: SceneModel) -> int:
    return int(np.count_nonzero(~model.type_mask(C.BOUNDARY_TYPE)))


def find_overlapping_particles(model: SceneModel) -> List[int]:
    """Ids of non-boundary particles placed exactly on a boundary particle."""
    positions = model.positions
    boundary = is_type(positions[:, 3], C.BOUNDARY_TYPE)
    if not np.any(boundary) or np.all(boundary):
        return []
    boundary_points = {tuple(p) for p in positions[boundary, :3].tolist()}
    return [int(i) for i in np.flatnonzero(~boundary)
            if tuple(positions[i, :3].tolist()) in boundary_points]


def find_numerical_anomalies(results: Iterable) -> List[int]:
    """Particle ids whose position or velocity carries NaN or Inf in any step result."""
    bad = set()
    for result in results:
        finite = np.isfinite(result.positions).all(axis=1) & np.isfinite(result.velocities).all(axis=1)
        bad.update(int(i) for i in np.asarray(result.particle_ids)[~finite])
    return sorted(bad)
