"""
Scene model handed to the solver by an external loader.

Positions carry the particle type tag in their 4th component, velocities echo
it. Elastic connections are laid out per elastic particle: the k-th block of
`neighbor_capacity` rows belongs to the k-th elastic particle in index order,
unused rows have partner NO_PARTICLE_ID.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .. import constants as C
from ..errors import ConfigurationError


@dataclass
class SceneModel:
    """Particles, bounding box and optional elastic data of one scene."""
    positions: np.ndarray                       # (N, 4) x, y, z, type
    velocities: np.ndarray                      # (N, 4) x, y, z, type echo
    bounds: Tuple[float, float, float, float, float, float]  # xmin, xmax, ymin, ymax, zmin, zmax
    connections: Optional[np.ndarray] = None    # (M, 3) partner id, rest distance, bundle tag
    elastic_bundles: int = 0
    model_id: str = "scene"

    def __post_init__(self):
        self.positions = np.asarray(self.positions, dtype=np.float32).reshape(-1, 4)
        self.velocities = np.asarray(self.velocities, dtype=np.float32).reshape(-1, 4)
        if len(self.positions) != len(self.velocities):
            raise ConfigurationError(f"Got {len(self.positions)} positions but "
                                     f"{len(self.velocities)} velocities")
        self.bounds = validate_bounds(self.bounds)
        if self.connections is not None:
            self.connections = np.asarray(self.connections, dtype=np.float32).reshape(-1, 3)
        if self.elastic_bundles is None:
            self.elastic_bundles = 0
        if self.elastic_bundles < 0:
            raise ConfigurationError(f"Negative elastic bundle count: {self.elastic_bundles}")

    @property
    def particle_count(self) -> int:
        return len(self.positions)

    @property
    def bounds_min(self) -> np.ndarray:
        return np.array(self.bounds[0::2], dtype=np.float64)

    @property
    def bounds_max(self) -> np.ndarray:
        return np.array(self.bounds[1::2], dtype=np.float64)

    def type_mask(self, type_tag: float) -> np.ndarray:
        return is_type(self.positions[:, 3], type_tag)


def validate_bounds(bounds) -> Tuple[float, float, float, float, float, float]:
    """Check and normalise an (xmin, xmax, ymin, ymax, zmin, zmax) box."""
    if len(bounds) != 6:
        raise ConfigurationError("Bounds must be (xmin, xmax, ymin, ymax, zmin, zmax)")
    bounds = tuple(float(b) for b in bounds)
    xmin, xmax, ymin, ymax, zmin, zmax = bounds
    if xmax < xmin or ymax < ymin or zmax < zmin:
        raise ConfigurationError(f"Inverted bounding box: {bounds}")
    return bounds


def grid_dimensions(bounds, cell_size: float) -> Tuple[int, int, int]:
    """Cells per axis: ceil((max - min) / cell_size) + 1."""
    lo = np.asarray(bounds[0::2], dtype=np.float64)
    hi = np.asarray(bounds[1::2], dtype=np.float64)
    dims = np.ceil((hi - lo) / cell_size).astype(np.int64) + 1
    return int(dims[0]), int(dims[1]), int(dims[2])


def is_type(type_tags: np.ndarray, type_tag: float) -> np.ndarray:
    """Tag comparison tolerant to float32 storage of the tag."""
    return np.abs(np.asarray(type_tags, dtype=np.float64) - type_tag) < C.TYPE_TAG_TOLERANCE


def count_types(type_tags: np.ndarray) -> Tuple[int, int, int]:
    """(boundary, elastic, liquid) counts; unknown tags are in none of them."""
    boundary = int(np.count_nonzero(is_type(type_tags, C.BOUNDARY_TYPE)))
    elastic = int(np.count_nonzero(is_type(type_tags, C.ELASTIC_TYPE)))
    liquid = int(np.count_nonzero(is_type(type_tags, C.LIQUID_TYPE)))
    return boundary, elastic, liquid


@dataclass(frozen=True)
class UniformGrid:
    """Uniform hashing lattice over the scene bounding box."""
    bounds: Tuple[float, float, float, float, float, float]
    cell_size: float
    dims: Tuple[int, int, int]

    @staticmethod
    def from_bounds(bounds, cell_size: float) -> 'UniformGrid':
        return UniformGrid(tuple(float(b) for b in bounds), float(cell_size),
                           grid_dimensions(bounds, cell_size))

    @property
    def cell_count(self) -> int:
        return self.dims[0] * self.dims[1] * self.dims[2]

    @property
    def cell_size_inv(self) -> float:
        return 1.0 / self.cell_size

    @property
    def origin(self) -> np.ndarray:
        return np.array(self.bounds[0::2], dtype=np.float64)

    @property
    def upper(self) -> np.ndarray:
        return np.array(self.bounds[1::2], dtype=np.float64)
