"""
Particle buffer set using the Structure-of-Arrays (SoA) pattern.

Every quantity is a flat, pre-allocated array addressed by particle (or grid
cell) index, sized once after model load and reused in place every step.
Quantities that are read and rewritten within one step are kept as two
generations in one allocation:

- position / velocity:     current | scratch      (DoubleBuffer, swapped by index)
- sorted_position:         sorted  | predicted
- acceleration:            non-pressure | pressure
- rho:                     density | predicted density
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np

from .. import constants as C
from ..errors import ConfigurationError
from .model import count_types, is_type

# Slot indices of the two-generation buffers
SORTED = 0
PREDICTED = 1
NON_PRESSURE = 0
PRESSURE = 1
DENSITY = 0
PREDICTED_DENSITY = 1


class DoubleBuffer:
    """Two generations of one quantity; readers use `current`, writers `scratch`."""

    def __init__(self, data: np.ndarray):
        if data.shape[0] != 2:
            raise ValueError(f"DoubleBuffer needs a leading axis of 2, got {data.shape}")
        self.data = data
        self.front = 0

    @property
    def current(self) -> np.ndarray:
        return self.data[self.front]

    @property
    def scratch(self) -> np.ndarray:
        return self.data[1 - self.front]

    def swap(self):
        self.front = 1 - self.front


@dataclass(eq=False)
class ParticleBuffers:
    """All device buffers of one solver instance."""
    particle_count: int
    grid_cell_count: int
    neighbor_capacity: int
    elastic_count: int
    elastic_bundle_count: int

    position: DoubleBuffer            # (2, N, 4) float32
    velocity: DoubleBuffer            # (2, N, 4) float32
    sorted_position: np.ndarray       # (2, N, 4) float32
    sorted_velocity: np.ndarray       # (N, 4) float32
    acceleration: np.ndarray          # (2, N, 4) float32
    rho: np.ndarray                   # (2, N) float32
    pressure: np.ndarray              # (N,) float32

    particle_index: np.ndarray        # (N, 2) int32: cell id, particle id
    particle_index_back: np.ndarray   # (N,) int32: original -> sorted
    grid_cell_index: np.ndarray       # (G + 1,) int32
    grid_cell_index_fixed: np.ndarray # (G + 1,) int32

    neighbor_ids: np.ndarray          # (N, K) int32, sorted particle ids
    neighbor_distances: np.ndarray    # (N, K) float32, meters
    neighbor_count: np.ndarray        # (N,) int32

    activation_signal: np.ndarray     # (max(1, B),) float32

    # Allocated lazily, only with elastic particles
    elastic_connections: Optional[np.ndarray] = None  # (E, K, 3) partner, rest distance, bundle tag
    elastic_ids: Optional[np.ndarray] = None          # (E,) int32 original ids of elastic particles

    boundary_count: int = 0
    liquid_count: int = 0
    loaded: bool = False

    _allocator: object = field(default=None, repr=False)

    @staticmethod
    def allocate(particle_count: int, grid_cell_count: int, elastic_count: int = 0,
                 elastic_bundle_count: int = 0, neighbor_capacity: int = C.NEIGHBOR_COUNT,
                 device=None) -> 'ParticleBuffers':
        """Create and size every core buffer.

        Args:
            particle_count: Number of particles N
            grid_cell_count: Number of grid cells G
            elastic_count: Number of elastic particles (connection buffers come later)
            elastic_bundle_count: Number of activation bundles
            neighbor_capacity: Neighbor list capacity K
            device: ComputeDevice used for allocation (plain numpy if None)

        Returns:
            Pre-allocated ParticleBuffers instance
        """
        if particle_count < 0 or grid_cell_count < 1:
            raise ConfigurationError(f"Invalid buffer sizes: {particle_count} particles, "
                                     f"{grid_cell_count} cells")

        def zeros(shape, dtype=np.float32, fill=0):
            if device is not None:
                return device.allocate_buffer(shape, dtype, fill)
            return np.full(shape, fill, dtype=dtype)

        n, g, k = particle_count, grid_cell_count, neighbor_capacity
        return ParticleBuffers(
            particle_count=n,
            grid_cell_count=g,
            neighbor_capacity=k,
            elastic_count=elastic_count,
            elastic_bundle_count=elastic_bundle_count,

            position=DoubleBuffer(zeros((2, n, 4))),
            velocity=DoubleBuffer(zeros((2, n, 4))),
            sorted_position=zeros((2, n, 4)),
            sorted_velocity=zeros((n, 4)),
            acceleration=zeros((2, n, 4)),
            rho=zeros((2, n)),
            pressure=zeros(n),

            particle_index=zeros((n, 2), np.int32),
            particle_index_back=zeros(n, np.int32),
            grid_cell_index=zeros(g + 1, np.int32, C.NO_CELL_ID),
            grid_cell_index_fixed=zeros(g + 1, np.int32, C.NO_CELL_ID),

            neighbor_ids=zeros((n, k), np.int32, C.NO_PARTICLE_ID),
            neighbor_distances=zeros((n, k)),
            neighbor_count=zeros(n, np.int32),

            # never zero-sized, even without bundles
            activation_signal=zeros(max(1, elastic_bundle_count), np.float32, C.NEUTRAL_ACTIVATION),
            _allocator=zeros,
        )

    def load(self, positions: np.ndarray, velocities: np.ndarray):
        """Write initial host vectors and tally particle types.

        Raises:
            ConfigurationError: If shapes are wrong or type counts do not add up
        """
        positions = np.asarray(positions, dtype=np.float32).reshape(-1, 4)
        velocities = np.asarray(velocities, dtype=np.float32).reshape(-1, 4)
        if len(positions) != self.particle_count or len(velocities) != self.particle_count:
            raise ConfigurationError(f"Expected {self.particle_count} positions/velocities, got "
                                     f"{len(positions)}/{len(velocities)}")

        boundary, elastic, liquid = count_types(positions[:, 3])
        if boundary + elastic + liquid != self.particle_count:
            raise ConfigurationError(
                f"Particle counts do not add up: {boundary} boundary + {elastic} elastic + "
                f"{liquid} liquid != {self.particle_count}")
        if elastic != self.elastic_count:
            raise ConfigurationError(f"Buffers sized for {self.elastic_count} elastic particles, "
                                     f"model has {elastic}")

        self.position.current[:] = positions
        self.velocity.current[:] = velocities
        self.boundary_count = boundary
        self.liquid_count = liquid

        if elastic > 0:
            self.elastic_ids = np.flatnonzero(is_type(positions[:, 3], C.ELASTIC_TYPE)).astype(np.int32)
            self.elastic_connections = self._allocator((elastic, self.neighbor_capacity, 3))
            self.elastic_connections[:, :, 0] = C.NO_PARTICLE_ID
        self.loaded = True

    def load_connections(self, connections: Optional[np.ndarray]):
        """Copy static elastic connections into the per-elastic-particle table.

        Raises:
            ConfigurationError: If connections exist without elastic particles,
                overflow the table, or reference unknown particles
        """
        if connections is None or len(connections) == 0:
            return
        if self.elastic_count == 0:
            raise ConfigurationError("Elastic connections given but the model has no elastic particles")

        connections = np.asarray(connections, dtype=np.float32).reshape(-1, 3)
        capacity = self.elastic_count * self.neighbor_capacity
        if len(connections) > capacity:
            raise ConfigurationError(f"{len(connections)} connections exceed the table capacity "
                                     f"{capacity} ({self.neighbor_capacity} per elastic particle)")
        partners = connections[:, 0].astype(np.int64)
        bad = (partners != C.NO_PARTICLE_ID) & ((partners < 0) | (partners >= self.particle_count))
        if np.any(bad):
            raise ConfigurationError(f"Connection partner ids out of range: {partners[bad][:5].tolist()}")

        flat = self.elastic_connections.reshape(-1, 3)
        flat[:len(connections)] = connections

    def resize_grid(self, grid_cell_count: int):
        """Reallocate the cell tables after the grid cell count changed."""
        if grid_cell_count < 1:
            raise ConfigurationError(f"Invalid grid cell count {grid_cell_count}")
        self.grid_cell_count = grid_cell_count
        self.grid_cell_index = self._allocator(grid_cell_count + 1, np.int32, C.NO_CELL_ID)
        self.grid_cell_index_fixed = self._allocator(grid_cell_count + 1, np.int32, C.NO_CELL_ID)

    def set_activation(self, values):
        values = np.asarray(values, dtype=np.float32).ravel()
        if len(values) != len(self.activation_signal):
            raise ConfigurationError(f"Expected {len(self.activation_signal)} activation values, "
                                     f"got {len(values)}")
        self.activation_signal[:] = values

    @property
    def buffer_sizes(self) -> Dict[str, int]:
        """Element counts of every allocated buffer."""
        sizes = {name: int(array.size) for name, array in self.arrays().items()}
        return sizes

    def arrays(self) -> Dict[str, np.ndarray]:
        """Named views of every allocated buffer (current generations first)."""
        arrays = {
            'position': self.position.current,
            'velocity': self.velocity.current,
            'sorted_position': self.sorted_position,
            'sorted_velocity': self.sorted_velocity,
            'acceleration': self.acceleration,
            'rho': self.rho,
            'pressure': self.pressure,
            'particle_index': self.particle_index,
            'particle_index_back': self.particle_index_back,
            'grid_cell_index': self.grid_cell_index,
            'grid_cell_index_fixed': self.grid_cell_index_fixed,
            'neighbor_ids': self.neighbor_ids,
            'neighbor_distances': self.neighbor_distances,
            'neighbor_count': self.neighbor_count,
            'activation_signal': self.activation_signal,
        }
        if self.elastic_connections is not None:
            arrays['elastic_connections'] = self.elastic_connections
        return arrays

    def type_tags(self) -> np.ndarray:
        return self.position.current[:, 3]

    def non_boundary_ids(self) -> np.ndarray:
        return np.flatnonzero(~is_type(self.type_tags(), C.BOUNDARY_TYPE)).astype(np.int32)

    def sorted_type_tags(self) -> np.ndarray:
        return self.sorted_position[SORTED, :, 3]

    def counts(self) -> Tuple[int, int, int]:
        return self.boundary_count, self.elastic_count, self.liquid_count
