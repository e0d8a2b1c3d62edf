"""
Vectorized spatial grid indexing and neighbor search (NumPy reference).

The grid is rebuilt from scratch every step:
1. hash      - particle -> (cell id, particle id) pairs
2. sort      - stable sort of the pairs by cell id (host side)
3. post pass - sorted copies of position/velocity + inverse permutation
4. index     - first sorted particle of every non-empty cell
5. post pass - forward fill of empty cells (host side)
6. neighbors - 3x3x3 cell scan into fixed-capacity neighbor lists
"""

import numpy as np

from .. import constants as C
from .buffers import ParticleBuffers, SORTED
from .model import UniformGrid


def cell_coordinates(positions: np.ndarray, grid: UniformGrid) -> np.ndarray:
    """Integer cell coordinates, clamped into the grid.

    Args:
        positions: (N, 3+) positions in simulation units
        grid: Hashing lattice

    Returns:
        (N, 3) int64 cell coordinates
    """
    coords = np.floor((positions[:, :3].astype(np.float64) - grid.origin) * grid.cell_size_inv)
    coords = coords.astype(np.int64)
    return np.clip(coords, 0, np.array(grid.dims, dtype=np.int64) - 1)


def linear_cell_id(coords: np.ndarray, grid: UniformGrid) -> np.ndarray:
    """Linearise (ix, iy, iz) as ix + nx * (iy + ny * iz)."""
    nx, ny, _ = grid.dims
    return coords[..., 0] + nx * (coords[..., 1] + ny * coords[..., 2])


def clear_buffers_vectorized(buffers: ParticleBuffers):
    """Reset the neighbor map."""
    buffers.neighbor_ids.fill(C.NO_PARTICLE_ID)
    buffers.neighbor_distances.fill(0.0)
    buffers.neighbor_count.fill(0)


def hash_particles_vectorized(buffers: ParticleBuffers, grid: UniformGrid):
    """Write (cell id, particle id) pairs for every particle."""
    n = buffers.particle_count
    if n == 0:
        return
    coords = cell_coordinates(buffers.position.current, grid)
    buffers.particle_index[:, 0] = linear_cell_id(coords, grid)
    buffers.particle_index[:, 1] = np.arange(n, dtype=np.int32)


def sort_particles(buffers: ParticleBuffers):
    """Stable sort of the (cell id, particle id) pairs by cell id only.

    Ties keep their relative order, so the result is reproducible for
    identical input.
    """
    if buffers.particle_count == 0:
        return
    order = np.argsort(buffers.particle_index[:, 0], kind='stable')
    buffers.particle_index[:] = buffers.particle_index[order]


def sort_post_pass_vectorized(buffers: ParticleBuffers):
    """Gather sorted position/velocity copies and build the inverse permutation."""
    n = buffers.particle_count
    if n == 0:
        return
    old_ids = buffers.particle_index[:, 1]
    buffers.sorted_position[SORTED] = buffers.position.current[old_ids]
    buffers.sorted_velocity[:] = buffers.velocity.current[old_ids]
    buffers.particle_index_back[old_ids] = np.arange(n, dtype=np.int32)


def index_cells_vectorized(buffers: ParticleBuffers, grid: UniformGrid):
    """Record the first sorted particle of every non-empty cell.

    Empty cells get NO_CELL_ID; the trailing sentinel slot gets the particle count.
    """
    n = buffers.particle_count
    g = grid.cell_count
    cells = np.arange(g, dtype=np.int64)
    sorted_cells = buffers.particle_index[:, 0]

    first = np.searchsorted(sorted_cells, cells, side='left')
    present = first < n
    present[present] = sorted_cells[first[present]] == cells[present]

    buffers.grid_cell_index[:g] = np.where(present, first, C.NO_CELL_ID)
    buffers.grid_cell_index[g] = n


def index_post_pass(buffers: ParticleBuffers):
    """Forward-fill empty cells with the start of the next non-empty cell.

    Scans from the last cell down, seeded with the particle count, so every
    cell resolves to a valid range start and the table is non-decreasing.
    """
    table = buffers.grid_cell_index.copy()
    recent_non_empty = buffers.particle_count
    for i in range(len(table) - 1, -1, -1):
        if table[i] == C.NO_CELL_ID:
            table[i] = recent_non_empty
        else:
            recent_non_empty = table[i]
    buffers.grid_cell_index_fixed[:] = table


# 3x3x3 block, z outermost, x innermost
NEIGHBOR_CELL_OFFSETS = np.array(
    [(dx, dy, dz) for dz in (-1, 0, 1) for dy in (-1, 0, 1) for dx in (-1, 0, 1)],
    dtype=np.int64
)


def find_neighbors_vectorized(buffers: ParticleBuffers, grid: UniformGrid,
                              h: float, simulation_scale: float):
    """Build fixed-capacity neighbor lists from the bucket table.

    Candidates are visited cell by cell (NEIGHBOR_CELL_OFFSETS order) and in
    sorted order inside each cell; the first `neighbor_capacity` matches are
    kept, later ones are dropped.

    Args:
        buffers: Particle buffers with sorted positions and bucket table
        grid: Hashing lattice
        h: Neighbor cutoff in simulation units
        simulation_scale: Stored distances are multiplied by this
    """
    n = buffers.particle_count
    if n == 0:
        return
    capacity = buffers.neighbor_capacity
    table = buffers.grid_cell_index_fixed
    positions = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    dims = np.array(grid.dims, dtype=np.int64)
    h2 = h * h

    coords = cell_coordinates(positions, grid)

    for i in range(n):
        neighbor_cells = coords[i] + NEIGHBOR_CELL_OFFSETS
        inside = np.all((neighbor_cells >= 0) & (neighbor_cells < dims), axis=1)
        cell_ids = linear_cell_id(neighbor_cells[inside], grid)

        ranges = [np.arange(table[c], table[c + 1]) for c in cell_ids]
        candidates = np.concatenate(ranges) if ranges else np.empty(0, dtype=np.int64)
        candidates = candidates[candidates != i]
        if len(candidates) == 0:
            continue

        d = positions[candidates] - positions[i]
        dist2 = np.sum(d * d, axis=1)
        mask = dist2 < h2
        found = candidates[mask][:capacity]
        count = len(found)

        buffers.neighbor_ids[i, :count] = found
        buffers.neighbor_distances[i, :count] = np.sqrt(dist2[mask][:capacity]) * simulation_scale
        buffers.neighbor_count[i] = count


def bucket_range(buffers: ParticleBuffers, cell_id: int):
    """Sorted particle range [start, end) of one cell."""
    table = buffers.grid_cell_index_fixed
    return int(table[cell_id]), int(table[cell_id + 1])


def get_statistics(buffers: ParticleBuffers, grid: UniformGrid) -> dict:
    """Get grid occupancy statistics for debugging."""
    table = buffers.grid_cell_index_fixed
    counts = np.diff(table).astype(np.int64)
    occupied = counts > 0
    return {
        'total_cells': grid.cell_count,
        'occupied_cells': int(np.sum(occupied)),
        'occupancy_rate': float(np.sum(occupied)) / grid.cell_count,
        'max_particles_per_cell': int(np.max(counts)) if len(counts) else 0,
        'mean_neighbors': float(np.mean(buffers.neighbor_count)) if buffers.particle_count else 0.0,
        'saturated_neighbor_lists': int(np.sum(buffers.neighbor_count == buffers.neighbor_capacity)),
    }
