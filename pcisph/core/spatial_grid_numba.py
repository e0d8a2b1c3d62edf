"""
Numba-parallel spatial grid indexing and neighbor search.

One prange task per particle (hash, post pass, neighbors) or per cell
(index). Every kernel receives the rounded-up global work size and returns
early for indices past the real item count. Sorting and the empty-cell fill
stay on the host (see spatial_grid_vectorized.sort_particles/index_post_pass).
"""

import numpy as np
import numba as nb

from ..constants import NO_CELL_ID, NO_PARTICLE_ID
from .buffers import ParticleBuffers, SORTED
from .model import UniformGrid


@nb.njit(parallel=True, cache=True)
def clear_buffers_numba(global_size: int, n: int, neighbor_ids: np.ndarray,
                        neighbor_distances: np.ndarray, neighbor_count: np.ndarray):
    """Reset the neighbor map."""
    k = neighbor_ids.shape[1]
    for i in nb.prange(global_size):
        if i >= n:
            continue
        for m in range(k):
            neighbor_ids[i, m] = NO_PARTICLE_ID
            neighbor_distances[i, m] = 0.0
        neighbor_count[i] = 0


@nb.njit(cache=True)
def _cell_of(x: float, y: float, z: float,
             ox: float, oy: float, oz: float, cell_size_inv: float,
             nx: int, ny: int, nz: int):
    ix = int(np.floor((x - ox) * cell_size_inv))
    iy = int(np.floor((y - oy) * cell_size_inv))
    iz = int(np.floor((z - oz) * cell_size_inv))
    ix = max(0, min(ix, nx - 1))
    iy = max(0, min(iy, ny - 1))
    iz = max(0, min(iz, nz - 1))
    return ix, iy, iz


@nb.njit(parallel=True, cache=True)
def hash_particles_numba(global_size: int, n: int, positions: np.ndarray,
                         particle_index: np.ndarray,
                         ox: float, oy: float, oz: float, cell_size_inv: float,
                         nx: int, ny: int, nz: int):
    """Write (cell id, particle id) for every particle."""
    for i in nb.prange(global_size):
        if i >= n:
            continue
        ix, iy, iz = _cell_of(np.float64(positions[i, 0]), np.float64(positions[i, 1]),
                              np.float64(positions[i, 2]), ox, oy, oz, cell_size_inv, nx, ny, nz)
        particle_index[i, 0] = ix + nx * (iy + ny * iz)
        particle_index[i, 1] = i


@nb.njit(parallel=True, cache=True)
def sort_post_pass_numba(global_size: int, n: int, particle_index: np.ndarray,
                         positions: np.ndarray, velocities: np.ndarray,
                         sorted_position: np.ndarray, sorted_velocity: np.ndarray,
                         particle_index_back: np.ndarray):
    """Gather sorted copies and build the inverse permutation."""
    for i in nb.prange(global_size):
        if i >= n:
            continue
        old = particle_index[i, 1]
        for c in range(4):
            sorted_position[i, c] = positions[old, c]
            sorted_velocity[i, c] = velocities[old, c]
        particle_index_back[old] = i


@nb.njit(parallel=True, cache=True)
def index_cells_numba(global_size: int, n: int, cell_count: int,
                      particle_index: np.ndarray, grid_cell_index: np.ndarray):
    """First sorted particle per cell via binary search, NO_CELL_ID if empty."""
    for c in nb.prange(global_size):
        if c > cell_count:
            continue
        if c == cell_count:
            grid_cell_index[c] = n
            continue
        lo = 0
        hi = n
        while lo < hi:
            mid = (lo + hi) // 2
            if particle_index[mid, 0] < c:
                lo = mid + 1
            else:
                hi = mid
        if lo < n and particle_index[lo, 0] == c:
            grid_cell_index[c] = lo
        else:
            grid_cell_index[c] = NO_CELL_ID


@nb.njit(parallel=True, cache=True)
def find_neighbors_numba(global_size: int, n: int, sorted_position: np.ndarray,
                         grid_cell_index_fixed: np.ndarray,
                         ox: float, oy: float, oz: float, cell_size_inv: float,
                         nx: int, ny: int, nz: int,
                         h2: float, simulation_scale: float,
                         neighbor_ids: np.ndarray, neighbor_distances: np.ndarray,
                         neighbor_count: np.ndarray):
    """Scan the 3x3x3 block around each particle, keep the first K within h."""
    capacity = neighbor_ids.shape[1]
    for i in nb.prange(global_size):
        if i >= n:
            continue
        px = np.float64(sorted_position[i, 0])
        py = np.float64(sorted_position[i, 1])
        pz = np.float64(sorted_position[i, 2])
        ix, iy, iz = _cell_of(px, py, pz, ox, oy, oz, cell_size_inv, nx, ny, nz)

        found = 0
        for dz in range(-1, 2):
            cz = iz + dz
            if cz < 0 or cz >= nz:
                continue
            for dy in range(-1, 2):
                cy = iy + dy
                if cy < 0 or cy >= ny:
                    continue
                for dx in range(-1, 2):
                    cx = ix + dx
                    if cx < 0 or cx >= nx:
                        continue
                    cell = cx + nx * (cy + ny * cz)
                    for j in range(grid_cell_index_fixed[cell], grid_cell_index_fixed[cell + 1]):
                        if j == i or found >= capacity:
                            continue
                        ddx = np.float64(sorted_position[j, 0]) - px
                        ddy = np.float64(sorted_position[j, 1]) - py
                        ddz = np.float64(sorted_position[j, 2]) - pz
                        dist2 = ddx * ddx + ddy * ddy + ddz * ddz
                        if dist2 < h2:
                            neighbor_ids[i, found] = j
                            neighbor_distances[i, found] = np.sqrt(dist2) * simulation_scale
                            found += 1
        neighbor_count[i] = found


# Wrapper functions binding buffer sets to the kernels

def clear_buffers_wrapper(global_size: int, buffers: ParticleBuffers):
    clear_buffers_numba(global_size, buffers.particle_count, buffers.neighbor_ids,
                        buffers.neighbor_distances, buffers.neighbor_count)


def hash_particles_wrapper(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    ox, oy, oz = grid.origin
    nx, ny, nz = grid.dims
    hash_particles_numba(global_size, buffers.particle_count, buffers.position.current,
                         buffers.particle_index, ox, oy, oz, grid.cell_size_inv, nx, ny, nz)


def sort_post_pass_wrapper(global_size: int, buffers: ParticleBuffers):
    sort_post_pass_numba(global_size, buffers.particle_count, buffers.particle_index,
                         buffers.position.current, buffers.velocity.current,
                         buffers.sorted_position[SORTED], buffers.sorted_velocity,
                         buffers.particle_index_back)


def index_cells_wrapper(global_size: int, buffers: ParticleBuffers, grid: UniformGrid):
    index_cells_numba(global_size, buffers.particle_count, grid.cell_count,
                      buffers.particle_index, buffers.grid_cell_index)


def find_neighbors_wrapper(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                           h: float, simulation_scale: float):
    ox, oy, oz = grid.origin
    nx, ny, nz = grid.dims
    find_neighbors_numba(global_size, buffers.particle_count, buffers.sorted_position[SORTED],
                         buffers.grid_cell_index_fixed, ox, oy, oz, grid.cell_size_inv,
                         nx, ny, nz, h * h, simulation_scale,
                         buffers.neighbor_ids, buffers.neighbor_distances, buffers.neighbor_count)
