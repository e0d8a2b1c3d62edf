"""
Box scenes for PCISPH runs.

Creates scene models with:
- A closed box shell of boundary particles
- A cubic block of liquid (and optionally elastic) particles inside it
- Lattice spring connections for elastic blocks
"""

import numpy as np
from typing import Optional, Tuple

from .. import constants as C
from ..core.model import SceneModel


def generate_cubic_lattice(origin: Tuple[float, float, float], counts: Tuple[int, int, int],
                           spacing: float) -> np.ndarray:
    """Regular cubic lattice, x fastest.

    Args:
        origin: (x, y, z) of the first lattice point
        counts: Points per axis
        spacing: Lattice spacing

    Returns:
        Array of (x, y, z) positions
    """
    ix, iy, iz = np.meshgrid(np.arange(counts[0]), np.arange(counts[1]), np.arange(counts[2]),
                             indexing='ij')
    points = np.stack([ix.ravel(order='F'), iy.ravel(order='F'), iz.ravel(order='F')], axis=1)
    return np.asarray(origin, dtype=np.float64) + points * spacing


def generate_box_shell(cells: Tuple[int, int, int], spacing: float) -> np.ndarray:
    """Boundary particles on the six faces of a box starting at the origin.

    Args:
        cells: Lattice intervals per axis (the box spans cells * spacing)
        spacing: Lattice spacing

    Returns:
        Array of (x, y, z) positions on the box surface
    """
    counts = tuple(c + 1 for c in cells)
    points = generate_cubic_lattice((0.0, 0.0, 0.0), counts, spacing)
    index = np.rint(points / spacing).astype(np.int64)
    on_face = np.any((index == 0) | (index == np.asarray(cells)), axis=1)
    return points[on_face]


def _tagged(points: np.ndarray, type_tag: float) -> np.ndarray:
    return np.column_stack([points, np.full(len(points), type_tag)])


def _box_bounds(cells: Tuple[int, int, int], spacing: float):
    return (0.0, cells[0] * spacing, 0.0, cells[1] * spacing, 0.0, cells[2] * spacing)


def create_pure_liquid_scene(liquid_counts: Tuple[int, int, int] = (4, 4, 4),
                             spacing: float = C.R0, margin: int = 2) -> SceneModel:
    """Liquid block resting one spacing above the floor of a boundary box.

    Args:
        liquid_counts: Liquid particles per axis
        spacing: Particle spacing in simulation units
        margin: Free lattice intervals between the block and the side walls

    Returns:
        SceneModel with boundary particles first, liquid after
    """
    cells = (liquid_counts[0] - 1 + 2 * margin,
             liquid_counts[1] - 1 + 2 * margin,
             liquid_counts[2] - 1 + 2 * margin)
    boundary = generate_box_shell(cells, spacing)
    liquid = generate_cubic_lattice((margin * spacing, spacing, margin * spacing),
                                    liquid_counts, spacing)

    positions = np.vstack([_tagged(boundary, C.BOUNDARY_TYPE), _tagged(liquid, C.LIQUID_TYPE)])
    velocities = np.zeros_like(positions)
    velocities[:, 3] = positions[:, 3]
    return SceneModel(positions, velocities, _box_bounds(cells, spacing), model_id="pure_liquid")


def lattice_connections(points: np.ndarray, first_id: int, capacity: int, spacing: float,
                        bundles: int = 0) -> np.ndarray:
    """Springs between lattice neighbors (face, edge and corner diagonals).

    Connections along the x axis belong to bundle 1 when bundles exist,
    all others are passive (tag 0).

    Args:
        points: (E, 3) elastic particle positions
        first_id: Particle id of points[0] in the scene
        capacity: Connection rows per elastic particle
        spacing: Lattice spacing
        bundles: Number of activation bundles

    Returns:
        (E * capacity, 3) connection table, unused rows with partner NO_PARTICLE_ID
    """
    table = np.zeros((len(points), capacity, 3), dtype=np.float64)
    table[:, :, 0] = C.NO_PARTICLE_ID
    reach = spacing * np.sqrt(3.0) * 1.01
    for e, point in enumerate(points):
        d = points - point
        r = np.sqrt(np.sum(d * d, axis=1))
        partners = np.flatnonzero((r > 0.0) & (r <= reach))[:capacity]
        table[e, :len(partners), 0] = partners + first_id
        table[e, :len(partners), 1] = r[partners]
        if bundles > 0:
            along_x = (np.abs(d[partners, 1]) < 1e-9) & (np.abs(d[partners, 2]) < 1e-9)
            table[e, :len(partners), 2] = np.where(along_x, 1.0, 0.0)
    return table.reshape(-1, 3)


def create_elastic_scene(elastic_counts: Tuple[int, int, int] = (3, 3, 3),
                         liquid_layers: int = 1, spacing: float = C.R0,
                         bundles: int = 1, margin: int = 2,
                         capacity: int = C.NEIGHBOR_COUNT) -> SceneModel:
    """Elastic block with liquid layers on top, inside a boundary box.

    Args:
        elastic_counts: Elastic particles per axis
        liquid_layers: Liquid layers stacked above the elastic block
        spacing: Particle spacing in simulation units
        bundles: Activation bundles (0 for passive springs only)
        margin: Free lattice intervals between the block and the side walls
        capacity: Connection rows per elastic particle

    Returns:
        SceneModel with boundary, elastic and liquid particles
    """
    height = elastic_counts[1] + liquid_layers
    cells = (elastic_counts[0] - 1 + 2 * margin,
             height + margin,
             elastic_counts[2] - 1 + 2 * margin)
    boundary = generate_box_shell(cells, spacing)
    elastic = generate_cubic_lattice((margin * spacing, spacing, margin * spacing),
                                     elastic_counts, spacing)
    liquid = np.zeros((0, 3))
    if liquid_layers > 0:
        liquid = generate_cubic_lattice(
            (margin * spacing, (elastic_counts[1] + 1) * spacing, margin * spacing),
            (elastic_counts[0], liquid_layers, elastic_counts[2]), spacing)

    positions = np.vstack([_tagged(boundary, C.BOUNDARY_TYPE), _tagged(elastic, C.ELASTIC_TYPE),
                           _tagged(liquid, C.LIQUID_TYPE)])
    velocities = np.zeros_like(positions)
    velocities[:, 3] = positions[:, 3]
    connections = lattice_connections(elastic, len(boundary), capacity, spacing, bundles)
    return SceneModel(positions, velocities, _box_bounds(cells, spacing), connections=connections,
                      elastic_bundles=bundles, model_id="elastic")


def create_single_particle_scene(position: Optional[Tuple[float, float, float]] = None,
                                 box: float = 10 * C.H) -> SceneModel:
    """One liquid particle in an empty box (no boundary particles)."""
    if position is None:
        position = (box / 2, box / 2, box / 2)
    positions = np.array([[position[0], position[1], position[2], C.LIQUID_TYPE]])
    velocities = np.array([[0.0, 0.0, 0.0, C.LIQUID_TYPE]])
    return SceneModel(positions, velocities, (0.0, box, 0.0, box, 0.0, box),
                      model_id="single_particle")
