"""
Vectorized PCISPH stages (NumPy reference).

All stages work in sorted particle order: index i is the i-th particle after
the grid sort, neighbor ids are sorted indices. Buffers store float32, the
arithmetic here runs in float64.

Stages:
- compute_density:               rho = m W(0) + Σ m W(r_ij)
- compute_forces_init_pressure:  p = k max(rho - rho0, 0), a = viscosity + gravity
- predict_positions:             x* = x + (v + a dt) dt, pushed out of walls
- predict_density:               rho* at the predicted positions
- correct_pressure:              p += (rho* - rho0) delta, p >= 0
- compute_pressure_force:        a_p = -m Σ (p_i/rho_i² + p_j/rho_j²) ∇W
- integrate:                     semi-implicit Euler, scattered back unsorted
"""

import numpy as np

from .. import constants as C
from ..config import SolverConfig
from ..core.buffers import (ParticleBuffers, SORTED, PREDICTED, NON_PRESSURE, PRESSURE,
                            DENSITY, PREDICTED_DENSITY)
from ..core.model import UniformGrid, is_type


def _neighbor_mask(buffers: ParticleBuffers) -> np.ndarray:
    """(N, K) mask of occupied neighbor slots."""
    k = np.arange(buffers.neighbor_capacity)
    return k[np.newaxis, :] < buffers.neighbor_count[:, np.newaxis]


def _safe_ids(buffers: ParticleBuffers, mask: np.ndarray) -> np.ndarray:
    """Neighbor ids with empty slots pointed at particle 0 (masked out later)."""
    return np.where(mask, buffers.neighbor_ids, 0)


def _poly6_density(r: np.ndarray, mask: np.ndarray, config: SolverConfig) -> np.ndarray:
    """Poly6 density sum, floored at the self term."""
    kernels = config.kernels
    diff = np.where(mask, np.maximum(kernels.h_scaled2 - r * r, 0.0), 0.0)
    return config.mass * kernels.w_poly6_coefficient * np.maximum(np.sum(diff ** 3, axis=1),
                                                                  kernels.h_scaled6)


def compute_density_vectorized(buffers: ParticleBuffers, config: SolverConfig):
    """Density from the stored neighbor distances.

    The self term is a floor: a particle without neighbors keeps it, so density never hits zero.
    """
    if buffers.particle_count == 0:
        return
    mask = _neighbor_mask(buffers)
    r = buffers.neighbor_distances.astype(np.float64)
    buffers.rho[DENSITY] = _poly6_density(r, mask, config)


def compute_forces_init_pressure_vectorized(buffers: ParticleBuffers, config: SolverConfig):
    """Initial pressure and non-pressure acceleration (viscosity + gravity).

    Boundary particles get zero acceleration. The pressure acceleration slot
    is cleared for the predictor-corrector loop.
    """
    n = buffers.particle_count
    if n == 0:
        return
    kernels = config.kernels
    rho = buffers.rho[DENSITY].astype(np.float64)
    buffers.pressure[:] = config.stiffness * np.maximum(rho - config.rho0, 0.0)

    mask = _neighbor_mask(buffers)
    ids = _safe_ids(buffers, mask)
    r = buffers.neighbor_distances.astype(np.float64)
    v = buffers.sorted_velocity[:, :3].astype(np.float64)

    # MU m Σ (v_j - v_i) / rho_j ∇²W / rho_i
    lap = np.where(mask, kernels.laplacianW_vectorized(r), 0.0)
    weights = lap / rho[ids]
    dv = v[ids] - v[:, np.newaxis, :]
    viscosity = config.viscosity * config.mass * np.sum(dv * weights[..., np.newaxis], axis=1)
    viscosity /= rho[:, np.newaxis]

    accel = viscosity + np.asarray(config.gravity, dtype=np.float64)
    moving = ~is_type(buffers.sorted_type_tags(), C.BOUNDARY_TYPE)
    accel[~moving] = 0.0

    buffers.acceleration[NON_PRESSURE, :, :3] = accel
    buffers.acceleration[NON_PRESSURE, :, 3] = 0.0
    buffers.acceleration[PRESSURE] = 0.0


def boundary_interaction_vectorized(positions: np.ndarray, velocities, buffers: ParticleBuffers,
                                    moving: np.ndarray, r0: float, damping: float):
    """Push moving particles out of nearby boundary particles.

    Boundary neighbors closer than r0 (simulation units) contribute a normal
    (x_i - x_b)/r weighted by (r0 - r)/r0. The particle is moved along the
    weighted mean normal; if velocities are given, the inward component is
    reflected and damped. Coincident pairs are skipped.

    Args:
        positions: (N, 3) float64 candidate positions, updated in place
        velocities: (N, 3) float64 velocities updated in place, or None
        buffers: Particle buffers (neighbor list, sorted boundary positions)
        moving: (N,) mask of particles to treat
        r0: Interaction radius in simulation units
        damping: Velocity damping on contact
    """
    mask = _neighbor_mask(buffers)
    ids = _safe_ids(buffers, mask)
    sorted_pos = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    boundary = is_type(buffers.sorted_type_tags(), C.BOUNDARY_TYPE)

    d = positions[:, np.newaxis, :] - sorted_pos[ids]
    r = np.sqrt(np.sum(d * d, axis=2))
    contact = mask & boundary[ids] & moving[:, np.newaxis] & (r < r0) & (r > C.CONTACT_EPSILON)
    if not np.any(contact):
        return

    safe_r = np.where(contact, r, 1.0)
    w = np.where(contact, (r0 - safe_r) / r0, 0.0)
    normal_sum = np.sum(d / safe_r[..., np.newaxis] * w[..., np.newaxis], axis=1)
    w_sum = np.sum(w, axis=1)
    w_second = np.sum(w * (r0 - safe_r), axis=1)

    norm = np.sqrt(np.sum(normal_sum * normal_sum, axis=1))
    hit = (w_sum > 0.0) & (norm > C.CONTACT_EPSILON)
    normal = normal_sum[hit] / norm[hit, np.newaxis]
    positions[hit] += normal * (w_second[hit] / w_sum[hit])[:, np.newaxis]

    if velocities is not None:
        vn = np.sum(velocities[hit] * normal, axis=1)
        inward = np.minimum(vn, 0.0)
        velocities[hit] -= (1.0 + damping) * inward[:, np.newaxis] * normal


def clamp_to_box(positions: np.ndarray, velocities, grid: UniformGrid, damping: float):
    """Clamp each axis into the box; flip and damp the velocity on that axis."""
    lo = grid.origin
    hi = grid.upper
    below = positions < lo
    above = positions > hi
    np.clip(positions, lo, hi, out=positions)
    if velocities is not None:
        hit = below | above
        velocities[hit] = -velocities[hit] * damping


def predict_positions_vectorized(buffers: ParticleBuffers, grid: UniformGrid,
                                 config: SolverConfig, time_step: float):
    """Predicted positions from the current total acceleration.

    Boundary particles are predicted in place.
    """
    if buffers.particle_count == 0:
        return
    moving = ~is_type(buffers.sorted_type_tags(), C.BOUNDARY_TYPE)
    x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    v = buffers.sorted_velocity[:, :3].astype(np.float64)
    a = (buffers.acceleration[NON_PRESSURE, :, :3].astype(np.float64)
         + buffers.acceleration[PRESSURE, :, :3].astype(np.float64))

    v_new = v + a * time_step
    x_new = np.where(moving[:, np.newaxis], x + v_new * time_step * config.simulation_scale_inv, x)
    boundary_interaction_vectorized(x_new, None, buffers, moving, config.r0, config.damping)
    x_moving = x_new[moving]
    clamp_to_box(x_moving, None, grid, config.damping)
    x_new[moving] = x_moving

    buffers.sorted_position[PREDICTED, :, :3] = x_new
    buffers.sorted_position[PREDICTED, :, 3] = buffers.sorted_position[SORTED, :, 3]


def predict_density_vectorized(buffers: ParticleBuffers, config: SolverConfig):
    """Density at the predicted positions over the current neighbor lists."""
    if buffers.particle_count == 0:
        return
    mask = _neighbor_mask(buffers)
    ids = _safe_ids(buffers, mask)
    x = buffers.sorted_position[PREDICTED, :, :3].astype(np.float64)
    d = (x[:, np.newaxis, :] - x[ids]) * config.simulation_scale
    r = np.sqrt(np.sum(d * d, axis=2))
    buffers.rho[PREDICTED_DENSITY] = _poly6_density(r, mask, config)


def correct_pressure_vectorized(buffers: ParticleBuffers, config: SolverConfig, delta: float):
    """p += (rho* - rho0) * delta, floored at zero."""
    if buffers.particle_count == 0:
        return
    rho_pred = buffers.rho[PREDICTED_DENSITY].astype(np.float64)
    p = buffers.pressure.astype(np.float64) + (rho_pred - config.rho0) * delta
    buffers.pressure[:] = np.maximum(p, 0.0)


def compute_pressure_force_vectorized(buffers: ParticleBuffers, config: SolverConfig):
    """Pressure acceleration with the spiky gradient, clamped to the CFL limit."""
    if buffers.particle_count == 0:
        return
    kernels = config.kernels
    mask = _neighbor_mask(buffers)
    ids = _safe_ids(buffers, mask)
    x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    rho = buffers.rho[PREDICTED_DENSITY].astype(np.float64)
    p = buffers.pressure.astype(np.float64)

    d = (x[:, np.newaxis, :] - x[ids]) * config.simulation_scale
    r = buffers.neighbor_distances.astype(np.float64)
    grad = kernels.gradW_vectorized(d, np.where(mask, r, 0.0))

    p_term = p[:, np.newaxis] / rho[:, np.newaxis] ** 2 + p[ids] / rho[ids] ** 2
    p_term = np.where(mask, p_term, 0.0)
    accel = -config.mass * np.sum(p_term[..., np.newaxis] * grad, axis=1)

    magnitude = np.sqrt(np.sum(accel * accel, axis=1))
    too_fast = magnitude > config.cfl_limit
    accel[too_fast] *= (config.cfl_limit / magnitude[too_fast])[:, np.newaxis]

    moving = ~is_type(buffers.sorted_type_tags(), C.BOUNDARY_TYPE)
    accel[~moving] = 0.0
    buffers.acceleration[PRESSURE, :, :3] = accel
    buffers.acceleration[PRESSURE, :, 3] = 0.0


def integrate_vectorized(buffers: ParticleBuffers, grid: UniformGrid,
                         config: SolverConfig, time_step: float):
    """Semi-implicit Euler step written to the scratch generation in original order.

    Boundary particles are copied through unchanged. The caller swaps the
    position/velocity generations afterwards.
    """
    n = buffers.particle_count
    if n == 0:
        return
    moving = ~is_type(buffers.sorted_type_tags(), C.BOUNDARY_TYPE)
    x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    v = buffers.sorted_velocity[:, :3].astype(np.float64)
    a = (buffers.acceleration[NON_PRESSURE, :, :3].astype(np.float64)
         + buffers.acceleration[PRESSURE, :, :3].astype(np.float64))

    v_new = np.where(moving[:, np.newaxis], v + a * time_step, v)
    x_new = np.where(moving[:, np.newaxis], x + v_new * time_step * config.simulation_scale_inv, x)
    boundary_interaction_vectorized(x_new, v_new, buffers, moving, config.r0, config.damping)

    x_moving = x_new[moving]
    v_moving = v_new[moving]
    clamp_to_box(x_moving, v_moving, grid, config.damping)
    x_new[moving] = x_moving
    v_new[moving] = v_moving

    old_ids = buffers.particle_index[:, 1]
    position_out = buffers.position.scratch
    velocity_out = buffers.velocity.scratch
    position_out[old_ids, :3] = x_new
    position_out[old_ids, 3] = buffers.sorted_position[SORTED, :, 3]
    velocity_out[old_ids, :3] = v_new
    velocity_out[old_ids, 3] = buffers.sorted_velocity[:, 3]

    # Boundary particles bit-exact, not round-tripped through float64
    fixed = old_ids[~moving]
    position_out[fixed] = buffers.position.current[fixed]
    velocity_out[fixed] = buffers.velocity.current[fixed]
