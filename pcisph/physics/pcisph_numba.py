"""
Numba-optimized PCISPH stages.

Same math as pcisph_vectorized, one prange task per sorted particle. Each
task writes only its own particle slot.
"""

import numpy as np
import numba as nb

from ..constants import BOUNDARY_TYPE, TYPE_TAG_TOLERANCE, CONTACT_EPSILON
from ..config import SolverConfig
from ..core.buffers import (ParticleBuffers, SORTED, PREDICTED, NON_PRESSURE, PRESSURE,
                            DENSITY, PREDICTED_DENSITY)
from ..core.model import UniformGrid


@nb.njit(fastmath=True, cache=True)
def is_boundary(type_tag: float) -> bool:
    return abs(type_tag - BOUNDARY_TYPE) < TYPE_TAG_TOLERANCE


@nb.njit(parallel=True, fastmath=True, cache=True)
def compute_density_numba(global_size: int, n: int, neighbor_distances: np.ndarray,
                          neighbor_count: np.ndarray, rho: np.ndarray,
                          mass: float, w_poly6: float, h2: float, h6: float):
    """Poly6 density from stored neighbor distances, floored at the self term."""
    for i in nb.prange(global_size):
        if i >= n:
            continue
        total = 0.0
        for m in range(neighbor_count[i]):
            r = np.float64(neighbor_distances[i, m])
            diff = h2 - r * r
            if diff > 0.0:
                total += diff * diff * diff
        if total < h6:
            total = h6
        rho[i] = mass * w_poly6 * total


@nb.njit(parallel=True, fastmath=True, cache=True)
def compute_forces_init_pressure_numba(global_size: int, n: int, sorted_position: np.ndarray,
                                       sorted_velocity: np.ndarray, rho: np.ndarray,
                                       pressure: np.ndarray, neighbor_ids: np.ndarray,
                                       neighbor_distances: np.ndarray, neighbor_count: np.ndarray,
                                       accel_non_pressure: np.ndarray, accel_pressure: np.ndarray,
                                       mass: float, rho0: float, stiffness: float, viscosity: float,
                                       lap_coefficient: float, h: float,
                                       gx: float, gy: float, gz: float):
    """Initial pressure, viscosity + gravity, cleared pressure acceleration."""
    for i in nb.prange(global_size):
        if i >= n:
            continue
        rho_i = np.float64(rho[i])
        pressure[i] = stiffness * max(rho_i - rho0, 0.0)
        for c in range(4):
            accel_non_pressure[i, c] = 0.0
            accel_pressure[i, c] = 0.0
        if is_boundary(sorted_position[i, 3]):
            continue

        ax = 0.0
        ay = 0.0
        az = 0.0
        for m in range(neighbor_count[i]):
            j = neighbor_ids[i, m]
            r = np.float64(neighbor_distances[i, m])
            if r >= h:
                continue
            weight = lap_coefficient * (h - r) / np.float64(rho[j])
            ax += (sorted_velocity[j, 0] - sorted_velocity[i, 0]) * weight
            ay += (sorted_velocity[j, 1] - sorted_velocity[i, 1]) * weight
            az += (sorted_velocity[j, 2] - sorted_velocity[i, 2]) * weight
        factor = viscosity * mass / rho_i
        accel_non_pressure[i, 0] = ax * factor + gx
        accel_non_pressure[i, 1] = ay * factor + gy
        accel_non_pressure[i, 2] = az * factor + gz


@nb.njit(fastmath=True, cache=True)
def boundary_interaction(i: int, x: float, y: float, z: float,
                         vx: float, vy: float, vz: float, update_velocity: bool,
                         sorted_position: np.ndarray, neighbor_ids: np.ndarray,
                         neighbor_count: np.ndarray, r0: float, damping: float):
    """Push particle i out of boundary neighbors closer than r0.

    Returns:
        (x, y, z, vx, vy, vz) after the correction
    """
    nx_sum = 0.0
    ny_sum = 0.0
    nz_sum = 0.0
    w_sum = 0.0
    w_second = 0.0
    for m in range(neighbor_count[i]):
        j = neighbor_ids[i, m]
        if not is_boundary(sorted_position[j, 3]):
            continue
        dx = x - sorted_position[j, 0]
        dy = y - sorted_position[j, 1]
        dz = z - sorted_position[j, 2]
        r = np.sqrt(dx * dx + dy * dy + dz * dz)
        if r >= r0 or r <= CONTACT_EPSILON:
            continue
        w = (r0 - r) / r0
        nx_sum += dx / r * w
        ny_sum += dy / r * w
        nz_sum += dz / r * w
        w_sum += w
        w_second += w * (r0 - r)

    norm = np.sqrt(nx_sum * nx_sum + ny_sum * ny_sum + nz_sum * nz_sum)
    if w_sum > 0.0 and norm > CONTACT_EPSILON:
        nx_ = nx_sum / norm
        ny_ = ny_sum / norm
        nz_ = nz_sum / norm
        shift = w_second / w_sum
        x += nx_ * shift
        y += ny_ * shift
        z += nz_ * shift
        if update_velocity:
            vn = vx * nx_ + vy * ny_ + vz * nz_
            if vn < 0.0:
                vx -= (1.0 + damping) * vn * nx_
                vy -= (1.0 + damping) * vn * ny_
                vz -= (1.0 + damping) * vn * nz_
    return x, y, z, vx, vy, vz


@nb.njit(fastmath=True, cache=True)
def clamp_axis(value: float, velocity: float, lo: float, hi: float, damping: float):
    if value < lo:
        return lo, -velocity * damping
    if value > hi:
        return hi, -velocity * damping
    return value, velocity


@nb.njit(parallel=True, fastmath=True, cache=True)
def predict_positions_numba(global_size: int, n: int, sorted_position: np.ndarray,
                            predicted_position: np.ndarray, sorted_velocity: np.ndarray,
                            accel_non_pressure: np.ndarray, accel_pressure: np.ndarray,
                            neighbor_ids: np.ndarray, neighbor_count: np.ndarray,
                            bounds: np.ndarray, time_step: float, simulation_scale_inv: float,
                            r0: float, damping: float):
    for i in nb.prange(global_size):
        if i >= n:
            continue
        predicted_position[i, 3] = sorted_position[i, 3]
        if is_boundary(sorted_position[i, 3]):
            for c in range(3):
                predicted_position[i, c] = sorted_position[i, c]
            continue

        vx = sorted_velocity[i, 0] + (accel_non_pressure[i, 0] + accel_pressure[i, 0]) * time_step
        vy = sorted_velocity[i, 1] + (accel_non_pressure[i, 1] + accel_pressure[i, 1]) * time_step
        vz = sorted_velocity[i, 2] + (accel_non_pressure[i, 2] + accel_pressure[i, 2]) * time_step
        x = sorted_position[i, 0] + vx * time_step * simulation_scale_inv
        y = sorted_position[i, 1] + vy * time_step * simulation_scale_inv
        z = sorted_position[i, 2] + vz * time_step * simulation_scale_inv

        x, y, z, vx, vy, vz = boundary_interaction(i, x, y, z, vx, vy, vz, False, sorted_position,
                                                   neighbor_ids, neighbor_count, r0, damping)
        x, vx = clamp_axis(x, vx, bounds[0], bounds[1], damping)
        y, vy = clamp_axis(y, vy, bounds[2], bounds[3], damping)
        z, vz = clamp_axis(z, vz, bounds[4], bounds[5], damping)
        predicted_position[i, 0] = x
        predicted_position[i, 1] = y
        predicted_position[i, 2] = z


@nb.njit(parallel=True, fastmath=True, cache=True)
def predict_density_numba(global_size: int, n: int, predicted_position: np.ndarray,
                          neighbor_ids: np.ndarray, neighbor_count: np.ndarray,
                          predicted_rho: np.ndarray, mass: float, w_poly6: float,
                          h2: float, h6: float, simulation_scale: float):
    for i in nb.prange(global_size):
        if i >= n:
            continue
        total = 0.0
        for m in range(neighbor_count[i]):
            j = neighbor_ids[i, m]
            dx = (np.float64(predicted_position[i, 0]) - predicted_position[j, 0]) * simulation_scale
            dy = (np.float64(predicted_position[i, 1]) - predicted_position[j, 1]) * simulation_scale
            dz = (np.float64(predicted_position[i, 2]) - predicted_position[j, 2]) * simulation_scale
            diff = h2 - (dx * dx + dy * dy + dz * dz)
            if diff > 0.0:
                total += diff * diff * diff
        if total < h6:
            total = h6
        predicted_rho[i] = mass * w_poly6 * total


@nb.njit(parallel=True, fastmath=True, cache=True)
def correct_pressure_numba(global_size: int, n: int, pressure: np.ndarray,
                           predicted_rho: np.ndarray, rho0: float, delta: float):
    for i in nb.prange(global_size):
        if i >= n:
            continue
        p = np.float64(pressure[i]) + (np.float64(predicted_rho[i]) - rho0) * delta
        pressure[i] = max(p, 0.0)


@nb.njit(parallel=True, fastmath=True, cache=True)
def compute_pressure_force_numba(global_size: int, n: int, sorted_position: np.ndarray,
                                 predicted_rho: np.ndarray, pressure: np.ndarray,
                                 neighbor_ids: np.ndarray, neighbor_distances: np.ndarray,
                                 neighbor_count: np.ndarray, accel_pressure: np.ndarray,
                                 mass: float, grad_coefficient: float, h: float,
                                 simulation_scale: float, cfl_limit: float):
    for i in nb.prange(global_size):
        if i >= n:
            continue
        for c in range(4):
            accel_pressure[i, c] = 0.0
        if is_boundary(sorted_position[i, 3]):
            continue

        rho_i = np.float64(predicted_rho[i])
        p_i = np.float64(pressure[i]) / (rho_i * rho_i)
        ax = 0.0
        ay = 0.0
        az = 0.0
        for m in range(neighbor_count[i]):
            j = neighbor_ids[i, m]
            r = np.float64(neighbor_distances[i, m])
            if r <= 0.0 or r >= h:
                continue
            rho_j = np.float64(predicted_rho[j])
            p_term = p_i + pressure[j] / (rho_j * rho_j)
            dx = (np.float64(sorted_position[i, 0]) - sorted_position[j, 0]) * simulation_scale
            dy = (np.float64(sorted_position[i, 1]) - sorted_position[j, 1]) * simulation_scale
            dz = (np.float64(sorted_position[i, 2]) - sorted_position[j, 2]) * simulation_scale
            grad = grad_coefficient * (h - r) * (h - r) / r
            ax += p_term * grad * dx
            ay += p_term * grad * dy
            az += p_term * grad * dz
        ax *= -mass
        ay *= -mass
        az *= -mass

        magnitude = np.sqrt(ax * ax + ay * ay + az * az)
        if magnitude > cfl_limit:
            scale = cfl_limit / magnitude
            ax *= scale
            ay *= scale
            az *= scale
        accel_pressure[i, 0] = ax
        accel_pressure[i, 1] = ay
        accel_pressure[i, 2] = az


@nb.njit(parallel=True, fastmath=True, cache=True)
def integrate_numba(global_size: int, n: int, particle_index: np.ndarray,
                    sorted_position: np.ndarray, sorted_velocity: np.ndarray,
                    accel_non_pressure: np.ndarray, accel_pressure: np.ndarray,
                    neighbor_ids: np.ndarray, neighbor_count: np.ndarray,
                    position_in: np.ndarray, velocity_in: np.ndarray,
                    position_out: np.ndarray, velocity_out: np.ndarray,
                    bounds: np.ndarray, time_step: float, simulation_scale_inv: float,
                    r0: float, damping: float):
    """Semi-implicit Euler; results go to the scratch arrays at original ids."""
    for i in nb.prange(global_size):
        if i >= n:
            continue
        old = particle_index[i, 1]
        if is_boundary(sorted_position[i, 3]):
            for c in range(4):
                position_out[old, c] = position_in[old, c]
                velocity_out[old, c] = velocity_in[old, c]
            continue

        vx = sorted_velocity[i, 0] + (accel_non_pressure[i, 0] + accel_pressure[i, 0]) * time_step
        vy = sorted_velocity[i, 1] + (accel_non_pressure[i, 1] + accel_pressure[i, 1]) * time_step
        vz = sorted_velocity[i, 2] + (accel_non_pressure[i, 2] + accel_pressure[i, 2]) * time_step
        x = sorted_position[i, 0] + vx * time_step * simulation_scale_inv
        y = sorted_position[i, 1] + vy * time_step * simulation_scale_inv
        z = sorted_position[i, 2] + vz * time_step * simulation_scale_inv

        x, y, z, vx, vy, vz = boundary_interaction(i, x, y, z, vx, vy, vz, True, sorted_position,
                                                   neighbor_ids, neighbor_count, r0, damping)
        x, vx = clamp_axis(x, vx, bounds[0], bounds[1], damping)
        y, vy = clamp_axis(y, vy, bounds[2], bounds[3], damping)
        z, vz = clamp_axis(z, vz, bounds[4], bounds[5], damping)

        position_out[old, 0] = x
        position_out[old, 1] = y
        position_out[old, 2] = z
        position_out[old, 3] = sorted_position[i, 3]
        velocity_out[old, 0] = vx
        velocity_out[old, 1] = vy
        velocity_out[old, 2] = vz
        velocity_out[old, 3] = sorted_velocity[i, 3]


# Wrapper functions matching the vectorized signatures

def compute_density_numba_wrapper(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    k = config.kernels
    compute_density_numba(global_size, buffers.particle_count, buffers.neighbor_distances,
                          buffers.neighbor_count, buffers.rho[DENSITY],
                          config.mass, k.w_poly6_coefficient, k.h_scaled2, k.h_scaled6)


def compute_forces_init_pressure_numba_wrapper(global_size: int, buffers: ParticleBuffers,
                                               config: SolverConfig):
    gx, gy, gz = (float(g) for g in config.gravity)
    compute_forces_init_pressure_numba(
        global_size, buffers.particle_count, buffers.sorted_position[SORTED],
        buffers.sorted_velocity, buffers.rho[DENSITY], buffers.pressure,
        buffers.neighbor_ids, buffers.neighbor_distances, buffers.neighbor_count,
        buffers.acceleration[NON_PRESSURE], buffers.acceleration[PRESSURE],
        config.mass, config.rho0, config.stiffness, config.viscosity,
        config.kernels.del2_w_viscosity_coefficient, config.kernels.h_scaled, gx, gy, gz
    )


def predict_positions_numba_wrapper(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                                    config: SolverConfig, time_step: float):
    predict_positions_numba(
        global_size, buffers.particle_count, buffers.sorted_position[SORTED],
        buffers.sorted_position[PREDICTED], buffers.sorted_velocity,
        buffers.acceleration[NON_PRESSURE], buffers.acceleration[PRESSURE],
        buffers.neighbor_ids, buffers.neighbor_count,
        np.asarray(grid.bounds, dtype=np.float64), float(time_step),
        config.simulation_scale_inv, config.r0, config.damping
    )


def predict_density_numba_wrapper(global_size: int, buffers: ParticleBuffers, config: SolverConfig):
    k = config.kernels
    predict_density_numba(global_size, buffers.particle_count, buffers.sorted_position[PREDICTED],
                          buffers.neighbor_ids, buffers.neighbor_count,
                          buffers.rho[PREDICTED_DENSITY], config.mass, k.w_poly6_coefficient,
                          k.h_scaled2, k.h_scaled6, config.simulation_scale)


def correct_pressure_numba_wrapper(global_size: int, buffers: ParticleBuffers, config: SolverConfig,
                                   delta: float):
    correct_pressure_numba(global_size, buffers.particle_count, buffers.pressure,
                           buffers.rho[PREDICTED_DENSITY], config.rho0, float(delta))


def compute_pressure_force_numba_wrapper(global_size: int, buffers: ParticleBuffers,
                                         config: SolverConfig):
    k = config.kernels
    compute_pressure_force_numba(
        global_size, buffers.particle_count, buffers.sorted_position[SORTED],
        buffers.rho[PREDICTED_DENSITY], buffers.pressure,
        buffers.neighbor_ids, buffers.neighbor_distances, buffers.neighbor_count,
        buffers.acceleration[PRESSURE], config.mass, k.grad_w_spiky_coefficient,
        k.h_scaled, config.simulation_scale, config.cfl_limit
    )


def integrate_numba_wrapper(global_size: int, buffers: ParticleBuffers, grid: UniformGrid,
                            config: SolverConfig, time_step: float):
    integrate_numba(
        global_size, buffers.particle_count, buffers.particle_index,
        buffers.sorted_position[SORTED], buffers.sorted_velocity,
        buffers.acceleration[NON_PRESSURE], buffers.acceleration[PRESSURE],
        buffers.neighbor_ids, buffers.neighbor_count,
        buffers.position.current, buffers.velocity.current,
        buffers.position.scratch, buffers.velocity.scratch,
        np.asarray(grid.bounds, dtype=np.float64), float(time_step),
        config.simulation_scale_inv, config.r0, config.damping
    )
