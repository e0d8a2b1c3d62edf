"""
Vectorized PCISPH smoothing kernels (Müller et al. 2003).

Three kernels share one scaled support radius hs = H * SIMULATION_SCALE:
- Poly6 for density:            W(r)    = c_poly6 * (hs² - r²)³
- Spiky gradient for pressure:  ∇W(r)   = c_spiky * (hs - r)² * r̂
- Viscosity Laplacian:          ∇²W(r)  = c_visc  * (hs - r)

All distances passed in here are already scaled to meters.
"""

import numpy as np
from typing import Tuple


class PCISPHKernels:
    """Poly6 / spiky / viscosity kernel set for a fixed smoothing radius."""

    def __init__(self, h: float, simulation_scale: float):
        """Precompute normalisation factors.

        Args:
            h: Smoothing radius in simulation units
            simulation_scale: Simulation-unit to meter factor
        """
        self.h = h
        self.simulation_scale = simulation_scale
        self.h_scaled = h * simulation_scale
        self.h_scaled2 = self.h_scaled * self.h_scaled
        self.h_scaled6 = self.h_scaled2 ** 3

        self.w_poly6_coefficient = 315.0 / (64.0 * np.pi * self.h_scaled ** 9)
        self.grad_w_spiky_coefficient = -45.0 / (np.pi * self.h_scaled ** 6)
        self.del2_w_viscosity_coefficient = -self.grad_w_spiky_coefficient

    def W_vectorized(self, r: np.ndarray) -> np.ndarray:
        """Poly6 kernel values, zero outside the support."""
        r = np.asarray(r, dtype=np.float64)
        diff = np.maximum(self.h_scaled2 - r * r, 0.0)
        return self.w_poly6_coefficient * diff ** 3

    def W_self(self) -> float:
        """Poly6 value at r = 0 (self-contribution)."""
        return self.w_poly6_coefficient * self.h_scaled6

    def gradW_vectorized(self, d: np.ndarray, r: np.ndarray) -> np.ndarray:
        """Spiky kernel gradient.

        Args:
            d: Position differences x_i - x_j in meters, shape (..., 3)
            r: Distances |d|, shape (...)

        Returns:
            Gradient vectors with the shape of d, zero for r == 0 and r >= hs
        """
        d = np.asarray(d, dtype=np.float64)
        r = np.asarray(r, dtype=np.float64)
        valid = (r > 0.0) & (r < self.h_scaled)
        safe_r = np.where(valid, r, 1.0)
        magnitude = np.where(valid, self.grad_w_spiky_coefficient * (self.h_scaled - safe_r) ** 2 / safe_r, 0.0)
        return d * magnitude[..., np.newaxis]

    def laplacianW_vectorized(self, r: np.ndarray) -> np.ndarray:
        """Viscosity kernel Laplacian, zero outside the support."""
        r = np.asarray(r, dtype=np.float64)
        return np.where(r < self.h_scaled, self.del2_w_viscosity_coefficient * (self.h_scaled - r), 0.0)

    def prototype_neighborhood(self, spacing: float) -> Tuple[np.ndarray, np.ndarray]:
        """Offsets of a filled cubic lattice around a particle at the origin.

        Args:
            spacing: Lattice spacing in simulation units

        Returns:
            (offsets, distances) in meters for every lattice point within the support
        """
        n = int(np.ceil(self.h / spacing))
        axis = np.arange(-n, n + 1, dtype=np.float64) * spacing * self.simulation_scale
        grid = np.stack(np.meshgrid(axis, axis, axis, indexing='ij'), axis=-1).reshape(-1, 3)
        r = np.sqrt(np.sum(grid * grid, axis=1))
        mask = (r > 0.0) & (r < self.h_scaled)
        return grid[mask], r[mask]
