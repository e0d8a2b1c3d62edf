"""
Tests for the neighbor finder against brute-force search.
"""

import numpy as np
import pytest

from pcisph import constants as C
from pcisph.config import SolverConfig
from pcisph.core.buffers import SORTED
from pcisph.core.model import SceneModel

BACKENDS = ['cpu', 'numba']


def random_liquid(n=300, box=20.0, seed=7):
    rng = np.random.default_rng(seed)
    points = rng.uniform(0.0, box, size=(n, 3))
    positions = np.column_stack([points, np.full(n, C.LIQUID_TYPE)])
    velocities = np.zeros_like(positions)
    velocities[:, 3] = C.LIQUID_TYPE
    return SceneModel(positions, velocities, (0, box, 0, box, 0, box))


def brute_force(buffers, h):
    x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
    result = []
    for i in range(len(x)):
        d = x - x[i]
        dist2 = np.sum(d * d, axis=1)
        found = set(np.flatnonzero(dist2 < h * h).tolist())
        found.discard(i)
        result.append(found)
    return result


class TestNeighborFinder:
    @pytest.mark.parametrize("backend", BACKENDS)
    def test_matches_brute_force(self, backend, build_buffers, run_grid):
        config = SolverConfig()
        buffers, grid = build_buffers(random_liquid(), config)

        run_grid(buffers, grid, config, backend)

        expected = brute_force(buffers, config.h)
        for i, true_set in enumerate(expected):
            count = buffers.neighbor_count[i]
            found = buffers.neighbor_ids[i, :count].tolist()
            # no false positives, no duplicates
            assert set(found) <= true_set
            assert len(found) == len(set(found))
            # no false negatives within capacity
            if len(true_set) <= config.neighbor_capacity:
                assert set(found) == true_set
            else:
                assert count == config.neighbor_capacity
            assert np.all(buffers.neighbor_ids[i, count:] == C.NO_PARTICLE_ID)

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_distances_are_scaled(self, backend, build_buffers, run_grid):
        config = SolverConfig()
        buffers, grid = build_buffers(random_liquid(n=100), config)

        run_grid(buffers, grid, config, backend)

        x = buffers.sorted_position[SORTED, :, :3].astype(np.float64)
        for i in range(buffers.particle_count):
            for m in range(buffers.neighbor_count[i]):
                j = buffers.neighbor_ids[i, m]
                expected = np.linalg.norm(x[i] - x[j]) * config.simulation_scale
                assert buffers.neighbor_distances[i, m] == pytest.approx(expected, rel=1e-5)
                assert buffers.neighbor_distances[i, m] < config.kernels.h_scaled

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_truncation_keeps_first_in_scan_order(self, backend, build_buffers, run_grid):
        model = random_liquid(n=400, box=12.0)
        full_config = SolverConfig()
        small_config = SolverConfig(neighbor_capacity=4)

        full, grid = build_buffers(model, full_config)
        run_grid(full, grid, full_config, backend)
        small, _ = build_buffers(model, small_config)
        run_grid(small, grid, small_config, backend)

        assert np.all(small.neighbor_count <= 4)
        np.testing.assert_array_equal(small.neighbor_count, np.minimum(full.neighbor_count, 4))
        for i in range(model.particle_count):
            count = small.neighbor_count[i]
            np.testing.assert_array_equal(small.neighbor_ids[i, :count], full.neighbor_ids[i, :count])

    @pytest.mark.parametrize("backend", BACKENDS)
    def test_scan_is_deterministic(self, backend, build_buffers, run_grid):
        config = SolverConfig()
        model = random_liquid(n=200)
        first, grid = build_buffers(model, config)
        second, _ = build_buffers(model, config)

        run_grid(first, grid, config, backend)
        run_grid(second, grid, config, backend)

        np.testing.assert_array_equal(first.neighbor_ids, second.neighbor_ids)
        np.testing.assert_array_equal(first.neighbor_distances, second.neighbor_distances)

    def test_backends_agree(self, build_buffers, run_grid):
        config = SolverConfig()
        model = random_liquid()
        cpu, grid = build_buffers(model, config)
        numba, _ = build_buffers(model, config)

        run_grid(cpu, grid, config, 'cpu')
        run_grid(numba, grid, config, 'numba')

        np.testing.assert_array_equal(cpu.particle_index, numba.particle_index)
        np.testing.assert_array_equal(cpu.grid_cell_index_fixed, numba.grid_cell_index_fixed)
        np.testing.assert_array_equal(cpu.neighbor_count, numba.neighbor_count)
        np.testing.assert_array_equal(cpu.neighbor_ids, numba.neighbor_ids)
        np.testing.assert_allclose(cpu.neighbor_distances, numba.neighbor_distances, rtol=1e-6)
