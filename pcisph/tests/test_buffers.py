"""
Tests for the particle buffer set, scene model and solver configuration.
"""

import numpy as np
import pytest

from pcisph import constants as C
from pcisph.config import SolverConfig, compute_delta
from pcisph.core.buffers import ParticleBuffers, DoubleBuffer, SORTED, PREDICTED
from pcisph.core.model import SceneModel, UniformGrid, grid_dimensions, count_types
from pcisph.errors import ConfigurationError
from pcisph.scenarios import create_elastic_scene, create_pure_liquid_scene


def tagged(points, tag):
    points = np.asarray(points, dtype=np.float64)
    return np.column_stack([points, np.full(len(points), tag)])


class TestParticleBuffers:
    """Allocation and loading."""

    def test_allocate_sizes(self):
        buffers = ParticleBuffers.allocate(10, 27, neighbor_capacity=32)
        sizes = buffers.buffer_sizes

        assert sizes['position'] == 10 * 4
        assert sizes['sorted_position'] == 2 * 10 * 4
        assert sizes['acceleration'] == 2 * 10 * 4
        assert sizes['rho'] == 2 * 10
        assert sizes['grid_cell_index'] == 28
        assert sizes['neighbor_ids'] == 10 * 32
        assert 'elastic_connections' not in sizes

    def test_activation_buffer_never_empty(self):
        buffers = ParticleBuffers.allocate(4, 8, elastic_bundle_count=0)
        assert buffers.activation_signal.shape == (1,)
        assert buffers.activation_signal[0] == C.NEUTRAL_ACTIVATION

        buffers = ParticleBuffers.allocate(4, 8, elastic_bundle_count=3)
        assert buffers.activation_signal.shape == (3,)

    def test_load_counts_types(self):
        positions = np.vstack([tagged([[0, 0, 0]], C.BOUNDARY_TYPE),
                               tagged([[1, 0, 0], [2, 0, 0]], C.LIQUID_TYPE)])
        buffers = ParticleBuffers.allocate(3, 8)
        buffers.load(positions, np.zeros_like(positions))

        assert buffers.counts() == (1, 0, 2)
        assert buffers.loaded
        np.testing.assert_array_equal(buffers.non_boundary_ids(), [1, 2])
        assert buffers.elastic_connections is None

    def test_unknown_type_tag_raises(self):
        positions = np.vstack([tagged([[0, 0, 0]], C.LIQUID_TYPE),
                               tagged([[1, 0, 0]], 7.5)])
        buffers = ParticleBuffers.allocate(2, 8)
        with pytest.raises(ConfigurationError):
            buffers.load(positions, np.zeros_like(positions))

    def test_wrong_particle_count_raises(self):
        positions = tagged([[0, 0, 0]], C.LIQUID_TYPE)
        buffers = ParticleBuffers.allocate(2, 8)
        with pytest.raises(ConfigurationError):
            buffers.load(positions, np.zeros_like(positions))

    def test_elastic_tables_allocated_lazily(self):
        model = create_elastic_scene(elastic_counts=(2, 2, 2), liquid_layers=0, bundles=2)
        _, elastic, _ = count_types(model.positions[:, 3])
        buffers = ParticleBuffers.allocate(model.particle_count, 64, elastic_count=elastic,
                                           elastic_bundle_count=2)
        assert buffers.elastic_connections is None

        buffers.load(model.positions, model.velocities)
        buffers.load_connections(model.connections)

        assert buffers.elastic_connections.shape == (8, C.NEIGHBOR_COUNT, 3)
        assert buffers.elastic_ids.tolist() == list(range(model.particle_count - 8, model.particle_count))
        # every corner of a 2x2x2 block reaches the other 7
        assert np.all(np.sum(buffers.elastic_connections[:, :, 0] >= 0, axis=1) == 7)

    def test_connections_without_elastic_raise(self):
        model = create_pure_liquid_scene(liquid_counts=(2, 2, 2))
        buffers = ParticleBuffers.allocate(model.particle_count, 64)
        buffers.load(model.positions, model.velocities)
        with pytest.raises(ConfigurationError):
            buffers.load_connections(np.array([[0, 1.0, 0]]))

    def test_set_activation_length(self):
        buffers = ParticleBuffers.allocate(4, 8, elastic_bundle_count=2)
        buffers.set_activation([0.25, 0.5])
        np.testing.assert_allclose(buffers.activation_signal, [0.25, 0.5])
        with pytest.raises(ConfigurationError):
            buffers.set_activation([1.0])

    def test_resize_grid(self):
        buffers = ParticleBuffers.allocate(4, 8)
        buffers.resize_grid(20)
        assert buffers.grid_cell_count == 20
        assert buffers.grid_cell_index.shape == (21,)
        assert np.all(buffers.grid_cell_index_fixed == C.NO_CELL_ID)

    def test_two_generation_slots_are_separate(self):
        buffers = ParticleBuffers.allocate(3, 8)
        buffers.sorted_position[PREDICTED] = 1.0
        assert np.all(buffers.sorted_position[SORTED] == 0.0)


class TestDoubleBuffer:
    def test_swap_exchanges_generations(self):
        data = np.zeros((2, 3, 4), dtype=np.float32)
        buffer = DoubleBuffer(data)
        buffer.scratch[:] = 5.0
        assert np.all(buffer.current == 0.0)

        buffer.swap()
        assert np.all(buffer.current == 5.0)
        assert buffer.current.base is data or np.shares_memory(buffer.current, data)

    def test_needs_two_generations(self):
        with pytest.raises(ValueError):
            DoubleBuffer(np.zeros((3, 4)))


class TestSceneModel:
    def test_grid_dimensions_use_ceil(self):
        assert grid_dimensions((0, 10, 0, 3.34, 0, 0), 3.34) == (4, 2, 1)

    def test_uniform_grid(self):
        grid = UniformGrid.from_bounds((0, 10, 0, 10, 0, 10), 3.34)
        assert grid.dims == (4, 4, 4)
        assert grid.cell_count == 64

    def test_inverted_bounds_raise(self):
        with pytest.raises(ConfigurationError):
            SceneModel(np.zeros((0, 4)), np.zeros((0, 4)), (1, 0, 0, 1, 0, 1))

    def test_mismatched_velocities_raise(self):
        with pytest.raises(ConfigurationError):
            SceneModel(np.zeros((2, 4)), np.zeros((1, 4)), (0, 1, 0, 1, 0, 1))


class TestSolverConfig:
    def test_defaults(self):
        config = SolverConfig()
        assert config.neighbor_capacity == 32
        assert config.predictive_iterations == 3
        assert config.delta > 0.0

    def test_delta_is_cached_and_scales_with_time_step(self):
        config = SolverConfig()
        d1 = compute_delta(config, 5e-4)
        d2 = compute_delta(config, 1e-3)
        assert compute_delta(config, 5e-4) == d1
        # delta ~ 1 / dt²
        assert d1 / d2 == pytest.approx(4.0, rel=1e-9)

    @pytest.mark.parametrize("kwargs", [
        {'time_step': 0.0},
        {'h': -1.0},
        {'hash_grid_cell_size': 1.0},
        {'neighbor_capacity': 0},
        {'predictive_iterations': 0},
        {'gravity': (0.0, -9.8)},
    ])
    def test_invalid_values_raise(self, kwargs):
        with pytest.raises(ConfigurationError):
            SolverConfig(**kwargs)

    def test_kernel_self_term(self):
        config = SolverConfig()
        kernels = config.kernels
        assert kernels.W_self() == pytest.approx(kernels.W_vectorized(0.0))
        assert kernels.W_vectorized(kernels.h_scaled) == 0.0
        assert np.all(kernels.gradW_vectorized(np.zeros((1, 3)), np.zeros(1)) == 0.0)
