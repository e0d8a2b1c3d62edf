"""Pytest configuration for PCISPH tests."""
import sys
from pathlib import Path

import pytest


def pytest_configure(config):
    """Configure pytest environment for PCISPH tests."""
    # Add workspace root to Python path for pcisph package imports
    workspace_root = Path(__file__).parent.parent.parent
    if str(workspace_root) not in sys.path:
        sys.path.insert(0, str(workspace_root))


@pytest.fixture
def build_buffers():
    """Factory: scene model -> (loaded ParticleBuffers, UniformGrid)."""
    from pcisph.config import SolverConfig
    from pcisph.core.buffers import ParticleBuffers
    from pcisph.core.model import UniformGrid, count_types

    def build(model, config=None):
        config = config or SolverConfig()
        grid = UniformGrid.from_bounds(model.bounds, config.hash_grid_cell_size)
        _, elastic, _ = count_types(model.positions[:, 3])
        buffers = ParticleBuffers.allocate(model.particle_count, grid.cell_count,
                                           elastic_count=elastic,
                                           elastic_bundle_count=model.elastic_bundles,
                                           neighbor_capacity=config.neighbor_capacity)
        buffers.load(model.positions, model.velocities)
        buffers.load_connections(model.connections)
        return buffers, grid
    return build


@pytest.fixture
def run_grid():
    """Run hash, sort, index and neighbor stages on one backend."""
    from pcisph import api

    def run(buffers, grid, config, backend='cpu'):
        api.run_stage(api.CLEAR_BUFFERS, buffers, backend=backend)
        api.run_stage(api.HASH_PARTICLES, buffers, grid, backend=backend)
        api.run_stage(api.SORT, buffers, backend=backend)
        api.run_stage(api.SORT_POST_PASS, buffers, backend=backend)
        api.run_stage(api.INDEX, buffers, grid, work_items=grid.cell_count + 1, backend=backend)
        api.run_stage(api.INDEX_POST_PASS, buffers, work_items=grid.cell_count + 1, backend=backend)
        api.run_stage(api.FIND_NEIGHBORS, buffers, grid, config, backend=backend)
    return run
