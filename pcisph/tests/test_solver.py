"""
Scenario tests for the PCISPH solver.

Tests end-to-end behavior including:
- Configuration errors raised before any kernel runs
- Determinism of multi-step runs
- Fixed predictor-corrector iteration count
- Boundary invariance, lone particles, overlaps, elastic matter
"""

import numpy as np
import pytest

from pcisph import (PCISPHSolver, SolverConfig, SceneModel, ConfigurationError, BackendError,
                    find_overlapping_particles, find_numerical_anomalies,
                    count_non_boundary_particles)
from pcisph import constants as C
from pcisph.core.backend import Backend, BackendManager, ComputeDevice, HardwareProfile
from pcisph.core.buffers import DENSITY, PRESSURE
from pcisph.scenarios import (create_pure_liquid_scene, create_elastic_scene,
                              create_single_particle_scene)

BACKENDS = ['cpu', 'numba']


def boundary_ids(model):
    return np.flatnonzero(model.type_mask(C.BOUNDARY_TYPE))


class TestConfigurationErrors:
    def test_count_mismatch_raises_before_kernels(self):
        model = create_pure_liquid_scene(liquid_counts=(2, 2, 2))
        positions = model.positions.copy()
        positions[-1, 3] = 9.9
        bad = SceneModel(positions, model.velocities, model.bounds)
        solver = PCISPHSolver(backend='cpu')

        with pytest.raises(ConfigurationError):
            solver.initialize(bad)

        assert solver.buffers is None
        assert solver.device._pending == []
        with pytest.raises(ConfigurationError):
            solver.step()

    def test_invalid_step_count(self):
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(create_single_particle_scene())
        with pytest.raises(ConfigurationError):
            solver.solve(-1)
        with pytest.raises(ConfigurationError):
            solver.solve(1.5)

    def test_activation_length_must_match(self):
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(create_pure_liquid_scene(liquid_counts=(2, 2, 2)))
        solver.set_activation_signal([0.0])
        with pytest.raises(ConfigurationError):
            solver.set_activation_signal([0.0, 1.0])

    def test_watch_index_out_of_range(self):
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(create_single_particle_scene())
        with pytest.raises(ConfigurationError):
            solver.add_watch_variables(["particle[1].density"])

    def test_watch_registered_early_is_checked_on_initialize(self):
        solver = PCISPHSolver(backend='cpu')
        solver.add_watch_variables(["particle[5].pressure"])
        with pytest.raises(ConfigurationError):
            solver.initialize(create_single_particle_scene())
        assert solver.buffers is None


class TestBackendSelection:
    def test_gpu_profile_selects_numba(self):
        solver = PCISPHSolver(profile=HardwareProfile.GPU)
        assert solver.backend == Backend.NUMBA

    def test_cpu_profile_selects_numpy(self):
        solver = PCISPHSolver(profile='cpu')
        assert solver.backend == Backend.CPU

    def test_invalid_backend_name(self):
        with pytest.raises(BackendError):
            PCISPHSolver(backend='opencl')

    def test_kernel_failure_is_wrapped(self):
        manager = BackendManager()

        def failing(global_size, *args):
            raise ZeroDivisionError("boom")
        manager.register_implementation("failing", Backend.CPU, failing)
        device = ComputeDevice(Backend.CPU, manager)

        with pytest.raises(BackendError) as info:
            device.dispatch("failing", 10)
        assert info.value.context == {'kernel': 'failing', 'backend': 'cpu'}

        with pytest.raises(BackendError):
            device.dispatch("missing", 10)

    def test_work_size_rounded_to_group(self):
        manager = BackendManager()
        sizes = []
        manager.register_implementation("probe", Backend.CPU, lambda global_size: sizes.append(global_size))
        device = ComputeDevice(Backend.CPU, manager)

        event = device.dispatch("probe", 300)
        device.wait(event)
        device.dispatch("probe", 256)
        device.drain()

        assert sizes == [512, 256]
        assert event.global_work_size == 512


@pytest.mark.parametrize("backend", BACKENDS)
class TestScenarios:
    def test_multi_step_matches_single_steps(self, backend):
        model = create_pure_liquid_scene(liquid_counts=(3, 3, 3))
        batch = PCISPHSolver(backend=backend)
        batch.initialize(model)
        stepped = PCISPHSolver(backend=backend)
        stepped.initialize(model)

        results = batch.solve(4)
        for _ in range(4):
            last = stepped.step()

        np.testing.assert_array_equal(results[-1].positions, last.positions)
        np.testing.assert_array_equal(results[-1].velocities, last.velocities)
        assert results[-1].step == last.step == 4

    def test_boundary_particles_never_move(self, backend):
        model = create_pure_liquid_scene(liquid_counts=(3, 3, 3))
        solver = PCISPHSolver(backend=backend)
        solver.initialize(model)

        solver.solve(5)

        ids = boundary_ids(model)
        np.testing.assert_array_equal(solver.buffers.position.current[ids], model.positions[ids])
        np.testing.assert_array_equal(solver.buffers.velocity.current[ids], model.velocities[ids])

    def test_predictor_corrector_runs_exactly_three_times(self, backend):
        config = SolverConfig(record_checkpoints=True)
        solver = PCISPHSolver(config=config, backend=backend)
        solver.initialize(create_pure_liquid_scene(liquid_counts=(2, 2, 2)))

        solver.step()
        for stage in ("predict_positions", "predict_density", "correct_pressure",
                      "compute_pressure_force"):
            assert sum(1 for node in solver.stage_trace if node.startswith(stage)) == 3
            assert [cp.iteration for cp in solver.checkpoints[stage]] == [0, 1, 2]

        solver.step()
        assert len(solver.checkpoints["predict_density"]) == 6
        assert [cp.step for cp in solver.checkpoints["integrate"]] == [1, 2]

    def test_checkpoints_are_immutable_snapshots(self, backend):
        config = SolverConfig(record_checkpoints=True)
        solver = PCISPHSolver(config=config, backend=backend)
        solver.initialize(create_single_particle_scene())

        solver.step()
        first = solver.checkpoints["integrate"][0]
        before = np.copy(first["position"])
        solver.step()

        np.testing.assert_array_equal(first["position"], before)
        assert not first["position"].flags.writeable
        with pytest.raises(TypeError):
            first.buffers["position"] = before

    def test_no_checkpoints_by_default(self, backend):
        solver = PCISPHSolver(backend=backend)
        solver.initialize(create_single_particle_scene())
        solver.step()
        assert len(solver.checkpoints) == 0

    def test_lone_particle_falls_under_gravity(self, backend):
        model = create_single_particle_scene()
        config = SolverConfig()
        solver = PCISPHSolver(config=config, backend=backend)
        solver.initialize(model)

        result = solver.step()

        buffers = solver.buffers
        assert buffers.rho[DENSITY, 0] == pytest.approx(config.mass * config.kernels.W_self(), rel=1e-5)
        assert buffers.pressure[0] == 0.0
        assert np.all(buffers.acceleration[PRESSURE, 0] == 0.0)

        dt = config.time_step
        expected_v = np.array(config.gravity) * dt
        np.testing.assert_allclose(result.velocities[0], expected_v, rtol=1e-5, atol=1e-9)
        expected_x = model.positions[0, :3] + expected_v * dt * config.simulation_scale_inv
        np.testing.assert_allclose(result.positions[0], expected_x, rtol=1e-6)
        assert find_numerical_anomalies([result]) == []

    def test_coincident_particles_on_boundary_stay_finite(self, backend):
        base = create_pure_liquid_scene(liquid_counts=(3, 3, 3))
        floor = np.flatnonzero(base.type_mask(C.BOUNDARY_TYPE) & (base.positions[:, 1] == 0.0)
                               & (base.positions[:, 0] > 0.0) & (base.positions[:, 2] > 0.0))[0]
        # two liquid particles on top of each other and of one floor particle
        intruder = base.positions[floor].copy()
        intruder[3] = C.LIQUID_TYPE
        positions = np.vstack([base.positions, intruder, intruder])
        velocities = np.vstack([base.velocities, [[0.0, 0.0, 0.0, C.LIQUID_TYPE]] * 2])
        model = SceneModel(positions, velocities, base.bounds)

        n = model.particle_count
        assert find_overlapping_particles(model) == [n - 2, n - 1]

        solver = PCISPHSolver(backend=backend)
        solver.initialize(model)
        results = solver.solve(20)

        assert find_numerical_anomalies(results) == []
        assert np.all(np.isfinite(solver.buffers.rho[DENSITY]))
        assert np.all(np.isfinite(solver.buffers.pressure))

    def test_zero_elastic_skips_elastic_stage(self, backend):
        solver = PCISPHSolver(backend=backend)
        solver.initialize(create_pure_liquid_scene(liquid_counts=(3, 3, 3)))

        results = solver.solve(3)

        assert solver.buffers.activation_signal.shape == (1,)
        assert solver.buffers.elastic_connections is None
        assert "compute_elastic_forces" not in solver.stage_trace
        assert find_numerical_anomalies(results) == []

    def test_elastic_scene_runs_finite(self, backend):
        solver = PCISPHSolver(backend=backend)
        solver.initialize(create_elastic_scene())
        solver.set_activation_signal([0.5])

        results = solver.solve(5)

        assert "compute_elastic_forces" in solver.stage_trace
        assert find_numerical_anomalies(results) == []

    def test_activation_contracts_elastic_block(self, backend):
        model = create_elastic_scene(liquid_layers=0)
        relaxed = PCISPHSolver(backend=backend)
        relaxed.initialize(model)
        active = PCISPHSolver(backend=backend)
        active.initialize(model)
        active.set_activation_signal([1.0])

        a = relaxed.step()
        b = active.step()

        elastic = np.isin(a.particle_ids, np.flatnonzero(model.type_mask(C.ELASTIC_TYPE)))
        assert not np.allclose(a.velocities[elastic], b.velocities[elastic])

    def test_liquid_falls(self, backend):
        solver = PCISPHSolver(backend=backend)
        solver.initialize(create_pure_liquid_scene(liquid_counts=(3, 3, 3)))
        result = solver.step()
        assert np.mean(result.velocities[:, 1]) < 0.0

    def test_rest_lattice_starts_without_pressure(self, backend):
        config = SolverConfig(record_checkpoints=True)
        solver = PCISPHSolver(config=config, backend=backend)
        solver.initialize(create_pure_liquid_scene(liquid_counts=(4, 4, 4)))

        solver.step()

        initial = solver.checkpoints["compute_forces_init_pressure"][0]
        assert np.all(initial["rho"][DENSITY] <= config.rho0)
        assert np.all(initial["pressure"] == 0.0)


class TestResultSurface:
    def test_results_exclude_boundary(self):
        model = create_pure_liquid_scene(liquid_counts=(2, 2, 2))
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(model)

        results = solver.solve(3)

        assert [r.step for r in results] == [1, 2, 3]
        for result in results:
            assert len(result.particle_ids) == count_non_boundary_particles(model) == 8
            assert result.positions.shape == (8, 3)
            assert not result.positions.flags.writeable

    def test_watch_session(self):
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(create_single_particle_scene())
        solver.add_watch_variables(["particle[0].position.y", "particle[0].density"])

        assert solver.step().watch == {}

        solver.start_watch()
        result = solver.step()
        assert set(result.watch) == {"particle[0].position.y", "particle[0].density"}
        assert result.watch["particle[0].position.y"] == pytest.approx(float(result.positions[0, 1]))
        assert result.watch["particle[0].density"] > 0.0

        solver.stop_watch()
        assert solver.step().watch == {}

        solver.clear_watch_variables()
        solver.start_watch()
        assert solver.step().watch == {}

    def test_density_watch_waits_for_first_step(self):
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(create_single_particle_scene())
        solver.add_watch_variables(["particle[0].density", "particle[0].pressure",
                                    "particle[0].position.x"])

        before = solver.watch_values()
        assert set(before) == {"particle[0].position.x"}

        solver.step()
        after = solver.watch_values()
        assert after["particle[0].density"] == pytest.approx(
            solver.config.mass * solver.config.kernels.W_self(), rel=1e-5)
        assert after["particle[0].pressure"] == 0.0

        # a fresh scene has no computed density again
        solver.initialize(create_single_particle_scene())
        assert "particle[0].density" not in solver.watch_values()

    def test_variable_listings(self):
        model = create_elastic_scene(bundles=2)
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(model)

        watchable = solver.watchable_variables()
        assert watchable['particle']['size'] == model.particle_count
        assert watchable['particle']['fields'] == {
            'position': ('x', 'y', 'z'),
            'velocity': ('x', 'y', 'z'),
            'density': None,
            'pressure': None,
        }
        assert solver.forceable_variables() == {'activation': {'size': 2}}

        liquid = PCISPHSolver(backend='cpu')
        liquid.initialize(create_pure_liquid_scene(liquid_counts=(2, 2, 2)))
        assert liquid.forceable_variables() == {'activation': {'size': 1}}

    def test_custom_time_step(self):
        model = create_single_particle_scene()
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(model)

        result = solver.solve(1, time_step=1e-3)[0]

        assert result.velocities[0, 1] == pytest.approx(-9.8e-3, rel=1e-5)

    def test_buffer_sizes_published(self):
        model = create_pure_liquid_scene(liquid_counts=(2, 2, 2))
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(model)

        sizes = solver.buffer_sizes
        assert sizes['sorted_position'] == 2 * model.particle_count * 4
        assert sizes['grid_cell_index_fixed'] == solver.grid.cell_count + 1
        assert sizes['activation_signal'] == 1

    def test_bounds_change_resizes_grid(self):
        model = create_single_particle_scene()
        solver = PCISPHSolver(backend='cpu')
        solver.initialize(model)
        cells = solver.grid.cell_count

        solver.set_bounds((0, 20 * C.H, 0, 20 * C.H, 0, 20 * C.H))
        solver.step()

        assert solver.grid.cell_count > cells
        assert solver.buffers.grid_cell_index.shape == (solver.grid.cell_count + 1,)

    def test_dispose_makes_solver_unusable(self):
        solver = PCISPHSolver(backend='cpu', config=SolverConfig(record_checkpoints=True))
        solver.initialize(create_single_particle_scene())
        solver.step()

        solver.dispose()

        assert solver.buffers is None
        assert len(solver.checkpoints) == 0
        with pytest.raises(BackendError):
            solver.step()
        with pytest.raises(BackendError):
            solver.initialize(create_single_particle_scene())
