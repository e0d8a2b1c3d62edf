"""
PCISPH solver: owns the device, buffers and step graph of one scene.

Typical use:

    solver = PCISPHSolver(backend='numba')
    solver.initialize(create_pure_liquid_scene())
    results = solver.solve(10)
"""

import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np

from . import api
from .checkpoints import CheckpointStore, capture_checkpoint
from .config import SolverConfig, compute_delta
from .core.backend import ComputeDevice, resolve_backend
from .core.buffers import ParticleBuffers
from .core.graph import StepGraph, PARTICLES, CELLS, ELASTIC
from .core.model import SceneModel, UniformGrid, count_types, validate_bounds
from .errors import BackendError, ConfigurationError
from .watch import (WatchPath, parse_watch_path, check_index, resolve_watch, needs_step,
                    watchable_schema)

logger = logging.getLogger(__name__)


def configure_logging(level="INFO") -> logging.Logger:
    """Attach a plain stream handler to the package logger."""
    package_logger = logging.getLogger("pcisph")
    package_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    if not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        package_logger.addHandler(handler)
    return package_logger


@dataclass(frozen=True)
class StepResult:
    """Final state of the non-boundary particles after one step."""
    step: int
    particle_ids: np.ndarray        # (M,) original ids
    positions: np.ndarray           # (M, 3) simulation units
    velocities: np.ndarray          # (M, 3) m/s
    watch: Mapping[str, float]


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.array(array, copy=True)
    array.flags.writeable = False
    return array


class PCISPHSolver:
    """Runs PCISPH steps of one scene on one compute device."""

    def __init__(self, config: Optional[SolverConfig] = None, backend=None, profile=None):
        """
        Args:
            config: Solver parameters (defaults from constants.py)
            backend: 'cpu', 'numba' or Backend; overrides profile
            profile: HardwareProfile or 'cpu'/'gpu' device class
        """
        self.config = config or SolverConfig()
        self.device = ComputeDevice(resolve_backend(backend, profile))
        self.backend = self.device.backend

        self.model: Optional[SceneModel] = None
        self.buffers: Optional[ParticleBuffers] = None
        self.grid: Optional[UniformGrid] = None
        self.graph: Optional[StepGraph] = None
        self.bounds = None

        self.step_count = 0
        self.stage_trace: List[str] = []
        self.checkpoints = CheckpointStore()

        self._watch_paths: Dict[str, WatchPath] = {}
        self._watching = False
        self._disposed = False
        self._computed = False

    # ------------------------------------------------------------------ setup
    def initialize(self, model: SceneModel):
        """Size and fill all buffers from a scene model.

        Raises:
            ConfigurationError: If type counts do not add up, or connections are invalid.
                Raised before any kernel runs.
        """
        self._check_alive()
        boundary, elastic, liquid = count_types(model.positions[:, 3])
        if boundary + elastic + liquid != model.particle_count:
            raise ConfigurationError(
                f"Particle counts do not add up: {boundary} boundary + {elastic} elastic + "
                f"{liquid} liquid != {model.particle_count}")

        grid = UniformGrid.from_bounds(model.bounds, self.config.hash_grid_cell_size)
        buffers = ParticleBuffers.allocate(model.particle_count, grid.cell_count,
                                           elastic_count=elastic,
                                           elastic_bundle_count=model.elastic_bundles,
                                           neighbor_capacity=self.config.neighbor_capacity,
                                           device=self.device)
        buffers.load(model.positions, model.velocities)
        buffers.load_connections(model.connections)
        for path in self._watch_paths.values():
            check_index(path, buffers.particle_count)

        self.model = model
        self.bounds = model.bounds
        self.grid = grid
        self.buffers = buffers
        self.graph = StepGraph.build(has_elastic=elastic > 0,
                                     iterations=self.config.predictive_iterations)
        self.step_count = 0
        self.checkpoints.clear()
        self._computed = False

        logger.info("Loaded %s: %d particles (%d boundary, %d elastic, %d liquid), grid %s",
                    model.model_id, model.particle_count, boundary, elastic, liquid, grid.dims)

    def set_bounds(self, bounds):
        """Change the scene box; the grid is rebuilt on the next step."""
        self._check_ready()
        self.bounds = validate_bounds(bounds)

    @property
    def buffer_sizes(self) -> Dict[str, int]:
        self._check_ready()
        return self.buffers.buffer_sizes

    def set_activation_signal(self, values: Sequence[float]):
        """Write one activation value per elastic bundle.

        Raises:
            ConfigurationError: If the number of values does not match the slot count
        """
        self._check_ready()
        self.buffers.set_activation(values)

    # ------------------------------------------------------------------ watch
    def add_watch_variables(self, names: Sequence[str]):
        """Register watch paths such as ``particle[0].position.y``.

        Raises:
            ConfigurationError: If a path is malformed or selects a missing particle
        """
        parsed = {name: parse_watch_path(name) for name in names}
        if self.buffers is not None:
            for path in parsed.values():
                check_index(path, self.buffers.particle_count)
        self._watch_paths.update(parsed)

    def clear_watch_variables(self):
        self._watch_paths.clear()

    def start_watch(self):
        self._watching = True

    def stop_watch(self):
        self._watching = False

    @property
    def watching(self) -> bool:
        return self._watching

    @property
    def watch_variables(self) -> List[str]:
        return list(self._watch_paths)

    def watch_values(self) -> Dict[str, float]:
        """Resolved watch values; density and pressure are left out until the first step."""
        self._check_ready()
        return {name: resolve_watch(path, self.buffers) for name, path in self._watch_paths.items()
                if self._computed or not needs_step(path)}

    def watchable_variables(self) -> Dict[str, dict]:
        """Schema of the watch paths accepted by add_watch_variables."""
        self._check_ready()
        return watchable_schema(self.buffers.particle_count)

    def forceable_variables(self) -> Dict[str, dict]:
        """Inputs writable between steps: one activation value per slot."""
        self._check_ready()
        return {'activation': {'size': len(self.buffers.activation_signal)}}

    # ------------------------------------------------------------------ stepping
    def _refresh_grid(self):
        grid = UniformGrid.from_bounds(self.bounds, self.config.hash_grid_cell_size)
        if grid.cell_count != self.buffers.grid_cell_count:
            logger.info("Grid resized from %d to %d cells", self.buffers.grid_cell_count,
                        grid.cell_count)
            self.buffers.resize_grid(grid.cell_count)
        self.grid = grid

    def _stage_arguments(self, time_step: float, delta: float):
        buffers, grid, config = self.buffers, self.grid, self.config
        arguments = {
            api.CLEAR_BUFFERS: (buffers,),
            api.HASH_PARTICLES: (buffers, grid),
            api.SORT: (buffers,),
            api.SORT_POST_PASS: (buffers,),
            api.INDEX: (buffers, grid),
            api.INDEX_POST_PASS: (buffers,),
            api.FIND_NEIGHBORS: (buffers, grid, config),
            api.COMPUTE_DENSITY: (buffers, config),
            api.COMPUTE_FORCES_INIT_PRESSURE: (buffers, config),
            api.COMPUTE_ELASTIC_FORCES: (buffers, config),
            api.PREDICT_POSITIONS: (buffers, grid, config, time_step),
            api.PREDICT_DENSITY: (buffers, config),
            api.CORRECT_PRESSURE: (buffers, config, delta),
            api.COMPUTE_PRESSURE_FORCE: (buffers, config),
            api.INTEGRATE: (buffers, grid, config, time_step),
        }
        work_items = {
            PARTICLES: buffers.particle_count,
            CELLS: buffers.grid_cell_count + 1,
            ELASTIC: buffers.elastic_count,
        }

        def resolve(stage: str, domain: str):
            return work_items[domain], arguments[stage]
        return resolve

    def step(self, time_step: Optional[float] = None) -> StepResult:
        """Advance the scene by one time step.

        Raises:
            BackendError: If a stage fails; the step count is left unchanged
        """
        self._check_ready()
        time_step = self.config.time_step if time_step is None else float(time_step)
        if time_step <= 0:
            raise ConfigurationError(f"Time step must be positive, got {time_step}")
        delta = compute_delta(self.config, time_step)
        self._refresh_grid()

        step_number = self.step_count + 1
        trace = []
        record = self.config.record_checkpoints

        def after_stage(node, attributes, event):
            trace.append(node)
            logger.debug("  %s: %.3f ms", node, event.elapsed_ms)
            if record:
                self.checkpoints.record(capture_checkpoint(
                    self.buffers, self.device, step_number, attributes['stage'],
                    attributes['iteration']))

        start = time.perf_counter()
        self.graph.execute(self.device, self._stage_arguments(time_step, delta), after_stage)
        self._computed = True
        self.step_count = step_number
        self.stage_trace = trace
        logger.info("Step %d: %.2f ms", step_number, (time.perf_counter() - start) * 1000)
        return self._collect(step_number)

    def solve(self, time_steps: int, time_step: Optional[float] = None) -> List[StepResult]:
        """Run several steps and return one result per step."""
        if int(time_steps) != time_steps or time_steps < 0:
            raise ConfigurationError(f"Number of steps must be a non-negative integer, got {time_steps}")
        start = time.perf_counter()
        results = [self.step(time_step) for _ in range(int(time_steps))]
        logger.info("Solved %d steps in %.2f ms", len(results), (time.perf_counter() - start) * 1000)
        return results

    def _collect(self, step_number: int) -> StepResult:
        ids = self.buffers.non_boundary_ids()
        positions = self.device.map_for_read(self.buffers.position.current)
        velocities = self.device.map_for_read(self.buffers.velocity.current)
        watch = self.watch_values() if self._watching else {}
        return StepResult(step_number, _frozen(ids), _frozen(positions[ids, :3]),
                          _frozen(velocities[ids, :3]), MappingProxyType(watch))

    # ------------------------------------------------------------------ teardown
    def dispose(self):
        """Release buffers, checkpoints and the device; the solver cannot step afterwards."""
        if self._disposed:
            return
        self.checkpoints.clear()
        self.buffers = None
        self.graph = None
        self.device.release()
        self._disposed = True
        logger.info("Solver disposed")

    def _check_alive(self):
        if self._disposed:
            raise BackendError("Solver has been disposed", {'backend': self.backend.value})

    def _check_ready(self):
        self._check_alive()
        if self.buffers is None:
            raise ConfigurationError("Solver has no scene; call initialize() first")
