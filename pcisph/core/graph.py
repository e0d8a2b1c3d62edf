"""
Step task graph: PCISPH stages as a NetworkX DAG.

Each node is one stage instance ("hash_particles", "predict_positions[2]", ...)
carrying the stage name, loop iteration and a barrier flag. Edges are derived
from the buffers every stage reads and writes (read-after-write,
write-after-write and write-after-read), so the graph records exactly which
stages depend on which. The executor walks a topological order that breaks
ties by insertion order, which reproduces the canonical stage sequence.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import networkx as nx

from .. import api
from ..errors import ConfigurationError

# Work domains for sizing dispatches
PARTICLES = "particles"
CELLS = "cells"
ELASTIC = "elastic"


@dataclass(frozen=True)
class StageSpec:
    """Buffer access pattern of one stage."""
    name: str
    reads: Tuple[str, ...]
    writes: Tuple[str, ...]
    domain: str = PARTICLES
    barrier: bool = False


STAGE_SPECS: Dict[str, StageSpec] = {spec.name: spec for spec in (
    StageSpec(api.CLEAR_BUFFERS, (), ("neighbor_map",)),
    StageSpec(api.HASH_PARTICLES, ("position",), ("particle_index",), barrier=True),
    StageSpec(api.SORT, ("particle_index",), ("particle_index",)),
    StageSpec(api.SORT_POST_PASS, ("particle_index", "position", "velocity"),
              ("sorted_position", "sorted_velocity", "particle_index_back")),
    StageSpec(api.INDEX, ("particle_index",), ("grid_cell_index",), domain=CELLS, barrier=True),
    StageSpec(api.INDEX_POST_PASS, ("grid_cell_index",), ("grid_cell_index_fixed",), domain=CELLS),
    StageSpec(api.FIND_NEIGHBORS, ("sorted_position", "grid_cell_index_fixed", "neighbor_map"),
              ("neighbor_map",)),
    StageSpec(api.COMPUTE_DENSITY, ("neighbor_map",), ("rho",)),
    StageSpec(api.COMPUTE_FORCES_INIT_PRESSURE,
              ("rho", "sorted_position", "sorted_velocity", "neighbor_map"),
              ("pressure", "acceleration")),
    StageSpec(api.COMPUTE_ELASTIC_FORCES,
              ("elastic_connections", "particle_index_back", "sorted_position",
               "activation_signal", "acceleration"),
              ("acceleration",), domain=ELASTIC),
    StageSpec(api.PREDICT_POSITIONS,
              ("sorted_position", "sorted_velocity", "acceleration", "neighbor_map"),
              ("predicted_position",)),
    StageSpec(api.PREDICT_DENSITY, ("predicted_position", "neighbor_map"), ("predicted_rho",)),
    StageSpec(api.CORRECT_PRESSURE, ("predicted_rho", "pressure"), ("pressure",)),
    StageSpec(api.COMPUTE_PRESSURE_FORCE,
              ("sorted_position", "predicted_rho", "pressure", "neighbor_map"),
              ("acceleration",)),
    StageSpec(api.INTEGRATE,
              ("sorted_position", "sorted_velocity", "acceleration", "neighbor_map",
               "particle_index", "position", "velocity"),
              ("position", "velocity")),
)}

PREDICTOR_CORRECTOR = (api.PREDICT_POSITIONS, api.PREDICT_DENSITY,
                       api.CORRECT_PRESSURE, api.COMPUTE_PRESSURE_FORCE)


class StepGraph:
    """DAG of the stages of one simulation step."""

    def __init__(self):
        self.graph: nx.DiGraph = nx.DiGraph()
        self._last_writer: Dict[str, str] = {}
        self._readers: Dict[str, List[str]] = {}
        self._order: Optional[List[str]] = None

    @staticmethod
    def build(has_elastic: bool, iterations: int) -> 'StepGraph':
        """Canonical PCISPH step.

        Args:
            has_elastic: Include the elastic force stage
            iterations: Predictor-corrector passes

        Returns:
            Validated StepGraph
        """
        if iterations < 1:
            raise ConfigurationError(f"Need at least one predictor-corrector pass, got {iterations}")
        step = StepGraph()
        for name in (api.CLEAR_BUFFERS, api.HASH_PARTICLES, api.SORT, api.SORT_POST_PASS,
                     api.INDEX, api.INDEX_POST_PASS, api.FIND_NEIGHBORS, api.COMPUTE_DENSITY,
                     api.COMPUTE_FORCES_INIT_PRESSURE):
            step.add_stage(name)
        if has_elastic:
            step.add_stage(api.COMPUTE_ELASTIC_FORCES)
        for iteration in range(iterations):
            for name in PREDICTOR_CORRECTOR:
                step.add_stage(name, iteration)
        step.add_stage(api.INTEGRATE)
        step.validate()
        return step

    def add_stage(self, name: str, iteration: Optional[int] = None) -> str:
        """Append a stage instance and wire its buffer dependencies."""
        spec = STAGE_SPECS[name]
        node = name if iteration is None else f"{name}[{iteration}]"
        if node in self.graph:
            raise ConfigurationError(f"Duplicate stage {node}")
        self.graph.add_node(node, stage=name, iteration=iteration, barrier=spec.barrier,
                            domain=spec.domain, order=self.graph.number_of_nodes())

        for buffer in spec.reads:
            writer = self._last_writer.get(buffer)
            if writer is not None:
                self.graph.add_edge(writer, node, buffer=buffer)
        for buffer in spec.writes:
            writer = self._last_writer.get(buffer)
            if writer is not None:
                self.graph.add_edge(writer, node, buffer=buffer)
            for reader in self._readers.get(buffer, []):
                if reader != node:
                    self.graph.add_edge(reader, node, buffer=buffer)
        for buffer in spec.reads:
            self._readers.setdefault(buffer, []).append(node)
        for buffer in spec.writes:
            self._last_writer[buffer] = node
            self._readers[buffer] = []

        self._order = None
        return node

    def validate(self):
        if not nx.is_directed_acyclic_graph(self.graph):
            raise ConfigurationError("Step graph has a cycle")

    @property
    def order(self) -> List[str]:
        """Execution order: topological, ties broken by insertion order."""
        if self._order is None:
            nodes = self.graph.nodes
            self._order = list(nx.lexicographical_topological_sort(
                self.graph, key=lambda node: nodes[node]['order']))
        return self._order

    def stages(self) -> List[str]:
        """Stage names in execution order (loop stages repeated)."""
        return [self.graph.nodes[node]['stage'] for node in self.order]

    def barriers(self) -> List[str]:
        return [node for node in self.order if self.graph.nodes[node]['barrier']]

    def count(self, stage: str) -> int:
        return sum(1 for name in self.stages() if name == stage)

    def execute(self, device, arguments: Callable[[str, str], Tuple[int, tuple]],
                after_stage: Optional[Callable] = None):
        """Dispatch every node on one device queue.

        Args:
            device: ComputeDevice to run on
            arguments: (stage, domain) -> (work item count, stage args after global size)
            after_stage: Called as after_stage(node, attributes, event) after each dispatch

        The host waits on the event of every barrier node and drains the queue
        after the last node.
        """
        for node in self.order:
            attributes = self.graph.nodes[node]
            work_items, args = arguments(attributes['stage'], attributes['domain'])
            event = device.dispatch(attributes['stage'], work_items, *args)
            if attributes['barrier']:
                device.wait(event)
            if after_stage is not None:
                after_stage(node, attributes, event)
        device.drain()
