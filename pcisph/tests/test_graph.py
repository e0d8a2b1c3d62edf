"""
Tests for the step task graph and its executor.
"""

import networkx as nx
import pytest

from pcisph import api
from pcisph.core.backend import KernelEvent
from pcisph.core.graph import StepGraph, STAGE_SPECS, CELLS, ELASTIC, PARTICLES
from pcisph.errors import ConfigurationError

PREFIX = [
    "clear_buffers", "hash_particles", "sort", "sort_post_pass", "index",
    "index_post_pass", "find_neighbors", "compute_density", "compute_forces_init_pressure",
]
LOOP = ["predict_positions", "predict_density", "correct_pressure", "compute_pressure_force"]


class RecordingDevice:
    """Stands in for a ComputeDevice and records the queue traffic."""

    def __init__(self):
        self.calls = []

    def dispatch(self, name, work_items, *args):
        self.calls.append(('dispatch', name, work_items))
        return KernelEvent(name, work_items, 0.0)

    def wait(self, event):
        self.calls.append(('wait', event.kernel))

    def drain(self):
        self.calls.append(('drain',))


class TestStepGraph:
    def test_canonical_order_without_elastic(self):
        graph = StepGraph.build(has_elastic=False, iterations=3)
        assert graph.stages() == PREFIX + LOOP * 3 + ["integrate"]

    def test_elastic_stage_only_with_elastic_particles(self):
        graph = StepGraph.build(has_elastic=True, iterations=3)
        assert graph.stages() == PREFIX + ["compute_elastic_forces"] + LOOP * 3 + ["integrate"]
        assert "compute_elastic_forces" not in StepGraph.build(False, 3).stages()

    @pytest.mark.parametrize("iterations", [1, 3, 5])
    def test_loop_runs_configured_number_of_times(self, iterations):
        graph = StepGraph.build(has_elastic=False, iterations=iterations)
        for stage in LOOP:
            assert graph.count(stage) == iterations
        assert f"predict_positions[{iterations - 1}]" in graph.graph

    def test_zero_iterations_rejected(self):
        with pytest.raises(ConfigurationError):
            StepGraph.build(has_elastic=False, iterations=0)

    def test_graph_is_acyclic_with_data_edges(self):
        graph = StepGraph.build(has_elastic=True, iterations=3).graph
        assert nx.is_directed_acyclic_graph(graph)
        assert graph.has_edge("hash_particles", "sort")
        assert graph.has_edge("index", "index_post_pass")
        assert graph.has_edge("predict_positions[0]", "predict_density[0]")
        assert graph.has_edge("correct_pressure[1]", "compute_pressure_force[1]")
        assert graph.has_edge("compute_pressure_force[0]", "predict_positions[1]")
        assert graph.has_edge("compute_pressure_force[2]", "integrate")
        assert graph.has_edge("compute_forces_init_pressure", "compute_elastic_forces")
        # density only needs the neighbor map, not the sorted velocity
        assert not graph.has_edge("sort_post_pass", "compute_density")
        assert nx.has_path(graph, "clear_buffers", "integrate")

    def test_barriers_follow_hash_and_index(self):
        graph = StepGraph.build(has_elastic=False, iterations=3)
        assert graph.barriers() == ["hash_particles", "index"]

    def test_work_domains(self):
        assert STAGE_SPECS[api.INDEX].domain == CELLS
        assert STAGE_SPECS[api.COMPUTE_ELASTIC_FORCES].domain == ELASTIC
        assert STAGE_SPECS[api.INTEGRATE].domain == PARTICLES

    def test_every_stage_registered(self):
        assert set(STAGE_SPECS) == set(api.STAGES)

    def test_duplicate_stage_rejected(self):
        graph = StepGraph()
        graph.add_stage(api.SORT)
        with pytest.raises(ConfigurationError):
            graph.add_stage(api.SORT)


class TestExecutor:
    def test_waits_at_barriers_and_drains_at_end(self):
        graph = StepGraph.build(has_elastic=False, iterations=3)
        device = RecordingDevice()
        sizes = {PARTICLES: 10, CELLS: 28, ELASTIC: 0}

        graph.execute(device, lambda stage, domain: (sizes[domain], ()))

        calls = device.calls
        hash_at = calls.index(('dispatch', 'hash_particles', 10))
        index_at = calls.index(('dispatch', 'index', 28))
        assert calls[hash_at + 1] == ('wait', 'hash_particles')
        assert calls[index_at + 1] == ('wait', 'index')
        assert calls[-1] == ('drain',)
        assert sum(1 for call in calls if call[0] == 'wait') == 2
        dispatched = [call[1] for call in calls if call[0] == 'dispatch']
        assert dispatched == graph.stages()

    def test_after_stage_sees_every_node(self):
        graph = StepGraph.build(has_elastic=True, iterations=3)
        seen = []

        graph.execute(RecordingDevice(), lambda stage, domain: (1, ()),
                      lambda node, attributes, event: seen.append((node, attributes['iteration'])))

        assert [node for node, _ in seen] == graph.order
        assert ("predict_density[2]", 2) in seen
        assert ("integrate", None) in seen
