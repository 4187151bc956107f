"""Unit tests for cascade simulation."""

from __future__ import annotations
import sys, unittest
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from twin_engine.cascade import predict_cascade_path, simulate_cascade
from twin_engine.evolution import derive_status
from twin_engine.graph import create_graph
from twin_engine.model import InvalidParameterError, NodeStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _run(store, origin, severity=0.7, seed=0):
    return simulate_cascade(store, origin, severity, np.random.default_rng(seed),
                            np.random.default_rng(seed + 1), _clock)


def _weakened(seed=12345, n=150):
    """Low health everywhere so admissions are frequent."""
    store = create_graph(n, seed, now=NOW)
    for node in store:
        node.health = 0.15
        node.risk_score = 0.9
    return store


class TestCascadeScenario(unittest.TestCase):

    def test_seeded_grid_origin_first_and_edges_real(self):
        store = create_graph(150, 12345, now=NOW)
        event = _run(store, "node_0000", 0.7)
        self.assertIsNotNone(event)
        self.assertEqual(event.affected_nodes[0], "node_0000")
        for step in event.propagation_path:
            self.assertTrue(store.has_edge(step.source, step.target))

    def test_weakened_grid_path_edges_real(self):
        steps = 0
        for i in range(10):
            store = _weakened()
            event = _run(store, f"node_{i:04d}", 0.9, seed=i)
            for step in event.propagation_path:
                self.assertTrue(store.has_edge(step.source, step.target))
            steps += len(event.propagation_path)
        self.assertGreater(steps, 0)


class TestCascadeInvariants(unittest.TestCase):

    def test_no_duplicates(self):
        for seed in range(5):
            event = _run(_weakened(), "node_0000", 0.9, seed=seed)
            self.assertEqual(len(event.affected_nodes), len(set(event.affected_nodes)))

    def test_depth_bounded(self):
        for seed in range(5):
            event = _run(_weakened(), "node_0010", 1.0, seed=seed)
            for step in event.propagation_path:
                self.assertTrue(1 <= step.depth <= 6)

    def test_path_matches_affected(self):
        event = _run(_weakened(), "node_0000", 0.9, seed=2)
        self.assertEqual(list(event.affected_nodes[1:]),
                         [s.target for s in event.propagation_path])
        for step in event.propagation_path:
            self.assertIn(step.source, event.affected_nodes)

    def test_transfer_decays(self):
        event = _run(_weakened(), "node_0000", 0.9, seed=3)
        by_target = {s.target: s for s in event.propagation_path}
        for step in event.propagation_path:
            parent = by_target.get(step.source)
            if parent is not None:
                self.assertLess(step.risk_transfer, parent.risk_transfer)

    def test_origin_stressed_and_status_derived(self):
        store = create_graph(50, 3, now=NOW)
        origin = store.get_node("node_0001")
        risk0, health0 = origin.risk_score, origin.health
        event = _run(store, "node_0001", 0.8)
        origin = store.get_node("node_0001")
        self.assertAlmostEqual(origin.risk_score, min(1.0, risk0 + 0.4))
        self.assertAlmostEqual(origin.health, max(0.1, health0 - 0.24))
        for node_id in event.affected_nodes:
            node = store.get_node(node_id)
            self.assertIs(node.status, derive_status(node.risk_score, node.health))
        self.assertGreater(event.total_damage, 0.0)
        self.assertAlmostEqual(event.impact_score, len(event.affected_nodes) / 50)

    def test_isolated_neighbours_never_admitted(self):
        store = _weakened()
        for node_id in store.get_node("node_0000").connections:
            store.get_node(node_id).status = NodeStatus.ISOLATED
        event = _run(store, "node_0000", 1.0)
        self.assertEqual(event.affected_nodes, ("node_0000",))

    def test_healthy_neighbours_never_admitted(self):
        store = create_graph(40, 5, now=NOW)
        for node in store:
            node.health = 1.0
        event = _run(store, "node_0000", 1.0)
        self.assertEqual(event.affected_nodes, ("node_0000",))
        self.assertEqual(event.propagation_path, ())

    def test_same_seed_same_event(self):
        a = _run(_weakened(), "node_0000", 0.9, seed=7)
        b = _run(_weakened(), "node_0000", 0.9, seed=7)
        self.assertEqual(a.affected_nodes, b.affected_nodes)
        self.assertEqual(a.id, b.id)


class TestCascadeErrors(unittest.TestCase):

    def test_unknown_origin_returns_none(self):
        store = create_graph(20, 1, now=NOW)
        self.assertIsNone(_run(store, "node_9999"))

    def test_invalid_severity_rejected_before_mutation(self):
        store = create_graph(20, 1, now=NOW)
        before = [n.to_dict() for n in store.nodes()]
        with self.assertRaises(InvalidParameterError):
            _run(store, "node_0000", 1.5)
        with self.assertRaises(InvalidParameterError):
            _run(store, "node_0000", -0.1)
        self.assertEqual([n.to_dict() for n in store.nodes()], before)


class TestPredictCascadePath(unittest.TestCase):

    def test_read_only(self):
        store = _weakened()
        before = [n.to_dict() for n in store.nodes()]
        path = predict_cascade_path(store, "node_0000", np.random.default_rng(0))
        self.assertEqual(path[0], "node_0000")
        self.assertEqual(len(path), len(set(path)))
        self.assertEqual([n.to_dict() for n in store.nodes()], before)

    def test_unknown_origin(self):
        store = create_graph(10, 1, now=NOW)
        self.assertEqual(predict_cascade_path(store, "nope", np.random.default_rng(0)), [])


if __name__ == "__main__":
    unittest.main()
