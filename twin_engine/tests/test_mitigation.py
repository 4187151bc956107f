"""Unit tests for the mitigation applicator and recommendation records."""

from __future__ import annotations
import sys, unittest
from datetime import datetime, timezone
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from twin_engine.evolution import derive_status
from twin_engine.graph import create_graph
from twin_engine.incidents import IncidentStore
from twin_engine.mitigation import (
    ACTION_PROFILES, MitigationApplicator, apply_action, auto_action_for,
)
from twin_engine.model import (
    ActionType, CyberStatus, InvalidParameterError, NodeStatus, SeverityLevel, ThreatType,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _applicator(n=30, seed=2):
    store = create_graph(n, seed, now=NOW)
    incidents = IncidentStore(_clock)
    return MitigationApplicator(store, np.random.default_rng(0), incidents, _clock), store, incidents


class TestActionEffects(unittest.TestCase):

    def setUp(self):
        self.store = create_graph(10, 2, now=NOW)
        self.node = self.store.get_node("node_0001")

    def test_isolate_pins_and_lowers_risk(self):
        self.node.risk_score = 0.9
        apply_action(self.node, ActionType.ISOLATE)
        self.assertIs(self.node.status, NodeStatus.ISOLATED)
        self.assertAlmostEqual(self.node.risk_score, 0.6)

    def test_isolate_idempotent_status(self):
        apply_action(self.node, ActionType.ISOLATE)
        apply_action(self.node, ActionType.ISOLATE)
        self.assertIs(self.node.status, NodeStatus.ISOLATED)
        self.assertGreaterEqual(self.node.risk_score, 0.0)

    def test_isolated_stays_isolated_at_high_risk(self):
        apply_action(self.node, ActionType.ISOLATE)
        self.node.risk_score = 0.99
        apply_action(self.node, ActionType.ACTIVATE_BACKUP)
        self.assertIs(self.node.status, NodeStatus.ISOLATED)

    def test_cooling_floor(self):
        self.node.temperature = 40.0
        apply_action(self.node, ActionType.ENABLE_COOLING)
        self.assertEqual(self.node.temperature, 30.0)
        self.node.temperature = 70.0
        apply_action(self.node, ActionType.ENABLE_COOLING)
        self.assertEqual(self.node.temperature, 55.0)

    def test_cooling_never_warms(self):
        self.node.temperature = 26.0
        apply_action(self.node, ActionType.ENABLE_COOLING)
        self.assertEqual(self.node.temperature, 26.0)

    def test_load_shed(self):
        self.node.load_ratio = 0.9
        apply_action(self.node, ActionType.LOAD_SHED)
        self.assertAlmostEqual(self.node.load_ratio, 0.6)
        self.assertAlmostEqual(self.node.current_load,
                               self.node.load_ratio * self.node.rated_capacity)
        self.node.load_ratio = 0.15
        apply_action(self.node, ActionType.LOAD_SHED)
        self.assertAlmostEqual(self.node.load_ratio, 0.15)

    def test_cyber_lockdown_and_override(self):
        self.node.tamper_signal = 0.9
        apply_action(self.node, ActionType.CYBER_LOCKDOWN)
        self.assertIs(self.node.cyber_status, CyberStatus.ISOLATED)
        apply_action(self.node, ActionType.ISOLATE)
        apply_action(self.node, ActionType.MANUAL_OVERRIDE)
        self.assertIsNot(self.node.status, NodeStatus.ISOLATED)
        self.assertIsNot(self.node.cyber_status, CyberStatus.ISOLATED)
        self.assertIs(self.node.status, derive_status(self.node.risk_score, self.node.health))

    def test_risk_never_negative(self):
        self.node.risk_score = 0.05
        apply_action(self.node, ActionType.ISOLATE)
        self.assertEqual(self.node.risk_score, 0.0)


class TestAutoPolicy(unittest.TestCase):

    def test_policy_order(self):
        node = create_graph(5, 1, now=NOW).get_node("node_0000")
        node.load_ratio, node.temperature = 0.93, node.thermal_limit
        self.assertIs(auto_action_for(node), ActionType.LOAD_SHED)
        node.load_ratio = 0.5
        self.assertIs(auto_action_for(node), ActionType.ENABLE_COOLING)
        node.temperature = 30.0
        self.assertIs(auto_action_for(node), ActionType.ACTIVATE_BACKUP)

    def test_auto_mitigate_critical(self):
        app, store, _ = _applicator()
        for node_id in ("node_0001", "node_0002", "node_0003"):
            node = store.get_node(node_id)
            node.risk_score, node.status = 0.95, NodeStatus.CRITICAL
        store.get_node("node_0003").status = NodeStatus.ISOLATED
        records = app.auto_mitigate_critical()
        self.assertEqual({r.node_id for r in records}, {"node_0001", "node_0002"})
        self.assertTrue(all(r.operator == "auto" for r in records))


class TestExecute(unittest.TestCase):

    def test_unknown_node(self):
        app, _, _ = _applicator()
        self.assertFalse(app.apply("node_9999", "isolate"))
        record = app.execute("node_9999", ActionType.ISOLATE)
        self.assertFalse(record.success)
        self.assertEqual(record.message, "Node node_9999 not found")
        self.assertEqual(len(app.history), 1)

    def test_unknown_action(self):
        app, store, _ = _applicator()
        before = store.get_node("node_0001").to_dict()
        with self.assertRaises(InvalidParameterError):
            app.execute("node_0001", "self_destruct")
        with self.assertRaises(InvalidParameterError):
            app.apply("node_0001", "self_destruct")
        self.assertEqual(store.get_node("node_0001").to_dict(), before)

    def test_record_fields(self):
        app, store, _ = _applicator()
        store.get_node("node_0001").risk_score = 0.8
        record = app.execute("node_0001", "isolate", operator="alice")
        self.assertTrue(record.success)
        self.assertAlmostEqual(record.risk_before, 0.8)
        self.assertAlmostEqual(record.risk_after, 0.5)
        self.assertAlmostEqual(record.risk_reduction, 0.3)
        self.assertEqual(record.operator, "alice")
        self.assertEqual(record.timestamp, NOW)

    def test_batch_continues_past_failures(self):
        app, _, _ = _applicator()
        result = app.execute_batch([
            ("node_0001", "load_shed"),
            ("node_9999", "isolate"),
            ("node_0002", ActionType.ACTIVATE_BACKUP),
        ])
        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.failed_count, 1)
        self.assertEqual(len(result.records), 3)

    def test_batch_validates_all_first(self):
        app, store, _ = _applicator()
        before = [n.to_dict() for n in store.nodes()]
        with self.assertRaises(InvalidParameterError):
            app.execute_batch([("node_0001", "load_shed"), ("node_0002", "bogus")])
        self.assertEqual([n.to_dict() for n in store.nodes()], before)
        self.assertEqual(app.history, [])

    def test_execution_logged_on_incident(self):
        app, _, incidents = _applicator()
        incident = incidents.create(SeverityLevel.HIGH, ["node_0001", "node_0002"],
                                    "test", "cause", ThreatType.OVERLOAD)
        app.execute("node_0001", "load_shed", operator="bob")
        self.assertEqual(incident.status, "mitigated")
        self.assertEqual(incident.mitigation_actions[0]["action"], "load_shed")
        incidents.close(incident.id)
        app.execute("node_0001", "reroute")
        self.assertEqual(len(incident.mitigation_actions), 1)

    def test_history_keeps_most_recent(self):
        store = create_graph(30, 2, now=NOW)
        app = MitigationApplicator(store, np.random.default_rng(0), clock=_clock, max_history=5)
        records = [app.execute("node_0001", "reroute") for _ in range(12)]
        self.assertEqual(app.history, records[-5:])


class TestRecommendations(unittest.TestCase):

    def test_incident_recommendations(self):
        app, store, incidents = _applicator()
        node = store.get_node("node_0004")
        node.risk_score, node.load_ratio = 0.95, 0.9
        node.tamper_signal = 0.8
        node.status, node.cyber_status = NodeStatus.CRITICAL, CyberStatus.COMPROMISED
        incident = incidents.create(SeverityLevel.HIGH, ["node_0004"], "s", "c",
                                    ThreatType.OVERLOAD)
        recs = app.recommend_for_incident(incident)
        self.assertEqual([r.action_type for r in recs],
                         [ActionType.ISOLATE, ActionType.LOAD_SHED, ActionType.CYBER_LOCKDOWN])
        self.assertTrue(all(r.priority == "immediate" for r in recs))
        self.assertTrue(all(r.incident_id == incident.id for r in recs))
        for rec in recs:
            self.assertEqual(rec.requires_approval, not ACTION_PROFILES[rec.action_type].automatable)

    def test_execution_completes_recommendation(self):
        app, store, incidents = _applicator()
        node = store.get_node("node_0004")
        node.load_ratio = 0.9
        incident = incidents.create(SeverityLevel.HIGH, ["node_0004"], "s", "c",
                                    ThreatType.OVERLOAD)
        rec = next(r for r in app.recommend_for_incident(incident)
                   if r.action_type is ActionType.LOAD_SHED)
        self.assertTrue(app.approve(rec.id))
        self.assertFalse(app.approve(rec.id))
        app.execute("node_0004", "load_shed")
        self.assertEqual(rec.status, "completed")
        self.assertEqual(app.recommendations(status="completed"), [rec])

    def test_filters_and_order(self):
        app, store, incidents = _applicator()
        for node_id, status in (("node_0001", NodeStatus.DEGRADED),
                                ("node_0002", NodeStatus.CRITICAL)):
            node = store.get_node(node_id)
            node.status, node.load_ratio = status, 0.9
        incident = incidents.create(SeverityLevel.HIGH, ["node_0001", "node_0002"],
                                    "s", "c", ThreatType.OVERLOAD)
        app.recommend_for_incident(incident)
        recs = app.recommendations(incident_id=incident.id)
        self.assertEqual(recs[0].priority, "immediate")
        self.assertEqual(recs[-1].priority, "high")
        self.assertTrue(all(r.node_id == "node_0001"
                            for r in app.recommendations(node_id="node_0001")))
        self.assertFalse(app.approve("rec_missing"))

    def test_recommendations_keep_most_recent(self):
        store = create_graph(30, 2, now=NOW)
        incidents = IncidentStore(_clock)
        app = MitigationApplicator(store, np.random.default_rng(0), incidents, _clock,
                                   max_recommendations=4)
        node = store.get_node("node_0004")
        node.load_ratio = 0.9
        made = []
        for _ in range(6):
            incident = incidents.create(SeverityLevel.HIGH, ["node_0004"], "s", "c",
                                        ThreatType.OVERLOAD)
            made.extend(app.recommend_for_incident(incident))
        kept = app.recommendations()
        self.assertEqual(len(kept), 4)
        self.assertEqual({r.id for r in kept}, {r.id for r in made[-4:]})


if __name__ == "__main__":
    unittest.main()
