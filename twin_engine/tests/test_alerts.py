"""Unit tests for alert rules, cooldowns and the alert lifecycle."""

from __future__ import annotations
import sys, unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from twin_engine.alerts import AlertManager, AlertStatus
from twin_engine.graph import create_graph
from twin_engine.model import InvalidParameterError, PredictionType
from twin_engine.risk import generate_predictions

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, minutes):
        self.now += timedelta(minutes=minutes)


def _prediction(**overrides):
    store = create_graph(20, 5, now=START)
    for node in store:
        node.temperature = node.thermal_limit + 5
        node.load_ratio = 0.97
        node.tamper_signal = 0.9
        node.cyber_health = 0.1
        node.health = 0.1
        node.risk_score = 0.9
        node.failed_auth_count = 5
    rngs = [np.random.default_rng(i) for i in range(3)]
    pred = generate_predictions(store, *rngs, now=START)[0]
    return replace(pred, **overrides)


class TestSystemRules(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.manager = AlertManager(np.random.default_rng(0), clock=self.clock)

    def test_degradation_alert(self):
        alerts = self.manager.check_system(0.4)
        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].rule_id, "alert_system_degradation")
        self.assertEqual(alerts[0].severity, "warning")

    def test_healthy_system_no_alert(self):
        self.assertEqual(self.manager.check_system(0.9), [])

    def test_cooldown(self):
        self.manager.check_system(0.4)
        self.clock.advance(10)
        self.assertEqual(self.manager.check_system(0.4), [])
        self.clock.advance(25)
        self.assertEqual(len(self.manager.check_system(0.4)), 1)

    def test_node_rule_cooldown_per_node(self):
        store = create_graph(10, 1, now=START)
        a, b = store.get_node("node_0001"), store.get_node("node_0002")
        a.risk_score = 0.9
        first = self.manager.check_system(0.9, [a])
        self.assertEqual([x.node_ids for x in first], [("node_0001",)])
        b.risk_score = 0.9
        second = self.manager.check_system(0.9, [a, b])
        self.assertEqual([x.node_ids for x in second], [("node_0002",)])

    def test_disabled_rule(self):
        self.assertTrue(self.manager.toggle_rule("alert_system_degradation", False))
        self.assertEqual(self.manager.check_system(0.1), [])
        self.assertFalse(self.manager.toggle_rule("no_such_rule", True))


class TestPredictionRules(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.manager = AlertManager(np.random.default_rng(0), clock=self.clock)

    def test_urgent_prediction(self):
        pred = _prediction(hours_to_event=2.0, probability=0.9,
                           type=PredictionType.OVERLOAD)
        alerts = self.manager.check_predictions([pred])
        self.assertEqual([a.rule_id for a in alerts], ["alert_prediction_urgent"])
        self.assertEqual(alerts[0].prediction_id, pred.id)
        self.assertEqual(alerts[0].node_ids[0], pred.node_id)

    def test_cascade_prediction(self):
        pred = _prediction(hours_to_event=24.0, probability=0.5,
                           type=PredictionType.CASCADE_FAILURE)
        alerts = self.manager.check_predictions([pred])
        self.assertEqual([a.rule_id for a in alerts], ["alert_cascade_detected"])
        self.assertEqual(alerts[0].severity, "critical")

    def test_rule_cooldown_across_predictions(self):
        pred = _prediction(hours_to_event=2.0, probability=0.9,
                           type=PredictionType.OVERLOAD)
        self.assertEqual(len(self.manager.check_predictions([pred, pred])), 1)
        self.clock.advance(16)
        self.assertEqual(len(self.manager.check_predictions([pred])), 1)


class TestLifecycle(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.manager = AlertManager(np.random.default_rng(0), clock=self.clock)
        self.alert = self.manager.check_system(0.3)[0]

    def test_acknowledge_then_resolve(self):
        self.assertTrue(self.manager.acknowledge(self.alert.id, by="ops"))
        self.assertIs(self.alert.status, AlertStatus.ACKNOWLEDGED)
        self.assertEqual(self.alert.acknowledged_by, "ops")
        self.assertFalse(self.manager.acknowledge(self.alert.id))
        self.assertTrue(self.manager.resolve(self.alert.id))
        self.assertIs(self.alert.status, AlertStatus.RESOLVED)
        self.assertFalse(self.manager.resolve(self.alert.id))
        self.assertFalse(self.manager.acknowledge(self.alert.id))

    def test_unknown_alert(self):
        self.assertFalse(self.manager.acknowledge("alert_missing"))
        self.assertFalse(self.manager.resolve("alert_missing"))
        self.assertIsNone(self.manager.get("alert_missing"))

    def test_filter_and_order(self):
        self.clock.advance(31)
        newer = self.manager.check_system(0.3)[0]
        self.manager.resolve(self.alert.id)
        self.assertEqual(self.manager.get_alerts(), [newer, self.alert])
        self.assertEqual(self.manager.get_alerts("active"), [newer])
        self.assertEqual(self.manager.get_alerts(AlertStatus.RESOLVED), [self.alert])
        with self.assertRaises(InvalidParameterError):
            self.manager.get_alerts("snoozed")

    def test_clear_resets_cooldowns(self):
        self.manager.clear()
        self.assertEqual(self.manager.get_alerts(), [])
        self.assertEqual(len(self.manager.check_system(0.3)), 1)

    def test_clear_old_alerts_keeps_active(self):
        self.manager.resolve(self.alert.id)
        self.clock.advance(31)
        newer = self.manager.check_system(0.3)[0]
        self.clock.advance(24 * 60 + 60)
        self.assertEqual(self.manager.clear_old_alerts(), 1)
        self.assertEqual(self.manager.get_alerts(), [newer])
        self.manager.acknowledge(newer.id)
        self.assertEqual(self.manager.clear_old_alerts(24), 1)
        self.assertEqual(self.manager.get_alerts(), [])

    def test_recent_alerts_survive_cleanup(self):
        self.manager.resolve(self.alert.id)
        self.clock.advance(60)
        self.assertEqual(self.manager.clear_old_alerts(max_age_hours=24), 0)
        self.assertEqual(self.manager.get_alerts(), [self.alert])

    def test_alert_log_keeps_most_recent(self):
        manager = AlertManager(np.random.default_rng(0), clock=self.clock, max_alerts=3)
        nodes = list(create_graph(10, 1, now=START))
        for node in nodes:
            node.risk_score = 0.9
        raised = manager.check_system(0.9, nodes)
        self.assertEqual(len(raised), 10)
        self.assertEqual(manager.get_alerts(), raised[-3:][::-1])

    def test_to_dict(self):
        data = self.alert.to_dict()
        self.assertEqual(data["status"], "active")
        self.assertIsInstance(data["created_at"], str)


if __name__ == "__main__":
    unittest.main()
