"""Unit tests for the threat registry."""

from __future__ import annotations
import sys, unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent.parent))
from twin_engine.evolution import derive_status
from twin_engine.graph import create_graph
from twin_engine.incidents import IncidentStore
from twin_engine.model import (
    Category, InvalidParameterError, SeverityLevel, ThreatSubtype, ThreatType,
)
from twin_engine.threats import (
    SUBTYPE_ROOT_CAUSES, ThreatRegistry, incident_severity, propagation_rate,
)

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start=START):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _registry(n=60, seed=12345):
    clock = FakeClock()
    store = create_graph(n, seed, now=START)
    incidents = IncidentStore(clock)
    reg = ThreatRegistry(store, np.random.default_rng(0), np.random.default_rng(1),
                         incidents, clock=clock)
    return reg, store, incidents, clock


class TestExpiry(unittest.TestCase):

    def test_overload_expires_without_rollback(self):
        reg, store, _, clock = _registry(150)
        threat = reg.deploy(ThreatType.OVERLOAD, 0.8, target="node_0005", duration_s=10)
        self.assertIsNotNone(threat)
        node = store.get_node("node_0005")
        after_deploy = (node.load_ratio, node.temperature, node.risk_score)

        clock.advance(11)
        expired, _ = reg.tick()
        self.assertEqual(expired, [threat.id])
        self.assertNotIn(threat, reg.active())
        self.assertFalse(threat.active)
        node = store.get_node("node_0005")
        self.assertEqual((node.load_ratio, node.temperature, node.risk_score), after_deploy)

    def test_active_until_end_time(self):
        reg, _, _, clock = _registry()
        threat = reg.deploy("overload", 0.8, target="node_0005", duration_s=10)
        clock.advance(5)
        expired, _ = reg.tick()
        self.assertEqual(expired, [])
        self.assertIs(reg.get(threat.id), threat)
        clock.advance(5)
        expired, _ = reg.tick()
        self.assertEqual(expired, [threat.id])

    def test_expired_exactly_once(self):
        reg, _, _, clock = _registry()
        reg.deploy("weather_stress", 0.5, region="North", duration_s=1)
        clock.advance(2)
        first, _ = reg.tick()
        second, _ = reg.tick()
        self.assertEqual(len(first), 1)
        self.assertEqual(second, [])

    def test_queries_expire_without_tick(self):
        reg, _, _, clock = _registry(150)
        threat = reg.deploy("overload", 0.8, target="node_0005", duration_s=10)
        clock.advance(60)
        self.assertIsNone(reg.get(threat.id))
        self.assertEqual(reg.active(), [])
        self.assertEqual(reg.affecting("node_0005"), [])
        self.assertFalse(reg.is_node_under_threat("node_0005"))
        self.assertFalse(threat.active)
        expired, _ = reg.tick()
        self.assertEqual(expired, [threat.id])
        expired, _ = reg.tick()
        self.assertEqual(expired, [])

    def test_expire_due_ends_each_threat_once(self):
        reg, _, _, clock = _registry()
        a = reg.deploy("overload", 0.5, nodes=["node_0001"], duration_s=5)
        b = reg.deploy("overload", 0.5, nodes=["node_0002"], duration_s=50)
        clock.advance(10)
        self.assertEqual(reg.expire_due(), [a.id])
        self.assertEqual(reg.expire_due(), [])
        self.assertEqual(reg.active(), [b])

    def test_default_duration(self):
        reg, _, _, _ = _registry()
        threat = reg.deploy("equipment_failure", 0.3, target="node_0001")
        self.assertEqual(threat.ends_at - threat.started_at, timedelta(seconds=120))


class TestPropagation(unittest.TestCase):

    def test_affected_set_only_grows(self):
        reg, store, _, clock = _registry(80)
        threat = reg.deploy("cascade_origin", 1.0, target="node_0000", duration_s=1000)
        previous = list(threat.affected_nodes)
        total = 0
        for _ in range(40):
            clock.advance(1)
            _, recruited = reg.tick()
            total += recruited
            self.assertEqual(threat.affected_nodes[:len(previous)], previous)
            self.assertEqual(len(threat.affected_nodes), len(set(threat.affected_nodes)))
            previous = list(threat.affected_nodes)
        self.assertEqual(len(previous), len(set(previous)))
        self.assertGreater(total, 0)
        for node_id in previous:
            self.assertIn(node_id, store)

    def test_recruits_are_neighbours(self):
        reg, store, _, clock = _registry(80)
        threat = reg.deploy("cascade_origin", 1.0, target="node_0000", duration_s=1000)
        initial = set(threat.affected_nodes)
        for _ in range(20):
            clock.advance(1)
            reg.tick()
        seen = set(initial)
        for node_id in threat.affected_nodes[len(initial):]:
            neighbours = set(store.get_node(node_id).connections)
            self.assertTrue(neighbours & seen)
            seen.add(node_id)

    def test_propagation_rate(self):
        self.assertAlmostEqual(propagation_rate(ThreatType.OVERLOAD, 0.8), 0.4)
        reg, _, _, _ = _registry()
        threat = reg.deploy("cyber_attack", 0.5, target="node_0002")
        self.assertAlmostEqual(threat.propagation_rate, 0.2)


class TestSelection(unittest.TestCase):

    def test_target_plus_fraction_of_neighbours(self):
        reg, store, _, _ = _registry()
        neighbours = store.get_node("node_0003").connections
        threat = reg.deploy("overload", 0.6, target="node_0003")
        self.assertEqual(threat.affected_nodes[0], "node_0003")
        self.assertEqual(len(threat.affected_nodes) - 1, int(len(neighbours) * 0.6))
        self.assertTrue(set(threat.affected_nodes[1:]) <= set(neighbours))

    def test_region_fraction(self):
        reg, store, _, _ = _registry()
        region_ids = [n.id for n in store.get_nodes_by_region("South")]
        threat = reg.deploy("weather_stress", 0.5, region="South")
        self.assertEqual(len(threat.affected_nodes), int(len(region_ids) * 0.5))
        self.assertTrue(set(threat.affected_nodes) <= set(region_ids))

    def test_untargeted_small_fraction(self):
        reg, _, _, _ = _registry(100)
        threat = reg.deploy("supply_chain", 0.5)
        self.assertEqual(len(threat.affected_nodes), int(100 * 0.5 * 0.2))

    def test_unknown_target_returns_none(self):
        reg, _, _, _ = _registry()
        self.assertIsNone(reg.deploy("overload", 0.5, target="node_9999"))
        self.assertIsNone(reg.overload(["node_0001", "node_9999"]))
        self.assertEqual(len(reg), 0)


class TestEffects(unittest.TestCase):

    def test_cyber_attack_effect(self):
        reg, store, _, _ = _registry()
        node = store.get_node("node_0007")
        before = (node.cyber_health, node.tamper_signal, node.packet_loss, node.risk_score)
        reg.deploy("cyber_attack", 0.8, nodes=["node_0007"])
        node = store.get_node("node_0007")
        self.assertLess(node.cyber_health, before[0])
        self.assertGreater(node.tamper_signal, before[1])
        self.assertGreater(node.packet_loss, before[2])
        self.assertGreater(node.risk_score, before[3])

    def test_overload_effect_and_status(self):
        reg, store, _, _ = _registry()
        node = store.get_node("node_0004")
        load0, temp0 = node.load_ratio, node.temperature
        reg.overload(["node_0004"], 0.9)
        node = store.get_node("node_0004")
        self.assertAlmostEqual(node.load_ratio, min(1.0, load0 + 0.27))
        self.assertAlmostEqual(node.temperature, temp0 + 13.5)
        self.assertIs(node.status, derive_status(node.risk_score, node.health))

    def test_sensor_spoof_boosts_tamper(self):
        reg, store, _, _ = _registry()
        tamper0 = store.get_node("node_0002").tamper_signal
        threat = reg.sensor_spoof("node_0002", "voltage", 0.5)
        self.assertEqual(threat.metadata["spoof_type"], "voltage")
        self.assertAlmostEqual(store.get_node("node_0002").tamper_signal,
                               min(1.0, tamper0 + 0.35 + 0.6))

    def test_telecom_outage_region_targets(self):
        reg, store, _, _ = _registry(150)
        threat = reg.telecom_outage("East", 0.6)
        for node_id in threat.affected_nodes:
            node = store.get_node(node_id)
            self.assertEqual(node.region, "East")
            self.assertIn(node.category, (Category.TELECOM, Category.CONTROL))

    def test_telecom_outage_everywhere(self):
        reg, store, _, _ = _registry(150)
        threat = reg.telecom_outage()
        expected = [n.id for n in store.get_nodes_by_category(Category.TELECOM)]
        self.assertEqual(threat.affected_nodes, expected)
        self.assertEqual(threat.ends_at - threat.started_at, timedelta(seconds=150))


class TestIncidents(unittest.TestCase):

    def test_severe_wide_threat_opens_incident(self):
        reg, _, incidents, _ = _registry()
        threat = reg.deploy("equipment_failure", 0.8,
                            nodes=["node_0001", "node_0002", "node_0003"])
        self.assertEqual(len(incidents), 1)
        incident = incidents.get(threat.metadata["incident_id"])
        self.assertIs(incident.severity, SeverityLevel.HIGH)
        self.assertEqual(incident.affected_nodes, threat.affected_nodes)
        self.assertEqual(incident.summary, "Equipment failure at 3 locations")
        self.assertEqual(threat.metadata["created_by"], "simulation")

    def test_mild_threat_no_incident(self):
        reg, _, incidents, _ = _registry()
        reg.deploy("equipment_failure", 0.5, nodes=["node_0001", "node_0002", "node_0003"])
        reg.deploy("equipment_failure", 0.9, nodes=["node_0001", "node_0002"])
        self.assertEqual(len(incidents), 0)

    def test_subtype_root_cause(self):
        reg, _, incidents, _ = _registry()
        threat = reg.deploy("cyber_attack", 0.7, subtype="ransomware",
                            nodes=["node_0001", "node_0002", "node_0003"])
        incident = incidents.get(threat.metadata["incident_id"])
        self.assertEqual(incident.root_cause, SUBTYPE_ROOT_CAUSES[ThreatSubtype.RANSOMWARE])
        self.assertIs(incident.severity, SeverityLevel.MEDIUM)

    def test_incident_severity_buckets(self):
        self.assertIs(incident_severity(0.85), SeverityLevel.HIGH)
        self.assertIs(incident_severity(0.6), SeverityLevel.MEDIUM)
        self.assertIs(incident_severity(0.2), SeverityLevel.LOW)


class TestInvalidParameters(unittest.TestCase):

    def setUp(self):
        self.reg, self.store, self.incidents, _ = _registry()
        self.before = [n.to_dict() for n in self.store.nodes()]

    def tearDown(self):
        self.assertEqual(len(self.reg), 0)
        self.assertEqual([n.to_dict() for n in self.store.nodes()], self.before)

    def test_unknown_type(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.deploy("meteor_strike", 0.5, target="node_0001")

    def test_severity_out_of_range(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.deploy("overload", 1.2, target="node_0001")
        with self.assertRaises(InvalidParameterError):
            self.reg.deploy("overload", -0.2, target="node_0001")

    def test_unknown_subtype(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.cyber_attack("node_0001", "telepathy")

    def test_unknown_region(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.deploy("weather_stress", 0.5, region="Atlantis")
        with self.assertRaises(InvalidParameterError):
            self.reg.telecom_outage("Atlantis")

    def test_non_positive_duration(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.deploy("overload", 0.5, target="node_0001", duration_s=0)

    def test_unknown_spoof_type(self):
        with self.assertRaises(InvalidParameterError):
            self.reg.sensor_spoof("node_0001", "humidity")


class TestQueries(unittest.TestCase):

    def test_end_and_queries(self):
        reg, _, _, _ = _registry()
        a = reg.deploy("overload", 0.5, nodes=["node_0001"])
        b = reg.deploy("cyber_attack", 0.5, nodes=["node_0002"])
        self.assertEqual(reg.by_type("overload"), [a])
        self.assertEqual(reg.affecting("node_0002"), [b])
        self.assertTrue(reg.is_node_under_threat("node_0001"))
        self.assertFalse(reg.is_node_under_threat("node_0003"))
        self.assertTrue(reg.end(a.id))
        self.assertFalse(reg.end(a.id))
        self.assertFalse(reg.end("threat_missing"))
        self.assertEqual(reg.active(), [b])

    def test_end_all(self):
        reg, _, _, _ = _registry()
        reg.deploy("overload", 0.5, nodes=["node_0001"])
        reg.deploy("overload", 0.5, nodes=["node_0002"])
        self.assertEqual(reg.end_all(), 2)
        self.assertEqual(len(reg), 0)
        self.assertEqual(reg.end_all(), 0)


if __name__ == "__main__":
    unittest.main()
