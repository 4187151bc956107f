"""
Simulation engine: the single owner of one digital-twin instance.

``SimulationEngine`` holds the graph store, threat registry, mitigation
applicator, pattern history, alert manager and incident store, and runs two
periodic loops on daemon threads:

* tick loop (``simulation.tick_interval_ms``) -> :meth:`SimulationEngine.tick`
* prediction loop (``simulation.prediction_interval_ms``)
  -> :meth:`SimulationEngine.run_predictions`

Every mutation of the node table or the threat registry happens under one
re-entrant lock, so ticks never interleave with each other or with commands.
Events are emitted after the lock is released, so subscribers may call back
into the engine (including :meth:`SimulationEngine.stop`).
Both loops can also be driven synchronously (tests, headless runs) without
calling :meth:`start`.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Iterable

import pandas as pd

from twin_engine.alerts import Alert, AlertManager
from twin_engine.cascade import simulate_cascade
from twin_engine.config import ConfigDict, build_streams, merge_config, validate_config
from twin_engine.events import EventBus, EventName
from twin_engine.evolution import TickContext, advance_all
from twin_engine.graph import GraphStore, create_graph
from twin_engine.incidents import Incident, IncidentStore
from twin_engine.mitigation import BatchResult, MitigationApplicator, MitigationRecord, Recommendation
from twin_engine.model import (
    ActionType,
    CascadeEvent,
    Node,
    RiskScore,
    SystemState,
    Threat,
    ThreatSubtype,
    ThreatType,
    utcnow,
)
from twin_engine.patterns import (
    AccuracyMetrics,
    AccuracyTracker,
    MetricsHistory,
    Pattern,
    analyze_patterns,
    system_health_score,
)
from twin_engine.risk import Prediction, generate_predictions, score_node
from twin_engine.threats import ThreatRegistry
from twin_engine.topology import graph_from_topology
from twin_engine.utils import sign_payload

logger = logging.getLogger(__name__)

MAX_CASCADE_LOG = 100
ALERT_RETENTION_HOURS = 24


class SimulationEngine:
    """One simulation instance; construct it once and pass it around.

    Parameters
    ----------
    config : dict, optional
        Overrides merged over ``DEFAULT_CONFIG`` and validated.
    clock : callable
        Returns the current aware datetime.  Threat expiry, timestamps and
        alert cooldowns all read this clock, so tests can drive time.
    store : GraphStore, optional
        Pre-built grid.  Defaults to ``create_graph(node_count, seed)``.

    Raises
    ------
    ValueError
        If the merged configuration is invalid.
    """

    def __init__(
        self,
        config: ConfigDict | None = None,
        clock: Callable[[], datetime] = utcnow,
        store: GraphStore | None = None,
    ) -> None:
        self.config = merge_config(config or {})
        validate_config(self.config)
        self._clock = clock
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self.events = EventBus(clock)
        self.auto_mitigation = bool(self.config["mitigation"]["auto_mitigation"])
        self._initialise(store)

    def _initialise(self, store: GraphStore | None = None) -> None:
        sim = self.config["simulation"]
        thr = self.config["threats"]
        self._streams = build_streams(self.config)
        self.store = store if store is not None else create_graph(
            int(sim["node_count"]), int(sim["seed"]), now=self._clock()
        )
        self.incidents = IncidentStore(self._clock)
        self.threats = ThreatRegistry(
            self.store,
            rng=self._streams["threats"],
            id_rng=self._streams["ids"],
            incidents=self.incidents,
            clock=self._clock,
            default_duration_s=thr["default_duration_s"],
            incident_min_severity=thr["incident_min_severity"],
            incident_min_nodes=thr["incident_min_nodes"],
        )
        self.mitigation = MitigationApplicator(
            self.store, self._streams["ids"], self.incidents, self._clock
        )
        self.alerts = AlertManager(self._streams["ids"], clock=self._clock)
        self.history = MetricsHistory()
        self.accuracy = AccuracyTracker()
        self._predictions: list[Prediction] = []
        self._patterns: list[Pattern] = []
        self._cascades: list[CascadeEvent] = []
        self.tick_count = 0
        self.history.record(self.store.nodes())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def start(self) -> bool:
        """Start both loops; a no-op returning False if already running."""
        with self._lock:
            if self._threads:
                return False
            self._stop = stop = threading.Event()
            sim = self.config["simulation"]
            self._threads = [
                threading.Thread(
                    target=self._loop,
                    args=(stop, float(sim["tick_interval_ms"]) / 1000.0, self.tick, "tick"),
                    name="twin-tick", daemon=True,
                ),
                threading.Thread(
                    target=self._loop,
                    args=(stop, float(sim["prediction_interval_ms"]) / 1000.0,
                          self.run_predictions, "prediction"),
                    name="twin-predict", daemon=True,
                ),
            ]
            for t in self._threads:
                t.start()
        logger.info(
            "Simulation started: %d nodes, tick %sms, predictions %sms",
            len(self.store), sim["tick_interval_ms"], sim["prediction_interval_ms"],
        )
        self.events.emit(EventName.STATE_CHANGE, {"running": True})
        return True

    def stop(self) -> bool:
        """Stop both loops and wait for them; a no-op returning False if stopped.

        Called from a loop thread (an event subscriber reacting to a tick),
        both loops are signalled but not joined; each exits after its
        current pass.
        """
        with self._lock:
            if not self._threads:
                return False
            threads, self._threads = self._threads, []
            self._stop.set()
        # joined outside the lock so an in-flight tick can finish
        if threading.current_thread() not in threads:
            for t in threads:
                t.join()
        logger.info("Simulation stopped after %d tick(s)", self.tick_count)
        self.events.emit(EventName.STATE_CHANGE, {"running": False})
        return True

    def reset(self) -> None:
        """Stop, then rebuild the grid and every registry from the configured seed."""
        self.stop()
        with self._lock:
            self._initialise()
        logger.info("Simulation reset (seed %s)", self.config["simulation"]["seed"])
        self.events.emit(EventName.STATE_CHANGE, {"reset": True, "nodes": len(self.store)})

    def load_topology(self, nodes_df: pd.DataFrame, edges_df: pd.DataFrame) -> int:
        """Replace the grid with an imported topology; returns the node count."""
        store = graph_from_topology(
            nodes_df, edges_df, int(self.config["simulation"]["seed"]), now=self._clock()
        )
        self.stop()
        with self._lock:
            self._initialise(store)
        logger.info("Topology imported: %d nodes, %d edges", len(store), len(store.get_edges()))
        self.events.emit(EventName.STATE_CHANGE, {"topology_loaded": True, "nodes": len(store)})
        return len(store)

    def _loop(self, stop: threading.Event, interval_s: float,
              step: Callable[[], Any], name: str) -> None:
        while not stop.wait(interval_s):
            try:
                step()
            except Exception:
                logger.exception("%s loop iteration failed; continuing", name)

    # ------------------------------------------------------------------
    # Periodic passes
    # ------------------------------------------------------------------

    def tick(self) -> SystemState | None:
        """Advance the twin by one step.

        Order: evolve all nodes, expire and propagate threats, record
        history, auto-mitigate (if enabled), emit ``tick``.  An empty grid
        is skipped with a warning and returns None.
        """
        with self._lock:
            if len(self.store) == 0:
                logger.warning("Tick skipped: graph is empty")
                return None
            now = self._clock()
            advance_all(self.store, TickContext(now, self._streams["tick"]))
            expired, recruited = self.threats.tick(now)
            self.history.record(self.store.nodes())
            records = self.mitigation.auto_mitigate_critical() if self.auto_mitigation else []
            self.tick_count += 1
            state = self.store.system_state(now)
            payload = {
                "tick": self.tick_count,
                "state": state.to_dict(),
                "nodes": [n.to_dict() for n in self.store.nodes()],
                "expired_threats": expired,
                "recruited_nodes": recruited,
            }
        self.events.emit(EventName.TICK, payload)
        for record in records:
            self.events.emit(EventName.MITIGATION, record.to_dict())
        return state

    def run_predictions(self) -> list[Prediction]:
        """Analyse patterns, regenerate predictions and check alert rules."""
        with self._lock:
            if len(self.store) == 0:
                logger.warning("Prediction pass skipped: graph is empty")
                return []
            now = self._clock()
            self._patterns = analyze_patterns(self.store, self.history, now)
            self._predictions = generate_predictions(
                self.store,
                self._streams["risk"],
                self._streams["ids"],
                self._streams["cascade"],
                now,
            )
            predictions = list(self._predictions)
            payload = {
                "predictions": [p.to_dict() for p in predictions],
                "patterns": [p.to_dict() for p in self._patterns],
            }
            raised: list[Alert] = []
            self.alerts.clear_old_alerts(ALERT_RETENTION_HOURS, now)
            if self.config["alerts"]["enabled"]:
                health = system_health_score(self.store, self._predictions, self._patterns)
                raised = self.alerts.check_predictions(self._predictions, now)
                raised += self.alerts.check_system(health, self.store.nodes(), now)
        self.events.emit(EventName.PREDICTION, payload)
        for alert in raised:
            self.events.emit(EventName.ALERT, alert.to_dict())
        return predictions

    # ------------------------------------------------------------------
    # Query surface (read-only)
    # ------------------------------------------------------------------

    def nodes(self) -> list[Node]:
        with self._lock:
            return self.store.nodes()

    def get_node(self, node_id: str) -> Node | None:
        with self._lock:
            return self.store.get_node(node_id)

    def system_state(self) -> SystemState:
        with self._lock:
            return self.store.system_state(self._clock())

    def risk_score(self, node_id: str) -> RiskScore | None:
        with self._lock:
            return score_node(self.store, node_id, self._streams["risk"])

    def predictions(self) -> list[Prediction]:
        return list(self._predictions)

    def patterns(self) -> list[Pattern]:
        return list(self._patterns)

    def system_health(self) -> float:
        with self._lock:
            return system_health_score(self.store, self._predictions, self._patterns)

    def accuracy_metrics(self) -> AccuracyMetrics:
        return self.accuracy.metrics()

    def active_threats(self) -> list[Threat]:
        with self._lock:
            return self.threats.active()

    def cascades(self) -> list[CascadeEvent]:
        return list(self._cascades)

    def get_incidents(self) -> list[Incident]:
        return self.incidents.all()

    def get_alerts(self, status: str | None = None) -> list[Alert]:
        return self.alerts.get_alerts(status)

    # ------------------------------------------------------------------
    # Command surface
    # ------------------------------------------------------------------

    def _deploy(self, create: Callable[[], Threat | None]) -> Threat | None:
        with self._lock:
            threat = create()
            if threat is None:
                return None
            incident_id = threat.metadata.get("incident_id")
            if incident_id is not None:
                self.mitigation.recommend_for_incident(self.incidents.get(incident_id))
            payload = {"threat_deployed": threat.to_dict()}
        self.events.emit(EventName.STATE_CHANGE, payload)
        return threat

    def deploy_threat(
        self,
        threat_type: ThreatType | str,
        severity: float = 0.6,
        target: str | None = None,
        region: str | None = None,
        subtype: ThreatSubtype | str | None = None,
        duration_s: float | None = None,
    ) -> Threat | None:
        """Deploy a threat; None if *target* is unknown.

        Raises ``InvalidParameterError`` for an invalid type, subtype,
        region, severity or duration.
        """
        return self._deploy(lambda: self.threats.deploy(
            threat_type, severity, target=target, region=region,
            subtype=subtype, duration_s=duration_s,
        ))

    def cyber_attack(self, target: str | None, subtype: ThreatSubtype | str,
                     severity: float = 0.7) -> Threat | None:
        return self._deploy(lambda: self.threats.cyber_attack(target, subtype, severity))

    def sensor_spoof(self, target: str, spoof_type: str, severity: float = 0.5) -> Threat | None:
        return self._deploy(lambda: self.threats.sensor_spoof(target, spoof_type, severity))

    def overload(self, targets: Iterable[str], severity: float = 0.7) -> Threat | None:
        targets = list(targets)
        return self._deploy(lambda: self.threats.overload(targets, severity))

    def telecom_outage(self, region: str | None = None, severity: float = 0.6) -> Threat | None:
        return self._deploy(lambda: self.threats.telecom_outage(region, severity))

    def end_threat(self, threat_id: str) -> bool:
        with self._lock:
            ended = self.threats.end(threat_id)
        if ended:
            self.events.emit(EventName.STATE_CHANGE, {"threat_ended": threat_id})
        return ended

    def clear_threats(self) -> int:
        with self._lock:
            count = self.threats.end_all()
        self.events.emit(EventName.STATE_CHANGE, {"threats_cleared": count})
        return count

    def trigger_cascade(self, origin_id: str, severity: float = 0.7) -> CascadeEvent | None:
        """Run a cascade from *origin_id*; None if the node is unknown."""
        with self._lock:
            event = simulate_cascade(
                self.store, origin_id, severity,
                self._streams["cascade"], self._streams["ids"], self._clock,
            )
            if event is None:
                return None
            self._cascades.append(event)
            del self._cascades[:-MAX_CASCADE_LOG]
        self.events.emit(EventName.CASCADE, event.to_dict())
        return event

    def apply_mitigation(self, node_id: str, action: ActionType | str,
                         operator: str | None = None) -> MitigationRecord:
        """Execute one action; the record's ``success`` is False for an unknown node."""
        with self._lock:
            record = self.mitigation.execute(node_id, action, operator)
        if record.success:
            self.events.emit(EventName.MITIGATION, record.to_dict())
        return record

    def apply_mitigation_batch(self, actions: Iterable[tuple[str, ActionType | str]],
                               operator: str | None = None) -> BatchResult:
        with self._lock:
            result = self.mitigation.execute_batch(actions, operator)
        for record in result.records:
            if record.success:
                self.events.emit(EventName.MITIGATION, record.to_dict())
        return result

    def mitigate_all_critical(self, operator: str = "auto") -> list[MitigationRecord]:
        with self._lock:
            records = self.mitigation.auto_mitigate_critical(operator)
        for record in records:
            self.events.emit(EventName.MITIGATION, record.to_dict())
        return records

    def set_auto_mitigation(self, enabled: bool) -> None:
        with self._lock:
            self.auto_mitigation = bool(enabled)
        logger.info("Auto-mitigation %s", "enabled" if enabled else "disabled")
        self.events.emit(EventName.STATE_CHANGE, {"auto_mitigation": self.auto_mitigation})

    def recommend_for_prediction(self, prediction_id: str) -> list[Recommendation] | None:
        pred = next((p for p in self._predictions if p.id == prediction_id), None)
        if pred is None:
            return None
        with self._lock:
            return self.mitigation.recommend_for_prediction(pred)

    def recommend_for_incident(self, incident_id: str) -> list[Recommendation] | None:
        incident = self.incidents.get(incident_id)
        if incident is None:
            return None
        with self._lock:
            return self.mitigation.recommend_for_incident(incident)

    def record_prediction_outcome(self, prediction_id: str, was_accurate: bool) -> bool:
        """Log whether a current prediction came true; False if it is unknown."""
        pred = next((p for p in self._predictions if p.id == prediction_id), None)
        if pred is None:
            return False
        self.accuracy.record_outcome(pred.id, pred.type, was_accurate)
        return True

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready summary of the twin plus its SHA-256 and HMAC signature."""
        with self._lock:
            now = self._clock()
            data = {
                "generated_at": now.isoformat(),
                "seed": self.config["simulation"]["seed"],
                "tick_count": self.tick_count,
                "running": self.running,
                "auto_mitigation": self.auto_mitigation,
                "state": self.store.system_state(now).to_dict(),
                "system_health": system_health_score(
                    self.store, self._predictions, self._patterns
                ),
                "nodes": [n.to_dict() for n in self.store.nodes()],
                "edges": [e.to_dict() for e in self.store.get_edges()],
                "active_threats": [t.to_dict() for t in self.threats.active()],
                "cascades": [c.to_dict() for c in self._cascades],
                "incidents": [i.to_dict() for i in self.incidents.all()],
                "mitigations": [r.to_dict() for r in self.mitigation.history],
            }
        return {
            "snapshot": data,
            "integrity": sign_payload(data, self.config["integrity"]["hmac_key"]),
        }
