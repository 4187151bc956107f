"""
twin_engine — Digital-Twin Simulation and Cascade-Risk Engine
=============================================================

A synthetic infrastructure grid (power, telecom, control and datacenter
nodes) advanced on a fixed tick, with:

  Threats
      Time-bounded perturbations that recruit neighbouring nodes while
      active and open incidents when severe and wide enough.

  Risk and predictions
      Five-component risk scores with leading-factor explanations, failure
      predictions, grid-level pattern detection and alert rules.

  Cascades and mitigation
      Bounded probabilistic BFS cascades and a fixed catalogue of
      corrective actions.

Every stochastic step draws from a named stream derived from one seed.

Quick start
-----------
>>> from twin_engine import SimulationEngine
>>> engine = SimulationEngine({"simulation": {"seed": 12345, "node_count": 150}})
>>> state = engine.tick()
>>> event = engine.trigger_cascade("node_0000", 0.7)
>>> event.affected_nodes[0]
'node_0000'
"""

from .model import (
    ActionType,
    CascadeEvent,
    CyberStatus,
    Edge,
    InvalidParameterError,
    Node,
    NodeStatus,
    NodeType,
    RiskScore,
    Threat,
    ThreatSubtype,
    ThreatType,
)
from .graph import GraphStore, create_graph
from .topology import graph_from_topology, load_edge_table, load_node_table
from .evolution import advance, derive_cyber_status, derive_status
from .risk import Prediction, generate_predictions, score
from .cascade import predict_cascade_path, simulate_cascade
from .threats import ThreatRegistry
from .mitigation import MitigationApplicator, apply_action
from .patterns import analyze_patterns, system_health_score
from .alerts import AlertManager
from .events import EngineEvent, EventBus, EventName
from .engine import SimulationEngine
from .config import DEFAULT_CONFIG, load_config

__all__ = [
    # model
    "ActionType", "CascadeEvent", "CyberStatus", "Edge", "InvalidParameterError",
    "Node", "NodeStatus", "NodeType", "RiskScore", "Threat", "ThreatSubtype",
    "ThreatType",
    # graph
    "GraphStore", "create_graph",
    "graph_from_topology", "load_edge_table", "load_node_table",
    # evolution
    "advance", "derive_cyber_status", "derive_status",
    # risk
    "Prediction", "generate_predictions", "score",
    # cascade
    "predict_cascade_path", "simulate_cascade",
    # threats / mitigation
    "ThreatRegistry", "MitigationApplicator", "apply_action",
    # patterns / alerts
    "analyze_patterns", "system_health_score", "AlertManager",
    # engine
    "EngineEvent", "EventBus", "EventName", "SimulationEngine",
    # config
    "DEFAULT_CONFIG", "load_config",
]
